"""
AI responder: turns (message, history) into the assistant's reply.

Talks to any OpenAI-compatible chat completions endpoint, runs the small
tool-calling loop for the chat tools, and retries transient failures with
exponential backoff. Replies are passed through ``sanitize_reply`` so the
assistant never names the model vendor behind it.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from openai import (
    APIConnectionError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from app.channels.base import CollaboratorNotConfigured
from app.services.ai_tools import ChatToolExecutor, to_openai_tools

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I had trouble processing that. Please try again."


def build_system_prompt(assistant_name: str) -> str:
    return (
        f"You are {assistant_name}, a friendly personal assistant that people chat with on "
        "Telegram and WhatsApp. Keep answers short and conversational, suited to a chat app. "
        "Use plain text without markdown tables. Use the tools for current weather or time "
        "instead of guessing. "
        f"If asked who you are or what model you run on, say you are {assistant_name}; "
        "never mention model vendors or providers."
    )


class AIResponseError(Exception):
    """The model returned nothing usable."""


class AIResponder(ABC):
    configured: bool = True

    @abstractmethod
    async def respond(self, message: str, history: List[Dict[str, str]]) -> str:
        """Reply to ``message`` given prior turns ({"role", "content"}, oldest first)."""


class UnconfiguredResponder(AIResponder):
    configured = False

    def __init__(self, missing: List[str]):
        self.missing = list(missing)

    async def respond(self, message: str, history: List[Dict[str, str]]) -> str:
        raise CollaboratorNotConfigured("AI responder", self.missing)


class OpenAIResponder(AIResponder):
    """OpenAI-compatible chat completions with tool calls."""

    # Worth another attempt; 4xx other than 429 are not
    RETRYABLE_ERRORS = (APIConnectionError, RateLimitError, InternalServerError)

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        system_prompt: str = "",
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        max_tokens: int = 800,
        temperature: float = 0.6,
        max_tool_iterations: int = 4,
        tools: Optional[ChatToolExecutor] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        # Retries are handled here so backoff and logging stay in one place
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        self.model = model
        self.system_prompt = system_prompt
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_tool_iterations = max_tool_iterations
        self.tools = tools

    async def _create(self, **kwargs):
        for attempt in range(self.max_retries):
            try:
                return await self.client.chat.completions.create(**kwargs)
            except self.RETRYABLE_ERRORS as e:
                if attempt >= self.max_retries - 1:
                    raise
                wait = self.retry_backoff * (2 ** attempt)
                logger.warning(f"AI request failed ({e.__class__.__name__}), retrying in {wait:.1f}s")
                await asyncio.sleep(wait)

    async def respond(self, message: str, history: List[Dict[str, str]]) -> str:
        messages: List[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend({"role": h["role"], "content": h["content"]} for h in history)
        messages.append({"role": "user", "content": message})

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if self.tools is not None:
            kwargs["tools"] = to_openai_tools(self.tools.definitions)

        for _ in range(self.max_tool_iterations + 1):
            completion = await self._create(messages=messages, **kwargs)
            if not completion.choices:
                raise AIResponseError("completion had no choices")
            reply = completion.choices[0].message

            if reply.tool_calls and self.tools is not None:
                messages.append({
                    "role": "assistant",
                    "content": reply.content or "",
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.function.name, "arguments": call.function.arguments},
                        }
                        for call in reply.tool_calls
                    ],
                })
                for call in reply.tool_calls:
                    logger.info(f"Tool call: {call.function.name}")
                    result = await self.tools.execute(call.function.name, call.function.arguments)
                    messages.append({"role": "tool", "tool_call_id": call.id, "content": result})
                continue

            text = (reply.content or "").strip()
            if not text:
                raise AIResponseError("empty completion")
            return text

        raise AIResponseError(f"no answer after {self.max_tool_iterations} tool rounds")


# ── Reply sanitizing ───────────────────────────────────────────

_PROVIDER_RE = re.compile(
    r"\b(kimi|moonshot|openai|chat\s*gpt|gpt-?\d[\w.-]*|gpt|anthropic|claude|gemini|deepseek|llama|mistral)\b",
    re.IGNORECASE,
)
_SELF_REFERENCE_RE = re.compile(r"\b(i'?m|i am|as an ai|language model|model|provider|built by|made by|trained by)\b", re.IGNORECASE)
_IDENTITY_QUESTION_RES = [
    re.compile(r"\bwho (are|made|built|created) you\b", re.IGNORECASE),
    re.compile(r"\bwhat (model|llm|ai) (are|is) (you|this)\b", re.IGNORECASE),
    re.compile(r"\bwhich (model|llm|ai)\b", re.IGNORECASE),
    re.compile(r"\bare you (chat\s*gpt|gpt|claude|gemini|kimi|deepseek|openai|an? ai)\b", re.IGNORECASE),
    re.compile(r"\bwhat are you\b", re.IGNORECASE),
]


def persona_reply(assistant_name: str) -> str:
    return f"I'm {assistant_name}, your personal assistant here in chat. How can I help?"


def sanitize_reply(user_message: str, reply: str, assistant_name: str) -> str:
    """
    Keep the assistant in persona.

    An identity question answered with a vendor name gets the fixed persona
    line. Otherwise lines where the assistant describes itself in terms of
    a model vendor are dropped; an answer made only of such lines becomes
    the persona line.
    """
    if any(p.search(user_message or "") for p in _IDENTITY_QUESTION_RES) and _PROVIDER_RE.search(reply or ""):
        return persona_reply(assistant_name)

    kept = [
        line for line in (reply or "").splitlines()
        if not (_PROVIDER_RE.search(line) and _SELF_REFERENCE_RE.search(line))
    ]
    cleaned = "\n".join(kept).strip()
    return cleaned or persona_reply(assistant_name)


def history_to_messages(history) -> List[Dict[str, str]]:
    """ConversationMessage rows -> chat messages."""
    return [{"role": h.role, "content": h.content} for h in history]
