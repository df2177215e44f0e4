"""
Tests for the AI responder

Reply sanitizing, retry/backoff on transient provider errors, the tool
loop and the chat tools themselves (HTTP mocked with httpx.MockTransport).
"""

import json
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError, BadRequestError

from app.channels.base import CollaboratorNotConfigured
from app.services.ai_service import (
    AIResponseError,
    OpenAIResponder,
    UnconfiguredResponder,
    history_to_messages,
    persona_reply,
    sanitize_reply,
)
from app.services.ai_tools import ChatToolExecutor, get_chat_tools, to_openai_tools


def _completion(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _tool_call(call_id: str, name: str, arguments: dict):
    return SimpleNamespace(
        id=call_id,
        function=SimpleNamespace(name=name, arguments=json.dumps(arguments)),
    )


class FakeCompletions:
    """Returns queued results; exceptions in the queue are raised."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _client(completions: FakeCompletions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _responder(completions, **kwargs) -> OpenAIResponder:
    return OpenAIResponder(
        api_key="test",
        model="test-model",
        system_prompt="You are Kin.",
        retry_backoff=0,
        client=_client(completions),
        **kwargs,
    )


def _connection_error():
    return APIConnectionError(request=httpx.Request("POST", "https://api.example/v1/chat/completions"))


# ============ Sanitizing ============

def test_identity_question_with_vendor_answer_gets_persona():
    reply = sanitize_reply("Who are you?", "I'm ChatGPT, made by OpenAI.", "Kin")
    assert reply == persona_reply("Kin")


def test_vendor_self_reference_lines_are_dropped():
    reply = sanitize_reply(
        "Plan my day",
        "As an AI language model by OpenAI, I can help.\nStart with coffee at 8.",
        "Kin",
    )
    assert reply == "Start with coffee at 8."


def test_ordinary_vendor_mentions_survive():
    text = "OpenAI announced a new product yesterday."
    assert sanitize_reply("any tech news?", text, "Kin") == text


def test_reply_made_only_of_self_reference_becomes_persona():
    assert sanitize_reply("hey", "I am Claude, built by Anthropic.", "Kin") == persona_reply("Kin")


def test_history_to_messages():
    rows = [SimpleNamespace(role="user", content="hi"), SimpleNamespace(role="assistant", content="hello")]
    assert history_to_messages(rows) == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]


# ============ Responder ============

@pytest.mark.asyncio
async def test_respond_sends_system_history_and_message():
    completions = FakeCompletions(_completion("Sure!"))
    responder = _responder(completions)

    reply = await responder.respond("and now?", [{"role": "user", "content": "before"}])

    assert reply == "Sure!"
    messages = completions.calls[0]["messages"]
    assert messages[0] == {"role": "system", "content": "You are Kin."}
    assert messages[1] == {"role": "user", "content": "before"}
    assert messages[-1] == {"role": "user", "content": "and now?"}
    assert "tools" not in completions.calls[0]


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    completions = FakeCompletions(_connection_error(), _connection_error(), _completion("third time"))
    responder = _responder(completions, max_retries=3)

    assert await responder.respond("hi", []) == "third time"
    assert len(completions.calls) == 3


@pytest.mark.asyncio
async def test_retries_are_bounded():
    completions = FakeCompletions(_connection_error(), _connection_error())
    responder = _responder(completions, max_retries=2)

    with pytest.raises(APIConnectionError):
        await responder.respond("hi", [])


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    response = httpx.Response(400, request=httpx.Request("POST", "https://api.example/v1/chat/completions"))
    error = BadRequestError("bad request", response=response, body=None)
    completions = FakeCompletions(error, _completion("unused"))
    responder = _responder(completions, max_retries=3)

    with pytest.raises(BadRequestError):
        await responder.respond("hi", [])
    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_empty_completion_raises():
    responder = _responder(FakeCompletions(_completion("   ")))
    with pytest.raises(AIResponseError):
        await responder.respond("hi", [])


@pytest.mark.asyncio
async def test_tool_calls_are_executed_and_fed_back():
    completions = FakeCompletions(
        _completion(tool_calls=[_tool_call("call_1", "get_time", {"timezone": "Europe/Lisbon"})]),
        _completion("It is late in Lisbon."),
    )
    responder = _responder(completions, tools=ChatToolExecutor())

    assert await responder.respond("time in Lisbon?", []) == "It is late in Lisbon."

    second = completions.calls[1]["messages"]
    assert second[-2]["role"] == "assistant"
    assert second[-2]["tool_calls"][0]["function"]["name"] == "get_time"
    assert second[-1]["role"] == "tool"
    assert second[-1]["tool_call_id"] == "call_1"
    assert json.loads(second[-1]["content"])["timezone"] == "Europe/Lisbon"
    assert completions.calls[0]["tools"][0]["type"] == "function"


@pytest.mark.asyncio
async def test_tool_loop_is_bounded():
    looping = [_completion(tool_calls=[_tool_call(f"c{i}", "get_time", {})]) for i in range(3)]
    responder = _responder(FakeCompletions(*looping), tools=ChatToolExecutor(), max_tool_iterations=2)

    with pytest.raises(AIResponseError):
        await responder.respond("loop", [])


@pytest.mark.asyncio
async def test_unconfigured_responder_raises():
    with pytest.raises(CollaboratorNotConfigured):
        await UnconfiguredResponder(["AI_API_KEY"]).respond("hi", [])


# ============ Tools ============

def test_tool_definitions_convert_to_openai_format():
    tools = to_openai_tools(get_chat_tools())
    names = [t["function"]["name"] for t in tools]
    assert names == ["get_current_weather", "get_time"]
    assert tools[0]["function"]["parameters"]["required"] == ["location"]


@pytest.mark.asyncio
async def test_weather_tool_geocodes_then_fetches_forecast():
    def handler(request: httpx.Request) -> httpx.Response:
        if "geocoding" in request.url.host:
            assert request.url.params["name"] == "Lisbon"
            return httpx.Response(200, json={"results": [
                {"name": "Lisbon", "admin1": "Lisbon", "country": "Portugal", "latitude": 38.7, "longitude": -9.1}
            ]})
        return httpx.Response(200, json={
            "current": {"time": "2026-10-17T12:00", "temperature_2m": 21.5, "relative_humidity_2m": 60,
                        "precipitation": 0.0, "wind_speed_10m": 12.0},
            "current_units": {"temperature_2m": "°C", "wind_speed_10m": "km/h"},
        })

    executor = ChatToolExecutor(transport=httpx.MockTransport(handler))
    result = json.loads(await executor.execute("get_current_weather", json.dumps({"location": "Lisbon"})))

    assert result["location"] == "Lisbon, Lisbon, Portugal"
    assert result["temperature"] == 21.5


@pytest.mark.asyncio
async def test_weather_tool_unknown_place_and_outage():
    executor = ChatToolExecutor(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
    result = json.loads(await executor.execute("get_current_weather", '{"location": "Nowhereville"}'))
    assert "could not find" in result["error"]

    down = ChatToolExecutor(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    result = json.loads(await down.execute("get_current_weather", '{"location": "Lisbon"}'))
    assert result == {"error": "weather service unavailable"}


@pytest.mark.asyncio
async def test_tool_argument_errors():
    executor = ChatToolExecutor()
    assert "error" in json.loads(await executor.execute("get_time", "not json"))
    assert "error" in json.loads(await executor.execute("get_time", '{"timezone": "Mars/Olympus"}'))
    assert "error" in json.loads(await executor.execute("launch_rockets", "{}"))
