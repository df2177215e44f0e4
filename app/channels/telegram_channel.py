"""
Telegram Channel: webhook verification, Update parsing and the Bot API client.

Inbound: Telegram calls ``POST /webhooks/telegram`` with an Update. The
request carries ``X-Telegram-Bot-Api-Secret-Token`` (the secret we passed to
setWebhook); it is compared in constant time before the body is parsed.

Outbound: python-telegram-bot's ``Bot`` (sendMessage, getMe, setWebhook).

Requires:
- TELEGRAM_BOT_TOKEN
- TELEGRAM_WEBHOOK_SECRET
"""

import hmac
import logging
import re
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from telegram import Bot
from telegram.error import TelegramError
from telegram.request import HTTPXRequest

from app.channels.base import (
    InboundMessage,
    MessageType,
    Platform,
    PlatformClient,
    SendResult,
)

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
MAX_MESSAGE_LENGTH = 4096

# "/cmd", "/cmd@BotName", "/cmd args"
_COMMAND_RE = re.compile(r"^/([A-Za-z0-9_-]+)(?:@[A-Za-z0-9_]+)?(?:\s+(.+))?$", re.DOTALL)
# Deep-link payload charset allowed by Telegram for /start
START_PAYLOAD_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
# Issued connect tokens (secrets.token_urlsafe output)
CONNECT_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{16,64}$")


def verify_secret_token(header_value: Optional[str], expected: str) -> bool:
    """Constant-time comparison of the webhook secret header."""
    if not header_value:
        return False
    return hmac.compare_digest(header_value.encode("utf-8"), expected.encode("utf-8"))


def parse_command(text: str) -> Optional[Tuple[str, Optional[str]]]:
    """Split "/start abc" into ("start", "abc"). Returns None for non-commands."""
    match = _COMMAND_RE.match(text.strip())
    if not match:
        return None
    args = match.group(2).strip() if match.group(2) else None
    return match.group(1).lower(), args or None


def parse_start_command(text: str) -> Optional[str]:
    """Return the connect token from "/start <token>", or None."""
    parsed = parse_command(text)
    if not parsed or parsed[0] != "start" or not parsed[1]:
        return None
    token = parsed[1].split()[0]
    return token if START_PAYLOAD_RE.match(token) else None


# ── Update schema ──────────────────────────────────────────────

class _TelegramModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TelegramUser(_TelegramModel):
    id: int
    is_bot: bool = False
    first_name: str = ""
    username: Optional[str] = None


class TelegramChat(_TelegramModel):
    id: int
    type: str
    username: Optional[str] = None


class TelegramPhotoSize(_TelegramModel):
    file_id: str
    width: int = 0
    height: int = 0


class TelegramFile(_TelegramModel):
    """voice / audio / video / document share these fields."""
    file_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None


class TelegramLocation(_TelegramModel):
    latitude: float
    longitude: float


class TelegramMessage(_TelegramModel):
    message_id: int
    date: int
    chat: TelegramChat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    text: Optional[str] = None
    caption: Optional[str] = None
    photo: Optional[List[TelegramPhotoSize]] = None
    voice: Optional[TelegramFile] = None
    audio: Optional[TelegramFile] = None
    video: Optional[TelegramFile] = None
    document: Optional[TelegramFile] = None
    location: Optional[TelegramLocation] = None


class TelegramUpdate(_TelegramModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None


def _content_of(msg: TelegramMessage) -> Optional[Tuple[MessageType, str, Optional[str]]]:
    """(type, text content, media file id) or None for unsupported content."""
    if msg.text is not None:
        return MessageType.TEXT, msg.text, None
    if msg.photo:
        largest = max(msg.photo, key=lambda p: p.width * p.height)
        return MessageType.IMAGE, msg.caption or "[Image]", largest.file_id
    if msg.voice:
        return MessageType.AUDIO, msg.caption or "[Audio message]", msg.voice.file_id
    if msg.audio:
        return MessageType.AUDIO, msg.caption or "[Audio message]", msg.audio.file_id
    if msg.video:
        return MessageType.VIDEO, msg.caption or "[Video]", msg.video.file_id
    if msg.document:
        name = msg.document.file_name or "file"
        return MessageType.DOCUMENT, msg.caption or f"[Document: {name}]", msg.document.file_id
    if msg.location:
        return MessageType.LOCATION, f"Location: {msg.location.latitude}, {msg.location.longitude}", None
    return None


def normalize_update(update: TelegramUpdate) -> Optional[InboundMessage]:
    """Convert a validated Update into an InboundMessage (None = nothing to relay)."""
    msg = update.message or update.edited_message
    if msg is None:
        logger.debug("[TELEGRAM] Update %s has no message, ignoring", update.update_id)
        return None

    content = _content_of(msg)
    if content is None:
        logger.info("[TELEGRAM] Unsupported content in message %s, ignoring", msg.message_id)
        return None
    message_type, text, media_ref = content

    command = command_args = connect_token = None
    if message_type == MessageType.TEXT:
        parsed = parse_command(text)
        if parsed:
            command, command_args = parsed
            connect_token = parse_start_command(text)

    chat_id = str(msg.chat.id)
    return InboundMessage(
        platform=Platform.TELEGRAM,
        # message_id is only unique within a chat
        external_message_id=f"{chat_id}:{msg.message_id}",
        peer_identifier=chat_id,
        message_type=message_type,
        content=text,
        sender_identifier=str(msg.from_user.id) if msg.from_user else None,
        username=(msg.from_user.username if msg.from_user else None) or msg.chat.username,
        media_reference=media_ref,
        command=command,
        command_args=command_args,
        connect_token=connect_token,
        raw_payload=update.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split text into Telegram-sized chunks, preferring newline boundaries."""
    chunks = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks or [""]


# ── Client ─────────────────────────────────────────────────────

class TelegramClient(PlatformClient):
    """Bot API client built on python-telegram-bot."""

    platform = Platform.TELEGRAM

    def __init__(
        self,
        token: str,
        webhook_secret: Optional[str] = None,
        bot_username: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.webhook_secret = webhook_secret
        self._bot_username = bot_username.lstrip("@") if bot_username else None
        self.bot = Bot(
            token=token,
            request=HTTPXRequest(connect_timeout=timeout, read_timeout=timeout, write_timeout=timeout),
        )
        self._initialized = False

    # ── Lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        if not self._initialized:
            await self.bot.initialize()
            self._initialized = True
            logger.info("[TELEGRAM] Client started (@%s)", self.bot.username)

    async def stop(self) -> None:
        if self._initialized:
            await self.bot.shutdown()
            self._initialized = False
        logger.info("[TELEGRAM] Client stopped")

    # ── Outbound ───────────────────────────────────────────────

    async def send_text(self, recipient: str, text: str) -> SendResult:
        await self.start()
        first_id = None
        try:
            for chunk in split_message(text):
                sent = await self.bot.send_message(chat_id=recipient, text=chunk)
                if first_id is None:
                    first_id = f"{recipient}:{sent.message_id}"
        except TelegramError as e:
            logger.warning("[TELEGRAM] sendMessage to %s failed: %s", recipient, e)
            return SendResult(ok=False, external_message_id=first_id, error=str(e))
        return SendResult(ok=True, external_message_id=first_id)

    async def get_bot_username(self) -> str:
        if not self._bot_username:
            me = await self.bot.get_me()
            self._bot_username = me.username
        return self._bot_username

    async def connect_link(self, token: str) -> str:
        username = await self.get_bot_username()
        return f"https://t.me/{username}?start={token}"

    # ── Webhook management ─────────────────────────────────────

    async def set_webhook(self, url: str) -> bool:
        await self.start()
        ok = await self.bot.set_webhook(
            url=url,
            secret_token=self.webhook_secret,
            allowed_updates=["message", "edited_message"],
        )
        logger.info("[TELEGRAM] setWebhook %s -> %s", url, ok)
        return ok

    async def delete_webhook(self) -> bool:
        await self.start()
        return await self.bot.delete_webhook()

    async def get_webhook_info(self) -> dict:
        await self.start()
        info = await self.bot.get_webhook_info()
        return info.to_dict()
