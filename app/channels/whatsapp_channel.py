"""
WhatsApp Channel: Cloud API webhook verification, payload parsing and client.

Inbound: Meta calls ``POST /webhooks/whatsapp`` with a signed envelope
(``X-Hub-Signature-256: sha256=<hmac(app_secret, raw body)>``). The
subscription handshake is a ``GET`` carrying ``hub.mode``,
``hub.verify_token`` and ``hub.challenge``.

Each message inside the envelope is parsed on its own against a union of
known variants keyed on ``type``; unknown variants are skipped.

Requires:
- WHATSAPP_PHONE_NUMBER_ID
- WHATSAPP_ACCESS_TOKEN (permanent system user token)
- WHATSAPP_VERIFY_TOKEN (webhook verification)
- WHATSAPP_APP_SECRET (payload signatures)
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app.channels.base import (
    CollaboratorNotConfigured,
    DeliveryStatus,
    InboundMessage,
    MessageType,
    Platform,
    PlatformClient,
    SendResult,
)
from app.channels.telegram_channel import CONNECT_TOKEN_RE, START_PAYLOAD_RE

logger = logging.getLogger(__name__)

GRAPH_API = "https://graph.facebook.com/v19.0"
SIGNATURE_HEADER = "X-Hub-Signature-256"

# "START <token>" (what the wa.me link pre-fills) or "/start <token>"
_START_RE = re.compile(r"^\s*/?start\s+(\S+)\s*$", re.IGNORECASE)


def verify_signature(body: bytes, header_value: Optional[str], app_secret: str) -> bool:
    """Recompute HMAC-SHA256 over the raw body and compare in constant time."""
    if not header_value:
        return False
    expected = "sha256=" + hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(header_value.encode(), expected.encode())


def verify_subscription(
    mode: Optional[str], token: Optional[str], challenge: Optional[str], verify_token: str
) -> Optional[str]:
    """Return the challenge to echo for a valid GET handshake, else None."""
    if mode != "subscribe" or not token or challenge is None:
        return None
    if not hmac.compare_digest(token.encode(), verify_token.encode()):
        return None
    return challenge


def parse_start_text(text: str) -> Optional[str]:
    """Connect token from "START <token>" or "/start <token>", else None.

    The bare "START" form only matches issued-token shapes so ordinary
    messages that begin with "start" are not taken for a handshake.
    """
    match = _START_RE.match(text or "")
    if not match:
        return None
    token = match.group(1)
    pattern = START_PAYLOAD_RE if text.strip().startswith("/") else CONNECT_TOKEN_RE
    return token if pattern.match(token) else None


# ── Payload schema ─────────────────────────────────────────────

class _WhatsAppModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class WhatsAppText(_WhatsAppModel):
    body: str


class WhatsAppMedia(_WhatsAppModel):
    id: str
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class WhatsAppLocation(_WhatsAppModel):
    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None


class _WhatsAppMessageBase(_WhatsAppModel):
    from_number: str = Field(alias="from")
    id: str
    timestamp: str


class WhatsAppTextMessage(_WhatsAppMessageBase):
    type: Literal["text"]
    text: WhatsAppText


class WhatsAppImageMessage(_WhatsAppMessageBase):
    type: Literal["image"]
    image: WhatsAppMedia


class WhatsAppAudioMessage(_WhatsAppMessageBase):
    type: Literal["audio"]
    audio: WhatsAppMedia


class WhatsAppVideoMessage(_WhatsAppMessageBase):
    type: Literal["video"]
    video: WhatsAppMedia


class WhatsAppDocumentMessage(_WhatsAppMessageBase):
    type: Literal["document"]
    document: WhatsAppMedia


class WhatsAppLocationMessage(_WhatsAppMessageBase):
    type: Literal["location"]
    location: WhatsAppLocation


WhatsAppMessage = Annotated[
    Union[
        WhatsAppTextMessage,
        WhatsAppImageMessage,
        WhatsAppAudioMessage,
        WhatsAppVideoMessage,
        WhatsAppDocumentMessage,
        WhatsAppLocationMessage,
    ],
    Field(discriminator="type"),
]
_message_adapter = TypeAdapter(WhatsAppMessage)


class WhatsAppProfile(_WhatsAppModel):
    name: Optional[str] = None


class WhatsAppContact(_WhatsAppModel):
    wa_id: str
    profile: Optional[WhatsAppProfile] = None


class WhatsAppStatusError(_WhatsAppModel):
    code: Optional[int] = None
    title: Optional[str] = None


class WhatsAppStatus(_WhatsAppModel):
    id: str
    status: str
    recipient_id: Optional[str] = None
    errors: List[WhatsAppStatusError] = []


class WhatsAppValue(_WhatsAppModel):
    messaging_product: Literal["whatsapp"]
    contacts: List[WhatsAppContact] = []
    messages: List[Dict[str, Any]] = []  # validated one by one
    statuses: List[WhatsAppStatus] = []


class WhatsAppChange(_WhatsAppModel):
    field: str
    value: Dict[str, Any]


class WhatsAppEntry(_WhatsAppModel):
    id: str
    changes: List[WhatsAppChange] = []


class WhatsAppWebhookPayload(_WhatsAppModel):
    object: Literal["whatsapp_business_account"]
    entry: List[WhatsAppEntry]


@dataclass
class WhatsAppBatch:
    messages: List[InboundMessage] = field(default_factory=list)
    statuses: List[DeliveryStatus] = field(default_factory=list)


def _content_of(msg) -> tuple:
    if isinstance(msg, WhatsAppTextMessage):
        return MessageType.TEXT, msg.text.body, None
    if isinstance(msg, WhatsAppImageMessage):
        return MessageType.IMAGE, msg.image.caption or "[Image]", msg.image.id
    if isinstance(msg, WhatsAppAudioMessage):
        return MessageType.AUDIO, "[Audio message]", msg.audio.id
    if isinstance(msg, WhatsAppVideoMessage):
        return MessageType.VIDEO, msg.video.caption or "[Video]", msg.video.id
    if isinstance(msg, WhatsAppDocumentMessage):
        name = msg.document.filename or "file"
        return MessageType.DOCUMENT, msg.document.caption or f"[Document: {name}]", msg.document.id
    loc = msg.location
    text = f"Location: {loc.latitude}, {loc.longitude}"
    if loc.name:
        text += f" ({loc.name})"
    return MessageType.LOCATION, text, None


def normalize_payload(payload: WhatsAppWebhookPayload) -> WhatsAppBatch:
    """Flatten an envelope into inbound messages and delivery receipts."""
    batch = WhatsAppBatch()
    for entry in payload.entry:
        for change in entry.changes:
            if change.field != "messages":
                logger.debug("[WHATSAPP] Ignoring change field %s", change.field)
                continue
            value = WhatsAppValue.model_validate(change.value)
            names = {c.wa_id: c.profile.name for c in value.contacts if c.profile}

            for raw in value.messages:
                try:
                    msg = _message_adapter.validate_python(raw)
                except ValidationError:
                    logger.info("[WHATSAPP] Skipping unsupported message type %r", raw.get("type"))
                    continue
                message_type, text, media_ref = _content_of(msg)
                connect_token = parse_start_text(text) if message_type == MessageType.TEXT else None
                command = command_args = None
                if message_type == MessageType.TEXT and text.strip().startswith("/"):
                    head, _, rest = text.strip()[1:].partition(" ")
                    command, command_args = head.lower(), rest.strip() or None
                elif connect_token:
                    command, command_args = "start", connect_token
                batch.messages.append(InboundMessage(
                    platform=Platform.WHATSAPP,
                    external_message_id=msg.id,
                    peer_identifier=msg.from_number,
                    message_type=message_type,
                    content=text,
                    sender_identifier=msg.from_number,
                    username=names.get(msg.from_number),
                    media_reference=media_ref,
                    command=command,
                    command_args=command_args,
                    connect_token=connect_token,
                    raw_payload=raw,
                ))

            for status in value.statuses:
                batch.statuses.append(DeliveryStatus(
                    platform=Platform.WHATSAPP,
                    external_message_id=status.id,
                    status=status.status,
                    recipient=status.recipient_id,
                    error=status.errors[0].title if status.errors else None,
                ))
    return batch


# ── Client ─────────────────────────────────────────────────────

class WhatsAppClient(PlatformClient):
    """WhatsApp Cloud API client (Graph API over httpx)."""

    platform = Platform.WHATSAPP

    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        display_number: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.display_number = re.sub(r"\D", "", display_number) if display_number else None
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=GRAPH_API,
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout,
                transport=self._transport,
            )
            logger.info("[WHATSAPP] Client started (phone_id=%s)", self.phone_number_id)

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None
        logger.info("[WHATSAPP] Client stopped")

    # ── Outbound ───────────────────────────────────────────────

    async def send_text(self, recipient: str, text: str) -> SendResult:
        await self.start()
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": recipient,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        try:
            resp = await self._http.post(f"/{self.phone_number_id}/messages", json=payload)
        except httpx.HTTPError as e:
            logger.warning("[WHATSAPP] Send to %s failed: %s", recipient, e)
            return SendResult(ok=False, error=str(e) or e.__class__.__name__)

        if resp.status_code >= 400:
            logger.warning("[WHATSAPP] Send to %s rejected (%s): %s", recipient, resp.status_code, resp.text[:300])
            return SendResult(ok=False, error=f"HTTP {resp.status_code}: {resp.text[:300]}")

        messages = resp.json().get("messages") or []
        message_id = messages[0].get("id") if messages else None
        return SendResult(ok=True, external_message_id=message_id)

    async def connect_link(self, token: str) -> str:
        if not self.display_number:
            raise CollaboratorNotConfigured("whatsapp client", ["WHATSAPP_DISPLAY_NUMBER"])
        return f"https://wa.me/{self.display_number}?text={quote(self.start_command(token))}"

    def start_command(self, token: str) -> str:
        return f"START {token}"
