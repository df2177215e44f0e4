"""
Channel Base: platform-neutral message types and the outbound client interface.

Every platform adapter (Telegram, WhatsApp) normalises its webhook payload
into an ``InboundMessage`` and implements ``PlatformClient`` for replies,
so the relay pipeline never touches a platform-specific shape.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Data objects
# ------------------------------------------------------------------

class Platform(str, Enum):
    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    LOCATION = "location"


@dataclass
class InboundMessage:
    """Normalised inbound message from any platform."""

    platform: Platform
    external_message_id: str      # Platform message id, unique per platform
    peer_identifier: str          # Chat id (Telegram) / phone number (WhatsApp)
    message_type: MessageType = MessageType.TEXT
    content: str = ""
    sender_identifier: Optional[str] = None
    username: Optional[str] = None
    media_reference: Optional[str] = None  # platform file/media id, never downloaded here
    command: Optional[str] = None          # "start", "balance", ... without the slash
    command_args: Optional[str] = None
    connect_token: Optional[str] = None    # set when the message is a connect handshake
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_handshake(self) -> bool:
        return self.connect_token is not None


@dataclass
class DeliveryStatus:
    """Delivery receipt for a message we sent."""

    platform: Platform
    external_message_id: str
    status: str                   # sent | delivered | read | failed
    recipient: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SendResult:
    ok: bool
    external_message_id: Optional[str] = None
    error: Optional[str] = None


class CollaboratorNotConfigured(RuntimeError):
    """An external collaborator was used without the credentials it needs."""

    def __init__(self, name: str, missing: List[str]):
        self.name = name
        self.missing = list(missing)
        super().__init__(f"{name} is not configured (missing: {', '.join(self.missing)})")


# ------------------------------------------------------------------
# Outbound client
# ------------------------------------------------------------------

class PlatformClient(ABC):
    """
    Outbound side of a platform adapter.

    Subclasses must implement:
    * ``send_text()``: deliver a text reply, returning a ``SendResult``
      (never raising for platform errors).
    * ``connect_link()``: build the deep link that carries a connect token.
    """

    platform: Platform
    configured: bool = True

    async def start(self) -> None:
        """Open network resources."""

    async def stop(self) -> None:
        """Release network resources."""

    @abstractmethod
    async def send_text(self, recipient: str, text: str) -> SendResult:
        """Send a text message to a chat / phone number."""

    @abstractmethod
    async def connect_link(self, token: str) -> str:
        """Deep link that opens the platform and submits the connect token."""

    def start_command(self, token: str) -> str:
        return f"/start {token}"


class UnconfiguredPlatformClient(PlatformClient):
    """Stand-in for a platform whose credentials are missing. Every call fails loudly."""

    configured = False

    def __init__(self, platform: Platform, missing: List[str]):
        self.platform = platform
        self.missing = list(missing)

    def _error(self) -> CollaboratorNotConfigured:
        return CollaboratorNotConfigured(f"{self.platform.value} client", self.missing)

    async def send_text(self, recipient: str, text: str) -> SendResult:
        err = self._error()
        logger.error("[%s] send to %s dropped: %s", self.platform.value.upper(), recipient, err)
        return SendResult(ok=False, error=str(err))

    async def connect_link(self, token: str) -> str:
        raise self._error()
