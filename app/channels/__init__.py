from app.channels.base import (
    Platform, MessageType, InboundMessage, SendResult, DeliveryStatus,
    PlatformClient, UnconfiguredPlatformClient, CollaboratorNotConfigured,
)
from app.channels.telegram_channel import TelegramClient
from app.channels.whatsapp_channel import WhatsAppClient

__all__ = [
    "Platform",
    "MessageType",
    "InboundMessage",
    "SendResult",
    "DeliveryStatus",
    "PlatformClient",
    "UnconfiguredPlatformClient",
    "CollaboratorNotConfigured",
    "TelegramClient",
    "WhatsAppClient",
]
