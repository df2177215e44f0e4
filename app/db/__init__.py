from app.db.models import (
    Base, User, Subscription, SubscriptionStatus, ALLOWED_SUBSCRIPTION_STATUSES,
    BotConnection, IncomingMessage, OutgoingMessage, OutgoingStatus,
    Conversation, ConversationMessage, ConversationRole,
    CreditBalance, CreditTransaction, WebhookEvent,
    utcnow, generate_connect_token,
)
from app.db.database import Database, create_engine_for_url

__all__ = [
    "Base",
    "User",
    "Subscription",
    "SubscriptionStatus",
    "ALLOWED_SUBSCRIPTION_STATUSES",
    # Connections & messages
    "BotConnection",
    "IncomingMessage",
    "OutgoingMessage",
    "OutgoingStatus",
    "Conversation",
    "ConversationMessage",
    "ConversationRole",
    # Credits
    "CreditBalance",
    "CreditTransaction",
    # Billing
    "WebhookEvent",
    # Helpers
    "utcnow",
    "generate_connect_token",
    # Database
    "Database",
    "create_engine_for_url",
]
