from app.services.credit_ledger import CreditLedger, CreditReason, DebitResult
from app.services.connection_registry import (
    ConnectionRegistry, RegistryError, InvalidToken, PlatformMismatch,
    IdentifierConflict, ConnectionNotFound,
)
from app.services.conversation_store import ConversationStore
from app.services.billing_sync import BillingSync
from app.services.stripe_service import StripeGateway, WebhookSignatureError, verify_webhook
from app.services.ai_service import AIResponder, OpenAIResponder, UnconfiguredResponder, sanitize_reply
from app.services.message_relay import MessageRelay, RelayOutcome, RelayPolicy
from app.services.auth_service import (
    create_access_token, decode_access_token,
    get_user_by_id, get_user_by_email, get_or_create_user,
)

__all__ = [
    "CreditLedger",
    "CreditReason",
    "DebitResult",
    # Connections
    "ConnectionRegistry",
    "RegistryError",
    "InvalidToken",
    "PlatformMismatch",
    "IdentifierConflict",
    "ConnectionNotFound",
    "ConversationStore",
    # Billing
    "BillingSync",
    "StripeGateway",
    "WebhookSignatureError",
    "verify_webhook",
    # AI
    "AIResponder",
    "OpenAIResponder",
    "UnconfiguredResponder",
    "sanitize_reply",
    # Relay
    "MessageRelay",
    "RelayOutcome",
    "RelayPolicy",
    # Auth
    "create_access_token",
    "decode_access_token",
    "get_user_by_id",
    "get_user_by_email",
    "get_or_create_user",
]
