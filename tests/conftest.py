"""
Shared fixtures for the Kin relay tests

Every test gets its own SQLite file, an AppContext wired with fake platform
clients, a fake AI responder and (optionally) a fake Stripe gateway.
"""

import asyncio
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.channels.base import InboundMessage, Platform, PlatformClient, SendResult
from app.channels.telegram_channel import TelegramUpdate, normalize_update
from app.channels.whatsapp_channel import WhatsAppWebhookPayload, normalize_payload
from app.config import Settings
from app.context import AppContext
from app.db.database import Database
from app.db.models import SubscriptionStatus, User
from app.main import create_app
from app.services.ai_service import AIResponder
from app.services.auth_service import create_access_token
from app.services.connection_registry import ConnectionRegistry
from app.services.credit_ledger import CreditLedger, CreditReason

TELEGRAM_SECRET = "tg-webhook-secret"
WHATSAPP_APP_SECRET = "wa-app-secret"
WHATSAPP_VERIFY_TOKEN = "wa-verify-token"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


# ============ Fakes ============

class FakePlatformClient(PlatformClient):
    """Records every send; optionally fails them."""

    def __init__(self, platform: Platform, fail: bool = False):
        self.platform = platform
        self.fail = fail
        self.sent: List[tuple] = []
        self._counter = 0

    async def send_text(self, recipient: str, text: str) -> SendResult:
        self.sent.append((recipient, text))
        if self.fail:
            return SendResult(ok=False, error="platform unavailable")
        self._counter += 1
        return SendResult(ok=True, external_message_id=f"{self.platform.value}-out-{self._counter}")

    async def connect_link(self, token: str) -> str:
        return f"https://{self.platform.value}.example/connect?start={token}"

    @property
    def texts(self) -> List[str]:
        return [text for _, text in self.sent]


class FakeResponder(AIResponder):
    def __init__(self, reply: str = "Hello from Kin", error: Optional[Exception] = None, delay: float = 0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    async def respond(self, message: str, history: List[Dict[str, str]]) -> str:
        self.calls.append((message, list(history)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeGateway:
    """Stands in for StripeGateway; subscriptions are plain Stripe-shaped dicts."""

    def __init__(self):
        self.subscriptions: Dict[str, dict] = {}
        self.retrieved: List[str] = []
        self.listed: List[str] = []

    def add(self, sub: dict) -> dict:
        self.subscriptions[sub["id"]] = sub
        return sub

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        self.retrieved.append(subscription_id)
        return self.subscriptions[subscription_id]

    async def list_subscriptions(self, customer_id: str) -> List[dict]:
        self.listed.append(customer_id)
        return [s for s in self.subscriptions.values() if s.get("customer") == customer_id]


def stripe_subscription(
    sub_id: str = "sub_123",
    customer: str = "cus_123",
    status: str = "active",
    period_start: int = 1_760_000_000,
    period_end: int = 1_762_592_000,
    **extra,
) -> dict:
    sub = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": "price_monthly"}}]},
        "metadata": {},
    }
    sub.update(extra)
    return sub


# ============ Inbound builders ============

def telegram_inbound(chat_id: int, message_id: int, text: str, username: str = "alice") -> InboundMessage:
    update = TelegramUpdate.model_validate({
        "update_id": 10_000 + message_id,
        "message": {
            "message_id": message_id,
            "date": 1_760_000_000,
            "chat": {"id": chat_id, "type": "private", "username": username},
            "from": {"id": chat_id, "is_bot": False, "first_name": "Alice", "username": username},
            "text": text,
        },
    })
    return normalize_update(update)


def whatsapp_payload(messages: List[dict], statuses: Optional[List[dict]] = None) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "waba-1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "15550001111", "phone_number_id": "pn-1"},
                    "contacts": [{"wa_id": "15551234567", "profile": {"name": "Bob"}}],
                    "messages": messages,
                    "statuses": statuses or [],
                },
            }],
        }],
    }


def whatsapp_text(message_id: str, text: str, sender: str = "15551234567") -> dict:
    return {"from": sender, "id": message_id, "timestamp": "1760000000", "type": "text", "text": {"body": text}}


def whatsapp_inbound(message_id: str, text: str, sender: str = "15551234567") -> InboundMessage:
    payload = WhatsAppWebhookPayload.model_validate(whatsapp_payload([whatsapp_text(message_id, text, sender)]))
    return normalize_payload(payload).messages[0]


# ============ Fixtures ============

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        jwt_secret="test-jwt-secret",
        frontend_url="https://kin.example",
        telegram_webhook_secret=TELEGRAM_SECRET,
        whatsapp_app_secret=WHATSAPP_APP_SECRET,
        whatsapp_verify_token=WHATSAPP_VERIFY_TOKEN,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        monthly_credits=100,
        topup_credits=50,
        enable_scheduler=False,
        platform_send_timeout_seconds=2.0,
        ai_total_timeout_seconds=2.0,
    )


@pytest_asyncio.fixture
async def database(settings: Settings):
    """Create a fresh database for each test"""
    db = Database(settings.database_url)
    await db.init()
    yield db
    await db.drop()
    await db.dispose()


@pytest_asyncio.fixture
async def db_session(database: Database):
    """Get a database session"""
    async with database.session_maker() as session:
        yield session


@pytest.fixture
def telegram_client() -> FakePlatformClient:
    return FakePlatformClient(Platform.TELEGRAM)


@pytest.fixture
def whatsapp_client() -> FakePlatformClient:
    return FakePlatformClient(Platform.WHATSAPP)


@pytest.fixture
def responder() -> FakeResponder:
    return FakeResponder()


@pytest.fixture
def gateway() -> Optional[FakeGateway]:
    """No billing gateway unless a test overrides this fixture."""
    return None


@pytest.fixture
def context(settings, database, telegram_client, whatsapp_client, responder, gateway) -> AppContext:
    return AppContext(
        settings=settings,
        database=database,
        clients={Platform.TELEGRAM: telegram_client, Platform.WHATSAPP: whatsapp_client},
        responder=responder,
        billing_gateway=gateway,
    )


@pytest.fixture
def relay(context: AppContext):
    return context.relay


@pytest_asyncio.fixture
async def client(context: AppContext):
    """Create an async test client against the prebuilt context"""
    app = create_app(context=context)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_user(database: Database):
    """Factory: a committed user with a subscription status and starting credits."""

    async def _make_user(
        email: str = "alice@example.com",
        status: str = SubscriptionStatus.ACTIVE.value,
        credits: int = 10,
        customer_id: Optional[str] = None,
    ) -> User:
        async with database.session_maker() as db:
            user = User(email=email, subscription_status=status, external_billing_customer_id=customer_id)
            db.add(user)
            await db.commit()
            if credits:
                await CreditLedger(db).apply_transaction(user.id, credits, CreditReason.ADJUSTMENT)
            return user

    return _make_user


@pytest.fixture
def connect(database: Database):
    """Factory: bind a chat identity to a user through the registry."""

    async def _connect(user: User, platform: Platform, identifier: str):
        async with database.session_maker() as db:
            registry = ConnectionRegistry(db)
            pending = await registry.create_pending(user.id, platform)
            return await registry.bind(pending.id, platform, identifier)

    return _connect


@pytest.fixture
def auth_headers(settings: Settings):
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id, settings)}"}

    return _headers
