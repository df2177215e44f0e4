"""
Message Relay: the per-message pipeline behind both platform webhooks.

For one verified, normalised inbound message:

 1. drop it if (platform, external id) was already accepted
 2. connect handshake (/start <token>, START <token>) binds the chat
 3. find the live connection for the chat, else send a connect prompt
 4. subscription gate (active / trialing)
 5. non-billed commands (/balance, /topup, /help)
 6. rate limit per chat, then debit credits (idempotent per inbound message)
 7. persist the IncomingMessage and the user turn
 8. ask the AI for a reply (fallback text on failure)
 9. persist + send the reply, record sent / failed
10. append the assistant turn

Each step opens its own short session; nothing holds a database
transaction while waiting on the AI or a platform.
"""

import asyncio
import logging
from datetime import timedelta
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.channels.base import (
    CollaboratorNotConfigured,
    DeliveryStatus,
    InboundMessage,
    Platform,
    PlatformClient,
    SendResult,
)
from app.config import Settings
from app.db.models import (
    ALLOWED_SUBSCRIPTION_STATUSES,
    ConversationRole,
    IncomingMessage,
    OutgoingMessage,
    OutgoingStatus,
    User,
    utcnow,
)
from app.logging_config import clear_relay_context, set_relay_context
from app.services.ai_service import FALLBACK_REPLY, AIResponder, history_to_messages, sanitize_reply
from app.services.billing_sync import BillingSync
from app.services.connection_registry import (
    ConnectionRegistry,
    IdentifierConflict,
    InvalidToken,
    PlatformMismatch,
)
from app.services.conversation_store import ConversationStore
from app.services.credit_ledger import CreditLedger, CreditReason, DebitResult

logger = logging.getLogger(__name__)

BALANCE_COMMANDS = {"balance", "credits"}
TOPUP_COMMANDS = {"topup", "top-up"}
HELP_COMMANDS = {"help", "start"}


class RelayOutcome(str, Enum):
    DUPLICATE = "duplicate"
    CONNECTED = "connected"
    CONNECT_REJECTED = "connect_rejected"
    NOT_CONNECTED = "not_connected"
    CONNECTION_INACTIVE = "connection_inactive"
    ACCOUNT_MISSING = "account_missing"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    COMMAND = "command"
    RATE_LIMITED = "rate_limited"
    NO_CREDITS = "no_credits"
    CREDITS_UNAVAILABLE = "credits_unavailable"
    REPLIED = "replied"
    SEND_FAILED = "send_failed"
    ERROR = "error"


@dataclass
class RelayPolicy:
    """Knobs for the pipeline, usually built from Settings."""

    frontend_url: str = "http://localhost:3000"
    assistant_name: str = "Kin"
    credits_per_message: int = 1
    history_limit: int = 10
    connect_token_ttl_hours: int = 24
    monthly_credits: int = 10_000
    topup_credits: int = 5_000
    platform_send_timeout: float = 10.0
    ai_timeout: float = 180.0
    refund_on_send_failure: bool = False
    recover_allowance_on_empty: bool = True
    sync_subscription_on_gate_miss: bool = True
    subscription_sync_cooldown: float = 300.0
    messages_per_minute: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "RelayPolicy":
        return cls(
            frontend_url=settings.frontend_url.rstrip("/"),
            assistant_name=settings.assistant_name,
            credits_per_message=settings.credits_per_message,
            history_limit=settings.history_limit,
            connect_token_ttl_hours=settings.connect_token_ttl_hours,
            monthly_credits=settings.monthly_credits,
            topup_credits=settings.topup_credits,
            platform_send_timeout=settings.platform_send_timeout_seconds,
            ai_timeout=settings.ai_total_timeout_seconds,
            refund_on_send_failure=settings.refund_on_send_failure,
            recover_allowance_on_empty=settings.recover_allowance_on_empty,
            sync_subscription_on_gate_miss=settings.sync_subscription_on_gate_miss,
            subscription_sync_cooldown=settings.subscription_sync_cooldown_seconds,
            messages_per_minute=settings.messages_per_minute,
        )


class Replies:
    """User-facing texts sent by the relay itself."""

    def __init__(self, policy: RelayPolicy):
        self.url = policy.frontend_url
        self.name = policy.assistant_name

    def not_connected(self) -> str:
        return (
            f"Hi! I'm {self.name}. To chat with me here, connect this chat to your account: "
            f"{self.url}/connect\n"
            f"No account yet? Subscribe at {self.url}/subscribe"
        )

    def connection_inactive(self) -> str:
        return (
            f"This chat is no longer connected to a {self.name} account. "
            f"Create a new connect link at {self.url}/connect"
        )

    def invalid_link(self) -> str:
        return f"That connect link is invalid or expired. Generate a new one at {self.url}/connect"

    def wrong_platform(self, platform: str) -> str:
        return (
            "That connect link is for a different platform. "
            f"Generate a {platform.title()} link at {self.url}/connect"
        )

    def link_already_used(self) -> str:
        return f"That connect link is already used by another chat. Generate a new one at {self.url}/connect"

    def connected(self) -> str:
        return f"✅ Connected successfully! You can chat with {self.name} here now. Send /help for commands."

    def account_missing(self) -> str:
        return f"Your {self.name} account isn't available. Please contact support."

    def subscription_inactive(self) -> str:
        return f"Your subscription is not active yet. Manage it here: {self.url}/account"

    def out_of_credits(self) -> str:
        return f"You're out of credits. Top up here: {self.url}/top-up"

    def credits_unavailable(self) -> str:
        return "We couldn't verify your credits right now. Please try again in ~30 seconds."

    def rate_limited(self) -> str:
        return "You're sending messages too fast. Please wait a minute and try again."

    def balance(self, credits: int) -> str:
        return f"You have {credits:,} credits left."

    def topup(self) -> str:
        return f"Top up your credits here: {self.url}/top-up"

    def help(self) -> str:
        return (
            f"Just send me a message and {self.name} will answer.\n\n"
            "/balance - credits left\n"
            "/topup - buy more credits\n"
            "/help - this message"
        )


def debit_reference(inbound: InboundMessage) -> str:
    return f"{inbound.platform.value}:inbound:{inbound.external_message_id}"


class MessageRelay:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        clients: Dict[Platform, PlatformClient],
        responder: AIResponder,
        policy: Optional[RelayPolicy] = None,
        billing_gateway=None,
    ):
        self.session_maker = session_maker
        self.clients = clients
        self.responder = responder
        self.policy = policy or RelayPolicy()
        self.billing_gateway = billing_gateway
        self.replies = Replies(self.policy)

    # ── Entry points ───────────────────────────────────────────

    async def process(self, inbound: InboundMessage) -> RelayOutcome:
        """Run the pipeline; never raises (webhook background task entry point)."""
        clear_relay_context()
        set_relay_context(platform=inbound.platform.value, message_id=inbound.external_message_id)
        try:
            outcome = await self.handle(inbound)
        except Exception:
            logger.exception("Relay failed for inbound message")
            return RelayOutcome.ERROR
        logger.info(f"Relay outcome: {outcome.value}")
        return outcome

    async def handle(self, inbound: InboundMessage) -> RelayOutcome:
        if await self._already_received(inbound):
            return RelayOutcome.DUPLICATE

        if inbound.connect_token or (inbound.command == "start" and inbound.command_args):
            return await self._handle_connect(inbound)

        # Connection gate
        async with self.session_maker() as db:
            registry = ConnectionRegistry(db, self.policy.connect_token_ttl_hours)
            connection = await registry.find_active(inbound.platform, inbound.peer_identifier)
            if connection is None:
                previous = await registry.find_latest(inbound.platform, inbound.peer_identifier)
                user = None
            else:
                previous = None
                user = await db.get(User, connection.user_id)

        if connection is None:
            if previous is not None:
                await self._notify(inbound, self.replies.connection_inactive())
                return RelayOutcome.CONNECTION_INACTIVE
            await self._notify(inbound, self.replies.not_connected())
            return RelayOutcome.NOT_CONNECTED

        set_relay_context(connection_id=connection.id)
        if user is None or not user.is_active:
            logger.warning(f"Connection {connection.id[:8]} has no usable user")
            await self._notify(inbound, self.replies.account_missing())
            return RelayOutcome.ACCOUNT_MISSING

        # Subscription gate
        status = user.subscription_status
        if status not in ALLOWED_SUBSCRIPTION_STATUSES:
            status = await self._refresh_subscription(user, status)
        if status not in ALLOWED_SUBSCRIPTION_STATUSES:
            await self._notify(inbound, self.replies.subscription_inactive())
            return RelayOutcome.SUBSCRIPTION_INACTIVE

        if inbound.command and await self._handle_command(inbound, user.id):
            return RelayOutcome.COMMAND

        if await self._rate_limited(inbound):
            await self._notify(inbound, self.replies.rate_limited())
            return RelayOutcome.RATE_LIMITED

        # Credit gate
        try:
            debit = await self._charge(user.id, inbound)
        except Exception:
            logger.exception(f"Credit check failed for user {user.id}")
            await self._notify(inbound, self.replies.credits_unavailable())
            return RelayOutcome.CREDITS_UNAVAILABLE
        if debit.duplicate:
            return RelayOutcome.DUPLICATE
        if not debit.ok:
            await self._notify(inbound, self.replies.out_of_credits())
            return RelayOutcome.NO_CREDITS

        incoming_id = await self._persist_incoming(connection.id, inbound)
        if incoming_id is None:
            return RelayOutcome.DUPLICATE

        # Conversation + context
        async with self.session_maker() as db:
            store = ConversationStore(db)
            conversation = await store.get_or_create(user.id, connection.id, inbound.platform.value)
            await store.append(
                conversation.id,
                ConversationRole.USER.value,
                inbound.content,
                message_type=inbound.message_type.value,
                incoming_message_id=incoming_id,
            )
            turns = await store.history(conversation.id, self.policy.history_limit + 1)
            context = history_to_messages(
                [t for t in turns if t.incoming_message_id != incoming_id][-self.policy.history_limit:]
            )
            await ConnectionRegistry(db).touch(connection.id)
            conversation_id = conversation.id

        reply = await self._generate_reply(inbound.content, context)

        outgoing_id, result = await self._deliver(connection.id, inbound, incoming_id, reply)

        async with self.session_maker() as db:
            await ConversationStore(db).append(
                conversation_id,
                ConversationRole.ASSISTANT.value,
                reply,
                outgoing_message_id=outgoing_id,
            )

        if not result.ok:
            if self.policy.refund_on_send_failure:
                await self._refund(user.id, inbound)
            return RelayOutcome.SEND_FAILED
        return RelayOutcome.REPLIED

    async def record_delivery_status(self, status: DeliveryStatus) -> bool:
        """Apply a delivery receipt to the matching OutgoingMessage."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(OutgoingMessage).where(
                    OutgoingMessage.platform == status.platform.value,
                    OutgoingMessage.external_message_id == status.external_message_id,
                )
            )
            outgoing = result.scalar_one_or_none()
            if outgoing is None:
                return False

            if status.status in ("delivered", "read"):
                if outgoing.status != OutgoingStatus.DELIVERED.value:
                    outgoing.status = OutgoingStatus.DELIVERED.value
                    outgoing.delivered_at = utcnow()
            elif status.status == "failed":
                if outgoing.status != OutgoingStatus.DELIVERED.value:
                    outgoing.status = OutgoingStatus.FAILED.value
                    outgoing.error_message = status.error or "delivery failed"
            elif status.status == "sent" and outgoing.status == OutgoingStatus.PENDING.value:
                outgoing.status = OutgoingStatus.SENT.value
            await db.commit()
            return True

    # ── Steps ──────────────────────────────────────────────────

    async def _already_received(self, inbound: InboundMessage) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(
                select(IncomingMessage.id).where(
                    IncomingMessage.platform == inbound.platform.value,
                    IncomingMessage.external_message_id == inbound.external_message_id,
                )
            )
            return result.scalar_one_or_none() is not None

    async def _persist_incoming(
        self, connection_id: str, inbound: InboundMessage, content: Optional[str] = None
    ) -> Optional[str]:
        """Insert the IncomingMessage; None when another delivery got there first."""
        async with self.session_maker() as db:
            incoming = IncomingMessage(
                connection_id=connection_id,
                platform=inbound.platform.value,
                external_message_id=inbound.external_message_id,
                from_identifier=inbound.peer_identifier,
                message_type=inbound.message_type.value,
                content=inbound.content if content is None else content,
                media_reference=inbound.media_reference,
                metadata_json=inbound.raw_payload,
            )
            db.add(incoming)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return None
            return incoming.id

    async def _handle_connect(self, inbound: InboundMessage) -> RelayOutcome:
        platform = inbound.platform.value
        connection_id = None
        async with self.session_maker() as db:
            registry = ConnectionRegistry(db, self.policy.connect_token_ttl_hours)
            try:
                connection = await registry.bind(
                    inbound.connect_token or "",
                    platform,
                    inbound.peer_identifier,
                    platform_username=inbound.username,
                    metadata={"sender_identifier": inbound.sender_identifier} if inbound.sender_identifier else None,
                )
                connection_id = connection.id
            except InvalidToken:
                reply = self.replies.invalid_link()
            except PlatformMismatch as e:
                reply = self.replies.wrong_platform(e.expected)
            except IdentifierConflict:
                reply = self.replies.link_already_used()

        if connection_id is None:
            await self._notify(inbound, reply)
            return RelayOutcome.CONNECT_REJECTED

        set_relay_context(connection_id=connection_id)
        # Record the handshake without the token so replays stop at the first step
        command_word = (inbound.content.split() or ["/start"])[0]
        if await self._persist_incoming(connection_id, inbound, content=command_word) is None:
            return RelayOutcome.DUPLICATE
        await self._notify(inbound, self.replies.connected())
        return RelayOutcome.CONNECTED

    async def _handle_command(self, inbound: InboundMessage, user_id: str) -> bool:
        """Answer a non-billed command. False when the command is not one of ours."""
        command = inbound.command
        if command in BALANCE_COMMANDS:
            async with self.session_maker() as db:
                balance = await CreditLedger(db).get_balance(user_id)
            text = self.replies.balance(balance)
        elif command in TOPUP_COMMANDS:
            text = self.replies.topup()
        elif command in HELP_COMMANDS:
            text = self.replies.help()
        else:
            return False
        await self._notify(inbound, text)
        return True

    async def _refresh_subscription(self, user: User, status: str) -> str:
        """
        Best-effort pull from billing when the local status blocks the user.

        At most one pull per user per cooldown; blocked users who keep
        messaging are answered from the local status in between.
        """
        if not self.policy.sync_subscription_on_gate_miss or self.billing_gateway is None:
            return status
        checked_at = user.subscription_checked_at
        cooldown = timedelta(seconds=self.policy.subscription_sync_cooldown)
        if checked_at is not None and utcnow() - checked_at < cooldown:
            return status
        try:
            async with self.session_maker() as db:
                billing = BillingSync(db, self.billing_gateway, self.policy.monthly_credits, self.policy.topup_credits)
                return await billing.sync_subscription_status_for_user(user.id) or status
        except Exception as e:
            logger.warning(f"Subscription refresh failed for user {user.id}: {e}")
            return status

    async def _rate_limited(self, inbound: InboundMessage) -> bool:
        """True when this chat already had ``messages_per_minute`` messages accepted in the last minute."""
        limit = self.policy.messages_per_minute
        if limit <= 0:
            return False
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count(IncomingMessage.id)).where(
                    IncomingMessage.platform == inbound.platform.value,
                    IncomingMessage.from_identifier == inbound.peer_identifier,
                    IncomingMessage.received_at >= utcnow() - timedelta(minutes=1),
                )
            )
            recent = result.scalar_one()
        if recent >= limit:
            logger.warning(f"Rate limit hit: {recent} messages in the last minute")
            return True
        return False

    async def _charge(self, user_id: str, inbound: InboundMessage) -> DebitResult:
        """Debit one message, retrying once after recovering a missed allowance."""
        debit = await self._debit(user_id, inbound)
        if not debit.ok and self.policy.recover_allowance_on_empty and await self._recover_allowance(user_id):
            debit = await self._debit(user_id, inbound)
        return debit

    async def _debit(self, user_id: str, inbound: InboundMessage) -> DebitResult:
        async with self.session_maker() as db:
            return await CreditLedger(db).debit_credits(
                user_id,
                self.policy.credits_per_message,
                CreditReason.MESSAGE,
                reference=debit_reference(inbound),
                metadata={"platform": inbound.platform.value},
            )

    async def _recover_allowance(self, user_id: str) -> bool:
        async with self.session_maker() as db:
            billing = BillingSync(db, self.billing_gateway, self.policy.monthly_credits, self.policy.topup_credits)
            recovered = await billing.recover_monthly_allowance(user_id)
        if recovered:
            logger.info(f"Recovered monthly allowance for user {user_id}")
        return recovered

    async def _refund(self, user_id: str, inbound: InboundMessage) -> None:
        async with self.session_maker() as db:
            await CreditLedger(db).apply_transaction(
                user_id,
                self.policy.credits_per_message,
                CreditReason.REFUND,
                reference=f"{debit_reference(inbound)}:refund",
            )

    async def _generate_reply(self, message: str, history: List[Dict[str, str]]) -> str:
        try:
            text = await asyncio.wait_for(
                self.responder.respond(message, history), timeout=self.policy.ai_timeout
            )
        except CollaboratorNotConfigured as e:
            logger.error(f"AI reply unavailable: {e}")
            return FALLBACK_REPLY
        except asyncio.TimeoutError:
            logger.error(f"AI reply timed out after {self.policy.ai_timeout}s")
            return FALLBACK_REPLY
        except Exception:
            logger.exception("AI reply failed")
            return FALLBACK_REPLY
        return sanitize_reply(message, text, self.policy.assistant_name)

    async def _deliver(
        self, connection_id: str, inbound: InboundMessage, incoming_id: str, text: str
    ) -> Tuple[str, SendResult]:
        async with self.session_maker() as db:
            outgoing = OutgoingMessage(
                connection_id=connection_id,
                platform=inbound.platform.value,
                to_identifier=inbound.peer_identifier,
                content=text,
                status=OutgoingStatus.PENDING.value,
                in_reply_to_id=incoming_id,
            )
            db.add(outgoing)
            await db.commit()
            outgoing_id = outgoing.id

        result = await self._send(inbound.platform, inbound.peer_identifier, text)

        async with self.session_maker() as db:
            outgoing = await db.get(OutgoingMessage, outgoing_id)
            if result.ok:
                outgoing.status = OutgoingStatus.SENT.value
                outgoing.external_message_id = result.external_message_id
                outgoing.sent_at = utcnow()
            else:
                outgoing.status = OutgoingStatus.FAILED.value
                outgoing.error_message = (result.error or "send failed")[:2000]
            await db.commit()

        if not result.ok:
            logger.warning(f"Reply not delivered: {result.error}")
        return outgoing_id, result

    async def _send(self, platform: Platform, recipient: str, text: str) -> SendResult:
        client = self.clients.get(platform)
        if client is None:
            return SendResult(ok=False, error=f"no client for {platform.value}")
        try:
            return await asyncio.wait_for(
                client.send_text(recipient, text), timeout=self.policy.platform_send_timeout
            )
        except asyncio.TimeoutError:
            return SendResult(ok=False, error=f"send timed out after {self.policy.platform_send_timeout}s")
        except Exception as e:
            logger.exception(f"{platform.value} send raised")
            return SendResult(ok=False, error=str(e) or e.__class__.__name__)

    async def _notify(self, inbound: InboundMessage, text: str) -> None:
        """Send a relay-authored notice (not persisted, not billed)."""
        result = await self._send(inbound.platform, inbound.peer_identifier, text)
        if not result.ok:
            logger.warning(f"Notice to {inbound.platform.value} chat not delivered: {result.error}")
