"""
Database models for the Kin relay

- Users and their billing subscription mirror
- Bot connections (one-time connect token -> bound chat identity)
- Inbound/outbound message log, keyed by the platform's message id
- Conversations and their ordered messages
- Credit balance + append-only credit transactions
- Provider webhook event log
"""

from datetime import datetime, timezone
from typing import Optional, List
from enum import Enum
import secrets
import uuid

from sqlalchemy import (
    String, Text, DateTime, Integer, Boolean, ForeignKey, JSON, Index,
    UniqueConstraint, CheckConstraint, text,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store UTC without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_connect_token() -> str:
    """Unguessable, URL-safe id for a BotConnection (doubles as the connect token)."""
    return secrets.token_urlsafe(24)


class SubscriptionStatus(str, Enum):
    """Local subscription states (provider states are normalized into these)"""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"


# Statuses that pass the relay's subscription gate
ALLOWED_SUBSCRIPTION_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


class OutgoingStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class ConversationRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class User(Base):
    """Account that owns connections, credits and a subscription"""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    subscription_status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.INACTIVE.value)
    external_billing_customer_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    subscription_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # last pull from billing
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)  # soft-disable, users are never deleted
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    connections: Mapped[List["BotConnection"]] = relationship("BotConnection", back_populates="user")
    subscriptions: Mapped[List["Subscription"]] = relationship("Subscription", back_populates="user")


class Subscription(Base):
    """Local mirror of a billing-provider subscription"""
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    external_subscription_id: Mapped[str] = mapped_column(String(255), unique=True)
    external_price_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.INACTIVE.value)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="subscriptions")


class BotConnection(Base):
    """
    Binding between a user and one chat identity on one platform.

    The id is the connect token handed out in deep links. Lifecycle:
    pending (no identifier) -> connected -> disconnected (terminal).
    """
    __tablename__ = "bot_connections"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_connect_token)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(20))  # telegram | whatsapp
    platform_identifier: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # chat id / phone
    platform_username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    disconnected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="connections")

    __table_args__ = (
        # At most one live binding per chat identity, and per (user, platform)
        Index(
            "uq_bot_connections_live_identity", "platform", "platform_identifier",
            unique=True,
            sqlite_where=text("is_connected = 1"),
            postgresql_where=text("is_connected"),
        ),
        Index(
            "uq_bot_connections_live_user_platform", "user_id", "platform",
            unique=True,
            sqlite_where=text("is_connected = 1"),
            postgresql_where=text("is_connected"),
        ),
        Index("ix_bot_connections_identity", "platform", "platform_identifier"),
    )

    @property
    def is_pending(self) -> bool:
        return not self.is_connected and self.disconnected_at is None


class IncomingMessage(Base):
    """Every accepted inbound platform message (the idempotency log)"""
    __tablename__ = "incoming_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    connection_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("bot_connections.id"), nullable=True, index=True)
    platform: Mapped[str] = mapped_column(String(20))
    external_message_id: Mapped[str] = mapped_column(String(128))
    from_identifier: Mapped[str] = mapped_column(String(64))
    message_type: Mapped[str] = mapped_column(String(20), default="text")
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_reference: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # raw payload
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("platform", "external_message_id", name="uq_incoming_messages_platform_external"),
        Index("ix_incoming_messages_sender_time", "platform", "from_identifier", "received_at"),
    )


class OutgoingMessage(Base):
    """Reply sent (or attempted) to a platform"""
    __tablename__ = "outgoing_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    connection_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("bot_connections.id"), nullable=True, index=True)
    platform: Mapped[str] = mapped_column(String(20))
    external_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)  # known after send
    to_identifier: Mapped[str] = mapped_column(String(64))
    message_type: Mapped[str] = mapped_column(String(20), default="text")
    content: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=OutgoingStatus.PENDING.value, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    in_reply_to_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("incoming_messages.id"), nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("platform", "external_message_id", name="uq_outgoing_messages_platform_external"),
    )


class Conversation(Base):
    """One conversation per (user, connection)"""
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    connection_id: Mapped[str] = mapped_column(String(64), ForeignKey("bot_connections.id"), nullable=False)
    platform: Mapped[str] = mapped_column(String(20))
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    messages: Mapped[List["ConversationMessage"]] = relationship(
        "ConversationMessage", back_populates="conversation", order_by="ConversationMessage.id"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "connection_id", name="uq_conversations_user_connection"),
    )


class ConversationMessage(Base):
    """Ordered turn inside a conversation; the integer id is the ordering key"""
    __tablename__ = "conversation_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(String(36), ForeignKey("conversations.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(20))  # user | assistant
    content: Mapped[str] = mapped_column(Text)
    message_type: Mapped[str] = mapped_column(String(20), default="text")
    incoming_message_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("incoming_messages.id"), nullable=True)
    outgoing_message_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("outgoing_messages.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index("ix_conversation_messages_conversation_id", "conversation_id", "id"),
    )


class CreditBalance(Base):
    """Current credit balance, one row per user, never negative"""
    __tablename__ = "credit_balances"

    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balances_non_negative"),
    )


class CreditTransaction(Base):
    """Append-only ledger entry; (user_id, reference) is the idempotency key"""
    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    delta: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String(50))  # monthly_allowance, topup, message, refund, ...
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "reference", name="uq_credit_transactions_user_reference"),
    )


class WebhookEvent(Base):
    """Provider webhook deliveries (billing), deduplicated by provider event id"""
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    source: Mapped[str] = mapped_column(String(20))  # stripe
    external_event_id: Mapped[str] = mapped_column(String(255))
    event_type: Mapped[str] = mapped_column(String(100))
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "external_event_id", name="uq_webhook_events_source_external"),
    )
