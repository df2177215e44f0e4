"""
Billing Sync: applies Stripe events to local users, subscriptions and credits.

Handled events:
- checkout.session.completed      subscription checkout, or credit top-up (payment mode)
- customer.subscription.created   mirror subscription + user status, grant allowance
- customer.subscription.updated   same (renewals move current_period_start)
- customer.subscription.deleted   canceled
- invoice.paid                    refresh subscription (renewal allowance)
- invoice.payment_failed          past_due
- customer.subscription.trial_will_end  logged only

Every Stripe event id is recorded in ``webhook_events`` so redeliveries of
a processed event are no-ops; credit grants carry their own idempotency
references on top of that.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import (
    ALLOWED_SUBSCRIPTION_STATUSES,
    Subscription,
    SubscriptionStatus,
    User,
    WebhookEvent,
    utcnow,
)
from app.services.credit_ledger import CreditLedger, CreditReason

logger = logging.getLogger(__name__)

EVENT_SOURCE = "stripe"

# Stripe subscription status -> local status
_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.TRIALING.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "incomplete": SubscriptionStatus.INACTIVE.value,
    "incomplete_expired": SubscriptionStatus.INACTIVE.value,
    "paused": SubscriptionStatus.INACTIVE.value,
}


def normalize_status(provider_status: Optional[str]) -> str:
    return _STATUS_MAP.get(provider_status or "", SubscriptionStatus.INACTIVE.value)


# Preference when a user holds several subscriptions (lower wins)
_STATUS_RANK = {
    SubscriptionStatus.ACTIVE.value: 0,
    SubscriptionStatus.TRIALING.value: 1,
    SubscriptionStatus.PAST_DUE.value: 2,
    SubscriptionStatus.CANCELED.value: 3,
    SubscriptionStatus.INACTIVE.value: 4,
}


def best_status(statuses) -> str:
    """The status that governs a user with these subscriptions."""
    return min(
        statuses,
        key=lambda s: _STATUS_RANK.get(s, len(_STATUS_RANK)),
        default=SubscriptionStatus.INACTIVE.value,
    )


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def to_epoch(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def subscription_period(sub: Dict[str, Any]) -> Tuple[Optional[int], Optional[int]]:
    """(current_period_start, current_period_end) as epoch seconds.

    Newer Stripe API versions moved the period onto subscription items.
    """
    start, end = sub.get("current_period_start"), sub.get("current_period_end")
    if start is None:
        items = (sub.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return start, end


def allowance_reference(subscription_id: str, period_start: int) -> str:
    return f"stripe:subscription_start:{subscription_id}:{period_start}"


def topup_reference(checkout_session_id: str) -> str:
    return f"stripe:topup:{checkout_session_id}"


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = invoice.get("subscription")
    if not sub_id:
        details = ((invoice.get("parent") or {}).get("subscription_details") or {})
        sub_id = details.get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    return sub_id


class BillingSync:
    """Billing state transitions bound to one session."""

    def __init__(
        self,
        db: AsyncSession,
        gateway=None,
        monthly_credits: int = 10_000,
        topup_credits: int = 5_000,
    ):
        self.db = db
        self.gateway = gateway  # StripeGateway or None when billing is unconfigured
        self.monthly_credits = monthly_credits
        self.topup_credits = topup_credits
        self.ledger = CreditLedger(db)
        self._handlers = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "customer.subscription.trial_will_end": self._on_trial_will_end,
        }

    # ── Event log ──────────────────────────────────────────────

    async def _find_event(self, event_id: str) -> Optional[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent).where(
                WebhookEvent.source == EVENT_SOURCE,
                WebhookEvent.external_event_id == event_id,
            )
        )
        return result.scalar_one_or_none()

    async def _record_event(self, event: Dict[str, Any]) -> Optional[WebhookEvent]:
        """Event row to process, or None when this event was already processed."""
        existing = await self._find_event(event["id"])
        if existing is not None:
            return None if existing.processed else existing

        record = WebhookEvent(
            source=EVENT_SOURCE,
            external_event_id=event["id"],
            event_type=event.get("type", ""),
            payload=event,
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._find_event(event["id"])
            return None if existing is None or existing.processed else existing
        return record

    async def handle_event(self, event: Dict[str, Any]) -> str:
        """Apply one verified Stripe event. Returns "processed", "duplicate" or "ignored"."""
        event_type = event.get("type", "")
        record = await self._record_event(event)
        if record is None:
            logger.info(f"Stripe event {event['id']} already processed")
            return "duplicate"

        handler = self._handlers.get(event_type)
        outcome = "processed" if handler else "ignored"
        try:
            if handler:
                await handler(event["data"]["object"])
            else:
                logger.debug(f"Ignoring Stripe event type {event_type}")
        except Exception as exc:
            await self.db.rollback()
            record = await self._find_event(event["id"])
            if record is not None:
                record.error_message = f"{exc.__class__.__name__}: {exc}"[:2000]
                await self.db.commit()
            logger.exception(f"Stripe event {event['id']} ({event_type}) failed")
            raise

        record = await self._find_event(event["id"])
        record.processed = True
        record.processed_at = utcnow()
        record.error_message = None
        await self.db.commit()
        return outcome

    # ── Users & subscriptions ──────────────────────────────────

    async def _resolve_user(
        self,
        customer_id: Optional[str] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        create: bool = False,
    ) -> Optional[User]:
        user = None
        if customer_id:
            result = await self.db.execute(
                select(User).where(User.external_billing_customer_id == customer_id)
            )
            user = result.scalar_one_or_none()
        if user is None and user_id:
            user = await self.db.get(User, user_id)
        if user is None and email:
            result = await self.db.execute(select(User).where(User.email == email.lower()))
            user = result.scalar_one_or_none()
        if user is None and create and email:
            user = User(email=email.lower())
            self.db.add(user)
            logger.info(f"Created user for billing customer {customer_id}")

        if user is not None and customer_id and not user.external_billing_customer_id:
            user.external_billing_customer_id = customer_id
        if user is not None:
            await self.db.commit()
        return user

    async def _user_for_subscription(self, sub: Dict[str, Any]) -> Optional[User]:
        customer = sub.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        metadata = sub.get("metadata") or {}
        return await self._resolve_user(customer_id=customer, user_id=metadata.get("user_id"))

    async def _derive_user_status(self, user: User) -> str:
        """Set the user's status from the best of their mirrored subscriptions."""
        await self.db.flush()
        result = await self.db.execute(select(Subscription.status).where(Subscription.user_id == user.id))
        user.subscription_status = best_status(result.scalars().all())
        return user.subscription_status

    async def upsert_subscription(
        self,
        user: User,
        sub: Dict[str, Any],
        status: Optional[str] = None,
        retry: bool = True,
        grant: bool = True,
    ) -> Subscription:
        """
        Mirror a Stripe subscription and grant its period allowance.

        The user's status follows the best of all their subscriptions, so an
        old subscription ending does not lock out one who resubscribed.
        """
        status = status or normalize_status(sub.get("status"))
        period_start, period_end = subscription_period(sub)
        items = (sub.get("items") or {}).get("data") or []
        price_id = (items[0].get("price") or {}).get("id") if items else None

        result = await self.db.execute(
            select(Subscription).where(Subscription.external_subscription_id == sub["id"])
        )
        local = result.scalar_one_or_none()
        if local is None:
            local = Subscription(user_id=user.id, external_subscription_id=sub["id"])
            self.db.add(local)

        local.user_id = user.id
        local.status = status
        local.external_price_id = price_id or local.external_price_id
        local.current_period_start = from_epoch(period_start)
        local.current_period_end = from_epoch(period_end)
        local.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))
        local.canceled_at = from_epoch(sub.get("canceled_at"))

        try:
            if await self._derive_user_status(user) == status:
                user.trial_ends_at = from_epoch(sub.get("trial_end"))
            await self.db.commit()
        except IntegrityError:
            # Inserted concurrently by another delivery; update that row instead
            await self.db.rollback()
            if not retry:
                raise
            await self.db.refresh(user)
            return await self.upsert_subscription(user, sub, status, retry=False, grant=grant)

        logger.info(f"Subscription {sub['id']} is {status}; user {user.id} is {user.subscription_status}")

        if grant and status in ALLOWED_SUBSCRIPTION_STATUSES and period_start is not None:
            await self.ledger.apply_transaction(
                user.id,
                self.monthly_credits,
                CreditReason.MONTHLY_ALLOWANCE,
                reference=allowance_reference(sub["id"], int(period_start)),
                metadata={"subscription_id": sub["id"]},
            )
        return local

    # ── Event handlers ─────────────────────────────────────────

    async def _on_checkout_completed(self, session: Dict[str, Any]):
        metadata = session.get("metadata") or {}
        email = (session.get("customer_details") or {}).get("email") or session.get("customer_email")
        user = await self._resolve_user(
            customer_id=session.get("customer"),
            user_id=metadata.get("user_id"),
            email=email,
            create=True,
        )
        if user is None:
            logger.warning(f"Checkout {session.get('id')} has no resolvable user")
            return

        if session.get("mode") == "payment":
            if metadata.get("type") != "topup" and "credits" not in metadata:
                return
            if session.get("payment_status") not in (None, "paid", "no_payment_required"):
                logger.info(f"Top-up checkout {session['id']} not paid yet")
                return
            credits = int(metadata.get("credits") or self.topup_credits)
            await self.ledger.apply_transaction(
                user.id,
                credits,
                CreditReason.TOPUP,
                reference=topup_reference(session["id"]),
                metadata={"checkout_session_id": session["id"]},
            )
            return

        subscription_id = session.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        if subscription_id and self.gateway is not None:
            sub = await self.gateway.retrieve_subscription(subscription_id)
            await self.upsert_subscription(user, sub)

    async def _on_subscription_changed(self, sub: Dict[str, Any]):
        user = await self._user_for_subscription(sub)
        if user is None:
            logger.warning(f"Subscription {sub.get('id')} has no matching user")
            return
        await self.upsert_subscription(user, sub)

    async def _on_subscription_deleted(self, sub: Dict[str, Any]):
        user = await self._user_for_subscription(sub)
        if user is None:
            logger.warning(f"Deleted subscription {sub.get('id')} has no matching user")
            return
        await self.upsert_subscription(user, sub, status=SubscriptionStatus.CANCELED.value)

    async def _on_invoice_paid(self, invoice: Dict[str, Any]):
        sub_id = _invoice_subscription_id(invoice)
        if not sub_id:
            return
        user = await self._resolve_user(customer_id=invoice.get("customer"))
        if user is None:
            logger.warning(f"Paid invoice {invoice.get('id')} has no matching user")
            return
        if self.gateway is not None:
            sub = await self.gateway.retrieve_subscription(sub_id)
            await self.upsert_subscription(user, sub)
            return
        await self._set_local_status(user, sub_id, SubscriptionStatus.ACTIVE.value)

    async def _on_invoice_payment_failed(self, invoice: Dict[str, Any]):
        user = await self._resolve_user(customer_id=invoice.get("customer"))
        if user is None:
            return
        await self._set_local_status(user, _invoice_subscription_id(invoice), SubscriptionStatus.PAST_DUE.value)

    async def _on_trial_will_end(self, sub: Dict[str, Any]):
        logger.info(f"Trial ending soon for subscription {sub.get('id')} (customer {sub.get('customer')})")

    async def _set_local_status(self, user: User, subscription_id: Optional[str], status: str):
        if subscription_id:
            result = await self.db.execute(
                select(Subscription).where(Subscription.external_subscription_id == subscription_id)
            )
            local = result.scalar_one_or_none()
            if local is not None:
                local.status = status
                await self._derive_user_status(user)
                await self.db.commit()
                return
        user.subscription_status = status
        await self.db.commit()

    # ── Reconciliation ─────────────────────────────────────────

    async def sync_subscription_status_for_user(self, user_id: str) -> Optional[str]:
        """Pull the user's subscriptions from Stripe and mirror the best one."""
        user = await self.db.get(User, user_id)
        if user is None:
            return None
        if self.gateway is None or not user.external_billing_customer_id:
            return user.subscription_status

        subs = await self.gateway.list_subscriptions(user.external_billing_customer_id)
        user.subscription_checked_at = utcnow()
        if not subs:
            user.subscription_status = SubscriptionStatus.INACTIVE.value
            await self.db.commit()
            return user.subscription_status

        chosen = next(
            (s for s in subs if normalize_status(s.get("status")) in ALLOWED_SUBSCRIPTION_STATUSES),
            subs[0],
        )
        for sub in subs:
            if sub is not chosen:
                await self.upsert_subscription(user, sub, grant=False)
        await self.upsert_subscription(user, chosen)
        return user.subscription_status

    async def recover_monthly_allowance(self, user_id: str) -> bool:
        """
        Grant the allowance for the user's current paid period if it was
        never granted (e.g. a missed webhook). True when credits were added.
        """
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(sorted(ALLOWED_SUBSCRIPTION_STATUSES)),
                Subscription.current_period_start.is_not(None),
            )
            .order_by(Subscription.current_period_start.desc())
            .limit(1)
        )
        sub = result.scalar_one_or_none()
        if sub is None:
            return False
        return await self.ledger.apply_transaction(
            user_id,
            self.monthly_credits,
            CreditReason.MONTHLY_ALLOWANCE,
            reference=allowance_reference(sub.external_subscription_id, to_epoch(sub.current_period_start)),
            metadata={"subscription_id": sub.external_subscription_id, "recovered": True},
        )
