"""
Tests for Stripe billing sync

Event dedup, subscription mirroring, allowance and top-up grants and the
reconciliation path used by the scheduler.
"""

import pytest
import pytest_asyncio
from sqlalchemy import select

from app.db.models import Subscription, User, WebhookEvent
from app.services.billing_sync import (
    BillingSync,
    allowance_reference,
    best_status,
    normalize_status,
    subscription_period,
)
from app.services.credit_ledger import CreditLedger

from conftest import FakeGateway, stripe_subscription


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def customer(db_session):
    user = User(email="payer@example.com", external_billing_customer_id="cus_123")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def billing(db_session, gateway):
    return BillingSync(db_session, gateway, monthly_credits=100, topup_credits=50)


async def _reload(database, user_id: str) -> User:
    async with database.session_maker() as db:
        return await db.get(User, user_id)


async def _balance(database, user_id: str) -> int:
    async with database.session_maker() as db:
        return await CreditLedger(db).get_balance(user_id)


# ============ Helpers ============

def test_normalize_status():
    assert normalize_status("active") == "active"
    assert normalize_status("trialing") == "trialing"
    assert normalize_status("unpaid") == "past_due"
    assert normalize_status("incomplete_expired") == "inactive"
    assert normalize_status(None) == "inactive"
    assert normalize_status("something-new") == "inactive"


def test_best_status_prefers_paying_subscriptions():
    assert best_status(["canceled", "active", "past_due"]) == "active"
    assert best_status(["canceled", "trialing"]) == "trialing"
    assert best_status(["canceled", "past_due"]) == "past_due"
    assert best_status([]) == "inactive"


def test_subscription_period_falls_back_to_items():
    sub = {"id": "sub_1", "items": {"data": [{"current_period_start": 10, "current_period_end": 20}]}}
    assert subscription_period(sub) == (10, 20)
    assert subscription_period(stripe_subscription(period_start=1, period_end=2)) == (1, 2)


# ============ Subscription events ============

@pytest.mark.asyncio
async def test_subscription_created_grants_allowance_once(billing, database, customer):
    sub = stripe_subscription()
    assert await billing.handle_event(_event("evt_1", "customer.subscription.created", sub)) == "processed"
    # Same period arriving through another event type does not grant twice
    assert await billing.handle_event(_event("evt_2", "customer.subscription.updated", sub)) == "processed"

    user = await _reload(database, customer.id)
    assert user.subscription_status == "active"
    assert await _balance(database, customer.id) == 100


@pytest.mark.asyncio
async def test_renewal_grants_next_period(billing, database, customer):
    await billing.handle_event(_event("evt_1", "customer.subscription.created", stripe_subscription()))
    renewed = stripe_subscription(period_start=1_762_592_000, period_end=1_765_184_000)
    await billing.handle_event(_event("evt_2", "customer.subscription.updated", renewed))

    assert await _balance(database, customer.id) == 200


@pytest.mark.asyncio
async def test_redelivered_event_is_duplicate(billing, database, customer):
    event = _event("evt_1", "customer.subscription.created", stripe_subscription())
    assert await billing.handle_event(event) == "processed"
    assert await billing.handle_event(event) == "duplicate"

    async with database.session_maker() as db:
        rows = (await db.execute(select(WebhookEvent))).scalars().all()
    assert len(rows) == 1
    assert rows[0].processed


@pytest.mark.asyncio
async def test_subscription_deleted_cancels(billing, database, customer):
    await billing.handle_event(_event("evt_1", "customer.subscription.created", stripe_subscription()))
    await billing.handle_event(_event("evt_2", "customer.subscription.deleted", stripe_subscription(status="canceled")))

    user = await _reload(database, customer.id)
    assert user.subscription_status == "canceled"
    async with database.session_maker() as db:
        local = (await db.execute(select(Subscription))).scalar_one()
    assert local.status == "canceled"


@pytest.mark.asyncio
async def test_old_subscription_ending_keeps_resubscribed_user_active(billing, database, customer):
    await billing.handle_event(_event("evt_1", "customer.subscription.created", stripe_subscription(sub_id="sub_old")))
    await billing.handle_event(_event("evt_2", "customer.subscription.created", stripe_subscription(
        sub_id="sub_new", period_start=1_762_592_000, period_end=1_765_184_000,
    )))
    await billing.handle_event(_event(
        "evt_3", "customer.subscription.deleted", stripe_subscription(sub_id="sub_old", status="canceled")
    ))

    assert (await _reload(database, customer.id)).subscription_status == "active"
    async with database.session_maker() as db:
        rows = (await db.execute(select(Subscription.external_subscription_id, Subscription.status))).all()
    assert dict(rows) == {"sub_old": "canceled", "sub_new": "active"}


@pytest.mark.asyncio
async def test_past_due_does_not_grant(billing, database, customer):
    await billing.handle_event(_event("evt_1", "customer.subscription.updated", stripe_subscription(status="past_due")))

    assert (await _reload(database, customer.id)).subscription_status == "past_due"
    assert await _balance(database, customer.id) == 0


@pytest.mark.asyncio
async def test_subscription_for_unknown_customer_is_skipped(billing, database):
    outcome = await billing.handle_event(
        _event("evt_1", "customer.subscription.created", stripe_subscription(customer="cus_unknown"))
    )
    assert outcome == "processed"
    async with database.session_maker() as db:
        assert (await db.execute(select(Subscription))).first() is None


# ============ Checkout & invoices ============

@pytest.mark.asyncio
async def test_subscription_checkout_creates_user(billing, database, gateway):
    gateway.add(stripe_subscription(sub_id="sub_new", customer="cus_new"))
    session = {
        "id": "cs_1",
        "mode": "subscription",
        "customer": "cus_new",
        "subscription": "sub_new",
        "customer_details": {"email": "New.Person@Example.com"},
    }

    assert await billing.handle_event(_event("evt_1", "checkout.session.completed", session)) == "processed"

    async with database.session_maker() as db:
        user = (await db.execute(select(User).where(User.email == "new.person@example.com"))).scalar_one()
    assert user.external_billing_customer_id == "cus_new"
    assert user.subscription_status == "active"
    assert gateway.retrieved == ["sub_new"]
    assert await _balance(database, user.id) == 100


@pytest.mark.asyncio
async def test_topup_checkout_credits_once(billing, database, customer):
    session = {
        "id": "cs_topup",
        "mode": "payment",
        "customer": "cus_123",
        "payment_status": "paid",
        "metadata": {"type": "topup", "credits": "250"},
    }
    await billing.handle_event(_event("evt_1", "checkout.session.completed", session))
    # Stripe can send the same session under a new event id
    await billing.handle_event(_event("evt_2", "checkout.session.completed", session))

    assert await _balance(database, customer.id) == 250


@pytest.mark.asyncio
async def test_unpaid_topup_is_not_credited(billing, database, customer):
    session = {
        "id": "cs_unpaid",
        "mode": "payment",
        "customer": "cus_123",
        "payment_status": "unpaid",
        "metadata": {"type": "topup"},
    }
    await billing.handle_event(_event("evt_1", "checkout.session.completed", session))
    assert await _balance(database, customer.id) == 0


@pytest.mark.asyncio
async def test_invoice_payment_failed_marks_past_due(billing, database, customer):
    await billing.handle_event(_event("evt_1", "customer.subscription.created", stripe_subscription()))
    await billing.handle_event(_event("evt_2", "invoice.payment_failed", {
        "id": "in_1", "customer": "cus_123", "subscription": "sub_123",
    }))
    assert (await _reload(database, customer.id)).subscription_status == "past_due"


@pytest.mark.asyncio
async def test_invoice_paid_refreshes_from_gateway(billing, database, customer, gateway):
    gateway.add(stripe_subscription(period_start=1_762_592_000, period_end=1_765_184_000))
    await billing.handle_event(_event("evt_1", "invoice.paid", {
        "id": "in_2", "customer": "cus_123",
        "parent": {"subscription_details": {"subscription": "sub_123"}},
    }))

    assert gateway.retrieved == ["sub_123"]
    assert await _balance(database, customer.id) == 100


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(billing):
    assert await billing.handle_event(_event("evt_1", "charge.refunded", {"id": "ch_1"})) == "ignored"


@pytest.mark.asyncio
async def test_handler_error_is_recorded_and_raised(database, customer):
    class BrokenGateway(FakeGateway):
        async def retrieve_subscription(self, subscription_id):
            raise RuntimeError("stripe unreachable")

    async with database.session_maker() as db:
        billing = BillingSync(db, BrokenGateway(), monthly_credits=100)
        with pytest.raises(RuntimeError):
            await billing.handle_event(_event("evt_1", "invoice.paid", {
                "id": "in_3", "customer": "cus_123", "subscription": "sub_123",
            }))

    async with database.session_maker() as db:
        record = (await db.execute(select(WebhookEvent))).scalar_one()
    assert not record.processed
    assert "stripe unreachable" in record.error_message


# ============ Reconciliation ============

@pytest.mark.asyncio
async def test_sync_picks_allowed_subscription(billing, database, customer, gateway):
    gateway.add(stripe_subscription(sub_id="sub_old", status="canceled"))
    gateway.add(stripe_subscription(sub_id="sub_live", status="trialing"))

    assert await billing.sync_subscription_status_for_user(customer.id) == "trialing"
    assert await _balance(database, customer.id) == 100

    # Running again grants nothing new
    assert await billing.sync_subscription_status_for_user(customer.id) == "trialing"
    assert await _balance(database, customer.id) == 100


@pytest.mark.asyncio
async def test_sync_without_subscriptions_is_inactive(billing, customer):
    assert await billing.sync_subscription_status_for_user(customer.id) == "inactive"


@pytest.mark.asyncio
async def test_recover_monthly_allowance_is_idempotent(billing, database, customer):
    await billing.handle_event(_event("evt_1", "customer.subscription.created", stripe_subscription()))

    # Allowance for this period already granted by the event
    assert await billing.recover_monthly_allowance(customer.id) is False
    assert await _balance(database, customer.id) == 100


def test_allowance_reference_format():
    assert allowance_reference("sub_1", 1760000000) == "stripe:subscription_start:sub_1:1760000000"
