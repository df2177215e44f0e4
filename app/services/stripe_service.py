"""
Stripe integration helpers: webhook signature verification and the
subscription lookups used to reconcile local billing state.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import stripe

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    """Stripe-Signature header missing or not valid for this payload."""


def _get_stripe_client(secret_key: Optional[str]) -> stripe.StripeClient:
    if not secret_key:
        raise ValueError("STRIPE_SECRET_KEY is not configured")
    return stripe.StripeClient(secret_key)


def verify_webhook(payload: bytes, sig_header: Optional[str], webhook_secret: str) -> dict:
    """
    Verify a Stripe webhook signature and return the event as a plain dict.

    Raises WebhookSignatureError when the signature does not check out.
    There is no unverified fallback: callers must refuse the request when
    the secret is not configured.
    """
    if not sig_header:
        raise WebhookSignatureError("missing Stripe-Signature header")
    try:
        stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed")
        raise WebhookSignatureError(str(exc)) from exc
    except ValueError as exc:
        raise WebhookSignatureError(f"invalid payload: {exc}") from exc
    return json.loads(payload)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    """Read-side Stripe calls (subscriptions) made by billing sync."""

    def __init__(self, secret_key: str):
        self.client = _get_stripe_client(secret_key)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        sub = await asyncio.to_thread(self.client.subscriptions.retrieve, subscription_id)
        return _as_dict(sub)

    async def list_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        """All subscriptions for a customer, any status."""
        page = await asyncio.to_thread(
            self.client.subscriptions.list,
            params={"customer": customer_id, "status": "all", "limit": 20},
        )
        return [_as_dict(sub) for sub in page.data]
