"""
Inbound webhooks (no user auth; each is verified by its own secret)

POST /webhooks/telegram   - Telegram Bot API updates (secret token header)
GET  /webhooks/whatsapp   - WhatsApp Cloud API subscription handshake
POST /webhooks/whatsapp   - WhatsApp messages + delivery statuses (HMAC signature)
POST /webhooks/stripe     - Stripe billing events (Stripe-Signature)

Platform webhooks are acknowledged as soon as the payload is verified and
parsed; the relay runs as a background task after the response. Stripe
events are applied before responding so a failure makes Stripe retry.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from app.api.deps import get_context
from app.channels import telegram_channel, whatsapp_channel
from app.context import AppContext
from app.services.billing_sync import BillingSync
from app.services.stripe_service import WebhookSignatureError, verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _not_configured(what: str) -> HTTPException:
    logger.error(f"Webhook rejected: {what} is not configured")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{what} is not configured on this server",
    )


# ── Telegram ───────────────────────────────────────────────────

@router.post("/telegram", status_code=200)
async def telegram_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    context: AppContext = Depends(get_context),
):
    secret = context.settings.telegram_webhook_secret
    if not secret:
        raise _not_configured("TELEGRAM_WEBHOOK_SECRET")
    if not telegram_channel.verify_secret_token(request.headers.get(telegram_channel.SECRET_HEADER), secret):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid secret token")

    body = await request.body()
    try:
        update = telegram_channel.TelegramUpdate.model_validate_json(body)
    except ValidationError as e:
        logger.warning(f"Rejected malformed Telegram update: {e.error_count()} errors")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed update")

    inbound = telegram_channel.normalize_update(update)
    if inbound is not None:
        background_tasks.add_task(context.relay.process, inbound)
    return {"received": True}


# ── WhatsApp ───────────────────────────────────────────────────

@router.get("/whatsapp")
async def whatsapp_verify(request: Request, context: AppContext = Depends(get_context)):
    verify_token = context.settings.whatsapp_verify_token
    if not verify_token:
        raise _not_configured("WHATSAPP_VERIFY_TOKEN")
    params = request.query_params
    challenge = whatsapp_channel.verify_subscription(
        params.get("hub.mode"), params.get("hub.verify_token"), params.get("hub.challenge"), verify_token
    )
    if challenge is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    logger.info("[WHATSAPP] Webhook verified")
    return PlainTextResponse(challenge)


@router.post("/whatsapp", status_code=200)
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    context: AppContext = Depends(get_context),
):
    app_secret = context.settings.whatsapp_app_secret
    if not app_secret:
        raise _not_configured("WHATSAPP_APP_SECRET")

    body = await request.body()
    if not whatsapp_channel.verify_signature(body, request.headers.get(whatsapp_channel.SIGNATURE_HEADER), app_secret):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    try:
        payload = whatsapp_channel.WhatsAppWebhookPayload.model_validate_json(body)
        batch = whatsapp_channel.normalize_payload(payload)
    except ValidationError as e:
        logger.warning(f"Rejected malformed WhatsApp payload: {e.error_count()} errors")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload")

    for inbound in batch.messages:
        background_tasks.add_task(context.relay.process, inbound)
    for receipt in batch.statuses:
        background_tasks.add_task(context.relay.record_delivery_status, receipt)
    return {"received": True}


# ── Stripe ─────────────────────────────────────────────────────

@router.post("/stripe", status_code=200)
async def stripe_webhook(request: Request, context: AppContext = Depends(get_context)):
    """Verify and apply a Stripe event. Errors return 500 so Stripe redelivers."""
    webhook_secret = context.settings.stripe_webhook_secret
    if not webhook_secret:
        raise _not_configured("STRIPE_WEBHOOK_SECRET")

    payload = await request.body()
    try:
        event = verify_webhook(payload, request.headers.get("stripe-signature"), webhook_secret)
    except WebhookSignatureError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")

    if not event.get("id") or not isinstance(event.get("data"), dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed event")

    settings = context.settings
    async with context.session_maker() as db:
        billing = BillingSync(db, context.billing_gateway, settings.monthly_credits, settings.topup_credits)
        try:
            outcome = await billing.handle_event(event)
        except Exception:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Event processing failed")

    logger.info(f"Stripe event {event['id']} ({event.get('type')}): {outcome}")
    return {"received": True, "status": outcome}
