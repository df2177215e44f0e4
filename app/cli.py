#!/usr/bin/env python3
"""
kin-relay: operator commands for the relay.

Usage:
    kin-relay init-db
    kin-relay set-telegram-webhook https://relay.example.com/webhooks/telegram
    kin-relay telegram-webhook-info
    kin-relay issue-token someone@example.com
    kin-relay grant-credits someone@example.com 500 --reference support-ticket-42
    kin-relay sync-subscription someone@example.com
"""
import argparse
import asyncio
import json
import sys

from app.channels.base import Platform
from app.channels.telegram_channel import TelegramClient
from app.config import get_settings
from app.context import AppContext, build_context
from app.logging_config import configure_logging
from app.services.auth_service import create_access_token, get_or_create_user, get_user_by_email
from app.services.billing_sync import BillingSync
from app.services.credit_ledger import CreditLedger, CreditReason


def _telegram(context: AppContext) -> TelegramClient:
    client = context.client(Platform.TELEGRAM)
    if not isinstance(client, TelegramClient):
        print("❌ Telegram is not configured (TELEGRAM_BOT_TOKEN / TELEGRAM_WEBHOOK_SECRET)")
        sys.exit(1)
    return client


async def cmd_init_db(context: AppContext, args):
    await context.database.init()
    print("✅ Database tables created")


async def cmd_set_telegram_webhook(context: AppContext, args):
    ok = await _telegram(context).set_webhook(args.url)
    print(f"{'✅' if ok else '❌'} setWebhook {args.url}")


async def cmd_telegram_webhook_info(context: AppContext, args):
    info = await _telegram(context).get_webhook_info()
    print(json.dumps(info, indent=2, default=str))


async def cmd_issue_token(context: AppContext, args):
    async with context.session_maker() as db:
        user = await get_or_create_user(db, args.email)
    print(create_access_token(user.id, context.settings))


async def cmd_grant_credits(context: AppContext, args):
    async with context.session_maker() as db:
        user = await get_user_by_email(db, args.email)
        if user is None:
            print(f"❌ No user with email {args.email}")
            sys.exit(1)
        ledger = CreditLedger(db)
        applied = await ledger.apply_transaction(
            user.id, args.amount, args.reason, reference=args.reference, metadata={"source": "cli"}
        )
        balance = await ledger.get_balance(user.id)
    state = "applied" if applied else "already applied"
    print(f"{'✅' if applied else 'ℹ️'} {args.amount:+d} credits {state}; balance is now {balance}")


async def cmd_sync_subscription(context: AppContext, args):
    settings = context.settings
    async with context.session_maker() as db:
        user = await get_user_by_email(db, args.email)
        if user is None:
            print(f"❌ No user with email {args.email}")
            sys.exit(1)
        billing = BillingSync(db, context.billing_gateway, settings.monthly_credits, settings.topup_credits)
        status = await billing.sync_subscription_status_for_user(user.id)
    print(f"Subscription status for {args.email}: {status}")


async def _run(args):
    settings = get_settings()
    configure_logging("DEBUG" if args.verbose else "WARNING", settings.log_json)
    context = build_context(settings)
    try:
        await args.func(context, args)
    finally:
        await context.stop()


def main():
    parser = argparse.ArgumentParser(
        prog="kin-relay",
        description="Kin relay operator CLI",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command", help="Command")

    # init-db
    p_init = sub.add_parser("init-db", help="Create database tables (dev; use alembic in production)")
    p_init.set_defaults(func=cmd_init_db)

    # telegram webhook
    p_hook = sub.add_parser("set-telegram-webhook", help="Point Telegram at this server")
    p_hook.add_argument("url", help="Public https URL of /webhooks/telegram")
    p_hook.set_defaults(func=cmd_set_telegram_webhook)

    p_info = sub.add_parser("telegram-webhook-info", help="Show Telegram's webhook status")
    p_info.set_defaults(func=cmd_telegram_webhook_info)

    # users
    p_token = sub.add_parser("issue-token", help="Print an API token for a user (creates the user)")
    p_token.add_argument("email")
    p_token.set_defaults(func=cmd_issue_token)

    p_grant = sub.add_parser("grant-credits", help="Apply a credit adjustment")
    p_grant.add_argument("email")
    p_grant.add_argument("amount", type=int, help="Signed credit delta")
    p_grant.add_argument("--reason", default=CreditReason.ADJUSTMENT)
    p_grant.add_argument("--reference", default=None, help="Idempotency reference")
    p_grant.set_defaults(func=cmd_grant_credits)

    p_sync = sub.add_parser("sync-subscription", help="Pull a user's subscription from Stripe")
    p_sync.add_argument("email")
    p_sync.set_defaults(func=cmd_sync_subscription)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
