"""
Application context: every long-lived collaborator, built once at startup.

Handlers reach collaborators through ``request.app.state.context`` (or the
``get_context`` dependency) instead of module globals, and tests build a
context with fakes. Missing credentials produce explicit ``Unconfigured*``
collaborators outside production; in production they abort startup.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.channels.base import Platform, PlatformClient, UnconfiguredPlatformClient
from app.channels.telegram_channel import TelegramClient
from app.channels.whatsapp_channel import WhatsAppClient
from app.config import Settings
from app.db.database import Database
from app.services.ai_service import AIResponder, OpenAIResponder, UnconfiguredResponder, build_system_prompt
from app.services.ai_tools import ChatToolExecutor
from app.services.message_relay import MessageRelay, RelayPolicy
from app.services.stripe_service import StripeGateway

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Required configuration is missing for the current environment."""


@dataclass
class AppContext:
    settings: Settings
    database: Database
    clients: Dict[Platform, PlatformClient]
    responder: AIResponder
    billing_gateway: Optional[StripeGateway] = None
    relay: Optional[MessageRelay] = None
    problems: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.relay is None:
            self.relay = MessageRelay(
                self.database.session_maker,
                self.clients,
                self.responder,
                policy=RelayPolicy.from_settings(self.settings),
                billing_gateway=self.billing_gateway,
            )

    @property
    def session_maker(self):
        return self.database.session_maker

    def client(self, platform: Platform) -> PlatformClient:
        return self.clients[platform]

    def status(self) -> dict:
        """Which collaborators are usable (for /health)."""
        return {
            "telegram": self.clients[Platform.TELEGRAM].configured,
            "whatsapp": self.clients[Platform.WHATSAPP].configured,
            "ai": self.responder.configured,
            "billing": self.billing_gateway is not None,
        }

    async def start(self):
        for client in self.clients.values():
            if client.configured:
                await client.start()

    async def stop(self):
        for client in self.clients.values():
            try:
                await client.stop()
            except Exception as e:
                logger.warning(f"Error stopping {client.platform.value} client: {e}")
        await self.database.dispose()


def _missing(settings: Settings, *names: str) -> List[str]:
    return [name.upper() for name in names if not getattr(settings, name)]


def build_context(settings: Settings, database: Optional[Database] = None) -> AppContext:
    """Resolve collaborators from settings. Raises ConfigurationError in production."""
    problems: List[str] = []

    missing = _missing(settings, "telegram_bot_token", "telegram_webhook_secret")
    if missing:
        telegram: PlatformClient = UnconfiguredPlatformClient(Platform.TELEGRAM, missing)
        problems.append(f"telegram: missing {', '.join(missing)}")
    else:
        telegram = TelegramClient(
            settings.telegram_bot_token,
            webhook_secret=settings.telegram_webhook_secret,
            bot_username=settings.telegram_bot_username,
            timeout=settings.platform_send_timeout_seconds,
        )

    missing = _missing(
        settings, "whatsapp_phone_number_id", "whatsapp_access_token",
        "whatsapp_app_secret", "whatsapp_verify_token",
    )
    if missing:
        whatsapp: PlatformClient = UnconfiguredPlatformClient(Platform.WHATSAPP, missing)
        problems.append(f"whatsapp: missing {', '.join(missing)}")
    else:
        whatsapp = WhatsAppClient(
            settings.whatsapp_phone_number_id,
            settings.whatsapp_access_token,
            display_number=settings.whatsapp_display_number,
            timeout=settings.platform_send_timeout_seconds,
        )

    if settings.ai_api_key:
        responder: AIResponder = OpenAIResponder(
            api_key=settings.ai_api_key,
            model=settings.ai_model,
            base_url=settings.ai_base_url,
            system_prompt=build_system_prompt(settings.assistant_name),
            timeout=settings.ai_timeout_seconds,
            max_retries=settings.ai_max_retries,
            retry_backoff=settings.ai_retry_backoff_seconds,
            max_tokens=settings.ai_max_tokens,
            temperature=settings.ai_temperature,
            max_tool_iterations=settings.ai_max_tool_iterations,
            tools=ChatToolExecutor(),
        )
    else:
        responder = UnconfiguredResponder(["AI_API_KEY"])
        problems.append("ai: missing AI_API_KEY")

    missing = _missing(settings, "stripe_secret_key", "stripe_webhook_secret")
    gateway = None
    if missing:
        problems.append(f"billing: missing {', '.join(missing)}")
    else:
        gateway = StripeGateway(settings.stripe_secret_key)

    if problems:
        if settings.is_production:
            raise ConfigurationError("Missing production configuration: " + "; ".join(problems))
        for problem in problems:
            logger.warning(f"Running with unconfigured collaborator ({problem})")

    return AppContext(
        settings=settings,
        database=database or Database(settings.database_url, echo=settings.debug),
        clients={Platform.TELEGRAM: telegram, Platform.WHATSAPP: whatsapp},
        responder=responder,
        billing_gateway=gateway,
        problems=problems,
    )
