"""
Connection Registry: connect tokens and platform bindings.

A BotConnection starts pending (created by a logged-in user, its id is the
connect token), becomes connected when the token arrives on the matching
platform, and is disconnected for good when the user unlinks it. The
database guarantees at most one connected row per chat identity and per
(user, platform).
"""

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.channels.base import Platform
from app.db.models import BotConnection, utcnow

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Base class for registry failures."""


class InvalidToken(RegistryError):
    """Unknown, expired or disconnected connect token."""


class PlatformMismatch(RegistryError):
    """Token was issued for another platform."""

    def __init__(self, expected: str, got: str):
        self.expected = expected
        self.got = got
        super().__init__(f"token is for {expected}, used on {got}")


class IdentifierConflict(RegistryError):
    """Token is already bound to a different chat identity."""


class ConnectionNotFound(RegistryError):
    pass


def _platform_value(platform) -> str:
    return platform.value if isinstance(platform, Platform) else str(platform)


class ConnectionRegistry:
    def __init__(self, db: AsyncSession, token_ttl_hours: int = 24):
        self.db = db
        self.token_ttl = timedelta(hours=token_ttl_hours)

    async def create_pending(self, user_id: str, platform) -> BotConnection:
        """Issue a fresh connect token for (user, platform)."""
        connection = BotConnection(
            user_id=user_id,
            platform=_platform_value(platform),
            is_connected=False,
        )
        self.db.add(connection)
        await self.db.commit()
        await self.db.refresh(connection)
        logger.info(f"Issued {connection.platform} connect token for user {user_id}")
        return connection

    async def discard_pending(self, connection: BotConnection) -> None:
        """Drop a token that was never handed out."""
        await self.db.delete(connection)
        await self.db.commit()

    async def resolve_token(self, token: str) -> Optional[BotConnection]:
        """Look up a connection by token, whatever its state."""
        if not token:
            return None
        return await self.db.get(BotConnection, token)

    def is_expired(self, connection: BotConnection) -> bool:
        return connection.is_pending and connection.created_at + self.token_ttl < utcnow()

    async def bind(
        self,
        token: str,
        platform,
        platform_identifier: str,
        platform_username: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> BotConnection:
        """
        Bind a pending token to a chat identity.

        Idempotent when the token is already bound to the same identity.
        Any other live binding for this identity, or for this user on this
        platform, is disconnected first.
        """
        platform = _platform_value(platform)
        connection = await self.resolve_token(token)
        if connection is None:
            raise InvalidToken("unknown connect token")
        if connection.platform != platform:
            raise PlatformMismatch(connection.platform, platform)

        if connection.is_connected:
            if connection.platform_identifier == platform_identifier:
                return connection
            logger.warning(
                f"Connect token {token[:6]}… is bound to another {platform} identity; "
                f"rejecting rebind to {platform_identifier}"
            )
            raise IdentifierConflict("connect token already used by another chat")

        if connection.disconnected_at is not None:
            raise InvalidToken("connection was disconnected")
        if self.is_expired(connection):
            raise InvalidToken("connect token expired")

        now = utcnow()
        await self.db.execute(
            update(BotConnection)
            .where(
                BotConnection.platform == platform,
                BotConnection.is_connected == True,
                BotConnection.id != connection.id,
                or_(
                    BotConnection.platform_identifier == platform_identifier,
                    BotConnection.user_id == connection.user_id,
                ),
            )
            .values(is_connected=False, disconnected_at=now)
        )

        connection.platform_identifier = platform_identifier
        connection.platform_username = platform_username
        connection.is_connected = True
        connection.connected_at = now
        connection.last_activity_at = now
        if metadata:
            connection.metadata_json = {**(connection.metadata_json or {}), **metadata}

        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent bind; report what won
            await self.db.rollback()
            current = await self.resolve_token(token)
            if current is not None:
                await self.db.refresh(current)
            if current is not None and current.is_connected and current.platform_identifier == platform_identifier:
                return current
            raise IdentifierConflict("concurrent bind for this identity")

        logger.info(f"Bound {platform} connection {connection.id[:6]}… for user {connection.user_id}")
        return connection

    async def find_active(self, platform, platform_identifier: str) -> Optional[BotConnection]:
        """The connected row for this chat identity, if any."""
        result = await self.db.execute(
            select(BotConnection).where(
                BotConnection.platform == _platform_value(platform),
                BotConnection.platform_identifier == platform_identifier,
                BotConnection.is_connected == True,
            )
        )
        return result.scalar_one_or_none()

    async def find_latest(self, platform, platform_identifier: str) -> Optional[BotConnection]:
        """Most recent row for this chat identity in any state."""
        result = await self.db.execute(
            select(BotConnection)
            .where(
                BotConnection.platform == _platform_value(platform),
                BotConnection.platform_identifier == platform_identifier,
            )
            .order_by(BotConnection.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def disconnect(self, connection_id: str, user_id: Optional[str] = None) -> BotConnection:
        """Terminal transition; history stays attached to the row."""
        connection = await self.db.get(BotConnection, connection_id)
        if connection is None or (user_id is not None and connection.user_id != user_id):
            raise ConnectionNotFound(connection_id)
        if connection.disconnected_at is None:
            connection.is_connected = False
            connection.disconnected_at = utcnow()
            await self.db.commit()
            logger.info(f"Disconnected {connection.platform} connection for user {connection.user_id}")
        return connection

    async def list_for_user(self, user_id: str) -> List[BotConnection]:
        result = await self.db.execute(
            select(BotConnection)
            .where(BotConnection.user_id == user_id)
            .order_by(BotConnection.created_at.desc())
        )
        return list(result.scalars().all())

    async def touch(self, connection_id: str) -> None:
        await self.db.execute(
            update(BotConnection)
            .where(and_(BotConnection.id == connection_id, BotConnection.is_connected == True))
            .values(last_activity_at=utcnow())
        )
        await self.db.commit()
