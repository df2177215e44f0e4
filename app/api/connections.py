"""
Bot connection endpoints (authenticated)

POST   /connections/{platform}/link  - issue a connect token + deep link
GET    /connections                  - list the user's connections
DELETE /connections/{connection_id}  - disconnect
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from telegram.error import TelegramError

from app.api.auth import get_current_user
from app.api.deps import get_context, get_db
from app.channels.base import CollaboratorNotConfigured, Platform
from app.context import AppContext
from app.db.models import ALLOWED_SUBSCRIPTION_STATUSES, User
from app.services.connection_registry import ConnectionNotFound, ConnectionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connections", tags=["Connections"])


class ConnectLinkResponse(BaseModel):
    connection_id: str
    platform: str
    link: str
    start_command: str
    expires_at: datetime


class ConnectionResponse(BaseModel):
    id: str
    platform: str
    platform_username: Optional[str] = None
    is_connected: bool
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


@router.post("/{platform}/link", response_model=ConnectLinkResponse)
async def create_connect_link(
    platform: Platform,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Issue a one-time connect token for this platform and return its deep link."""
    if user.subscription_status not in ALLOWED_SUBSCRIPTION_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Subscription is not active yet",
        )

    client = context.client(platform)
    registry = ConnectionRegistry(db, context.settings.connect_token_ttl_hours)
    connection = await registry.create_pending(user.id, platform)
    try:
        link = await client.connect_link(connection.id)
    except CollaboratorNotConfigured as e:
        await registry.discard_pending(connection)
        logger.error(f"Cannot build {platform.value} connect link: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except TelegramError as e:
        await registry.discard_pending(connection)
        logger.error(f"Telegram lookup for connect link failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Telegram is unavailable, try again shortly")

    return ConnectLinkResponse(
        connection_id=connection.id,
        platform=platform.value,
        link=link,
        start_command=client.start_command(connection.id),
        expires_at=connection.created_at + timedelta(hours=context.settings.connect_token_ttl_hours),
    )


@router.get("", response_model=List[ConnectionResponse])
async def list_connections(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ConnectionRegistry(db).list_for_user(user.id)


@router.delete("/{connection_id}", response_model=ConnectionResponse)
async def disconnect(
    connection_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await ConnectionRegistry(db).disconnect(connection_id, user_id=user.id)
    except ConnectionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
