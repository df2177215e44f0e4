"""Tests for the authenticated connection endpoints"""

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from telegram.error import TelegramError

from app.channels.base import CollaboratorNotConfigured, Platform
from app.db.models import BotConnection


@pytest.mark.asyncio
async def test_requires_auth(client: AsyncClient):
    response = await client.post("/api/connections/telegram/link")
    assert response.status_code == 401

    response = await client.get("/api/connections", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_connect_link(client: AsyncClient, make_user, auth_headers):
    user = await make_user()

    response = await client.post("/api/connections/telegram/link", headers=auth_headers(user))

    assert response.status_code == 200
    data = response.json()
    assert data["platform"] == "telegram"
    assert data["link"] == f"https://telegram.example/connect?start={data['connection_id']}"
    assert data["start_command"] == f"/start {data['connection_id']}"
    assert data["expires_at"]


@pytest.mark.asyncio
async def test_connect_link_requires_subscription(client: AsyncClient, make_user, auth_headers):
    user = await make_user(status="inactive")
    response = await client.post("/api/connections/whatsapp/link", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unknown_platform(client: AsyncClient, make_user, auth_headers):
    user = await make_user()
    response = await client.post("/api/connections/signal/link", headers=auth_headers(user))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_and_disconnect(client: AsyncClient, make_user, connect, auth_headers):
    user = await make_user()
    connection = await connect(user, Platform.TELEGRAM, "555")

    listed = await client.get("/api/connections", headers=auth_headers(user))
    assert listed.status_code == 200
    assert [c["id"] for c in listed.json()] == [connection.id]
    assert listed.json()[0]["is_connected"] is True

    deleted = await client.delete(f"/api/connections/{connection.id}", headers=auth_headers(user))
    assert deleted.status_code == 200
    assert deleted.json()["is_connected"] is False
    assert deleted.json()["disconnected_at"] is not None


@pytest.mark.asyncio
async def test_cannot_disconnect_someone_elses_connection(client: AsyncClient, make_user, connect, auth_headers):
    owner = await make_user(email="owner@example.com")
    intruder = await make_user(email="intruder@example.com")
    connection = await connect(owner, Platform.TELEGRAM, "555")

    response = await client.delete(f"/api/connections/{connection.id}", headers=auth_headers(intruder))
    assert response.status_code == 404


async def _connection_count(database) -> int:
    async with database.session_maker() as db:
        return (await db.execute(select(func.count()).select_from(BotConnection))).scalar_one()


@pytest.mark.asyncio
async def test_connect_link_telegram_outage(client: AsyncClient, make_user, auth_headers, telegram_client, database):
    user = await make_user()

    async def get_me_failed(token: str) -> str:
        raise TelegramError("getMe failed")

    telegram_client.connect_link = get_me_failed
    response = await client.post("/api/connections/telegram/link", headers=auth_headers(user))

    assert response.status_code == 502
    assert await _connection_count(database) == 0


@pytest.mark.asyncio
async def test_connect_link_unconfigured_platform(client: AsyncClient, make_user, auth_headers, whatsapp_client, database):
    user = await make_user()

    async def no_display_number(token: str) -> str:
        raise CollaboratorNotConfigured("whatsapp client", ["WHATSAPP_DISPLAY_NUMBER"])

    whatsapp_client.connect_link = no_display_number
    response = await client.post("/api/connections/whatsapp/link", headers=auth_headers(user))

    assert response.status_code == 500
    assert await _connection_count(database) == 0
