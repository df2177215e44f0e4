"""Shared FastAPI dependencies: the application context and DB sessions"""

from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.context import AppContext


def get_context(request: Request) -> AppContext:
    """The AppContext built at startup."""
    return request.app.state.context


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency for getting database sessions"""
    async with get_context(request).session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
