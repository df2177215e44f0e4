from app.api.auth import get_current_user
from app.api.connections import router as connections_router
from app.api.webhooks import router as webhooks_router

__all__ = [
    "connections_router",
    "webhooks_router",
    "get_current_user",
]
