"""Authentication service - JWT token handling and user lookup"""

from datetime import timedelta
from typing import Optional
import uuid

from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.config import Settings
from app.db.models import User, utcnow


def create_access_token(user_id: str, settings: Settings) -> str:
    """Create a JWT access token"""
    now = utcnow()
    to_encode = {
        "sub": user_id,
        "exp": now + timedelta(minutes=settings.access_token_expire_minutes),
        "iat": now,
        "jti": str(uuid.uuid4()),  # Unique token ID
    }
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> Optional[str]:
    """Decode a JWT token and return the user ID"""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    return payload.get("sub")


async def get_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    """Get user by ID"""
    return await db.get(User, user_id)


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    """Get user by email"""
    result = await db.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def get_or_create_user(db: AsyncSession, email: str, name: Optional[str] = None) -> User:
    """Find a user by email, creating an inactive-subscription account if needed"""
    user = await get_user_by_email(db, email)
    if user:
        return user
    user = User(email=email.lower(), name=name)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user
