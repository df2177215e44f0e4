"""Conversation store: one conversation per (user, connection), ordered turns."""

import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Conversation, ConversationMessage, utcnow

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _find(self, user_id: str, connection_id: str) -> Optional[Conversation]:
        result = await self.db.execute(
            select(Conversation).where(
                Conversation.user_id == user_id,
                Conversation.connection_id == connection_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: str, connection_id: str, platform: str) -> Conversation:
        conversation = await self._find(user_id, connection_id)
        if conversation:
            return conversation

        conversation = Conversation(user_id=user_id, connection_id=connection_id, platform=platform)
        self.db.add(conversation)
        try:
            await self.db.commit()
        except IntegrityError:
            # Created concurrently; the unique constraint picked the winner
            await self.db.rollback()
            conversation = await self._find(user_id, connection_id)
            if conversation is None:
                raise
        return conversation

    async def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        message_type: str = "text",
        incoming_message_id: Optional[str] = None,
        outgoing_message_id: Optional[str] = None,
    ) -> ConversationMessage:
        message = ConversationMessage(
            conversation_id=conversation_id,
            role=role,
            content=content,
            message_type=message_type,
            incoming_message_id=incoming_message_id,
            outgoing_message_id=outgoing_message_id,
        )
        self.db.add(message)
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(message_count=Conversation.message_count + 1, updated_at=utcnow())
        )
        await self.db.commit()
        return message

    async def history(self, conversation_id: str, limit: int = 10) -> List[ConversationMessage]:
        """Last ``limit`` turns, oldest first."""
        result = await self.db.execute(
            select(ConversationMessage)
            .where(ConversationMessage.conversation_id == conversation_id)
            .order_by(ConversationMessage.id.desc())
            .limit(limit)
        )
        return list(reversed(result.scalars().all()))
