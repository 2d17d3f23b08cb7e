"""
Message repository.
"""

import uuid
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from convotag.db.repositories.base import BaseRepository
from convotag.models.db import Message


class MessageRepository(BaseRepository[Message]):
    """Repository for Message model."""

    def __init__(self, session: Session):
        super().__init__(Message, session)

    def add_to_conversation(
        self,
        conversation_id: uuid.UUID,
        message_order: int,
        role: str,
        content: str,
        tokens: int = 0,
        extra_data: Optional[dict[str, Any]] = None,
    ) -> Message:
        """
        Insert a message at an order already reserved by the counter update.

        Args:
            conversation_id: Parent conversation
            message_order: 1-based position, equal to the new message_count
            role: user, assistant or system
            content: Message text
            tokens: Token count for the message
            extra_data: Free-form metadata

        Returns:
            Created message
        """
        return self.create(
            conversation_id=conversation_id,
            message_order=message_order,
            role=role,
            content=content,
            tokens=tokens,
            extra_data=extra_data or {},
        )

    def get_by_conversation(
        self,
        conversation_id: uuid.UUID,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Message]:
        """
        Get messages of a conversation in order.

        Args:
            conversation_id: Conversation UUID
            limit: Maximum number of messages
            offset: Number of messages to skip

        Returns:
            Messages ordered by message_order
        """
        query = (
            self.session.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.message_order)
            .offset(offset)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def count_by_conversation(self, conversation_id: uuid.UUID) -> int:
        return (
            self.session.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .count()
        )
