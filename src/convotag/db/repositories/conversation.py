"""
Conversation repository.
"""

import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from sqlalchemy import and_, exists, func, or_, update
from sqlalchemy.orm import Session

from convotag.db.repositories.base import BaseRepository
from convotag.models.db import Conversation, ConversationStatus, Message

# Columns list_filtered may sort by
SORT_COLUMNS = {
    "updated_at": Conversation.updated_at,
    "created_at": Conversation.created_at,
    "message_count": Conversation.message_count,
    "title": Conversation.title,
}


def _like_pattern(term: str) -> str:
    """Escape LIKE wildcards so the term matches literally."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for Conversation model."""

    def __init__(self, session: Session):
        super().__init__(Conversation, session)

    def get_active(self, id: uuid.UUID) -> Optional[Conversation]:
        """
        Get a conversation that has not been soft-deleted.

        Args:
            id: Conversation UUID

        Returns:
            Conversation or None if missing or deleted
        """
        return (
            self.session.query(Conversation)
            .filter(
                Conversation.id == id,
                Conversation.status != ConversationStatus.DELETED.value,
            )
            .first()
        )

    def increment_counters(self, id: uuid.UUID, tokens: int) -> bool:
        """
        Bump message_count by one and total_tokens by ``tokens``.

        Runs as a single UPDATE so it takes the row lock (PostgreSQL) or the
        database write lock (SQLite) before the message row is inserted;
        concurrent appends to the same conversation serialize here.

        Returns:
            True if a live conversation was updated, False otherwise
        """
        result = self.session.execute(
            update(Conversation)
            .where(
                Conversation.id == id,
                Conversation.status != ConversationStatus.DELETED.value,
            )
            .values(
                message_count=Conversation.message_count + 1,
                total_tokens=Conversation.total_tokens + tokens,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def set_analysis_fields(
        self,
        id: uuid.UUID,
        summary: str,
        key_topics: list[str],
        problem_categories: list[str],
        auto_tags: list[str],
        complexity_level: int,
        analyzed_at: datetime,
    ) -> bool:
        """
        Denormalize the current analysis onto the conversation row.

        Returns:
            True if a live conversation was updated, False otherwise
        """
        result = self.session.execute(
            update(Conversation)
            .where(
                Conversation.id == id,
                Conversation.status != ConversationStatus.DELETED.value,
            )
            .values(
                summary=summary,
                key_topics=key_topics,
                problem_categories=problem_categories,
                auto_tags=auto_tags,
                complexity_level=complexity_level,
                last_analyzed_at=analyzed_at,
                updated_at=analyzed_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def list_filtered(
        self,
        owner_id: str,
        search: Optional[str] = None,
        status: Optional[str] = None,
        is_favorite: Optional[bool] = None,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Conversation], int]:
        """
        List an owner's conversations with search, filters and pagination.

        Args:
            owner_id: Owner reference
            search: Case-insensitive text matched against title, category
                and message content
            status: Exact status; deleted conversations are excluded unless
                requested explicitly
            is_favorite: Filter on the favorite flag
            sort_by: One of SORT_COLUMNS
            sort_order: "asc" or "desc"
            limit: Page size
            offset: Number of rows to skip

        Returns:
            Tuple of (page of conversations, total matching count)
        """
        query = self.session.query(Conversation).filter(
            Conversation.owner_id == owner_id
        )

        if status:
            query = query.filter(Conversation.status == status)
        else:
            query = query.filter(Conversation.status != ConversationStatus.DELETED.value)
        if is_favorite is not None:
            query = query.filter(Conversation.is_favorite.is_(is_favorite))
        if search:
            pattern = _like_pattern(search)
            message_match = exists().where(
                and_(
                    Message.conversation_id == Conversation.id,
                    Message.content.ilike(pattern, escape="\\"),
                )
            )
            query = query.filter(
                or_(
                    Conversation.title.ilike(pattern, escape="\\"),
                    Conversation.category.ilike(pattern, escape="\\"),
                    message_match,
                )
            )

        total = query.order_by(None).count()

        column = SORT_COLUMNS[sort_by]
        if sort_order == "asc":
            query = query.order_by(column.asc(), Conversation.id.asc())
        else:
            query = query.order_by(column.desc(), Conversation.id.desc())

        return query.offset(offset).limit(limit).all(), total

    def get_totals(self, owner_id: str, since: Optional[datetime] = None) -> dict[str, Any]:
        """
        Aggregate counters for an owner's live conversations.

        Args:
            owner_id: Owner reference
            since: Only conversations created at or after this time

        Returns:
            Dict with total_conversations, total_messages, total_tokens,
            favorite_count and avg_rating
        """
        query = self.session.query(
            func.count(Conversation.id),
            func.coalesce(func.sum(Conversation.message_count), 0),
            func.coalesce(func.sum(Conversation.total_tokens), 0),
            func.avg(Conversation.satisfaction_rating),
        ).filter(
            Conversation.owner_id == owner_id,
            Conversation.status != ConversationStatus.DELETED.value,
        )
        if since is not None:
            query = query.filter(Conversation.created_at >= since)
        count, messages, tokens, avg_rating = query.one()

        favorites = self._live(owner_id, since).filter(
            Conversation.is_favorite.is_(True)
        )

        return {
            "total_conversations": int(count),
            "total_messages": int(messages),
            "total_tokens": int(tokens),
            "favorite_count": favorites.count(),
            "avg_rating": float(avg_rating) if avg_rating is not None else None,
        }

    def count_by_status(
        self, owner_id: str, since: Optional[datetime] = None
    ) -> dict[str, int]:
        query = self.session.query(
            Conversation.status, func.count(Conversation.id)
        ).filter(Conversation.owner_id == owner_id)
        if since is not None:
            query = query.filter(Conversation.created_at >= since)
        return {status: count for status, count in query.group_by(Conversation.status)}

    def top_categories(
        self, owner_id: str, since: Optional[datetime] = None, limit: int = 5
    ) -> List[Tuple[str, int]]:
        """Most frequent ``category`` values among live conversations."""
        count_col = func.count(Conversation.id)
        query = self.session.query(Conversation.category, count_col).filter(
            Conversation.owner_id == owner_id,
            Conversation.status != ConversationStatus.DELETED.value,
            Conversation.category.isnot(None),
        )
        if since is not None:
            query = query.filter(Conversation.created_at >= since)
        query = (
            query.group_by(Conversation.category)
            .order_by(count_col.desc(), Conversation.category.asc())
            .limit(limit)
        )
        return [(category, count) for category, count in query.all()]

    def top_problem_categories(
        self, owner_id: str, since: Optional[datetime] = None, limit: int = 5
    ) -> List[Tuple[str, int]]:
        """Most frequent entries of the denormalized ``problem_categories`` lists."""
        rows = self._live(owner_id, since).with_entities(
            Conversation.problem_categories
        )
        counter: Counter[str] = Counter()
        for (categories,) in rows:
            counter.update(categories or [])
        return sorted(counter.items(), key=lambda item: (-item[1], item[0]))[:limit]

    def _live(self, owner_id: str, since: Optional[datetime]):
        query = self.session.query(Conversation).filter(
            Conversation.owner_id == owner_id,
            Conversation.status != ConversationStatus.DELETED.value,
        )
        if since is not None:
            query = query.filter(Conversation.created_at >= since)
        return query
