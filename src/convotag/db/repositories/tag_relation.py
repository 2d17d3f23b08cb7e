"""
Tag relation repository.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import Session, joinedload

from convotag.db.repositories.base import BaseRepository, upsert_insert
from convotag.models.db import Tag, TagRelation


class TagRelationRepository(BaseRepository[TagRelation]):
    """Repository for confirmed (conversation, tag) associations."""

    def __init__(self, session: Session):
        super().__init__(TagRelation, session)

    def get_pair(
        self, conversation_id: uuid.UUID, tag_id: uuid.UUID
    ) -> Optional[TagRelation]:
        return (
            self.session.query(TagRelation)
            .filter(
                TagRelation.conversation_id == conversation_id,
                TagRelation.tag_id == tag_id,
            )
            .first()
        )

    def get_tag_ids(self, conversation_id: uuid.UUID) -> Set[uuid.UUID]:
        rows = (
            self.session.query(TagRelation.tag_id)
            .filter(TagRelation.conversation_id == conversation_id)
            .all()
        )
        return {row[0] for row in rows}

    def get_by_conversation(self, conversation_id: uuid.UUID) -> List[TagRelation]:
        """Get relations with their tags loaded, ordered by tag name."""
        return (
            self.session.query(TagRelation)
            .join(Tag, Tag.id == TagRelation.tag_id)
            .options(joinedload(TagRelation.tag))
            .filter(TagRelation.conversation_id == conversation_id)
            .order_by(Tag.name)
            .all()
        )

    def get_by_conversations(
        self, conversation_ids: List[uuid.UUID]
    ) -> Dict[uuid.UUID, List[TagRelation]]:
        """Get relations for several conversations in one query, keyed by conversation."""
        grouped: Dict[uuid.UUID, List[TagRelation]] = {cid: [] for cid in conversation_ids}
        if not conversation_ids:
            return grouped
        relations = (
            self.session.query(TagRelation)
            .join(Tag, Tag.id == TagRelation.tag_id)
            .options(joinedload(TagRelation.tag))
            .filter(TagRelation.conversation_id.in_(conversation_ids))
            .order_by(Tag.name)
            .all()
        )
        for relation in relations:
            grouped[relation.conversation_id].append(relation)
        return grouped

    def get_conversation_ids_for_tag(self, tag_id: uuid.UUID) -> List[uuid.UUID]:
        rows = (
            self.session.query(TagRelation.conversation_id)
            .filter(TagRelation.tag_id == tag_id)
            .all()
        )
        return [row[0] for row in rows]

    def upsert(
        self,
        conversation_id: uuid.UUID,
        tag_id: uuid.UUID,
        applied_by: str,
        confidence_score: Optional[float] = None,
    ) -> TagRelation:
        """
        Attach a tag to a conversation, or refresh the existing attachment.

        Uses INSERT ... ON CONFLICT DO UPDATE on the unique pair so that two
        concurrent accepts for the same tag leave exactly one relation.
        """
        now = datetime.now(timezone.utc)
        stmt = (
            upsert_insert(self.session, TagRelation)
            .values(
                id=uuid.uuid4(),
                conversation_id=conversation_id,
                tag_id=tag_id,
                applied_by=applied_by,
                confidence_score=confidence_score,
                applied_at=now,
            )
            .on_conflict_do_update(
                index_elements=["conversation_id", "tag_id"],
                set_={
                    "applied_by": applied_by,
                    "confidence_score": confidence_score,
                    "applied_at": now,
                },
            )
        )
        self.session.execute(stmt)
        self.session.flush()

        relation = self.get_pair(conversation_id, tag_id)
        # The ORM identity map may hold a stale copy from an earlier read
        self.session.refresh(relation)
        return relation

    def remove(self, conversation_id: uuid.UUID, tag_id: uuid.UUID) -> bool:
        deleted = (
            self.session.query(TagRelation)
            .filter(
                TagRelation.conversation_id == conversation_id,
                TagRelation.tag_id == tag_id,
            )
            .delete(synchronize_session=False)
        )
        return deleted > 0
