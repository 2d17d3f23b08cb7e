"""Repository for tag recommendations."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import and_, exists, func, select
from sqlalchemy.orm import Session, joinedload

from convotag.db.repositories.base import BaseRepository
from convotag.models.db import FeedbackStatus, Recommendation, Tag, TagRelation

logger = logging.getLogger(__name__)


class RecommendationRepository(BaseRepository[Recommendation]):
    """Repository for managing tag recommendations.

    Provides query methods for pending suggestions, the rejection history
    used for suppression, and state transitions driven by user feedback.
    """

    def __init__(self, session: Session):
        """Initialize repository.

        Args:
            session: Database session
        """
        super().__init__(Recommendation, session)

    def get_pending(
        self, conversation_id: UUID, tag_id: UUID, for_update: bool = False
    ) -> Optional[Recommendation]:
        """Get the pending recommendation for a (conversation, tag) pair, if any."""
        stmt = select(Recommendation).where(
            Recommendation.conversation_id == conversation_id,
            Recommendation.tag_id == tag_id,
            Recommendation.user_feedback == FeedbackStatus.PENDING.value,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_latest(self, conversation_id: UUID, tag_id: UUID) -> Optional[Recommendation]:
        """Get the most recent recommendation for a pair regardless of state."""
        stmt = (
            select(Recommendation)
            .where(
                Recommendation.conversation_id == conversation_id,
                Recommendation.tag_id == tag_id,
            )
            .order_by(Recommendation.created_at.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_pending_by_conversation(self, conversation_id: UUID) -> dict[UUID, Recommendation]:
        """Get every pending recommendation of a conversation keyed by tag id."""
        stmt = select(Recommendation).where(
            Recommendation.conversation_id == conversation_id,
            Recommendation.user_feedback == FeedbackStatus.PENDING.value,
        )
        result = self.session.execute(stmt)
        return {rec.tag_id: rec for rec in result.scalars().all()}

    def get_by_conversation(
        self,
        conversation_id: UUID,
        analysis_revision: Optional[int] = None,
        include_resolved: bool = False,
    ) -> list[Recommendation]:
        """Get recommendations for a conversation in ranking order.

        Pending rows for tags that are already attached to the conversation
        are never returned.

        Args:
            conversation_id: Conversation ID
            analysis_revision: Only pending rows derived from this revision
            include_resolved: Also return accepted and rejected rows

        Returns:
            Recommendations ordered by confidence (descending), then tag
            creation time and tag id
        """
        already_applied = exists().where(
            and_(
                TagRelation.conversation_id == Recommendation.conversation_id,
                TagRelation.tag_id == Recommendation.tag_id,
            )
        )
        pending = and_(
            Recommendation.user_feedback == FeedbackStatus.PENDING.value,
            ~already_applied,
        )
        if analysis_revision is not None:
            pending = and_(pending, Recommendation.analysis_revision == analysis_revision)

        stmt = (
            select(Recommendation)
            .join(Tag, Tag.id == Recommendation.tag_id)
            .options(joinedload(Recommendation.tag))
            .where(Recommendation.conversation_id == conversation_id)
            .order_by(
                Recommendation.confidence_score.desc(),
                Tag.created_at.asc(),
                Tag.id.asc(),
                Recommendation.created_at.asc(),
            )
        )
        if include_resolved:
            stmt = stmt.where(
                (Recommendation.user_feedback != FeedbackStatus.PENDING.value) | pending
            )
        else:
            stmt = stmt.where(pending)

        result = self.session.execute(stmt)
        return list(result.scalars().unique().all())

    def get_suppressed_tag_ids(self, conversation_id: UUID, cycle: int) -> set[UUID]:
        """Tags rejected for this conversation whose suppression outlasts ``cycle``."""
        stmt = select(Recommendation.tag_id).where(
            Recommendation.conversation_id == conversation_id,
            Recommendation.user_feedback == FeedbackStatus.REJECTED.value,
            Recommendation.suppressed_until_cycle > cycle,
        )
        return set(self.session.execute(stmt).scalars().all())

    def create_pending(
        self,
        conversation_id: UUID,
        tag_id: UUID,
        confidence_score: float,
        reason: str,
        analysis_revision: int,
        source: str = "ai_analysis",
        source_data: Optional[dict[str, Any]] = None,
    ) -> Recommendation:
        """Create a new pending recommendation.

        Args:
            conversation_id: Conversation this recommendation belongs to
            tag_id: Suggested tag
            confidence_score: Confidence score (0.0 to 1.0)
            reason: Human-readable explanation
            analysis_revision: Revision of the analysis that produced it
            source: Provenance label
            source_data: Opaque provenance details

        Returns:
            Created recommendation
        """
        recommendation = self.create(
            conversation_id=conversation_id,
            tag_id=tag_id,
            confidence_score=confidence_score,
            reason=reason,
            analysis_revision=analysis_revision,
            source=source,
            source_data=source_data or {},
            user_feedback=FeedbackStatus.PENDING.value,
        )

        logger.debug(
            f"Created recommendation for conversation {conversation_id}: "
            f"tag {tag_id} (confidence={confidence_score:.2f})"
        )

        return recommendation

    def refresh_pending(
        self,
        recommendation: Recommendation,
        confidence_score: float,
        reason: str,
        analysis_revision: int,
        source_data: Optional[dict[str, Any]] = None,
    ) -> Recommendation:
        """Re-score an existing pending recommendation for a newer analysis."""
        recommendation.confidence_score = confidence_score
        recommendation.reason = reason
        recommendation.analysis_revision = analysis_revision
        if source_data is not None:
            recommendation.source_data = source_data
        self.session.flush()
        return recommendation

    def resolve(
        self,
        recommendation: Recommendation,
        decision: str,
        suppressed_until_cycle: Optional[int] = None,
    ) -> Recommendation:
        """Move a pending recommendation to a terminal state.

        Args:
            recommendation: Pending recommendation
            decision: accepted or rejected
            suppressed_until_cycle: Trigger cycle before which the tag must
                not be suggested again (rejections only)

        Returns:
            Updated recommendation
        """
        recommendation.user_feedback = decision
        recommendation.suppressed_until_cycle = suppressed_until_cycle
        recommendation.resolved_at = datetime.now(timezone.utc)
        self.session.flush()

        logger.info(
            f"Recommendation {recommendation.id} for conversation "
            f"{recommendation.conversation_id} {decision}"
        )

        return recommendation

    def get_summary_stats(self, conversation_id: Optional[UUID] = None) -> dict[str, Any]:
        """Get aggregate statistics for recommendations.

        Args:
            conversation_id: Restrict to one conversation

        Returns:
            Dictionary with counts by feedback state and average confidence
        """
        stmt = select(
            Recommendation.user_feedback,
            func.count().label("count"),
        ).group_by(Recommendation.user_feedback)
        avg_stmt = select(func.avg(Recommendation.confidence_score))
        if conversation_id is not None:
            stmt = stmt.where(Recommendation.conversation_id == conversation_id)
            avg_stmt = avg_stmt.where(Recommendation.conversation_id == conversation_id)

        by_feedback = {status.value: 0 for status in FeedbackStatus}
        for feedback, count in self.session.execute(stmt):
            by_feedback[feedback] = count

        avg_confidence = self.session.execute(avg_stmt).scalar() or 0.0

        return {
            "total": sum(by_feedback.values()),
            "by_feedback": by_feedback,
            "average_confidence": round(float(avg_confidence), 3),
        }
