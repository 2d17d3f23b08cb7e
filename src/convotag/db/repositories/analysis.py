"""
Analysis result repository.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from convotag.db.repositories.base import BaseRepository
from convotag.models.analysis import AnalysisPayload
from convotag.models.db import AnalysisResult


class AnalysisResultRepository(BaseRepository[AnalysisResult]):
    """Repository for the single current AnalysisResult of each conversation."""

    def __init__(self, session: Session):
        super().__init__(AnalysisResult, session)

    def get_by_conversation(self, conversation_id: uuid.UUID) -> Optional[AnalysisResult]:
        return (
            self.session.query(AnalysisResult)
            .filter(AnalysisResult.conversation_id == conversation_id)
            .first()
        )

    def lock_current(self, conversation_id: uuid.UUID) -> Optional[AnalysisResult]:
        """
        Lock and return the current result for the rest of the transaction.

        A no-op UPDATE takes the row lock on PostgreSQL and the database
        write lock on SQLite (where SELECT ... FOR UPDATE is not available),
        so a concurrent upsert cannot bump the revision until this
        transaction ends.

        Returns:
            The locked result, or None if the conversation has no analysis
        """
        self.session.execute(
            update(AnalysisResult)
            .where(AnalysisResult.conversation_id == conversation_id)
            .values(
                revision=AnalysisResult.revision,
                updated_at=AnalysisResult.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = (
            self.session.query(AnalysisResult)
            .filter(AnalysisResult.conversation_id == conversation_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        return result

    def upsert(
        self, conversation_id: uuid.UUID, payload: AnalysisPayload
    ) -> AnalysisResult:
        """
        Insert or wholly replace the current result and bump its revision.

        Callers must already hold the conversation row lock so that two
        upserts for the same conversation cannot interleave.

        Args:
            conversation_id: Conversation UUID
            payload: Validated analysis payload

        Returns:
            The stored result
        """
        values = {
            "summary": payload.summary,
            "key_insights": list(payload.key_insights),
            "main_topics": list(payload.main_topics),
            "problem_types": list(payload.problem_types),
            "suggested_actions": list(payload.suggested_actions),
            "auto_tags": list(payload.auto_tags),
            "sentiment_score": payload.sentiment_score,
            "complexity_score": payload.complexity_score,
            "engagement_score": payload.engagement_score,
            "confidence_scores": dict(payload.confidence_scores),
            "extra_fields": payload.extra_fields,
            "schema_version": payload.schema_version,
            "analysis_version": payload.analysis_version,
            "model_used": payload.model_used,
            "processing_time_ms": payload.processing_time_ms,
        }

        result = (
            self.session.query(AnalysisResult)
            .filter(AnalysisResult.conversation_id == conversation_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if result is None:
            return self.create(conversation_id=conversation_id, revision=1, **values)

        for key, value in values.items():
            setattr(result, key, value)
        result.revision = result.revision + 1
        result.updated_at = datetime.now(timezone.utc)
        self.session.flush()
        return result
