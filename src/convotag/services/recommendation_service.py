"""
Recommendation and feedback engine.

Turns the current analysis of a conversation into pending tag
recommendations, and turns user accept/reject decisions into tag relations
and suppression. Recommendations follow a one-way state machine:
pending -> accepted | rejected. A later analysis that suggests the same tag
after a terminal decision creates a new row.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from convotag.analysis.trigger import analysis_cycle
from convotag.cache import ConversationCache, NullCache
from convotag.config import Settings
from convotag.config import settings as default_settings
from convotag.db.connection import Database
from convotag.db.repositories.analysis import AnalysisResultRepository
from convotag.db.repositories.recommendation import RecommendationRepository
from convotag.db.repositories.tag import TagRepository
from convotag.db.repositories.tag_relation import TagRelationRepository
from convotag.db.retry import RetryConfig, run_with_retry
from convotag.exceptions import ConflictError, NotFoundError, ValidationError
from convotag.models.db import (
    AnalysisResult,
    AppliedBy,
    FeedbackStatus,
    Recommendation,
    TagCategory,
)
from convotag.schemas import (
    FeedbackDecision,
    FeedbackResult,
    RecommendationListResponse,
    RecommendationResponse,
    TagRelationResponse,
)
from convotag.services.conversation_service import (
    load_owned_conversation,
    tag_relation_response,
    validation_error_from,
)
from convotag.tagging.taxonomy import is_problem_type, normalize_tag_name

logger = logging.getLogger(__name__)

# Score for an auto tag the analyzer did not attach a confidence to
PROBLEM_TYPE_DEFAULT_CONFIDENCE = 0.9
AUTO_TAG_DEFAULT_CONFIDENCE = 0.8

ORIGIN_AUTO_TAG = "auto_tag"
ORIGIN_CONFIDENCE_SCORE = "confidence_score"


@dataclass
class Candidate:
    """A tag the current analysis argues for."""

    name: str
    confidence: float
    origin: str


def recommendation_response(rec: Recommendation) -> RecommendationResponse:
    return RecommendationResponse(
        id=rec.id,
        conversation_id=rec.conversation_id,
        tag_id=rec.tag_id,
        tag_name=rec.tag.name,
        display_name=rec.tag.display_name,
        confidence_score=rec.confidence_score,
        reason=rec.reason,
        auto_applied=rec.auto_applied,
        user_feedback=rec.user_feedback,
        source=rec.source,
        source_data=rec.source_data or {},
        analysis_revision=rec.analysis_revision,
        created_at=rec.created_at,
        resolved_at=rec.resolved_at,
    )


def _reason_for(candidate: Candidate, result: AnalysisResult) -> str:
    """Explain a recommendation by the part of the analysis that produced it."""
    problem_types = {normalize_tag_name(p) for p in result.problem_types or []}
    if candidate.name in problem_types:
        return "Main problem type identified in the conversation"
    if candidate.name.startswith("sentiment_"):
        return "Based on the conversation's sentiment analysis"
    if candidate.name.startswith("complexity_"):
        return "Based on the conversation's complexity assessment"
    if candidate.origin == ORIGIN_AUTO_TAG:
        return f"Auto tag from {result.model_used} analysis"
    return f"Scored by {result.model_used} analysis"


class RecommendationService:
    """Generates recommendations and applies feedback on them."""

    def __init__(
        self,
        database: Database,
        cache: Optional[ConversationCache] = None,
        config: Optional[Settings] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.database = database
        self.cache = cache or NullCache()
        self.config = config or default_settings
        self.retry_config = retry_config

    # ----- Generation -----

    def collect_candidates(
        self, session: Session, result: AnalysisResult
    ) -> list[Candidate]:
        """
        Derive scored candidate tags from an analysis result.

        Auto tags are scored from ``confidence_scores`` (looked up by the raw
        and the normalized name), falling back to a fixed default. Any other
        confidence key that names an existing tag is a candidate too.
        """
        scores: dict[str, float] = dict(result.confidence_scores or {})
        candidates: dict[str, Candidate] = {}

        for raw in result.auto_tags or []:
            name = normalize_tag_name(raw)
            if not name:
                continue
            confidence = scores.get(raw, scores.get(name))
            if confidence is None:
                confidence = (
                    PROBLEM_TYPE_DEFAULT_CONFIDENCE
                    if is_problem_type(name)
                    else AUTO_TAG_DEFAULT_CONFIDENCE
                )
            existing = candidates.get(name)
            if existing is None or confidence > existing.confidence:
                candidates[name] = Candidate(name, float(confidence), ORIGIN_AUTO_TAG)

        by_key = {normalize_tag_name(key): value for key, value in scores.items()}
        known = TagRepository(session).get_by_names(
            name for name in by_key if name and name not in candidates
        )
        for name in known:
            candidates[name] = Candidate(
                name, float(by_key[name]), ORIGIN_CONFIDENCE_SCORE
            )

        return list(candidates.values())

    def generate_recommendations(
        self,
        session: Session,
        conversation_id: uuid.UUID,
        result: AnalysisResult,
        message_count: int,
    ) -> list[Recommendation]:
        """
        Create or refresh pending recommendations for the current analysis.

        Runs inside the caller's upsert transaction. Tags already attached to
        the conversation, inactive tags and tags still suppressed by a
        rejection are skipped. A pending row for the same tag is re-scored
        in place; otherwise a new pending row is created.

        Args:
            session: Session holding the conversation lock
            conversation_id: Conversation UUID
            result: The freshly stored AnalysisResult
            message_count: Message count the analysis was triggered at

        Returns:
            Pending recommendations derived from this revision
        """
        min_confidence = self.config.recommendation_min_confidence
        cycle = analysis_cycle(message_count)

        tag_repo = TagRepository(session)
        rec_repo = RecommendationRepository(session)
        applied = TagRelationRepository(session).get_tag_ids(conversation_id)
        suppressed = rec_repo.get_suppressed_tag_ids(conversation_id, cycle)
        pending = rec_repo.get_pending_by_conversation(conversation_id)

        generated: list[Recommendation] = []
        dropped = 0
        for candidate in self.collect_candidates(session, result):
            if candidate.confidence < min_confidence:
                dropped += 1
                continue

            tag = tag_repo.get_or_create(
                candidate.name, category=TagCategory.AUTO.value
            )
            if not tag.is_active or tag.id in applied or tag.id in suppressed:
                continue

            reason = _reason_for(candidate, result)
            source_data = {
                "analysis_revision": result.revision,
                "model_used": result.model_used,
                "origin": candidate.origin,
            }
            existing = pending.get(tag.id)
            if existing is not None:
                rec = rec_repo.refresh_pending(
                    existing,
                    confidence_score=candidate.confidence,
                    reason=reason,
                    analysis_revision=result.revision,
                    source_data=source_data,
                )
            else:
                rec = rec_repo.create_pending(
                    conversation_id=conversation_id,
                    tag_id=tag.id,
                    confidence_score=candidate.confidence,
                    reason=reason,
                    analysis_revision=result.revision,
                    source_data=source_data,
                )
            generated.append(rec)

        logger.info(
            f"Generated {len(generated)} recommendations for conversation "
            f"{conversation_id} (revision {result.revision}, "
            f"{dropped} below {min_confidence})"
        )
        return generated

    # ----- Reads -----

    def list_recommendations(
        self,
        conversation_id: uuid.UUID,
        owner_id: str,
        include_resolved: bool = False,
    ) -> RecommendationListResponse:
        """
        List the recommendations of the current analysis revision.

        Ordered by confidence (descending), then tag creation time and tag
        id. Tags already attached to the conversation are never listed.
        """

        def _list() -> RecommendationListResponse:
            with self.database.session_scope() as session:
                load_owned_conversation(session, conversation_id, owner_id)
                current = AnalysisResultRepository(session).get_by_conversation(
                    conversation_id
                )
                if current is None:
                    return RecommendationListResponse(conversation_id=conversation_id)
                recs = RecommendationRepository(session).get_by_conversation(
                    conversation_id,
                    analysis_revision=current.revision,
                    include_resolved=include_resolved,
                )
                return RecommendationListResponse(
                    conversation_id=conversation_id,
                    analysis_revision=current.revision,
                    items=[recommendation_response(r) for r in recs],
                )

        return run_with_retry(_list, self.retry_config, "list_recommendations")

    # ----- Feedback -----

    def apply_feedback(
        self,
        conversation_id: uuid.UUID,
        owner_id: str,
        tag_id: uuid.UUID,
        decision: str,
        analysis_revision: int,
    ) -> FeedbackResult:
        """Accept or reject one recommendation. See ``apply_feedback_batch``."""
        results = self.apply_feedback_batch(
            conversation_id,
            owner_id,
            [{"tag_id": tag_id, "decision": decision}],
            analysis_revision=analysis_revision,
        )
        return results[0]

    def apply_feedback_batch(
        self,
        conversation_id: uuid.UUID,
        owner_id: str,
        decisions: Iterable[Union[FeedbackDecision, dict[str, Any]]],
        analysis_revision: int,
    ) -> list[FeedbackResult]:
        """
        Apply accept/reject decisions atomically.

        The current AnalysisResult row stays locked for the whole batch, so a
        concurrent re-analysis either finishes first (and the decisions
        become stale) or waits until they are committed. Any failure rolls
        back every decision in the batch.

        Args:
            conversation_id: Conversation UUID
            owner_id: Caller; must own the conversation
            decisions: ``{"tag_id", "decision"}`` items, decision being
                accepted or rejected
            analysis_revision: Revision of the listing the caller acted on

        Returns:
            One FeedbackResult per decision, in input order

        Raises:
            ValidationError: Empty batch, duplicate tag or unknown decision
            NotFoundError: Conversation, analysis or pending recommendation missing
            ForbiddenError: Owner mismatch
            ConflictError: Stale revision or already-resolved recommendation
        """
        parsed = self._parse_decisions(decisions)

        def _apply() -> list[FeedbackResult]:
            with self.database.session_scope() as session:
                current = AnalysisResultRepository(session).lock_current(conversation_id)
                conversation = load_owned_conversation(session, conversation_id, owner_id)
                if current is None:
                    raise NotFoundError("AnalysisResult", conversation_id)
                if analysis_revision != current.revision:
                    raise ConflictError(
                        f"Analysis revision {analysis_revision} is stale "
                        f"(current is {current.revision})",
                        {"current_revision": current.revision},
                    )

                cycle = analysis_cycle(conversation.message_count)
                return [
                    self._apply_one(session, conversation_id, item, current, cycle)
                    for item in parsed
                ]

        results = run_with_retry(_apply, self.retry_config, "apply_feedback")
        self.cache.invalidate_conversation(conversation_id)
        self.cache.invalidate_owner(owner_id)
        return results

    def _parse_decisions(
        self, decisions: Iterable[Union[FeedbackDecision, dict[str, Any]]]
    ) -> list[FeedbackDecision]:
        parsed: list[FeedbackDecision] = []
        for item in decisions:
            try:
                parsed.append(FeedbackDecision.model_validate(item))
            except PydanticValidationError as e:
                raise validation_error_from(e, "Invalid feedback decision") from e
        if not parsed:
            raise ValidationError("No feedback decisions given")

        tag_ids = [item.tag_id for item in parsed]
        if len(set(tag_ids)) != len(tag_ids):
            raise ValidationError("Each tag may appear only once per batch")
        return parsed

    def _apply_one(
        self,
        session: Session,
        conversation_id: uuid.UUID,
        item: FeedbackDecision,
        current: AnalysisResult,
        cycle: int,
    ) -> FeedbackResult:
        rec_repo = RecommendationRepository(session)
        rec = rec_repo.get_pending(conversation_id, item.tag_id, for_update=True)
        if rec is None:
            latest = rec_repo.get_latest(conversation_id, item.tag_id)
            if latest is not None:
                raise ConflictError(
                    f"Recommendation for tag {item.tag_id} is already {latest.user_feedback}",
                    {"recommendation_id": str(latest.id), "state": latest.user_feedback},
                )
            raise NotFoundError("Recommendation", item.tag_id)

        if rec.analysis_revision != current.revision:
            raise ConflictError(
                f"Recommendation {rec.id} belongs to revision {rec.analysis_revision} "
                f"(current is {current.revision})",
                {"current_revision": current.revision},
            )

        if item.decision == FeedbackStatus.ACCEPTED.value:
            relation_repo = TagRelationRepository(session)
            created = relation_repo.get_pair(conversation_id, rec.tag_id) is None
            relation_repo.upsert(
                conversation_id,
                rec.tag_id,
                applied_by=AppliedBy.USER.value,
                confidence_score=rec.confidence_score,
            )
            rec_repo.resolve(rec, FeedbackStatus.ACCEPTED.value)
            return FeedbackResult(
                recommendation_id=rec.id,
                tag_id=rec.tag_id,
                decision=item.decision,
                tag_relation_created=created,
            )

        rec_repo.resolve(
            rec, FeedbackStatus.REJECTED.value, suppressed_until_cycle=cycle + 1
        )
        return FeedbackResult(
            recommendation_id=rec.id,
            tag_id=rec.tag_id,
            decision=item.decision,
            suppressed_until_cycle=cycle + 1,
        )

    # ----- Manual tagging -----

    def add_tag(
        self, conversation_id: uuid.UUID, owner_id: str, tag_name: str
    ) -> TagRelationResponse:
        """Attach a tag by name, creating it as a custom tag if needed."""
        name = normalize_tag_name(tag_name or "")
        if not name:
            raise ValidationError("Tag name is required")

        def _add() -> TagRelationResponse:
            with self.database.session_scope() as session:
                load_owned_conversation(session, conversation_id, owner_id)
                tag = TagRepository(session).get_or_create(name)
                if not tag.is_active:
                    raise ValidationError(f"Tag {name} is inactive", {"tag_id": str(tag.id)})
                relation = TagRelationRepository(session).upsert(
                    conversation_id, tag.id, applied_by=AppliedBy.USER.value
                )
                return tag_relation_response(relation)

        response = run_with_retry(_add, self.retry_config, "add_tag")
        self.cache.invalidate_conversation(conversation_id)
        self.cache.invalidate_owner(owner_id)
        logger.info(f"Tagged conversation {conversation_id} with {name}")
        return response

    def remove_tag(
        self, conversation_id: uuid.UUID, owner_id: str, tag_id: uuid.UUID
    ) -> None:
        def _remove() -> None:
            with self.database.session_scope() as session:
                load_owned_conversation(session, conversation_id, owner_id)
                if not TagRelationRepository(session).remove(conversation_id, tag_id):
                    raise NotFoundError("TagRelation", tag_id)

        run_with_retry(_remove, self.retry_config, "remove_tag")
        self.cache.invalidate_conversation(conversation_id)
        self.cache.invalidate_owner(owner_id)
        logger.info(f"Removed tag {tag_id} from conversation {conversation_id}")

    def list_conversation_tags(
        self, conversation_id: uuid.UUID, owner_id: str
    ) -> list[TagRelationResponse]:
        def _list() -> list[TagRelationResponse]:
            with self.database.session_scope() as session:
                load_owned_conversation(session, conversation_id, owner_id)
                relations = TagRelationRepository(session).get_by_conversation(
                    conversation_id
                )
                return [tag_relation_response(r) for r in relations]

        return run_with_retry(_list, self.retry_config, "list_conversation_tags")

    def get_summary_stats(self, conversation_id: Optional[uuid.UUID] = None) -> dict[str, Any]:
        with self.database.session_scope() as session:
            return RecommendationRepository(session).get_summary_stats(conversation_id)
