"""Tests for RecommendationService: generation, feedback and manual tagging."""

import threading
import uuid

import pytest

from convotag.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from convotag.models.db import Recommendation, TagRelation


def _pending(recommendation_service, conversation_id, owner_id):
    return recommendation_service.list_recommendations(conversation_id, owner_id).items


def _by_name(items):
    return {item.tag_name: item for item in items}


class TestGeneration:
    def test_recommendation_from_analysis(
        self, recommendation_service, analyzed_conversation, owner_id
    ):
        listing = recommendation_service.list_recommendations(analyzed_conversation.id, owner_id)

        assert listing.analysis_revision == 1
        assert len(listing.items) == 1
        rec = listing.items[0]
        assert rec.tag_name == "learning_strategy"
        assert rec.confidence_score == 0.82
        assert rec.user_feedback == "pending"
        assert rec.analysis_revision == 1
        assert rec.source_data == {
            "analysis_revision": 1,
            "model_used": "fake_analyzer",
            "origin": "auto_tag",
        }

    def test_no_analysis_yet(self, recommendation_service, conversation, owner_id):
        listing = recommendation_service.list_recommendations(conversation.id, owner_id)

        assert listing.analysis_revision is None
        assert listing.items == []

    def test_ranked_by_confidence(
        self, analysis_service, recommendation_service, conversation, owner_id, payload_factory
    ):
        analysis_service.upsert_result(
            conversation.id,
            payload_factory(
                auto_tags=["exam_preparation", "memory_retention", "study_habits"],
                confidence_scores={
                    "exam_preparation": 0.5,
                    "memory_retention": 0.9,
                    "study_habits": 0.7,
                },
            ),
        )

        items = _pending(recommendation_service, conversation.id, owner_id)

        assert [i.tag_name for i in items] == [
            "memory_retention",
            "study_habits",
            "exam_preparation",
        ]

    def test_default_confidences_and_threshold(
        self, analysis_service, recommendation_service, conversation, owner_id, payload_factory
    ):
        """Test default scores for unscored auto tags and the minimum confidence cut."""
        analysis_service.upsert_result(
            conversation.id,
            payload_factory(
                auto_tags=["Exam Preparation", "brand-new-tag", "weak_tag"],
                confidence_scores={"weak_tag": 0.2},
            ),
        )

        items = _by_name(_pending(recommendation_service, conversation.id, owner_id))

        assert set(items) == {"exam_preparation", "brand_new_tag"}
        assert items["exam_preparation"].confidence_score == 0.9
        assert items["brand_new_tag"].confidence_score == 0.8

    def test_confidence_key_for_existing_tag(
        self, analysis_service, recommendation_service, conversation, owner_id, payload_factory
    ):
        analysis_service.upsert_result(
            conversation.id,
            payload_factory(
                auto_tags=[],
                confidence_scores={"sentiment_positive": 0.6, "not_a_tag": 0.99},
            ),
        )

        items = _pending(recommendation_service, conversation.id, owner_id)

        assert [i.tag_name for i in items] == ["sentiment_positive"]
        assert items[0].source_data["origin"] == "confidence_score"

    def test_reason_names_the_analysis_signal(
        self, analysis_service, recommendation_service, conversation, owner_id, payload_factory
    ):
        analysis_service.upsert_result(
            conversation.id,
            payload_factory(
                problem_types=["Exam Preparation"],
                auto_tags=["exam_preparation", "flashcards"],
                confidence_scores={
                    "exam_preparation": 0.9,
                    "flashcards": 0.8,
                    "sentiment_concerned": 0.7,
                    "complexity_advanced": 0.6,
                },
            ),
        )

        reasons = {
            name: item.reason
            for name, item in _by_name(
                _pending(recommendation_service, conversation.id, owner_id)
            ).items()
        }

        assert reasons == {
            "exam_preparation": "Main problem type identified in the conversation",
            "flashcards": "Auto tag from fake_analyzer analysis",
            "sentiment_concerned": "Based on the conversation's sentiment analysis",
            "complexity_advanced": "Based on the conversation's complexity assessment",
        }

    def test_reanalysis_refreshes_pending_in_place(
        self, analysis_service, recommendation_service, analyzed_conversation, owner_id, payload_factory
    ):
        before = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]

        analysis_service.upsert_result(
            analyzed_conversation.id,
            payload_factory(confidence_scores={"learning_strategy": 0.6}),
        )

        after = _pending(recommendation_service, analyzed_conversation.id, owner_id)
        assert len(after) == 1
        assert after[0].id == before.id
        assert after[0].analysis_revision == 2
        assert after[0].confidence_score == 0.6

    def test_manually_applied_tag_not_recommended(
        self, analysis_service, recommendation_service, conversation, owner_id, payload_factory
    ):
        recommendation_service.add_tag(conversation.id, owner_id, "learning_strategy")

        analysis_service.upsert_result(conversation.id, payload_factory())

        assert _pending(recommendation_service, conversation.id, owner_id) == []

    def test_inactive_tag_not_recommended(
        self, analysis_service, recommendation_service, tag_service, conversation, owner_id,
        payload_factory,
    ):
        tag = next(t for t in tag_service.list_tags() if t.name == "learning_strategy")
        tag_service.set_active(tag.id, False)

        analysis_service.upsert_result(conversation.id, payload_factory())

        assert _pending(recommendation_service, conversation.id, owner_id) == []


class TestAccept:
    def test_accept_creates_relation(
        self, recommendation_service, analyzed_conversation, owner_id
    ):
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]

        result = recommendation_service.apply_feedback(
            analyzed_conversation.id, owner_id, rec.tag_id, "accepted", rec.analysis_revision
        )

        assert result.recommendation_id == rec.id
        assert result.tag_relation_created is True
        tags = recommendation_service.list_conversation_tags(analyzed_conversation.id, owner_id)
        assert [(t.name, t.applied_by, t.confidence_score) for t in tags] == [
            ("learning_strategy", "user", 0.82)
        ]
        assert _pending(recommendation_service, analyzed_conversation.id, owner_id) == []

        resolved = recommendation_service.list_recommendations(
            analyzed_conversation.id, owner_id, include_resolved=True
        ).items
        assert [(r.id, r.user_feedback) for r in resolved] == [(rec.id, "accepted")]
        assert resolved[0].resolved_at is not None

    def test_accept_twice_conflicts(self, recommendation_service, analyzed_conversation, owner_id):
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]
        recommendation_service.apply_feedback(
            analyzed_conversation.id, owner_id, rec.tag_id, "accepted", rec.analysis_revision
        )

        with pytest.raises(ConflictError, match="already accepted"):
            recommendation_service.apply_feedback(
                analyzed_conversation.id, owner_id, rec.tag_id, "accepted", rec.analysis_revision
            )

    def test_accepted_tag_not_suggested_again(
        self, engine, recommendation_service, analyzed_conversation, owner_id, add_messages
    ):
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]
        recommendation_service.apply_feedback(
            analyzed_conversation.id, owner_id, rec.tag_id, "accepted", rec.analysis_revision
        )

        add_messages(analyzed_conversation.id, 7)
        assert engine.worker.drain() == 1

        listing = recommendation_service.list_recommendations(analyzed_conversation.id, owner_id)
        assert listing.analysis_revision == 2
        assert listing.items == []

    def test_concurrent_accepts_leave_one_relation(
        self, engine, recommendation_service, analyzed_conversation, owner_id
    ):
        """Test that racing accepts of one recommendation apply it exactly once."""
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]
        successes = []
        conflicts = []
        errors = []
        barrier = threading.Barrier(4)

        def accept():
            try:
                barrier.wait()
                successes.append(
                    recommendation_service.apply_feedback(
                        analyzed_conversation.id,
                        owner_id,
                        rec.tag_id,
                        "accepted",
                        rec.analysis_revision,
                    )
                )
            except ConflictError as e:
                conflicts.append(e)
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=accept) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == [], f"Got errors: {errors}"
        assert len(successes) == 1
        assert len(conflicts) == 3
        with engine.database.session_scope() as session:
            assert (
                session.query(TagRelation)
                .filter(TagRelation.conversation_id == analyzed_conversation.id)
                .count()
                == 1
            )


class TestReject:
    def test_reject_suppresses_within_cycle(
        self, analysis_service, recommendation_service, analyzed_conversation, owner_id,
        payload_factory,
    ):
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]

        result = recommendation_service.apply_feedback(
            analyzed_conversation.id, owner_id, rec.tag_id, "rejected", rec.analysis_revision
        )

        assert result.suppressed_until_cycle == 1
        assert result.tag_relation_created is False
        assert recommendation_service.list_conversation_tags(
            analyzed_conversation.id, owner_id
        ) == []

        analysis_service.upsert_result(analyzed_conversation.id, payload_factory())
        assert _pending(recommendation_service, analyzed_conversation.id, owner_id) == []

    def test_rejected_tag_returns_next_cycle(
        self, engine, recommendation_service, analyzed_conversation, owner_id, add_messages
    ):
        """Test that a rejected tag may come back once the 10-message refresh runs."""
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]
        recommendation_service.apply_feedback(
            analyzed_conversation.id, owner_id, rec.tag_id, "rejected", rec.analysis_revision
        )

        add_messages(analyzed_conversation.id, 7)  # reaches 10 messages
        assert engine.worker.drain() == 1

        items = _pending(recommendation_service, analyzed_conversation.id, owner_id)
        assert len(items) == 1
        assert items[0].tag_id == rec.tag_id
        assert items[0].id != rec.id
        assert items[0].analysis_revision == 2

        with engine.database.session_scope() as session:
            rows = (
                session.query(Recommendation)
                .filter(Recommendation.conversation_id == analyzed_conversation.id)
                .all()
            )
        assert sorted(r.user_feedback for r in rows) == ["pending", "rejected"]


class TestFeedbackErrors:
    def test_stale_revision(
        self, analysis_service, recommendation_service, analyzed_conversation, owner_id,
        payload_factory,
    ):
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]
        analysis_service.upsert_result(analyzed_conversation.id, payload_factory())

        with pytest.raises(ConflictError, match="stale"):
            recommendation_service.apply_feedback(
                analyzed_conversation.id, owner_id, rec.tag_id, "accepted", analysis_revision=1
            )

        result = recommendation_service.apply_feedback(
            analyzed_conversation.id, owner_id, rec.tag_id, "accepted", analysis_revision=2
        )
        assert result.tag_relation_created is True

    def test_feedback_after_refresh_in_place(
        self, engine, recommendation_service, analyzed_conversation, owner_id, add_messages
    ):
        """Test that feedback on a row re-scored by a later analysis is rejected."""
        shown = recommendation_service.list_recommendations(analyzed_conversation.id, owner_id)
        rec = shown.items[0]

        add_messages(analyzed_conversation.id, 7)
        assert engine.worker.drain() == 1

        with pytest.raises(ConflictError, match="stale"):
            recommendation_service.apply_feedback(
                analyzed_conversation.id,
                owner_id,
                rec.tag_id,
                "rejected",
                shown.analysis_revision,
            )

        current = _pending(recommendation_service, analyzed_conversation.id, owner_id)
        assert [(r.id, r.analysis_revision) for r in current] == [(rec.id, 2)]
        assert current[0].user_feedback == "pending"

    def test_recommendation_from_older_revision(
        self, analysis_service, recommendation_service, analyzed_conversation, owner_id,
        payload_factory,
    ):
        """Test that a pending row the newest analysis no longer backs cannot be resolved."""
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]
        analysis_service.upsert_result(
            analyzed_conversation.id,
            payload_factory(auto_tags=["memory_retention"], confidence_scores={}),
        )

        listing = recommendation_service.list_recommendations(analyzed_conversation.id, owner_id)
        assert [i.tag_name for i in listing.items] == ["memory_retention"]

        with pytest.raises(ConflictError, match="revision 1"):
            recommendation_service.apply_feedback(
                analyzed_conversation.id,
                owner_id,
                rec.tag_id,
                "accepted",
                listing.analysis_revision,
            )

    def test_batch_is_atomic(
        self, analysis_service, recommendation_service, conversation, owner_id, payload_factory
    ):
        analysis_service.upsert_result(
            conversation.id,
            payload_factory(
                auto_tags=["exam_preparation", "memory_retention"], confidence_scores={}
            ),
        )
        items = _by_name(_pending(recommendation_service, conversation.id, owner_id))

        with pytest.raises(NotFoundError):
            recommendation_service.apply_feedback_batch(
                conversation.id,
                owner_id,
                [
                    {"tag_id": items["exam_preparation"].tag_id, "decision": "accepted"},
                    {"tag_id": uuid.uuid4(), "decision": "rejected"},
                ],
                analysis_revision=1,
            )

        assert len(_pending(recommendation_service, conversation.id, owner_id)) == 2
        assert recommendation_service.list_conversation_tags(conversation.id, owner_id) == []

    def test_batch_applies_all(
        self, analysis_service, recommendation_service, conversation, owner_id, payload_factory
    ):
        analysis_service.upsert_result(
            conversation.id,
            payload_factory(
                auto_tags=["exam_preparation", "memory_retention"], confidence_scores={}
            ),
        )
        items = _by_name(_pending(recommendation_service, conversation.id, owner_id))

        results = recommendation_service.apply_feedback_batch(
            conversation.id,
            owner_id,
            [
                {"tag_id": items["exam_preparation"].tag_id, "decision": "accepted"},
                {"tag_id": items["memory_retention"].tag_id, "decision": "rejected"},
            ],
            analysis_revision=1,
        )

        assert [r.decision for r in results] == ["accepted", "rejected"]
        tags = recommendation_service.list_conversation_tags(conversation.id, owner_id)
        assert [t.name for t in tags] == ["exam_preparation"]

    @pytest.mark.parametrize(
        "decisions",
        [
            [],
            [{"tag_id": "not-a-uuid", "decision": "accepted"}],
            [{"tag_id": "8d0f2c84-8f53-4d0b-9d38-1f0c5b1c2e11", "decision": "maybe"}],
            [
                {"tag_id": "8d0f2c84-8f53-4d0b-9d38-1f0c5b1c2e11", "decision": "accepted"},
                {"tag_id": "8d0f2c84-8f53-4d0b-9d38-1f0c5b1c2e11", "decision": "rejected"},
            ],
        ],
    )
    def test_invalid_batches(
        self, recommendation_service, analyzed_conversation, owner_id, decisions
    ):
        with pytest.raises(ValidationError):
            recommendation_service.apply_feedback_batch(
                analyzed_conversation.id, owner_id, decisions, analysis_revision=1
            )

    def test_no_analysis(self, recommendation_service, conversation, owner_id):
        with pytest.raises(NotFoundError) as exc_info:
            recommendation_service.apply_feedback(
                conversation.id, owner_id, uuid.uuid4(), "accepted", 1
            )

        assert exc_info.value.resource == "AnalysisResult"

    def test_no_recommendation_for_tag(self, recommendation_service, analyzed_conversation, owner_id):
        with pytest.raises(NotFoundError) as exc_info:
            recommendation_service.apply_feedback(
                analyzed_conversation.id, owner_id, uuid.uuid4(), "accepted", 1
            )

        assert exc_info.value.resource == "Recommendation"

    def test_wrong_owner(self, recommendation_service, analyzed_conversation, owner_id):
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]

        with pytest.raises(ForbiddenError):
            recommendation_service.apply_feedback(
                analyzed_conversation.id, "intruder", rec.tag_id, "accepted", rec.analysis_revision
            )
        with pytest.raises(ForbiddenError):
            recommendation_service.list_recommendations(analyzed_conversation.id, "intruder")


class TestManualTags:
    def test_add_tag_creates_custom_tag(
        self, recommendation_service, tag_service, conversation, owner_id
    ):
        relation = recommendation_service.add_tag(conversation.id, owner_id, "  Finals Week ")

        assert relation.name == "finals_week"
        assert relation.display_name == "Finals Week"
        assert relation.applied_by == "user"
        assert relation.category == "custom"
        assert relation.confidence_score is None

    def test_add_tag_twice_keeps_one_relation(self, recommendation_service, conversation, owner_id):
        recommendation_service.add_tag(conversation.id, owner_id, "finals")
        recommendation_service.add_tag(conversation.id, owner_id, "finals")

        tags = recommendation_service.list_conversation_tags(conversation.id, owner_id)
        assert [t.name for t in tags] == ["finals"]

    def test_add_tag_visible_on_cached_conversation(
        self, recommendation_service, conversation_service, conversation, owner_id
    ):
        conversation_service.get_conversation(conversation.id, owner_id)

        recommendation_service.add_tag(conversation.id, owner_id, "finals")

        fetched = conversation_service.get_conversation(conversation.id, owner_id)
        assert [t.name for t in fetched.tags] == ["finals"]

    def test_add_blank_tag(self, recommendation_service, conversation, owner_id):
        with pytest.raises(ValidationError):
            recommendation_service.add_tag(conversation.id, owner_id, "   ")

    def test_add_inactive_tag(self, recommendation_service, tag_service, conversation, owner_id):
        tag = tag_service.create_tag("retired")
        tag_service.set_active(tag.id, False)

        with pytest.raises(ValidationError, match="inactive"):
            recommendation_service.add_tag(conversation.id, owner_id, "retired")

    def test_remove_tag(self, recommendation_service, conversation, owner_id):
        relation = recommendation_service.add_tag(conversation.id, owner_id, "finals")

        recommendation_service.remove_tag(conversation.id, owner_id, relation.tag_id)

        assert recommendation_service.list_conversation_tags(conversation.id, owner_id) == []
        with pytest.raises(NotFoundError):
            recommendation_service.remove_tag(conversation.id, owner_id, relation.tag_id)

    def test_add_tag_wrong_owner(self, recommendation_service, conversation):
        with pytest.raises(ForbiddenError):
            recommendation_service.add_tag(conversation.id, "intruder", "finals")


class TestSummaryStats:
    def test_summary_stats(self, recommendation_service, analyzed_conversation, owner_id):
        rec = _pending(recommendation_service, analyzed_conversation.id, owner_id)[0]
        recommendation_service.apply_feedback(
            analyzed_conversation.id, owner_id, rec.tag_id, "rejected", rec.analysis_revision
        )

        stats = recommendation_service.get_summary_stats(analyzed_conversation.id)

        assert stats["total"] == 1
        assert stats["by_feedback"] == {"pending": 0, "accepted": 0, "rejected": 1}
        assert stats["average_confidence"] == 0.82
