"""Tests for the analysis payload and input schemas."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from convotag.exceptions import ValidationError
from convotag.models.analysis import SCHEMA_VERSION, AnalysisPayload, Transcript, TranscriptMessage
from convotag.schemas import ConversationUpdate, FeedbackDecision, MessageCreate


def _raw(**overrides):
    raw = {
        "summary": "A talk about exams",
        "sentiment_score": 0.1,
        "complexity_score": 3,
        "engagement_score": 0.5,
    }
    raw.update(overrides)
    return raw


class TestAnalysisPayload:
    def test_minimal_payload_defaults(self):
        payload = AnalysisPayload.from_raw(_raw())

        assert payload.key_insights == []
        assert payload.auto_tags == []
        assert payload.confidence_scores == {}
        assert payload.model_used == "unknown"
        assert payload.schema_version == SCHEMA_VERSION
        assert payload.extra_fields == {}

    @pytest.mark.parametrize(
        "field,value",
        [
            ("sentiment_score", 1.5),
            ("sentiment_score", -1.01),
            ("complexity_score", 0),
            ("complexity_score", 6),
            ("engagement_score", 1.2),
            ("engagement_score", -0.1),
        ],
    )
    def test_out_of_range_rejected(self, field, value):
        """Test that out-of-range values raise instead of being clamped."""
        with pytest.raises(ValidationError) as exc_info:
            AnalysisPayload.from_raw(_raw(**{field: value}))

        fields = [e["field"] for e in exc_info.value.details["errors"]]
        assert field in fields

    def test_confidence_values_checked(self):
        with pytest.raises(ValidationError):
            AnalysisPayload.from_raw(_raw(confidence_scores={"exam_preparation": 1.3}))

    def test_missing_summary_rejected(self):
        raw = _raw()
        del raw["summary"]

        with pytest.raises(ValidationError):
            AnalysisPayload.from_raw(raw)

    def test_non_mapping_rejected(self):
        with pytest.raises(ValidationError, match="mapping"):
            AnalysisPayload.from_raw(["not", "a", "dict"])

    def test_unknown_fields_kept(self):
        payload = AnalysisPayload.from_raw(
            _raw(token_usage={"total_tokens": 200}, learning_style="visual")
        )

        assert payload.extra_fields == {
            "token_usage": {"total_tokens": 200},
            "learning_style": "visual",
        }

    def test_instance_passes_through(self):
        payload = AnalysisPayload.from_raw(_raw())

        assert AnalysisPayload.from_raw(payload) is payload


class TestTranscript:
    def test_role_views(self):
        transcript = Transcript(
            conversation_id="c1",
            title="t",
            messages=[
                TranscriptMessage("user", "hi", 1),
                TranscriptMessage("assistant", "hello", 2),
                TranscriptMessage("system", "note", 3),
            ],
        )

        assert [m.content for m in transcript.user_messages] == ["hi"]
        assert [m.content for m in transcript.assistant_messages] == ["hello"]


class TestMessageCreate:
    def test_valid(self):
        message = MessageCreate(role="user", content="Hello", tokens=3)

        assert message.role.value == "user"
        assert message.metadata == {}

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"role": "user", "content": ""},
            {"role": "user", "content": "   "},
            {"role": "robot", "content": "hi"},
            {"role": "user", "content": "hi", "tokens": -1},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(PydanticValidationError):
            MessageCreate(**kwargs)


class TestConversationUpdate:
    def test_rating_alias(self):
        update = ConversationUpdate.model_validate({"rating": 4})

        assert update.model_dump(exclude_unset=True) == {"satisfaction_rating": 4}

    def test_unknown_field_rejected(self):
        with pytest.raises(PydanticValidationError):
            ConversationUpdate.model_validate({"owner_id": "someone-else"})

    def test_rating_range(self):
        with pytest.raises(PydanticValidationError):
            ConversationUpdate.model_validate({"satisfaction_rating": 6})


class TestFeedbackDecision:
    def test_unknown_decision_rejected(self):
        with pytest.raises(PydanticValidationError):
            FeedbackDecision.model_validate(
                {"tag_id": "8d0f2c84-8f53-4d0b-9d38-1f0c5b1c2e11", "decision": "maybe"}
            )
