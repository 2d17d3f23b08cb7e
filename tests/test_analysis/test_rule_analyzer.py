"""Tests for the rule-based analyzer."""

import pytest

from convotag.analysis.rule_analyzer import MODEL_NAME, RuleAnalyzer
from convotag.models.analysis import AnalysisPayload, Transcript, TranscriptMessage


def _transcript(*turns: tuple[str, str], category: str = "Socrates") -> Transcript:
    return Transcript(
        conversation_id="c1",
        title="Study planning",
        category=category,
        messages=[
            TranscriptMessage(role, content, i + 1) for i, (role, content) in enumerate(turns)
        ],
    )


@pytest.fixture
def study_transcript() -> Transcript:
    return _transcript(
        ("user", "I need a study plan for my exam next month"),
        ("assistant", "Let's build one."),
        ("user", "Thanks, that makes sense"),
    )


class TestRuleAnalyzer:
    """Tests for RuleAnalyzer."""

    def test_detects_problem_types(self, study_transcript: Transcript):
        result = RuleAnalyzer().analyze(study_transcript)

        assert result["problem_types"] == ["learning_strategy", "exam_preparation"]
        assert result["confidence_scores"]["learning_strategy"] == 0.7
        assert result["confidence_scores"]["exam_preparation"] == 0.7
        assert result["model_used"] == MODEL_NAME

    def test_auto_tags(self, study_transcript: Transcript):
        result = RuleAnalyzer().analyze(study_transcript)

        assert result["auto_tags"] == [
            "learning_strategy",
            "exam_preparation",
            "sentiment_positive",
            "complexity_basic",
        ]

    def test_sentiment_and_scores(self, study_transcript: Transcript):
        result = RuleAnalyzer().analyze(study_transcript)

        assert result["sentiment_score"] == 0.67
        assert result["complexity_score"] == 1
        assert 0.0 <= result["engagement_score"] <= 1.0

    def test_summary_names_the_partner(self, study_transcript: Transcript):
        result = RuleAnalyzer().analyze(study_transcript)

        assert result["summary"].startswith("In-depth discussion of learning strategy")
        assert "Socrates" in result["summary"]
        assert result["suggested_actions"][0] == "Draft a personalized study plan and schedule"

    def test_deterministic(self, study_transcript: Transcript):
        """Test that the same transcript always yields the same analysis."""
        analyzer = RuleAnalyzer()
        first = analyzer.analyze(study_transcript)
        second = analyzer.analyze(study_transcript)

        first.pop("processing_time_ms")
        second.pop("processing_time_ms")
        assert first == second

    def test_output_validates(self, study_transcript: Transcript):
        payload = AnalysisPayload.from_raw(RuleAnalyzer().analyze(study_transcript))

        assert payload.extra_fields == {}

    def test_no_keywords(self):
        result = RuleAnalyzer().analyze(_transcript(("user", "hello"), category=None))

        assert result["problem_types"] == []
        assert result["sentiment_score"] == 0.0
        assert result["auto_tags"] == ["sentiment_neutral", "complexity_basic"]
        assert "the mentor" in result["summary"]

    def test_negative_sentiment(self):
        result = RuleAnalyzer().analyze(
            _transcript(("user", "I am worried and frustrated, I feel lost"))
        )

        assert result["sentiment_score"] == -1.0
        assert "sentiment_negative" in result["auto_tags"]

    def test_long_conversation_complexity(self):
        long_text = "x" * 250
        turns = [("user" if i % 2 == 0 else "assistant", long_text) for i in range(14)]

        result = RuleAnalyzer().analyze(_transcript(*turns))

        assert result["complexity_score"] == 5
        assert "complexity_advanced" in result["auto_tags"]

    def test_empty_transcript(self):
        result = RuleAnalyzer().analyze(_transcript())

        assert result["engagement_score"] == 0.0
        assert result["summary"] == "Conversation with Socrates, 0 messages"
