"""Base protocol for conversation analyzers."""

from typing import Any, Protocol

from convotag.models.analysis import Transcript


class Analyzer(Protocol):
    """Protocol for conversation analyzers.

    Analyzers read a transcript and return a mapping with the keys of
    ``AnalysisPayload``: summary, key_insights, main_topics, problem_types,
    suggested_actions, sentiment_score, complexity_score, engagement_score,
    auto_tags, confidence_scores, model_used and processing_time_ms.
    Extra keys are preserved.
    """

    def analyze(self, transcript: Transcript) -> dict[str, Any]:
        """Analyze a conversation transcript.

        Args:
            transcript: The conversation to analyze

        Returns:
            Raw analysis mapping (validated by the caller)

        Raises:
            Exception: Any failure; the caller records it and moves on
        """
        ...
