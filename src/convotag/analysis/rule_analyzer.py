"""Rule-based conversation analyzer for deterministic, offline analysis."""

import logging
import time
from typing import Any

from convotag.models.analysis import Transcript, TranscriptMessage

logger = logging.getLogger(__name__)

MODEL_NAME = "rule_based_v1"
ANALYSIS_VERSION = "v1.0"


# Problem type -> keywords that signal it
PROBLEM_TYPE_KEYWORDS = {
    "learning_strategy": [
        "learning strategy",
        "study method",
        "learning plan",
        "study plan",
        "study technique",
        "learn efficiently",
        "learning path",
    ],
    "memory_retention": [
        "memory",
        "memorize",
        "forget",
        "review",
        "recall",
        "forgetting curve",
        "spaced repetition",
    ],
    "exam_preparation": [
        "exam",
        "test prep",
        "practice questions",
        "before the test",
        "mock test",
        "past papers",
        "answering questions",
    ],
    "concept_understanding": [
        "concept",
        "understand",
        "principle",
        "definition",
        "difference between",
        "meaning",
        "explain",
    ],
    "knowledge_application": [
        "apply",
        "practice",
        "project",
        "exercise",
        "hands-on",
        "real world",
        "use it",
    ],
    "study_habits": [
        "habit",
        "time management",
        "focus",
        "efficiency",
        "procrastinat",
        "self-discipline",
        "consistency",
    ],
    "personal_growth": [
        "personal",
        "growth",
        "myself",
        "improve",
        "goal",
        "values",
        "progress",
    ],
    "learning_difficulties": [
        "difficult",
        "hard part",
        "obstacle",
        "bottleneck",
        "problem",
        "confused",
        "challenge",
    ],
}

PROBLEM_TYPE_LABELS = {
    "learning_strategy": "learning strategy",
    "memory_retention": "memory retention",
    "exam_preparation": "exam preparation",
    "concept_understanding": "concept understanding",
    "knowledge_application": "knowledge application",
    "study_habits": "study habits",
    "personal_growth": "personal growth",
    "learning_difficulties": "learning difficulties",
}

SENTIMENT_KEYWORDS = {
    "positive": [
        "mastered",
        "got it",
        "progress",
        "improved",
        "learned a lot",
        "breakthrough",
        "makes sense",
        "thank",
    ],
    "negative": [
        "difficult",
        "don't understand",
        "worried",
        "anxious",
        "lost",
        "frustrated",
        "confused",
        "stress",
    ],
    "neutral": [
        "analyze",
        "discuss",
        "consider",
        "research",
        "learn about",
        "study",
        "think about",
        "explore",
    ],
}

TOPIC_KEYWORDS = {
    "education": ["school", "course", "class", "teacher", "curriculum", "education"],
    "learning_science": ["memory", "cognitive", "forgetting curve", "retrieval", "brain"],
    "skill_development": ["skill", "practice", "project", "hands-on", "career"],
    "knowledge_management": ["notes", "note-taking", "knowledge base", "organize", "mind map"],
    "technology": ["technology", "ai", "software", "programming", "digital"],
    "management": ["manage", "team", "leader", "schedule", "planning"],
}

INSIGHTS = {
    "learning_strategy": (
        "The user is focused on planning how to learn; a structured study plan "
        "would help"
    ),
    "exam_preparation": (
        "Clear exam-preparation need; pacing of review and test-taking technique "
        "are worth refining"
    ),
    "concept_understanding": (
        "The user wants deeper conceptual understanding; strengthening the "
        "fundamentals is the priority"
    ),
    "memory_retention": (
        "Retention is the key issue; evidence-based memorization and review "
        "methods apply"
    ),
}
HIGH_ENGAGEMENT_INSIGHT = (
    "High engagement: the user shows strong motivation and asks follow-up questions"
)

SUGGESTED_ACTIONS = {
    "learning_strategy": "Draft a personalized study plan and schedule",
    "memory_retention": "Set up a spaced review routine",
    "exam_preparation": "Plan exam review and a practice-question strategy",
    "concept_understanding": "Revisit core concepts and build a knowledge map",
    "knowledge_application": "Consolidate knowledge through a practice project",
    "study_habits": "Build study habits and time-management routines",
    "learning_difficulties": "Target the specific sticking points one at a time",
}

# Fixed confidences for the non-keyword parts of the analysis
SUMMARY_CONFIDENCE = 0.85
TOPICS_CONFIDENCE = 0.75
COMPLEXITY_CONFIDENCE = 0.8


class RuleAnalyzer:
    """Analyzer that derives summary, scores and tags from keyword rules.

    This analyzer is fast, free and deterministic, so it is the default
    backend and the one used when no language model is configured.
    """

    def analyze(self, transcript: Transcript) -> dict[str, Any]:
        """Analyze a transcript with keyword rules.

        Args:
            transcript: The conversation to analyze

        Returns:
            Raw analysis mapping
        """
        start_time = time.perf_counter()

        all_content = " ".join(m.content for m in transcript.messages).lower()
        user_content = " ".join(m.content for m in transcript.user_messages).lower()

        problem_matches = self._match_problem_types(all_content)
        problem_types = [name for name, _ in problem_matches]
        sentiment = self._analyze_sentiment(all_content)
        complexity = self._assess_complexity(transcript.messages)
        engagement = self._assess_engagement(transcript.messages)

        auto_tags = self._auto_tags(problem_types, sentiment["dominant"], complexity)

        confidence_scores: dict[str, float] = {
            "summary": SUMMARY_CONFIDENCE,
            "topics": TOPICS_CONFIDENCE,
            "sentiment": sentiment["confidence"],
            "complexity": COMPLEXITY_CONFIDENCE,
        }
        for name, matches in problem_matches:
            confidence_scores[name] = round(min(0.6 + 0.1 * matches, 0.95), 2)
        confidence_scores[f"sentiment_{sentiment['dominant']}"] = sentiment["confidence"]
        confidence_scores[_complexity_tag(complexity)] = COMPLEXITY_CONFIDENCE

        processing_time_ms = int((time.perf_counter() - start_time) * 1000)

        return {
            "summary": self._summarize(transcript, user_content),
            "key_insights": self._insights(transcript, problem_types),
            "main_topics": self._extract_topics(all_content),
            "problem_types": problem_types,
            "suggested_actions": self._suggested_actions(problem_types),
            "sentiment_score": sentiment["score"],
            "complexity_score": complexity,
            "engagement_score": engagement,
            "auto_tags": auto_tags,
            "confidence_scores": confidence_scores,
            "analysis_version": ANALYSIS_VERSION,
            "model_used": MODEL_NAME,
            "processing_time_ms": processing_time_ms,
        }

    def _match_problem_types(self, content: str) -> list[tuple[str, int]]:
        """Return up to three (problem type, keyword hits), best match first."""
        matches = []
        for problem_type, keywords in PROBLEM_TYPE_KEYWORDS.items():
            count = sum(1 for keyword in keywords if keyword in content)
            if count:
                matches.append((problem_type, count))
        # Stable sort keeps table order for ties
        matches.sort(key=lambda item: item[1], reverse=True)
        return matches[:3]

    def _extract_topics(self, content: str) -> list[str]:
        topics = [
            topic
            for topic, keywords in TOPIC_KEYWORDS.items()
            if any(keyword in content for keyword in keywords)
        ]
        return topics[:5]

    def _analyze_sentiment(self, content: str) -> dict[str, Any]:
        """Score sentiment in [-1, 1] from keyword hits."""
        hits = {
            sentiment: sum(1 for keyword in keywords if keyword in content)
            for sentiment, keywords in SENTIMENT_KEYWORDS.items()
        }
        total = sum(hits.values())
        if total == 0:
            return {"score": 0.0, "confidence": 0.5, "dominant": "neutral"}

        score = (hits["positive"] - hits["negative"]) / total
        confidence = min(total / 10, 1.0)

        dominant = "neutral"
        if score > 0.2:
            dominant = "positive"
        elif score < -0.2:
            dominant = "negative"

        return {"score": round(score, 2), "confidence": confidence, "dominant": dominant}

    def _assess_complexity(self, messages: list[TranscriptMessage]) -> int:
        """Complexity 1-5 from average user message length and message count."""
        user_messages = [m for m in messages if m.role == "user"]
        avg_length = (
            sum(len(m.content) for m in user_messages) / len(user_messages)
            if user_messages
            else 0
        )

        complexity = 1
        if avg_length > 100:
            complexity += 1
        if avg_length > 200:
            complexity += 1
        if len(messages) > 6:
            complexity += 1
        if len(messages) > 12:
            complexity += 1
        return min(complexity, 5)

    def _assess_engagement(self, messages: list[TranscriptMessage]) -> float:
        """Engagement 0-1 from the user/assistant ratio and user message length."""
        user_messages = [m for m in messages if m.role == "user"]
        assistant_count = sum(1 for m in messages if m.role == "assistant")
        if not user_messages:
            return 0.0

        ratio = min(len(user_messages) / assistant_count, 1.0) if assistant_count else 1.0
        avg_length = sum(len(m.content) for m in user_messages) / len(user_messages)

        engagement = ratio * 0.6
        if avg_length > 50:
            engagement += 0.2
        if avg_length > 100:
            engagement += 0.2
        return min(round(engagement, 2), 1.0)

    def _summarize(self, transcript: Transcript, user_content: str) -> str:
        partner = transcript.category or "the mentor"
        count = len(transcript.messages)
        if not transcript.user_messages:
            return f"Conversation with {partner}, {count} messages"

        user_problems = self._match_problem_types(user_content)
        if user_problems:
            label = PROBLEM_TYPE_LABELS[user_problems[0][0]]
            return (
                f"In-depth discussion of {label} with {partner}, "
                f"with concrete advice and guidance"
            )
        return (
            f"{count} messages with {partner} across several topics, "
            f"covering advice and shared experience"
        )

    def _insights(self, transcript: Transcript, problem_types: list[str]) -> list[str]:
        insights = [INSIGHTS[p] for p in INSIGHTS if p in problem_types]
        if len(transcript.user_messages) > 5:
            insights.append(HIGH_ENGAGEMENT_INSIGHT)
        return insights[:3]

    def _suggested_actions(self, problem_types: list[str]) -> list[str]:
        actions: list[str] = []
        for problem_type in problem_types:
            action = SUGGESTED_ACTIONS.get(problem_type)
            if action and action not in actions:
                actions.append(action)
        return actions[:3]

    def _auto_tags(
        self, problem_types: list[str], dominant_sentiment: str, complexity: int
    ) -> list[str]:
        tags = list(problem_types)
        tags.append(f"sentiment_{dominant_sentiment}")
        tags.append(_complexity_tag(complexity))
        return tags


def _complexity_tag(complexity: int) -> str:
    if complexity <= 2:
        return "complexity_basic"
    if complexity <= 3:
        return "complexity_intermediate"
    return "complexity_advanced"
