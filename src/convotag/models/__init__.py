"""Data models for Convotag."""

from convotag.models.analysis import AnalysisPayload, Transcript, TranscriptMessage
from convotag.models.db import (
    AnalysisJob,
    AnalysisJobStatus,
    AnalysisResult,
    AppliedBy,
    Base,
    Conversation,
    ConversationStatus,
    FeedbackStatus,
    Message,
    MessageRole,
    Recommendation,
    Tag,
    TagCategory,
    TagRelation,
    Visibility,
)

__all__ = [
    "AnalysisJob",
    "AnalysisJobStatus",
    "AnalysisPayload",
    "AnalysisResult",
    "AppliedBy",
    "Base",
    "Conversation",
    "ConversationStatus",
    "FeedbackStatus",
    "Message",
    "MessageRole",
    "Recommendation",
    "Tag",
    "TagCategory",
    "TagRelation",
    "Transcript",
    "TranscriptMessage",
    "Visibility",
]
