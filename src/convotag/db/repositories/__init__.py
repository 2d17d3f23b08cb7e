"""
Repository layer for database operations.

Provides a clean API for CRUD operations on database models.
"""

from convotag.db.repositories.analysis import AnalysisResultRepository
from convotag.db.repositories.base import BaseRepository
from convotag.db.repositories.conversation import ConversationRepository
from convotag.db.repositories.message import MessageRepository
from convotag.db.repositories.recommendation import RecommendationRepository
from convotag.db.repositories.tag import TagRepository
from convotag.db.repositories.tag_relation import TagRelationRepository

__all__ = [
    "AnalysisResultRepository",
    "BaseRepository",
    "ConversationRepository",
    "MessageRepository",
    "RecommendationRepository",
    "TagRelationRepository",
    "TagRepository",
]
