"""Services for Convotag."""

from convotag.services.analysis_service import AnalysisService
from convotag.services.conversation_service import ConversationService
from convotag.services.recommendation_service import RecommendationService
from convotag.services.tag_service import TagService

__all__ = [
    "AnalysisService",
    "ConversationService",
    "RecommendationService",
    "TagService",
]
