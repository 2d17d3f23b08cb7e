"""
Schemas for Convotag.

Pydantic models for service input validation and the response objects
returned (and cached) by the services.
"""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from convotag.models.db import ConversationStatus, MessageRole, Visibility

# ===== Input Schemas =====


class MessageCreate(BaseModel):
    """Validated input for appending a message."""

    role: MessageRole
    content: str = Field(min_length=1)
    tokens: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


class ConversationUpdate(BaseModel):
    """Whitelisted partial update; any other field is rejected."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    status: Optional[ConversationStatus] = None
    is_favorite: Optional[bool] = None
    visibility: Optional[Visibility] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None
    satisfaction_rating: Optional[int] = Field(
        default=None, ge=1, le=5, alias="rating"
    )


class FeedbackDecision(BaseModel):
    """One accept/reject decision for a recommended tag."""

    tag_id: UUID
    decision: Literal["accepted", "rejected"]


# ===== Response Schemas =====


class MessageResponse(BaseModel):
    """Response schema for Message."""

    model_config = {"from_attributes": True}

    id: UUID
    conversation_id: UUID
    role: str
    content: str
    message_order: int
    tokens: int
    extra_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class TagResponse(BaseModel):
    """Response schema for Tag."""

    model_config = {"from_attributes": True}

    id: UUID
    name: str
    display_name: str
    description: Optional[str] = None
    color: str
    category: str
    parent_tag_id: Optional[UUID] = None
    is_system: bool
    is_active: bool
    created_at: datetime


class TagRelationResponse(BaseModel):
    """A tag attached to a conversation."""

    tag_id: UUID
    name: str
    display_name: str
    color: str
    category: str
    applied_by: str
    confidence_score: Optional[float] = None
    applied_at: datetime


class ConversationResponse(BaseModel):
    """Response schema for Conversation."""

    model_config = {"from_attributes": True}

    id: UUID
    owner_id: str
    title: str
    category: Optional[str] = None
    status: str
    visibility: str
    message_count: int
    total_tokens: int
    is_favorite: bool
    satisfaction_rating: Optional[int] = None
    user_tags: list[str] = Field(default_factory=list)
    extra_data: dict[str, Any] = Field(default_factory=dict)

    # Current analysis (denormalized)
    summary: Optional[str] = None
    key_topics: list[str] = Field(default_factory=list)
    problem_categories: list[str] = Field(default_factory=list)
    auto_tags: list[str] = Field(default_factory=list)
    complexity_level: Optional[int] = None
    last_analyzed_at: Optional[datetime] = None

    created_at: datetime
    updated_at: datetime

    tags: list[TagRelationResponse] = Field(default_factory=list)


class ConversationDetailResponse(ConversationResponse):
    """Conversation with a page of its messages."""

    messages: list[MessageResponse] = Field(default_factory=list)


class ConversationListResponse(BaseModel):
    """Paginated conversation list."""

    items: list[ConversationResponse]
    total: int
    limit: int
    offset: int


class AnalysisResultResponse(BaseModel):
    """Response schema for the current AnalysisResult."""

    model_config = {"from_attributes": True, "protected_namespaces": ()}

    id: UUID
    conversation_id: UUID
    revision: int
    summary: str
    key_insights: list[str] = Field(default_factory=list)
    main_topics: list[str] = Field(default_factory=list)
    problem_types: list[str] = Field(default_factory=list)
    suggested_actions: list[str] = Field(default_factory=list)
    auto_tags: list[str] = Field(default_factory=list)
    sentiment_score: float
    complexity_score: int
    engagement_score: float
    confidence_scores: dict[str, float] = Field(default_factory=dict)
    extra_fields: dict[str, Any] = Field(default_factory=dict)
    schema_version: str
    analysis_version: str
    model_used: str
    processing_time_ms: int
    created_at: datetime
    updated_at: datetime


class RecommendationResponse(BaseModel):
    """A scored tag suggestion."""

    id: UUID
    conversation_id: UUID
    tag_id: UUID
    tag_name: str
    display_name: str
    confidence_score: float
    reason: Optional[str] = None
    auto_applied: bool = False
    user_feedback: str
    source: str
    source_data: dict[str, Any] = Field(default_factory=dict)
    analysis_revision: int
    created_at: datetime
    resolved_at: Optional[datetime] = None


class RecommendationListResponse(BaseModel):
    """Recommendations for one conversation, tied to an analysis revision."""

    conversation_id: UUID
    analysis_revision: Optional[int] = None
    items: list[RecommendationResponse] = Field(default_factory=list)


class FeedbackResult(BaseModel):
    """Outcome of applying one feedback decision."""

    recommendation_id: UUID
    tag_id: UUID
    decision: str
    tag_relation_created: bool = False
    suppressed_until_cycle: Optional[int] = None


class CategoryCount(BaseModel):
    name: str
    count: int


class StatsResponse(BaseModel):
    """Aggregate statistics for one owner."""

    owner_id: str
    time_range: str
    total_conversations: int = 0
    total_messages: int = 0
    total_tokens: int = 0
    favorite_count: int = 0
    avg_rating: Optional[float] = None
    by_status: dict[str, int] = Field(default_factory=dict)
    top_categories: list[CategoryCount] = Field(default_factory=list)
    top_problem_categories: list[CategoryCount] = Field(default_factory=list)


class BatchAnalysisItem(BaseModel):
    """Per-conversation outcome of a batch analysis."""

    conversation_id: UUID
    success: bool
    revision: Optional[int] = None
    error: Optional[str] = None


class BatchAnalysisResponse(BaseModel):
    results: list[BatchAnalysisItem] = Field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
