"""
SQLAlchemy database models for Convotag.

These models represent the database schema for conversations, their
messages, the tag taxonomy, analysis results and tag recommendations.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    text,
    true,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ConversationStatus(str, enum.Enum):
    """Lifecycle status of a conversation (soft delete only)."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class Visibility(str, enum.Enum):
    PRIVATE = "private"
    SHARED = "shared"
    PUBLIC = "public"


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TagCategory(str, enum.Enum):
    """Category of a tag in the taxonomy."""

    SYSTEM = "system"
    CUSTOM = "custom"
    AUTO = "auto"
    PROBLEM_TYPE = "problem_type"
    TOPIC = "topic"
    SENTIMENT = "sentiment"
    COMPLEXITY = "complexity"


class AppliedBy(str, enum.Enum):
    """Who attached a tag to a conversation."""

    SYSTEM = "system"
    USER = "user"
    AUTO = "auto"


class FeedbackStatus(str, enum.Enum):
    """Recommendation state: pending -> accepted | rejected (terminal)."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class AnalysisJobStatus(str, enum.Enum):
    """Status of an analysis job in the queue."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Conversation(Base):
    """Main conversation record."""

    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )  # Free-text grouping, e.g. the mentor persona
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=ConversationStatus.ACTIVE.value,
        index=True,
    )  # 'active', 'archived', 'deleted'
    visibility: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=Visibility.PRIVATE.value
    )

    # Derived counters, only ever changed inside the message-append transaction
    message_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )
    total_tokens: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )

    is_favorite: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false(), index=True
    )
    satisfaction_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    user_tags: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSONB, nullable=False, server_default="{}"
    )

    # Denormalized from the current analysis result for fast listing
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    key_topics: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    problem_categories: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default="[]"
    )
    auto_tags: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    complexity_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_analyzed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        onupdate=_utc_now,
        nullable=False,
        index=True,
    )

    __table_args__ = (
        CheckConstraint(
            "complexity_level IS NULL OR (complexity_level >= 1 AND complexity_level <= 5)",
            name="ck_conversation_complexity_level",
        ),
        CheckConstraint(
            "satisfaction_rating IS NULL OR "
            "(satisfaction_rating >= 1 AND satisfaction_rating <= 5)",
            name="ck_conversation_rating",
        ),
        Index("ix_conversations_owner_status", "owner_id", "status"),
    )

    # Relationships
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.message_order",
    )
    analysis_result: Mapped[Optional["AnalysisResult"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan", uselist=False
    )
    tag_relations: Mapped[list["TagRelation"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan"
    )
    recommendations: Mapped[list["Recommendation"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan"
    )
    analysis_jobs: Mapped[list["AnalysisJob"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id}, owner_id={self.owner_id!r}, "
            f"status={self.status!r}, message_count={self.message_count})>"
        )


class Message(Base):
    """Individual message within a conversation."""

    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_order: Mapped[int] = mapped_column(
        Integer, nullable=False
    )  # 1-based, gap-free, assigned by the store
    tokens: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSONB, nullable=False, server_default="{}"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "message_order", name="uq_message_conversation_order"
        ),
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, role={self.role!r}, "
            f"message_order={self.message_order})>"
        )


class Tag(Base):
    """Tag definition in the shared taxonomy."""

    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True, index=True
    )
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    color: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="#6B7280"
    )
    category: Mapped[str] = mapped_column(
        String(50), nullable=False, server_default=TagCategory.CUSTOM.value, index=True
    )
    parent_tag_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tags.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_system: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )

    parent: Mapped[Optional["Tag"]] = relationship(
        "Tag", remote_side="Tag.id", back_populates="children"
    )
    children: Mapped[list["Tag"]] = relationship("Tag", back_populates="parent")
    relations: Mapped[list["TagRelation"]] = relationship(
        back_populates="tag", cascade="all, delete-orphan"
    )
    recommendations: Mapped[list["Recommendation"]] = relationship(
        back_populates="tag", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Tag(id={self.id}, name={self.name!r}, category={self.category!r})>"


class TagRelation(Base):
    """A confirmed (conversation, tag) association."""

    __tablename__ = "tag_relations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tag_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tags.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    applied_by: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=AppliedBy.SYSTEM.value
    )
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("conversation_id", "tag_id", name="uq_tag_relation_pair"),
        CheckConstraint(
            "confidence_score IS NULL OR "
            "(confidence_score >= 0 AND confidence_score <= 1)",
            name="ck_tag_relation_confidence",
        ),
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="tag_relations")
    tag: Mapped["Tag"] = relationship(back_populates="relations")

    def __repr__(self) -> str:
        return (
            f"<TagRelation(conversation_id={self.conversation_id}, "
            f"tag_id={self.tag_id}, applied_by={self.applied_by!r})>"
        )


class AnalysisResult(Base):
    """The single current analysis for a conversation.

    Replaced wholesale on every upsert; ``revision`` increases by one each
    time so feedback can detect that it was computed against an older result.
    """

    __tablename__ = "analysis_results"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    revision: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")

    summary: Mapped[str] = mapped_column(Text, nullable=False)
    key_insights: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default="[]"
    )
    main_topics: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    problem_types: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default="[]"
    )
    suggested_actions: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default="[]"
    )
    auto_tags: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")

    sentiment_score: Mapped[float] = mapped_column(Float, nullable=False)  # -1.0 to 1.0
    complexity_score: Mapped[int] = mapped_column(Integer, nullable=False)  # 1 to 5
    engagement_score: Mapped[float] = mapped_column(Float, nullable=False)  # 0.0 to 1.0
    confidence_scores: Mapped[dict] = mapped_column(
        JSONB, nullable=False, server_default="{}"
    )
    extra_fields: Mapped[dict] = mapped_column(
        JSONB, nullable=False, server_default="{}"
    )  # Analyzer fields this schema version does not know about

    schema_version: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="1"
    )
    analysis_version: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="v1.0"
    )
    model_used: Mapped[str] = mapped_column(String(100), nullable=False)
    processing_time_ms: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "sentiment_score >= -1 AND sentiment_score <= 1",
            name="ck_analysis_sentiment",
        ),
        CheckConstraint(
            "complexity_score >= 1 AND complexity_score <= 5",
            name="ck_analysis_complexity",
        ),
        CheckConstraint(
            "engagement_score >= 0 AND engagement_score <= 1",
            name="ck_analysis_engagement",
        ),
    )

    conversation: Mapped["Conversation"] = relationship(
        back_populates="analysis_result"
    )

    def __repr__(self) -> str:
        return (
            f"<AnalysisResult(conversation_id={self.conversation_id}, "
            f"revision={self.revision}, model_used={self.model_used!r})>"
        )


class Recommendation(Base):
    """Scored suggestion to attach a tag to a conversation.

    At most one pending row exists per (conversation, tag). Accepted and
    rejected rows are terminal and kept as an audit trail; a later analysis
    suggesting the same tag again creates a fresh row.
    """

    __tablename__ = "recommendations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tag_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tags.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)  # 0.0 to 1.0
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    auto_applied: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    user_feedback: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=FeedbackStatus.PENDING.value,
        index=True,
    )
    source: Mapped[str] = mapped_column(
        String(50), nullable=False, server_default="ai_analysis"
    )
    source_data: Mapped[dict] = mapped_column(
        JSONB, nullable=False, server_default="{}"
    )
    analysis_revision: Mapped[int] = mapped_column(Integer, nullable=False)
    suppressed_until_cycle: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )  # Set on rejection; compared against message_count // 10
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )

    __table_args__ = (
        Index(
            "uq_recommendation_pending_pair",
            "conversation_id",
            "tag_id",
            unique=True,
            postgresql_where=text("user_feedback = 'pending'"),
            sqlite_where=text("user_feedback = 'pending'"),
        ),
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_recommendation_confidence",
        ),
    )

    conversation: Mapped["Conversation"] = relationship(
        back_populates="recommendations"
    )
    tag: Mapped["Tag"] = relationship(back_populates="recommendations")

    def __repr__(self) -> str:
        return (
            f"<Recommendation(id={self.id}, tag_id={self.tag_id}, "
            f"confidence={self.confidence_score:.2f}, "
            f"feedback={self.user_feedback!r})>"
        )


class AnalysisJob(Base):
    """Queued analysis request for a conversation."""

    __tablename__ = "analysis_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=AnalysisJobStatus.PENDING.value,
        index=True,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="1"
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="analysis_jobs")

    def __repr__(self) -> str:
        return (
            f"<AnalysisJob(id={self.id}, conversation_id={self.conversation_id}, "
            f"status={self.status!r})>"
        )
