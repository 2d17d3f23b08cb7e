"""Initial schema: conversations, messages, tags, analysis and recommendations

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates the record store, the tag taxonomy, the current-analysis table, tag
recommendations and the analysis job queue, then seeds the system tags.
Column types fall back to portable equivalents on SQLite.
"""

import uuid
from datetime import datetime, timezone
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from convotag.tagging.taxonomy import SYSTEM_TAGS

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONB = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _json_column(name: str, default: str) -> sa.Column:
    return sa.Column(name, JSONB, server_default=default, nullable=False)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "conversations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("category", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        sa.Column("visibility", sa.String(20), server_default="private", nullable=False),
        sa.Column("message_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_tokens", sa.Integer(), server_default="0", nullable=False),
        sa.Column("is_favorite", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("satisfaction_rating", sa.Integer(), nullable=True),
        _json_column("user_tags", "[]"),
        _json_column("metadata", "{}"),
        sa.Column("summary", sa.Text(), nullable=True),
        _json_column("key_topics", "[]"),
        _json_column("problem_categories", "[]"),
        _json_column("auto_tags", "[]"),
        sa.Column("complexity_level", sa.Integer(), nullable=True),
        _timestamp("last_analyzed_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "complexity_level IS NULL OR (complexity_level >= 1 AND complexity_level <= 5)",
            name="ck_conversation_complexity_level",
        ),
        sa.CheckConstraint(
            "satisfaction_rating IS NULL OR "
            "(satisfaction_rating >= 1 AND satisfaction_rating <= 5)",
            name="ck_conversation_rating",
        ),
    )
    op.create_index("ix_conversations_owner_id", "conversations", ["owner_id"])
    op.create_index("ix_conversations_category", "conversations", ["category"])
    op.create_index("ix_conversations_status", "conversations", ["status"])
    op.create_index("ix_conversations_is_favorite", "conversations", ["is_favorite"])
    op.create_index("ix_conversations_updated_at", "conversations", ["updated_at"])
    op.create_index(
        "ix_conversations_owner_status", "conversations", ["owner_id", "status"]
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("conversation_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_order", sa.Integer(), nullable=False),
        sa.Column("tokens", sa.Integer(), server_default="0", nullable=False),
        _json_column("metadata", "{}"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["conversation_id"], ["conversations.id"], ondelete="CASCADE"
        ),
        sa.UniqueConstraint(
            "conversation_id", "message_order", name="uq_message_conversation_order"
        ),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])

    op.create_table(
        "tags",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("display_name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(20), server_default="#6B7280", nullable=False),
        sa.Column("category", sa.String(50), server_default="custom", nullable=False),
        sa.Column("parent_tag_id", sa.Uuid(), nullable=True),
        sa.Column("is_system", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["parent_tag_id"], ["tags.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_tags_name", "tags", ["name"], unique=True)
    op.create_index("ix_tags_category", "tags", ["category"])
    op.create_index("ix_tags_parent_tag_id", "tags", ["parent_tag_id"])

    op.create_table(
        "tag_relations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("conversation_id", sa.Uuid(), nullable=False),
        sa.Column("tag_id", sa.Uuid(), nullable=False),
        sa.Column("applied_by", sa.String(20), server_default="system", nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        _timestamp("applied_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["conversation_id"], ["conversations.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("conversation_id", "tag_id", name="uq_tag_relation_pair"),
        sa.CheckConstraint(
            "confidence_score IS NULL OR "
            "(confidence_score >= 0 AND confidence_score <= 1)",
            name="ck_tag_relation_confidence",
        ),
    )
    op.create_index(
        "ix_tag_relations_conversation_id", "tag_relations", ["conversation_id"]
    )
    op.create_index("ix_tag_relations_tag_id", "tag_relations", ["tag_id"])

    op.create_table(
        "analysis_results",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("conversation_id", sa.Uuid(), nullable=False),
        sa.Column("revision", sa.Integer(), server_default="1", nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        _json_column("key_insights", "[]"),
        _json_column("main_topics", "[]"),
        _json_column("problem_types", "[]"),
        _json_column("suggested_actions", "[]"),
        _json_column("auto_tags", "[]"),
        sa.Column("sentiment_score", sa.Float(), nullable=False),
        sa.Column("complexity_score", sa.Integer(), nullable=False),
        sa.Column("engagement_score", sa.Float(), nullable=False),
        _json_column("confidence_scores", "{}"),
        _json_column("extra_fields", "{}"),
        sa.Column("schema_version", sa.String(20), server_default="1", nullable=False),
        sa.Column(
            "analysis_version", sa.String(20), server_default="v1.0", nullable=False
        ),
        sa.Column("model_used", sa.String(100), nullable=False),
        sa.Column("processing_time_ms", sa.Integer(), server_default="0", nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["conversation_id"], ["conversations.id"], ondelete="CASCADE"
        ),
        sa.UniqueConstraint("conversation_id"),
        sa.CheckConstraint(
            "sentiment_score >= -1 AND sentiment_score <= 1", name="ck_analysis_sentiment"
        ),
        sa.CheckConstraint(
            "complexity_score >= 1 AND complexity_score <= 5",
            name="ck_analysis_complexity",
        ),
        sa.CheckConstraint(
            "engagement_score >= 0 AND engagement_score <= 1",
            name="ck_analysis_engagement",
        ),
    )

    op.create_table(
        "recommendations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("conversation_id", sa.Uuid(), nullable=False),
        sa.Column("tag_id", sa.Uuid(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("auto_applied", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("user_feedback", sa.String(20), server_default="pending", nullable=False),
        sa.Column("source", sa.String(50), server_default="ai_analysis", nullable=False),
        _json_column("source_data", "{}"),
        sa.Column("analysis_revision", sa.Integer(), nullable=False),
        sa.Column("suppressed_until_cycle", sa.Integer(), nullable=True),
        _timestamp("resolved_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["conversation_id"], ["conversations.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_recommendation_confidence",
        ),
    )
    op.create_index(
        "ix_recommendations_conversation_id", "recommendations", ["conversation_id"]
    )
    op.create_index("ix_recommendations_tag_id", "recommendations", ["tag_id"])
    op.create_index(
        "ix_recommendations_user_feedback", "recommendations", ["user_feedback"]
    )
    # At most one pending recommendation per (conversation, tag)
    op.create_index(
        "uq_recommendation_pending_pair",
        "recommendations",
        ["conversation_id", "tag_id"],
        unique=True,
        postgresql_where=sa.text("user_feedback = 'pending'"),
        sqlite_where=sa.text("user_feedback = 'pending'"),
    )

    op.create_table(
        "analysis_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("conversation_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("priority", sa.Integer(), server_default="0", nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="1", nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["conversation_id"], ["conversations.id"], ondelete="CASCADE"
        ),
    )
    op.create_index(
        "ix_analysis_jobs_conversation_id", "analysis_jobs", ["conversation_id"]
    )
    op.create_index("ix_analysis_jobs_status", "analysis_jobs", ["status"])

    # Seed the system taxonomy
    tags_table = sa.table(
        "tags",
        sa.column("id", sa.Uuid()),
        sa.column("name", sa.String()),
        sa.column("display_name", sa.String()),
        sa.column("description", sa.Text()),
        sa.column("color", sa.String()),
        sa.column("category", sa.String()),
        sa.column("is_system", sa.Boolean()),
        sa.column("is_active", sa.Boolean()),
        sa.column("created_at", sa.DateTime(timezone=True)),
    )
    now = datetime.now(timezone.utc)
    op.bulk_insert(
        tags_table,
        [
            {
                "id": uuid.uuid4(),
                "name": tag.name,
                "display_name": tag.display_name,
                "description": tag.description,
                "color": tag.color,
                "category": tag.category,
                "is_system": True,
                "is_active": True,
                "created_at": now,
            }
            for tag in SYSTEM_TAGS
        ],
    )


def downgrade() -> None:
    op.drop_table("analysis_jobs")
    op.drop_table("recommendations")
    op.drop_table("analysis_results")
    op.drop_table("tag_relations")
    op.drop_table("tags")
    op.drop_table("messages")
    op.drop_table("conversations")
