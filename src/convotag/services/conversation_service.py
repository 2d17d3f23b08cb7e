"""
Conversation service.

The record store: creates conversations, appends messages atomically with
their counters, and serves reads through the cache. Every write
invalidates the affected cache entries before returning and, for appends,
hands qualifying conversations to the analysis dispatcher.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from convotag.analysis.job_queue import AnalysisDispatcher
from convotag.analysis.trigger import should_analyze
from convotag.cache import ConversationCache, NullCache, conversation_key, stats_key
from convotag.db.connection import Database
from convotag.db.repositories.conversation import SORT_COLUMNS, ConversationRepository
from convotag.db.repositories.message import MessageRepository
from convotag.db.repositories.tag_relation import TagRelationRepository
from convotag.db.retry import RetryConfig, run_with_retry
from convotag.exceptions import ForbiddenError, NotFoundError, ValidationError
from convotag.models.db import Conversation, ConversationStatus, TagRelation, Visibility
from convotag.schemas import (
    CategoryCount,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationResponse,
    ConversationUpdate,
    MessageCreate,
    MessageResponse,
    StatsResponse,
    TagRelationResponse,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TITLE = "New conversation"
MAX_PAGE_SIZE = 100

# Stats windows; "all" has no lower bound
TIME_RANGES = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "365d": timedelta(days=365),
    "all": None,
}

# Patch field -> model attribute
UPDATE_FIELD_MAP = {
    "title": "title",
    "status": "status",
    "is_favorite": "is_favorite",
    "visibility": "visibility",
    "tags": "user_tags",
    "metadata": "extra_data",
    "satisfaction_rating": "satisfaction_rating",
}
NULLABLE_UPDATE_FIELDS = {"satisfaction_rating"}


def validation_error_from(e: PydanticValidationError, message: str) -> ValidationError:
    """Convert a pydantic validation failure into the package's ValidationError."""
    errors = [
        {"field": ".".join(str(p) for p in err["loc"]), "error": err["msg"]}
        for err in e.errors()
    ]
    return ValidationError(message, {"errors": errors})


def load_owned_conversation(
    session: Session, conversation_id: uuid.UUID, owner_id: str
) -> Conversation:
    """
    Load a live conversation and check ownership.

    Raises:
        NotFoundError: If the conversation is missing or deleted
        ForbiddenError: If it belongs to someone else
    """
    conversation = ConversationRepository(session).get_active(conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation", conversation_id)
    if conversation.owner_id != owner_id:
        raise ForbiddenError(
            f"Conversation {conversation_id} does not belong to {owner_id}",
            {"conversation_id": str(conversation_id)},
        )
    return conversation


def tag_relation_response(relation: TagRelation) -> TagRelationResponse:
    return TagRelationResponse(
        tag_id=relation.tag_id,
        name=relation.tag.name,
        display_name=relation.tag.display_name,
        color=relation.tag.color,
        category=relation.tag.category,
        applied_by=relation.applied_by,
        confidence_score=relation.confidence_score,
        applied_at=relation.applied_at,
    )


def conversation_response(
    conversation: Conversation, relations: list[TagRelation]
) -> ConversationResponse:
    response = ConversationResponse.model_validate(conversation)
    response.tags = [tag_relation_response(r) for r in relations]
    return response


class ConversationService:
    """Record store operations over conversations and messages."""

    def __init__(
        self,
        database: Database,
        cache: Optional[ConversationCache] = None,
        dispatcher: Optional[AnalysisDispatcher] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.database = database
        self.cache = cache or NullCache()
        self.dispatcher = dispatcher
        self.retry_config = retry_config

    def _run(self, operation: str, func: Callable[[], T]) -> T:
        return run_with_retry(func, config=self.retry_config, operation=operation)

    def _invalidate(self, conversation_id: uuid.UUID, owner_id: str) -> None:
        self.cache.invalidate_conversation(conversation_id)
        self.cache.invalidate_owner(owner_id)

    # ----- Writes -----

    def create_conversation(
        self,
        owner_id: str,
        title: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        category: Optional[str] = None,
        visibility: str = Visibility.PRIVATE.value,
        user_tags: Optional[list[str]] = None,
    ) -> ConversationResponse:
        """
        Create an empty conversation.

        Args:
            owner_id: Owner reference
            title: Title (defaults to "New conversation" when blank)
            metadata: Free-form metadata
            category: Grouping label, e.g. the mentor persona
            visibility: private, shared or public
            user_tags: Free-form user labels

        Returns:
            The new conversation with zeroed counters
        """
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id is required")
        if visibility not in {v.value for v in Visibility}:
            raise ValidationError(f"Invalid visibility: {visibility}")
        title = (title or "").strip() or DEFAULT_TITLE

        def _create() -> ConversationResponse:
            with self.database.session_scope() as session:
                conversation = ConversationRepository(session).create(
                    owner_id=owner_id,
                    title=title,
                    category=category,
                    status=ConversationStatus.ACTIVE.value,
                    visibility=visibility,
                    message_count=0,
                    total_tokens=0,
                    is_favorite=False,
                    user_tags=list(user_tags or []),
                    extra_data=dict(metadata or {}),
                )
                return conversation_response(conversation, [])

        response = self._run("create_conversation", _create)
        self.cache.invalidate_owner(owner_id)
        logger.info(f"Created conversation {response.id} for {owner_id}")
        return response

    def append_message(
        self,
        conversation_id: uuid.UUID,
        role: str,
        content: str,
        tokens: int = 0,
        metadata: Optional[dict[str, Any]] = None,
        owner_id: Optional[str] = None,
    ) -> MessageResponse:
        """
        Append a message and bump the conversation counters atomically.

        The counter UPDATE runs first and locks the conversation, so the new
        message_count is also the message's order and concurrent appends to
        one conversation get contiguous, unique orders. After commit the
        trigger policy decides whether to enqueue analysis; enqueue failures
        are logged and never affect the append.

        Args:
            conversation_id: Target conversation
            role: user, assistant or system
            content: Non-empty message text
            tokens: Non-negative token count
            metadata: Free-form message metadata
            owner_id: When given, the conversation must belong to this owner

        Returns:
            The stored message

        Raises:
            ValidationError: Empty content, unknown role or negative tokens
            NotFoundError: Conversation missing or deleted
            ForbiddenError: Owner mismatch
        """
        try:
            data = MessageCreate(
                role=role, content=content, tokens=tokens, metadata=metadata or {}
            )
        except PydanticValidationError as e:
            raise validation_error_from(e, "Invalid message") from e

        def _append() -> tuple[MessageResponse, str, int, bool]:
            with self.database.session_scope() as session:
                conv_repo = ConversationRepository(session)
                if not conv_repo.increment_counters(conversation_id, data.tokens):
                    raise NotFoundError("Conversation", conversation_id)

                row = (
                    session.query(
                        Conversation.owner_id,
                        Conversation.message_count,
                        Conversation.last_analyzed_at,
                    )
                    .filter(Conversation.id == conversation_id)
                    .one()
                )
                if owner_id is not None and row.owner_id != owner_id:
                    raise ForbiddenError(
                        f"Conversation {conversation_id} does not belong to {owner_id}",
                        {"conversation_id": str(conversation_id)},
                    )

                message = MessageRepository(session).add_to_conversation(
                    conversation_id=conversation_id,
                    message_order=row.message_count,
                    role=data.role.value,
                    content=data.content,
                    tokens=data.tokens,
                    extra_data=data.metadata,
                )
                return (
                    MessageResponse.model_validate(message),
                    row.owner_id,
                    row.message_count,
                    row.last_analyzed_at is not None,
                )

        message, conv_owner, message_count, has_analysis = self._run(
            "append_message", _append
        )
        self._invalidate(conversation_id, conv_owner)

        self._maybe_trigger_analysis(conversation_id, message_count, has_analysis)
        return message

    def _maybe_trigger_analysis(
        self, conversation_id: uuid.UUID, message_count: int, has_analysis: bool
    ) -> None:
        if self.dispatcher is None or not should_analyze(message_count, has_analysis):
            return
        try:
            job_id = self.dispatcher.dispatch(conversation_id)
            if job_id:
                logger.info(
                    f"Analysis queued for conversation {conversation_id} "
                    f"at {message_count} messages (job {job_id})"
                )
        except Exception:
            # The message is already committed; analysis will re-trigger later
            logger.error(
                f"Failed to enqueue analysis for conversation {conversation_id}",
                exc_info=True,
            )

    def update_conversation(
        self, conversation_id: uuid.UUID, owner_id: str, patch: dict[str, Any]
    ) -> ConversationResponse:
        """
        Apply a whitelisted partial update.

        Mutable fields: title, status, is_favorite, visibility, tags,
        metadata and satisfaction_rating (also accepted as ``rating``).

        Raises:
            ValidationError: Empty patch, unknown field or invalid value
            NotFoundError: Conversation missing or deleted
            ForbiddenError: Owner mismatch
        """
        if not patch:
            raise ValidationError("Update must change at least one field")
        try:
            update = ConversationUpdate.model_validate(patch)
        except PydanticValidationError as e:
            raise validation_error_from(e, "Invalid conversation update") from e

        fields = update.model_dump(exclude_unset=True)
        for name, value in fields.items():
            if value is None and name not in NULLABLE_UPDATE_FIELDS:
                raise ValidationError(f"{name} cannot be null", {"field": name})

        def _update() -> ConversationResponse:
            with self.database.session_scope() as session:
                conversation = load_owned_conversation(session, conversation_id, owner_id)
                for name, value in fields.items():
                    if name in ("status", "visibility"):
                        value = value.value
                    setattr(conversation, UPDATE_FIELD_MAP[name], value)
                conversation.updated_at = datetime.now(timezone.utc)
                session.flush()
                relations = TagRelationRepository(session).get_by_conversation(
                    conversation_id
                )
                return conversation_response(conversation, relations)

        response = self._run("update_conversation", _update)
        self._invalidate(conversation_id, owner_id)
        logger.debug(f"Updated conversation {conversation_id}: {sorted(fields)}")
        return response

    def soft_delete(self, conversation_id: uuid.UUID, owner_id: str) -> None:
        """Mark a conversation deleted; its rows are kept."""

        def _delete() -> None:
            with self.database.session_scope() as session:
                conversation = load_owned_conversation(session, conversation_id, owner_id)
                conversation.status = ConversationStatus.DELETED.value
                conversation.updated_at = datetime.now(timezone.utc)

        self._run("soft_delete", _delete)
        self._invalidate(conversation_id, owner_id)
        logger.info(f"Soft-deleted conversation {conversation_id}")

    # ----- Reads -----

    def get_conversation(
        self, conversation_id: uuid.UUID, owner_id: str
    ) -> ConversationResponse:
        """
        Get a conversation with its tags.

        Raises:
            NotFoundError: Conversation missing or deleted
            ForbiddenError: Owner mismatch
        """

        def _load() -> ConversationResponse:
            with self.database.session_scope() as session:
                conversation = ConversationRepository(session).get_active(conversation_id)
                if conversation is None:
                    raise NotFoundError("Conversation", conversation_id)
                relations = TagRelationRepository(session).get_by_conversation(
                    conversation_id
                )
                return conversation_response(conversation, relations)

        response = self.cache.get_or_load(
            conversation_key(conversation_id),
            lambda: self._run("get_conversation", _load),
        )
        if response.owner_id != owner_id:
            raise ForbiddenError(
                f"Conversation {conversation_id} does not belong to {owner_id}",
                {"conversation_id": str(conversation_id)},
            )
        return response

    def get_conversation_with_messages(
        self,
        conversation_id: uuid.UUID,
        owner_id: str,
        message_limit: Optional[int] = None,
        message_offset: int = 0,
    ) -> ConversationDetailResponse:
        """Get a conversation and a page of its messages from one transaction."""
        if message_offset < 0 or (message_limit is not None and message_limit < 1):
            raise ValidationError("Invalid message pagination")

        def _load() -> ConversationDetailResponse:
            with self.database.session_scope(snapshot=True) as session:
                conversation = load_owned_conversation(session, conversation_id, owner_id)
                relations = TagRelationRepository(session).get_by_conversation(
                    conversation_id
                )
                messages = MessageRepository(session).get_by_conversation(
                    conversation_id, limit=message_limit, offset=message_offset
                )
                detail = ConversationDetailResponse.model_validate(conversation)
                detail.tags = [tag_relation_response(r) for r in relations]
                detail.messages = [MessageResponse.model_validate(m) for m in messages]
                return detail

        return self._run("get_conversation_with_messages", _load)

    def list_conversations(
        self,
        owner_id: str,
        search: Optional[str] = None,
        status: Optional[str] = None,
        is_favorite: Optional[bool] = None,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
        limit: int = 20,
        offset: int = 0,
    ) -> ConversationListResponse:
        """
        List an owner's conversations.

        Search matches title, category and message content. Deleted
        conversations appear only when ``status="deleted"`` is requested.
        Sorting is stable across pages (ties broken by id).
        """
        if sort_by not in SORT_COLUMNS:
            raise ValidationError(
                f"Invalid sort_by: {sort_by}", {"allowed": sorted(SORT_COLUMNS)}
            )
        if sort_order not in ("asc", "desc"):
            raise ValidationError(f"Invalid sort_order: {sort_order}")
        if status is not None and status not in {s.value for s in ConversationStatus}:
            raise ValidationError(f"Invalid status: {status}")
        if not 1 <= limit <= MAX_PAGE_SIZE or offset < 0:
            raise ValidationError(
                f"limit must be 1-{MAX_PAGE_SIZE} and offset non-negative"
            )
        search = search.strip() if search else None

        def _list() -> ConversationListResponse:
            with self.database.session_scope(snapshot=True) as session:
                conversations, total = ConversationRepository(session).list_filtered(
                    owner_id=owner_id,
                    search=search,
                    status=status,
                    is_favorite=is_favorite,
                    sort_by=sort_by,
                    sort_order=sort_order,
                    limit=limit,
                    offset=offset,
                )
                relations = TagRelationRepository(session).get_by_conversations(
                    [c.id for c in conversations]
                )
                return ConversationListResponse(
                    items=[conversation_response(c, relations[c.id]) for c in conversations],
                    total=total,
                    limit=limit,
                    offset=offset,
                )

        return self._run("list_conversations", _list)

    def get_stats(self, owner_id: str, time_range: str = "all") -> StatsResponse:
        """
        Aggregate statistics for an owner, cached per owner and range.

        Args:
            owner_id: Owner reference
            time_range: 7d, 30d, 90d, 365d or all (by conversation creation)
        """
        if time_range not in TIME_RANGES:
            raise ValidationError(
                f"Invalid time_range: {time_range}", {"allowed": list(TIME_RANGES)}
            )

        def _load() -> StatsResponse:
            window = TIME_RANGES[time_range]
            since = datetime.now(timezone.utc) - window if window else None
            with self.database.session_scope(snapshot=True) as session:
                repo = ConversationRepository(session)
                totals = repo.get_totals(owner_id, since)
                return StatsResponse(
                    owner_id=owner_id,
                    time_range=time_range,
                    by_status=repo.count_by_status(owner_id, since),
                    top_categories=[
                        CategoryCount(name=name, count=count)
                        for name, count in repo.top_categories(owner_id, since)
                    ],
                    top_problem_categories=[
                        CategoryCount(name=name, count=count)
                        for name, count in repo.top_problem_categories(owner_id, since)
                    ],
                    **totals,
                )

        return self.cache.get_or_load(
            stats_key(owner_id, time_range),
            lambda: self._run("get_stats", _load),
        )
