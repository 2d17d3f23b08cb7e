"""
Tag taxonomy service.

Tags form a forest through ``parent_tag_id``; every change to a parent link
is checked so the hierarchy never contains a cycle. System tags cannot be
deleted.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from convotag.cache import ConversationCache, NullCache
from convotag.db.connection import Database
from convotag.db.repositories.tag import TagRepository
from convotag.db.repositories.tag_relation import TagRelationRepository
from convotag.db.retry import RetryConfig, run_with_retry
from convotag.exceptions import ForbiddenError, NotFoundError, ValidationError
from convotag.models.db import Conversation, Tag, TagCategory
from convotag.schemas import TagResponse
from convotag.tagging.taxonomy import normalize_tag_name

logger = logging.getLogger(__name__)


def _get_tag(session: Session, tag_id: uuid.UUID) -> Tag:
    tag = TagRepository(session).get(tag_id)
    if tag is None:
        raise NotFoundError("Tag", tag_id)
    return tag


def _check_parent(
    repo: TagRepository,
    tag_id: Optional[uuid.UUID],
    parent_id: uuid.UUID,
    lock: bool = False,
) -> None:
    if repo.get(parent_id) is None:
        raise NotFoundError("Tag", parent_id)
    if tag_id is not None and repo.would_create_cycle(tag_id, parent_id, lock=lock):
        raise ValidationError(
            "Tag hierarchy cannot contain a cycle",
            {"tag_id": str(tag_id), "parent_tag_id": str(parent_id)},
        )


class TagService:
    """Manages the tag taxonomy."""

    def __init__(
        self,
        database: Database,
        cache: Optional[ConversationCache] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.database = database
        self.cache = cache or NullCache()
        self.retry_config = retry_config

    def list_tags(
        self, category: Optional[str] = None, active_only: bool = True
    ) -> list[TagResponse]:
        with self.database.session_scope() as session:
            tags = TagRepository(session).list_tags(category=category, active_only=active_only)
            return [TagResponse.model_validate(t) for t in tags]

    def get_tag(self, tag_id: uuid.UUID) -> TagResponse:
        with self.database.session_scope() as session:
            return TagResponse.model_validate(_get_tag(session, tag_id))

    def create_tag(
        self,
        name: str,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        category: str = TagCategory.CUSTOM.value,
        parent_tag_id: Optional[uuid.UUID] = None,
    ) -> TagResponse:
        """
        Get or create a tag by name.

        Creation is idempotent: when the name is already taken, including by
        a concurrent caller that wins the insert, the existing tag is
        returned unchanged and the other arguments are ignored.

        Raises:
            ValidationError: Empty name or unknown category
            NotFoundError: Parent tag missing
        """
        normalized = normalize_tag_name(name or "")
        if not normalized:
            raise ValidationError("Tag name is required")
        if category not in {c.value for c in TagCategory}:
            raise ValidationError(f"Invalid tag category: {category}")

        def _create() -> tuple[TagResponse, bool]:
            with self.database.session_scope() as session:
                repo = TagRepository(session)
                existing = repo.get_by_name(normalized)
                if existing is not None:
                    return TagResponse.model_validate(existing), False
                if parent_tag_id is not None:
                    _check_parent(repo, None, parent_tag_id)

                new_id = uuid.uuid4()
                values = {
                    "id": new_id,
                    "display_name": display_name,
                    "description": description,
                    "category": category,
                    "parent_tag_id": parent_tag_id,
                    "is_system": False,
                }
                if color:
                    values["color"] = color
                tag = repo.get_or_create(normalized, **values)
                return TagResponse.model_validate(tag), tag.id == new_id

        response, created = run_with_retry(_create, self.retry_config, "create_tag")
        if created:
            logger.info(f"Created tag {response.name} ({response.category})")
        else:
            logger.debug(f"Tag {response.name} already exists")
        return response

    def set_parent(
        self, tag_id: uuid.UUID, parent_tag_id: Optional[uuid.UUID]
    ) -> TagResponse:
        """
        Move a tag under a new parent, or to the top level with None.

        The tag and the new parent's chain are locked before the cycle
        check, so opposite moves racing each other cannot both commit.

        Raises:
            NotFoundError: Tag or parent missing
            ValidationError: The move would create a cycle
        """

        def _set() -> TagResponse:
            with self.database.session_scope() as session:
                repo = TagRepository(session)
                tag = repo.lock(tag_id)
                if tag is None:
                    raise NotFoundError("Tag", tag_id)
                if parent_tag_id is not None:
                    _check_parent(repo, tag_id, parent_tag_id, lock=True)
                tag.parent_tag_id = parent_tag_id
                session.flush()
                return TagResponse.model_validate(tag)

        return run_with_retry(_set, self.retry_config, "set_parent")

    def set_active(self, tag_id: uuid.UUID, is_active: bool) -> TagResponse:
        """Deactivated tags are no longer recommended or manually applicable."""

        def _set() -> TagResponse:
            with self.database.session_scope() as session:
                tag = _get_tag(session, tag_id)
                tag.is_active = is_active
                session.flush()
                return TagResponse.model_validate(tag)

        return run_with_retry(_set, self.retry_config, "set_active")

    def delete_tag(self, tag_id: uuid.UUID) -> None:
        """
        Delete a user-defined tag with its relations and recommendations.

        Child tags move to the top level.

        Raises:
            NotFoundError: Tag missing
            ForbiddenError: System tag
        """

        def _delete() -> list[tuple[uuid.UUID, str]]:
            with self.database.session_scope() as session:
                tag = _get_tag(session, tag_id)
                if tag.is_system:
                    raise ForbiddenError(
                        f"System tag {tag.name} cannot be deleted", {"tag_id": str(tag_id)}
                    )
                conversation_ids = TagRelationRepository(session).get_conversation_ids_for_tag(
                    tag_id
                )
                affected = []
                if conversation_ids:
                    affected = (
                        session.query(Conversation.id, Conversation.owner_id)
                        .filter(Conversation.id.in_(conversation_ids))
                        .all()
                    )
                session.delete(tag)
                return [(row[0], row[1]) for row in affected]

        affected = run_with_retry(_delete, self.retry_config, "delete_tag")
        for conversation_id, owner_id in affected:
            self.cache.invalidate_conversation(conversation_id)
            self.cache.invalidate_owner(owner_id)
        logger.info(f"Deleted tag {tag_id} ({len(affected)} conversations affected)")
