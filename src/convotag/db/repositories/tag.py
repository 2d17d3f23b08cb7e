"""
Tag repository.
"""

import logging
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from convotag.db.repositories.base import BaseRepository, upsert_insert
from convotag.models.db import Tag, TagCategory

logger = logging.getLogger(__name__)


class TagRepository(BaseRepository[Tag]):
    """Repository for Tag model."""

    def __init__(self, session: Session):
        super().__init__(Tag, session)

    def get_by_name(self, name: str) -> Optional[Tag]:
        return self.session.query(Tag).filter(Tag.name == name).first()

    def get_by_names(self, names: Iterable[str]) -> dict[str, Tag]:
        """Get tags keyed by name for every name that exists."""
        names = list(set(names))
        if not names:
            return {}
        tags = self.session.query(Tag).filter(Tag.name.in_(names)).all()
        return {tag.name: tag for tag in tags}

    def get_or_create(self, name: str, **kwargs) -> Tag:
        """
        Get existing tag or create new one by unique name (race-safe).

        Uses INSERT ... ON CONFLICT DO NOTHING on the unique name so that
        concurrent callers creating the same tag all end up with the single
        row that won, without an IntegrityError.

        Args:
            name: Unique tag name
            **kwargs: Additional tag fields (display_name, category, ...)

        Returns:
            Tag instance

        Raises:
            RuntimeError: If tag creation/fetch fails unexpectedly
        """
        # Fast path: try to get existing first
        tag = self.get_by_name(name)
        if tag:
            return tag

        values = {
            "id": uuid.uuid4(),
            "name": name,
            "display_name": kwargs.pop("display_name", None) or _display_name(name),
            "category": kwargs.pop("category", TagCategory.CUSTOM.value),
            **kwargs,
        }
        stmt = (
            upsert_insert(self.session, Tag)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["name"])
        )
        self.session.execute(stmt)
        self.session.flush()

        tag = self.get_by_name(name)
        if not tag:
            raise RuntimeError(f"Failed to get or create tag: {name}")
        logger.debug(f"Resolved tag {name} -> {tag.id}")
        return tag

    def list_tags(
        self, category: Optional[str] = None, active_only: bool = True
    ) -> List[Tag]:
        """
        List tags ordered by category then name.

        Args:
            category: Restrict to one category
            active_only: Exclude deactivated tags
        """
        query = self.session.query(Tag)
        if category:
            query = query.filter(Tag.category == category)
        if active_only:
            query = query.filter(Tag.is_active.is_(True))
        return query.order_by(Tag.category, Tag.name).all()

    def lock(self, tag_id: uuid.UUID) -> Optional[Tag]:
        """
        Lock and return a tag for the rest of the transaction.

        A no-op UPDATE takes the row lock on PostgreSQL and the database
        write lock on SQLite, and the row is re-read so a parent link
        committed by another transaction is visible.
        """
        self.session.execute(
            update(Tag)
            .where(Tag.id == tag_id)
            .values(parent_tag_id=Tag.parent_tag_id)
            .execution_options(synchronize_session=False)
        )
        return (
            self.session.query(Tag)
            .filter(Tag.id == tag_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_ancestor_ids(self, tag_id: uuid.UUID, lock: bool = False) -> List[uuid.UUID]:
        """
        Walk parent links upward from ``tag_id`` (exclusive).

        Args:
            tag_id: Starting tag
            lock: Lock every tag on the walk, ``tag_id`` included
        """
        load = self.lock if lock else self.get
        ancestors: List[uuid.UUID] = []
        seen = {tag_id}
        current = load(tag_id)
        while current is not None and current.parent_tag_id is not None:
            parent_id = current.parent_tag_id
            if parent_id in seen:
                break
            ancestors.append(parent_id)
            seen.add(parent_id)
            current = load(parent_id)
        return ancestors

    def would_create_cycle(
        self, tag_id: uuid.UUID, parent_id: uuid.UUID, lock: bool = False
    ) -> bool:
        """
        Check whether making ``parent_id`` the parent of ``tag_id`` closes a loop.

        With ``lock`` the parent chain stays locked until the transaction
        ends, so a concurrent re-parenting along the chain waits for it.
        """
        if tag_id == parent_id:
            return True
        return tag_id in self.get_ancestor_ids(parent_id, lock=lock)


def _display_name(name: str) -> str:
    return name.replace("_", " ").title()
