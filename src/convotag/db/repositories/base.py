"""
Base repository shared by the model repositories.
"""

import uuid
from typing import Generic, Optional, Type, TypeVar

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from convotag.models.db import Base

ModelType = TypeVar("ModelType", bound=Base)


def upsert_insert(session: Session, model: Type[Base]):
    """
    Build an INSERT that supports ON CONFLICT clauses for the session's dialect.

    Both the PostgreSQL and SQLite constructs expose ``on_conflict_do_nothing``
    and ``on_conflict_do_update`` with the same arguments.
    """
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


class BaseRepository(Generic[ModelType]):
    """
    Generic repository providing create and lookup for a model.

    Repositories never commit; the caller owns the transaction.
    """

    def __init__(self, model: Type[ModelType], session: Session):
        self.model = model
        self.session = session

    def create(self, **kwargs) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Field values

        Returns:
            Created instance (flushed, so generated fields are populated)
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        self.session.flush()
        self.session.refresh(instance)
        return instance

    def get(self, id: uuid.UUID) -> Optional[ModelType]:
        """Get a record by primary key."""
        return self.session.get(self.model, id)
