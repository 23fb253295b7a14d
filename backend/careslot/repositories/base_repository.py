# backend/careslot/repositories/base_repository.py
"""
Base Repository Pattern for the CareSlot engine

Provides the foundation for all repository classes with:
- Common read operations
- Type safety with generics
- Flush-time translation of write races into PersistenceConflictException

Transactions are owned by the service layer; repositories only flush.
"""

import logging
from typing import Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.exceptions import PersistenceConflictException, RepositoryException

# Type variable for generic model support
T = TypeVar("T")

logger = logging.getLogger(__name__)


def constraint_name_from(exc: IntegrityError) -> str:
    """Best-effort extraction of the violated constraint/index name."""
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    name = getattr(diag, "constraint_name", None) if diag is not None else None
    if name:
        return str(name)
    # SQLite reports columns rather than index names
    return str(orig or exc)


class BaseRepository(Generic[T]):
    """
    Concrete base repository implementation with common data access patterns.

    Attributes:
        db: SQLAlchemy session
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        """
        Initialize repository with database session and model.

        Args:
            db: SQLAlchemy session (managed by service layer)
            model: SQLAlchemy model class
        """
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    def get_by_id(self, id: str) -> Optional[T]:
        """Retrieve an entity by its primary key."""
        try:
            return self.db.query(self.model).filter(self.model.id == id).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}")

    def add(self, entity: T) -> T:
        """
        Stage a new entity and flush it.

        Note: Does NOT commit - transaction management is handled by service layer.

        Raises:
            PersistenceConflictException: If a uniqueness constraint rejected the row
            RepositoryException: For any other database failure
        """
        self.db.add(entity)
        self._flush(f"insert {self.model.__name__}")
        return entity

    def save(self, entity: T) -> T:
        """Flush pending changes of an already-tracked entity."""
        self._flush(f"update {self.model.__name__}")
        return entity

    # Protected helper methods for use by subclasses

    def _flush(self, operation: str) -> None:
        try:
            self.db.flush()
        except IntegrityError as exc:
            constraint = constraint_name_from(exc)
            self.logger.info("Uniqueness conflict during %s: %s", operation, constraint)
            raise PersistenceConflictException(
                f"Concurrent write rejected during {operation}", constraint=constraint
            ) from exc
        except StaleDataError as exc:
            self.logger.info("Stale version during %s: %s", operation, exc)
            raise PersistenceConflictException(
                f"Record changed concurrently during {operation}", constraint="version"
            ) from exc
        except SQLAlchemyError as exc:
            self.logger.error("Database error during %s: %s", operation, exc)
            raise RepositoryException(f"Failed to {operation}: {exc}") from exc

    def _execute_query(self, query: Query) -> List[T]:
        """Execute query with error handling."""
        try:
            return query.all()
        except SQLAlchemyError as e:
            self.logger.error(f"Query execution error: {str(e)}")
            raise RepositoryException(f"Query failed: {str(e)}")

    def _execute_first(self, query: Query) -> Optional[T]:
        try:
            return query.first()
        except SQLAlchemyError as e:
            self.logger.error(f"Query execution error: {str(e)}")
            raise RepositoryException(f"Query failed: {str(e)}")
