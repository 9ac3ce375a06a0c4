"""
Base Repository Class.

============================================================
PURPOSE
============================================================
Shared plumbing for the pipeline repositories:
- Injected session, one per unit of work
- SQLAlchemy errors translated to repository exceptions
- A named logger per repository

Repositories flush but never commit; the caller's
transaction_scope decides.

============================================================
"""

import logging
from abc import ABC
from typing import Any, Dict, Generic, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import (
    IntegrityError as SQLAlchemyIntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from storage.models.base import Base
from storage.repositories.exceptions import (
    ConnectionError,
    DuplicateRecordError,
    IntegrityError,
    QueryError,
)


T = TypeVar("T", bound=Base)


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base for the snapshot, sample, event, summary,
    totals and machine repositories.

    class SnapshotRepository(BaseRepository[WaterLevelSnapshot]):
        def __init__(self, session: Session) -> None:
            super().__init__(session, WaterLevelSnapshot, "SnapshotRepository")
    """

    def __init__(
        self,
        session: Session,
        model_class: Type[T],
        repository_name: str
    ) -> None:
        self._session = session
        self._model_class = model_class
        self._repository_name = repository_name
        self._logger = logging.getLogger(f"repository.{repository_name}")

    # =========================================================
    # PROTECTED HELPER METHODS
    # =========================================================

    def _handle_db_error(
        self,
        error: Exception,
        operation: str,
        context: Optional[dict] = None
    ) -> None:
        """
        Log a storage failure and raise its repository exception.

        Lost connections become ConnectionError (transient), unique
        key clashes DuplicateRecordError, anything else QueryError.
        """
        context = context or {}
        self._logger.error(
            f"{self._repository_name}.{operation} failed: {error}",
            extra={"context": context},
            exc_info=True
        )

        if isinstance(error, OperationalError):
            raise ConnectionError(
                repository_name=self._repository_name,
                operation=operation,
                original_error=str(error)
            ) from error

        if isinstance(error, SQLAlchemyIntegrityError):
            if "unique" in str(error).lower():
                raise DuplicateRecordError(
                    repository_name=self._repository_name,
                    constraint_field=context.get("key", "natural key"),
                    value=context.get("machine_id", "unknown")
                ) from error

            raise IntegrityError(
                repository_name=self._repository_name,
                operation=operation,
                constraint_name="unknown",
                message=str(error)
            ) from error

        raise QueryError(
            repository_name=self._repository_name,
            operation=operation,
            query_description=operation,
            original_error=str(error)
        ) from error

    def _add(self, entity: T) -> T:
        """Add and flush; the row is visible to the rest of the transaction."""
        try:
            self._session.add(entity)
            self._session.flush()
            return entity
        except SQLAlchemyError as e:
            self._handle_db_error(e, "add", {"entity": str(entity)})
            raise

    def _insert_if_absent(
        self,
        values: Dict[str, Any],
        key_columns: Sequence[str],
        operation: str = "insert",
    ) -> bool:
        """
        Insert one row unless its natural key is already taken.

        INSERT ... ON CONFLICT DO NOTHING on PostgreSQL and SQLite;
        other backends insert inside a savepoint. A concurrent writer
        holding the key never rolls back the caller's unit of work.

        Returns:
            True if this call wrote the row
        """
        dialect = self._session.get_bind().dialect.name
        table = self._model_class.__table__

        try:
            if dialect in ("postgresql", "sqlite"):
                insert = pg_insert if dialect == "postgresql" else sqlite_insert
                stmt = (
                    insert(table)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=list(key_columns))
                )
                result = self._session.execute(stmt)
                return result.rowcount == 1

            try:
                with self._session.begin_nested():
                    self._session.add(self._model_class(**values))
                return True
            except SQLAlchemyIntegrityError:
                self._logger.debug(f"{self._repository_name}.{operation}: key taken by another writer")
                return False
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, {"machine_id": values.get("machine_id")})
            raise

    def _execute_query(self, stmt: Any, operation: str = "query") -> List[T]:
        try:
            return list(self._session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)
            raise

    def _execute_scalar(self, stmt: Any, operation: str = "query_scalar") -> Optional[Any]:
        try:
            return self._session.execute(stmt).scalars().first()
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)
            raise

    def _delete_where(
        self,
        *criteria: Any,
        operation: str = "delete",
        model_class: Optional[Type[Base]] = None,
    ) -> int:
        """Bulk delete of this repository's rows; returns the row count."""
        try:
            result = self._session.execute(
                delete(model_class or self._model_class).where(*criteria)
            )
            self._session.flush()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)
            raise
