"""
Repository Layer Exceptions.

============================================================
PURPOSE
============================================================
Storage failures surfaced by the repositories. Every SQLAlchemy
error raised inside a repository is wrapped in one of these so
the jobs above never see driver-specific types.

============================================================
USAGE
============================================================
Jobs treat a RepositoryException as a transient storage
failure: the machine is skipped for the current tick and
retried on the next one. Only RecordNotFoundError and
ValidationError point at a caller mistake.

============================================================
"""

from typing import Any, Dict, Optional


class RepositoryException(Exception):
    """
    Base exception for all repository operations.

    Carries the repository and operation names so a log line is
    enough to locate the failing query.
    """

    transient: bool = True

    def __init__(
        self,
        message: str,
        repository_name: str,
        operation: str,
        details: Optional[dict] = None
    ) -> None:
        self.message = message
        self.repository_name = repository_name
        self.operation = operation
        self.details = details or {}
        super().__init__(f"[{repository_name}] {operation}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for structured job results."""
        return {
            "type": type(self).__name__,
            "repository": self.repository_name,
            "operation": self.operation,
            "message": self.message,
            "details": self.details,
        }


class RecordNotFoundError(RepositoryException):
    """A row the caller expected to exist (e.g. a machine) is missing."""

    transient = False

    def __init__(
        self,
        repository_name: str,
        record_id: Any,
        id_field: str = "machine_id"
    ) -> None:
        super().__init__(
            message=f"No record with {id_field}={record_id}",
            repository_name=repository_name,
            operation="get",
            details={id_field: str(record_id)}
        )
        self.record_id = record_id
        self.id_field = id_field


class DuplicateRecordError(RepositoryException):
    """
    A unique key was violated by a concurrent writer.

    Dedup inserts catch this themselves; it only escapes from
    operations that are not expected to race.
    """

    def __init__(
        self,
        repository_name: str,
        constraint_field: str,
        value: Any
    ) -> None:
        super().__init__(
            message=f"{constraint_field}={value} already exists",
            repository_name=repository_name,
            operation="insert",
            details={"field": constraint_field, "value": str(value)}
        )
        self.constraint_field = constraint_field
        self.value = value


class IntegrityError(RepositoryException):
    """A foreign key or check constraint rejected the write."""

    transient = False

    def __init__(
        self,
        repository_name: str,
        operation: str,
        constraint_name: str,
        message: str
    ) -> None:
        super().__init__(
            message=f"Constraint {constraint_name} violated: {message}",
            repository_name=repository_name,
            operation=operation,
            details={"constraint": constraint_name}
        )
        self.constraint_name = constraint_name


class ConnectionError(RepositoryException):
    """The database could not be reached or the connection dropped."""

    def __init__(
        self,
        repository_name: str,
        operation: str,
        original_error: str
    ) -> None:
        super().__init__(
            message=f"Database unavailable: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={"original_error": original_error}
        )


class QueryError(RepositoryException):
    """Any other failure while executing a statement."""

    def __init__(
        self,
        repository_name: str,
        operation: str,
        query_description: str,
        original_error: str
    ) -> None:
        super().__init__(
            message=f"{query_description} failed: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={
                "query_description": query_description,
                "original_error": original_error
            }
        )


class ValidationError(RepositoryException):
    """
    A write was rejected before reaching the database.

    Business validation (e.g. negative levels) belongs to the
    ingestion service; this covers malformed repository arguments.
    """

    transient = False

    def __init__(
        self,
        repository_name: str,
        operation: str,
        field: str,
        reason: str
    ) -> None:
        super().__init__(
            message=f"{field}: {reason}",
            repository_name=repository_name,
            operation=operation,
            details={"field": field, "reason": reason}
        )
        self.field = field
        self.reason = reason
