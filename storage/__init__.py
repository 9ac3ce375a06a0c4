"""
Storage Package.

This package manages all data persistence.

Modules:
- database: Engine, session factory and transaction scope
- models/: ORM models
- repositories/: Data access layer
- reset: Administrative per-machine reset
"""

from storage.database import (
    SessionFactory,
    create_all_tables,
    create_database_engine,
    create_session_factory,
    transaction_scope,
)
from storage.reset import reset_machine

__all__ = [
    "SessionFactory",
    "create_all_tables",
    "create_database_engine",
    "create_session_factory",
    "transaction_scope",
    "reset_machine",
]
