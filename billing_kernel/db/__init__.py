"""Database layer - engine, base classes and immutability listeners."""

from billing_kernel.db.base import Base, UUIDString
from billing_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "UUIDString",
]
