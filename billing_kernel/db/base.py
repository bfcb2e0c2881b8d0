"""
Declarative base shared by every billing table.

Rows are keyed by uuid4 ids stored as 36-char strings, so one schema runs
on SQLite in tests and on PostgreSQL in production.  ``int`` columns are
BigInteger: money is whole cents, never a float or Decimal.  Timestamps
are timezone-aware.  Nothing here imports models or services.
"""

from datetime import datetime
from typing import Any, ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID in Python, ``String(36)`` in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> str | None:
        # Strings are normalized so "ABC..." and "abc..." match one row
        return None if value is None else str(UUID(str(value)))

    def process_result_value(self, value: str | None, dialect: Dialect) -> UUID | None:
        return None if value is None else UUID(value)


class Base(DeclarativeBase):
    """Every billing row carries a uuid4 ``id``."""

    type_annotation_map: ClassVar[dict] = {
        datetime: DateTime(timezone=True),
        UUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)
