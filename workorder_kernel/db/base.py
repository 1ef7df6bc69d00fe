"""
Module: workorder_kernel.db.base
Responsibility: Declarative base classes shared by every ORM model.
Architecture position: Kernel > DB. Lowest-level import target in the kernel;
    must not import from models/, services/, selectors/ or domain/.

Conventions:
    - Primary keys are uuid4 values stored as String(36) so the schema runs
      unchanged on PostgreSQL and SQLite.
    - Hours are Decimal and map to Numeric(38, 9). Floats are never stored.
    - Timestamps are timezone-aware.
    - TrackedBase adds created/updated stamps and the acting identity.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID stored as its 36-character string form."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class Base(DeclarativeBase):
    """
    Declarative base for all models.

    Every model gets a uuid4 ``id`` primary key, and annotations resolve
    through ``type_annotation_map`` so hours, timestamps and identifiers
    use the same column types everywhere.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base recording who created and last touched a row.

    ``created_at``/``updated_at`` are server-side timestamps;
    ``created_by_id`` is mandatory, ``updated_by_id`` is set by services on
    every mutation.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    updated_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )


UUID = PyUUID
