"""
BaseService -- shared constructor and row-locking helpers for kernel services.

Responsibility:
    Every write service receives a SQLAlchemy ``Session``, a ``Clock`` and
    the immutable permission table. Services persist with
    ``session.flush()`` only; the caller (TransitionEngine or a test using
    ``session_scope``) owns commit and rollback, so a transition's subject
    change, ledger mutation and audit entry land together or not at all.

Architecture position:
    Kernel > Services. May import from db/, domain/, models/ and utils/.

Locking:
    ``_lock`` issues ``SELECT ... FOR UPDATE`` with ``populate_existing`` so
    the row is re-read after the lock is granted. A concurrent transition on
    the same subject therefore observes the committed effect of the first
    before running its own checks. On SQLite the whole transaction already
    holds the write lock (BEGIN IMMEDIATE).
"""

from abc import ABC
from typing import TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from workorder_kernel.db.base import Base
from workorder_kernel.domain.clock import Clock, SystemClock
from workorder_kernel.domain.permissions import DEFAULT_PERMISSIONS, PermissionTable
from workorder_kernel.domain.roles import Actor
from workorder_kernel.exceptions import NotFoundError

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC):
    """
    Abstract base class for kernel write services.

    Non-goals:
        - Does NOT commit or roll back.
        - Does NOT provide read models; those live in ``selectors/``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        permissions: PermissionTable | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.permissions = permissions or DEFAULT_PERMISSIONS

    def _lock(self, model: type[ModelType], entity_id: UUID) -> ModelType:
        """Load ``model`` by id with a row lock, or raise NotFoundError."""
        row = self.session.execute(
            select(model)
            .where(model.id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(model.__name__, str(entity_id))
        return row

    def _get(self, model: type[ModelType], entity_id: UUID) -> ModelType:
        row = self.session.get(model, entity_id)
        if row is None:
            raise NotFoundError(model.__name__, str(entity_id))
        return row

    @staticmethod
    def _touch(row, actor: Actor) -> None:
        row.updated_by_id = actor.id
