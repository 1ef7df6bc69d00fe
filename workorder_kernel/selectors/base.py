"""
Module: workorder_kernel.selectors.base
Responsibility: Base class for read-only query selectors.
Architecture position: Kernel > Selectors. May import from db/, domain/ and
    models/. MUST NOT import from services/.

Selectors accept a Session from the caller, never add, flush or commit,
and return frozen DTOs rather than ORM instances.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from workorder_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """Read-only access over one primary model."""

    def __init__(self, session: Session):
        self.session = session
