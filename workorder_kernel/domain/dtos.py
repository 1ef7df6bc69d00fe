"""
Data transfer objects passed between services, the transition engine and
callers. All frozen; nothing here touches the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from workorder_kernel.domain.roles import Role
from workorder_kernel.domain.workflow import SubjectType


@dataclass(frozen=True)
class SubjectRef:
    """Pointer to the record a command acts on."""

    subject_type: SubjectType
    subject_id: UUID

    def __str__(self) -> str:
        return f"{self.subject_type.value}:{self.subject_id}"


class Priority:
    NORMAL = "normal"
    HIGH = "high"


@dataclass(frozen=True)
class NotificationIntent:
    """A notification a committed transition wants delivered.

    Targets are roles, specific identities, or both. ``context`` carries the
    names and amounts a sink needs to render a human-readable message.
    """

    event: str
    message: str
    recipient_roles: tuple[Role, ...] = ()
    recipient_ids: tuple[UUID, ...] = ()
    priority: str = Priority.NORMAL
    subject: SubjectRef | None = None
    context: Mapping[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "message": self.message,
            "recipient_roles": [r.value for r in self.recipient_roles],
            "recipient_ids": [str(i) for i in self.recipient_ids],
            "priority": self.priority,
            "subject_type": self.subject.subject_type.value if self.subject else None,
            "subject_id": str(self.subject.subject_id) if self.subject else None,
            **{k: v for k, v in self.context.items()},
        }


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one committed transition."""

    subject: SubjectRef
    action: str
    applied_state: str
    ledger_delta: Decimal | None = None
    data: Mapping[str, Any] = field(default_factory=dict)
    notifications: tuple[NotificationIntent, ...] = ()

    @property
    def subject_id(self) -> UUID:
        return self.subject.subject_id


@dataclass(frozen=True)
class StagedTimeEntry:
    """A time entry held back until an overage request is approved."""

    hours: Decimal
    work_date: date
    description: str = ""
