"""
Roles and actors.

The role set is closed: every gate in the system is expressed against these
members. Identity resolution happens outside the kernel; the kernel only
ever sees an ``Actor`` (identity + role) handed in by the caller.
"""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class Role(str, Enum):
    """Organisational roles that act on shared records."""

    SALES = "sales"
    ESTIMATOR = "estimator"
    OPERATIONS_LEAD = "operations_lead"
    DIRECTOR = "director"
    DESIGN_LEAD = "design_lead"
    DESIGNER = "designer"
    ACCOUNTS = "accounts"
    HR = "hr"


# Roles that may hold designer-hour allocations on a work order.
ASSIGNABLE_ROLES: frozenset[Role] = frozenset({Role.DESIGNER, Role.DESIGN_LEAD})

# Roles with an unrestricted view of work orders, requests and leave.
MANAGEMENT_ROLES: frozenset[Role] = frozenset({Role.OPERATIONS_LEAD, Role.DIRECTOR})


@dataclass(frozen=True)
class Actor:
    """The authenticated party performing a command."""

    id: UUID
    role: Role
    name: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

    @property
    def label(self) -> str:
        return self.name or str(self.id)
