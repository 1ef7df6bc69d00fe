"""
Role gates -- an immutable action -> allowed-roles table.

The table is built once (``DEFAULT_PERMISSIONS``) and handed by reference to
every service. Keys are action enum members, optionally qualified by a
second enum (request type, leave stage, target design status) when the
same action is gated differently per variant:

    DEFAULT_PERMISSIONS.require(Role.DIRECTOR, RequestAction.REVIEW,
                                RequestType.ALLOCATION_CHANGE)

Nothing mutates the table at runtime; ``MappingProxyType`` and frozensets
make that structural.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping, Union

from workorder_kernel.domain.roles import Role
from workorder_kernel.domain.workflow import (
    DesignStatus,
    LeaveAction,
    LeaveStage,
    ProposalAction,
    RequestAction,
    RequestType,
    WorkOrderAction,
)
from workorder_kernel.exceptions import PermissionDeniedError

PermissionKey = Union[Enum, tuple[Enum, Enum]]

_MANAGEMENT = frozenset({Role.OPERATIONS_LEAD, Role.DIRECTOR})
_ASSIGNEES = frozenset({Role.DESIGNER, Role.DESIGN_LEAD})


def _only(role: Role) -> frozenset[Role]:
    return frozenset({role})


def _key_name(action: Enum, qualifier: Enum | None) -> str:
    if qualifier is None:
        return str(action.value)
    return f"{action.value}:{qualifier.value}"


class PermissionTable:
    """Read-only map of permission key -> roles allowed to act."""

    def __init__(self, grants: Mapping[PermissionKey, frozenset[Role]]):
        self._grants: Mapping[PermissionKey, frozenset[Role]] = MappingProxyType(
            {key: frozenset(roles) for key, roles in grants.items()}
        )

    def __contains__(self, key: object) -> bool:
        return key in self._grants

    def __len__(self) -> int:
        return len(self._grants)

    def allowed_roles(
        self,
        action: Enum,
        qualifier: Enum | None = None,
    ) -> frozenset[Role]:
        """Roles allowed to perform ``action``; empty if the key is unknown."""
        key: PermissionKey = action if qualifier is None else (action, qualifier)
        return self._grants.get(key, frozenset())

    def is_allowed(
        self,
        role: Role,
        action: Enum,
        qualifier: Enum | None = None,
    ) -> bool:
        return role in self.allowed_roles(action, qualifier)

    def require(
        self,
        role: Role,
        action: Enum,
        qualifier: Enum | None = None,
    ) -> None:
        """Raise PermissionDeniedError unless ``role`` may perform ``action``."""
        if not self.is_allowed(role, action, qualifier):
            raise PermissionDeniedError(
                action=_key_name(action, qualifier),
                role=role.value,
            )


def build_default_permissions() -> PermissionTable:
    grants: dict[PermissionKey, frozenset[Role]] = {
        # Proposal: each edge belongs to exactly one role
        ProposalAction.CREATE: _only(Role.SALES),
        ProposalAction.ADD_ESTIMATION: _only(Role.ESTIMATOR),
        ProposalAction.SET_PRICING: _only(Role.OPERATIONS_LEAD),
        ProposalAction.DIRECTOR_APPROVE: _only(Role.DIRECTOR),
        ProposalAction.DIRECTOR_REJECT: _only(Role.DIRECTOR),
        ProposalAction.SUBMIT_TO_CLIENT: _only(Role.SALES),
        ProposalAction.MARK_WON: _only(Role.SALES),
        ProposalAction.MARK_LOST: _only(Role.SALES),
        # Work order ledger and lifecycle
        WorkOrderAction.SET_CEILING: _MANAGEMENT,
        WorkOrderAction.ALLOCATE: _MANAGEMENT | {Role.DESIGN_LEAD},
        WorkOrderAction.RECORD_TIME: _ASSIGNEES,
        WorkOrderAction.UPDATE_TIME_ENTRY: _ASSIGNEES,
        WorkOrderAction.DELETE_TIME_ENTRY: _ASSIGNEES | _MANAGEMENT,
        WorkOrderAction.ASSIGN_DESIGN_LEAD: _MANAGEMENT,
        WorkOrderAction.MARK_COMPLETED: _MANAGEMENT | {Role.DESIGN_LEAD},
        (WorkOrderAction.UPDATE_DESIGN_STATUS, DesignStatus.IN_PROGRESS): _ASSIGNEES,
        (WorkOrderAction.UPDATE_DESIGN_STATUS, DesignStatus.SUBMITTED): _ASSIGNEES,
        (WorkOrderAction.UPDATE_DESIGN_STATUS, DesignStatus.REVISION_REQUIRED): (
            _MANAGEMENT | {Role.DESIGN_LEAD}
        ),
        (WorkOrderAction.UPDATE_DESIGN_STATUS, DesignStatus.APPROVED): (
            _MANAGEMENT | {Role.DESIGN_LEAD}
        ),
        # Filing: constrained role per request type
        (WorkOrderAction.FILE_REQUEST, RequestType.TIME_OVERAGE): _ASSIGNEES,
        (WorkOrderAction.FILE_REQUEST, RequestType.ALLOCATION_CHANGE): _only(Role.OPERATIONS_LEAD),
        (WorkOrderAction.FILE_REQUEST, RequestType.VARIATION): _only(Role.DESIGN_LEAD),
        # Review: a disjoint, more senior role
        (RequestAction.REVIEW, RequestType.TIME_OVERAGE): _MANAGEMENT,
        (RequestAction.REVIEW, RequestType.ALLOCATION_CHANGE): _only(Role.DIRECTOR),
        (RequestAction.REVIEW, RequestType.VARIATION): _MANAGEMENT,
        # Leave
        LeaveAction.FILE: frozenset(Role),
        (LeaveAction.REVIEW, LeaveStage.REPORTING_OFFICER): _MANAGEMENT,
        (LeaveAction.REVIEW, LeaveStage.HR): _only(Role.HR),
        (LeaveAction.REVIEW, LeaveStage.DIRECTOR): _only(Role.DIRECTOR),
    }
    return PermissionTable(grants)


DEFAULT_PERMISSIONS = build_default_permissions()
