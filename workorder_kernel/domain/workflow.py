"""
State machines -- closed action sets and explicit transition tables.

Every record type has a status enum, an action enum and a table mapping
(current state x action) to the next state. Services consult these tables
instead of branching on action strings, so the set of legal combinations is
enumerable and testable on its own.

Role gates live in ``workorder_kernel.domain.permissions``; this module only
answers "does this state accept this action, and where does it lead".
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Mapping

from workorder_kernel.domain.roles import Role


class SubjectType(str, Enum):
    """Record types the transition engine acts on."""

    PROPOSAL = "proposal"
    WORK_ORDER = "work_order"
    REQUEST = "request"
    LEAVE_REQUEST = "leave_request"


# ---------------------------------------------------------------------------
# Proposal
# ---------------------------------------------------------------------------


class ProposalStatus(str, Enum):
    PENDING_ESTIMATION = "pending_estimation"
    PENDING_PRICING = "pending_pricing"
    PENDING_DIRECTOR_APPROVAL = "pending_director_approval"
    APPROVED = "approved"
    REVISION_REQUIRED = "revision_required"
    SUBMITTED_TO_CLIENT = "submitted_to_client"
    WON = "won"
    LOST = "lost"


class ProposalAction(str, Enum):
    CREATE = "create_proposal"
    ADD_ESTIMATION = "add_estimation"
    SET_PRICING = "set_pricing"
    DIRECTOR_APPROVE = "director_approve"
    DIRECTOR_REJECT = "director_reject"
    SUBMIT_TO_CLIENT = "submit_to_client"
    MARK_WON = "mark_won"
    MARK_LOST = "mark_lost"


@dataclass(frozen=True)
class ProposalTransition:
    """One forward edge of the proposal state machine.

    ``reentry_role`` names the role whose revision request lets this action
    fire from ``revision_required``; ``None`` means the action never
    re-enters from a revision.
    """

    action: ProposalAction
    from_states: frozenset[ProposalStatus]
    to_state: ProposalStatus
    reentry_role: Role | None = None

    def accepts(self, status: ProposalStatus, revision_role: Role | None) -> bool:
        if status == ProposalStatus.REVISION_REQUIRED:
            return self.reentry_role is not None and self.reentry_role == revision_role
        return status in self.from_states


PROPOSAL_TRANSITIONS: Mapping[ProposalAction, ProposalTransition] = MappingProxyType({
    t.action: t
    for t in (
        ProposalTransition(
            ProposalAction.ADD_ESTIMATION,
            frozenset({ProposalStatus.PENDING_ESTIMATION}),
            ProposalStatus.PENDING_PRICING,
            reentry_role=Role.ESTIMATOR,
        ),
        ProposalTransition(
            ProposalAction.SET_PRICING,
            frozenset({ProposalStatus.PENDING_PRICING}),
            ProposalStatus.PENDING_DIRECTOR_APPROVAL,
            reentry_role=Role.OPERATIONS_LEAD,
        ),
        ProposalTransition(
            ProposalAction.DIRECTOR_APPROVE,
            frozenset({ProposalStatus.PENDING_DIRECTOR_APPROVAL}),
            ProposalStatus.APPROVED,
        ),
        ProposalTransition(
            ProposalAction.DIRECTOR_REJECT,
            frozenset({ProposalStatus.PENDING_DIRECTOR_APPROVAL}),
            ProposalStatus.REVISION_REQUIRED,
        ),
        ProposalTransition(
            ProposalAction.SUBMIT_TO_CLIENT,
            frozenset({ProposalStatus.APPROVED}),
            ProposalStatus.SUBMITTED_TO_CLIENT,
        ),
        ProposalTransition(
            ProposalAction.MARK_WON,
            frozenset({ProposalStatus.SUBMITTED_TO_CLIENT}),
            ProposalStatus.WON,
        ),
        ProposalTransition(
            ProposalAction.MARK_LOST,
            frozenset({ProposalStatus.SUBMITTED_TO_CLIENT}),
            ProposalStatus.LOST,
        ),
    )
})

TERMINAL_PROPOSAL_STATUSES: frozenset[ProposalStatus] = frozenset({
    ProposalStatus.WON,
    ProposalStatus.LOST,
})

# Roles a director may send a rejected proposal back to.
REVISION_ROLES: frozenset[Role] = frozenset({
    t.reentry_role for t in PROPOSAL_TRANSITIONS.values() if t.reentry_role
})


# ---------------------------------------------------------------------------
# Work order
# ---------------------------------------------------------------------------


class WorkOrderStatus(str, Enum):
    PENDING_ALLOCATION = "pending_allocation"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class AllocationStatus(str, Enum):
    NOT_STARTED = "not_started"
    PARTIAL = "partial"
    COMPLETED = "completed"


class CeilingSource(str, Enum):
    DERIVED_FROM_ESTIMATE = "derived_from_estimate"
    MANUAL_ENTRY = "manual_entry"
    AWAITING_ENTRY = "awaiting_entry"


class DesignStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    REVISION_REQUIRED = "revision_required"
    APPROVED = "approved"


class WorkOrderAction(str, Enum):
    SET_CEILING = "set_ceiling"
    ALLOCATE = "allocate"
    RECORD_TIME = "record_time"
    UPDATE_TIME_ENTRY = "update_time_entry"
    DELETE_TIME_ENTRY = "delete_time_entry"
    ASSIGN_DESIGN_LEAD = "assign_design_lead"
    UPDATE_DESIGN_STATUS = "update_design_status"
    MARK_COMPLETED = "mark_completed"
    FILE_REQUEST = "file_request"


_OPEN_WORK_ORDER = frozenset({WorkOrderStatus.PENDING_ALLOCATION, WorkOrderStatus.IN_PROGRESS})
_ACTIVE_WORK_ORDER = frozenset({WorkOrderStatus.IN_PROGRESS})

WORK_ORDER_ACTION_STATES: Mapping[WorkOrderAction, frozenset[WorkOrderStatus]] = MappingProxyType({
    WorkOrderAction.SET_CEILING: _OPEN_WORK_ORDER,
    WorkOrderAction.ALLOCATE: _OPEN_WORK_ORDER,
    WorkOrderAction.RECORD_TIME: _ACTIVE_WORK_ORDER,
    WorkOrderAction.UPDATE_TIME_ENTRY: _ACTIVE_WORK_ORDER,
    WorkOrderAction.DELETE_TIME_ENTRY: _ACTIVE_WORK_ORDER,
    WorkOrderAction.ASSIGN_DESIGN_LEAD: _OPEN_WORK_ORDER,
    WorkOrderAction.UPDATE_DESIGN_STATUS: _ACTIVE_WORK_ORDER,
    WorkOrderAction.MARK_COMPLETED: _ACTIVE_WORK_ORDER,
    WorkOrderAction.FILE_REQUEST: _OPEN_WORK_ORDER,
})

DESIGN_STATUS_TRANSITIONS: Mapping[DesignStatus, frozenset[DesignStatus]] = MappingProxyType({
    DesignStatus.NOT_STARTED: frozenset({DesignStatus.IN_PROGRESS, DesignStatus.SUBMITTED}),
    DesignStatus.IN_PROGRESS: frozenset({DesignStatus.SUBMITTED}),
    DesignStatus.SUBMITTED: frozenset({DesignStatus.REVISION_REQUIRED, DesignStatus.APPROVED}),
    DesignStatus.REVISION_REQUIRED: frozenset({DesignStatus.IN_PROGRESS, DesignStatus.SUBMITTED}),
    DesignStatus.APPROVED: frozenset(),
})


# ---------------------------------------------------------------------------
# Resource requests (time overage, allocation change, variation)
# ---------------------------------------------------------------------------


class RequestType(str, Enum):
    TIME_OVERAGE = "time_overage"
    ALLOCATION_CHANGE = "allocation_change"
    VARIATION = "variation"


class AllocationChangeKind(str, Enum):
    """What an allocation-change request re-targets."""

    CEILING = "ceiling"
    ASSIGNEE_HOURS = "assignee_hours"


class RequestStatus(str, Enum):
    PENDING = "pending"
    INFO_REQUESTED = "info_requested"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_INFO = "request_info"


class RequestAction(str, Enum):
    REVIEW = "review"
    RESUBMIT = "resubmit"
    DELETE = "delete"


REQUEST_TRANSITIONS: Mapping[RequestStatus, frozenset[RequestStatus]] = MappingProxyType({
    RequestStatus.PENDING: frozenset({
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
        RequestStatus.INFO_REQUESTED,
    }),
    RequestStatus.INFO_REQUESTED: frozenset({
        RequestStatus.PENDING,
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
    }),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
})

DECISION_OUTCOMES: Mapping[ReviewDecision, RequestStatus] = MappingProxyType({
    ReviewDecision.APPROVE: RequestStatus.APPROVED,
    ReviewDecision.REJECT: RequestStatus.REJECTED,
    ReviewDecision.REQUEST_INFO: RequestStatus.INFO_REQUESTED,
})

REVIEWABLE_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.PENDING,
    RequestStatus.INFO_REQUESTED,
})

TERMINAL_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
})


def can_transition_request(current: RequestStatus, target: RequestStatus) -> bool:
    return target in REQUEST_TRANSITIONS.get(current, frozenset())


# ---------------------------------------------------------------------------
# Leave requests
# ---------------------------------------------------------------------------


class LeaveType(str, Enum):
    ANNUAL = "annual"
    SICK = "sick"
    CASUAL = "casual"
    UNPAID = "unpaid"
    OTHER = "other"


class LeaveStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class StageStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LeaveStage(IntEnum):
    """``current_stage`` values. 0 and 4 are terminal."""

    TERMINATED = 0
    REPORTING_OFFICER = 1
    HR = 2
    DIRECTOR = 3
    COMPLETED = 4


class LeaveDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class LeaveAction(str, Enum):
    FILE = "file_leave"
    REVIEW = "review_leave"
    DELETE = "delete_leave"


REVIEW_STAGES: tuple[LeaveStage, ...] = (
    LeaveStage.REPORTING_OFFICER,
    LeaveStage.HR,
    LeaveStage.DIRECTOR,
)


def next_leave_stage(stage: LeaveStage) -> LeaveStage:
    """Stage reached by approving ``stage``."""
    if stage not in REVIEW_STAGES:
        raise ValueError(f"Stage {stage!r} is not reviewable")
    return LeaveStage(stage + 1)


def reporting_officer_role(requester_role: Role) -> Role:
    """Stage-1 reviewer for a requester: the operations lead reports to the director."""
    if requester_role == Role.OPERATIONS_LEAD:
        return Role.DIRECTOR
    return Role.OPERATIONS_LEAD
