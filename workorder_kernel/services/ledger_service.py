"""
LedgerService -- the hours ledger of a work order.

Responsibility:
    Owns the conservation rules between ceiling, allocation and
    consumption:

        total_allocated <= ceiling + epsilon            (allocation)
        hours_consumed  <= ceiling + extra_budget + eps (consumption)
        allocation_status == completed  iff  total_allocated >= ceiling - eps
        hours_consumed == SUM(live time entries)        (never incremented)

    Every mutation locks the work order row, checks the rule against the
    freshly read totals, writes the change and appends an audit entry whose
    payload carries a ``ledger`` block of deltas, all inside the caller's
    transaction.

Architecture position:
    Kernel > Services. Used directly by the transition engine for ledger
    actions and by RequestService when an approved request resolves an
    overage.

Failure modes:
    - PermissionDeniedError: role not allowed, or actor not assigned.
    - InvalidStateTransitionError: work order state or allocation status
      does not accept the action, or no ceiling is set.
    - BudgetExceededError: the mutation would break a ledger rule; carries
      the exact overage.
    - ValidationFailedError: non-positive hours, duplicate or invalid
      assignees.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping
from uuid import UUID

from sqlalchemy import func, select

from workorder_kernel.domain.clock import Clock
from workorder_kernel.domain.dtos import NotificationIntent, SubjectRef, TransitionResult
from workorder_kernel.domain.ledger import (
    DEFAULT_EPSILON,
    ZERO,
    AllocationGrant,
    LedgerTotals,
    allocation_overage,
    allocation_status,
    consumption_overage,
    merge_grants,
    positive_hours,
    reject_duplicate_assignees,
)
from workorder_kernel.domain.permissions import PermissionTable
from workorder_kernel.domain.roles import MANAGEMENT_ROLES, Actor, Role
from workorder_kernel.domain.workflow import (
    WORK_ORDER_ACTION_STATES,
    AllocationChangeKind,
    AllocationStatus,
    CeilingSource,
    RequestType,
    SubjectType,
    WorkOrderAction,
    WorkOrderStatus,
)
from workorder_kernel.exceptions import (
    BudgetExceededError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from workorder_kernel.logging_config import get_logger
from workorder_kernel.models.request import ResourceRequest
from workorder_kernel.models.work_order import Assignment, TimeEntry, WorkOrder
from workorder_kernel.services.auditor_service import AuditorService
from workorder_kernel.services.base import BaseService
from workorder_kernel.services.staff_service import StaffService

logger = get_logger("services.ledger")

RESOLVE_OVERAGE = "resolve_overage"

# Column scale of Numeric(38, 9); SQLite sums come back as floats.
_HOURS_SCALE = Decimal("0.000000001")


def work_order_ref(work_order_id: UUID) -> SubjectRef:
    return SubjectRef(SubjectType.WORK_ORDER, work_order_id)


def _as_date(value: date | str | None, default: date) -> date:
    if value is None:
        return default
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationFailedError("work_date", f"not an ISO date: {value!r}") from exc


@dataclass(frozen=True)
class OverageResolution:
    """What an approved request did to its work order's ledger."""

    ledger_delta: Decimal
    totals: LedgerTotals
    allocation_status: AllocationStatus
    applied_entry_id: UUID | None = None


class LedgerService(BaseService):
    """Allocation, consumption and overage resolution for work orders."""

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        permissions: PermissionTable | None = None,
        epsilon: Decimal = DEFAULT_EPSILON,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session, clock, permissions)
        self.epsilon = epsilon
        self.auditor = auditor or AuditorService(session, self.clock)
        self.staff = StaffService(session, self.clock, self.permissions)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def lock_work_order(self, work_order_id: UUID) -> WorkOrder:
        return self._lock(WorkOrder, work_order_id)

    def require_state(self, work_order: WorkOrder, action: WorkOrderAction) -> None:
        if work_order.status_enum not in WORK_ORDER_ACTION_STATES[action]:
            raise InvalidStateTransitionError(
                SubjectType.WORK_ORDER.value,
                str(work_order.id),
                work_order.status,
                action.value,
            )

    def assignments(self, work_order_id: UUID) -> dict[UUID, Assignment]:
        rows = self.session.execute(
            select(Assignment).where(Assignment.work_order_id == work_order_id)
        ).scalars().all()
        return {row.assignee_id: row for row in rows}

    def is_assignee(self, work_order: WorkOrder, staff_id: UUID) -> bool:
        if work_order.design_lead_id == staff_id:
            return True
        return self.session.execute(
            select(Assignment.id).where(
                Assignment.work_order_id == work_order.id,
                Assignment.assignee_id == staff_id,
            )
        ).first() is not None

    def consumed_hours(self, work_order_id: UUID) -> Decimal:
        """Live sum of non-deleted time entries."""
        total = self.session.execute(
            select(func.sum(TimeEntry.hours)).where(
                TimeEntry.work_order_id == work_order_id,
                TimeEntry.deleted_at.is_(None),
            )
        ).scalar_one()
        if total is None:
            return ZERO
        return Decimal(str(total)).quantize(_HOURS_SCALE)

    def _refresh_allocation_status(self, work_order: WorkOrder) -> AllocationStatus:
        status = allocation_status(
            work_order.allocation_ceiling, work_order.total_allocated, self.epsilon
        )
        work_order.allocation_status = status.value
        if (
            work_order.status_enum == WorkOrderStatus.PENDING_ALLOCATION
            and work_order.total_allocated > ZERO
        ):
            work_order.status = WorkOrderStatus.IN_PROGRESS.value
        return status

    def _recompute_consumption(self, work_order: WorkOrder) -> Decimal:
        """Re-derive hours_consumed and return the change from the stored value."""
        self.session.flush()
        previous = work_order.hours_consumed or ZERO
        work_order.hours_consumed = self.consumed_hours(work_order.id)
        return work_order.hours_consumed - previous

    def _check_consumption(self, work_order: WorkOrder, current: Decimal, additional: Decimal) -> None:
        totals = LedgerTotals(
            ceiling=work_order.allocation_ceiling,
            total_allocated=work_order.total_allocated,
            hours_consumed=current,
            extra_budget=work_order.extra_budget_hours,
        )
        overage = consumption_overage(totals, additional, self.epsilon)
        if overage > ZERO:
            logger.warning(
                "consumption_rejected",
                extra={
                    "work_order_id": str(work_order.id),
                    "hours_consumed": current,
                    "requested": additional,
                    "overage": overage,
                },
            )
            raise BudgetExceededError(
                work_order_id=str(work_order.id),
                limit=totals.consumption_limit,
                requested_total=current + additional,
                overage=overage,
                kind="consumption",
            )

    def _require_time_author(self, work_order: WorkOrder, actor: Actor) -> None:
        if not self.is_assignee(work_order, actor.id):
            raise PermissionDeniedError(
                action=WorkOrderAction.RECORD_TIME.value,
                role=actor.role.value,
                reason="not assigned to this work order",
            )

    # ------------------------------------------------------------------
    # Ceiling
    # ------------------------------------------------------------------

    def set_ceiling(
        self,
        work_order_id: UUID,
        value: Any,
        actor: Actor,
        source: CeilingSource | str = CeilingSource.MANUAL_ENTRY,
    ) -> TransitionResult:
        """Enter the ceiling; allowed only before any hours are allocated."""
        self.permissions.require(actor.role, WorkOrderAction.SET_CEILING)
        ceiling = positive_hours(value, "ceiling")
        source = CeilingSource(source)

        work_order = self.lock_work_order(work_order_id)
        self.require_state(work_order, WorkOrderAction.SET_CEILING)
        if work_order.allocation_status_enum != AllocationStatus.NOT_STARTED:
            raise InvalidStateTransitionError(
                SubjectType.WORK_ORDER.value,
                str(work_order.id),
                work_order.allocation_status,
                WorkOrderAction.SET_CEILING.value,
                reason="ceiling can only be raised through an approved request once allocation has started",
            )

        previous = work_order.allocation_ceiling
        work_order.allocation_ceiling = ceiling
        work_order.allocation_ceiling_source = source.value
        status = self._refresh_allocation_status(work_order)
        self._touch(work_order, actor)

        self.auditor.record(
            work_order_ref(work_order.id),
            WorkOrderAction.SET_CEILING,
            actor,
            detail=f"Ceiling set to {ceiling}h by {actor.label}",
            payload={
                "previous_ceiling": previous,
                "source": source.value,
                "ledger": {"ceiling": ceiling},
            },
        )
        logger.info(
            "ceiling_set",
            extra={"work_order_id": str(work_order.id), "ceiling": ceiling, "source": source.value},
        )
        return TransitionResult(
            subject=work_order_ref(work_order.id),
            action=WorkOrderAction.SET_CEILING.value,
            applied_state=status.value,
            data={"ceiling": ceiling, "allocation_status": status.value},
        )

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        work_order_id: UUID,
        grants: Iterable[AllocationGrant | Mapping[str, Any]],
        actor: Actor,
    ) -> TransitionResult:
        """
        Grant hours to assignees, topping up any existing grant.

        Raises:
            ValidationFailedError: Empty call, duplicate or invalid assignee.
            InvalidStateTransitionError: Work order closed or no ceiling.
            BudgetExceededError: Total would pass the ceiling, or the ledger
                is already fully allocated.
        """
        self.permissions.require(actor.role, WorkOrderAction.ALLOCATE)
        parsed = [
            g if isinstance(g, AllocationGrant) else AllocationGrant.from_payload(g)
            for g in grants
        ]
        if not parsed:
            raise ValidationFailedError("grants", "at least one grant is required")
        reject_duplicate_assignees(parsed)

        work_order = self.lock_work_order(work_order_id)
        if actor.role == Role.DESIGN_LEAD and work_order.design_lead_id != actor.id:
            raise PermissionDeniedError(
                action=WorkOrderAction.ALLOCATE.value,
                role=actor.role.value,
                reason="only the work order's design lead may allocate",
            )
        self.require_state(work_order, WorkOrderAction.ALLOCATE)
        for grant in parsed:
            self.staff.require_assignable(grant.assignee_id)
        if work_order.allocation_ceiling is None:
            raise InvalidStateTransitionError(
                SubjectType.WORK_ORDER.value,
                str(work_order.id),
                work_order.allocation_status,
                WorkOrderAction.ALLOCATE.value,
                reason="allocation ceiling has not been entered",
            )

        totals = work_order.ledger_totals()
        additional = sum((g.hours for g in parsed), ZERO)
        overage = allocation_overage(totals, additional, self.epsilon)
        if overage > ZERO:
            logger.warning(
                "allocation_rejected",
                extra={
                    "work_order_id": str(work_order.id),
                    "ceiling": totals.ceiling,
                    "total_allocated": totals.total_allocated,
                    "requested": additional,
                    "overage": overage,
                },
            )
            raise BudgetExceededError(
                work_order_id=str(work_order.id),
                limit=totals.ceiling,
                requested_total=totals.total_allocated + additional,
                overage=overage,
            )

        existing = self.assignments(work_order.id)
        merged = merge_grants({k: v.hours for k, v in existing.items()}, parsed)
        notes = {g.assignee_id: g.notes for g in parsed}
        for assignee_id in notes:
            row = existing.get(assignee_id)
            if row is None:
                row = Assignment(
                    work_order_id=work_order.id,
                    assignee_id=assignee_id,
                    created_by_id=actor.id,
                )
                self.session.add(row)
            row.hours = merged[assignee_id]
            if notes[assignee_id]:
                row.notes = notes[assignee_id]
            row.updated_by_id = actor.id

        work_order.total_allocated = sum(merged.values(), ZERO)
        status = self._refresh_allocation_status(work_order)
        self._touch(work_order, actor)
        self.session.flush()

        self.auditor.record(
            work_order_ref(work_order.id),
            WorkOrderAction.ALLOCATE,
            actor,
            detail=f"{actor.label} allocated {additional}h across {len(parsed)} assignee(s)",
            payload={
                "grants": [
                    {"assignee_id": g.assignee_id, "hours": g.hours, "notes": g.notes}
                    for g in parsed
                ],
                "ledger": {"allocated_delta": additional},
            },
        )
        logger.info(
            "allocation_applied",
            extra={
                "work_order_id": str(work_order.id),
                "allocated": additional,
                "total_allocated": work_order.total_allocated,
                "allocation_status": status.value,
            },
        )

        notifications = tuple(
            NotificationIntent(
                event="hours_allocated",
                message=f"{g.hours}h allocated to you on {work_order.code} {work_order.name}",
                recipient_ids=(g.assignee_id,),
                subject=work_order_ref(work_order.id),
                context={"work_order": work_order.name, "hours": g.hours, "allocated_by": actor.label},
            )
            for g in parsed
        )
        return TransitionResult(
            subject=work_order_ref(work_order.id),
            action=WorkOrderAction.ALLOCATE.value,
            applied_state=status.value,
            ledger_delta=additional,
            data={
                "ceiling": work_order.allocation_ceiling,
                "total_allocated": work_order.total_allocated,
                "allocation_status": status.value,
            },
            notifications=notifications,
        )

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def record_consumption(
        self,
        work_order_id: UUID,
        hours: Any,
        actor: Actor,
        work_date: date | str | None = None,
        description: str = "",
    ) -> TransitionResult:
        """Log time; the consumption total is re-derived from the entry set."""
        self.permissions.require(actor.role, WorkOrderAction.RECORD_TIME)
        hours = positive_hours(hours)
        entry_date = _as_date(work_date, self.clock.today())

        work_order = self.lock_work_order(work_order_id)
        self.require_state(work_order, WorkOrderAction.RECORD_TIME)
        self._require_time_author(work_order, actor)
        self._check_consumption(work_order, self.consumed_hours(work_order.id), hours)

        entry = TimeEntry(
            work_order_id=work_order.id,
            author_id=actor.id,
            hours=hours,
            work_date=entry_date,
            description=description or "",
            created_by_id=actor.id,
        )
        self.session.add(entry)
        delta = self._recompute_consumption(work_order)
        self._touch(work_order, actor)

        self.auditor.record(
            work_order_ref(work_order.id),
            WorkOrderAction.RECORD_TIME,
            actor,
            detail=f"{actor.label} logged {hours}h for {entry_date.isoformat()}",
            payload={
                "time_entry_id": entry.id,
                "hours": hours,
                "work_date": entry_date,
                "ledger": {"consumed_delta": delta},
            },
        )
        logger.info(
            "consumption_recorded",
            extra={
                "work_order_id": str(work_order.id),
                "time_entry_id": str(entry.id),
                "hours": hours,
                "hours_consumed": work_order.hours_consumed,
            },
        )
        return TransitionResult(
            subject=work_order_ref(work_order.id),
            action=WorkOrderAction.RECORD_TIME.value,
            applied_state=work_order.status,
            ledger_delta=delta,
            data={"time_entry_id": entry.id, "hours_consumed": work_order.hours_consumed},
        )

    def _lock_entry_and_work_order(
        self, time_entry_id: UUID, action: WorkOrderAction
    ) -> tuple[TimeEntry, WorkOrder]:
        # Work order first, matching the lock order of record_consumption.
        work_order_id = self._get(TimeEntry, time_entry_id).work_order_id
        work_order = self.lock_work_order(work_order_id)
        entry = self._lock(TimeEntry, time_entry_id)
        if entry.is_deleted:
            raise InvalidStateTransitionError(
                "time_entry", str(entry.id), "deleted", action.value,
            )
        self.require_state(work_order, action)
        return entry, work_order

    def update_time_entry(
        self,
        time_entry_id: UUID,
        actor: Actor,
        hours: Any = None,
        work_date: date | str | None = None,
        description: str | None = None,
    ) -> TransitionResult:
        """Edit one's own entry; raising its hours is checked like new time."""
        self.permissions.require(actor.role, WorkOrderAction.UPDATE_TIME_ENTRY)
        entry, work_order = self._lock_entry_and_work_order(
            time_entry_id, WorkOrderAction.UPDATE_TIME_ENTRY
        )
        if entry.author_id != actor.id:
            raise PermissionDeniedError(
                action=WorkOrderAction.UPDATE_TIME_ENTRY.value,
                role=actor.role.value,
                reason="only the author may edit a time entry",
            )

        changes: dict[str, Any] = {}
        if hours is not None:
            new_hours = positive_hours(hours)
            increase = new_hours - entry.hours
            if increase > ZERO:
                self._check_consumption(
                    work_order, self.consumed_hours(work_order.id), increase
                )
            changes["hours"] = {"from": entry.hours, "to": new_hours}
            entry.hours = new_hours
        if work_date is not None:
            new_date = _as_date(work_date, entry.work_date)
            changes["work_date"] = {"from": entry.work_date, "to": new_date}
            entry.work_date = new_date
        if description is not None:
            entry.description = description
            changes["description"] = True
        if not changes:
            raise ValidationFailedError("time_entry", "no changes supplied")
        self._touch(entry, actor)

        delta = self._recompute_consumption(work_order)
        self._touch(work_order, actor)
        self.auditor.record(
            work_order_ref(work_order.id),
            WorkOrderAction.UPDATE_TIME_ENTRY,
            actor,
            detail=f"{actor.label} edited time entry {entry.id}",
            payload={"time_entry_id": entry.id, "changes": changes, "ledger": {"consumed_delta": delta}},
        )
        logger.info(
            "time_entry_updated",
            extra={"time_entry_id": str(entry.id), "hours_consumed": work_order.hours_consumed},
        )
        return TransitionResult(
            subject=work_order_ref(work_order.id),
            action=WorkOrderAction.UPDATE_TIME_ENTRY.value,
            applied_state=work_order.status,
            ledger_delta=delta,
            data={"time_entry_id": entry.id, "hours_consumed": work_order.hours_consumed},
        )

    def delete_time_entry(self, time_entry_id: UUID, actor: Actor) -> TransitionResult:
        """Soft-delete an entry (author or management); consumption drops accordingly."""
        self.permissions.require(actor.role, WorkOrderAction.DELETE_TIME_ENTRY)
        entry, work_order = self._lock_entry_and_work_order(
            time_entry_id, WorkOrderAction.DELETE_TIME_ENTRY
        )
        if entry.author_id != actor.id and actor.role not in MANAGEMENT_ROLES:
            raise PermissionDeniedError(
                action=WorkOrderAction.DELETE_TIME_ENTRY.value,
                role=actor.role.value,
                reason="only the author or management may delete a time entry",
            )

        entry.deleted_at = self.clock.now()
        self._touch(entry, actor)
        delta = self._recompute_consumption(work_order)
        self._touch(work_order, actor)

        self.auditor.record(
            work_order_ref(work_order.id),
            WorkOrderAction.DELETE_TIME_ENTRY,
            actor,
            detail=f"{actor.label} deleted time entry {entry.id} ({entry.hours}h)",
            payload={"time_entry_id": entry.id, "hours": entry.hours, "ledger": {"consumed_delta": delta}},
        )
        logger.info(
            "time_entry_deleted",
            extra={"time_entry_id": str(entry.id), "hours_consumed": work_order.hours_consumed},
        )
        return TransitionResult(
            subject=work_order_ref(work_order.id),
            action=WorkOrderAction.DELETE_TIME_ENTRY.value,
            applied_state=work_order.status,
            ledger_delta=delta,
            data={"time_entry_id": entry.id, "hours_consumed": work_order.hours_consumed},
        )

    # ------------------------------------------------------------------
    # Overage resolution
    # ------------------------------------------------------------------

    def resolve_overage(
        self,
        request: ResourceRequest,
        approved_hours: Decimal,
        actor: Actor,
        work_order: WorkOrder | None = None,
    ) -> OverageResolution:
        """
        Apply an approved request's grant to its work order.

        Only RequestService calls this, inside the transaction that flips
        the request to approved:

            allocation_change/ceiling   ceiling += approved
            variation                   ceiling += approved
            allocation_change/assignee  target's hours := approved
            time_overage                extra_budget += approved, then the
                                        staged entry (if any) is applied
        """
        if work_order is None:
            work_order = self.lock_work_order(request.work_order_id)

        ledger: dict[str, Any] = {}
        applied_entry: TimeEntry | None = None
        request_type = request.type_enum

        if request_type == RequestType.TIME_OVERAGE:
            if request.staged_entry is not None:
                self.require_state(work_order, WorkOrderAction.RECORD_TIME)
            work_order.extra_budget_hours = (work_order.extra_budget_hours or ZERO) + approved_hours
            ledger["extra_budget_delta"] = approved_hours
            delta = approved_hours
            staged = request.staged_entry
            if staged is not None:
                self._check_consumption(work_order, self.consumed_hours(work_order.id), staged.hours)
                applied_entry = TimeEntry(
                    work_order_id=work_order.id,
                    author_id=request.requester_id,
                    hours=staged.hours,
                    work_date=staged.work_date,
                    description=staged.description,
                    source_request_id=request.id,
                    created_by_id=actor.id,
                )
                self.session.add(applied_entry)
                ledger["consumed_delta"] = self._recompute_consumption(work_order)
        elif (
            request_type == RequestType.ALLOCATION_CHANGE
            and request.change_kind_enum == AllocationChangeKind.ASSIGNEE_HOURS
        ):
            delta = self._retarget_assignee(work_order, request, approved_hours, actor)
            ledger["allocated_delta"] = delta
        else:
            if work_order.allocation_ceiling is None:
                work_order.allocation_ceiling = approved_hours
                work_order.allocation_ceiling_source = CeilingSource.MANUAL_ENTRY.value
                ledger["ceiling"] = approved_hours
            else:
                work_order.allocation_ceiling = work_order.allocation_ceiling + approved_hours
                ledger["ceiling_delta"] = approved_hours
            delta = approved_hours

        status = self._refresh_allocation_status(work_order)
        self._touch(work_order, actor)
        self.session.flush()

        self.auditor.record(
            work_order_ref(work_order.id),
            RESOLVE_OVERAGE,
            actor,
            detail=(
                f"{request_type.value} request {request.id} approved by "
                f"{actor.label} for {approved_hours}h"
            ),
            payload={
                "request_id": request.id,
                "request_type": request_type.value,
                "approved_hours": approved_hours,
                "applied_entry_id": applied_entry.id if applied_entry else None,
                "ledger": ledger,
            },
        )
        logger.info(
            "overage_resolved",
            extra={
                "work_order_id": str(work_order.id),
                "request_id": str(request.id),
                "request_type": request_type.value,
                "approved_hours": approved_hours,
                "ceiling": work_order.allocation_ceiling,
                "extra_budget_hours": work_order.extra_budget_hours,
            },
        )
        return OverageResolution(
            ledger_delta=delta,
            totals=work_order.ledger_totals(),
            allocation_status=status,
            applied_entry_id=applied_entry.id if applied_entry else None,
        )

    def _retarget_assignee(
        self,
        work_order: WorkOrder,
        request: ResourceRequest,
        hours: Decimal,
        actor: Actor,
    ) -> Decimal:
        """Set one assignee's grant to ``hours``; the only path that may lower it."""
        if work_order.allocation_ceiling is None:
            raise InvalidStateTransitionError(
                SubjectType.WORK_ORDER.value,
                str(work_order.id),
                work_order.allocation_status,
                RESOLVE_OVERAGE,
                reason="allocation ceiling has not been entered",
            )
        assignee_id = request.target_assignee_id
        self.staff.require_assignable(assignee_id, "target_assignee_id")

        existing = self.assignments(work_order.id)
        previous_total = work_order.total_allocated or ZERO
        current = existing[assignee_id].hours if assignee_id in existing else ZERO
        new_total = previous_total - current + hours
        if new_total > work_order.allocation_ceiling + self.epsilon:
            raise BudgetExceededError(
                work_order_id=str(work_order.id),
                limit=work_order.allocation_ceiling,
                requested_total=new_total,
                overage=new_total - work_order.allocation_ceiling,
            )

        row = existing.get(assignee_id)
        if row is None:
            row = Assignment(
                work_order_id=work_order.id,
                assignee_id=assignee_id,
                created_by_id=actor.id,
            )
            self.session.add(row)
        row.hours = hours
        row.updated_by_id = actor.id
        work_order.total_allocated = new_total
        return new_total - previous_total
