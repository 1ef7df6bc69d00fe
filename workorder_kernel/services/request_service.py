"""
RequestService -- filing and reviewing resource requests.

Responsibility:
    A resource request asks a more senior role to change a work order's
    ledger: time overage (extra hours to log), allocation change (raise the
    ceiling or re-target one assignee) or variation (scope added to the
    work order). Filing and review are gated per request type:

        type               filed by                   reviewed by
        time_overage       assignee of the work order operations lead, director
        allocation_change  operations lead           director
        variation          design lead               operations lead, director

    A request is reviewed to a terminal status at most once. Approval
    flips the status and applies the grant to the ledger in the same
    transaction (LedgerService.resolve_overage); a second review raises
    AlreadyProcessedError and leaves the ledger untouched.

Architecture position:
    Kernel > Services. Flush-only; the caller commits.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from workorder_kernel.domain.clock import Clock
from workorder_kernel.domain.dtos import (
    NotificationIntent,
    Priority,
    StagedTimeEntry,
    SubjectRef,
    TransitionResult,
)
from workorder_kernel.domain.ledger import DEFAULT_EPSILON, positive_hours
from workorder_kernel.domain.permissions import PermissionTable
from workorder_kernel.domain.roles import Actor, Role
from workorder_kernel.domain.workflow import (
    DECISION_OUTCOMES,
    TERMINAL_REQUEST_STATUSES,
    AllocationChangeKind,
    RequestAction,
    RequestStatus,
    RequestType,
    ReviewDecision,
    SubjectType,
    WorkOrderAction,
    can_transition_request,
)
from workorder_kernel.exceptions import (
    AlreadyProcessedError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from workorder_kernel.logging_config import get_logger
from workorder_kernel.models.request import ResourceRequest
from workorder_kernel.services.auditor_service import AuditorService
from workorder_kernel.services.base import BaseService
from workorder_kernel.services.ledger_service import LedgerService, work_order_ref

logger = get_logger("services.request")

_TYPE_LABELS = {
    RequestType.TIME_OVERAGE: "Additional time",
    RequestType.ALLOCATION_CHANGE: "Allocation change",
    RequestType.VARIATION: "Variation",
}


def request_ref(request_id: UUID) -> SubjectRef:
    return SubjectRef(SubjectType.REQUEST, request_id)


def _require_text(value: str | None, field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationFailedError(field, "must not be empty")
    return text


class RequestService(BaseService):
    def __init__(
        self,
        session,
        clock: Clock | None = None,
        permissions: PermissionTable | None = None,
        epsilon: Decimal = DEFAULT_EPSILON,
        auditor: AuditorService | None = None,
        ledger: LedgerService | None = None,
    ):
        super().__init__(session, clock, permissions)
        self.auditor = auditor or AuditorService(session, self.clock)
        self.ledger = ledger or LedgerService(
            session, self.clock, self.permissions, epsilon, self.auditor
        )

    def _reviewer_roles(self, request_type: RequestType) -> tuple[Role, ...]:
        return tuple(
            sorted(
                self.permissions.allowed_roles(RequestAction.REVIEW, request_type),
                key=lambda r: r.value,
            )
        )

    # ------------------------------------------------------------------
    # Filing
    # ------------------------------------------------------------------

    def file_request(
        self,
        actor: Actor,
        work_order_id: UUID,
        request_type: RequestType | str,
        hours: Any,
        justification: str,
        *,
        change_kind: AllocationChangeKind | str | None = None,
        target_assignee_id: UUID | None = None,
        variation_code: str | None = None,
        attachment_ref: str | None = None,
        staged_entry: StagedTimeEntry | None = None,
    ) -> TransitionResult:
        """
        File a request against a work order.

        ``hours`` is the delta asked for; for an ``assignee_hours``
        allocation change it is the target's new total. A time-overage
        request may carry a staged time entry that is logged when, and only
        when, the request is approved.
        """
        try:
            request_type = RequestType(request_type)
        except ValueError as exc:
            raise ValidationFailedError("request_type", f"unknown type: {request_type!r}") from exc
        self.permissions.require(actor.role, WorkOrderAction.FILE_REQUEST, request_type)

        justification = _require_text(justification, "justification")
        hours = positive_hours(hours)

        work_order = self.ledger.lock_work_order(work_order_id)
        self.ledger.require_state(work_order, WorkOrderAction.FILE_REQUEST)

        request = ResourceRequest(
            work_order_id=work_order.id,
            request_type=request_type.value,
            status=RequestStatus.PENDING.value,
            requester_id=actor.id,
            requester_role=actor.role.value,
            requested_hours=hours,
            justification=justification,
            attachment_ref=attachment_ref,
            created_by_id=actor.id,
        )

        if request_type == RequestType.TIME_OVERAGE:
            if not self.ledger.is_assignee(work_order, actor.id):
                raise PermissionDeniedError(
                    action=f"{WorkOrderAction.FILE_REQUEST.value}:{request_type.value}",
                    role=actor.role.value,
                    reason="only an assignee of the work order may request more time",
                )
            if staged_entry is not None:
                request.staged_hours = positive_hours(staged_entry.hours, "staged_hours")
                request.staged_work_date = staged_entry.work_date
                request.staged_description = staged_entry.description
        elif request_type == RequestType.ALLOCATION_CHANGE:
            kind = AllocationChangeKind(change_kind or AllocationChangeKind.CEILING)
            request.change_kind = kind.value
            if kind == AllocationChangeKind.ASSIGNEE_HOURS:
                if target_assignee_id is None:
                    raise ValidationFailedError("target_assignee_id", "is required")
                self.ledger.staff.require_assignable(target_assignee_id, "target_assignee_id")
                request.target_assignee_id = target_assignee_id
        else:
            code = _require_text(variation_code, "variation_code")
            taken = self.session.execute(
                select(ResourceRequest.id).where(
                    ResourceRequest.work_order_id == work_order.id,
                    ResourceRequest.variation_code == code,
                )
            ).first()
            if taken is not None:
                raise ValidationFailedError("variation_code", f"{code} already used on this work order")
            request.variation_code = code

        self.session.add(request)
        self.session.flush()

        self.auditor.record(
            request_ref(request.id),
            WorkOrderAction.FILE_REQUEST,
            actor,
            detail=f"{actor.label} requested {hours}h ({request_type.value}) on {work_order.code}",
            payload={
                "work_order_id": work_order.id,
                "request_type": request_type.value,
                "requested_hours": hours,
                "justification": justification,
                "change_kind": request.change_kind,
                "target_assignee_id": request.target_assignee_id,
                "variation_code": request.variation_code,
                "staged_hours": request.staged_hours,
            },
        )
        logger.info(
            "request_filed",
            extra={
                "request_id": str(request.id),
                "request_type": request_type.value,
                "work_order_id": str(work_order.id),
                "requested_hours": hours,
            },
        )

        label = _TYPE_LABELS[request_type]
        notification = NotificationIntent(
            event=f"{request_type.value}_requested",
            message=f"{label} request: {actor.label} asks for {hours}h on {work_order.name}",
            recipient_roles=self._reviewer_roles(request_type),
            priority=Priority.HIGH,
            subject=request_ref(request.id),
            context={
                "work_order": work_order.name,
                "work_order_code": work_order.code,
                "requested_hours": hours,
                "requester": actor.label,
            },
        )
        return TransitionResult(
            subject=request_ref(request.id),
            action=WorkOrderAction.FILE_REQUEST.value,
            applied_state=request.status,
            data={"request_id": request.id, "work_order_id": work_order.id},
            notifications=(notification,),
        )

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def review(
        self,
        request_id: UUID,
        actor: Actor,
        decision: ReviewDecision | str,
        comment: str | None = None,
        adjusted_hours: Any = None,
    ) -> TransitionResult:
        """
        Approve, reject or ask for more information.

        Approval defaults ``adjusted_hours`` to the requested amount and
        applies it to the ledger before the request row is flushed as
        approved. Reject and request-info need a comment.

        Raises:
            PermissionDeniedError: Role may not review this type, or the
                reviewer filed the request.
            AlreadyProcessedError: Request is already approved or rejected.
            ValidationFailedError: Missing comment or non-positive grant.
            BudgetExceededError: A staged entry still does not fit.
        """
        try:
            decision = ReviewDecision(decision)
        except ValueError as exc:
            raise ValidationFailedError("decision", f"unknown decision: {decision!r}") from exc

        request = self._lock(ResourceRequest, request_id)
        request_type = request.type_enum
        self.permissions.require(actor.role, RequestAction.REVIEW, request_type)
        if request.requester_id == actor.id:
            raise PermissionDeniedError(
                action=f"{RequestAction.REVIEW.value}:{request_type.value}",
                role=actor.role.value,
                reason="a request cannot be reviewed by its requester",
            )
        if request.status_enum in TERMINAL_REQUEST_STATUSES:
            raise AlreadyProcessedError(str(request.id), request.status)

        target = DECISION_OUTCOMES[decision]
        if not can_transition_request(request.status_enum, target):
            raise InvalidStateTransitionError(
                SubjectType.REQUEST.value,
                str(request.id),
                request.status,
                decision.value,
            )

        approved: Decimal | None = None
        applied_entry_id: UUID | None = None
        ledger_data: dict[str, Any] = {}
        if decision == ReviewDecision.APPROVE:
            approved = positive_hours(
                request.requested_hours if adjusted_hours is None else adjusted_hours,
                "adjusted_hours",
            )
            work_order = self.ledger.lock_work_order(request.work_order_id)
            self.ledger.require_state(work_order, WorkOrderAction.FILE_REQUEST)
            resolution = self.ledger.resolve_overage(request, approved, actor, work_order)
            applied_entry_id = resolution.applied_entry_id
            ledger_data = {
                "ceiling": resolution.totals.ceiling,
                "total_allocated": resolution.totals.total_allocated,
                "hours_consumed": resolution.totals.hours_consumed,
                "extra_budget_hours": resolution.totals.extra_budget,
                "allocation_status": resolution.allocation_status.value,
            }
            comment = (comment or "").strip() or None
        else:
            comment = _require_text(comment, "comment")

        request.status = target.value
        request.reviewer_id = actor.id
        request.reviewer_role = actor.role.value
        request.review_comment = comment
        request.approved_hours = approved
        request.reviewed_at = self.clock.now()
        request.applied_entry_id = applied_entry_id
        self._touch(request, actor)
        self.session.flush()

        self.auditor.record(
            request_ref(request.id),
            RequestAction.REVIEW,
            actor,
            detail=f"{decision.value} by {actor.label}" + (f": {comment}" if comment else ""),
            payload={
                "decision": decision.value,
                "status": target.value,
                "approved_hours": approved,
                "comment": comment,
                "applied_entry_id": applied_entry_id,
            },
        )
        logger.info(
            "request_reviewed",
            extra={
                "request_id": str(request.id),
                "request_type": request_type.value,
                "decision": decision.value,
                "approved_hours": approved,
            },
        )

        label = _TYPE_LABELS[request_type]
        verb = {
            ReviewDecision.APPROVE: "approved",
            ReviewDecision.REJECT: "rejected",
            ReviewDecision.REQUEST_INFO: "needs more information",
        }[decision]
        notification = NotificationIntent(
            event=f"{request_type.value}_{target.value}",
            message=f"{label} request {verb} by {actor.label}"
            + (f" ({approved}h granted)" if approved is not None else ""),
            recipient_ids=(request.requester_id,),
            priority=Priority.HIGH if decision != ReviewDecision.APPROVE else Priority.NORMAL,
            subject=request_ref(request.id),
            context={"reviewer": actor.label, "approved_hours": approved, "comment": comment},
        )
        return TransitionResult(
            subject=request_ref(request.id),
            action=RequestAction.REVIEW.value,
            applied_state=request.status,
            ledger_delta=approved,
            data={
                "work_order_id": request.work_order_id,
                "applied_entry_id": applied_entry_id,
                **ledger_data,
            },
            notifications=(notification,),
        )

    # ------------------------------------------------------------------
    # Requester follow-ups
    # ------------------------------------------------------------------

    def resubmit(
        self,
        request_id: UUID,
        actor: Actor,
        justification: str | None = None,
        hours: Any = None,
    ) -> TransitionResult:
        """Answer an info request; the request returns to pending."""
        request = self._lock(ResourceRequest, request_id)
        if request.requester_id != actor.id:
            raise PermissionDeniedError(
                action=RequestAction.RESUBMIT.value,
                role=actor.role.value,
                reason="only the requester may resubmit",
            )
        if request.status_enum in TERMINAL_REQUEST_STATUSES:
            raise AlreadyProcessedError(str(request.id), request.status)
        if not can_transition_request(request.status_enum, RequestStatus.PENDING):
            raise InvalidStateTransitionError(
                SubjectType.REQUEST.value,
                str(request.id),
                request.status,
                RequestAction.RESUBMIT.value,
            )

        if justification is not None:
            request.justification = _require_text(justification, "justification")
        if hours is not None:
            request.requested_hours = positive_hours(hours)
        request.status = RequestStatus.PENDING.value
        self._touch(request, actor)
        self.session.flush()

        self.auditor.record(
            request_ref(request.id),
            RequestAction.RESUBMIT,
            actor,
            detail=f"{actor.label} resubmitted with more information",
            payload={"justification": request.justification, "requested_hours": request.requested_hours},
        )
        logger.info("request_resubmitted", extra={"request_id": str(request.id)})

        return TransitionResult(
            subject=request_ref(request.id),
            action=RequestAction.RESUBMIT.value,
            applied_state=request.status,
            notifications=(
                NotificationIntent(
                    event=f"{request.request_type}_resubmitted",
                    message=f"{_TYPE_LABELS[request.type_enum]} request resubmitted by {actor.label}",
                    recipient_roles=self._reviewer_roles(request.type_enum),
                    subject=request_ref(request.id),
                ),
            ),
        )

    def delete_request(self, request_id: UUID, actor: Actor) -> TransitionResult:
        """Withdraw a pending request (requester or director)."""
        request = self._lock(ResourceRequest, request_id)
        if request.requester_id != actor.id and actor.role != Role.DIRECTOR:
            raise PermissionDeniedError(
                action=RequestAction.DELETE.value,
                role=actor.role.value,
                reason="only the requester or a director may delete a request",
            )
        if request.status_enum != RequestStatus.PENDING:
            raise InvalidStateTransitionError(
                SubjectType.REQUEST.value,
                str(request.id),
                request.status,
                RequestAction.DELETE.value,
                reason="only pending requests can be deleted",
            )

        self.auditor.record(
            request_ref(request.id),
            RequestAction.DELETE,
            actor,
            detail=f"{actor.label} deleted the request",
            payload={"work_order_id": request.work_order_id, "requested_hours": request.requested_hours},
        )
        self.session.delete(request)
        self.session.flush()
        logger.info("request_deleted", extra={"request_id": str(request_id)})

        return TransitionResult(
            subject=request_ref(request_id),
            action=RequestAction.DELETE.value,
            applied_state="deleted",
        )
