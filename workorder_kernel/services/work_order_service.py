"""
WorkOrderService -- design lead assignment, design status and completion.

Ledger mutations live in LedgerService; this service moves the
non-numeric parts of a work order. Design status follows
DESIGN_STATUS_TRANSITIONS, and the role allowed to move it depends on the
target (assignees submit, the design lead or management approve or send
back).
"""

from uuid import UUID

from workorder_kernel.domain.dtos import NotificationIntent, Priority, TransitionResult
from workorder_kernel.domain.roles import Actor, Role
from workorder_kernel.domain.workflow import (
    DESIGN_STATUS_TRANSITIONS,
    DesignStatus,
    SubjectType,
    WorkOrderAction,
    WorkOrderStatus,
)
from workorder_kernel.exceptions import (
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from workorder_kernel.logging_config import get_logger
from workorder_kernel.services.auditor_service import AuditorService
from workorder_kernel.services.base import BaseService
from workorder_kernel.services.ledger_service import LedgerService, work_order_ref

logger = get_logger("services.work_order")

_REVIEW_TARGETS = frozenset({DesignStatus.REVISION_REQUIRED, DesignStatus.APPROVED})


class WorkOrderService(BaseService):
    def __init__(
        self,
        session,
        clock=None,
        permissions=None,
        auditor: AuditorService | None = None,
        ledger: LedgerService | None = None,
    ):
        super().__init__(session, clock, permissions)
        self.auditor = auditor or AuditorService(session, self.clock)
        self.ledger = ledger or LedgerService(
            session, self.clock, self.permissions, auditor=self.auditor
        )

    def assign_design_lead(self, work_order_id: UUID, actor: Actor, design_lead_id: UUID) -> TransitionResult:
        self.permissions.require(actor.role, WorkOrderAction.ASSIGN_DESIGN_LEAD)
        work_order = self.ledger.lock_work_order(work_order_id)
        self.ledger.require_state(work_order, WorkOrderAction.ASSIGN_DESIGN_LEAD)
        lead = self.ledger.staff.require_active(design_lead_id, "design_lead_id")
        if lead.role_enum != Role.DESIGN_LEAD:
            raise ValidationFailedError("design_lead_id", f"{lead.name} is not a design lead")

        previous = work_order.design_lead_id
        work_order.design_lead_id = lead.id
        self._touch(work_order, actor)
        self.session.flush()

        self.auditor.record(
            work_order_ref(work_order.id),
            WorkOrderAction.ASSIGN_DESIGN_LEAD,
            actor,
            detail=f"{lead.name} assigned as design lead by {actor.label}",
            payload={"design_lead_id": lead.id, "previous_design_lead_id": previous},
        )
        logger.info(
            "design_lead_assigned",
            extra={"work_order_id": str(work_order.id), "design_lead_id": str(lead.id)},
        )
        return TransitionResult(
            subject=work_order_ref(work_order.id),
            action=WorkOrderAction.ASSIGN_DESIGN_LEAD.value,
            applied_state=work_order.status,
            data={"design_lead_id": lead.id},
            notifications=(
                NotificationIntent(
                    event="design_lead_assigned",
                    message=f"You are design lead on {work_order.code} {work_order.name}",
                    recipient_ids=(lead.id,),
                    subject=work_order_ref(work_order.id),
                    context={"work_order": work_order.name, "assigned_by": actor.label},
                ),
            ),
        )

    def update_design_status(
        self,
        work_order_id: UUID,
        actor: Actor,
        design_status: DesignStatus | str,
    ) -> TransitionResult:
        try:
            target = DesignStatus(design_status)
        except ValueError as exc:
            raise ValidationFailedError("design_status", f"unknown design status: {design_status!r}") from exc
        self.permissions.require(actor.role, WorkOrderAction.UPDATE_DESIGN_STATUS, target)

        work_order = self.ledger.lock_work_order(work_order_id)
        self.ledger.require_state(work_order, WorkOrderAction.UPDATE_DESIGN_STATUS)
        if target in _REVIEW_TARGETS:
            if actor.role == Role.DESIGN_LEAD and work_order.design_lead_id != actor.id:
                raise PermissionDeniedError(
                    action=f"{WorkOrderAction.UPDATE_DESIGN_STATUS.value}:{target.value}",
                    role=actor.role.value,
                    reason="only the work order's design lead may review its design",
                )
        elif not self.ledger.is_assignee(work_order, actor.id):
            raise PermissionDeniedError(
                action=f"{WorkOrderAction.UPDATE_DESIGN_STATUS.value}:{target.value}",
                role=actor.role.value,
                reason="not assigned to this work order",
            )

        current = work_order.design_status_enum
        if target not in DESIGN_STATUS_TRANSITIONS[current]:
            raise InvalidStateTransitionError(
                SubjectType.WORK_ORDER.value,
                str(work_order.id),
                current.value,
                f"{WorkOrderAction.UPDATE_DESIGN_STATUS.value}:{target.value}",
            )

        work_order.design_status = target.value
        if target == DesignStatus.SUBMITTED:
            work_order.last_submission_at = self.clock.now()
        self._touch(work_order, actor)
        self.session.flush()

        self.auditor.record(
            work_order_ref(work_order.id),
            WorkOrderAction.UPDATE_DESIGN_STATUS,
            actor,
            detail=f"Design status {current.value} -> {target.value} by {actor.label}",
            payload={"from": current.value, "to": target.value},
        )
        logger.info(
            "design_status_updated",
            extra={"work_order_id": str(work_order.id), "from_status": current.value, "to_status": target.value},
        )

        notifications = ()
        if target == DesignStatus.SUBMITTED:
            recipients = (work_order.design_lead_id,) if work_order.design_lead_id else ()
            notifications = (
                NotificationIntent(
                    event="design_submitted",
                    message=f"Design submitted for {work_order.code} {work_order.name}",
                    recipient_roles=() if recipients else (Role.OPERATIONS_LEAD,),
                    recipient_ids=recipients,
                    subject=work_order_ref(work_order.id),
                ),
            )
        elif target == DesignStatus.REVISION_REQUIRED:
            notifications = (
                NotificationIntent(
                    event="design_revision_required",
                    message=f"Design for {work_order.code} needs revision",
                    recipient_ids=tuple(self.ledger.assignments(work_order.id)),
                    priority=Priority.HIGH,
                    subject=work_order_ref(work_order.id),
                ),
            )
        return TransitionResult(
            subject=work_order_ref(work_order.id),
            action=WorkOrderAction.UPDATE_DESIGN_STATUS.value,
            applied_state=work_order.design_status,
            notifications=notifications,
        )

    def mark_completed(self, work_order_id: UUID, actor: Actor) -> TransitionResult:
        """Close the work order once its design is submitted or approved; accounts is told to invoice."""
        self.permissions.require(actor.role, WorkOrderAction.MARK_COMPLETED)
        work_order = self.ledger.lock_work_order(work_order_id)
        if actor.role == Role.DESIGN_LEAD and work_order.design_lead_id != actor.id:
            raise PermissionDeniedError(
                action=WorkOrderAction.MARK_COMPLETED.value,
                role=actor.role.value,
                reason="only the work order's design lead may complete it",
            )
        self.ledger.require_state(work_order, WorkOrderAction.MARK_COMPLETED)
        if work_order.design_status_enum not in (DesignStatus.SUBMITTED, DesignStatus.APPROVED):
            raise InvalidStateTransitionError(
                SubjectType.WORK_ORDER.value,
                str(work_order.id),
                work_order.design_status,
                WorkOrderAction.MARK_COMPLETED.value,
                reason="design has not been submitted",
            )

        work_order.design_status = DesignStatus.APPROVED.value
        work_order.status = WorkOrderStatus.COMPLETED.value
        work_order.completed_at = self.clock.now()
        self._touch(work_order, actor)
        self.session.flush()

        self.auditor.record(
            work_order_ref(work_order.id),
            WorkOrderAction.MARK_COMPLETED,
            actor,
            detail=f"{work_order.code} completed by {actor.label}",
            payload={
                "hours_consumed": work_order.hours_consumed,
                "total_allocated": work_order.total_allocated,
            },
        )
        logger.info("work_order_completed", extra={"work_order_id": str(work_order.id)})
        return TransitionResult(
            subject=work_order_ref(work_order.id),
            action=WorkOrderAction.MARK_COMPLETED.value,
            applied_state=work_order.status,
            notifications=(
                NotificationIntent(
                    event="project_completed",
                    message=f"{work_order.code} {work_order.name} is complete and ready for invoicing",
                    recipient_roles=(Role.ACCOUNTS,),
                    subject=work_order_ref(work_order.id),
                    context={
                        "work_order": work_order.name,
                        "client": work_order.client_name,
                        "hours_consumed": work_order.hours_consumed,
                    },
                ),
            ),
        )
