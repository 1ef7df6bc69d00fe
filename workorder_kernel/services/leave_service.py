"""
LeaveService -- three-stage leave approval.

Stages run strictly in order:

    1 reporting officer   operations lead (director for the operations lead)
    2 HR                  also assigns the leave category
    3 director            final

``review`` names the stage being acted on and it must equal
``current_stage``. Approving stage k moves to k+1 (4 = completed and the
request is approved); rejecting at any stage ends the request
(``current_stage`` 0, status rejected), so no later stage can act.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from workorder_kernel.domain.dtos import NotificationIntent, Priority, SubjectRef, TransitionResult
from workorder_kernel.domain.roles import Actor
from workorder_kernel.domain.workflow import (
    REVIEW_STAGES,
    LeaveAction,
    LeaveDecision,
    LeaveStage,
    LeaveStatus,
    LeaveType,
    StageStatus,
    SubjectType,
    next_leave_stage,
    reporting_officer_role,
)
from workorder_kernel.exceptions import (
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from workorder_kernel.logging_config import get_logger
from workorder_kernel.models.leave import LeaveRequest
from workorder_kernel.services.auditor_service import AuditorService
from workorder_kernel.services.base import BaseService

logger = get_logger("services.leave")

_STAGE_NAMES = {
    LeaveStage.REPORTING_OFFICER: "reporting officer",
    LeaveStage.HR: "HR",
    LeaveStage.DIRECTOR: "director",
}


def leave_ref(leave_id: UUID) -> SubjectRef:
    return SubjectRef(SubjectType.LEAVE_REQUEST, leave_id)


def _as_date(value: date | str, field: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationFailedError(field, f"not an ISO date: {value!r}") from exc


class LeaveService(BaseService):
    def __init__(self, session, clock=None, permissions=None, auditor: AuditorService | None = None):
        super().__init__(session, clock, permissions)
        self.auditor = auditor or AuditorService(session, self.clock)

    def file_leave(
        self,
        actor: Actor,
        leave_type: LeaveType | str,
        start_date: date | str,
        end_date: date | str,
        reason: str,
        emergency_contact: str | None = None,
    ) -> TransitionResult:
        self.permissions.require(actor.role, LeaveAction.FILE)
        try:
            leave_type = LeaveType(leave_type)
        except ValueError as exc:
            raise ValidationFailedError("leave_type", f"unknown leave type: {leave_type!r}") from exc
        start = _as_date(start_date, "start_date")
        end = _as_date(end_date, "end_date")
        if end < start:
            raise ValidationFailedError("end_date", "must not be before start_date")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationFailedError("reason", "must not be empty")

        stage1_role = reporting_officer_role(actor.role)
        leave = LeaveRequest(
            requester_id=actor.id,
            requester_role=actor.role.value,
            requester_name=actor.name,
            leave_type=leave_type.value,
            start_date=start,
            end_date=end,
            number_of_days=(end - start).days + 1,
            reason=reason,
            emergency_contact=emergency_contact,
            status=LeaveStatus.PENDING.value,
            current_stage=int(LeaveStage.REPORTING_OFFICER),
            stage1_role=stage1_role.value,
            created_by_id=actor.id,
        )
        self.session.add(leave)
        self.session.flush()

        self.auditor.record(
            leave_ref(leave.id),
            LeaveAction.FILE,
            actor,
            detail=f"{actor.label} requested {leave.number_of_days} day(s) of {leave_type.value} leave",
            payload={
                "leave_type": leave_type.value,
                "start_date": start,
                "end_date": end,
                "number_of_days": leave.number_of_days,
                "stage1_role": stage1_role.value,
            },
        )
        logger.info(
            "leave_filed",
            extra={
                "leave_id": str(leave.id),
                "leave_type": leave_type.value,
                "number_of_days": leave.number_of_days,
                "stage1_role": stage1_role.value,
            },
        )
        return TransitionResult(
            subject=leave_ref(leave.id),
            action=LeaveAction.FILE.value,
            applied_state=leave.status,
            data={"leave_id": leave.id, "current_stage": leave.current_stage},
            notifications=(
                NotificationIntent(
                    event="leave_submitted",
                    message=f"New leave request from {actor.label} ({leave.number_of_days} days)",
                    recipient_roles=(stage1_role,),
                    subject=leave_ref(leave.id),
                    context={"employee": actor.label, "leave_type": leave_type.value},
                ),
            ),
        )

    def review(
        self,
        leave_id: UUID,
        actor: Actor,
        stage: LeaveStage | int,
        decision: LeaveDecision | str,
        comment: str | None = None,
        hr_category: str | None = None,
    ) -> TransitionResult:
        """
        Act on one stage.

        Raises:
            PermissionDeniedError: Role not allowed for ``stage``, not the
                assigned reporting officer, or reviewing one's own leave.
            InvalidStateTransitionError: ``stage`` is not the current stage
                (including any review after a rejection or completion).
        """
        try:
            stage = LeaveStage(int(stage))
        except (TypeError, ValueError) as exc:
            raise ValidationFailedError("stage", f"unknown stage: {stage!r}") from exc
        try:
            decision = LeaveDecision(decision)
        except ValueError as exc:
            raise ValidationFailedError("decision", f"unknown decision: {decision!r}") from exc
        if stage not in REVIEW_STAGES:
            raise ValidationFailedError("stage", f"stage {int(stage)} is not reviewable")

        self.permissions.require(actor.role, LeaveAction.REVIEW, stage)
        leave = self._lock(LeaveRequest, leave_id)
        if stage == LeaveStage.REPORTING_OFFICER and actor.role.value != leave.stage1_role:
            raise PermissionDeniedError(
                action=f"{LeaveAction.REVIEW.value}:{int(stage)}",
                role=actor.role.value,
                reason=f"stage 1 of this request belongs to {leave.stage1_role}",
            )
        if leave.requester_id == actor.id:
            raise PermissionDeniedError(
                action=f"{LeaveAction.REVIEW.value}:{int(stage)}",
                role=actor.role.value,
                reason="reviewers may not review their own leave",
            )
        if leave.current_stage != int(stage):
            raise InvalidStateTransitionError(
                SubjectType.LEAVE_REQUEST.value,
                str(leave.id),
                f"{leave.status}@stage{leave.current_stage}",
                f"{LeaveAction.REVIEW.value}:{int(stage)}",
            )

        comment = (comment or "").strip() or None
        now = self.clock.now()
        notifications: list[NotificationIntent] = []
        if decision == LeaveDecision.APPROVE:
            leave.record_stage_review(stage, StageStatus.APPROVED, actor.id, comment, now)
            if stage == LeaveStage.HR:
                leave.hr_category = (hr_category or "").strip() or leave.leave_type
            reached = next_leave_stage(stage)
            leave.current_stage = int(reached)
            if reached == LeaveStage.COMPLETED:
                leave.status = LeaveStatus.APPROVED.value
            else:
                notifications.append(
                    NotificationIntent(
                        event=f"leave_stage{int(reached)}_pending",
                        message=(
                            f"Leave request from {leave.requester_name or leave.requester_id} "
                            f"awaits {_STAGE_NAMES[reached]} review"
                        ),
                        recipient_roles=tuple(
                            sorted(
                                self.permissions.allowed_roles(LeaveAction.REVIEW, reached),
                                key=lambda r: r.value,
                            )
                        ),
                        subject=leave_ref(leave.id),
                    )
                )
        else:
            leave.record_stage_review(stage, StageStatus.REJECTED, actor.id, comment, now)
            leave.status = LeaveStatus.REJECTED.value
            leave.current_stage = int(LeaveStage.TERMINATED)
        self._touch(leave, actor)
        self.session.flush()

        self.auditor.record(
            leave_ref(leave.id),
            LeaveAction.REVIEW,
            actor,
            detail=f"Stage {int(stage)} ({_STAGE_NAMES[stage]}) {decision.value} by {actor.label}",
            payload={
                "stage": int(stage),
                "decision": decision.value,
                "comment": comment,
                "hr_category": leave.hr_category if stage == LeaveStage.HR else None,
                "current_stage": leave.current_stage,
                "status": leave.status,
            },
        )
        logger.info(
            "leave_reviewed",
            extra={
                "leave_id": str(leave.id),
                "stage": int(stage),
                "decision": decision.value,
                "current_stage": leave.current_stage,
            },
        )

        final = " (final)" if stage == LeaveStage.DIRECTOR or decision == LeaveDecision.REJECT else ""
        notifications.insert(
            0,
            NotificationIntent(
                event=f"leave_stage{int(stage)}_{decision.value}",
                message=f"Your leave request was {decision.value}d by {_STAGE_NAMES[stage]}{final}",
                recipient_ids=(leave.requester_id,),
                priority=Priority.HIGH if decision == LeaveDecision.REJECT else Priority.NORMAL,
                subject=leave_ref(leave.id),
                context={"comment": comment},
            ),
        )
        return TransitionResult(
            subject=leave_ref(leave.id),
            action=LeaveAction.REVIEW.value,
            applied_state=leave.status,
            data={"current_stage": leave.current_stage, "hr_category": leave.hr_category},
            notifications=tuple(notifications),
        )

    def delete_leave(self, leave_id: UUID, actor: Actor) -> TransitionResult:
        """The requester may withdraw a leave request while it is pending."""
        leave = self._lock(LeaveRequest, leave_id)
        if leave.requester_id != actor.id:
            raise PermissionDeniedError(
                action=LeaveAction.DELETE.value,
                role=actor.role.value,
                reason="only the requester may delete a leave request",
            )
        if leave.status_enum != LeaveStatus.PENDING:
            raise InvalidStateTransitionError(
                SubjectType.LEAVE_REQUEST.value,
                str(leave.id),
                leave.status,
                LeaveAction.DELETE.value,
                reason="only pending leave requests can be deleted",
            )

        self.auditor.record(
            leave_ref(leave.id),
            LeaveAction.DELETE,
            actor,
            detail=f"{actor.label} withdrew the leave request",
            payload={"current_stage": leave.current_stage},
        )
        self.session.delete(leave)
        self.session.flush()
        logger.info("leave_deleted", extra={"leave_id": str(leave_id)})
        return TransitionResult(
            subject=leave_ref(leave_id),
            action=LeaveAction.DELETE.value,
            applied_state="deleted",
        )
