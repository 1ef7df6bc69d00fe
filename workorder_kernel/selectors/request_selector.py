"""
Request and leave read models.

A requester sees their own requests. A reviewer additionally sees every
request of the types their role reviews, and gets a queue of those still
awaiting a decision. Leave is visible in full to the operations lead,
the director and HR; everyone else sees their own. ``pending_for_stage``
lists leave awaiting the given stage that this actor may act on.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select

from workorder_kernel.domain.permissions import DEFAULT_PERMISSIONS, PermissionTable
from workorder_kernel.domain.roles import Actor, Role
from workorder_kernel.domain.workflow import (
    LeaveAction,
    LeaveStage,
    LeaveStatus,
    RequestAction,
    RequestStatus,
    RequestType,
)
from workorder_kernel.models.leave import LeaveRequest
from workorder_kernel.models.request import ResourceRequest
from workorder_kernel.selectors.base import BaseSelector

_LEAVE_OVERSIGHT = frozenset({Role.OPERATIONS_LEAD, Role.DIRECTOR, Role.HR})


@dataclass(frozen=True)
class RequestView:
    id: UUID
    work_order_id: UUID
    request_type: str
    status: str
    requester_id: UUID
    requested_hours: Decimal
    justification: str
    change_kind: str | None
    variation_code: str | None
    attachment_ref: str | None
    staged_hours: Decimal | None
    reviewer_id: UUID | None
    review_comment: str | None
    approved_hours: Decimal | None
    reviewed_at: datetime | None


@dataclass(frozen=True)
class LeaveView:
    id: UUID
    requester_id: UUID
    requester_name: str
    leave_type: str
    start_date: date
    end_date: date
    number_of_days: int
    status: str
    current_stage: int
    stage1_role: str
    stage_statuses: tuple[str, str, str]
    hr_category: str | None


def _request_view(row: ResourceRequest) -> RequestView:
    return RequestView(
        id=row.id,
        work_order_id=row.work_order_id,
        request_type=row.request_type,
        status=row.status,
        requester_id=row.requester_id,
        requested_hours=row.requested_hours,
        justification=row.justification,
        change_kind=row.change_kind,
        variation_code=row.variation_code,
        attachment_ref=row.attachment_ref,
        staged_hours=row.staged_hours,
        reviewer_id=row.reviewer_id,
        review_comment=row.review_comment,
        approved_hours=row.approved_hours,
        reviewed_at=row.reviewed_at,
    )


def _leave_view(row: LeaveRequest) -> LeaveView:
    return LeaveView(
        id=row.id,
        requester_id=row.requester_id,
        requester_name=row.requester_name,
        leave_type=row.leave_type,
        start_date=row.start_date,
        end_date=row.end_date,
        number_of_days=row.number_of_days,
        status=row.status,
        current_stage=row.current_stage,
        stage1_role=row.stage1_role,
        stage_statuses=(row.stage1_status, row.stage2_status, row.stage3_status),
        hr_category=row.hr_category,
    )


class RequestSelector(BaseSelector[ResourceRequest]):
    def __init__(self, session, permissions: PermissionTable | None = None):
        super().__init__(session)
        self.permissions = permissions or DEFAULT_PERMISSIONS

    def reviewable_types(self, role: Role) -> list[str]:
        return [
            t.value for t in RequestType
            if self.permissions.is_allowed(role, RequestAction.REVIEW, t)
        ]

    def visible_to(self, actor: Actor, status: RequestStatus | str | None = None) -> list[RequestView]:
        query = select(ResourceRequest)
        types = self.reviewable_types(actor.role)
        if types:
            query = query.where(
                or_(ResourceRequest.requester_id == actor.id, ResourceRequest.request_type.in_(types))
            )
        else:
            query = query.where(ResourceRequest.requester_id == actor.id)
        if status is not None:
            query = query.where(ResourceRequest.status == RequestStatus(status).value)
        rows = self.session.execute(query.order_by(ResourceRequest.created_at)).scalars().all()
        return [_request_view(r) for r in rows]

    def pending_for_reviewer(self, actor: Actor) -> list[RequestView]:
        types = self.reviewable_types(actor.role)
        if not types:
            return []
        rows = self.session.execute(
            select(ResourceRequest)
            .where(
                ResourceRequest.request_type.in_(types),
                ResourceRequest.status == RequestStatus.PENDING.value,
                ResourceRequest.requester_id != actor.id,
            )
            .order_by(ResourceRequest.created_at)
        ).scalars().all()
        return [_request_view(r) for r in rows]

    def for_work_order(self, work_order_id: UUID) -> list[RequestView]:
        rows = self.session.execute(
            select(ResourceRequest)
            .where(ResourceRequest.work_order_id == work_order_id)
            .order_by(ResourceRequest.created_at)
        ).scalars().all()
        return [_request_view(r) for r in rows]


class LeaveSelector(BaseSelector[LeaveRequest]):
    def __init__(self, session, permissions: PermissionTable | None = None):
        super().__init__(session)
        self.permissions = permissions or DEFAULT_PERMISSIONS

    def visible_to(self, actor: Actor) -> list[LeaveView]:
        query = select(LeaveRequest)
        if actor.role not in _LEAVE_OVERSIGHT:
            query = query.where(LeaveRequest.requester_id == actor.id)
        rows = self.session.execute(query.order_by(LeaveRequest.start_date)).scalars().all()
        return [_leave_view(r) for r in rows]

    def pending_for_stage(self, actor: Actor, stage: LeaveStage | int) -> list[LeaveView]:
        stage = LeaveStage(int(stage))
        if not self.permissions.is_allowed(actor.role, LeaveAction.REVIEW, stage):
            return []
        query = select(LeaveRequest).where(
            LeaveRequest.status == LeaveStatus.PENDING.value,
            LeaveRequest.current_stage == int(stage),
            LeaveRequest.requester_id != actor.id,
        )
        if stage == LeaveStage.REPORTING_OFFICER:
            query = query.where(LeaveRequest.stage1_role == actor.role.value)
        rows = self.session.execute(query.order_by(LeaveRequest.created_at)).scalars().all()
        return [_leave_view(r) for r in rows]
