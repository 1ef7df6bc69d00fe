"""
Work order read model.

Visibility by role:
    operations_lead, director, accounts  every work order
    design_lead                          led by them or assigned to them
    designer                             assigned to them
    sales                                converted from their own proposals
    anyone else                          none
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select

from workorder_kernel.domain.roles import MANAGEMENT_ROLES, Actor, Role
from workorder_kernel.exceptions import NotFoundError
from workorder_kernel.models.work_order import Assignment, WorkOrder
from workorder_kernel.selectors.base import BaseSelector

_SEE_ALL = MANAGEMENT_ROLES | {Role.ACCOUNTS}


@dataclass(frozen=True)
class AssignmentView:
    assignee_id: UUID
    hours: Decimal
    notes: str


@dataclass(frozen=True)
class WorkOrderView:
    id: UUID
    code: str
    name: str
    client_name: str
    status: str
    design_status: str
    design_lead_id: UUID | None
    allocation_ceiling: Decimal | None
    allocation_ceiling_source: str
    total_allocated: Decimal
    hours_consumed: Decimal
    extra_budget_hours: Decimal
    allocation_status: str
    last_submission_at: datetime | None
    assignments: tuple[AssignmentView, ...] = ()


class WorkOrderSelector(BaseSelector[WorkOrder]):
    def _assignments(self, work_order_ids: list[UUID]) -> dict[UUID, list[AssignmentView]]:
        if not work_order_ids:
            return {}
        rows = self.session.execute(
            select(Assignment)
            .where(Assignment.work_order_id.in_(work_order_ids))
            .order_by(Assignment.created_at, Assignment.assignee_id)
        ).scalars().all()
        grouped: dict[UUID, list[AssignmentView]] = {}
        for row in rows:
            grouped.setdefault(row.work_order_id, []).append(
                AssignmentView(assignee_id=row.assignee_id, hours=row.hours, notes=row.notes)
            )
        return grouped

    def _to_views(self, work_orders) -> list[WorkOrderView]:
        assignments = self._assignments([wo.id for wo in work_orders])
        return [
            WorkOrderView(
                id=wo.id,
                code=wo.code,
                name=wo.name,
                client_name=wo.client_name,
                status=wo.status,
                design_status=wo.design_status,
                design_lead_id=wo.design_lead_id,
                allocation_ceiling=wo.allocation_ceiling,
                allocation_ceiling_source=wo.allocation_ceiling_source,
                total_allocated=wo.total_allocated,
                hours_consumed=wo.hours_consumed,
                extra_budget_hours=wo.extra_budget_hours,
                allocation_status=wo.allocation_status,
                last_submission_at=wo.last_submission_at,
                assignments=tuple(assignments.get(wo.id, ())),
            )
            for wo in work_orders
        ]

    def get(self, work_order_id: UUID) -> WorkOrderView:
        work_order = self.session.get(WorkOrder, work_order_id)
        if work_order is None:
            raise NotFoundError("WorkOrder", str(work_order_id))
        return self._to_views([work_order])[0]

    def visible_to(self, actor: Actor, status: str | None = None) -> list[WorkOrderView]:
        query = select(WorkOrder)
        assigned = select(Assignment.work_order_id).where(Assignment.assignee_id == actor.id)

        if actor.role in _SEE_ALL:
            pass
        elif actor.role == Role.DESIGN_LEAD:
            query = query.where(or_(WorkOrder.design_lead_id == actor.id, WorkOrder.id.in_(assigned)))
        elif actor.role == Role.DESIGNER:
            query = query.where(WorkOrder.id.in_(assigned))
        elif actor.role == Role.SALES:
            query = query.where(WorkOrder.owner_id == actor.id)
        else:
            return []

        if status is not None:
            query = query.where(WorkOrder.status == status)
        work_orders = self.session.execute(query.order_by(WorkOrder.code)).scalars().all()
        return self._to_views(list(work_orders))
