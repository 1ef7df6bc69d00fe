"""
Module: workorder_kernel.models.work_order
Responsibility: ORM persistence for work orders, their designer-hour
    assignments and logged time entries.

Architecture position: Kernel > Models. May import from db/ and domain/.

Ledger columns on WorkOrder:
    allocation_ceiling      nullable until entered or derived from estimate
    total_allocated         sum of Assignment.hours, kept by LedgerService
    hours_consumed          recomputed sum of live TimeEntry.hours, never
                            incremented in place
    extra_budget_hours      sum of approved time-overage grants
    allocation_status       derived from ceiling and total_allocated

Concurrency:
    Every mutation loads the row FOR UPDATE. The version column makes a lost
    update fail with StaleDataError instead of silently overwriting.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from workorder_kernel.db.base import TrackedBase, UUIDString
from workorder_kernel.domain.ledger import ZERO, LedgerTotals
from workorder_kernel.domain.workflow import (
    AllocationStatus,
    CeilingSource,
    DesignStatus,
    WorkOrderStatus,
)


class WorkOrder(TrackedBase):
    """One unit of billable engineering work and its hours ledger."""

    __tablename__ = "work_orders"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_allocation', 'in_progress', 'completed')",
            name="ck_work_orders_valid_status",
        ),
        CheckConstraint(
            "allocation_status IN ('not_started', 'partial', 'completed')",
            name="ck_work_orders_valid_allocation_status",
        ),
        CheckConstraint("total_allocated >= 0", name="ck_work_orders_allocated_non_negative"),
        CheckConstraint("hours_consumed >= 0", name="ck_work_orders_consumed_non_negative"),
        Index("idx_work_order_status", "status"),
        Index("idx_work_order_design_lead", "design_lead_id"),
    )

    source_proposal_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    code: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    client_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=WorkOrderStatus.PENDING_ALLOCATION.value,
    )
    design_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=DesignStatus.NOT_STARTED.value,
    )
    design_lead_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    last_submission_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    allocation_ceiling: Mapped[Decimal | None] = mapped_column(nullable=True)
    allocation_ceiling_source: Mapped[str] = mapped_column(
        String(30), nullable=False, default=CeilingSource.AWAITING_ENTRY.value,
    )
    total_allocated: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    hours_consumed: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    extra_budget_hours: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    allocation_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AllocationStatus.NOT_STARTED.value,
    )

    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def status_enum(self) -> WorkOrderStatus:
        return WorkOrderStatus(self.status)

    @property
    def design_status_enum(self) -> DesignStatus:
        return DesignStatus(self.design_status)

    @property
    def allocation_status_enum(self) -> AllocationStatus:
        return AllocationStatus(self.allocation_status)

    def ledger_totals(self) -> LedgerTotals:
        return LedgerTotals(
            ceiling=self.allocation_ceiling,
            total_allocated=self.total_allocated or ZERO,
            hours_consumed=self.hours_consumed or ZERO,
            extra_budget=self.extra_budget_hours or ZERO,
        )

    def __repr__(self) -> str:
        return f"<WorkOrder {self.code} [{self.status}/{self.allocation_status}]>"


class Assignment(TrackedBase):
    """Hours granted to one assignee on one work order (merged additively)."""

    __tablename__ = "work_order_assignments"

    __table_args__ = (
        UniqueConstraint("work_order_id", "assignee_id", name="uq_assignment_per_assignee"),
        CheckConstraint("hours >= 0", name="ck_assignment_hours_non_negative"),
        Index("idx_assignment_assignee", "assignee_id"),
    )

    work_order_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    assignee_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    hours: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")


class TimeEntry(TrackedBase):
    """Hours logged against a work order. Soft-deleted, never removed."""

    __tablename__ = "time_entries"

    __table_args__ = (
        CheckConstraint("hours > 0", name="ck_time_entry_hours_positive"),
        Index("idx_time_entry_work_order", "work_order_id", "deleted_at"),
        Index("idx_time_entry_author", "author_id", "work_date"),
    )

    work_order_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    author_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    hours: Mapped[Decimal] = mapped_column(nullable=False)
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    source_request_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
