"""
Module: workorder_kernel.models.request
Responsibility: ORM persistence for resource requests filed against a work
    order: time-overage, allocation-change and variation requests.

Architecture position: Kernel > Models. May import from db/ and domain/.

Lifecycle (REQUEST_TRANSITIONS):
    pending -> approved | rejected | info_requested
    info_requested -> pending (requester resubmits) | approved | rejected

Once approved or rejected a row is immutable (db/immutability.py); a
pending row may be deleted by its requester. ``approved_hours`` is the
reviewer-adjusted grant that was applied to the ledger.
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
from workorder_kernel.domain.dtos import StagedTimeEntry
from workorder_kernel.domain.roles import Role
from workorder_kernel.domain.workflow import (
    AllocationChangeKind,
    RequestStatus,
    RequestType,
)


class ResourceRequest(TrackedBase):
    """A pending-action record asking a senior role to change a ledger."""

    __tablename__ = "resource_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'info_requested', 'approved', 'rejected')",
            name="ck_resource_requests_valid_status",
        ),
        CheckConstraint(
            "request_type IN ('time_overage', 'allocation_change', 'variation')",
            name="ck_resource_requests_valid_type",
        ),
        CheckConstraint("requested_hours > 0", name="ck_resource_requests_positive_hours"),
        UniqueConstraint(
            "work_order_id", "variation_code", name="uq_resource_requests_variation_code",
        ),
        Index("idx_resource_request_work_order", "work_order_id", "status"),
        Index("idx_resource_request_requester", "requester_id", "status"),
        Index("idx_resource_request_type_status", "request_type", "status"),
    )

    work_order_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    request_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RequestStatus.PENDING.value,
    )
    requester_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requester_role: Mapped[str] = mapped_column(String(30), nullable=False)
    requested_hours: Mapped[Decimal] = mapped_column(nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False)

    # Allocation change
    change_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    target_assignee_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Variation
    variation_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Time overage
    attachment_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    staged_hours: Mapped[Decimal | None] = mapped_column(nullable=True)
    staged_work_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    staged_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_entry_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Review
    reviewer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reviewer_role: Mapped[str | None] = mapped_column(String(30), nullable=True)
    review_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_hours: Mapped[Decimal | None] = mapped_column(nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def status_enum(self) -> RequestStatus:
        return RequestStatus(self.status)

    @property
    def type_enum(self) -> RequestType:
        return RequestType(self.request_type)

    @property
    def requester_role_enum(self) -> Role:
        return Role(self.requester_role)

    @property
    def change_kind_enum(self) -> AllocationChangeKind | None:
        return AllocationChangeKind(self.change_kind) if self.change_kind else None

    @property
    def staged_entry(self) -> StagedTimeEntry | None:
        if self.staged_hours is None or self.staged_work_date is None:
            return None
        return StagedTimeEntry(
            hours=self.staged_hours,
            work_date=self.staged_work_date,
            description=self.staged_description or "",
        )

    def __repr__(self) -> str:
        return f"<ResourceRequest {self.request_type} {self.requested_hours}h [{self.status}]>"
