"""
Module: workorder_kernel.models.leave
Responsibility: ORM persistence for three-stage leave requests.

Stages are reviewed strictly in order: reporting officer (1), HR (2),
director (3). ``current_stage`` holds the stage awaiting review, 0 once
any stage rejects and 4 once the director approves. Each stage keeps its
own status, reviewer, comment and timestamp columns.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from workorder_kernel.db.base import TrackedBase, UUIDString
from workorder_kernel.domain.roles import Role
from workorder_kernel.domain.workflow import (
    LeaveStage,
    LeaveStatus,
    LeaveType,
    StageStatus,
)

_STAGE_PREFIX = {
    LeaveStage.REPORTING_OFFICER: "stage1",
    LeaveStage.HR: "stage2",
    LeaveStage.DIRECTOR: "stage3",
}


class LeaveRequest(TrackedBase):
    __tablename__ = "leave_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_leave_requests_valid_status",
        ),
        CheckConstraint(
            "current_stage BETWEEN 0 AND 4",
            name="ck_leave_requests_valid_stage",
        ),
        CheckConstraint("end_date >= start_date", name="ck_leave_requests_date_order"),
        Index("idx_leave_requester", "requester_id", "status"),
        Index("idx_leave_stage", "status", "current_stage"),
    )

    requester_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requester_role: Mapped[str] = mapped_column(String(30), nullable=False)
    requester_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    leave_type: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    number_of_days: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    emergency_contact: Mapped[str | None] = mapped_column(String(200), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LeaveStatus.PENDING.value,
    )
    current_stage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=int(LeaveStage.REPORTING_OFFICER),
    )

    stage1_role: Mapped[str] = mapped_column(String(30), nullable=False)
    stage1_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StageStatus.PENDING.value,
    )
    stage1_reviewer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    stage1_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage1_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    stage2_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StageStatus.PENDING.value,
    )
    stage2_reviewer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    stage2_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage2_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    hr_category: Mapped[str | None] = mapped_column(String(50), nullable=True)

    stage3_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StageStatus.PENDING.value,
    )
    stage3_reviewer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    stage3_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage3_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def status_enum(self) -> LeaveStatus:
        return LeaveStatus(self.status)

    @property
    def stage_enum(self) -> LeaveStage:
        return LeaveStage(self.current_stage)

    @property
    def leave_type_enum(self) -> LeaveType:
        return LeaveType(self.leave_type)

    @property
    def stage1_role_enum(self) -> Role:
        return Role(self.stage1_role)

    def stage_status(self, stage: LeaveStage) -> StageStatus:
        return StageStatus(getattr(self, f"{_STAGE_PREFIX[stage]}_status"))

    def record_stage_review(
        self,
        stage: LeaveStage,
        status: StageStatus,
        reviewer_id: UUID,
        comment: str | None,
        reviewed_at: datetime,
    ) -> None:
        prefix = _STAGE_PREFIX[stage]
        setattr(self, f"{prefix}_status", status.value)
        setattr(self, f"{prefix}_reviewer_id", reviewer_id)
        setattr(self, f"{prefix}_comment", comment)
        setattr(self, f"{prefix}_reviewed_at", reviewed_at)

    def __repr__(self) -> str:
        return f"<LeaveRequest {self.leave_type} {self.start_date}..{self.end_date} [{self.status}@{self.current_stage}]>"
