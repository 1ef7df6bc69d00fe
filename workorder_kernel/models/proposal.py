"""
Module: workorder_kernel.models.proposal
Responsibility: ORM persistence for sales proposals.

Architecture position: Kernel > Models. May import from db/ and domain/.

The status column only ever moves along PROPOSAL_TRANSITIONS; that is
enforced by ProposalService. ``work_order_id`` is the back-reference set when
the proposal is won, and is unique so one proposal converts to at most one
work order. The proposal's change-log is its audit chain.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from workorder_kernel.db.base import TrackedBase, UUIDString
from workorder_kernel.domain.roles import Role
from workorder_kernel.domain.workflow import ProposalStatus


class Proposal(TrackedBase):
    """Precursor record that becomes a work order once won."""

    __tablename__ = "proposals"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_estimation', 'pending_pricing', "
            "'pending_director_approval', 'approved', 'revision_required', "
            "'submitted_to_client', 'won', 'lost')",
            name="ck_proposals_valid_status",
        ),
        Index("idx_proposal_owner_status", "owner_id", "status"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    client_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[str] = mapped_column(
        String(40), nullable=False, default=ProposalStatus.PENDING_ESTIMATION.value,
    )

    # Estimation
    estimated_hours: Mapped[Decimal | None] = mapped_column(nullable=True)
    tonnage: Mapped[Decimal | None] = mapped_column(nullable=True)
    services: Mapped[list | None] = mapped_column(JSON, nullable=True)
    hour_breakdown: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    estimator_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Pricing
    project_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    quote_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    hourly_rate: Mapped[Decimal | None] = mapped_column(nullable=True)
    profit_margin: Mapped[Decimal | None] = mapped_column(nullable=True)

    # Director review
    revision_role: Mapped[str | None] = mapped_column(String(30), nullable=True)
    revision_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Client outcome
    submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    lost_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    work_order_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True, unique=True,
    )

    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def status_enum(self) -> ProposalStatus:
        return ProposalStatus(self.status)

    @property
    def revision_role_enum(self) -> Role | None:
        return Role(self.revision_role) if self.revision_role else None

    def __repr__(self) -> str:
        return f"<Proposal {self.name} [{self.status}]>"
