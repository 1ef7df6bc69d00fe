"""
Module: workorder_kernel.models.audit_entry
Responsibility: ORM persistence for the append-only audit trail.

Each subject (proposal, work order, request, leave request) has its own
hash chain ordered by ``subject_seq``:

    hash = H(subject_type | subject_id | action | payload_hash | prev_hash)

where ``payload_hash`` covers the payload together with the actor and the
detail string. Chains are per subject, so writers only contend with other
transitions on the same subject, which already hold that subject's row
lock. Entries are never updated or deleted (db/immutability.py).

Ledger-affecting entries on a work order carry a ``ledger`` block in the
payload with the deltas applied; replaying those blocks reproduces the
stored ledger totals.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from workorder_kernel.db.base import Base, UUIDString


class AuditEntry(Base):
    __tablename__ = "audit_entries"

    __table_args__ = (
        UniqueConstraint(
            "subject_type", "subject_id", "subject_seq", name="uq_audit_subject_seq",
        ),
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    subject_type: Mapped[str] = mapped_column(String(30), nullable=False)
    subject_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    subject_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(30), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None

    def __repr__(self) -> str:
        return f"<AuditEntry {self.subject_type}:{self.subject_id}#{self.subject_seq} {self.action}>"
