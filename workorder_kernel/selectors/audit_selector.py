"""
AuditSelector -- read-only view of audit trails.

``replay_ledger`` rebuilds a work order's hour ledger purely from the
``ledger`` blocks on its chain:

    ceiling              absolute value (first entry, manual entry, or set
                         by an approved request when none existed)
    ceiling_delta        added to the ceiling
    allocated_delta      added to total_allocated
    consumed_delta       added to hours_consumed
    extra_budget_delta   added to extra_budget

A ledger that disagrees with its replay has been written outside the
services, which ``verify_ledger`` reports.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from workorder_kernel.domain.ledger import ZERO, LedgerTotals
from workorder_kernel.domain.workflow import SubjectType
from workorder_kernel.exceptions import NotFoundError
from workorder_kernel.logging_config import get_logger
from workorder_kernel.models.audit_entry import AuditEntry
from workorder_kernel.models.work_order import WorkOrder
from workorder_kernel.selectors.base import BaseSelector

logger = get_logger("selectors.audit")


@dataclass(frozen=True)
class AuditTrailEntry:
    subject_seq: int
    action: str
    actor_id: UUID
    actor_role: str
    occurred_at: datetime
    detail: str
    payload: dict[str, Any]
    hash: str
    prev_hash: str | None


def _hours(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


class AuditSelector(BaseSelector[AuditEntry]):
    def _entries(self, subject_type: SubjectType | str, subject_id: UUID) -> list[AuditEntry]:
        subject_type = SubjectType(subject_type).value
        return list(
            self.session.execute(
                select(AuditEntry)
                .where(
                    AuditEntry.subject_type == subject_type,
                    AuditEntry.subject_id == subject_id,
                )
                .order_by(AuditEntry.subject_seq)
            ).scalars().all()
        )

    def trail(self, subject_type: SubjectType | str, subject_id: UUID) -> list[AuditTrailEntry]:
        return [
            AuditTrailEntry(
                subject_seq=e.subject_seq,
                action=e.action,
                actor_id=e.actor_id,
                actor_role=e.actor_role,
                occurred_at=e.occurred_at,
                detail=e.detail,
                payload=dict(e.payload or {}),
                hash=e.hash,
                prev_hash=e.prev_hash,
            )
            for e in self._entries(subject_type, subject_id)
        ]

    def replay_ledger(self, work_order_id: UUID) -> LedgerTotals:
        ceiling: Decimal | None = None
        allocated = consumed = extra = ZERO
        for entry in self._entries(SubjectType.WORK_ORDER, work_order_id):
            block = (entry.payload or {}).get("ledger")
            if not block:
                continue
            if "ceiling" in block:
                ceiling = _hours(block["ceiling"])
            if "ceiling_delta" in block:
                ceiling = (ceiling or ZERO) + _hours(block["ceiling_delta"])
            allocated += _hours(block.get("allocated_delta")) or ZERO
            consumed += _hours(block.get("consumed_delta")) or ZERO
            extra += _hours(block.get("extra_budget_delta")) or ZERO
        return LedgerTotals(
            ceiling=ceiling,
            total_allocated=allocated,
            hours_consumed=consumed,
            extra_budget=extra,
        )

    def verify_ledger(self, work_order_id: UUID) -> bool:
        """True when the stored ledger equals its replay from the audit trail."""
        work_order = self.session.get(WorkOrder, work_order_id)
        if work_order is None:
            raise NotFoundError("WorkOrder", str(work_order_id))
        stored = work_order.ledger_totals()
        replayed = self.replay_ledger(work_order_id)
        matches = (
            stored.ceiling == replayed.ceiling
            and stored.total_allocated == replayed.total_allocated
            and stored.hours_consumed == replayed.hours_consumed
            and stored.extra_budget == replayed.extra_budget
        )
        if not matches:
            logger.error(
                "ledger_replay_mismatch",
                extra={
                    "work_order_id": str(work_order_id),
                    "stored": stored.__dict__,
                    "replayed": replayed.__dict__,
                },
            )
        return matches
