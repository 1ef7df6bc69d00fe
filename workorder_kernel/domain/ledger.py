"""
Ledger math -- pure functions over hour totals.

No I/O and no ORM: the services load a ``LedgerTotals`` snapshot from a
locked work order row, ask these functions whether a mutation is legal, and
write the result back in the same transaction.

Numeric policy: hours are non-negative ``Decimal`` values; comparisons
against a ceiling allow ``epsilon`` (0.1h by default) of slack to absorb
rounding accumulated across repeated additive updates.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping
from uuid import UUID

from workorder_kernel.domain.workflow import AllocationStatus
from workorder_kernel.exceptions import ValidationFailedError

DEFAULT_EPSILON = Decimal("0.1")
ZERO = Decimal("0")


def to_hours(value: Any, field: str = "hours") -> Decimal:
    """Coerce a payload value to a finite Decimal number of hours."""
    if isinstance(value, bool) or value is None:
        raise ValidationFailedError(field, "must be a number")
    if isinstance(value, float):
        value = repr(value)
    try:
        hours = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationFailedError(field, f"not a number: {value!r}") from exc
    if not hours.is_finite():
        raise ValidationFailedError(field, "must be finite")
    return hours


def positive_hours(value: Any, field: str = "hours") -> Decimal:
    hours = to_hours(value, field)
    if hours <= ZERO:
        raise ValidationFailedError(field, "must be greater than zero")
    return hours


@dataclass(frozen=True)
class AllocationGrant:
    """One (assignee, hours, notes) line of an allocation call."""

    assignee_id: UUID
    hours: Decimal
    notes: str = ""

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> AllocationGrant:
        try:
            assignee = data["assignee_id"]
        except KeyError as exc:
            raise ValidationFailedError("assignee_id", "is required") from exc
        try:
            assignee_id = assignee if isinstance(assignee, UUID) else UUID(str(assignee))
        except ValueError as exc:
            raise ValidationFailedError("assignee_id", f"not a valid id: {assignee!r}") from exc
        return cls(
            assignee_id=assignee_id,
            hours=positive_hours(data.get("hours"), "hours"),
            notes=str(data.get("notes") or ""),
        )


@dataclass(frozen=True)
class LedgerTotals:
    """Snapshot of one work order's hour ledger."""

    ceiling: Decimal | None
    total_allocated: Decimal
    hours_consumed: Decimal
    extra_budget: Decimal = ZERO

    @property
    def consumption_limit(self) -> Decimal | None:
        """Hours that may be logged: the ceiling plus approved overage grants."""
        if self.ceiling is None:
            return None
        return self.ceiling + self.extra_budget

    @property
    def unallocated(self) -> Decimal | None:
        if self.ceiling is None:
            return None
        return self.ceiling - self.total_allocated


def reject_duplicate_assignees(grants: Iterable[AllocationGrant]) -> None:
    seen: set[UUID] = set()
    for grant in grants:
        if grant.assignee_id in seen:
            raise ValidationFailedError(
                "grants", f"assignee {grant.assignee_id} appears more than once"
            )
        seen.add(grant.assignee_id)


def allocation_status(
    ceiling: Decimal | None,
    total_allocated: Decimal,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> AllocationStatus:
    """Derive the allocation status; ``completed`` iff total >= ceiling - epsilon."""
    if ceiling is None or total_allocated <= ZERO:
        return AllocationStatus.NOT_STARTED
    if total_allocated >= ceiling - epsilon:
        return AllocationStatus.COMPLETED
    return AllocationStatus.PARTIAL


def allocation_overage(
    totals: LedgerTotals,
    additional: Decimal,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> Decimal:
    """Hours by which ``additional`` allocation would exceed the ceiling.

    Zero means the allocation fits. The ceiling must be set. A fully
    allocated ledger accepts nothing more: inside the epsilon band, where
    the total has not yet passed the ceiling, the whole request is the
    overage.
    """
    if totals.ceiling is None:
        raise ValueError("allocation_overage requires a ceiling")
    proposed = totals.total_allocated + additional
    if proposed > totals.ceiling + epsilon:
        return proposed - totals.ceiling
    if allocation_status(totals.ceiling, totals.total_allocated, epsilon) == AllocationStatus.COMPLETED:
        return proposed - totals.ceiling if proposed > totals.ceiling else additional
    return ZERO


def consumption_overage(
    totals: LedgerTotals,
    additional: Decimal,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> Decimal:
    """Hours by which logging ``additional`` would exceed the consumption limit.

    Work orders without a ceiling are not limited.
    """
    limit = totals.consumption_limit
    if limit is None:
        return ZERO
    proposed = totals.hours_consumed + additional
    if proposed > limit + epsilon:
        return proposed - limit
    return ZERO


def merge_grants(
    existing: Mapping[UUID, Decimal],
    grants: Iterable[AllocationGrant],
) -> dict[UUID, Decimal]:
    """Top up per-assignee totals; a repeat allocation adds, never replaces."""
    merged = dict(existing)
    for grant in grants:
        merged[grant.assignee_id] = merged.get(grant.assignee_id, ZERO) + grant.hours
    return merged
