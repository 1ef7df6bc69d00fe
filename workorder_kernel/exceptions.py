"""
Typed exception hierarchy for the work order kernel.

Every error a transition can raise has its own class, a machine-readable
``code`` attribute and structured data, so callers catch by type and API
layers report by code instead of parsing messages:

    try:
        engine.attempt(actor, subject, WorkOrderAction.ALLOCATE, payload)
    except BudgetExceededError as e:
        offer_overage_request(hours=e.overage)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    WorkOrderKernelError (base)
    |
    +-- AuthorizationError
    |   +-- UnauthenticatedError
    |   +-- PermissionDeniedError
    |
    +-- TransitionError
    |   +-- InvalidStateTransitionError
    |   +-- AlreadyProcessedError
    |
    +-- LedgerError
    |   +-- BudgetExceededError
    |
    +-- NotFoundError
    +-- ValidationFailedError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                      | When Raised
--------------------------|----------------------------------------------------
UNAUTHENTICATED           | Credential rejected by the identity provider
PERMISSION_DENIED         | Actor role not permitted for this action / stage
INVALID_STATE_TRANSITION  | Subject is not in a state that accepts the action
ALREADY_PROCESSED         | Request already left pending / info_requested
BUDGET_EXCEEDED           | Allocation or consumption would break the ceiling
NOT_FOUND                 | Subject id unknown
VALIDATION_FAILED         | Missing or invalid payload field
AUDIT_CHAIN_BROKEN        | Stored audit hash does not match recomputation
OPTIMISTIC_LOCK_CONFLICT  | Row was changed by a concurrent transaction
IMMUTABILITY_VIOLATION    | Update or delete of an append-only record

All of these abort the whole transition. Nothing is partially applied.
"""

from decimal import Decimal


class WorkOrderKernelError(Exception):
    """Base exception for all work order kernel errors."""

    code: str = "WORK_ORDER_KERNEL_ERROR"


# Authorization-related exceptions


class AuthorizationError(WorkOrderKernelError):
    """Base exception for identity and permission errors."""

    code: str = "AUTHORIZATION_ERROR"


class UnauthenticatedError(AuthorizationError):
    """The supplied credential could not be resolved to an identity."""

    code: str = "UNAUTHENTICATED"

    def __init__(self, reason: str = "Credential not recognised"):
        self.reason = reason
        super().__init__(f"Unauthenticated: {reason}")


class PermissionDeniedError(AuthorizationError):
    """Actor's role is not allowed to perform this action."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, action: str, role: str, reason: str | None = None):
        self.action = action
        self.role = role
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Role '{role}' may not perform '{action}'{detail}"
        )


# Transition-related exceptions


class TransitionError(WorkOrderKernelError):
    """Base exception for state machine errors."""

    code: str = "TRANSITION_ERROR"


class InvalidStateTransitionError(TransitionError):
    """Subject's current state does not accept the requested action."""

    code: str = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        subject_type: str,
        subject_id: str,
        current_state: str,
        action: str,
        reason: str | None = None,
    ):
        self.subject_type = subject_type
        self.subject_id = subject_id
        self.current_state = current_state
        self.action = action
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"{subject_type} {subject_id} in state '{current_state}' "
            f"does not accept '{action}'{detail}"
        )


class AlreadyProcessedError(TransitionError):
    """Request has already been reviewed to a terminal status."""

    code: str = "ALREADY_PROCESSED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Request {request_id} has already been processed (status: {status})"
        )


# Ledger-related exceptions


class LedgerError(WorkOrderKernelError):
    """Base exception for hours ledger errors."""

    code: str = "LEDGER_ERROR"


class BudgetExceededError(LedgerError):
    """Ledger invariant would be violated.

    ``overage`` is the exact number of hours above the limit, so the caller
    can offer an overage request for that amount without recomputing it.
    """

    code: str = "BUDGET_EXCEEDED"

    def __init__(
        self,
        work_order_id: str,
        limit: Decimal,
        requested_total: Decimal,
        overage: Decimal,
        kind: str = "allocation",
    ):
        self.work_order_id = work_order_id
        self.limit = limit
        self.requested_total = requested_total
        self.overage = overage
        self.kind = kind
        super().__init__(
            f"Work order {work_order_id} {kind} of {requested_total}h exceeds "
            f"limit {limit}h by {overage}h"
        )


# Lookup and validation exceptions


class NotFoundError(WorkOrderKernelError):
    """Subject id is unknown."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class ValidationFailedError(WorkOrderKernelError):
    """A payload field is missing or invalid."""

    code: str = "VALIDATION_FAILED"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid '{field}': {reason}")


# Audit-related exceptions


class AuditError(WorkOrderKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_entry_id: str, expected_hash: str, actual_hash: str):
        self.audit_entry_id = audit_entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at entry {audit_entry_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# Concurrency-related exceptions


class ConcurrencyError(WorkOrderKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, attempts: int = 1):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            f"entity was modified by another transaction ({attempts} attempts)"
        )


# Immutability-related exceptions


class ImmutabilityError(WorkOrderKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Audit entries are immutable from creation. Requests and leave requests
    become immutable once they reach a terminal status.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
