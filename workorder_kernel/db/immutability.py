"""
ORM-level immutability enforcement.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database. The listeners registered here reject changes to records that
must never change once written:

Entity          | When Immutable                         | Operations blocked
----------------|----------------------------------------|-------------------
AuditEntry      | Always (from creation)                 | UPDATE, DELETE
ResourceRequest | Once status is approved or rejected    | UPDATE, DELETE
LeaveRequest    | Once status is approved or rejected    | UPDATE, DELETE

"Once terminal" is judged from the value loaded from the database, not the
pending value, so the transition that makes a request terminal is allowed
and every later change is blocked. Only ``updated_at``/``updated_by_id``
may still move on a terminal request.

Register once at startup (``create_tables`` does it):

    from workorder_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()
"""

from sqlalchemy import event, inspect

from workorder_kernel.exceptions import ImmutabilityViolationError
from workorder_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})
_TERMINAL_STATUSES = frozenset({"approved", "rejected"})


def _block(entity_type: str, target, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_audit_entry_update(mapper, connection, target):
    _block("AuditEntry", target, "UPDATE", "Audit entries are immutable")


def _check_audit_entry_delete(mapper, connection, target):
    _block("AuditEntry", target, "DELETE", "Audit entries cannot be deleted")


def _loaded_status(target) -> str | None:
    """Status as loaded from the database, ignoring the pending change."""
    history = inspect(target).attrs.status.history
    if history.deleted:
        loaded = history.deleted[0]
    elif history.unchanged:
        loaded = history.unchanged[0]
    else:
        return None
    return loaded.value if hasattr(loaded, "value") else loaded


def _changed_fields(target) -> set[str]:
    state = inspect(target)
    return {
        attr.key
        for attr in state.attrs
        if attr.history.has_changes()
    }


def _check_request_update(mapper, connection, target):
    if _loaded_status(target) not in _TERMINAL_STATUSES:
        return
    changed = _changed_fields(target) - _AUDIT_METADATA_FIELDS
    if changed:
        _block(
            type(target).__name__,
            target,
            "UPDATE",
            f"Reviewed requests are immutable (attempted to change {sorted(changed)})",
        )


def _check_request_delete(mapper, connection, target):
    if _loaded_status(target) in _TERMINAL_STATUSES:
        _block(
            type(target).__name__,
            target,
            "DELETE",
            "Reviewed requests cannot be deleted",
        )


def _listeners():
    from workorder_kernel.models.audit_entry import AuditEntry
    from workorder_kernel.models.leave import LeaveRequest
    from workorder_kernel.models.request import ResourceRequest

    return (
        (AuditEntry, "before_update", _check_audit_entry_update),
        (AuditEntry, "before_delete", _check_audit_entry_delete),
        (ResourceRequest, "before_update", _check_request_update),
        (ResourceRequest, "before_delete", _check_request_delete),
        (LeaveRequest, "before_update", _check_request_update),
        (LeaveRequest, "before_delete", _check_request_delete),
    )


def register_immutability_listeners() -> None:
    """Register all immutability listeners (idempotent)."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """
    Remove the listeners.

    WARNING: Only use this in tests that deliberately tamper with records
    to prove detection works.
    """
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
