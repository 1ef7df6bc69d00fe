"""
workorder_services.transition_engine -- single entry point for state changes.

Responsibility:
    Runs one command (actor, subject, action, payload) as one unit of work:
    opens a session, wires the kernel services to it, dispatches to the
    handler for the action, commits, then hands the result's notification
    intents to the dispatcher.

Architecture position:
    Services -- the only place where a transaction boundary is drawn and
    the only place kernel services are constructed for a command.

Ordering inside a handler (enforced by the kernel services):
    1. Role gate           PermissionDeniedError
    2. Subject state gate  InvalidStateTransitionError
    3. Ledger rule         BudgetExceededError
    4. Mutation + audit entry, flushed in the same session

Concurrency:
    Subject rows are locked FOR UPDATE (BEGIN IMMEDIATE on SQLite). A lost
    update detected through a version column (StaleDataError) or a lock
    conflict reported by the database aborts the unit; it is re-run from
    scratch up to ``max_conflict_retries`` times, then surfaces as
    OptimisticLockError. Every other error rolls back and propagates
    unchanged.

Usage:
    engine = TransitionEngine(get_session_factory(), dispatcher=dispatcher)
    result = engine.attempt(
        actor,
        SubjectRef(SubjectType.WORK_ORDER, work_order_id),
        WorkOrderAction.ALLOCATE,
        {"grants": [{"assignee_id": designer_id, "hours": "50"}]},
    )
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping
from uuid import UUID, uuid4

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from workorder_config.schema import EngineConfig
from workorder_kernel.db.engine import session_scope
from workorder_kernel.domain.clock import Clock, SystemClock
from workorder_kernel.domain.dtos import StagedTimeEntry, SubjectRef, TransitionResult
from workorder_kernel.domain.ledger import DEFAULT_EPSILON, positive_hours
from workorder_kernel.domain.permissions import DEFAULT_PERMISSIONS, PermissionTable
from workorder_kernel.domain.roles import Actor
from workorder_kernel.domain.workflow import (
    CeilingSource,
    LeaveAction,
    ProposalAction,
    RequestAction,
    SubjectType,
    WorkOrderAction,
)
from workorder_kernel.exceptions import (
    NotFoundError,
    OptimisticLockError,
    UnauthenticatedError,
    ValidationFailedError,
    WorkOrderKernelError,
)
from workorder_kernel.logging_config import LogContext, get_logger
from workorder_kernel.models.work_order import TimeEntry
from workorder_kernel.services.auditor_service import AuditorService
from workorder_kernel.services.ledger_service import LedgerService
from workorder_kernel.services.leave_service import LeaveService
from workorder_kernel.services.proposal_service import ProposalService
from workorder_kernel.services.request_service import RequestService
from workorder_kernel.services.work_order_service import WorkOrderService
from workorder_services.identity import IdentityProvider
from workorder_services.notification_dispatcher import (
    InAppNotificationSink,
    NotificationDispatcher,
)

logger = get_logger("services.transition_engine")

_LOCK_CONFLICT_MARKERS = ("locked", "deadlock", "could not serialize", "lock timeout")

_ACTIONS: dict[str, Enum] = {
    member.value: member
    for enum_cls in (ProposalAction, WorkOrderAction, RequestAction, LeaveAction)
    for member in enum_cls
}


class KernelServices:
    """Every kernel service for one session, each constructed once and sharing clock and auditor."""

    def __init__(
        self,
        session: Session,
        clock: Clock,
        permissions: PermissionTable,
        epsilon: Decimal,
        code_prefix: str,
    ):
        self.session = session
        self.auditor = AuditorService(session, clock)
        self.ledger = LedgerService(session, clock, permissions, epsilon, auditor=self.auditor)
        self.requests = RequestService(
            session, clock, permissions, epsilon, auditor=self.auditor, ledger=self.ledger
        )
        self.leave = LeaveService(session, clock, permissions, auditor=self.auditor)
        self.proposals = ProposalService(
            session, clock, permissions, auditor=self.auditor, code_prefix=code_prefix
        )
        self.work_orders = WorkOrderService(
            session, clock, permissions, auditor=self.auditor, ledger=self.ledger
        )


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _required(payload: Mapping[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationFailedError(key, "is required")
    return value


def _uuid(value: Any, field: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValidationFailedError(field, f"not a valid id: {value!r}") from exc


def _optional_uuid(payload: Mapping[str, Any], key: str) -> UUID | None:
    value = payload.get(key)
    return None if value is None else _uuid(value, key)


def _staged_entry(data: Mapping[str, Any] | None) -> StagedTimeEntry | None:
    if not data:
        return None
    work_date = data.get("work_date")
    if work_date is None:
        raise ValidationFailedError("staged_entry.work_date", "is required")
    if not isinstance(work_date, date):
        try:
            work_date = date.fromisoformat(str(work_date))
        except ValueError as exc:
            raise ValidationFailedError("staged_entry.work_date", f"not an ISO date: {work_date!r}") from exc
    return StagedTimeEntry(
        hours=positive_hours(data.get("hours"), "staged_entry.hours"),
        work_date=work_date,
        description=str(data.get("description") or ""),
    )


def _entry_on(services: KernelServices, work_order_id: UUID, payload: Mapping[str, Any]) -> UUID:
    entry_id = _uuid(_required(payload, "time_entry_id"), "time_entry_id")
    entry = services.session.get(TimeEntry, entry_id)
    if entry is None:
        raise NotFoundError("TimeEntry", str(entry_id))
    if entry.work_order_id != work_order_id:
        raise ValidationFailedError("time_entry_id", "entry belongs to another work order")
    return entry_id


# ---------------------------------------------------------------------------
# Handlers: (services, actor, subject_id, payload) -> TransitionResult
# ---------------------------------------------------------------------------

Handler = Callable[[KernelServices, Actor, "UUID | None", Mapping[str, Any]], TransitionResult]


def _create_proposal(s, actor, _subject_id, p):
    return s.proposals.create(
        actor,
        name=p.get("name"),
        client_name=p.get("client_name"),
        description=p.get("description", ""),
    )


def _advance_proposal(action: ProposalAction) -> Handler:
    def handler(s, actor, subject_id, p):
        return s.proposals.advance(subject_id, actor, action, p)

    return handler


def _set_ceiling(s, actor, subject_id, p):
    return s.ledger.set_ceiling(
        subject_id,
        _required(p, "ceiling"),
        actor,
        source=p.get("source", CeilingSource.MANUAL_ENTRY),
    )


def _allocate(s, actor, subject_id, p):
    return s.ledger.allocate(subject_id, p.get("grants") or [], actor)


def _record_time(s, actor, subject_id, p):
    return s.ledger.record_consumption(
        subject_id,
        p.get("hours"),
        actor,
        work_date=p.get("work_date"),
        description=p.get("description", ""),
    )


def _update_time_entry(s, actor, subject_id, p):
    return s.ledger.update_time_entry(
        _entry_on(s, subject_id, p),
        actor,
        hours=p.get("hours"),
        work_date=p.get("work_date"),
        description=p.get("description"),
    )


def _delete_time_entry(s, actor, subject_id, p):
    return s.ledger.delete_time_entry(_entry_on(s, subject_id, p), actor)


def _assign_design_lead(s, actor, subject_id, p):
    return s.work_orders.assign_design_lead(
        subject_id, actor, _uuid(_required(p, "design_lead_id"), "design_lead_id")
    )


def _update_design_status(s, actor, subject_id, p):
    return s.work_orders.update_design_status(subject_id, actor, _required(p, "design_status"))


def _mark_completed(s, actor, subject_id, _p):
    return s.work_orders.mark_completed(subject_id, actor)


def _file_request(s, actor, subject_id, p):
    return s.requests.file_request(
        actor,
        subject_id,
        _required(p, "request_type"),
        p.get("hours"),
        p.get("justification"),
        change_kind=p.get("change_kind"),
        target_assignee_id=_optional_uuid(p, "target_assignee_id"),
        variation_code=p.get("variation_code"),
        attachment_ref=p.get("attachment_ref"),
        staged_entry=_staged_entry(p.get("staged_entry")),
    )


def _review_request(s, actor, subject_id, p):
    return s.requests.review(
        subject_id,
        actor,
        _required(p, "decision"),
        comment=p.get("comment"),
        adjusted_hours=p.get("adjusted_hours"),
    )


def _resubmit_request(s, actor, subject_id, p):
    return s.requests.resubmit(
        subject_id, actor, justification=p.get("justification"), hours=p.get("hours")
    )


def _delete_request(s, actor, subject_id, _p):
    return s.requests.delete_request(subject_id, actor)


def _file_leave(s, actor, _subject_id, p):
    return s.leave.file_leave(
        actor,
        _required(p, "leave_type"),
        _required(p, "start_date"),
        _required(p, "end_date"),
        p.get("reason"),
        emergency_contact=p.get("emergency_contact"),
    )


def _review_leave(s, actor, subject_id, p):
    return s.leave.review(
        subject_id,
        actor,
        _required(p, "stage"),
        _required(p, "decision"),
        comment=p.get("comment"),
        hr_category=p.get("hr_category"),
    )


def _delete_leave(s, actor, subject_id, _p):
    return s.leave.delete_leave(subject_id, actor)


# action -> (subject type it acts on, or None for creation; handler)
HANDLERS: Mapping[Enum, tuple[SubjectType | None, Handler]] = {
    ProposalAction.CREATE: (None, _create_proposal),
    **{
        action: (SubjectType.PROPOSAL, _advance_proposal(action))
        for action in ProposalAction
        if action != ProposalAction.CREATE
    },
    WorkOrderAction.SET_CEILING: (SubjectType.WORK_ORDER, _set_ceiling),
    WorkOrderAction.ALLOCATE: (SubjectType.WORK_ORDER, _allocate),
    WorkOrderAction.RECORD_TIME: (SubjectType.WORK_ORDER, _record_time),
    WorkOrderAction.UPDATE_TIME_ENTRY: (SubjectType.WORK_ORDER, _update_time_entry),
    WorkOrderAction.DELETE_TIME_ENTRY: (SubjectType.WORK_ORDER, _delete_time_entry),
    WorkOrderAction.ASSIGN_DESIGN_LEAD: (SubjectType.WORK_ORDER, _assign_design_lead),
    WorkOrderAction.UPDATE_DESIGN_STATUS: (SubjectType.WORK_ORDER, _update_design_status),
    WorkOrderAction.MARK_COMPLETED: (SubjectType.WORK_ORDER, _mark_completed),
    WorkOrderAction.FILE_REQUEST: (SubjectType.WORK_ORDER, _file_request),
    RequestAction.REVIEW: (SubjectType.REQUEST, _review_request),
    RequestAction.RESUBMIT: (SubjectType.REQUEST, _resubmit_request),
    RequestAction.DELETE: (SubjectType.REQUEST, _delete_request),
    LeaveAction.FILE: (None, _file_leave),
    LeaveAction.REVIEW: (SubjectType.LEAVE_REQUEST, _review_leave),
    LeaveAction.DELETE: (SubjectType.LEAVE_REQUEST, _delete_leave),
}


def _is_lock_conflict(exc: OperationalError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _LOCK_CONFLICT_MARKERS)


class TransitionEngine:
    """
    Validates and commits state transitions.

    Contract:
        ``attempt`` either commits exactly one transition (subject change,
        ledger change and audit entry together) and returns its result, or
        raises a WorkOrderKernelError and leaves the database untouched.

    Non-goals:
        - Does NOT retry rule failures; only lock conflicts are re-run.
        - Does NOT let notification failures reach the caller.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        dispatcher: NotificationDispatcher | None = None,
        permissions: PermissionTable | None = None,
        epsilon: Decimal = DEFAULT_EPSILON,
        max_conflict_retries: int = 3,
        code_prefix: str = "PRJ",
        identity: IdentityProvider | None = None,
    ):
        if max_conflict_retries < 1:
            raise ValueError("max_conflict_retries must be at least 1")
        self._session_factory = session_factory
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.permissions = permissions or DEFAULT_PERMISSIONS
        self.epsilon = epsilon
        self.max_conflict_retries = max_conflict_retries
        self.code_prefix = code_prefix
        self.identity = identity

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        identity: IdentityProvider | None = None,
        sinks=None,
    ) -> TransitionEngine:
        """Build an engine from loaded configuration; the in-app sink is added when enabled."""
        sinks = list(sinks or ())
        if config.notifications.in_app:
            sinks.insert(0, InAppNotificationSink(session_factory))
        dispatcher = NotificationDispatcher(
            sinks,
            email_recipients=dict(config.notifications.email_recipients),
        )
        return cls(
            session_factory,
            clock=clock,
            dispatcher=dispatcher,
            epsilon=config.ledger.epsilon,
            max_conflict_retries=config.max_conflict_retries,
            code_prefix=config.ledger.code_prefix,
            identity=identity,
        )

    def services(self, session: Session) -> KernelServices:
        return KernelServices(session, self.clock, self.permissions, self.epsilon, self.code_prefix)

    def attempt(
        self,
        actor: Actor,
        subject: SubjectRef | None,
        action: Enum | str,
        payload: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """
        Run one transition.

        Raises:
            PermissionDeniedError, InvalidStateTransitionError,
            BudgetExceededError, AlreadyProcessedError, NotFoundError,
            ValidationFailedError: rule failures, nothing committed.
            OptimisticLockError: conflicts persisted through every retry.
        """
        action = self._resolve_action(action)
        subject_type, handler = HANDLERS[action]
        subject_id = self._check_subject(subject_type, subject, action)
        payload = dict(payload or {})

        with LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=str(actor.id),
            actor_role=actor.role.value,
            subject_type=subject_type.value if subject_type else None,
            subject_id=str(subject_id) if subject_id else None,
            action=action.value,
        ):
            result = self._run(actor, subject_type, subject_id, action, handler, payload)
            logger.info(
                "transition_committed",
                extra={
                    "subject": str(result.subject),
                    "applied_state": result.applied_state,
                    "ledger_delta": result.ledger_delta,
                    "notifications": len(result.notifications),
                },
            )
            if result.notifications:
                self.dispatcher.dispatch(result.notifications)
        return result

    def attempt_with_credential(
        self,
        credential: str,
        subject: SubjectRef | None,
        action: Enum | str,
        payload: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """Authenticate through the identity provider, then ``attempt``."""
        if self.identity is None:
            raise UnauthenticatedError("No identity provider configured")
        actor = self.identity.authenticate(credential)
        return self.attempt(actor, subject, action, payload)

    # ------------------------------------------------------------------

    def _run(self, actor, subject_type, subject_id, action, handler, payload) -> TransitionResult:
        last_conflict: Exception | None = None
        for attempt_no in range(1, self.max_conflict_retries + 1):
            try:
                with session_scope(self._session_factory) as session:
                    return handler(self.services(session), actor, subject_id, payload)
            except StaleDataError as exc:
                last_conflict = exc
            except OperationalError as exc:
                if not _is_lock_conflict(exc):
                    raise
                last_conflict = exc
            except WorkOrderKernelError as exc:
                logger.info(
                    "transition_rejected",
                    extra={"error_code": exc.code, "error": str(exc)},
                )
                raise
            logger.warning(
                "transition_conflict",
                extra={
                    "attempt": attempt_no,
                    "max_attempts": self.max_conflict_retries,
                    "error": type(last_conflict).__name__,
                },
            )
        raise OptimisticLockError(
            subject_type.value if subject_type else action.value,
            str(subject_id) if subject_id else "",
            attempts=self.max_conflict_retries,
        ) from last_conflict

    @staticmethod
    def _resolve_action(action: Enum | str) -> Enum:
        if isinstance(action, Enum) and action in HANDLERS:
            return action
        value = action.value if isinstance(action, Enum) else str(action)
        try:
            return _ACTIONS[value]
        except KeyError:
            raise ValidationFailedError("action", f"unknown action: {value!r}") from None

    @staticmethod
    def _check_subject(
        subject_type: SubjectType | None,
        subject: SubjectRef | None,
        action: Enum,
    ) -> UUID | None:
        if subject_type is None:
            if subject is not None:
                raise ValidationFailedError("subject", f"{action.value} creates its subject; pass None")
            return None
        if subject is None:
            raise ValidationFailedError("subject", f"{action.value} needs a {subject_type.value}")
        if subject.subject_type != subject_type:
            raise ValidationFailedError(
                "subject",
                f"{action.value} acts on a {subject_type.value}, not a {subject.subject_type.value}",
            )
        return subject.subject_id
