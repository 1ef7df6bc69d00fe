"""
ProposalService -- the proposal state machine and conversion to a work order.

Responsibility:
    Moves a proposal along PROPOSAL_TRANSITIONS. Each action belongs to
    exactly one role (see DEFAULT_PERMISSIONS) and one prior state; the
    director's rejection records which role must act next, and that role's
    action is the only way out of ``revision_required``.

    ``mark_won`` creates exactly one WorkOrder in the same transaction and
    stores the back-reference on the proposal. A repeated ``mark_won`` on
    a converted proposal returns the existing work order id and writes
    nothing.

Architecture position:
    Kernel > Services. Flush-only; the caller commits.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from workorder_kernel.domain.dtos import NotificationIntent, SubjectRef, TransitionResult
from workorder_kernel.domain.ledger import ZERO, allocation_status, positive_hours, to_hours
from workorder_kernel.domain.roles import Actor, Role
from workorder_kernel.domain.workflow import (
    PROPOSAL_TRANSITIONS,
    REVISION_ROLES,
    CeilingSource,
    ProposalAction,
    ProposalStatus,
    SubjectType,
)
from workorder_kernel.exceptions import (
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from workorder_kernel.logging_config import get_logger
from workorder_kernel.models.proposal import Proposal
from workorder_kernel.models.work_order import WorkOrder
from workorder_kernel.services.auditor_service import AuditorService
from workorder_kernel.services.base import BaseService
from workorder_kernel.services.ledger_service import work_order_ref
from workorder_kernel.services.sequence_service import SequenceService

logger = get_logger("services.proposal")

CREATE_WORK_ORDER = "create_work_order"

_OWNER_ACTIONS = frozenset({
    ProposalAction.SUBMIT_TO_CLIENT,
    ProposalAction.MARK_WON,
    ProposalAction.MARK_LOST,
})


def proposal_ref(proposal_id: UUID) -> SubjectRef:
    return SubjectRef(SubjectType.PROPOSAL, proposal_id)


def _text(payload: Mapping[str, Any], key: str, required: bool = False) -> str | None:
    value = str(payload.get(key) or "").strip()
    if required and not value:
        raise ValidationFailedError(key, "is required")
    return value or None


def _amount(payload: Mapping[str, Any], key: str, required: bool = False) -> Decimal | None:
    value = payload.get(key)
    if value is None or value == "":
        if required:
            raise ValidationFailedError(key, "is required")
        return None
    amount = to_hours(value, key)
    if amount < ZERO:
        raise ValidationFailedError(key, "must not be negative")
    return amount


class ProposalService(BaseService):
    def __init__(
        self,
        session,
        clock=None,
        permissions=None,
        auditor: AuditorService | None = None,
        code_prefix: str = "PRJ",
    ):
        super().__init__(session, clock, permissions)
        self.auditor = auditor or AuditorService(session, self.clock)
        self.sequences = SequenceService(session)
        self.code_prefix = code_prefix

    def create(
        self,
        actor: Actor,
        name: str,
        client_name: str,
        description: str = "",
    ) -> TransitionResult:
        self.permissions.require(actor.role, ProposalAction.CREATE)
        payload = {"name": name, "client_name": client_name}
        proposal = Proposal(
            name=_text(payload, "name", required=True),
            client_name=_text(payload, "client_name", required=True),
            description=description or "",
            owner_id=actor.id,
            status=ProposalStatus.PENDING_ESTIMATION.value,
            created_by_id=actor.id,
        )
        self.session.add(proposal)
        self.session.flush()

        self.auditor.record(
            proposal_ref(proposal.id),
            ProposalAction.CREATE,
            actor,
            detail=f"Proposal '{proposal.name}' for {proposal.client_name} created by {actor.label}",
            payload={"name": proposal.name, "client_name": proposal.client_name},
        )
        logger.info("proposal_created", extra={"proposal_id": str(proposal.id)})
        return TransitionResult(
            subject=proposal_ref(proposal.id),
            action=ProposalAction.CREATE.value,
            applied_state=proposal.status,
            data={"proposal_id": proposal.id},
            notifications=(
                NotificationIntent(
                    event="proposal_created",
                    message=f"New proposal '{proposal.name}' needs estimation",
                    recipient_roles=(Role.ESTIMATOR,),
                    subject=proposal_ref(proposal.id),
                    context={"proposal": proposal.name, "client": proposal.client_name},
                ),
            ),
        )

    def advance(
        self,
        proposal_id: UUID,
        actor: Actor,
        action: ProposalAction | str,
        payload: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """
        Apply one forward action (or the director's rejection).

        Raises:
            PermissionDeniedError: Wrong role, or a sales action by someone
                other than the owner.
            InvalidStateTransitionError: Current state does not accept the
                action.
            ValidationFailedError: Missing or invalid payload fields.
        """
        try:
            action = ProposalAction(action)
        except ValueError as exc:
            raise ValidationFailedError("action", f"unknown proposal action: {action!r}") from exc
        if action == ProposalAction.CREATE:
            raise ValidationFailedError("action", "use create() for new proposals")
        payload = payload or {}

        self.permissions.require(actor.role, action)
        proposal = self._lock(Proposal, proposal_id)
        if action in _OWNER_ACTIONS and proposal.owner_id != actor.id:
            raise PermissionDeniedError(
                action=action.value,
                role=actor.role.value,
                reason="only the owning sales user may do this",
            )

        if action == ProposalAction.MARK_WON and proposal.work_order_id is not None:
            logger.info(
                "proposal_already_converted",
                extra={"proposal_id": str(proposal.id), "work_order_id": str(proposal.work_order_id)},
            )
            return TransitionResult(
                subject=proposal_ref(proposal.id),
                action=action.value,
                applied_state=proposal.status,
                data={"work_order_id": proposal.work_order_id, "created": False},
            )

        transition = PROPOSAL_TRANSITIONS[action]
        if not transition.accepts(proposal.status_enum, proposal.revision_role_enum):
            raise InvalidStateTransitionError(
                SubjectType.PROPOSAL.value,
                str(proposal.id),
                proposal.status,
                action.value,
                reason=(
                    f"revision is assigned to {proposal.revision_role}"
                    if proposal.status_enum == ProposalStatus.REVISION_REQUIRED
                    else None
                ),
            )

        handler = {
            ProposalAction.ADD_ESTIMATION: self._add_estimation,
            ProposalAction.SET_PRICING: self._set_pricing,
            ProposalAction.DIRECTOR_APPROVE: self._director_approve,
            ProposalAction.DIRECTOR_REJECT: self._director_reject,
            ProposalAction.SUBMIT_TO_CLIENT: self._submit_to_client,
            ProposalAction.MARK_WON: self._mark_won,
            ProposalAction.MARK_LOST: self._mark_lost,
        }[action]
        previous = proposal.status
        detail, audit_payload, data, notifications = handler(proposal, actor, payload)

        proposal.status = transition.to_state.value
        self._touch(proposal, actor)
        self.session.flush()

        self.auditor.record(
            proposal_ref(proposal.id),
            action,
            actor,
            detail=detail,
            payload={"from": previous, "to": proposal.status, **audit_payload},
        )
        logger.info(
            "proposal_advanced",
            extra={
                "proposal_id": str(proposal.id),
                "proposal_action": action.value,
                "from_status": previous,
                "to_status": proposal.status,
            },
        )
        return TransitionResult(
            subject=proposal_ref(proposal.id),
            action=action.value,
            applied_state=proposal.status,
            data=data,
            notifications=notifications,
        )

    # ------------------------------------------------------------------
    # Action handlers: (detail, audit payload, result data, notifications)
    # ------------------------------------------------------------------

    def _notify(self, proposal: Proposal, event: str, message: str, roles=(), ids=()):
        return NotificationIntent(
            event=event,
            message=message,
            recipient_roles=tuple(roles),
            recipient_ids=tuple(ids),
            subject=proposal_ref(proposal.id),
            context={"proposal": proposal.name, "client": proposal.client_name},
        )

    def _clear_revision(self, proposal: Proposal) -> None:
        proposal.revision_role = None
        proposal.revision_comment = None

    def _add_estimation(self, proposal: Proposal, actor: Actor, payload: Mapping[str, Any]):
        hours = _amount(payload, "estimated_hours")
        tonnage = _amount(payload, "tonnage")
        if not hours and not tonnage:
            raise ValidationFailedError("estimated_hours", "provide estimated hours or tonnage")
        services = payload.get("services") or []
        breakdown = payload.get("hour_breakdown") or {}
        if not isinstance(services, (list, tuple)):
            raise ValidationFailedError("services", "must be a list")
        if not isinstance(breakdown, Mapping):
            raise ValidationFailedError("hour_breakdown", "must be a mapping")

        proposal.estimated_hours = hours or None
        proposal.tonnage = tonnage or None
        proposal.services = [str(s) for s in services]
        proposal.hour_breakdown = {str(k): str(to_hours(v, f"hour_breakdown.{k}")) for k, v in breakdown.items()}
        proposal.estimator_id = actor.id
        self._clear_revision(proposal)

        parts = [f"{hours} manhours" if hours else None, f"{tonnage} tons" if tonnage else None]
        detail = "Estimation added: " + ", ".join(p for p in parts if p)
        return (
            detail,
            {"estimated_hours": hours, "tonnage": tonnage, "services": proposal.services},
            {"estimated_hours": hours},
            (self._notify(proposal, "estimation_complete",
                          f"Estimation ready for '{proposal.name}', pricing needed",
                          roles=(Role.OPERATIONS_LEAD,)),),
        )

    def _set_pricing(self, proposal: Proposal, actor: Actor, payload: Mapping[str, Any]):
        project_number = _text(payload, "project_number", required=True)
        quote_value = _amount(payload, "quote_value", required=True)
        if quote_value <= ZERO:
            raise ValidationFailedError("quote_value", "must be greater than zero")
        currency = (_text(payload, "currency") or "USD").upper()
        if len(currency) != 3:
            raise ValidationFailedError("currency", f"not an ISO currency code: {currency!r}")

        proposal.project_number = project_number
        proposal.quote_value = quote_value
        proposal.currency = currency
        proposal.hourly_rate = _amount(payload, "hourly_rate")
        proposal.profit_margin = _amount(payload, "profit_margin")
        self._clear_revision(proposal)

        return (
            f"Pricing added: {currency} {quote_value} (Project #: {project_number})",
            {"project_number": project_number, "quote_value": quote_value, "currency": currency},
            {"quote_value": quote_value, "currency": currency},
            (self._notify(proposal, "pricing_complete",
                          f"'{proposal.name}' priced at {currency} {quote_value}, awaiting approval",
                          roles=(Role.DIRECTOR,)),),
        )

    def _director_approve(self, proposal: Proposal, actor: Actor, payload: Mapping[str, Any]):
        comment = _text(payload, "comment")
        proposal.approved_at = self.clock.now()
        return (
            f"Approved by {actor.label}" + (f": {comment}" if comment else ""),
            {"comment": comment},
            {},
            (self._notify(proposal, "proposal_approved",
                          f"'{proposal.name}' approved, ready to submit to client",
                          ids=(proposal.owner_id,)),),
        )

    def _director_reject(self, proposal: Proposal, actor: Actor, payload: Mapping[str, Any]):
        comment = _text(payload, "comment", required=True)
        try:
            role = Role(payload.get("revision_role"))
        except ValueError as exc:
            raise ValidationFailedError(
                "revision_role", f"must be one of {sorted(r.value for r in REVISION_ROLES)}"
            ) from exc
        if role not in REVISION_ROLES:
            raise ValidationFailedError(
                "revision_role", f"must be one of {sorted(r.value for r in REVISION_ROLES)}"
            )
        proposal.revision_role = role.value
        proposal.revision_comment = comment
        return (
            f"Revision requested from {role.value} by {actor.label}: {comment}",
            {"revision_role": role.value, "comment": comment},
            {"revision_role": role.value},
            (self._notify(proposal, "proposal_revision_required",
                          f"'{proposal.name}' needs revision: {comment}",
                          roles=(role,), ids=(proposal.owner_id,)),),
        )

    def _submit_to_client(self, proposal: Proposal, actor: Actor, payload: Mapping[str, Any]):
        proposal.submitted_at = self.clock.now()
        return (
            f"Submitted to {proposal.client_name} by {actor.label}",
            {},
            {},
            (),
        )

    def _mark_lost(self, proposal: Proposal, actor: Actor, payload: Mapping[str, Any]):
        reason = _text(payload, "reason", required=True)
        proposal.lost_reason = reason
        return (
            f"Marked lost: {reason}",
            {"reason": reason},
            {},
            (self._notify(proposal, "proposal_lost", f"'{proposal.name}' was lost: {reason}",
                          roles=(Role.DIRECTOR,)),),
        )

    def _mark_won(self, proposal: Proposal, actor: Actor, payload: Mapping[str, Any]):
        code = f"{self.code_prefix}-{self.sequences.next_value(SequenceService.WORK_ORDER_CODE):04d}"
        ceiling = positive_hours(proposal.estimated_hours, "estimated_hours") if proposal.estimated_hours else None
        source = CeilingSource.DERIVED_FROM_ESTIMATE if ceiling is not None else CeilingSource.AWAITING_ENTRY

        work_order = WorkOrder(
            source_proposal_id=proposal.id,
            code=code,
            name=proposal.name,
            client_name=proposal.client_name,
            owner_id=proposal.owner_id,
            allocation_ceiling=ceiling,
            allocation_ceiling_source=source.value,
            total_allocated=ZERO,
            hours_consumed=ZERO,
            extra_budget_hours=ZERO,
            allocation_status=allocation_status(ceiling, ZERO).value,
            created_by_id=actor.id,
        )
        self.session.add(work_order)
        self.session.flush()
        proposal.work_order_id = work_order.id

        self.auditor.record(
            work_order_ref(work_order.id),
            CREATE_WORK_ORDER,
            actor,
            detail=f"Work order {code} created from won proposal '{proposal.name}'",
            payload={
                "source_proposal_id": proposal.id,
                "code": code,
                "ceiling_source": source.value,
                "ledger": {"ceiling": ceiling},
            },
        )
        logger.info(
            "work_order_created",
            extra={
                "work_order_id": str(work_order.id),
                "code": code,
                "proposal_id": str(proposal.id),
                "ceiling": ceiling,
            },
        )
        message = (
            f"Project {code} '{proposal.name}' won; allocate {ceiling}h"
            if ceiling is not None
            else f"Project {code} '{proposal.name}' won; enter the allocation ceiling"
        )
        return (
            f"Won; work order {code} created",
            {"work_order_id": work_order.id, "code": code},
            {"work_order_id": work_order.id, "code": code, "created": True},
            (self._notify(proposal, "proposal_won", message,
                          roles=(Role.OPERATIONS_LEAD, Role.DIRECTOR)),),
        )
