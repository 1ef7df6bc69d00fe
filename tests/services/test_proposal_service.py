"""ProposalService: role-owned edges, director rejection and conversion."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from workorder_kernel.domain.roles import Role
from workorder_kernel.domain.workflow import (
    AllocationStatus,
    CeilingSource,
    ProposalAction,
    ProposalStatus,
    WorkOrderStatus,
)
from workorder_kernel.exceptions import (
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from workorder_kernel.models.proposal import Proposal
from workorder_kernel.models.work_order import WorkOrder
from workorder_kernel.services.proposal_service import ProposalService
from workorder_kernel.services.staff_service import StaffService

_PRICING = {"project_number": "Q-2024-007", "quote_value": "18000", "currency": "usd"}


@pytest.fixture
def proposals(session, clock):
    return ProposalService(session, clock)


def _to_director(proposals, staff, hours="120"):
    proposal_id = proposals.create(staff.sales, name="Cold store", client_name="Polar Foods").subject_id
    proposals.advance(proposal_id, staff.estimator, ProposalAction.ADD_ESTIMATION, {"estimated_hours": hours})
    proposals.advance(proposal_id, staff.ops, ProposalAction.SET_PRICING, _PRICING)
    return proposal_id


def _to_client(proposals, staff, hours="120"):
    proposal_id = _to_director(proposals, staff, hours)
    proposals.advance(proposal_id, staff.director, ProposalAction.DIRECTOR_APPROVE, {"comment": "Good margin"})
    proposals.advance(proposal_id, staff.sales, ProposalAction.SUBMIT_TO_CLIENT)
    return proposal_id


class TestHappyPath:
    def test_each_step(self, session, staff, proposals):
        created = proposals.create(staff.sales, name="Cold store", client_name="Polar Foods")
        assert created.applied_state == ProposalStatus.PENDING_ESTIMATION.value
        assert created.notifications[0].recipient_roles == (Role.ESTIMATOR,)
        proposal_id = created.subject_id

        step = proposals.advance(
            proposal_id,
            staff.estimator,
            ProposalAction.ADD_ESTIMATION,
            {"estimated_hours": "120", "services": ["detailing"], "hour_breakdown": {"modelling": "80"}},
        )
        assert step.applied_state == ProposalStatus.PENDING_PRICING.value

        step = proposals.advance(proposal_id, staff.ops, ProposalAction.SET_PRICING, _PRICING)
        assert step.applied_state == ProposalStatus.PENDING_DIRECTOR_APPROVAL.value
        assert step.data["currency"] == "USD"

        proposals.advance(proposal_id, staff.director, ProposalAction.DIRECTOR_APPROVE)
        proposals.advance(proposal_id, staff.sales, ProposalAction.SUBMIT_TO_CLIENT)
        won = proposals.advance(proposal_id, staff.sales, ProposalAction.MARK_WON)

        proposal = session.get(Proposal, proposal_id)
        work_order = session.get(WorkOrder, won.data["work_order_id"])
        assert proposal.status == ProposalStatus.WON.value
        assert proposal.work_order_id == work_order.id
        assert proposal.hour_breakdown == {"modelling": "80"}
        assert work_order.allocation_ceiling == Decimal("120")
        assert work_order.allocation_ceiling_source == CeilingSource.DERIVED_FROM_ESTIMATE.value
        assert work_order.status == WorkOrderStatus.PENDING_ALLOCATION.value
        assert work_order.allocation_status == AllocationStatus.NOT_STARTED.value
        assert work_order.code == "PRJ-0001"

    def test_tonnage_only_estimate_awaits_ceiling(self, session, staff, proposals):
        proposal_id = proposals.create(staff.sales, name="Bridge", client_name="City").subject_id
        proposals.advance(proposal_id, staff.estimator, ProposalAction.ADD_ESTIMATION, {"tonnage": "40"})
        proposals.advance(proposal_id, staff.ops, ProposalAction.SET_PRICING, _PRICING)
        proposals.advance(proposal_id, staff.director, ProposalAction.DIRECTOR_APPROVE)
        proposals.advance(proposal_id, staff.sales, ProposalAction.SUBMIT_TO_CLIENT)
        won = proposals.advance(proposal_id, staff.sales, ProposalAction.MARK_WON)

        work_order = session.get(WorkOrder, won.data["work_order_id"])
        assert work_order.allocation_ceiling is None
        assert work_order.allocation_ceiling_source == CeilingSource.AWAITING_ENTRY.value

    def test_codes_are_sequential(self, session, staff, proposals):
        first = proposals.advance(_to_client(proposals, staff), staff.sales, ProposalAction.MARK_WON)
        second = proposals.advance(_to_client(proposals, staff), staff.sales, ProposalAction.MARK_WON)
        assert session.get(WorkOrder, first.data["work_order_id"]).code == "PRJ-0001"
        assert session.get(WorkOrder, second.data["work_order_id"]).code == "PRJ-0002"

    def test_custom_code_prefix(self, session, clock, staff):
        proposals = ProposalService(session, clock, code_prefix="WO")
        won = proposals.advance(_to_client(proposals, staff), staff.sales, ProposalAction.MARK_WON)
        assert session.get(WorkOrder, won.data["work_order_id"]).code.startswith("WO-")

    def test_mark_lost_needs_reason(self, staff, proposals):
        proposal_id = _to_client(proposals, staff)
        with pytest.raises(ValidationFailedError):
            proposals.advance(proposal_id, staff.sales, ProposalAction.MARK_LOST, {})
        lost = proposals.advance(proposal_id, staff.sales, ProposalAction.MARK_LOST, {"reason": "Price"})
        assert lost.applied_state == ProposalStatus.LOST.value


class TestConversion:
    def test_mark_won_twice_returns_same_work_order(self, session, staff, proposals):
        proposal_id = _to_client(proposals, staff)
        first = proposals.advance(proposal_id, staff.sales, ProposalAction.MARK_WON)
        again = proposals.advance(proposal_id, staff.sales, ProposalAction.MARK_WON)

        assert first.data["created"] is True
        assert again.data["created"] is False
        assert again.data["work_order_id"] == first.data["work_order_id"]
        count = session.execute(
            select(func.count(WorkOrder.id)).where(WorkOrder.source_proposal_id == proposal_id)
        ).scalar_one()
        assert count == 1

    def test_lost_proposal_cannot_be_won(self, staff, proposals):
        proposal_id = _to_client(proposals, staff)
        proposals.advance(proposal_id, staff.sales, ProposalAction.MARK_LOST, {"reason": "Timing"})
        with pytest.raises(InvalidStateTransitionError):
            proposals.advance(proposal_id, staff.sales, ProposalAction.MARK_WON)


class TestDirectorRejection:
    def test_revision_returns_to_named_role(self, session, staff, proposals):
        proposal_id = _to_director(proposals, staff)
        rejected = proposals.advance(
            proposal_id,
            staff.director,
            ProposalAction.DIRECTOR_REJECT,
            {"comment": "Hours look light", "revision_role": "estimator"},
        )
        assert rejected.applied_state == ProposalStatus.REVISION_REQUIRED.value

        with pytest.raises(InvalidStateTransitionError):
            proposals.advance(proposal_id, staff.ops, ProposalAction.SET_PRICING, _PRICING)

        proposals.advance(proposal_id, staff.estimator, ProposalAction.ADD_ESTIMATION, {"estimated_hours": "150"})
        proposal = session.get(Proposal, proposal_id)
        assert proposal.status == ProposalStatus.PENDING_PRICING.value
        assert proposal.revision_role is None
        assert proposal.estimated_hours == Decimal("150")

    def test_pricing_revision(self, staff, proposals):
        proposal_id = _to_director(proposals, staff)
        proposals.advance(
            proposal_id,
            staff.director,
            ProposalAction.DIRECTOR_REJECT,
            {"comment": "Margin too thin", "revision_role": Role.OPERATIONS_LEAD.value},
        )
        with pytest.raises(InvalidStateTransitionError):
            proposals.advance(proposal_id, staff.estimator, ProposalAction.ADD_ESTIMATION, {"estimated_hours": "1"})
        step = proposals.advance(proposal_id, staff.ops, ProposalAction.SET_PRICING, _PRICING)
        assert step.applied_state == ProposalStatus.PENDING_DIRECTOR_APPROVAL.value

    @pytest.mark.parametrize(
        "payload",
        [
            {"revision_role": "estimator"},
            {"comment": "Redo", "revision_role": "sales"},
            {"comment": "Redo"},
        ],
    )
    def test_rejection_payload_validated(self, staff, proposals, payload):
        proposal_id = _to_director(proposals, staff)
        with pytest.raises(ValidationFailedError):
            proposals.advance(proposal_id, staff.director, ProposalAction.DIRECTOR_REJECT, payload)


class TestGates:
    @pytest.mark.parametrize(
        "role_key, action",
        [
            ("ops", ProposalAction.ADD_ESTIMATION),
            ("sales", ProposalAction.SET_PRICING),
            ("ops", ProposalAction.DIRECTOR_APPROVE),
        ],
    )
    def test_wrong_role(self, staff, proposals, role_key, action):
        proposal_id = proposals.create(staff.sales, name="Shed", client_name="Farm").subject_id
        with pytest.raises(PermissionDeniedError):
            proposals.advance(proposal_id, getattr(staff, role_key), action, {"estimated_hours": "5"})

    def test_only_sales_creates(self, staff, proposals):
        with pytest.raises(PermissionDeniedError):
            proposals.create(staff.ops, name="Shed", client_name="Farm")

    def test_only_owner_submits(self, session, staff, proposals):
        other_sales = StaffService(session).add_member(
            name="Sid Sales", email="sid@example.com", role=Role.SALES, created_by_id=staff.director.id
        ).as_actor()
        proposal_id = _to_director(proposals, staff)
        proposals.advance(proposal_id, staff.director, ProposalAction.DIRECTOR_APPROVE)
        with pytest.raises(PermissionDeniedError):
            proposals.advance(proposal_id, other_sales, ProposalAction.SUBMIT_TO_CLIENT)

    def test_out_of_order(self, staff, proposals):
        proposal_id = proposals.create(staff.sales, name="Shed", client_name="Farm").subject_id
        with pytest.raises(InvalidStateTransitionError):
            proposals.advance(proposal_id, staff.director, ProposalAction.DIRECTOR_APPROVE)

    def test_estimation_needs_hours_or_tonnage(self, staff, proposals):
        proposal_id = proposals.create(staff.sales, name="Shed", client_name="Farm").subject_id
        with pytest.raises(ValidationFailedError):
            proposals.advance(proposal_id, staff.estimator, ProposalAction.ADD_ESTIMATION, {})

    def test_name_required(self, staff, proposals):
        with pytest.raises(ValidationFailedError):
            proposals.create(staff.sales, name="", client_name="Farm")

    def test_create_through_advance_refused(self, staff, proposals):
        proposal_id = proposals.create(staff.sales, name="Shed", client_name="Farm").subject_id
        with pytest.raises(ValidationFailedError):
            proposals.advance(proposal_id, staff.sales, "create_proposal")
