"""
ORM immutability: audit entries always, requests once reviewed.

The transition that makes a request terminal is itself allowed; every
later change or delete through the mapper is refused.
"""

import pytest

from workorder_kernel.domain.workflow import (
    LeaveDecision,
    LeaveStage,
    LeaveType,
    RequestType,
    ReviewDecision,
    SubjectType,
)
from workorder_kernel.exceptions import ImmutabilityViolationError
from workorder_kernel.models.leave import LeaveRequest
from workorder_kernel.models.request import ResourceRequest
from workorder_kernel.services.auditor_service import AuditorService
from workorder_kernel.services.leave_service import LeaveService
from workorder_kernel.services.ledger_service import LedgerService
from workorder_kernel.services.request_service import RequestService


@pytest.fixture
def reviewed_request(session, clock, staff, make_work_order):
    work_order = make_work_order(design_lead=staff.design_lead)
    ledger = LedgerService(session, clock)
    ledger.allocate(work_order.id, [{"assignee_id": staff.designer_a.id, "hours": "100"}], staff.ops)
    requests = RequestService(session, clock, ledger=ledger)
    request_id = requests.file_request(
        staff.designer_a, work_order.id, RequestType.TIME_OVERAGE, "5", "Late change"
    ).subject_id
    requests.review(request_id, staff.ops, ReviewDecision.REJECT, comment="Absorb it")
    return session.get(ResourceRequest, request_id)


class TestAuditEntryImmutability:
    def test_update_refused(self, session, reviewed_request):
        entry = AuditorService(session).entries(SubjectType.REQUEST, reviewed_request.id)[0]
        entry.detail = "rewritten"
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "AuditEntry"

    def test_delete_refused(self, session, reviewed_request):
        entry = AuditorService(session).entries(SubjectType.REQUEST, reviewed_request.id)[0]
        session.delete(entry)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestReviewedRequestImmutability:
    def test_field_change_refused(self, session, reviewed_request):
        reviewed_request.approved_hours = 5
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_status_flip_refused(self, session, reviewed_request):
        reviewed_request.status = "approved"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_refused(self, session, reviewed_request):
        session.delete(reviewed_request)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_pending_request_still_editable(self, session, clock, staff, reviewed_request):
        requests = RequestService(session, clock)
        request_id = requests.file_request(
            staff.designer_a, reviewed_request.work_order_id, RequestType.TIME_OVERAGE, "3", "Another"
        ).subject_id
        pending = session.get(ResourceRequest, request_id)
        pending.justification = "Clarified"
        session.flush()


class TestDecidedLeaveImmutability:
    def test_rejected_leave_frozen(self, session, clock, staff):
        leave = LeaveService(session, clock)
        leave_id = leave.file_leave(
            staff.designer_b, LeaveType.CASUAL, "2024-05-02", "2024-05-02", "Appointment"
        ).subject_id
        leave.review(leave_id, staff.ops, LeaveStage.REPORTING_OFFICER, LeaveDecision.REJECT, comment="Deadline")

        request = session.get(LeaveRequest, leave_id)
        request.current_stage = int(LeaveStage.HR)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
