"""
LedgerService: ceiling, allocation and consumption.

The first class walks the allocation scenario end to end: allocate to the
ceiling, get refused with the exact overage, raise the ceiling through an
approved allocation-change request, allocate the remainder.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from workorder_kernel.domain.workflow import (
    AllocationStatus,
    CeilingSource,
    RequestType,
    ReviewDecision,
    WorkOrderStatus,
)
from workorder_kernel.exceptions import (
    BudgetExceededError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from workorder_kernel.models.audit_entry import AuditEntry
from workorder_kernel.models.work_order import Assignment, TimeEntry
from workorder_kernel.services.ledger_service import LedgerService
from workorder_kernel.services.request_service import RequestService


def _grant(actor, hours, notes=""):
    return {"assignee_id": actor.id, "hours": hours, "notes": notes}


def _audit_count(session, work_order_id):
    return session.execute(
        select(func.count()).select_from(AuditEntry).where(AuditEntry.subject_id == work_order_id)
    ).scalar_one()


@pytest.fixture
def ledger(session, clock):
    return LedgerService(session, clock)


class TestAllocationScenario:
    def test_allocate_to_ceiling_then_raise_it(self, session, clock, staff, ledger, make_work_order):
        work_order = make_work_order(estimated_hours="100")
        assert work_order.allocation_ceiling == Decimal("100")
        assert work_order.allocation_ceiling_source == CeilingSource.DERIVED_FROM_ESTIMATE.value

        result = ledger.allocate(work_order.id, [_grant(staff.designer_a, "60")], staff.ops)
        assert result.applied_state == AllocationStatus.PARTIAL.value
        assert work_order.total_allocated == Decimal("60")

        result = ledger.allocate(work_order.id, [_grant(staff.designer_b, "40")], staff.ops)
        assert work_order.total_allocated == Decimal("100")
        assert result.applied_state == AllocationStatus.COMPLETED.value

        with pytest.raises(BudgetExceededError) as exc_info:
            ledger.allocate(work_order.id, [_grant(staff.designer_c, "1")], staff.ops)
        assert exc_info.value.overage == Decimal("1")

        requests = RequestService(session, clock, ledger=ledger)
        filed = requests.file_request(
            staff.ops, work_order.id, RequestType.ALLOCATION_CHANGE, "10", "Client added a mezzanine"
        )
        requests.review(filed.subject_id, staff.director, ReviewDecision.APPROVE, adjusted_hours="10")
        assert work_order.allocation_ceiling == Decimal("110")
        assert work_order.allocation_status == AllocationStatus.PARTIAL.value

        result = ledger.allocate(work_order.id, [_grant(staff.designer_c, "10")], staff.ops)
        assert work_order.total_allocated == Decimal("110")
        assert result.applied_state == AllocationStatus.COMPLETED.value


class TestAllocate:
    def test_rejected_allocation_has_no_side_effects(self, session, staff, ledger, make_work_order):
        work_order = make_work_order(estimated_hours="50")
        ledger.allocate(work_order.id, [_grant(staff.designer_a, "30")], staff.ops)
        audits_before = _audit_count(session, work_order.id)

        with pytest.raises(BudgetExceededError) as exc_info:
            ledger.allocate(
                work_order.id,
                [_grant(staff.designer_a, "10"), _grant(staff.designer_b, "15")],
                staff.ops,
            )
        assert exc_info.value.overage == Decimal("5")
        assert work_order.total_allocated == Decimal("30")
        assert _audit_count(session, work_order.id) == audits_before
        assert len(ledger.assignments(work_order.id)) == 1

    def test_repeat_allocation_tops_up(self, staff, ledger, make_work_order):
        work_order = make_work_order()
        ledger.allocate(work_order.id, [_grant(staff.designer_a, "20")], staff.ops)
        ledger.allocate(work_order.id, [_grant(staff.designer_a, "15", "phase 2")], staff.ops)

        rows = ledger.assignments(work_order.id)
        assert rows[staff.designer_a.id].hours == Decimal("35")
        assert rows[staff.designer_a.id].notes == "phase 2"
        assert work_order.total_allocated == Decimal("35")

    def test_first_allocation_starts_work(self, staff, ledger, make_work_order):
        work_order = make_work_order()
        assert work_order.status == WorkOrderStatus.PENDING_ALLOCATION.value
        ledger.allocate(work_order.id, [_grant(staff.designer_a, "20")], staff.ops)
        assert work_order.status == WorkOrderStatus.IN_PROGRESS.value

    def test_result_notifies_each_assignee(self, staff, ledger, make_work_order):
        work_order = make_work_order()
        result = ledger.allocate(
            work_order.id, [_grant(staff.designer_a, "20"), _grant(staff.designer_b, "5")], staff.ops
        )
        assert [n.recipient_ids for n in result.notifications] == [
            (staff.designer_a.id,),
            (staff.designer_b.id,),
        ]

    def test_designer_may_not_allocate(self, staff, ledger, make_work_order):
        work_order = make_work_order()
        with pytest.raises(PermissionDeniedError):
            ledger.allocate(work_order.id, [_grant(staff.designer_b, "5")], staff.designer_a)

    def test_only_own_design_lead_allocates(self, staff, ledger, make_work_order):
        work_order = make_work_order(design_lead=staff.design_lead)
        ledger.allocate(work_order.id, [_grant(staff.designer_a, "5")], staff.design_lead)
        with pytest.raises(PermissionDeniedError):
            ledger.allocate(work_order.id, [_grant(staff.designer_b, "5")], staff.other_lead)

    def test_assignee_must_hold_design_role(self, staff, ledger, make_work_order):
        work_order = make_work_order()
        with pytest.raises(ValidationFailedError) as exc_info:
            ledger.allocate(work_order.id, [_grant(staff.accounts, "5")], staff.ops)
        assert exc_info.value.field == "assignee_id"

    def test_duplicate_assignee_rejected(self, staff, ledger, make_work_order):
        work_order = make_work_order()
        with pytest.raises(ValidationFailedError):
            ledger.allocate(
                work_order.id, [_grant(staff.designer_a, "5"), _grant(staff.designer_a, "5")], staff.ops
            )

    def test_empty_grants_rejected(self, staff, ledger, make_work_order):
        work_order = make_work_order()
        with pytest.raises(ValidationFailedError):
            ledger.allocate(work_order.id, [], staff.ops)

    def test_needs_a_ceiling(self, staff, ledger, make_work_order):
        work_order = make_work_order(estimated_hours=None)
        assert work_order.allocation_ceiling is None
        assert work_order.allocation_ceiling_source == CeilingSource.AWAITING_ENTRY.value
        with pytest.raises(InvalidStateTransitionError):
            ledger.allocate(work_order.id, [_grant(staff.designer_a, "5")], staff.ops)

    def test_allocation_logged(self, staff, ledger, make_work_order, captured_logs):
        work_order = make_work_order()
        ledger.allocate(work_order.id, [_grant(staff.designer_a, "20")], staff.ops)
        applied = [r for r in captured_logs() if r["message"] == "allocation_applied"]
        assert applied[0]["work_order_id"] == str(work_order.id)
        assert applied[0]["allocation_status"] == "partial"


class TestSetCeiling:
    def test_manual_entry(self, staff, ledger, make_work_order):
        work_order = make_work_order(estimated_hours=None)
        ledger.set_ceiling(work_order.id, "80", staff.ops)
        assert work_order.allocation_ceiling == Decimal("80")
        assert work_order.allocation_ceiling_source == CeilingSource.MANUAL_ENTRY.value

    def test_locked_once_allocation_started(self, staff, ledger, make_work_order):
        work_order = make_work_order()
        ledger.allocate(work_order.id, [_grant(staff.designer_a, "20")], staff.ops)
        with pytest.raises(InvalidStateTransitionError):
            ledger.set_ceiling(work_order.id, "500", staff.ops)

    def test_sales_may_not_set(self, staff, ledger, make_work_order):
        work_order = make_work_order(estimated_hours=None)
        with pytest.raises(PermissionDeniedError):
            ledger.set_ceiling(work_order.id, "80", staff.sales)

    def test_must_be_positive(self, staff, ledger, make_work_order):
        work_order = make_work_order(estimated_hours=None)
        with pytest.raises(ValidationFailedError):
            ledger.set_ceiling(work_order.id, "0", staff.ops)


class TestConsumption:
    @pytest.fixture
    def started(self, staff, ledger, make_work_order):
        work_order = make_work_order(estimated_hours="100")
        ledger.allocate(
            work_order.id, [_grant(staff.designer_a, "60"), _grant(staff.designer_b, "40")], staff.ops
        )
        return work_order

    def test_record_derives_total_from_entries(self, session, staff, ledger, started):
        ledger.record_consumption(started.id, "30", staff.designer_a, work_date="2024-03-01")
        result = ledger.record_consumption(started.id, "12.5", staff.designer_b)

        assert started.hours_consumed == Decimal("42.5")
        assert result.data["hours_consumed"] == Decimal("42.5")
        entry = session.get(TimeEntry, result.data["time_entry_id"])
        assert entry.work_date == date(2024, 3, 4)

    def test_unassigned_designer_refused(self, staff, ledger, started):
        with pytest.raises(PermissionDeniedError):
            ledger.record_consumption(started.id, "1", staff.designer_c)

    def test_consumption_past_ceiling_refused(self, staff, ledger, started):
        ledger.record_consumption(started.id, "95", staff.designer_a)
        with pytest.raises(BudgetExceededError) as exc_info:
            ledger.record_consumption(started.id, "6", staff.designer_b)
        assert exc_info.value.kind == "consumption"
        assert exc_info.value.overage == Decimal("1")
        assert started.hours_consumed == Decimal("95")

    def test_not_before_work_starts(self, staff, ledger, make_work_order):
        work_order = make_work_order()
        with pytest.raises(InvalidStateTransitionError):
            ledger.record_consumption(work_order.id, "1", staff.designer_a)

    def test_update_entry_rechecks_increase(self, staff, ledger, started):
        entry_id = ledger.record_consumption(started.id, "90", staff.designer_a).data["time_entry_id"]
        ledger.update_time_entry(entry_id, staff.designer_a, hours="95")
        assert started.hours_consumed == Decimal("95")

        with pytest.raises(BudgetExceededError):
            ledger.update_time_entry(entry_id, staff.designer_a, hours="120")

        ledger.update_time_entry(entry_id, staff.designer_a, hours="10")
        assert started.hours_consumed == Decimal("10")

    def test_update_by_other_user_refused(self, staff, ledger, started):
        entry_id = ledger.record_consumption(started.id, "5", staff.designer_a).data["time_entry_id"]
        with pytest.raises(PermissionDeniedError):
            ledger.update_time_entry(entry_id, staff.designer_b, hours="6")

    def test_update_without_changes_refused(self, staff, ledger, started):
        entry_id = ledger.record_consumption(started.id, "5", staff.designer_a).data["time_entry_id"]
        with pytest.raises(ValidationFailedError):
            ledger.update_time_entry(entry_id, staff.designer_a)

    def test_delete_is_soft_and_lowers_total(self, session, staff, ledger, started):
        keep = ledger.record_consumption(started.id, "5", staff.designer_a).data["time_entry_id"]
        drop = ledger.record_consumption(started.id, "7", staff.designer_b).data["time_entry_id"]

        result = ledger.delete_time_entry(drop, staff.ops)
        assert result.ledger_delta == Decimal("-7")
        assert started.hours_consumed == Decimal("5")
        assert session.get(TimeEntry, drop).is_deleted
        assert not session.get(TimeEntry, keep).is_deleted

        with pytest.raises(InvalidStateTransitionError):
            ledger.delete_time_entry(drop, staff.ops)

    def test_delete_by_other_designer_refused(self, staff, ledger, started):
        entry_id = ledger.record_consumption(started.id, "5", staff.designer_a).data["time_entry_id"]
        with pytest.raises(PermissionDeniedError):
            ledger.delete_time_entry(entry_id, staff.designer_b)

    def test_no_ceiling_means_no_limit(self, session, staff, ledger, make_work_order):
        work_order = make_work_order(estimated_hours=None)
        session.add(Assignment(work_order_id=work_order.id, assignee_id=staff.designer_a.id,
                               hours=Decimal("0"), created_by_id=staff.ops.id))
        work_order.status = WorkOrderStatus.IN_PROGRESS.value
        session.flush()

        ledger.record_consumption(work_order.id, "900", staff.designer_a)
        assert work_order.hours_consumed == Decimal("900")
