"""
TransitionEngine end to end.

Every state change goes through ``attempt``: one transaction per command,
rule failures roll everything back, lock conflicts are retried, and
notifications go out only after commit and can never fail the command.
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from workorder_config.schema import EngineConfig, NotificationConfig
from workorder_kernel.db.engine import session_scope
from workorder_kernel.domain.dtos import SubjectRef
from workorder_kernel.domain.workflow import (
    AllocationStatus,
    LeaveStatus,
    ProposalStatus,
    RequestStatus,
    SubjectType,
    WorkOrderAction,
    WorkOrderStatus,
)
from workorder_kernel.exceptions import (
    BudgetExceededError,
    OptimisticLockError,
    PermissionDeniedError,
    UnauthenticatedError,
    ValidationFailedError,
)
from workorder_kernel.models.audit_entry import AuditEntry
from workorder_kernel.models.leave import LeaveRequest
from workorder_kernel.models.notification import Notification
from workorder_kernel.models.proposal import Proposal
from workorder_kernel.models.request import ResourceRequest
from workorder_kernel.models.work_order import WorkOrder
from workorder_kernel.selectors.audit_selector import AuditSelector
from workorder_kernel.services.auditor_service import AuditorService
from workorder_services.identity import StaticTokenIdentityProvider
from workorder_services.notification_dispatcher import NotificationDispatcher
from workorder_services.transition_engine import HANDLERS, TransitionEngine


class RecordingSink:
    def __init__(self):
        self.events = []

    def notify(self, event, payload):
        self.events.append((event, payload))
        return True


class ExplodingSink:
    def notify(self, event, payload):
        raise ConnectionError("smtp relay down")


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(session_factory, clock, sink):
    return TransitionEngine(session_factory, clock=clock, dispatcher=NotificationDispatcher([sink]))


def _won_work_order(engine, staff, estimated_hours="100"):
    proposal = engine.attempt(
        staff.sales, None, "create_proposal", {"name": "Mezzanine", "client_name": "Acme"}
    ).subject
    engine.attempt(staff.estimator, proposal, "add_estimation", {"estimated_hours": estimated_hours})
    engine.attempt(staff.ops, proposal, "set_pricing", {"project_number": "Q-77", "quote_value": "9000"})
    engine.attempt(staff.director, proposal, "director_approve")
    engine.attempt(staff.sales, proposal, "submit_to_client")
    won = engine.attempt(staff.sales, proposal, "mark_won")
    return proposal, SubjectRef(SubjectType.WORK_ORDER, won.data["work_order_id"])


def _audit_count(session_factory, subject: SubjectRef) -> int:
    with session_scope(session_factory) as session:
        return session.execute(
            select(func.count(AuditEntry.id)).where(AuditEntry.subject_id == subject.subject_id)
        ).scalar_one()


class TestLifecycle:
    def test_proposal_to_completed_work_order(self, session_factory, staff, engine, sink):
        proposal, work_order = _won_work_order(engine, staff)
        engine.attempt(staff.ops, work_order, "assign_design_lead", {"design_lead_id": str(staff.design_lead.id)})
        engine.attempt(
            staff.design_lead,
            work_order,
            WorkOrderAction.ALLOCATE,
            {"grants": [{"assignee_id": str(staff.designer_a.id), "hours": "60"}]},
        )
        engine.attempt(staff.designer_a, work_order, "record_time", {"hours": "58", "work_date": "2024-03-04"})

        filed = engine.attempt(
            staff.designer_a,
            work_order,
            "file_request",
            {
                "request_type": "time_overage",
                "hours": "5",
                "justification": "Client markups",
                "staged_entry": {"hours": "4", "work_date": "2024-03-05", "description": "Markups"},
            },
        )
        review = engine.attempt(staff.director, filed.subject, "review", {"decision": "approve"})
        assert review.data["hours_consumed"] == Decimal("62")

        engine.attempt(staff.designer_a, work_order, "update_design_status", {"design_status": "submitted"})
        done = engine.attempt(staff.design_lead, work_order, "mark_completed")
        assert done.applied_state == WorkOrderStatus.COMPLETED.value

        with session_scope(session_factory) as session:
            assert session.get(Proposal, proposal.subject_id).status == ProposalStatus.WON.value
            stored = session.get(WorkOrder, work_order.subject_id)
            assert stored.allocation_status == AllocationStatus.PARTIAL.value
            assert stored.extra_budget_hours == Decimal("5")
            assert session.get(ResourceRequest, filed.subject.subject_id).status == RequestStatus.APPROVED.value
            assert AuditorService(session).validate_chain(SubjectType.WORK_ORDER, work_order.subject_id)
            assert AuditSelector(session).verify_ledger(work_order.subject_id)

        events = [event for event, _ in sink.events]
        assert events[0] == "proposal_created"
        assert "time_overage_requested" in events
        assert events[-1] == "project_completed"

    def test_leave_through_engine(self, session_factory, staff, engine):
        filed = engine.attempt(
            staff.designer_b,
            None,
            "file_leave",
            {"leave_type": "annual", "start_date": "2024-06-03", "end_date": "2024-06-07", "reason": "Holiday"},
        )
        engine.attempt(staff.ops, filed.subject, "review_leave", {"stage": 1, "decision": "approve"})
        engine.attempt(staff.hr, filed.subject, "review_leave", {"stage": 2, "decision": "approve"})
        engine.attempt(staff.director, filed.subject, "review_leave", {"stage": 3, "decision": "approve"})

        with session_scope(session_factory) as session:
            leave = session.get(LeaveRequest, filed.subject.subject_id)
            assert leave.status == LeaveStatus.APPROVED.value
            assert leave.number_of_days == 5


class TestAtomicity:
    def test_rejected_allocation_commits_nothing(self, session_factory, staff, engine, captured_logs):
        _, work_order = _won_work_order(engine, staff, estimated_hours="50")
        before = _audit_count(session_factory, work_order)

        with pytest.raises(BudgetExceededError):
            engine.attempt(
                staff.ops,
                work_order,
                "allocate",
                {"grants": [
                    {"assignee_id": str(staff.designer_a.id), "hours": "30"},
                    {"assignee_id": str(staff.designer_b.id), "hours": "30"},
                ]},
            )

        with session_scope(session_factory) as session:
            stored = session.get(WorkOrder, work_order.subject_id)
            assert stored.total_allocated == Decimal("0")
            assert stored.status == WorkOrderStatus.PENDING_ALLOCATION.value
        assert _audit_count(session_factory, work_order) == before
        rejected = [r for r in captured_logs() if r["message"] == "transition_rejected"]
        assert rejected[0]["error_code"] == "BUDGET_EXCEEDED"
        assert rejected[0]["actor_id"] == str(staff.ops.id)

    def test_failed_staged_entry_leaves_request_pending(self, session_factory, staff, engine):
        _, work_order = _won_work_order(engine, staff, estimated_hours="10")
        engine.attempt(
            staff.ops, work_order, "allocate",
            {"grants": [{"assignee_id": str(staff.designer_a.id), "hours": "10"}]},
        )
        engine.attempt(staff.designer_a, work_order, "record_time", {"hours": "10"})
        filed = engine.attempt(
            staff.designer_a, work_order, "file_request",
            {
                "request_type": "time_overage", "hours": "2", "justification": "Late RFI",
                "staged_entry": {"hours": "6", "work_date": "2024-03-04"},
            },
        )

        with pytest.raises(BudgetExceededError):
            engine.attempt(staff.ops, filed.subject, "review", {"decision": "approve"})

        with session_scope(session_factory) as session:
            assert session.get(ResourceRequest, filed.subject.subject_id).status == RequestStatus.PENDING.value
            assert session.get(WorkOrder, work_order.subject_id).extra_budget_hours == Decimal("0")


class TestCommandShape:
    def test_creation_takes_no_subject(self, staff, engine):
        with pytest.raises(ValidationFailedError):
            engine.attempt(
                staff.sales,
                SubjectRef(SubjectType.PROPOSAL, staff.sales.id),
                "create_proposal",
                {"name": "x", "client_name": "y"},
            )

    def test_subject_type_must_match(self, staff, engine):
        proposal, _ = _won_work_order(engine, staff)
        with pytest.raises(ValidationFailedError) as exc_info:
            engine.attempt(staff.ops, proposal, "allocate", {"grants": []})
        assert exc_info.value.field == "subject"

    def test_subject_required(self, staff, engine):
        with pytest.raises(ValidationFailedError):
            engine.attempt(staff.ops, None, "mark_completed")

    def test_unknown_action(self, staff, engine):
        with pytest.raises(ValidationFailedError):
            engine.attempt(staff.ops, None, "launch_rocket")

    def test_required_payload_field(self, staff, engine):
        _, work_order = _won_work_order(engine, staff)
        with pytest.raises(ValidationFailedError) as exc_info:
            engine.attempt(staff.ops, work_order, "assign_design_lead", {})
        assert exc_info.value.field == "design_lead_id"

    def test_time_entry_must_belong_to_subject(self, staff, engine):
        _, first = _won_work_order(engine, staff)
        _, second = _won_work_order(engine, staff)
        for work_order in (first, second):
            engine.attempt(
                staff.ops, work_order, "allocate",
                {"grants": [{"assignee_id": str(staff.designer_a.id), "hours": "10"}]},
            )
        entry_id = engine.attempt(staff.designer_a, first, "record_time", {"hours": "2"}).data["time_entry_id"]
        with pytest.raises(ValidationFailedError):
            engine.attempt(staff.designer_a, second, "delete_time_entry", {"time_entry_id": str(entry_id)})

    def test_every_action_has_a_handler(self):
        assert {action.value for action in HANDLERS} >= {
            "create_proposal", "add_estimation", "set_pricing", "director_approve", "director_reject",
            "submit_to_client", "mark_won", "mark_lost", "set_ceiling", "allocate", "record_time",
            "update_time_entry", "delete_time_entry", "assign_design_lead", "update_design_status",
            "mark_completed", "file_request", "review", "resubmit", "delete",
            "file_leave", "review_leave", "delete_leave",
        }


class TestNotifications:
    def test_sink_failure_does_not_undo_commit(self, session_factory, clock, staff, sink, captured_logs):
        engine = TransitionEngine(
            session_factory, clock=clock, dispatcher=NotificationDispatcher([ExplodingSink(), sink])
        )
        result = engine.attempt(staff.sales, None, "create_proposal", {"name": "Silo", "client_name": "Grain Co"})

        with session_scope(session_factory) as session:
            assert session.get(Proposal, result.subject.subject_id) is not None
        assert sink.events[0][0] == "proposal_created"
        failures = [r for r in captured_logs() if r["message"] == "notification_dispatch_failed"]
        assert failures[0]["sink"] == "ExplodingSink"

    def test_no_notification_for_rejected_command(self, staff, engine, sink):
        with pytest.raises(PermissionDeniedError):
            engine.attempt(staff.designer_a, None, "create_proposal", {"name": "x", "client_name": "y"})
        assert sink.events == []

    def test_in_app_rows_from_config(self, session_factory, clock, staff):
        config = EngineConfig(
            notifications=NotificationConfig(email_recipients=(("proposal_created", ("director",)),)),
        )
        sink = RecordingSink()
        engine = TransitionEngine.from_config(config, session_factory, clock=clock, sinks=[sink])
        engine.attempt(staff.sales, None, "create_proposal", {"name": "Silo", "client_name": "Grain Co"})

        with session_scope(session_factory) as session:
            rows = session.execute(select(Notification)).scalars().all()
            assert [(r.event, r.recipient_role) for r in rows] == [("proposal_created", "estimator")]
        assert sink.events[0][1]["email_roles"] == ["director"]


class TestConflictRetry:
    def _flaky(self, monkeypatch, failures, error):
        calls = []
        subject_type, real = HANDLERS[WorkOrderAction.SET_CEILING]

        def handler(services, actor, subject_id, payload):
            calls.append(subject_id)
            if len(calls) <= failures:
                raise error
            return real(services, actor, subject_id, payload)

        monkeypatch.setitem(HANDLERS, WorkOrderAction.SET_CEILING, (subject_type, handler))
        return calls

    def test_stale_data_retried_then_succeeds(self, monkeypatch, staff, engine, captured_logs):
        _, work_order = _won_work_order(engine, staff)
        calls = self._flaky(monkeypatch, 2, StaleDataError("row version changed"))

        result = engine.attempt(staff.ops, work_order, "set_ceiling", {"ceiling": "120"})
        assert len(calls) == 3
        assert result.data["ceiling"] == Decimal("120")
        assert sum(r["message"] == "transition_conflict" for r in captured_logs()) == 2

    def test_persistent_conflict_surfaces(self, monkeypatch, staff, engine):
        _, work_order = _won_work_order(engine, staff)
        calls = self._flaky(monkeypatch, 10, StaleDataError("row version changed"))

        with pytest.raises(OptimisticLockError) as exc_info:
            engine.attempt(staff.ops, work_order, "set_ceiling", {"ceiling": "120"})
        assert exc_info.value.attempts == 3
        assert len(calls) == 3

    def test_database_lock_retried(self, monkeypatch, staff, engine):
        _, work_order = _won_work_order(engine, staff)
        locked = OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))
        calls = self._flaky(monkeypatch, 1, locked)

        engine.attempt(staff.ops, work_order, "set_ceiling", {"ceiling": "120"})
        assert len(calls) == 2

    def test_other_database_errors_not_retried(self, monkeypatch, staff, engine):
        _, work_order = _won_work_order(engine, staff)
        broken = OperationalError("SELECT", {}, Exception("no such table: work_orders"))
        calls = self._flaky(monkeypatch, 1, broken)

        with pytest.raises(OperationalError):
            engine.attempt(staff.ops, work_order, "set_ceiling", {"ceiling": "120"})
        assert len(calls) == 1

    def test_retry_count_validated(self, session_factory):
        with pytest.raises(ValueError):
            TransitionEngine(session_factory, max_conflict_retries=0)


class TestCredentials:
    def test_token_resolves_actor(self, session_factory, clock, staff):
        identity = StaticTokenIdentityProvider({"tok-sales": staff.sales})
        engine = TransitionEngine(session_factory, clock=clock, identity=identity)
        result = engine.attempt_with_credential(
            "tok-sales", None, "create_proposal", {"name": "Canopy", "client_name": "Mall"}
        )
        assert result.applied_state == ProposalStatus.PENDING_ESTIMATION.value

    def test_unknown_token(self, session_factory, captured_logs):
        engine = TransitionEngine(session_factory, identity=StaticTokenIdentityProvider({}))
        with pytest.raises(UnauthenticatedError):
            engine.attempt_with_credential("nope", None, "create_proposal", {})
        assert any(r["message"] == "authentication_failed" for r in captured_logs())

    def test_no_provider(self, session_factory):
        with pytest.raises(UnauthenticatedError):
            TransitionEngine(session_factory).attempt_with_credential("tok", None, "create_proposal", {})
