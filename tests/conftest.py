"""
Pytest fixtures for the work order kernel test suite.

Provides:
- A fresh in-memory SQLite database per test (tables + immutability listeners)
- ``session`` for service-level tests (flush only, rolled back at teardown)
- ``session_factory`` for engine and concurrency tests that really commit
- A deterministic clock, a staff roster and a helper that walks a proposal
  to a won work order
- Structured log capture
"""

import json
import logging
from datetime import datetime, timezone
from io import StringIO
from types import SimpleNamespace
from uuid import uuid4

import pytest

from workorder_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from workorder_kernel.domain.clock import DeterministicClock
from workorder_kernel.domain.roles import Role
from workorder_kernel.domain.workflow import ProposalAction
from workorder_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from workorder_kernel.models.work_order import WorkOrder
from workorder_kernel.services.proposal_service import ProposalService
from workorder_kernel.services.staff_service import StaffService
from workorder_kernel.services.work_order_service import WorkOrderService

SYSTEM_ACTOR_ID = uuid4()

_ROSTER = (
    ("sales", "Sam Sales", Role.SALES),
    ("estimator", "Eve Estimator", Role.ESTIMATOR),
    ("ops", "Olu Operations", Role.OPERATIONS_LEAD),
    ("director", "Dana Director", Role.DIRECTOR),
    ("design_lead", "Lee Lead", Role.DESIGN_LEAD),
    ("other_lead", "Lou Lead", Role.DESIGN_LEAD),
    ("designer_a", "Ana Designer", Role.DESIGNER),
    ("designer_b", "Ben Designer", Role.DESIGNER),
    ("designer_c", "Cal Designer", Role.DESIGNER),
    ("accounts", "Ari Accounts", Role.ACCOUNTS),
    ("hr", "Hana HR", Role.HR),
)


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture workorder_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ...):
            ...
            assert any(r["message"] == "allocation_applied" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("workorder_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine():
    eng = init_engine_from_url("sqlite://")
    create_tables()
    yield eng
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    """Session for service tests. Services only flush; nothing is committed."""
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))


# =============================================================================
# Staff
# =============================================================================


@pytest.fixture
def staff(session_factory):
    """One committed staff member per role (two design leads, three designers), as Actors."""
    actors = {}
    with session_scope(session_factory) as sess:
        service = StaffService(sess)
        for key, name, role in _ROSTER:
            member = service.add_member(
                name=name,
                email=f"{key}@example.com",
                role=role,
                created_by_id=SYSTEM_ACTOR_ID,
            )
            actors[key] = member.as_actor()
    return SimpleNamespace(**actors)


# =============================================================================
# Work order factory
# =============================================================================


def _walk_proposal_to_won(session, clock, staff, estimated_hours="100", name="Warehouse extension"):
    proposals = ProposalService(session, clock)
    proposal_id = proposals.create(staff.sales, name=name, client_name="Acme Steel").subject_id
    estimation = {"estimated_hours": estimated_hours} if estimated_hours else {"tonnage": "12"}
    proposals.advance(proposal_id, staff.estimator, ProposalAction.ADD_ESTIMATION, estimation)
    proposals.advance(
        proposal_id,
        staff.ops,
        ProposalAction.SET_PRICING,
        {"project_number": "Q-2024-001", "quote_value": "25000"},
    )
    proposals.advance(proposal_id, staff.director, ProposalAction.DIRECTOR_APPROVE, {})
    proposals.advance(proposal_id, staff.sales, ProposalAction.SUBMIT_TO_CLIENT, {})
    won = proposals.advance(proposal_id, staff.sales, ProposalAction.MARK_WON, {})
    return proposal_id, won.data["work_order_id"]


@pytest.fixture
def make_work_order(session, clock, staff):
    """
    Build a work order through the proposal workflow.

    Usage::

        work_order = make_work_order(estimated_hours="100", design_lead=staff.design_lead)
    """

    def _make(estimated_hours="100", design_lead=None, name="Warehouse extension") -> WorkOrder:
        _, work_order_id = _walk_proposal_to_won(session, clock, staff, estimated_hours, name)
        if design_lead is not None:
            WorkOrderService(session, clock).assign_design_lead(work_order_id, staff.ops, design_lead.id)
        return session.get(WorkOrder, work_order_id)

    return _make
