"""
Kernel write services.

Every service flushes inside the caller's session and never commits; the
transition engine (or a test's ``session_scope``) owns the transaction.
"""

from workorder_kernel.services.auditor_service import AuditorService
from workorder_kernel.services.ledger_service import LedgerService, OverageResolution
from workorder_kernel.services.leave_service import LeaveService
from workorder_kernel.services.proposal_service import ProposalService
from workorder_kernel.services.request_service import RequestService
from workorder_kernel.services.sequence_service import SequenceService
from workorder_kernel.services.staff_service import StaffService
from workorder_kernel.services.work_order_service import WorkOrderService

__all__ = [
    "AuditorService",
    "LeaveService",
    "LedgerService",
    "OverageResolution",
    "ProposalService",
    "RequestService",
    "SequenceService",
    "StaffService",
    "WorkOrderService",
]
