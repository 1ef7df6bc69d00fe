"""ORM models for the work order kernel."""

from workorder_kernel.models.audit_entry import AuditEntry
from workorder_kernel.models.leave import LeaveRequest
from workorder_kernel.models.notification import Notification
from workorder_kernel.models.proposal import Proposal
from workorder_kernel.models.request import ResourceRequest
from workorder_kernel.models.staff import StaffMember
from workorder_kernel.models.work_order import Assignment, TimeEntry, WorkOrder

__all__ = [
    "Assignment",
    "AuditEntry",
    "LeaveRequest",
    "Notification",
    "Proposal",
    "ResourceRequest",
    "StaffMember",
    "TimeEntry",
    "WorkOrder",
]
