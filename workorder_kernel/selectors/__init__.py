"""Read-only query layer; every selector returns frozen view objects."""

from workorder_kernel.selectors.audit_selector import AuditSelector, AuditTrailEntry
from workorder_kernel.selectors.request_selector import (
    LeaveSelector,
    LeaveView,
    RequestSelector,
    RequestView,
)
from workorder_kernel.selectors.work_order_selector import (
    AssignmentView,
    WorkOrderSelector,
    WorkOrderView,
)

__all__ = [
    "AssignmentView",
    "AuditSelector",
    "AuditTrailEntry",
    "LeaveSelector",
    "LeaveView",
    "RequestSelector",
    "RequestView",
    "WorkOrderSelector",
    "WorkOrderView",
]
