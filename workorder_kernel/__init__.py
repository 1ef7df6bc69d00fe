"""
Work Order Kernel

Approval workflow and resource ledger engine for engineering work orders:
- Role-gated state transitions for proposals, work orders and requests
- Hours ledger with ceiling, allocation and derived consumption
- Multi-stage leave approval
- Full auditability via per-subject hash chains
"""

__version__ = "0.1.0"
