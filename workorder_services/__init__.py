"""
workorder_services -- orchestration above the kernel.

    TransitionEngine        one command = one committed unit of work
    NotificationDispatcher  post-commit, best-effort fan-out to sinks
    IdentityProvider        credential -> Actor
"""

from workorder_services.identity import IdentityProvider, StaticTokenIdentityProvider
from workorder_services.notification_dispatcher import (
    InAppNotificationSink,
    NotificationDispatcher,
    NotificationSink,
)
from workorder_services.transition_engine import HANDLERS, KernelServices, TransitionEngine

__all__ = [
    "HANDLERS",
    "IdentityProvider",
    "InAppNotificationSink",
    "KernelServices",
    "NotificationDispatcher",
    "NotificationSink",
    "StaticTokenIdentityProvider",
    "TransitionEngine",
]
