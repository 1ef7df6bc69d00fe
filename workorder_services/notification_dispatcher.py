"""
Post-commit notification delivery.

Services return ``NotificationIntent`` values with their result; the
transition engine hands them here only after the transaction committed.
Delivery is best effort: a sink that raises or reports failure is logged
(``notification_dispatch_failed``) and the remaining sinks still run.
Nothing here can undo or fail a committed transition.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol, Sequence, runtime_checkable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from workorder_kernel.db.engine import session_scope
from workorder_kernel.domain.dtos import NotificationIntent
from workorder_kernel.logging_config import get_logger
from workorder_kernel.models.notification import Notification

logger = get_logger("services.notifications")


@runtime_checkable
class NotificationSink(Protocol):
    def notify(self, event: str, payload: Mapping[str, Any]) -> bool: ...


class InAppNotificationSink:
    """Persist one ``Notification`` row per recipient role and identity."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def notify(self, event: str, payload: Mapping[str, Any]) -> bool:
        roles = payload.get("recipient_roles") or ()
        ids = payload.get("recipient_ids") or ()
        if not roles and not ids:
            return False
        subject_id = payload.get("subject_id")
        common = {
            "event": event,
            "message": payload.get("message", ""),
            "priority": payload.get("priority", "normal"),
            "subject_type": payload.get("subject_type"),
            "subject_id": UUID(subject_id) if subject_id else None,
        }
        with session_scope(self._session_factory) as session:
            for role in roles:
                session.add(Notification(recipient_role=role, **common))
            for recipient_id in ids:
                session.add(Notification(recipient_id=UUID(recipient_id), **common))
        return True


class NotificationDispatcher:
    """
    Fan notification intents out to every sink.

    ``email_recipients`` maps an event to extra roles that should hear
    about it; they are passed to sinks as ``email_roles``.
    """

    def __init__(
        self,
        sinks: Sequence[NotificationSink] = (),
        email_recipients: Mapping[str, Iterable[str]] | None = None,
    ):
        self._sinks = tuple(sinks)
        self._email_recipients = {
            event: tuple(roles) for event, roles in (email_recipients or {}).items()
        }

    @property
    def sinks(self) -> tuple[NotificationSink, ...]:
        return self._sinks

    def dispatch(self, intents: Iterable[NotificationIntent]) -> int:
        """Deliver every intent to every sink; returns the number of successful deliveries."""
        delivered = 0
        for intent in intents:
            payload = intent.as_payload()
            payload["email_roles"] = list(self._email_recipients.get(intent.event, ()))
            for sink in self._sinks:
                try:
                    ok = sink.notify(intent.event, payload)
                except Exception as exc:
                    logger.error(
                        "notification_dispatch_failed",
                        extra={
                            "event": intent.event,
                            "sink": type(sink).__name__,
                            "error": str(exc),
                        },
                        exc_info=True,
                    )
                    continue
                if ok:
                    delivered += 1
                else:
                    logger.warning(
                        "notification_dispatch_failed",
                        extra={"event": intent.event, "sink": type(sink).__name__, "error": None},
                    )
        return delivered
