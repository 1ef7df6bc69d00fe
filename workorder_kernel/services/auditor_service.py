"""
AuditorService -- per-subject, hash-chained audit trail.

Responsibility:
    Appends one immutable ``AuditEntry`` for each committed transition on a
    subject and validates the chain on demand.

Architecture position:
    Kernel > Services. Called by every write service inside the same
    session as the transition it records, so the entry commits or rolls
    back with it.

Chain rule:
    payload_hash = H(canonical {actor_id, actor_role, detail, payload})
    hash         = H(subject_type | subject_id | action | payload_hash | prev_hash)

    ``subject_seq`` starts at 1 per subject; the genesis entry has no
    ``prev_hash``. Writers on the same subject already hold that subject's
    row lock, and the unique (subject_type, subject_id, subject_seq)
    constraint rejects any interleaving that slips past it.

Failure modes:
    - AuditChainBrokenError from ``validate_chain`` when a stored hash,
      link or sequence number does not match its recomputed value.
"""

from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from workorder_kernel.domain.clock import Clock, SystemClock
from workorder_kernel.domain.dtos import SubjectRef
from workorder_kernel.domain.roles import Actor
from workorder_kernel.domain.workflow import SubjectType
from workorder_kernel.exceptions import AuditChainBrokenError
from workorder_kernel.logging_config import get_logger
from workorder_kernel.models.audit_entry import AuditEntry
from workorder_kernel.utils.hashing import (
    hash_audit_entry,
    hash_payload,
    normalize_payload,
)

logger = get_logger("services.auditor")


def _entry_body(
    actor_id: str,
    actor_role: str,
    detail: str,
    payload: dict | None,
) -> dict[str, Any]:
    return {
        "actor_id": str(actor_id),
        "actor_role": actor_role,
        "detail": detail,
        "payload": payload or {},
    }


class AuditorService:
    """
    Creates and validates audit entries.

    Non-goals:
        - Does NOT commit; the entry belongs to the caller's transaction.
        - Does NOT interpret payloads (see AuditSelector.replay_ledger).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def _last_entry(self, subject_type: str, subject_id: UUID) -> AuditEntry | None:
        return self._session.execute(
            select(AuditEntry)
            .where(
                AuditEntry.subject_type == subject_type,
                AuditEntry.subject_id == subject_id,
            )
            .order_by(AuditEntry.subject_seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def record(
        self,
        subject: SubjectRef,
        action: Enum | str,
        actor: Actor,
        detail: str = "",
        payload: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """
        Append an entry to ``subject``'s chain and flush it.

        ``payload`` may hold Decimal, UUID, date and enum values; it is
        stored in canonical JSON form, which is also what gets hashed.
        """
        subject_type = subject.subject_type.value
        action_value = action.value if isinstance(action, Enum) else str(action)

        last = self._last_entry(subject_type, subject.subject_id)
        seq = last.subject_seq + 1 if last else 1
        prev_hash = last.hash if last else None

        stored_payload = normalize_payload(payload)
        payload_hash = hash_payload(
            _entry_body(actor.id, actor.role.value, detail, stored_payload)
        )
        entry_hash = hash_audit_entry(
            subject_type=subject_type,
            subject_id=str(subject.subject_id),
            action=action_value,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        entry = AuditEntry(
            subject_type=subject_type,
            subject_id=subject.subject_id,
            subject_seq=seq,
            action=action_value,
            actor_id=actor.id,
            actor_role=actor.role.value,
            occurred_at=self._clock.now(),
            detail=detail,
            payload=stored_payload,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=entry_hash,
        )
        self._session.add(entry)
        self._session.flush()

        logger.info(
            "audit_entry_recorded",
            extra={
                "subject_type": subject_type,
                "subject_id": str(subject.subject_id),
                "subject_seq": seq,
                "audit_action": action_value,
            },
        )
        return entry

    def entries(self, subject_type: SubjectType | str, subject_id: UUID) -> list[AuditEntry]:
        type_value = subject_type.value if isinstance(subject_type, Enum) else subject_type
        return list(
            self._session.execute(
                select(AuditEntry)
                .where(
                    AuditEntry.subject_type == type_value,
                    AuditEntry.subject_id == subject_id,
                )
                .order_by(AuditEntry.subject_seq)
            ).scalars().all()
        )

    def validate_chain(self, subject_type: SubjectType | str, subject_id: UUID) -> bool:
        """
        Recompute every hash in one subject's chain.

        Returns True for an intact (or empty) chain.

        Raises:
            AuditChainBrokenError: At the first entry whose payload hash,
                entry hash, predecessor link or sequence number disagrees
                with its recomputed value.
        """
        entries = self.entries(subject_type, subject_id)
        prev: AuditEntry | None = None

        for position, entry in enumerate(entries, start=1):
            if entry.subject_seq != position:
                self._broken(entry, str(position), str(entry.subject_seq))

            expected_prev = prev.hash if prev else None
            if entry.prev_hash != expected_prev:
                self._broken(entry, expected_prev or "None", entry.prev_hash or "None")

            expected_payload_hash = hash_payload(
                _entry_body(entry.actor_id, entry.actor_role, entry.detail, entry.payload)
            )
            if entry.payload_hash != expected_payload_hash:
                self._broken(entry, expected_payload_hash, entry.payload_hash)

            expected_hash = hash_audit_entry(
                subject_type=entry.subject_type,
                subject_id=str(entry.subject_id),
                action=entry.action,
                payload_hash=entry.payload_hash,
                prev_hash=entry.prev_hash,
            )
            if entry.hash != expected_hash:
                self._broken(entry, expected_hash, entry.hash)

            prev = entry

        logger.info(
            "audit_chain_valid",
            extra={"subject_id": str(subject_id), "entry_count": len(entries)},
        )
        return True

    @staticmethod
    def _broken(entry: AuditEntry, expected: str, actual: str) -> None:
        logger.critical(
            "audit_chain_broken",
            extra={
                "audit_entry_id": str(entry.id),
                "subject_id": str(entry.subject_id),
                "subject_seq": entry.subject_seq,
            },
        )
        raise AuditChainBrokenError(str(entry.id), expected, actual)
