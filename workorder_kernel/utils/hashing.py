"""
Deterministic hashing utilities.

Audit hashes must be reproducible from what is stored, so payloads are
canonicalized once (sorted keys, no whitespace, fixed rendering for
Decimal, UUID and dates) and the canonical form is both hashed and
persisted.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Fixed-point so 10.000 and 10 render identically as "10"
        return format(obj.normalize(), "f")
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return sorted(obj) if isinstance(obj, (set, frozenset)) else list(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted, separators carry no whitespace, and special types are
    rendered by ``_json_serializer``.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def normalize_payload(payload: dict | None) -> dict:
    """Round-trip a payload through canonical JSON so it can be stored as-is."""
    return json.loads(canonicalize_json(payload or {}))


def hash_payload(payload: dict) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_entry(
    subject_type: str,
    subject_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute the chained hash for an audit entry.

    The hash covers the subject, the action, the payload hash and the
    previous entry's hash, so altering or removing any entry breaks every
    later link in that subject's chain.

    Args:
        subject_type: Type of the audited record.
        subject_id: ID of the audited record.
        action: Action being recorded.
        payload_hash: Hash of the entry body.
        prev_hash: Hash of the previous entry (None for genesis).

    Returns:
        Hex-encoded SHA-256 hash.
    """
    components = [
        subject_type,
        str(subject_id),
        action,
        payload_hash,
        prev_hash or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
