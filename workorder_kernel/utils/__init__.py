"""Utility functions for the work order kernel."""

from workorder_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_entry,
    hash_payload,
    normalize_payload,
)

__all__ = [
    "canonicalize_json",
    "hash_audit_entry",
    "hash_payload",
    "normalize_payload",
]
