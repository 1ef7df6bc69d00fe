"""
Configuration loader.

Reads one YAML file and parses it into the frozen ``schema`` dataclasses.
Runtime code goes through ``workorder_config.get_active_config()``.

Failure modes:
    * Missing file       -> ``FileNotFoundError`` propagates.
    * Malformed YAML     -> ``yaml.YAMLError`` propagates.
    * Bad or unknown key -> ``ValueError`` / ``KeyError``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from workorder_config.schema import (
    DatabaseConfig,
    EngineConfig,
    LedgerConfig,
    NotificationConfig,
)
from workorder_kernel.domain.roles import Role

_TOP_LEVEL_KEYS = frozenset(
    {"database", "ledger", "notifications", "max_conflict_retries", "log_level"}
)
_LOG_LEVELS = frozenset(logging.getLevelNamesMapping())


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _reject_unknown(section: str, data: dict[str, Any], allowed: set[str] | frozenset[str]) -> None:
    unknown = set(data) - set(allowed)
    if unknown:
        raise KeyError(f"unknown keys in {section}: {sorted(unknown)}")


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    _reject_unknown("database", data, DatabaseConfig.__dataclass_fields__.keys())
    return DatabaseConfig(**data)


def parse_ledger(data: dict[str, Any]) -> LedgerConfig:
    _reject_unknown("ledger", data, {"epsilon", "code_prefix"})
    try:
        epsilon = Decimal(str(data.get("epsilon", "0.1")))
    except InvalidOperation as exc:
        raise ValueError(f"ledger.epsilon is not a number: {data.get('epsilon')!r}") from exc
    if epsilon < 0:
        raise ValueError("ledger.epsilon must not be negative")
    code_prefix = str(data.get("code_prefix", "PRJ")).strip()
    if not code_prefix:
        raise ValueError("ledger.code_prefix must not be empty")
    return LedgerConfig(epsilon=epsilon, code_prefix=code_prefix)


def parse_notifications(data: dict[str, Any]) -> NotificationConfig:
    _reject_unknown("notifications", data, {"email_recipients", "in_app"})
    pairs = []
    for event, roles in sorted((data.get("email_recipients") or {}).items()):
        # Role() raises ValueError on names outside the fixed role set
        pairs.append((str(event), tuple(Role(r).value for r in roles or ())))
    return NotificationConfig(
        email_recipients=tuple(pairs),
        in_app=bool(data.get("in_app", True)),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of the raw configuration."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_config(data: dict[str, Any]) -> EngineConfig:
    _reject_unknown("config", data, _TOP_LEVEL_KEYS)
    retries = int(data.get("max_conflict_retries", 3))
    if retries < 1:
        raise ValueError("max_conflict_retries must be at least 1")
    log_level = str(data.get("log_level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"unknown log_level: {log_level}")
    return EngineConfig(
        database=parse_database(data.get("database") or {}),
        ledger=parse_ledger(data.get("ledger") or {}),
        notifications=parse_notifications(data.get("notifications") or {}),
        max_conflict_retries=retries,
        log_level=log_level,
        checksum=compute_checksum(data),
    )


def load_config(path: Path) -> EngineConfig:
    return parse_config(load_yaml_file(path))
