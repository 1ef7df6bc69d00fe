"""
Engine configuration schema.

Frozen dataclasses populated by ``workorder_config.loader`` from YAML.
Roles, stages and permission gates are fixed in the kernel and are not
part of this schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite://"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 10
    pool_timeout: int = 30
    busy_timeout: int = 30


@dataclass(frozen=True)
class LedgerConfig:
    """Ledger tolerances and work order numbering."""

    epsilon: Decimal = Decimal("0.1")
    code_prefix: str = "PRJ"


@dataclass(frozen=True)
class NotificationConfig:
    """Event -> roles that also receive an email, on top of each intent's own targets."""

    email_recipients: tuple[tuple[str, tuple[str, ...]], ...] = ()
    in_app: bool = True

    def roles_for(self, event: str) -> tuple[str, ...]:
        for name, roles in self.email_recipients:
            if name == event:
                return roles
        return ()


@dataclass(frozen=True)
class EngineConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    max_conflict_retries: int = 3
    log_level: str = "INFO"
    checksum: str = ""
