"""
workorder_config -- single public entrypoint for engine configuration.

``get_active_config()`` is the only way runtime code obtains settings. It
reads the packaged ``defaults.yaml`` unless a path is given, and logs a
``workorder_config_loaded`` trace carrying the checksum of the raw file so
a running engine can be tied back to the exact configuration it started
with. The kernel never imports this package.
"""

from __future__ import annotations

import logging
from pathlib import Path

from workorder_config.loader import load_config
from workorder_config.schema import (
    DatabaseConfig,
    EngineConfig,
    LedgerConfig,
    NotificationConfig,
)

_logger = logging.getLogger("workorder_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> EngineConfig:
    """Load and validate the engine configuration.

    Raises:
        FileNotFoundError: ``path`` does not exist.
        yaml.YAMLError: the file is not valid YAML.
        ValueError, KeyError: a value or key fails validation.
    """
    source = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    config = load_config(source)
    _logger.info(
        "workorder_config_loaded",
        extra={
            "path": str(source),
            "checksum": config.checksum,
            "epsilon": str(config.ledger.epsilon),
            "max_conflict_retries": config.max_conflict_retries,
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DatabaseConfig",
    "EngineConfig",
    "LedgerConfig",
    "NotificationConfig",
    "get_active_config",
]
