"""
earnings_config -- single public entrypoint for earnings configuration.

Responsibility:
    Provides the runtime way to obtain configuration through
    ``get_active_config()``.  Returns a frozen ``EarningsConfig``.  YAML
    loading is internal to this package.

Architecture position:
    Configuration -- sits above ``earnings_kernel`` and beside
    ``earnings_services``.  The kernel MUST NEVER import from
    ``earnings_config``; services receive the settings they need as
    constructor arguments.

Invariants enforced:
    - Deterministic loading: the same YAML always yields the same checksum.
    - Required keys are never defaulted.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``KeyError`` -- a required key is missing.
    - ``ValueError`` -- a value is out of range.

Audit relevance:
    Every successful ``get_active_config()`` call emits an
    ``EARNINGS_CONFIG_TRACE`` log entry with the config id, version and
    checksum, tying settlement runs to the configuration that governed them.
"""

from __future__ import annotations

import logging
from pathlib import Path

from earnings_config.loader import load_yaml_file, parse_config
from earnings_config.schema import (
    DatabaseSettings,
    EarningsConfig,
    LedgerSettings,
    ReconciliationSettings,
    SettlementSettings,
    WithdrawalSettings,
)

_logger = logging.getLogger("earnings_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | None = None) -> EarningsConfig:
    """The public configuration entrypoint.

    Args:
        path: YAML document to load.  Defaults to the packaged
            ``defaults.yaml``.

    Raises:
        FileNotFoundError: If the file does not exist.
        KeyError: If a required key is missing.
        ValueError: If a value fails validation.
    """
    config = parse_config(load_yaml_file(path or DEFAULT_CONFIG_PATH))

    _logger.info(
        "EARNINGS_CONFIG_TRACE",
        extra={
            "trace_type": "EARNINGS_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DatabaseSettings",
    "EarningsConfig",
    "LedgerSettings",
    "ReconciliationSettings",
    "SettlementSettings",
    "WithdrawalSettings",
    "get_active_config",
]
