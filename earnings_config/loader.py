"""
Configuration Loader (``earnings_config.loader``).

Responsibility
--------------
Loads a YAML configuration document and parses it into the frozen
``earnings_config.schema`` dataclasses.  The runtime entry point is
``earnings_config.get_active_config()``; services never call the loader.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  No dependency on the kernel,
engines or services.

Invariants enforced
-------------------
* Required keys are never defaulted: a missing key raises ``KeyError``.
* Out-of-range values raise ``ValueError`` with a descriptive message.
* Money and rate values are parsed from strings into ``Decimal``; floats in
  the YAML are rejected.
* ``compute_checksum`` is deterministic for identical documents.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from earnings_config.schema import (
    DatabaseSettings,
    EarningsConfig,
    LedgerSettings,
    ReconciliationSettings,
    SettlementSettings,
    WithdrawalSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, name: str) -> Decimal:
    """Parse an exact decimal from a YAML string or integer."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"{name} must be quoted as a string, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{name} is not a decimal: {value!r}") from None


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    return DatabaseSettings(
        url=data["url"],
        echo=bool(data.get("echo", False)),
        pool_size=_positive_int(data.get("pool_size", 20), "database.pool_size"),
        max_overflow=int(data.get("max_overflow", 10)),
    )


def parse_settlement(data: dict[str, Any]) -> SettlementSettings:
    """
    Parse the settlement section.

    ``freeze_days`` must contain a ``default`` entry; every value is a
    non-negative integer.
    """
    tolerance = parse_decimal(data["total_tolerance"], "settlement.total_tolerance")
    if tolerance < 0:
        raise ValueError(f"settlement.total_tolerance must be >= 0, got {tolerance}")

    freeze_days: dict[str, int] = {}
    for order_type, days in data["freeze_days"].items():
        if isinstance(days, bool) or not isinstance(days, int) or days < 0:
            raise ValueError(f"settlement.freeze_days.{order_type} must be >= 0, got {days!r}")
        freeze_days[str(order_type)] = days
    if "default" not in freeze_days:
        raise KeyError("settlement.freeze_days.default")

    return SettlementSettings(total_tolerance=tolerance, freeze_days=freeze_days)


def parse_ledger(data: dict[str, Any]) -> LedgerSettings:
    return LedgerSettings(
        hold_release_batch_size=_positive_int(
            data["hold_release_batch_size"], "ledger.hold_release_batch_size"
        ),
        hold_release_max_batches=_positive_int(
            data["hold_release_max_batches"], "ledger.hold_release_max_batches"
        ),
    )


def parse_reconciliation(data: dict[str, Any]) -> ReconciliationSettings:
    roles = tuple(str(role) for role in data["allowed_roles"])
    if not roles:
        raise ValueError("reconciliation.allowed_roles must not be empty")
    settings = ReconciliationSettings(
        allowed_roles=roles,
        default_page_size=_positive_int(
            data.get("default_page_size", 20), "reconciliation.default_page_size"
        ),
        max_page_size=_positive_int(
            data.get("max_page_size", 100), "reconciliation.max_page_size"
        ),
        chunk_size=_positive_int(data.get("chunk_size", 1000), "reconciliation.chunk_size"),
    )
    if settings.default_page_size > settings.max_page_size:
        raise ValueError("reconciliation.default_page_size exceeds max_page_size")
    return settings


def parse_withdrawal(data: dict[str, Any]) -> WithdrawalSettings:
    min_amount = parse_decimal(data["min_amount"], "withdrawal.min_amount")
    if min_amount <= 0:
        raise ValueError(f"withdrawal.min_amount must be > 0, got {min_amount}")
    return WithdrawalSettings(min_amount=min_amount)


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_config(data: dict[str, Any]) -> EarningsConfig:
    """
    Parse a whole configuration document.

    Raises:
        KeyError: A required section or key is missing.
        ValueError: A value is out of range.
    """
    return EarningsConfig(
        config_id=data["config_id"],
        version=_positive_int(data["version"], "version"),
        checksum=compute_checksum(data),
        database=parse_database(data["database"]),
        settlement=parse_settlement(data["settlement"]),
        ledger=parse_ledger(data["ledger"]),
        reconciliation=parse_reconciliation(data["reconciliation"]),
        withdrawal=parse_withdrawal(data["withdrawal"]),
    )
