"""
Earnings configuration schema.

Frozen dataclasses for every tunable the earnings services read at runtime.
YAML documents are parsed into these types by the loader; nothing else in
the system reads the YAML directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings passed to init_engine_from_url()."""

    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class SettlementSettings:
    """Settlement validation tolerance and hold freeze windows."""

    total_tolerance: Decimal
    # order type -> days; "default" covers every unlisted type
    freeze_days: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerSettings:
    """Batching of the scheduled hold release job."""

    hold_release_batch_size: int
    hold_release_max_batches: int


@dataclass(frozen=True)
class ReconciliationSettings:
    """Who may reconcile, and how reads are paged and chunked."""

    allowed_roles: tuple[str, ...]
    default_page_size: int = 20
    max_page_size: int = 100
    chunk_size: int = 1000


@dataclass(frozen=True)
class WithdrawalSettings:
    min_amount: Decimal


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EarningsConfig:
    """
    The runtime configuration artifact.

    ``checksum`` is the SHA-256 of the canonical JSON form of the source
    document, so two loads of the same YAML compare equal.
    """

    config_id: str
    version: int
    checksum: str
    database: DatabaseSettings
    settlement: SettlementSettings
    ledger: LedgerSettings
    reconciliation: ReconciliationSettings
    withdrawal: WithdrawalSettings
