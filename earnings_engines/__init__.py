"""
Module: earnings_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines.  This is the canonical import surface for
    earnings_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import earnings_kernel.db.types, earnings_kernel.exceptions,
    the model enums and sibling engine modules.
    MUST NOT import earnings_services.

Invariants enforced:
    - Purity: engines never read the clock.  Completion times and windows
      are passed in by the services.
    - Decimal-only arithmetic: floats are rejected at every entry point.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every engine invocation is traced via ``@traced_engine``
    (see ``earnings_engines.tracer``), emitting EARNINGS_ENGINE_TRACE log
    records with engine name, version, input fingerprint and duration.

Usage:
    from earnings_engines import Contribution, SettlementEngine
"""

from earnings_kernel.logging_config import get_logger

logger = get_logger("engines")

from earnings_engines.settlement import (  # noqa: E402
    DEFAULT_FREEZE_DAYS,
    DEFAULT_SPLIT_RULES,
    DEFAULT_TOTAL_TOLERANCE,
    Contribution,
    SettlementComputation,
    SettlementEngine,
    SplitMode,
    SplitRule,
    WorkerEarning,
    compute_unlock_at,
    freeze_days_for,
    settlement_type_for,
    split_customer_service_share,
)
from earnings_engines.tracer import compute_input_fingerprint, traced_engine  # noqa: E402

__all__ = [
    "Contribution",
    "DEFAULT_FREEZE_DAYS",
    "DEFAULT_SPLIT_RULES",
    "DEFAULT_TOTAL_TOLERANCE",
    "SettlementComputation",
    "SettlementEngine",
    "SplitMode",
    "SplitRule",
    "WorkerEarning",
    "compute_input_fingerprint",
    "compute_unlock_at",
    "freeze_days_for",
    "settlement_type_for",
    "split_customer_service_share",
    "traced_engine",
]
