"""
earnings_services -- Package init and public API.

Responsibility:
    Stateful orchestration services that compose the pure settlement engine
    (earnings_engines/) with database sessions, the wallet ledger and the
    audit chain.  This is the only layer that reads the wall clock through
    an injected Clock and decides transaction boundaries for batch jobs.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        earnings_services/ -> earnings_engines/  (allowed)
        earnings_services/ -> earnings_kernel/   (allowed)
        earnings_engines/  -> earnings_services/ (FORBIDDEN)
        earnings_kernel/   -> earnings_services/ (FORBIDDEN)

Invariants enforced:
    - Layer isolation: earnings_kernel and earnings_engines never import
      from this package.
    - Services flush, callers commit.  Only HoldReleaseJob owns sessions.

Audit relevance:
    This package is the canonical import surface for callers.
"""

from earnings_kernel.logging_config import get_logger

logger = get_logger("services")

from earnings_services.authorization import (  # noqa: E402
    Caller,
    UserRole,
    authorize_reconciliation,
    check_reconciliation_access,
)
from earnings_services.hold_release import (  # noqa: E402
    HoldReleaseJob,
    HoldReleaseResult,
    release_due_holds_in_batches,
    release_due_holds_once,
)
from earnings_services.reconciliation_service import (  # noqa: E402
    AbnormalReason,
    OrderDetail,
    OrdersQuery,
    ReconciliationRow,
    ReconciliationService,
    ReconciliationSummary,
    RevenueOverview,
)
from earnings_services.settlement_service import (  # noqa: E402
    SettlementBatchReport,
    SettlementBatchType,
    SettlementOutcome,
    SettlementService,
)
from earnings_services.withdrawal_service import (  # noqa: E402
    WithdrawalService,
    WithdrawalView,
)

__all__ = [
    "AbnormalReason",
    "Caller",
    "HoldReleaseJob",
    "HoldReleaseResult",
    "OrderDetail",
    "OrdersQuery",
    "ReconciliationRow",
    "ReconciliationService",
    "ReconciliationSummary",
    "RevenueOverview",
    "SettlementBatchReport",
    "SettlementBatchType",
    "SettlementOutcome",
    "SettlementService",
    "UserRole",
    "WithdrawalService",
    "WithdrawalView",
    "authorize_reconciliation",
    "check_reconciliation_access",
    "release_due_holds_in_batches",
    "release_due_holds_once",
]
