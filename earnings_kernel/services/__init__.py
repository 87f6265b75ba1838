"""Kernel services - the imperative shell that writes ledger state."""

from earnings_kernel.services.auditor_service import (
    SYSTEM_ACTOR_ID,
    AuditorService,
    AuditTrace,
    AuditTraceEntry,
)
from earnings_kernel.services.base import BaseService
from earnings_kernel.services.sequence_service import SequenceCounter, SequenceService
from earnings_kernel.services.wallet_ledger import (
    LedgerRefs,
    LedgerResult,
    WalletLedgerService,
    generate_wallet_uid,
)

__all__ = [
    "AuditTrace",
    "AuditTraceEntry",
    "AuditorService",
    "BaseService",
    "LedgerRefs",
    "LedgerResult",
    "SYSTEM_ACTOR_ID",
    "SequenceCounter",
    "SequenceService",
    "WalletLedgerService",
    "generate_wallet_uid",
]
