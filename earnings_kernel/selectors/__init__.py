"""Read-only selectors over wallet, settlement and order state."""

from earnings_kernel.selectors.base import BaseSelector, Page, validate_page
from earnings_kernel.selectors.reconciliation_selector import (
    ExpenseTotals,
    OrderScope,
    ReconciliationSelector,
)
from earnings_kernel.selectors.wallet_selector import (
    BalanceReplay,
    TransactionFilter,
    WalletAccountView,
    WalletSelector,
    WalletTransactionView,
)

__all__ = [
    "BalanceReplay",
    "BaseSelector",
    "ExpenseTotals",
    "OrderScope",
    "Page",
    "ReconciliationSelector",
    "TransactionFilter",
    "WalletAccountView",
    "WalletSelector",
    "WalletTransactionView",
    "validate_page",
]
