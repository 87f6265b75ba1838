"""Domain models for the earnings kernel."""

from earnings_kernel.models.audit_event import AuditAction, AuditEvent
from earnings_kernel.models.order import (
    SETTLEABLE_STATUSES,
    Order,
    OrderContribution,
    OrderStatus,
    OrderType,
)
from earnings_kernel.models.settlement import (
    OrderSettlement,
    PaymentStatus,
    SettlementType,
)
from earnings_kernel.models.wallet import (
    TRANSITION_BIZ_TYPES,
    VALID_TRANSITIONS,
    TxDirection,
    WalletAccount,
    WalletBizType,
    WalletTransaction,
    WalletTxStatus,
)
from earnings_kernel.models.withdrawal import WithdrawalRequest, WithdrawalStatus

__all__ = [
    "AuditAction",
    "AuditEvent",
    "Order",
    "OrderContribution",
    "OrderSettlement",
    "OrderStatus",
    "OrderType",
    "PaymentStatus",
    "SETTLEABLE_STATUSES",
    "SettlementType",
    "TRANSITION_BIZ_TYPES",
    "TxDirection",
    "VALID_TRANSITIONS",
    "WalletAccount",
    "WalletBizType",
    "WalletTransaction",
    "WalletTxStatus",
    "WithdrawalRequest",
    "WithdrawalStatus",
]
