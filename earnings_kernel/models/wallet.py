"""
Module: earnings_kernel.models.wallet
Responsibility: ORM persistence for wallet accounts and the append-only
    wallet transaction log.
Architecture position: Kernel > Models.  May import from db/base.py,
    db/types.py and exceptions.py only.

Invariants enforced:
    - One wallet account per user (unique user_id) and a unique wallet_uid.
    - available_balance >= 0 and frozen_balance >= 0 (CHECK constraints;
      WalletLedgerService checks before mutating).
    - Transaction amount > 0 (CHECK constraint).
    - Transaction status follows VALID_TRANSITIONS; every other column is
      immutable after insert (db/immutability.py).
    - At most one reversal per transaction (unique reversal_of_tx_id).
    - idempotency_key is unique: a replayed mutation finds its original row.
    - entry_no is strictly increasing per account (allocated under the
      account row lock).

Failure modes:
    - IntegrityError on duplicate idempotency_key, reversal_of_tx_id,
      (account_id, entry_no), user_id or wallet_uid.
    - InvalidTransactionTransitionError from transition_to().

Audit relevance:
    available_delta / frozen_delta record the signed balance effect of every
    row and available_after / frozen_after the post-row snapshot, so the
    account balances can be replayed from the log alone.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from earnings_kernel.db.base import TrackedBase, UUIDString
from earnings_kernel.db.types import enum_type
from earnings_kernel.exceptions import InvalidTransactionTransitionError


class TxDirection(str, Enum):
    """Direction of a wallet transaction relative to the worker."""

    IN = "IN"
    OUT = "OUT"


class WalletBizType(str, Enum):
    """Business meaning of a wallet transaction."""

    SETTLEMENT_EARNING = "SETTLEMENT_EARNING"
    RELEASE_FROZEN = "RELEASE_FROZEN"
    REFUND_REVERSAL = "REFUND_REVERSAL"
    WITHDRAW_RESERVE = "WITHDRAW_RESERVE"
    WITHDRAW_RELEASE = "WITHDRAW_RELEASE"
    WITHDRAW_PAYOUT = "WITHDRAW_PAYOUT"
    MANUAL_CREDIT = "MANUAL_CREDIT"


class WalletTxStatus(str, Enum):
    """Lifecycle state of a wallet transaction."""

    FROZEN = "FROZEN"
    AVAILABLE = "AVAILABLE"
    REVERSED = "REVERSED"


# Allowed state transitions (from -> set of valid targets)
VALID_TRANSITIONS: dict[WalletTxStatus, frozenset[WalletTxStatus]] = {
    WalletTxStatus.FROZEN: frozenset({
        WalletTxStatus.AVAILABLE, WalletTxStatus.REVERSED,
    }),
    WalletTxStatus.AVAILABLE: frozenset({
        WalletTxStatus.REVERSED,
    }),
    # Terminal
    WalletTxStatus.REVERSED: frozenset(),
}

# Transition rows settle another transaction and are reversed with it
TRANSITION_BIZ_TYPES: frozenset[WalletBizType] = frozenset({
    WalletBizType.RELEASE_FROZEN,
    WalletBizType.WITHDRAW_PAYOUT,
})


class WalletAccount(TrackedBase):
    """
    Per-user wallet balance state.

    Contract:
        Created lazily and idempotently by WalletLedgerService.ensure_account().
        Balances change only through WalletLedgerService, always together
        with a WalletTransaction insert in the same transaction.

    Guarantees:
        - available_balance >= 0 and frozen_balance >= 0.
        - entry_count equals the number of transactions on the account.
    """

    __tablename__ = "wallet_accounts"

    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_wallet_available_nonneg"),
        CheckConstraint("frozen_balance >= 0", name="ck_wallet_frozen_nonneg"),
    )

    user_id: Mapped[int] = mapped_column(nullable=False, unique=True)
    wallet_uid: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)

    available_balance: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    frozen_balance: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    entry_count: Mapped[int] = mapped_column(default=0, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<WalletAccount user={self.user_id} available={self.available_balance} "
            f"frozen={self.frozen_balance}>"
        )


class WalletTransaction(TrackedBase):
    """
    Append-only wallet ledger entry.

    Contract:
        Inserted by WalletLedgerService only.  After insert, status is the
        only column that may change and only along VALID_TRANSITIONS.
        Corrections are new rows: a reversal row points back through
        reversal_of_tx_id; release and payout rows point at the transaction
        they settle through related_tx_id.

    Guarantees:
        - amount > 0; the signed effect is (available_delta, frozen_delta).
        - (available_after, frozen_after) is the account state right after
          this row was applied.

    Non-goals:
        - This model does NOT enforce the balance effect of a reversal; that
          is WalletLedgerService's responsibility.
    """

    __tablename__ = "wallet_transactions"

    __table_args__ = (
        UniqueConstraint("account_id", "entry_no", name="uq_wallet_tx_account_entry"),
        CheckConstraint("amount > 0", name="ck_wallet_tx_amount_positive"),
        Index("idx_wallet_tx_order", "order_id"),
        Index("idx_wallet_tx_user_created", "user_id", "created_at"),
        Index("idx_wallet_tx_status_unlock", "status", "unlock_at"),
        Index("idx_wallet_tx_related", "related_tx_id"),
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("wallet_accounts.id"),
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(nullable=False)
    entry_no: Mapped[int] = mapped_column(nullable=False)

    direction: Mapped[TxDirection] = mapped_column(enum_type(TxDirection), nullable=False)
    biz_type: Mapped[WalletBizType] = mapped_column(enum_type(WalletBizType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[WalletTxStatus] = mapped_column(enum_type(WalletTxStatus), nullable=False)

    order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    settlement_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    withdrawal_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    reversal_of_tx_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("wallet_transactions.id"),
        nullable=True,
        unique=True,
    )
    related_tx_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("wallet_transactions.id"),
        nullable=True,
    )

    available_delta: Mapped[Decimal] = mapped_column(nullable=False)
    frozen_delta: Mapped[Decimal] = mapped_column(nullable=False)
    available_after: Mapped[Decimal] = mapped_column(nullable=False)
    frozen_after: Mapped[Decimal] = mapped_column(nullable=False)

    unlock_at: Mapped[datetime | None] = mapped_column(nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    remark: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<WalletTransaction {self.biz_type.value} {self.direction.value} "
            f"{self.amount} {self.status.value}>"
        )

    @property
    def is_reversal(self) -> bool:
        """True if this row cancels another transaction."""
        return self.reversal_of_tx_id is not None

    @property
    def is_transition(self) -> bool:
        """True if this row settles another transaction (release, payout)."""
        return self.related_tx_id is not None

    def transition_to(self, new_status: WalletTxStatus) -> None:
        """
        Move to ``new_status`` along VALID_TRANSITIONS.

        Raises:
            InvalidTransactionTransitionError: If the move is not allowed.
        """
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransactionTransitionError(
                transaction_id=str(self.id),
                from_status=self.status.value,
                to_status=new_status.value,
            )
        self.status = new_status
