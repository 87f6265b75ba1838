"""
Module: earnings_kernel.selectors.wallet_selector
Responsibility: Read-only wallet queries: account lookup, paginated
    transaction history and hold listings, the balance replay check, and the
    due-hold scan used by the hold release job.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Replay: replay_balances() sums the signed deltas of every transaction
      on an account and compares them with the stored balances.  A mismatch
      means a balance was changed outside WalletLedgerService.

Failure modes:
    - InvalidPaginationError on page < 1 or limit outside [1, 100].

Audit relevance:
    replay_balances() is the ledger's self-check: the transaction log alone
    reconstructs every balance.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from earnings_kernel.db.types import ZERO
from earnings_kernel.exceptions import AccountNotFoundError
from earnings_kernel.models.wallet import (
    TxDirection,
    WalletAccount,
    WalletBizType,
    WalletTransaction,
    WalletTxStatus,
)
from earnings_kernel.selectors.base import BaseSelector, Page, validate_page


@dataclass(frozen=True)
class WalletAccountView:
    """Balances of one wallet."""

    account_id: UUID
    user_id: int
    wallet_uid: str
    available_balance: Decimal
    frozen_balance: Decimal

    @property
    def total_balance(self) -> Decimal:
        return self.available_balance + self.frozen_balance


@dataclass(frozen=True)
class WalletTransactionView:
    """One ledger row, detached from the session."""

    transaction_id: UUID
    entry_no: int
    user_id: int
    direction: TxDirection
    biz_type: WalletBizType
    amount: Decimal
    status: WalletTxStatus
    available_delta: Decimal
    frozen_delta: Decimal
    available_after: Decimal
    frozen_after: Decimal
    order_id: UUID | None
    settlement_id: UUID | None
    reversal_of_tx_id: UUID | None
    related_tx_id: UUID | None
    unlock_at: datetime | None
    created_at: datetime
    remark: str | None

    @classmethod
    def from_model(cls, tx: WalletTransaction) -> "WalletTransactionView":
        return cls(
            transaction_id=tx.id,
            entry_no=tx.entry_no,
            user_id=tx.user_id,
            direction=tx.direction,
            biz_type=tx.biz_type,
            amount=tx.amount,
            status=tx.status,
            available_delta=tx.available_delta,
            frozen_delta=tx.frozen_delta,
            available_after=tx.available_after,
            frozen_after=tx.frozen_after,
            order_id=tx.order_id,
            settlement_id=tx.settlement_id,
            reversal_of_tx_id=tx.reversal_of_tx_id,
            related_tx_id=tx.related_tx_id,
            unlock_at=tx.unlock_at,
            created_at=tx.created_at,
            remark=tx.remark,
        )


@dataclass(frozen=True)
class BalanceReplay:
    """Stored balances next to the balances rebuilt from the log."""

    account_id: UUID
    stored_available: Decimal
    stored_frozen: Decimal
    replayed_available: Decimal
    replayed_frozen: Decimal
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return (
            self.stored_available == self.replayed_available
            and self.stored_frozen == self.replayed_frozen
        )


@dataclass(frozen=True)
class TransactionFilter:
    """Optional filters for list_transactions()."""

    status: WalletTxStatus | None = None
    biz_type: WalletBizType | None = None
    direction: TxDirection | None = None
    order_id: UUID | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None


class WalletSelector(BaseSelector[WalletTransaction]):
    """
    Read-only wallet queries.

    Guarantees:
        - Returns frozen dataclasses, never live ORM rows.
        - Listings are newest first (entry_no descending).
    """

    def get_account(self, user_id: int) -> WalletAccountView | None:
        account = self.session.execute(
            select(WalletAccount).where(WalletAccount.user_id == user_id)
        ).scalar_one_or_none()
        if account is None:
            return None
        return WalletAccountView(
            account_id=account.id,
            user_id=account.user_id,
            wallet_uid=account.wallet_uid,
            available_balance=account.available_balance,
            frozen_balance=account.frozen_balance,
        )

    def get_transaction(self, tx_id: UUID) -> WalletTransactionView | None:
        tx = self.session.get(WalletTransaction, tx_id)
        return WalletTransactionView.from_model(tx) if tx is not None else None

    def _paginate(self, stmt, page: int, limit: int) -> Page[WalletTransactionView]:
        total = self.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        rows = self.session.execute(
            stmt.order_by(WalletTransaction.entry_no.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars()
        return Page(
            page=page,
            page_size=limit,
            total=total,
            items=tuple(WalletTransactionView.from_model(tx) for tx in rows),
        )

    def list_transactions(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        filters: TransactionFilter | None = None,
    ) -> Page[WalletTransactionView]:
        """
        Paginated transaction history for a user.

        Time filters apply to created_at as a half-open window
        ``[start_at, end_at)``.
        """
        validate_page(page, limit)
        filters = filters or TransactionFilter()

        stmt = select(WalletTransaction).where(WalletTransaction.user_id == user_id)
        if filters.status is not None:
            stmt = stmt.where(WalletTransaction.status == filters.status)
        if filters.biz_type is not None:
            stmt = stmt.where(WalletTransaction.biz_type == filters.biz_type)
        if filters.direction is not None:
            stmt = stmt.where(WalletTransaction.direction == filters.direction)
        if filters.order_id is not None:
            stmt = stmt.where(WalletTransaction.order_id == filters.order_id)
        if filters.start_at is not None:
            stmt = stmt.where(WalletTransaction.created_at >= filters.start_at)
        if filters.end_at is not None:
            stmt = stmt.where(WalletTransaction.created_at < filters.end_at)

        return self._paginate(stmt, page, limit)

    def list_holds(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        status: WalletTxStatus | None = None,
    ) -> Page[WalletTransactionView]:
        """
        Paginated holds for a user: inflows that were credited to the frozen
        balance.  ``status`` FROZEN lists the holds still pending release.
        """
        validate_page(page, limit)
        stmt = select(WalletTransaction).where(
            WalletTransaction.user_id == user_id,
            WalletTransaction.direction == TxDirection.IN,
            WalletTransaction.frozen_delta > 0,
            WalletTransaction.reversal_of_tx_id.is_(None),
            WalletTransaction.related_tx_id.is_(None),
        )
        if status is not None:
            stmt = stmt.where(WalletTransaction.status == status)
        return self._paginate(stmt, page, limit)

    def replay_balances(self, account_id: UUID) -> BalanceReplay:
        """Rebuild balances from the transaction log."""
        account = self.session.get(WalletAccount, account_id)
        if account is None:
            raise AccountNotFoundError(str(account_id))

        deltas = self.session.execute(
            select(WalletTransaction.available_delta, WalletTransaction.frozen_delta)
            .where(WalletTransaction.account_id == account_id)
            .order_by(WalletTransaction.entry_no)
        ).all()

        replayed_available = sum((row.available_delta for row in deltas), ZERO)
        replayed_frozen = sum((row.frozen_delta for row in deltas), ZERO)

        return BalanceReplay(
            account_id=account_id,
            stored_available=account.available_balance,
            stored_frozen=account.frozen_balance,
            replayed_available=replayed_available,
            replayed_frozen=replayed_frozen,
            transaction_count=len(deltas),
        )

    def find_due_holds(self, now: datetime, limit: int) -> list[UUID]:
        """
        Frozen holds whose unlock time has passed, oldest unlock first.

        Only rows carrying an unlock_at are candidates; holds without one
        wait for an explicit release.
        """
        return list(
            self.session.execute(
                select(WalletTransaction.id)
                .where(
                    WalletTransaction.status == WalletTxStatus.FROZEN,
                    WalletTransaction.direction == TxDirection.IN,
                    WalletTransaction.unlock_at.is_not(None),
                    WalletTransaction.unlock_at <= now,
                )
                .order_by(WalletTransaction.unlock_at, WalletTransaction.entry_no)
                .limit(limit)
            ).scalars()
        )
