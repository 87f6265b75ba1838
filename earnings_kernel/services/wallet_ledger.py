"""
WalletLedgerService -- the sole writer of wallet balances and transactions.

Responsibility:
    Applies every monetary movement on a worker wallet: settlement credits
    and freezes, hold releases, reversals, and the withdrawal reserve/payout
    pair.  Each operation updates the account balances and appends exactly
    one WalletTransaction row recording the signed effect and the resulting
    snapshot.

Architecture position:
    Kernel > Services -- imperative shell.  Called by SettlementService,
    WithdrawalService and the hold release job.

Invariants enforced:
    - available_balance >= 0 and frozen_balance >= 0, checked before the
      balances are assigned (InsufficientBalanceError) and backed by CHECK
      constraints.
    - Serialization: the account row is locked (``SELECT ... FOR UPDATE``
      with ``populate_existing``) before any balance is read, then the target
      transaction row.  Snapshots are therefore computed from the locked row.
    - Idempotency: every mutation carries a unique idempotency key.  A
      repeated inflow or reserve key returns the existing row with
      ``created=False`` and moves no money.  Release, payout and reversal
      act on a target transaction, so a repeat finds the target already
      moved and fails with NotFrozenError or AlreadyReversedError.
    - Reversal exactness: a reversal row carries the negation of the
      original's net effect (its own deltas plus those of the release or
      payout rows that settled it).
    - Replay: per account, the sum of deltas over all rows equals the stored
      balances, because every balance change is written as a row.

Failure modes:
    - InvalidAmountError: amount not a positive two-place decimal.
    - TransactionNotFoundError, NotFrozenError, TransactionNotReleasableError,
      AlreadyReversedError, InvalidReversalTargetError,
      InsufficientBalanceError, WalletUidExhaustedError.
    - Any error aborts the caller's transaction; nothing is partially
      applied because balances and the row are flushed together.

Audit relevance:
    Each mutation records an AuditEvent (WALLET_CREDITED, WALLET_FROZEN,
    WALLET_RELEASED, WALLET_REVERSED, WALLET_RESERVED, WALLET_PAID_OUT) in
    the same transaction.
"""

import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from earnings_kernel.db.types import ZERO, require_positive_money
from earnings_kernel.domain.clock import Clock, SystemClock
from earnings_kernel.exceptions import (
    AlreadyReversedError,
    InsufficientBalanceError,
    InvalidReversalTargetError,
    MissingIdentifierError,
    NotFrozenError,
    TransactionNotFoundError,
    TransactionNotReleasableError,
    WalletUidExhaustedError,
)
from earnings_kernel.logging_config import get_logger
from earnings_kernel.models.audit_event import AuditAction
from earnings_kernel.models.wallet import (
    TxDirection,
    WalletAccount,
    WalletBizType,
    WalletTransaction,
    WalletTxStatus,
)
from earnings_kernel.services.auditor_service import SYSTEM_ACTOR_ID, AuditorService
from earnings_kernel.services.base import BaseService
from earnings_kernel.utils.idempotency import (
    settlement_key,
    transaction_key,
    withdrawal_key,
)

logger = get_logger("services.wallet_ledger")

WALLET_UID_LENGTH = 16
WALLET_UID_ALPHABET = string.ascii_uppercase + string.digits
WALLET_UID_MAX_ATTEMPTS = 5


def generate_wallet_uid() -> str:
    """Random 16-character A-Z0-9 wallet identifier."""
    return "".join(secrets.choice(WALLET_UID_ALPHABET) for _ in range(WALLET_UID_LENGTH))


@dataclass(frozen=True)
class LedgerRefs:
    """
    Business references attached to a ledger mutation.

    ``idempotency_key`` overrides the derived key.  Settlement credits and
    freezes derive theirs from (biz_type, order_id, user_id); reserves from
    the withdrawal id.
    """

    order_id: UUID | None = None
    settlement_id: UUID | None = None
    withdrawal_id: UUID | None = None
    idempotency_key: str | None = None
    remark: str | None = None


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a ledger mutation."""

    transaction_id: UUID
    account_id: UUID
    status: WalletTxStatus
    available_after: Decimal
    frozen_after: Decimal
    created: bool
    related_tx_id: UUID | None = None

    @classmethod
    def from_transaction(cls, tx: WalletTransaction, created: bool) -> "LedgerResult":
        return cls(
            transaction_id=tx.id,
            account_id=tx.account_id,
            status=tx.status,
            available_after=tx.available_after,
            frozen_after=tx.frozen_after,
            created=created,
            related_tx_id=tx.related_tx_id or tx.reversal_of_tx_id,
        )


class WalletLedgerService(BaseService[WalletTransaction]):
    """
    Append-only wallet ledger.

    Contract:
        Every public mutation locks the owning account, validates, applies
        the balance change, appends one WalletTransaction, flushes and
        records an audit event.  Returns a frozen LedgerResult.

    Guarantees:
        - Balances never go negative.
        - A given idempotency key moves money at most once.
        - Transaction status changes only along VALID_TRANSITIONS.

    Non-goals:
        - Does NOT commit.  The caller's transaction makes settlement rows
          and their ledger entries atomic.
        - Does NOT decide business policy (who is paid what); that is the
          settlement engine and the calling services.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
        uid_factory: Callable[[], str] | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._uid_factory = uid_factory or generate_wallet_uid

    # =========================================================================
    # Accounts
    # =========================================================================

    def get_account(self, user_id: int) -> WalletAccount | None:
        return self.session.execute(
            select(WalletAccount).where(WalletAccount.user_id == user_id)
        ).scalar_one_or_none()

    def ensure_account(self, user_id: int, actor_id: int = SYSTEM_ACTOR_ID) -> WalletAccount:
        """
        Return the user's wallet account, creating it on first use.

        Creation runs in a savepoint.  An IntegrityError means either another
        transaction created the account first (return theirs) or the random
        wallet_uid collided (retry with a new one, up to five attempts).

        Raises:
            WalletUidExhaustedError: If every attempt collided.
        """
        existing = self.get_account(user_id)
        if existing is not None:
            return existing

        for attempt in range(1, WALLET_UID_MAX_ATTEMPTS + 1):
            wallet_uid = self._uid_factory()
            savepoint = self.session.begin_nested()
            try:
                account = WalletAccount(
                    user_id=user_id,
                    wallet_uid=wallet_uid,
                    available_balance=ZERO,
                    frozen_balance=ZERO,
                    entry_count=0,
                )
                self.session.add(account)
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                existing = self.get_account(user_id)
                if existing is not None:
                    logger.debug(
                        "wallet_account_race_lost",
                        extra={"user_id": user_id},
                    )
                    return existing
                logger.warning(
                    "wallet_uid_collision",
                    extra={"user_id": user_id, "attempt": attempt},
                )
                continue

            self._auditor.record_account_opened(account.id, user_id, wallet_uid, actor_id)
            logger.info(
                "wallet_account_opened",
                extra={"user_id": user_id, "account_id": str(account.id)},
            )
            return account

        raise WalletUidExhaustedError(user_id, WALLET_UID_MAX_ATTEMPTS)

    # =========================================================================
    # Locking and lookup
    # =========================================================================

    def _lock_account(self, account_id: UUID) -> WalletAccount:
        return self.session.execute(
            select(WalletAccount)
            .where(WalletAccount.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _get_transaction(self, tx_id: UUID, lock: bool = False) -> WalletTransaction:
        stmt = select(WalletTransaction).where(WalletTransaction.id == tx_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        tx = self.session.execute(stmt).scalar_one_or_none()
        if tx is None:
            raise TransactionNotFoundError(str(tx_id))
        return tx

    def _find_by_key(self, key: str) -> WalletTransaction | None:
        return self.session.execute(
            select(WalletTransaction).where(WalletTransaction.idempotency_key == key)
        ).scalar_one_or_none()

    # =========================================================================
    # Core append
    # =========================================================================

    def _append(
        self,
        account: WalletAccount,
        *,
        direction: TxDirection,
        biz_type: WalletBizType,
        amount: Decimal,
        status: WalletTxStatus,
        available_delta: Decimal,
        frozen_delta: Decimal,
        idempotency_key: str,
        refs: LedgerRefs | None = None,
        unlock_at: datetime | None = None,
        reversal_of_tx_id: UUID | None = None,
        related_tx_id: UUID | None = None,
    ) -> WalletTransaction:
        """
        Apply deltas to a locked account and append the ledger row.

        Preconditions:
            - ``account`` was loaded by ``_lock_account`` in this transaction.

        Raises:
            InsufficientBalanceError: If either balance would go negative.
                Raised before anything is assigned.
        """
        refs = refs or LedgerRefs()
        new_available = account.available_balance + available_delta
        new_frozen = account.frozen_balance + frozen_delta

        if new_available < 0:
            raise InsufficientBalanceError(
                str(account.id), "available", account.available_balance, available_delta
            )
        if new_frozen < 0:
            raise InsufficientBalanceError(
                str(account.id), "frozen", account.frozen_balance, frozen_delta
            )

        account.available_balance = new_available
        account.frozen_balance = new_frozen
        account.entry_count += 1

        tx = WalletTransaction(
            account_id=account.id,
            user_id=account.user_id,
            entry_no=account.entry_count,
            direction=direction,
            biz_type=biz_type,
            amount=amount,
            status=status,
            order_id=refs.order_id,
            settlement_id=refs.settlement_id,
            withdrawal_id=refs.withdrawal_id,
            reversal_of_tx_id=reversal_of_tx_id,
            related_tx_id=related_tx_id,
            available_delta=available_delta,
            frozen_delta=frozen_delta,
            available_after=new_available,
            frozen_after=new_frozen,
            unlock_at=unlock_at,
            idempotency_key=idempotency_key,
            remark=refs.remark,
            created_at=self._clock.now(),
        )
        self.session.add(tx)
        self.session.flush()

        logger.info(
            "wallet_transaction_appended",
            extra={
                "account_id": str(account.id),
                "transaction_id": str(tx.id),
                "biz_type": biz_type.value,
                "amount": str(amount),
                "available_after": str(new_available),
                "frozen_after": str(new_frozen),
            },
        )
        return tx

    def _record(
        self,
        action: AuditAction,
        tx: WalletTransaction,
        actor_id: int,
        reason: str | None = None,
    ) -> None:
        self._auditor.record_wallet_transaction(
            action=action,
            transaction_id=tx.id,
            account_id=tx.account_id,
            biz_type=tx.biz_type.value,
            amount=tx.amount,
            available_after=tx.available_after,
            frozen_after=tx.frozen_after,
            actor_id=actor_id,
            related_tx_id=tx.related_tx_id or tx.reversal_of_tx_id,
            reason=reason,
        )

    def _inflow_key(self, biz_type: WalletBizType, user_id: int, refs: LedgerRefs) -> str:
        if refs.idempotency_key:
            return refs.idempotency_key
        if refs.order_id is not None:
            return settlement_key(biz_type, refs.order_id, user_id)
        raise MissingIdentifierError(("idempotency_key", "order_id"))

    def _replayed(self, tx: WalletTransaction) -> LedgerResult:
        logger.info(
            "wallet_idempotent_replay",
            extra={
                "transaction_id": str(tx.id),
                "idempotency_key": tx.idempotency_key,
            },
        )
        return LedgerResult.from_transaction(tx, created=False)

    # =========================================================================
    # Inflows
    # =========================================================================

    def credit(
        self,
        user_id: int,
        amount: object,
        biz_type: WalletBizType = WalletBizType.SETTLEMENT_EARNING,
        refs: LedgerRefs | None = None,
        actor_id: int = SYSTEM_ACTOR_ID,
    ) -> LedgerResult:
        """
        Credit the available balance.

        Raises:
            InvalidAmountError: If amount <= 0.
            MissingIdentifierError: If no idempotency key can be derived.
        """
        value = require_positive_money(amount)
        refs = refs or LedgerRefs()
        key = self._inflow_key(biz_type, user_id, refs)

        account = self._lock_account(self.ensure_account(user_id, actor_id).id)
        existing = self._find_by_key(key)
        if existing is not None:
            return self._replayed(existing)

        tx = self._append(
            account,
            direction=TxDirection.IN,
            biz_type=biz_type,
            amount=value,
            status=WalletTxStatus.AVAILABLE,
            available_delta=value,
            frozen_delta=ZERO,
            idempotency_key=key,
            refs=refs,
        )
        self._record(AuditAction.WALLET_CREDITED, tx, actor_id)
        return LedgerResult.from_transaction(tx, created=True)

    def freeze(
        self,
        user_id: int,
        amount: object,
        biz_type: WalletBizType = WalletBizType.SETTLEMENT_EARNING,
        refs: LedgerRefs | None = None,
        unlock_at: datetime | None = None,
        actor_id: int = SYSTEM_ACTOR_ID,
    ) -> LedgerResult:
        """
        Credit the frozen balance as a hold.

        ``unlock_at`` is when the hold release job may move the funds to the
        available balance; None leaves the hold for an explicit release.
        """
        value = require_positive_money(amount)
        refs = refs or LedgerRefs()
        key = self._inflow_key(biz_type, user_id, refs)

        account = self._lock_account(self.ensure_account(user_id, actor_id).id)
        existing = self._find_by_key(key)
        if existing is not None:
            return self._replayed(existing)

        tx = self._append(
            account,
            direction=TxDirection.IN,
            biz_type=biz_type,
            amount=value,
            status=WalletTxStatus.FROZEN,
            available_delta=ZERO,
            frozen_delta=value,
            idempotency_key=key,
            refs=refs,
            unlock_at=unlock_at,
        )
        self._record(AuditAction.WALLET_FROZEN, tx, actor_id)
        return LedgerResult.from_transaction(tx, created=True)

    # =========================================================================
    # Transitions
    # =========================================================================

    def release(
        self,
        frozen_tx_id: UUID,
        actor_id: int = SYSTEM_ACTOR_ID,
    ) -> LedgerResult:
        """
        Move a frozen inflow to the available balance.

        The original becomes AVAILABLE and a RELEASE_FROZEN row pointing at
        it (``related_tx_id``) records the movement and the new snapshot.

        Raises:
            TransactionNotFoundError: Unknown transaction.
            TransactionNotReleasableError: Withdrawal reserves and outflows
                are settled by payout or reversal, not release.
            NotFrozenError: The transaction is not FROZEN.
        """
        target = self._get_transaction(frozen_tx_id)
        account = self._lock_account(target.account_id)
        key = transaction_key(WalletBizType.RELEASE_FROZEN, frozen_tx_id)

        target = self._get_transaction(frozen_tx_id, lock=True)
        if (
            target.direction is not TxDirection.IN
            or target.biz_type is WalletBizType.WITHDRAW_RESERVE
            or target.is_reversal
            or target.is_transition
        ):
            raise TransactionNotReleasableError(str(target.id), target.biz_type.value)
        if target.status is not WalletTxStatus.FROZEN:
            raise NotFrozenError(str(target.id), target.status.value)

        tx = self._append(
            account,
            direction=TxDirection.IN,
            biz_type=WalletBizType.RELEASE_FROZEN,
            amount=target.amount,
            status=WalletTxStatus.AVAILABLE,
            available_delta=target.amount,
            frozen_delta=-target.amount,
            idempotency_key=key,
            refs=LedgerRefs(
                order_id=target.order_id,
                settlement_id=target.settlement_id,
            ),
            related_tx_id=target.id,
        )
        target.transition_to(WalletTxStatus.AVAILABLE)
        self.session.flush()

        self._record(AuditAction.WALLET_RELEASED, tx, actor_id)
        return LedgerResult.from_transaction(tx, created=True)

    def reverse(
        self,
        original_tx_id: UUID,
        biz_type: WalletBizType = WalletBizType.REFUND_REVERSAL,
        reason: str | None = None,
        actor_id: int = SYSTEM_ACTOR_ID,
    ) -> LedgerResult:
        """
        Cancel a transaction by appending its exact negation.

        The net effect cancelled is the original's own deltas plus those of
        every live transition row (release, payout) that settled it.  The
        original and those transition rows become REVERSED; the new row is
        AVAILABLE and points back through ``reversal_of_tx_id``.

        Raises:
            TransactionNotFoundError: Unknown transaction.
            InvalidReversalTargetError: Target is itself a reversal or a
                transition row.
            AlreadyReversedError: Target already reversed.
            InsufficientBalanceError: The balance the original funded has
                since been spent.
        """
        target = self._get_transaction(original_tx_id)
        if target.is_reversal:
            raise InvalidReversalTargetError(str(target.id), "reversal rows cannot be reversed")
        if target.is_transition:
            raise InvalidReversalTargetError(
                str(target.id),
                "transition rows are reversed together with the transaction they settle",
            )

        account = self._lock_account(target.account_id)
        key = transaction_key(biz_type, original_tx_id)

        target = self._get_transaction(original_tx_id, lock=True)
        prior = self.session.execute(
            select(WalletTransaction).where(
                WalletTransaction.reversal_of_tx_id == target.id
            )
        ).scalar_one_or_none()
        if prior is not None or target.status is WalletTxStatus.REVERSED:
            raise AlreadyReversedError(
                str(target.id), str(prior.id) if prior is not None else None
            )

        settling = list(
            self.session.execute(
                select(WalletTransaction)
                .where(
                    WalletTransaction.related_tx_id == target.id,
                    WalletTransaction.status != WalletTxStatus.REVERSED,
                )
                .order_by(WalletTransaction.entry_no)
                .with_for_update()
            ).scalars()
        )
        net_available = target.available_delta + sum(
            (row.available_delta for row in settling), ZERO
        )
        net_frozen = target.frozen_delta + sum(
            (row.frozen_delta for row in settling), ZERO
        )

        opposite = TxDirection.OUT if target.direction is TxDirection.IN else TxDirection.IN
        tx = self._append(
            account,
            direction=opposite,
            biz_type=biz_type,
            amount=target.amount,
            status=WalletTxStatus.AVAILABLE,
            available_delta=-net_available,
            frozen_delta=-net_frozen,
            idempotency_key=key,
            refs=LedgerRefs(
                order_id=target.order_id,
                settlement_id=target.settlement_id,
                withdrawal_id=target.withdrawal_id,
                remark=reason,
            ),
            reversal_of_tx_id=target.id,
        )
        target.transition_to(WalletTxStatus.REVERSED)
        for row in settling:
            row.transition_to(WalletTxStatus.REVERSED)
        self.session.flush()

        logger.info(
            "wallet_transaction_reversed",
            extra={
                "original_tx_id": str(target.id),
                "reversal_tx_id": str(tx.id),
                "settling_rows": len(settling),
            },
        )
        self._record(AuditAction.WALLET_REVERSED, tx, actor_id, reason=reason)
        return LedgerResult.from_transaction(tx, created=True)

    # =========================================================================
    # Withdrawals
    # =========================================================================

    def reserve(
        self,
        user_id: int,
        amount: object,
        biz_type: WalletBizType = WalletBizType.WITHDRAW_RESERVE,
        refs: LedgerRefs | None = None,
        actor_id: int = SYSTEM_ACTOR_ID,
    ) -> LedgerResult:
        """
        Set available funds aside for a withdrawal.

        Raises:
            InsufficientBalanceError: available_balance < amount.
        """
        value = require_positive_money(amount)
        refs = refs or LedgerRefs()
        if refs.idempotency_key:
            key = refs.idempotency_key
        elif refs.withdrawal_id is not None:
            key = withdrawal_key(user_id, refs.withdrawal_id)
        else:
            raise MissingIdentifierError(("idempotency_key", "withdrawal_id"))

        account = self._lock_account(self.ensure_account(user_id, actor_id).id)
        existing = self._find_by_key(key)
        if existing is not None:
            return self._replayed(existing)

        tx = self._append(
            account,
            direction=TxDirection.OUT,
            biz_type=biz_type,
            amount=value,
            status=WalletTxStatus.FROZEN,
            available_delta=-value,
            frozen_delta=value,
            idempotency_key=key,
            refs=refs,
        )
        self._record(AuditAction.WALLET_RESERVED, tx, actor_id)
        return LedgerResult.from_transaction(tx, created=True)

    def payout(
        self,
        reserve_tx_id: UUID,
        biz_type: WalletBizType = WalletBizType.WITHDRAW_PAYOUT,
        actor_id: int = SYSTEM_ACTOR_ID,
    ) -> LedgerResult:
        """
        Pay out a reserve: the reserved funds leave the frozen balance.

        Raises:
            TransactionNotReleasableError: Target is not a withdrawal reserve.
            NotFrozenError: Reserve already paid out or released.
        """
        target = self._get_transaction(reserve_tx_id)
        account = self._lock_account(target.account_id)
        key = transaction_key(biz_type, reserve_tx_id)

        target = self._get_transaction(reserve_tx_id, lock=True)
        if target.biz_type is not WalletBizType.WITHDRAW_RESERVE:
            raise TransactionNotReleasableError(str(target.id), target.biz_type.value)
        if target.status is not WalletTxStatus.FROZEN:
            raise NotFrozenError(str(target.id), target.status.value)

        tx = self._append(
            account,
            direction=TxDirection.OUT,
            biz_type=biz_type,
            amount=target.amount,
            status=WalletTxStatus.AVAILABLE,
            available_delta=ZERO,
            frozen_delta=-target.amount,
            idempotency_key=key,
            refs=LedgerRefs(withdrawal_id=target.withdrawal_id),
            related_tx_id=target.id,
        )
        target.transition_to(WalletTxStatus.AVAILABLE)
        self.session.flush()

        self._record(AuditAction.WALLET_PAID_OUT, tx, actor_id)
        return LedgerResult.from_transaction(tx, created=True)
