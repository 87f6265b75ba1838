"""
earnings_services.withdrawal_service -- Worker withdrawal requests.

Responsibility:
    Accepts a worker's withdrawal request by reserving the amount on the
    wallet (available -> frozen) and settles it on review: approval pays the
    reserve out, rejection reverses it back to available.

Architecture position:
    Services -- orchestration over WalletLedgerService and AuditorService.

Invariants enforced:
    - A request and its WITHDRAW_RESERVE row are written in one transaction.
    - (user_id, idempotency_key) identifies a request: resubmitting returns
      the original request and reserves nothing.
    - A request is reviewed at most once (PENDING_REVIEW -> PAID | REJECTED).

Failure modes:
    - InvalidAmountError: amount not positive or below the minimum.
    - InsufficientBalanceError: available balance below the amount.
    - WithdrawalNotFoundError, WithdrawalAlreadyReviewedError on review.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from earnings_kernel.db.types import require_positive_money
from earnings_kernel.domain.clock import Clock, SystemClock
from earnings_kernel.exceptions import (
    InvalidAmountError,
    WithdrawalAlreadyReviewedError,
    WithdrawalNotFoundError,
)
from earnings_kernel.logging_config import get_logger
from earnings_kernel.models.audit_event import AuditAction
from earnings_kernel.models.wallet import WalletBizType
from earnings_kernel.models.withdrawal import WithdrawalRequest, WithdrawalStatus
from earnings_kernel.services.auditor_service import AuditorService
from earnings_kernel.services.wallet_ledger import LedgerRefs, WalletLedgerService

logger = get_logger("services.withdrawal")

DEFAULT_MIN_AMOUNT = Decimal("1.00")


@dataclass(frozen=True)
class WithdrawalView:
    """A withdrawal request, detached from the session."""

    request_id: UUID
    user_id: int
    amount: Decimal
    status: WithdrawalStatus
    payout_channel: str
    reserve_tx_id: UUID | None
    created: bool

    @classmethod
    def from_model(cls, request: WithdrawalRequest, created: bool) -> "WithdrawalView":
        return cls(
            request_id=request.id,
            user_id=request.user_id,
            amount=request.amount,
            status=request.status,
            payout_channel=request.payout_channel,
            reserve_tx_id=request.reserve_tx_id,
            created=created,
        )


class WithdrawalService:
    """
    Withdrawal apply and review.

    Non-goals:
        - Does NOT talk to payment channels.  Approval records that the
          money left the wallet; the transfer itself happens elsewhere.
    """

    def __init__(
        self,
        session: Session,
        ledger: WalletLedgerService | None = None,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
        min_amount: Decimal = DEFAULT_MIN_AMOUNT,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._ledger = ledger or WalletLedgerService(session, self._auditor, self._clock)
        self._min_amount = min_amount

    def _find(self, user_id: int, idempotency_key: str) -> WithdrawalRequest | None:
        return self.session.execute(
            select(WithdrawalRequest).where(
                WithdrawalRequest.user_id == user_id,
                WithdrawalRequest.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()

    def apply(
        self,
        user_id: int,
        amount: object,
        idempotency_key: str,
        payout_channel: str,
    ) -> WithdrawalView:
        """
        Create a PENDING_REVIEW request and reserve its amount.

        Raises:
            InvalidAmountError: Amount not positive or below the minimum.
            InsufficientBalanceError: Not enough available balance.
        """
        value = require_positive_money(amount)
        if value < self._min_amount:
            raise InvalidAmountError(amount, f"below the minimum withdrawal {self._min_amount}")

        existing = self._find(user_id, idempotency_key)
        if existing is not None:
            logger.info(
                "withdrawal_idempotent_replay",
                extra={"request_id": str(existing.id), "user_id": user_id},
            )
            return WithdrawalView.from_model(existing, created=False)

        account = self._ledger.ensure_account(user_id, user_id)
        request = WithdrawalRequest(
            id=uuid4(),
            user_id=user_id,
            account_id=account.id,
            amount=value,
            status=WithdrawalStatus.PENDING_REVIEW,
            payout_channel=payout_channel,
            idempotency_key=idempotency_key,
            created_at=self._clock.now(),
        )
        savepoint = self.session.begin_nested()
        try:
            self.session.add(request)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            existing = self._find(user_id, idempotency_key)
            if existing is None:
                raise
            return WithdrawalView.from_model(existing, created=False)

        reserve = self._ledger.reserve(
            user_id,
            value,
            WalletBizType.WITHDRAW_RESERVE,
            LedgerRefs(withdrawal_id=request.id, remark=payout_channel),
            actor_id=user_id,
        )
        request.reserve_tx_id = reserve.transaction_id
        self.session.flush()

        self._auditor.record_withdrawal(
            AuditAction.WITHDRAWAL_REQUESTED, request.id, user_id, value, user_id
        )
        logger.info(
            "withdrawal_requested",
            extra={
                "request_id": str(request.id),
                "user_id": user_id,
                "amount": str(value),
            },
        )
        return WithdrawalView.from_model(request, created=True)

    def review(
        self,
        request_id: UUID,
        approve: bool,
        actor_id: int,
        remark: str | None = None,
    ) -> WithdrawalView:
        """
        Approve (pay out) or reject (release back to available) a request.

        Raises:
            WithdrawalNotFoundError: Unknown request.
            WithdrawalAlreadyReviewedError: Request is not PENDING_REVIEW.
        """
        request = self.session.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if request is None:
            raise WithdrawalNotFoundError(str(request_id))
        if request.status is not WithdrawalStatus.PENDING_REVIEW:
            raise WithdrawalAlreadyReviewedError(str(request.id), request.status.value)

        if approve:
            self._ledger.payout(
                request.reserve_tx_id, WalletBizType.WITHDRAW_PAYOUT, actor_id=actor_id
            )
            request.status = WithdrawalStatus.PAID
            action = AuditAction.WITHDRAWAL_APPROVED
        else:
            self._ledger.reverse(
                request.reserve_tx_id,
                WalletBizType.WITHDRAW_RELEASE,
                reason=remark,
                actor_id=actor_id,
            )
            request.status = WithdrawalStatus.REJECTED
            action = AuditAction.WITHDRAWAL_REJECTED

        request.reviewed_by = actor_id
        request.reviewed_at = self._clock.now()
        request.review_remark = remark
        self.session.flush()

        self._auditor.record_withdrawal(
            action, request.id, request.user_id, request.amount, actor_id, remark
        )
        logger.info(
            "withdrawal_reviewed",
            extra={
                "request_id": str(request.id),
                "status": request.status.value,
                "actor_id": actor_id,
            },
        )
        return WithdrawalView.from_model(request, created=False)
