"""
earnings_services.settlement_service -- Order settlement orchestration.

Responsibility:
    Turns a finished order into per-worker settlement rows and wallet holds:
    loads the order and its structured contributions, runs the settlement
    engine, validates the split, persists one OrderSettlement per
    contributor and freezes each positive final amount on the worker's
    wallet.  Also owns the later settlement lifecycle: manual adjustment,
    mark-paid, refund-driven reversal and the settlement batch report.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes SettlementEngine (pure) with WalletLedgerService and
    AuditorService (kernel I/O).

Invariants enforced:
    - Atomicity: settlement rows, ledger holds, the order's club earnings
      and the audit event are flushed in the caller's transaction and commit
      or roll back together.  This service never commits.
    - Validation before persistence: a split whose total exceeds the order
      amount beyond tolerance raises SettlementExceedsOrderError and writes
      nothing.
    - Idempotency: one settlement per (order, worker).  Re-settling skips
      existing rows, and the ledger's derived idempotency key prevents a
      second hold.
    - Non-positive final earnings create no ledger entry.

Failure modes:
    - OrderNotFoundError, OrderNotSettleableError,
      SettlementExceedsOrderError.
    - SettlementNotFoundError, SettlementAlreadyPaidError on adjustment.
    - InsufficientBalanceError from the ledger when a refund would reverse
      earnings that were already withdrawn; the whole refund aborts.

Audit relevance:
    ORDER_SETTLED, SETTLEMENT_ADJUSTED, SETTLEMENT_PAID and ORDER_REFUNDED
    events are recorded in the hash chain next to the ledger's own events.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from earnings_engines.settlement import (
    DEFAULT_FREEZE_DAYS,
    DEFAULT_TOTAL_TOLERANCE,
    Contribution,
    SettlementComputation,
    SettlementEngine,
    compute_unlock_at,
    settlement_type_for,
    split_customer_service_share,
)
from earnings_kernel.db.types import ZERO, round_money, to_money
from earnings_kernel.domain.clock import Clock, SystemClock
from earnings_kernel.exceptions import (
    InvalidAmountError,
    InvalidDateRangeError,
    OrderNotFoundError,
    OrderNotSettleableError,
    SettlementAlreadyPaidError,
    SettlementExceedsOrderError,
    SettlementNotFoundError,
)
from earnings_kernel.logging_config import LogContext, get_logger
from earnings_kernel.models.order import SETTLEABLE_STATUSES, Order, OrderStatus
from earnings_kernel.models.settlement import (
    OrderSettlement,
    PaymentStatus,
    SettlementType,
)
from earnings_kernel.models.wallet import (
    TxDirection,
    WalletBizType,
    WalletTransaction,
    WalletTxStatus,
)
from earnings_kernel.services.auditor_service import SYSTEM_ACTOR_ID, AuditorService
from earnings_kernel.services.wallet_ledger import LedgerRefs, WalletLedgerService

logger = get_logger("services.settlement")


class SettlementBatchType(str, Enum):
    """Payout cycle a settlement batch report covers."""

    EXPERIENCE_3DAY = "EXPERIENCE_3DAY"
    MONTHLY_REGULAR = "MONTHLY_REGULAR"


_BATCH_SETTLEMENT_TYPE = {
    SettlementBatchType.EXPERIENCE_3DAY: SettlementType.EXPERIENCE,
    SettlementBatchType.MONTHLY_REGULAR: SettlementType.REGULAR,
}


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of settle_order()."""

    order_id: UUID
    club_earnings: Decimal
    created_count: int
    settlement_ids: tuple[UUID, ...]
    hold_tx_ids: tuple[UUID, ...]


@dataclass(frozen=True)
class AdjustmentOutcome:
    settlement_id: UUID
    previous_final: Decimal
    manual_adjustment: Decimal
    final_earnings: Decimal


@dataclass(frozen=True)
class RefundOutcome:
    """Result of refund_order(): the reversal rows written for the order."""

    order_id: UUID
    reversal_tx_ids: tuple[UUID, ...]
    status_changed: bool


@dataclass(frozen=True)
class PlayerBatchLine:
    user_id: int
    settlement_type: SettlementType
    total_orders: int
    total_earnings: Decimal


@dataclass(frozen=True)
class SettlementBatchReport:
    """
    Settlement totals for one payout cycle.

    total_income and club_income count each order once even when several
    workers were settled on it.
    """

    batch_type: SettlementBatchType
    period_start: datetime
    period_end: datetime
    total_income: Decimal
    club_income: Decimal
    payable_to_players: Decimal
    players: tuple[PlayerBatchLine, ...]


class SettlementService:
    """
    Settles orders into worker wallets.

    Contract:
        Every mutating method works inside the caller's transaction and
        flushes; callers wrap it in session_scope().

    Guarantees:
        - settle_order() writes all rows for an order or none.
        - final_earnings == calculated_earnings + manual_adjustment after
          every adjustment.

    Non-goals:
        - Does NOT release holds; the hold release job does that once the
          unlock time passes.
        - Does NOT parse free-text contributions; OrderContribution rows are
          produced upstream.
    """

    def __init__(
        self,
        session: Session,
        ledger: WalletLedgerService | None = None,
        auditor: AuditorService | None = None,
        engine: SettlementEngine | None = None,
        clock: Clock | None = None,
        total_tolerance: Decimal = DEFAULT_TOTAL_TOLERANCE,
        freeze_days: Mapping[str, int] | None = None,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._ledger = ledger or WalletLedgerService(session, self._auditor, self._clock)
        self._engine = engine or SettlementEngine()
        self._tolerance = total_tolerance
        self._freeze_days = dict(freeze_days) if freeze_days is not None else dict(DEFAULT_FREEZE_DAYS)

    # =========================================================================
    # Lookup
    # =========================================================================

    def _get_order(self, order_id: UUID, lock: bool = False) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        order = self.session.execute(stmt).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    def _get_settlement(self, settlement_id: UUID) -> OrderSettlement:
        settlement = self.session.execute(
            select(OrderSettlement)
            .where(OrderSettlement.id == settlement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if settlement is None:
            raise SettlementNotFoundError(str(settlement_id))
        return settlement

    # =========================================================================
    # Computation
    # =========================================================================

    def _compute(self, order: Order) -> SettlementComputation:
        club_rate = order.club_rate
        if club_rate is None:
            club_rate = self._engine.get_default_split_rule(order.order_type).club_rate

        contributions = [
            Contribution(
                worker_id=row.user_id,
                contribution=row.contribution,
                rating_rate=row.rating_rate,
                is_supplement=row.is_supplement,
            )
            for row in order.contributions
        ]
        return self._engine.compute_earnings(
            order_amount=order.settlement_amount,
            base_amount=order.base_amount,
            club_rate=club_rate,
            contributions=contributions,
            supplement_amount=order.supplement_amount,
            order_type=order.order_type,
        )

    def compute_settlement(self, order_id: UUID) -> SettlementComputation:
        """
        Run the settlement engine for an order without persisting anything.

        The club rate is the order's override or the order type's default
        rule; the order amount is paid_amount (receivable_amount for gifted
        orders).

        Raises:
            OrderNotFoundError: Unknown order.
        """
        return self._compute(self._get_order(order_id))

    # =========================================================================
    # Settlement
    # =========================================================================

    def settle_order(
        self,
        order_id: UUID,
        actor_id: int = SYSTEM_ACTOR_ID,
    ) -> SettlementOutcome:
        """
        Persist settlement rows for every contributor and freeze their
        positive earnings.

        Raises:
            OrderNotFoundError: Unknown order.
            OrderNotSettleableError: Order is not ARCHIVED or COMPLETED.
            SettlementExceedsOrderError: Split exceeds the order amount
                beyond tolerance.
        """
        order = self._get_order(order_id, lock=True)
        with LogContext.bind(order_id=str(order.id), actor_id=actor_id):
            if order.status not in SETTLEABLE_STATUSES:
                raise OrderNotSettleableError(str(order.id), order.status.value)

            computation = self._compute(order)
            finals = [w.final_earnings for w in computation.worker_earnings]
            if not self._engine.validate_total_earnings(
                computation.club_earnings,
                finals,
                order.settlement_amount,
                self._tolerance,
            ):
                logger.warning(
                    "settlement_exceeds_order",
                    extra={
                        "order_amount": str(order.settlement_amount),
                        "club_earnings": str(computation.club_earnings),
                        "worker_total": str(computation.worker_total),
                    },
                )
                raise SettlementExceedsOrderError(
                    str(order.id),
                    order.settlement_amount,
                    computation.club_earnings,
                    computation.worker_total,
                )

            existing = set(
                self.session.execute(
                    select(OrderSettlement.user_id).where(
                        OrderSettlement.order_id == order.id
                    )
                ).scalars()
            )

            now = self._clock.now()
            settlement_type = settlement_type_for(order.order_type)
            unlock_at = compute_unlock_at(
                order.order_type,
                order.completed_at or now,
                self._freeze_days,
            )
            cs_shares = split_customer_service_share(
                order.settlement_amount,
                order.cs_rate,
                len(computation.worker_earnings),
            )

            settlement_ids: list[UUID] = []
            hold_tx_ids: list[UUID] = []
            for earning, cs_share in zip(computation.worker_earnings, cs_shares):
                if earning.worker_id in existing:
                    continue

                settlement = OrderSettlement(
                    order_id=order.id,
                    user_id=earning.worker_id,
                    settlement_type=settlement_type,
                    base_earnings=earning.base_earnings,
                    supplement_earnings=earning.supplement_earnings,
                    calculated_earnings=earning.final_earnings,
                    manual_adjustment=ZERO,
                    final_earnings=earning.final_earnings,
                    cs_earnings=cs_share,
                    rating_rate=earning.rating_rate,
                    is_supplement=earning.is_supplement,
                    payment_status=PaymentStatus.UNPAID,
                    settled_at=now,
                    created_at=now,
                )
                self.session.add(settlement)
                self.session.flush()
                settlement_ids.append(settlement.id)

                if earning.final_earnings > 0:
                    result = self._ledger.freeze(
                        earning.worker_id,
                        earning.final_earnings,
                        WalletBizType.SETTLEMENT_EARNING,
                        LedgerRefs(order_id=order.id, settlement_id=settlement.id),
                        unlock_at=unlock_at,
                        actor_id=actor_id,
                    )
                    hold_tx_ids.append(result.transaction_id)

            if settlement_ids:
                order.club_earnings = computation.club_earnings
                order.settled_at = now
                self.session.flush()
                self._auditor.record_order_settled(
                    order.id,
                    order.auto_serial,
                    computation.club_earnings,
                    len(settlement_ids),
                    actor_id,
                )

            logger.info(
                "order_settled",
                extra={
                    "auto_serial": order.auto_serial,
                    "club_earnings": str(computation.club_earnings),
                    "created_count": len(settlement_ids),
                    "skipped_count": len(existing),
                    "hold_count": len(hold_tx_ids),
                },
            )

        return SettlementOutcome(
            order_id=order.id,
            club_earnings=computation.club_earnings,
            created_count=len(settlement_ids),
            settlement_ids=tuple(settlement_ids),
            hold_tx_ids=tuple(hold_tx_ids),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def adjust_settlement(
        self,
        settlement_id: UUID,
        manual_adjustment: object,
        actor_id: int,
        remark: str | None = None,
    ) -> AdjustmentOutcome:
        """
        Set the manual adjustment of an unpaid settlement.

        The adjustment replaces any earlier one; final_earnings becomes
        calculated_earnings + manual_adjustment.  The wallet hold written at
        settlement time is not changed.

        Raises:
            SettlementNotFoundError: Unknown settlement.
            SettlementAlreadyPaidError: The settlement is PAID.
            InvalidAmountError: Adjustment has more than two decimal places.
        """
        adjustment = to_money(manual_adjustment)
        if round_money(adjustment) != adjustment:
            raise InvalidAmountError(manual_adjustment, "more than 2 decimal places")
        adjustment = round_money(adjustment)

        settlement = self._get_settlement(settlement_id)
        if settlement.payment_status is PaymentStatus.PAID:
            raise SettlementAlreadyPaidError(str(settlement.id))

        previous_final = settlement.final_earnings
        settlement.manual_adjustment = adjustment
        settlement.final_earnings = settlement.calculated_earnings + adjustment
        settlement.adjusted_by = actor_id
        settlement.adjusted_at = self._clock.now()
        settlement.adjust_remark = remark
        self.session.flush()

        self._auditor.record_settlement_adjusted(
            settlement.id,
            previous_final,
            adjustment,
            settlement.final_earnings,
            actor_id,
            remark,
        )
        logger.info(
            "settlement_adjusted",
            extra={
                "settlement_id": str(settlement.id),
                "previous_final": str(previous_final),
                "final_earnings": str(settlement.final_earnings),
            },
        )
        return AdjustmentOutcome(
            settlement_id=settlement.id,
            previous_final=previous_final,
            manual_adjustment=adjustment,
            final_earnings=settlement.final_earnings,
        )

    def mark_paid(
        self,
        settlement_ids: Iterable[UUID],
        actor_id: int,
        remark: str | None = None,
    ) -> int:
        """
        Mark UNPAID settlements as PAID.

        Already-paid and unknown ids are skipped.

        Returns:
            Number of settlements that moved to PAID.
        """
        ids = list(dict.fromkeys(settlement_ids))
        if not ids:
            return 0

        rows = self.session.execute(
            select(OrderSettlement)
            .where(
                OrderSettlement.id.in_(ids),
                OrderSettlement.payment_status == PaymentStatus.UNPAID,
            )
            .order_by(OrderSettlement.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()

        now = self._clock.now()
        for settlement in rows:
            settlement.payment_status = PaymentStatus.PAID
            settlement.paid_at = now
            settlement.payment_remark = remark
        self.session.flush()

        for settlement in rows:
            self._auditor.record_settlement_paid(
                settlement.id, settlement.final_earnings, actor_id, remark
            )

        logger.info(
            "settlements_marked_paid",
            extra={"requested": len(ids), "updated": len(rows)},
        )
        return len(rows)

    def refund_order(
        self,
        order_id: UUID,
        actor_id: int,
        reason: str,
    ) -> RefundOutcome:
        """
        Refund an order and reverse the settlement earnings it produced.

        Every live SETTLEMENT_EARNING inflow of the order is reversed with
        REFUND_REVERSAL, whether it is still frozen or already released.

        Raises:
            OrderNotFoundError: Unknown order.
            InsufficientBalanceError: A worker already spent the earnings;
                nothing is reversed.
        """
        order = self._get_order(order_id, lock=True)
        with LogContext.bind(order_id=str(order.id), actor_id=actor_id):
            earning_ids = list(
                self.session.execute(
                    select(WalletTransaction.id)
                    .where(
                        WalletTransaction.order_id == order.id,
                        WalletTransaction.biz_type == WalletBizType.SETTLEMENT_EARNING,
                        WalletTransaction.direction == TxDirection.IN,
                        WalletTransaction.status != WalletTxStatus.REVERSED,
                        WalletTransaction.reversal_of_tx_id.is_(None),
                    )
                    .order_by(WalletTransaction.user_id, WalletTransaction.entry_no)
                ).scalars()
            )

            reversal_ids = [
                self._ledger.reverse(
                    tx_id,
                    WalletBizType.REFUND_REVERSAL,
                    reason=reason,
                    actor_id=actor_id,
                ).transaction_id
                for tx_id in earning_ids
            ]

            status_changed = order.status is not OrderStatus.REFUNDED
            if status_changed:
                order.status = OrderStatus.REFUNDED
                self.session.flush()

            if status_changed or reversal_ids:
                self._auditor.record_order_refunded(
                    order.id, order.auto_serial, reversal_ids, actor_id, reason
                )
            logger.info(
                "order_refunded",
                extra={
                    "auto_serial": order.auto_serial,
                    "reversal_count": len(reversal_ids),
                    "status_changed": status_changed,
                },
            )

        return RefundOutcome(
            order_id=order.id,
            reversal_tx_ids=tuple(reversal_ids),
            status_changed=status_changed,
        )

    # =========================================================================
    # Reporting
    # =========================================================================

    def default_batch_period(
        self,
        batch_type: SettlementBatchType,
    ) -> tuple[datetime, datetime]:
        """
        Default window for a batch report, in UTC.

        EXPERIENCE_3DAY: three days starting at midnight three days ago.
        MONTHLY_REGULAR: the previous calendar month.
        """
        now = self._clock.now().astimezone(timezone.utc)
        if batch_type is SettlementBatchType.EXPERIENCE_3DAY:
            start = (now - timedelta(days=3)).replace(hour=0, minute=0, second=0, microsecond=0)
            return start, start + timedelta(days=3)

        first_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        last_month = first_of_month - timedelta(days=1)
        return last_month.replace(day=1), first_of_month

    def query_settlement_batch(
        self,
        batch_type: SettlementBatchType | str,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
    ) -> SettlementBatchReport:
        """
        Totals and per-player aggregates for settlements made in
        ``[start_at, end_at)`` for one payout cycle.

        Players are sorted by total earnings, highest first.

        Raises:
            InvalidDateRangeError: Only one bound given, or start >= end.
        """
        batch_type = SettlementBatchType(batch_type)
        if start_at is None and end_at is None:
            start_at, end_at = self.default_batch_period(batch_type)
        elif start_at is None or end_at is None:
            raise InvalidDateRangeError(start_at, end_at, "both bounds are required")
        if start_at >= end_at:
            raise InvalidDateRangeError(start_at, end_at, "start must be before end")

        rows = self.session.execute(
            select(OrderSettlement, Order)
            .join(Order, Order.id == OrderSettlement.order_id)
            .where(
                OrderSettlement.settled_at >= start_at,
                OrderSettlement.settled_at < end_at,
                OrderSettlement.settlement_type == _BATCH_SETTLEMENT_TYPE[batch_type],
            )
            .order_by(OrderSettlement.settled_at, OrderSettlement.user_id)
        ).all()

        orders: dict[UUID, Order] = {}
        players: dict[int, dict] = {}
        payable = ZERO
        for settlement, order in rows:
            orders[order.id] = order
            payable += settlement.final_earnings
            line = players.setdefault(
                settlement.user_id,
                {"type": settlement.settlement_type, "orders": 0, "earnings": ZERO},
            )
            line["orders"] += 1
            line["earnings"] += settlement.final_earnings

        total_income = sum((o.paid_amount for o in orders.values()), ZERO)
        club_income = sum((o.club_earnings or ZERO for o in orders.values()), ZERO)

        player_lines = sorted(
            (
                PlayerBatchLine(
                    user_id=user_id,
                    settlement_type=data["type"],
                    total_orders=data["orders"],
                    total_earnings=data["earnings"],
                )
                for user_id, data in players.items()
            ),
            key=lambda line: (-line.total_earnings, line.user_id),
        )

        return SettlementBatchReport(
            batch_type=batch_type,
            period_start=start_at,
            period_end=end_at,
            total_income=total_income,
            club_income=club_income,
            payable_to_players=payable,
            players=tuple(player_lines),
        )
