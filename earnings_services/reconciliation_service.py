"""
earnings_services.reconciliation_service -- Read-only cross-check of orders,
settlements and the wallet ledger.

Responsibility:
    Answers the finance team's reconciliation questions over a payment-time
    window: income versus settlement expense (summary), one row per order
    with abnormality flags (orders), a single order with its full ledger
    trail (order_detail), and the dashboard revenue overview.

Architecture position:
    Services -- read orchestration over ReconciliationSelector and
    WalletSelector.  The only write is the best-effort audit record of the
    query itself.

Invariants enforced:
    - Authorization first: authorize_reconciliation() runs before any query
      and denial raises ReconciliationAccessDeniedError.
    - Windows are half-open ``[start_at, end_at)`` with aware datetimes and
      start_at < end_at (InvalidDateRangeError otherwise).
    - One read transaction: every sub-query runs on the caller's session.
      On PostgreSQL callers obtain it from read_snapshot_scope().
    - Refund completion: a refunded order counts as complete only when a
      ledger row for it is a REFUND_REVERSAL or carries reversal_of_tx_id.
    - only_abnormal filters the full result set before pagination.
    - Chunked lookups: order-id IN lists are split by ``chunk_size``.

Failure modes:
    - ReconciliationAccessDeniedError, InvalidDateRangeError,
      MissingIdentifierError, OrderNotFoundError.
    - Sub-query errors propagate; no partial aggregate is returned.
    - Audit write failures are logged at WARNING and swallowed.

Audit relevance:
    Each query records RECONCILE_SUMMARY, RECONCILE_ORDERS,
    RECONCILE_ORDER_DETAIL or REVENUE_OVERVIEW with the caller and filters,
    so who looked at which books is traceable.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from earnings_kernel.db.types import ZERO, round_money
from earnings_kernel.domain.clock import Clock, SystemClock
from earnings_kernel.exceptions import (
    InvalidDateRangeError,
    MissingIdentifierError,
    OrderNotFoundError,
)
from earnings_kernel.logging_config import get_logger
from earnings_kernel.models.audit_event import AuditAction
from earnings_kernel.models.order import Order, OrderStatus, OrderType
from earnings_kernel.models.settlement import (
    OrderSettlement,
    PaymentStatus,
    SettlementType,
)
from earnings_kernel.models.wallet import WalletBizType
from earnings_kernel.selectors.base import MAX_PAGE_SIZE, Page
from earnings_kernel.selectors.reconciliation_selector import (
    OrderScope,
    ReconciliationSelector,
)
from earnings_kernel.selectors.wallet_selector import WalletTransactionView
from earnings_kernel.services.auditor_service import AuditorService
from earnings_kernel.utils.chunking import DEFAULT_CHUNK_SIZE
from earnings_services.authorization import (
    DEFAULT_RECONCILIATION_ROLES,
    Caller,
    authorize_reconciliation,
)

logger = get_logger("services.reconciliation")

DEFAULT_PAGE_SIZE = 20


class AbnormalReason(str, Enum):
    """Why a reconciliation row is flagged."""

    NOT_PAID = "NOT_PAID"
    EXPENSE_EXCEEDS_INCOME = "EXPENSE_EXCEEDS_INCOME"
    REFUND_WITHOUT_REVERSAL = "REFUND_WITHOUT_REVERSAL"


# =============================================================================
# Summary
# =============================================================================


@dataclass(frozen=True)
class IncomeSummary:
    total_income: Decimal
    paid_orders: int
    include_gifted: bool


@dataclass(frozen=True)
class ExpenseSummary:
    total_player_expense: Decimal
    total_cs_expense: Decimal
    total_expense: Decimal


@dataclass(frozen=True)
class RefundSummary:
    refund_count: int
    refund_completed_count: int
    refund_pending_count: int


@dataclass(frozen=True)
class ReconciliationSummary:
    """Income, expense and refund totals for a payment-time window."""

    start_at: datetime
    end_at: datetime
    income: IncomeSummary
    expense: ExpenseSummary
    refund: RefundSummary
    net: Decimal


# =============================================================================
# Per-order rows
# =============================================================================


@dataclass(frozen=True)
class OrdersQuery:
    """Filters and paging for ReconciliationService.orders()."""

    start_at: datetime
    end_at: datetime
    page: int = 1
    # None: the service default
    page_size: int | None = None
    include_gifted: bool = False
    auto_serial: str | None = None
    player_id: int | None = None
    only_abnormal: bool = False


@dataclass(frozen=True)
class Participant:
    user_id: int
    rating_rate: Decimal
    earnings: Decimal


@dataclass(frozen=True)
class OrderIncome:
    paid_amount: Decimal
    is_gifted: bool


@dataclass(frozen=True)
class OrderRefund:
    is_refunded: bool
    refund_amount: Decimal
    refund_completed: bool


@dataclass(frozen=True)
class AbnormalFlags:
    reasons: tuple[AbnormalReason, ...]

    @property
    def is_abnormal(self) -> bool:
        return bool(self.reasons)


@dataclass(frozen=True)
class ReconciliationRow:
    """One order, its settlement expense and its flags."""

    order_id: UUID
    auto_serial: str
    payment_time: datetime | None
    status: OrderStatus
    income: OrderIncome
    participants: tuple[Participant, ...]
    player_expense: Decimal
    cs_expense: Decimal
    total_expense: Decimal
    profit: Decimal
    refund: OrderRefund
    abnormal: AbnormalFlags


# =============================================================================
# Order detail
# =============================================================================


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: UUID
    auto_serial: str
    order_type: OrderType
    status: OrderStatus
    paid_amount: Decimal
    receivable_amount: Decimal
    is_paid: bool
    is_gifted: bool
    payment_time: datetime | None
    club_earnings: Decimal | None
    dispatcher_id: int | None


@dataclass(frozen=True)
class SettlementLine:
    settlement_id: UUID
    user_id: int
    settlement_type: SettlementType
    calculated_earnings: Decimal
    manual_adjustment: Decimal
    final_earnings: Decimal
    cs_earnings: Decimal
    rating_rate: Decimal
    payment_status: PaymentStatus
    settled_at: datetime
    adjusted_by: int | None
    adjusted_at: datetime | None
    adjust_remark: str | None

    @classmethod
    def from_model(cls, s: OrderSettlement) -> "SettlementLine":
        return cls(
            settlement_id=s.id,
            user_id=s.user_id,
            settlement_type=s.settlement_type,
            calculated_earnings=s.calculated_earnings,
            manual_adjustment=s.manual_adjustment,
            final_earnings=s.final_earnings,
            cs_earnings=s.cs_earnings,
            rating_rate=s.rating_rate,
            payment_status=s.payment_status,
            settled_at=s.settled_at,
            adjusted_by=s.adjusted_by,
            adjusted_at=s.adjusted_at,
            adjust_remark=s.adjust_remark,
        )


@dataclass(frozen=True)
class ReversalLink:
    original_tx_id: UUID
    reversal_tx_id: UUID


@dataclass(frozen=True)
class OrderStats:
    income: Decimal
    player_expense: Decimal
    cs_expense: Decimal
    total_expense: Decimal
    profit: Decimal
    refund: OrderRefund


@dataclass(frozen=True)
class OrderDetail:
    """Everything the ledger knows about one order."""

    order: OrderSnapshot
    settlements: tuple[SettlementLine, ...]
    transactions: tuple[WalletTransactionView, ...]
    reversal_chain: tuple[ReversalLink, ...]
    stats: OrderStats


# =============================================================================
# Revenue overview
# =============================================================================


@dataclass(frozen=True)
class RevenueOverview:
    """
    Dashboard revenue figures over orders created in the window.

    Cost is the live settlement inflow minus the part paid for gifted
    orders; profit_rate is a percentage with two decimals.
    """

    start_at: datetime
    end_at: datetime
    total_orders: int
    total_revenue: Decimal
    refunded_orders: int
    refunded_amount: Decimal
    cost_estimated: Decimal
    profit_estimated: Decimal
    profit_rate: Decimal
    gifted_cost: Decimal


def _sum(values) -> Decimal:
    return sum(values, ZERO)


class ReconciliationService:
    """
    Read-only reconciliation queries.

    Contract:
        Every public method takes the caller explicitly, authorizes it,
        validates its inputs, runs its reads on ``session`` and returns a
        frozen dataclass.

    Non-goals:
        - Does NOT repair anything it finds; abnormal rows are reported.
        - Does NOT open its own transaction; use read_snapshot_scope().
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
        allowed_roles: Collection[str] = DEFAULT_RECONCILIATION_ROLES,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._allowed_roles = frozenset(allowed_roles)
        self._selector = ReconciliationSelector(session, chunk_size)
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    # =========================================================================
    # Shared steps
    # =========================================================================

    def _authorize(self, caller: Caller) -> None:
        authorize_reconciliation(caller.role, self._allowed_roles)

    @staticmethod
    def _validate_window(start_at: datetime, end_at: datetime) -> None:
        if start_at.tzinfo is None or end_at.tzinfo is None:
            raise InvalidDateRangeError(start_at, end_at, "timezone-aware datetimes required")
        if start_at >= end_at:
            raise InvalidDateRangeError(start_at, end_at, "start must be before end")

    def _audit(self, action: AuditAction, caller: Caller, params: dict[str, Any]) -> None:
        """Record the query in a savepoint; a failure never fails the read."""
        try:
            with self.session.begin_nested():
                self._auditor.record_reconciliation_query(
                    action, caller.user_id, caller.role_name, params
                )
        except Exception:
            logger.warning(
                "reconciliation_audit_failed",
                extra={"action": action.value, "actor_id": caller.user_id},
                exc_info=True,
            )

    # =========================================================================
    # Summary
    # =========================================================================

    def summary(
        self,
        caller: Caller,
        start_at: datetime,
        end_at: datetime,
        include_gifted: bool = False,
    ) -> ReconciliationSummary:
        """
        Income, settlement expense and refund completion over paid orders
        whose payment time falls in ``[start_at, end_at)``.

        Raises:
            ReconciliationAccessDeniedError: Caller may not reconcile.
            InvalidDateRangeError: Bad window.
        """
        self._authorize(caller)
        self._validate_window(start_at, end_at)
        scope = OrderScope(start_at=start_at, end_at=end_at, include_gifted=include_gifted)

        total_income, paid_orders = self._selector.income(scope)
        refunded = self._selector.refunded_orders(scope)
        completed = self._selector.orders_with_reversal([order_id for order_id, _ in refunded])
        expense = self._selector.expense_totals(self._selector.order_ids(scope))

        refund_completed = sum(1 for order_id, _ in refunded if order_id in completed)
        result = ReconciliationSummary(
            start_at=start_at,
            end_at=end_at,
            income=IncomeSummary(
                total_income=total_income,
                paid_orders=paid_orders,
                include_gifted=include_gifted,
            ),
            expense=ExpenseSummary(
                total_player_expense=expense.player_expense,
                total_cs_expense=expense.cs_expense,
                total_expense=expense.total,
            ),
            refund=RefundSummary(
                refund_count=len(refunded),
                refund_completed_count=refund_completed,
                refund_pending_count=len(refunded) - refund_completed,
            ),
            net=total_income - expense.total,
        )

        self._audit(
            AuditAction.RECONCILE_SUMMARY,
            caller,
            {"start_at": start_at, "end_at": end_at, "include_gifted": include_gifted},
        )
        logger.info(
            "reconciliation_summary",
            extra={
                "paid_orders": paid_orders,
                "refund_pending": result.refund.refund_pending_count,
            },
        )
        return result

    # =========================================================================
    # Orders
    # =========================================================================

    def _build_rows(self, orders: list[Order]) -> list[ReconciliationRow]:
        settlements = self._selector.settlements_by_order([o.id for o in orders])
        reversed_orders = self._selector.orders_with_reversal(
            [o.id for o in orders if o.status is OrderStatus.REFUNDED]
        )

        rows = []
        for order in orders:
            order_settlements = settlements.get(order.id, [])
            player_expense = _sum(s.final_earnings for s in order_settlements)
            cs_expense = _sum(s.cs_earnings for s in order_settlements)
            total_expense = player_expense + cs_expense

            is_refunded = order.status is OrderStatus.REFUNDED
            refund_completed = is_refunded and order.id in reversed_orders

            reasons = []
            if not order.is_paid:
                reasons.append(AbnormalReason.NOT_PAID)
            if total_expense > order.paid_amount:
                reasons.append(AbnormalReason.EXPENSE_EXCEEDS_INCOME)
            if is_refunded and not refund_completed:
                reasons.append(AbnormalReason.REFUND_WITHOUT_REVERSAL)

            rows.append(
                ReconciliationRow(
                    order_id=order.id,
                    auto_serial=order.auto_serial,
                    payment_time=order.payment_time,
                    status=order.status,
                    income=OrderIncome(paid_amount=order.paid_amount, is_gifted=order.is_gifted),
                    participants=tuple(
                        Participant(
                            user_id=s.user_id,
                            rating_rate=s.rating_rate,
                            earnings=s.final_earnings,
                        )
                        for s in order_settlements
                    ),
                    player_expense=player_expense,
                    cs_expense=cs_expense,
                    total_expense=total_expense,
                    profit=order.paid_amount - total_expense,
                    refund=OrderRefund(
                        is_refunded=is_refunded,
                        refund_amount=order.paid_amount if is_refunded else ZERO,
                        refund_completed=refund_completed,
                    ),
                    abnormal=AbnormalFlags(reasons=tuple(reasons)),
                )
            )
        return rows

    def orders(self, caller: Caller, query: OrdersQuery) -> Page[ReconciliationRow]:
        """
        One reconciliation row per paid order in the window, newest payment
        first.

        page is clamped to >= 1 and page_size to [1, max_page_size]; a query
        without page_size gets the service default_page_size.  With
        ``only_abnormal`` the flagged rows are selected from the whole window
        first and ``total`` is their count.

        Raises:
            ReconciliationAccessDeniedError: Caller may not reconcile.
            InvalidDateRangeError: Bad window.
        """
        self._authorize(caller)
        self._validate_window(query.start_at, query.end_at)
        page = max(1, query.page)
        requested = query.page_size if query.page_size is not None else self._default_page_size
        page_size = min(self._max_page_size, max(1, requested))
        offset = (page - 1) * page_size

        scope = OrderScope(
            start_at=query.start_at,
            end_at=query.end_at,
            include_gifted=query.include_gifted,
            auto_serial=query.auto_serial,
            player_id=query.player_id,
        )

        if query.player_id is not None and not self._selector.player_has_settlements(
            query.player_id
        ):
            result: Page[ReconciliationRow] = Page(
                page=page, page_size=page_size, total=0, items=()
            )
        elif query.only_abnormal:
            flagged = [
                row
                for row in self._build_rows(self._selector.list_orders(scope))
                if row.abnormal.is_abnormal
            ]
            result = Page(
                page=page,
                page_size=page_size,
                total=len(flagged),
                items=tuple(flagged[offset:offset + page_size]),
            )
        else:
            total = self._selector.count_orders(scope)
            orders = self._selector.list_orders(scope, offset=offset, limit=page_size)
            result = Page(
                page=page,
                page_size=page_size,
                total=total,
                items=tuple(self._build_rows(orders)),
            )

        self._audit(
            AuditAction.RECONCILE_ORDERS,
            caller,
            {
                "start_at": query.start_at,
                "end_at": query.end_at,
                "include_gifted": query.include_gifted,
                "auto_serial": query.auto_serial,
                "player_id": query.player_id,
                "only_abnormal": query.only_abnormal,
                "page": page,
                "page_size": page_size,
            },
        )
        return result

    # =========================================================================
    # Order detail
    # =========================================================================

    def order_detail(
        self,
        caller: Caller,
        order_id: UUID | None = None,
        auto_serial: str | None = None,
    ) -> OrderDetail:
        """
        Full trail of one order: settlements, ledger rows (oldest first) and
        reversal pairs.

        Raises:
            ReconciliationAccessDeniedError: Caller may not reconcile.
            MissingIdentifierError: Neither order_id nor auto_serial given.
            OrderNotFoundError: No such order.
        """
        self._authorize(caller)
        if order_id is None and not auto_serial:
            raise MissingIdentifierError(("order_id", "auto_serial"))

        order = self._selector.find_order(order_id, auto_serial)
        if order is None:
            raise OrderNotFoundError(str(order_id) if order_id is not None else auto_serial)

        settlements = self._selector.order_settlements(order.id)
        transactions = [
            WalletTransactionView.from_model(tx)
            for tx in self._selector.order_transactions(order.id)
        ]

        player_expense = _sum(s.final_earnings for s in settlements)
        cs_expense = _sum(s.cs_earnings for s in settlements)
        total_expense = player_expense + cs_expense
        is_refunded = order.status is OrderStatus.REFUNDED
        refund_completed = is_refunded and any(
            tx.biz_type is WalletBizType.REFUND_REVERSAL or tx.reversal_of_tx_id is not None
            for tx in transactions
        )

        detail = OrderDetail(
            order=OrderSnapshot(
                order_id=order.id,
                auto_serial=order.auto_serial,
                order_type=order.order_type,
                status=order.status,
                paid_amount=order.paid_amount,
                receivable_amount=order.receivable_amount,
                is_paid=order.is_paid,
                is_gifted=order.is_gifted,
                payment_time=order.payment_time,
                club_earnings=order.club_earnings,
                dispatcher_id=order.dispatcher_id,
            ),
            settlements=tuple(SettlementLine.from_model(s) for s in settlements),
            transactions=tuple(transactions),
            reversal_chain=tuple(
                ReversalLink(original_tx_id=tx.reversal_of_tx_id, reversal_tx_id=tx.transaction_id)
                for tx in transactions
                if tx.reversal_of_tx_id is not None
            ),
            stats=OrderStats(
                income=order.paid_amount,
                player_expense=player_expense,
                cs_expense=cs_expense,
                total_expense=total_expense,
                profit=order.paid_amount - total_expense,
                refund=OrderRefund(
                    is_refunded=is_refunded,
                    refund_amount=order.paid_amount if is_refunded else ZERO,
                    refund_completed=refund_completed,
                ),
            ),
        )

        self._audit(
            AuditAction.RECONCILE_ORDER_DETAIL,
            caller,
            {"order_id": order.id, "auto_serial": order.auto_serial},
        )
        return detail

    # =========================================================================
    # Revenue overview
    # =========================================================================

    def revenue_overview(
        self,
        caller: Caller,
        start_at: datetime,
        end_at: datetime,
    ) -> RevenueOverview:
        """
        Revenue, refunds and estimated cost over orders created in
        ``[start_at, end_at)``.  Gifted orders count neither as revenue nor
        as cost.

        Raises:
            ReconciliationAccessDeniedError: Caller may not reconcile.
            InvalidDateRangeError: Bad window.
        """
        self._authorize(caller)
        self._validate_window(start_at, end_at)

        total_orders, total_revenue = self._selector.created_order_totals(start_at, end_at)
        refunded_orders, refunded_amount = self._selector.created_order_totals(
            start_at, end_at, refunded_only=True
        )

        inflow = self._selector.settlement_inflow(start_at, end_at)
        gifted_ids = self._selector.gifted_order_ids(start_at, end_at)
        gifted_cost = (
            self._selector.settlement_inflow(start_at, end_at, gifted_ids)
            if gifted_ids
            else ZERO
        )

        cost = inflow - gifted_cost
        profit = total_revenue - cost
        profit_rate = round_money(profit * 100 / total_revenue) if total_revenue > 0 else ZERO

        overview = RevenueOverview(
            start_at=start_at,
            end_at=end_at,
            total_orders=total_orders,
            total_revenue=total_revenue,
            refunded_orders=refunded_orders,
            refunded_amount=refunded_amount,
            cost_estimated=round_money(cost),
            profit_estimated=round_money(profit),
            profit_rate=profit_rate,
            gifted_cost=round_money(gifted_cost),
        )

        self._audit(
            AuditAction.REVENUE_OVERVIEW,
            caller,
            {"start_at": start_at, "end_at": end_at},
        )
        return overview
