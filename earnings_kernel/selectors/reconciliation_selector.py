"""
Module: earnings_kernel.selectors.reconciliation_selector
Responsibility: Read-only aggregation primitives for reconciliation: income
    over paid orders, settlement expense per order set, reversal evidence for
    refunded orders, and the settlement-inflow cost used by the revenue
    overview.
Architecture position: Kernel > Selectors.  May import from models/,
    utils/chunking.py and selectors/base.py.  MUST NOT import from services/
    or outer layers.

Invariants enforced:
    - Windows are half-open: ``start_at <= t < end_at``.
    - Every lookup keyed by an order id list is issued in chunks of at most
      ``chunk_size`` ids.  Per-chunk results are summed or merged; a failed
      chunk raises and the whole read fails (no partial aggregate).
    - A refunded order counts as reversed only when a ledger row for the
      order has biz_type REFUND_REVERSAL or a reversal_of_tx_id.

Failure modes:
    - ValueError from chunked() if chunk_size < 1.
    - Database errors propagate unchanged.

Audit relevance:
    These queries are the reconciliation read path.  They never write.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, or_, select

from earnings_kernel.db.types import ZERO
from earnings_kernel.models.order import Order, OrderStatus
from earnings_kernel.models.settlement import OrderSettlement
from earnings_kernel.models.wallet import (
    TxDirection,
    WalletBizType,
    WalletTransaction,
    WalletTxStatus,
)
from earnings_kernel.selectors.base import BaseSelector
from earnings_kernel.utils.chunking import DEFAULT_CHUNK_SIZE, chunked


@dataclass(frozen=True)
class OrderScope:
    """Which orders a reconciliation query covers."""

    start_at: datetime
    end_at: datetime
    include_gifted: bool = False
    auto_serial: str | None = None
    player_id: int | None = None


@dataclass(frozen=True)
class ExpenseTotals:
    player_expense: Decimal
    cs_expense: Decimal

    @property
    def total(self) -> Decimal:
        return self.player_expense + self.cs_expense


class ReconciliationSelector(BaseSelector[Order]):
    """
    Read-only reconciliation aggregates.

    Contract:
        All methods run on the caller's session; run them inside one
        read transaction (read_snapshot_scope on PostgreSQL) to avoid skew
        between sub-aggregates.
    """

    def __init__(self, session, chunk_size: int = DEFAULT_CHUNK_SIZE):
        super().__init__(session)
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self.chunk_size = chunk_size

    # =========================================================================
    # Orders
    # =========================================================================

    def _order_conditions(self, scope: OrderScope) -> list:
        conditions = [
            Order.is_paid.is_(True),
            Order.payment_time >= scope.start_at,
            Order.payment_time < scope.end_at,
        ]
        if not scope.include_gifted:
            conditions.append(Order.is_gifted.is_(False))
        if scope.auto_serial:
            conditions.append(Order.auto_serial == scope.auto_serial)
        if scope.player_id is not None:
            conditions.append(
                Order.id.in_(
                    select(OrderSettlement.order_id).where(
                        OrderSettlement.user_id == scope.player_id
                    )
                )
            )
        return conditions

    def income(self, scope: OrderScope) -> tuple[Decimal, int]:
        """(Σ paid_amount, order count) over the orders in scope."""
        total, count = self.session.execute(
            select(func.coalesce(func.sum(Order.paid_amount), 0), func.count(Order.id))
            .where(*self._order_conditions(scope))
        ).one()
        return Decimal(total), count

    def order_ids(self, scope: OrderScope) -> list[UUID]:
        return list(
            self.session.execute(
                select(Order.id).where(*self._order_conditions(scope))
            ).scalars()
        )

    def count_orders(self, scope: OrderScope) -> int:
        return self.session.execute(
            select(func.count(Order.id)).where(*self._order_conditions(scope))
        ).scalar_one()

    def list_orders(
        self,
        scope: OrderScope,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Order]:
        """Orders in scope, newest payment first then auto serial."""
        stmt = (
            select(Order)
            .where(*self._order_conditions(scope))
            .order_by(Order.payment_time.desc(), Order.auto_serial)
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def refunded_orders(self, scope: OrderScope) -> list[tuple[UUID, Decimal]]:
        """(order id, paid amount) for REFUNDED orders in scope."""
        rows = self.session.execute(
            select(Order.id, Order.paid_amount).where(
                *self._order_conditions(scope),
                Order.status == OrderStatus.REFUNDED,
            )
        ).all()
        return [(row.id, row.paid_amount) for row in rows]

    def player_has_settlements(self, player_id: int) -> bool:
        return self.session.execute(
            select(OrderSettlement.id).where(OrderSettlement.user_id == player_id).limit(1)
        ).first() is not None

    def find_order(
        self,
        order_id: UUID | None = None,
        auto_serial: str | None = None,
    ) -> Order | None:
        """Look an order up by id, falling back to auto serial."""
        if order_id is not None:
            return self.session.get(Order, order_id)
        if auto_serial:
            return self.session.execute(
                select(Order).where(Order.auto_serial == auto_serial)
            ).scalar_one_or_none()
        return None

    # =========================================================================
    # Settlements (chunked by order id)
    # =========================================================================

    def expense_totals(self, order_ids: list[UUID]) -> ExpenseTotals:
        """Σ final_earnings and Σ cs_earnings over the orders' settlements."""
        player = ZERO
        cs = ZERO
        for chunk in chunked(order_ids, self.chunk_size):
            chunk_player, chunk_cs = self.session.execute(
                select(
                    func.coalesce(func.sum(OrderSettlement.final_earnings), 0),
                    func.coalesce(func.sum(OrderSettlement.cs_earnings), 0),
                ).where(OrderSettlement.order_id.in_(chunk))
            ).one()
            player += Decimal(chunk_player)
            cs += Decimal(chunk_cs)
        return ExpenseTotals(player_expense=player, cs_expense=cs)

    def settlements_by_order(
        self,
        order_ids: list[UUID],
    ) -> dict[UUID, list[OrderSettlement]]:
        grouped: dict[UUID, list[OrderSettlement]] = defaultdict(list)
        for chunk in chunked(order_ids, self.chunk_size):
            rows = self.session.execute(
                select(OrderSettlement)
                .where(OrderSettlement.order_id.in_(chunk))
                .order_by(OrderSettlement.created_at, OrderSettlement.user_id)
            ).scalars()
            for settlement in rows:
                grouped[settlement.order_id].append(settlement)
        return dict(grouped)

    def order_settlements(self, order_id: UUID) -> list[OrderSettlement]:
        return list(
            self.session.execute(
                select(OrderSettlement)
                .where(OrderSettlement.order_id == order_id)
                .order_by(OrderSettlement.created_at, OrderSettlement.user_id)
            ).scalars()
        )

    # =========================================================================
    # Ledger evidence (chunked by order id)
    # =========================================================================

    def orders_with_reversal(self, order_ids: list[UUID]) -> set[UUID]:
        """Ids of orders that have at least one reversal ledger row."""
        found: set[UUID] = set()
        for chunk in chunked(order_ids, self.chunk_size):
            rows = self.session.execute(
                select(WalletTransaction.order_id)
                .where(
                    WalletTransaction.order_id.in_(chunk),
                    or_(
                        WalletTransaction.biz_type == WalletBizType.REFUND_REVERSAL,
                        WalletTransaction.reversal_of_tx_id.is_not(None),
                    ),
                )
                .distinct()
            ).scalars()
            found.update(rows)
        return found

    def order_transactions(self, order_id: UUID) -> list[WalletTransaction]:
        """Ledger rows for one order, oldest first."""
        return list(
            self.session.execute(
                select(WalletTransaction)
                .where(WalletTransaction.order_id == order_id)
                .order_by(WalletTransaction.created_at, WalletTransaction.entry_no)
            ).scalars()
        )

    # =========================================================================
    # Revenue overview (windows on created_at)
    # =========================================================================

    def created_order_totals(
        self,
        start_at: datetime,
        end_at: datetime,
        refunded_only: bool = False,
    ) -> tuple[int, Decimal]:
        """(count, Σ paid_amount) of non-gifted orders created in the window."""
        stmt = select(
            func.count(Order.id),
            func.coalesce(func.sum(Order.paid_amount), 0),
        ).where(
            Order.created_at >= start_at,
            Order.created_at < end_at,
            Order.is_gifted.is_(False),
        )
        if refunded_only:
            stmt = stmt.where(Order.status == OrderStatus.REFUNDED)
        count, total = self.session.execute(stmt).one()
        return count, Decimal(total)

    def gifted_order_ids(self, start_at: datetime, end_at: datetime) -> list[UUID]:
        return list(
            self.session.execute(
                select(Order.id).where(
                    Order.created_at >= start_at,
                    Order.created_at < end_at,
                    Order.is_gifted.is_(True),
                )
            ).scalars()
        )

    def _earning_inflow_conditions(self, start_at: datetime, end_at: datetime) -> list:
        return [
            WalletTransaction.created_at >= start_at,
            WalletTransaction.created_at < end_at,
            WalletTransaction.direction == TxDirection.IN,
            WalletTransaction.biz_type == WalletBizType.SETTLEMENT_EARNING,
            WalletTransaction.status != WalletTxStatus.REVERSED,
        ]

    def settlement_inflow(
        self,
        start_at: datetime,
        end_at: datetime,
        order_ids: list[UUID] | None = None,
    ) -> Decimal:
        """
        Σ amount of live SETTLEMENT_EARNING inflows created in the window.

        With ``order_ids`` the sum is restricted to those orders and issued
        in chunks.
        """
        conditions = self._earning_inflow_conditions(start_at, end_at)
        stmt = select(func.coalesce(func.sum(WalletTransaction.amount), 0))
        if order_ids is None:
            return Decimal(self.session.execute(stmt.where(*conditions)).scalar_one())

        total = ZERO
        for chunk in chunked(order_ids, self.chunk_size):
            total += Decimal(
                self.session.execute(
                    stmt.where(*conditions, WalletTransaction.order_id.in_(chunk))
                ).scalar_one()
            )
        return total
