"""
Tests for ReconciliationService.

Covers:
- Role check before any query
- Summary: income, expense, refund completion
- Order rows: abnormal flags, filters, pagination and clamping
- Order detail by id and by serial
- Revenue overview with gifted cost
- Best-effort query audit
- Chunk size does not change results
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from earnings_kernel.db.engine import read_snapshot_scope
from earnings_kernel.exceptions import (
    InvalidDateRangeError,
    MissingIdentifierError,
    OrderNotFoundError,
    ReconciliationAccessDeniedError,
)
from earnings_kernel.models.audit_event import AuditAction, AuditEvent
from earnings_kernel.models.order import OrderStatus
from earnings_kernel.models.wallet import WalletBizType
from earnings_services.authorization import Caller, UserRole
from earnings_services.reconciliation_service import (
    AbnormalReason,
    OrdersQuery,
    ReconciliationService,
)

START = datetime(2024, 3, 15, tzinfo=timezone.utc)
END = datetime(2024, 3, 16, tzinfo=timezone.utc)


def _audit_actions(session):
    return session.execute(select(AuditEvent.action).order_by(AuditEvent.seq)).scalars().all()


@pytest.fixture
def settled_order(create_order, settlement_service):
    order = create_order(
        contributions=[(1, "0.6"), (2, "0.4")],
        paid_amount="1000.00",
        club_rate="0.1",
        auto_serial="AS-SETTLED",
    )
    settlement_service.settle_order(order.id)
    return order


@pytest.fixture
def refunded_order(create_order, settlement_service, test_actor_id):
    order = create_order(
        contributions=[(3, "1")],
        paid_amount="200.00",
        club_rate="0",
        auto_serial="AS-REFUNDED",
    )
    settlement_service.settle_order(order.id)
    settlement_service.refund_order(order.id, test_actor_id, "customer refund")
    return order


@pytest.fixture
def unreversed_refund(create_order):
    return create_order(
        paid_amount="150.00",
        status=OrderStatus.REFUNDED,
        auto_serial="AS-PENDING",
    )


class TestAuthorization:

    @pytest.mark.parametrize("role", [UserRole.STAFF, UserRole.REGISTERED_USER, "", "  "])
    def test_other_roles_are_denied(self, reconciliation_service, session, role):
        with pytest.raises(ReconciliationAccessDeniedError):
            reconciliation_service.summary(Caller(user_id=5, role=role), START, END)
        assert _audit_actions(session) == []

    def test_denied_before_input_validation(self, reconciliation_service):
        with pytest.raises(ReconciliationAccessDeniedError):
            reconciliation_service.order_detail(Caller(user_id=5, role=UserRole.STAFF))

    def test_super_admin_allowed(self, reconciliation_service):
        caller = Caller(user_id=1, role=UserRole.SUPER_ADMIN)
        assert reconciliation_service.summary(caller, START, END).income.paid_orders == 0

    def test_configured_roles(self, session, auditor_service, deterministic_clock):
        service = ReconciliationService(
            session, auditor_service, deterministic_clock, allowed_roles={"OPERATION"}
        )
        service.summary(Caller(user_id=1, role="OPERATION"), START, END)
        with pytest.raises(ReconciliationAccessDeniedError):
            service.summary(Caller(user_id=1, role=UserRole.FINANCE), START, END)


class TestSummary:

    def test_refund_without_reversal_is_pending(
        self, reconciliation_service, finance_caller, unreversed_refund
    ):
        summary = reconciliation_service.summary(finance_caller, START, END)

        assert summary.refund.refund_count == 1
        assert summary.refund.refund_pending_count == 1
        assert summary.refund.refund_completed_count == 0

    def test_totals(
        self,
        reconciliation_service,
        finance_caller,
        settled_order,
        refunded_order,
        unreversed_refund,
    ):
        summary = reconciliation_service.summary(finance_caller, START, END)

        assert summary.income.paid_orders == 3
        assert summary.income.total_income == Decimal("1350.00")
        assert summary.expense.total_player_expense == Decimal("1100.00")
        assert summary.expense.total_cs_expense == Decimal("0.00")
        assert summary.expense.total_expense == Decimal("1100.00")
        assert summary.net == Decimal("250.00")
        assert summary.refund.refund_count == 2
        assert summary.refund.refund_completed_count == 1
        assert summary.refund.refund_pending_count == 1

    def test_gifted_orders_need_opt_in(self, reconciliation_service, finance_caller, create_order):
        create_order(paid_amount="80.00", is_gifted=True)

        assert reconciliation_service.summary(finance_caller, START, END).income.paid_orders == 0
        with_gifted = reconciliation_service.summary(
            finance_caller, START, END, include_gifted=True
        )
        assert with_gifted.income.paid_orders == 1
        assert with_gifted.income.include_gifted

    def test_unpaid_and_out_of_window_orders_excluded(
        self, reconciliation_service, finance_caller, create_order
    ):
        create_order(is_paid=False)
        create_order(payment_time=END)
        create_order(payment_time=START - timedelta(seconds=1))
        create_order(payment_time=START)

        assert reconciliation_service.summary(finance_caller, START, END).income.paid_orders == 1

    @pytest.mark.parametrize(
        "start,end",
        [
            (END, START),
            (START, START),
            (datetime(2024, 3, 15), datetime(2024, 3, 16)),
        ],
    )
    def test_invalid_window(self, reconciliation_service, finance_caller, start, end):
        with pytest.raises(InvalidDateRangeError):
            reconciliation_service.summary(finance_caller, start, end)

    @pytest.fixture
    def many_orders(self, create_order, settlement_service, test_actor_id):
        """Fifteen settled orders, every fifth one refunded."""
        orders = []
        for index in range(15):
            order = create_order(
                contributions=[(10 + index % 4, "0.5"), (20 + index % 3, "0.5")],
                paid_amount=f"{100 + index * 7}.00",
                club_rate="0.1",
            )
            settlement_service.settle_order(order.id)
            orders.append(order)
        for order in orders[::5]:
            settlement_service.refund_order(order.id, test_actor_id, "customer refund")
        return orders

    @pytest.mark.parametrize("chunk_size", [1, 7, 1000])
    def test_chunk_size_does_not_change_results(
        self,
        session,
        auditor_service,
        deterministic_clock,
        finance_caller,
        many_orders,
        unreversed_refund,
        chunk_size,
    ):
        def reconcile(size):
            service = ReconciliationService(
                session, auditor_service, deterministic_clock, chunk_size=size
            )
            summary = service.summary(finance_caller, START, END)
            rows = service.orders(finance_caller, OrdersQuery(START, END, page_size=100)).items
            return summary, rows

        summary, rows = reconcile(chunk_size)

        assert len(rows) == len(many_orders) + 1
        assert summary.refund.refund_count == 4
        assert (summary, rows) == reconcile(10_000)


class TestOrderRows:

    def test_row_contents(self, reconciliation_service, finance_caller, settled_order):
        page = reconciliation_service.orders(finance_caller, OrdersQuery(START, END))

        assert page.total == 1
        row = page.items[0]
        assert row.auto_serial == "AS-SETTLED"
        assert row.income.paid_amount == Decimal("1000.00")
        assert [(p.user_id, p.earnings) for p in row.participants] == [
            (1, Decimal("540.00")),
            (2, Decimal("360.00")),
        ]
        assert row.total_expense == Decimal("900.00")
        assert row.profit == Decimal("100.00")
        assert not row.refund.is_refunded
        assert not row.abnormal.is_abnormal

    def test_refund_rows(
        self, reconciliation_service, finance_caller, refunded_order, unreversed_refund
    ):
        rows = {
            r.auto_serial: r
            for r in reconciliation_service.orders(finance_caller, OrdersQuery(START, END)).items
        }

        completed = rows["AS-REFUNDED"].refund
        assert completed.is_refunded and completed.refund_completed
        assert completed.refund_amount == Decimal("200.00")

        pending = rows["AS-PENDING"]
        assert not pending.refund.refund_completed
        assert pending.abnormal.reasons == (AbnormalReason.REFUND_WITHOUT_REVERSAL,)

    def test_expense_exceeding_income_is_flagged(
        self, reconciliation_service, finance_caller, create_order, settlement_service
    ):
        order = create_order(
            contributions=[(1, "1")], paid_amount="1000.00", club_rate="0", cs_rate="0.05"
        )
        settlement_service.settle_order(order.id)

        row = reconciliation_service.orders(finance_caller, OrdersQuery(START, END)).items[0]

        assert row.cs_expense == Decimal("50.00")
        assert row.profit == Decimal("-50.00")
        assert row.abnormal.reasons == (AbnormalReason.EXPENSE_EXCEEDS_INCOME,)

    def test_only_abnormal_filters_before_paging(
        self, reconciliation_service, finance_caller, create_order
    ):
        for i in range(5):
            create_order(payment_time=START + timedelta(hours=i), auto_serial=f"AS-OK-{i}")
        for i in range(3):
            create_order(
                status=OrderStatus.REFUNDED,
                payment_time=START + timedelta(hours=10 + i),
                auto_serial=f"AS-BAD-{i}",
            )

        page = reconciliation_service.orders(
            finance_caller, OrdersQuery(START, END, page=2, page_size=2, only_abnormal=True)
        )

        assert page.total == 3
        assert [r.auto_serial for r in page.items] == ["AS-BAD-0"]

    def test_pagination_order(self, reconciliation_service, finance_caller, create_order):
        for i in range(5):
            create_order(payment_time=START + timedelta(hours=i), auto_serial=f"AS-{i}")

        page = reconciliation_service.orders(
            finance_caller, OrdersQuery(START, END, page=2, page_size=2)
        )

        assert page.total == 5
        assert [r.auto_serial for r in page.items] == ["AS-2", "AS-1"]

    def test_paging_is_clamped(self, reconciliation_service, finance_caller, create_order):
        create_order()
        page = reconciliation_service.orders(
            finance_caller, OrdersQuery(START, END, page=0, page_size=500)
        )
        assert page.page == 1
        assert page.page_size == 100
        assert len(page.items) == 1

    def test_player_filter(
        self, reconciliation_service, finance_caller, settled_order, refunded_order
    ):
        page = reconciliation_service.orders(finance_caller, OrdersQuery(START, END, player_id=3))
        assert [r.auto_serial for r in page.items] == ["AS-REFUNDED"]

    def test_player_without_settlements_gets_empty_page(
        self, reconciliation_service, finance_caller, settled_order
    ):
        page = reconciliation_service.orders(
            finance_caller, OrdersQuery(START, END, player_id=424242)
        )
        assert page.total == 0
        assert page.items == ()

    def test_serial_filter(self, reconciliation_service, finance_caller, settled_order, refunded_order):
        page = reconciliation_service.orders(
            finance_caller, OrdersQuery(START, END, auto_serial="AS-SETTLED")
        )
        assert page.total == 1
        assert page.items[0].order_id == settled_order.id


class TestOrderDetail:

    def test_detail_by_id(self, reconciliation_service, finance_caller, refunded_order):
        detail = reconciliation_service.order_detail(finance_caller, order_id=refunded_order.id)

        assert detail.order.auto_serial == "AS-REFUNDED"
        assert detail.order.status is OrderStatus.REFUNDED
        assert [s.final_earnings for s in detail.settlements] == [Decimal("200.00")]
        assert [t.biz_type for t in detail.transactions] == [
            WalletBizType.SETTLEMENT_EARNING,
            WalletBizType.REFUND_REVERSAL,
        ]
        assert len(detail.reversal_chain) == 1
        link = detail.reversal_chain[0]
        assert link.original_tx_id == detail.transactions[0].transaction_id
        assert link.reversal_tx_id == detail.transactions[1].transaction_id
        assert detail.stats.refund.refund_completed
        assert detail.stats.profit == Decimal("0.00")

    def test_detail_by_serial(self, reconciliation_service, finance_caller, settled_order):
        detail = reconciliation_service.order_detail(finance_caller, auto_serial="AS-SETTLED")

        assert detail.order.order_id == settled_order.id
        assert detail.order.club_earnings == Decimal("100.00")
        assert detail.stats.total_expense == Decimal("900.00")
        assert detail.reversal_chain == ()
        assert not detail.stats.refund.is_refunded

    def test_pending_refund_detail(self, reconciliation_service, finance_caller, unreversed_refund):
        detail = reconciliation_service.order_detail(finance_caller, order_id=unreversed_refund.id)
        assert detail.stats.refund.is_refunded
        assert not detail.stats.refund.refund_completed
        assert detail.transactions == ()

    def test_identifier_required(self, reconciliation_service, finance_caller):
        with pytest.raises(MissingIdentifierError):
            reconciliation_service.order_detail(finance_caller)

    @pytest.mark.parametrize("lookup", [{"order_id": uuid4()}, {"auto_serial": "AS-MISSING"}])
    def test_unknown_order(self, reconciliation_service, finance_caller, lookup):
        with pytest.raises(OrderNotFoundError):
            reconciliation_service.order_detail(finance_caller, **lookup)


class TestRevenueOverview:

    def test_overview(
        self, reconciliation_service, finance_caller, create_order, settlement_service,
        settled_order, refunded_order,
    ):
        gifted = create_order(
            contributions=[(5, "1")],
            paid_amount="0.00",
            receivable_amount="300.00",
            club_rate="0.1",
            is_gifted=True,
        )
        settlement_service.settle_order(gifted.id)

        overview = reconciliation_service.revenue_overview(finance_caller, START, END)

        assert overview.total_orders == 2
        assert overview.total_revenue == Decimal("1200.00")
        assert overview.refunded_orders == 1
        assert overview.refunded_amount == Decimal("200.00")
        assert overview.gifted_cost == Decimal("270.00")
        assert overview.cost_estimated == Decimal("900.00")
        assert overview.profit_estimated == Decimal("300.00")
        assert overview.profit_rate == Decimal("25.00")

    def test_empty_window_has_zero_rate(self, reconciliation_service, finance_caller):
        overview = reconciliation_service.revenue_overview(finance_caller, START, END)
        assert overview.total_revenue == Decimal("0")
        assert overview.profit_rate == Decimal("0.00")


class TestQueryAudit:

    def test_each_query_is_audited(
        self, reconciliation_service, finance_caller, session, settled_order
    ):
        reconciliation_service.summary(finance_caller, START, END)
        reconciliation_service.orders(finance_caller, OrdersQuery(START, END))
        reconciliation_service.order_detail(finance_caller, order_id=settled_order.id)
        reconciliation_service.revenue_overview(finance_caller, START, END)

        actions = [a for a in _audit_actions(session) if a.value.startswith(("RECONCILE", "REVENUE"))]
        assert actions == [
            AuditAction.RECONCILE_SUMMARY,
            AuditAction.RECONCILE_ORDERS,
            AuditAction.RECONCILE_ORDER_DETAIL,
            AuditAction.REVENUE_OVERVIEW,
        ]

        event = session.execute(
            select(AuditEvent).where(AuditEvent.action == AuditAction.RECONCILE_SUMMARY)
        ).scalar_one()
        assert event.actor_id == finance_caller.user_id
        assert event.payload["role"] == "FINANCE"
        assert event.payload["params"]["include_gifted"] is False

    def test_audit_failure_does_not_fail_the_query(
        self,
        reconciliation_service,
        auditor_service,
        finance_caller,
        unreversed_refund,
        captured_logs,
        monkeypatch,
    ):
        def _broken(*args, **kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(auditor_service, "record_reconciliation_query", _broken)

        summary = reconciliation_service.summary(finance_caller, START, END)

        assert summary.refund.refund_pending_count == 1
        failures = [r for r in captured_logs() if r["message"] == "reconciliation_audit_failed"]
        assert len(failures) == 1
        assert failures[0]["level"] == "WARNING"
        assert failures[0]["exc_type"] == "RuntimeError"
        assert failures[0]["action"] == "RECONCILE_SUMMARY"


class TestSnapshotScope:

    def test_reads_and_audit_in_one_scope(
        self, session, session_factory, deterministic_clock, finance_caller, settled_order
    ):
        with read_snapshot_scope(session_factory) as read_session:
            summary = ReconciliationService(read_session, clock=deterministic_clock).summary(
                finance_caller, START, END
            )

        assert summary.income.total_income == Decimal("1000.00")
        assert AuditAction.RECONCILE_SUMMARY in _audit_actions(session)
