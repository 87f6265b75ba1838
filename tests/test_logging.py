"""Tests for the structured logging system (earnings_kernel/logging_config.py)."""

import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from earnings_kernel.db.engine import session_scope
from earnings_kernel.exceptions import TransactionNotFoundError
from earnings_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from earnings_kernel.models.wallet import WalletTxStatus
from earnings_kernel.services.wallet_ledger import WalletLedgerService
from earnings_services.reconciliation_service import ReconciliationService


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "earnings_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("hold_released", extra={"entry_no": 42, "biz_type": "RELEASE_FROZEN"})

        record = _parse_log(stream)
        assert record["entry_no"] == 42
        assert record["biz_type"] == "RELEASE_FROZEN"

    def test_money_and_enum_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info(
            "wallet_mutation",
            extra={"amount": Decimal("540.00"), "status": WalletTxStatus.FROZEN},
        )

        record = _parse_log(stream)
        assert record["amount"] == "540.00"
        assert record["status"] == "FROZEN"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        LogContext.set(correlation_id="abc-123", order_id="ord-456")
        logger.info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["order_id"] == "ord-456"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_code_extracted(self):
        """Kernel exceptions carry a .code attribute and structured fields."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from earnings_kernel.exceptions import InsufficientBalanceError

        try:
            raise InsufficientBalanceError("acct-1", "available", Decimal("10.00"), Decimal("-25.00"))
        except InsufficientBalanceError:
            logger.error("ledger_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "INSUFFICIENT_BALANCE"
        assert record["exc_type"] == "InsufficientBalanceError"
        assert record["exc_account_id"] == "acct-1"
        assert record["exc_bucket"] == "available"
        assert record["exc_balance"] == "10.00"
        assert record["exc_delta"] == "-25.00"


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:

    def test_bind_context_manager(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner"):
            assert LogContext.get_all()["correlation_id"] == "inner"
        assert LogContext.get_all()["correlation_id"] == "outer"

    def test_bind_restores_none(self):
        """bind() restores to None if there was no previous value."""
        assert "order_id" not in LogContext.get_all()
        with LogContext.bind(order_id="temp"):
            assert LogContext.get_all()["order_id"] == "temp"
        assert "order_id" not in LogContext.get_all()

    def test_bind_ignores_unknown_fields(self):
        with LogContext.bind(actor_id=7, tenant="ignored"):
            assert LogContext.get_all() == {"actor_id": "7"}


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        root = logging.getLogger("earnings_kernel")
        assert len(root.handlers) == 1

    def test_get_logger_returns_child(self):
        logger = get_logger("services.wallet_ledger")
        assert logger.name == "earnings_kernel.services.wallet_ledger"


# ---------------------------------------------------------------------------
# Events emitted by the services
# ---------------------------------------------------------------------------


class _UnavailableAuditor:
    def record_reconciliation_query(self, *args, **kwargs):
        raise RuntimeError("audit store unavailable")


class TestServiceLogEvents:

    def test_rollback_carries_kernel_error(self, captured_logs, session_factory, deterministic_clock):
        missing = uuid4()

        with pytest.raises(TransactionNotFoundError):
            with session_scope(session_factory) as session:
                WalletLedgerService(session, clock=deterministic_clock).release(missing)

        record = next(r for r in captured_logs() if r["message"] == "transaction_rolled_back")
        assert record["level"] == "WARNING"
        assert record["logger"] == "earnings_kernel.db.engine"
        assert record["exc_code"] == "TRANSACTION_NOT_FOUND"
        assert record["exc_transaction_id"] == str(missing)

    def test_settlement_events_bound_to_order(
        self, captured_logs, create_order, settlement_service, test_actor_id
    ):
        order = create_order(contributions=[(1, "0.6"), (2, "0.4")], club_rate="0.1")

        settlement_service.settle_order(order.id, test_actor_id)

        records = captured_logs()
        settled = next(r for r in records if r["message"] == "order_settled")
        assert settled["order_id"] == str(order.id)
        assert settled["actor_id"] == str(test_actor_id)
        assert settled["created_count"] == 2
        # ledger writes inside the bound block inherit the order context
        ledger_records = [r for r in records if r["logger"].endswith("wallet_ledger")]
        assert ledger_records
        assert all(r["order_id"] == str(order.id) for r in ledger_records)
        assert "order_id" not in LogContext.get_all()

    def test_reconciliation_audit_failure_is_logged_not_raised(
        self, captured_logs, session, deterministic_clock, finance_caller
    ):
        service = ReconciliationService(
            session, auditor=_UnavailableAuditor(), clock=deterministic_clock
        )
        start = datetime(2024, 3, 15, tzinfo=timezone.utc)

        with LogContext.bind(correlation_id="recon-42"):
            summary = service.summary(finance_caller, start, start + timedelta(days=1))

        assert summary.income.paid_orders == 0
        failures = [r for r in captured_logs() if r["message"] == "reconciliation_audit_failed"]
        assert len(failures) == 1
        record = failures[0]
        assert record["level"] == "WARNING"
        assert record["correlation_id"] == "recon-42"
        assert record["action"] == "RECONCILE_SUMMARY"
        assert str(record["actor_id"]) == str(finance_caller.user_id)
        assert record["exc_type"] == "RuntimeError"
        assert record["exc_message"] == "audit store unavailable"
