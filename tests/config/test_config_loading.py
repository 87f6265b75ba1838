"""
Tests for earnings_config: YAML parsing, validation and the trace log.
"""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import yaml

from earnings_config import DEFAULT_CONFIG_PATH, EarningsConfig, get_active_config
from earnings_config.loader import (
    compute_checksum,
    load_yaml_file,
    parse_config,
    parse_decimal,
)
from earnings_engines import freeze_days_for
from earnings_kernel.exceptions import InvalidAmountError
from earnings_kernel.models.order import OrderType
from earnings_kernel.models.wallet import WalletTransaction
from earnings_services.reconciliation_service import OrdersQuery, ReconciliationService
from earnings_services.settlement_service import SettlementService
from earnings_services.withdrawal_service import WithdrawalService


@pytest.fixture
def default_document() -> dict:
    return load_yaml_file(DEFAULT_CONFIG_PATH)


def _write(tmp_path, document) -> object:
    path = tmp_path / "earnings.yaml"
    path.write_text(yaml.safe_dump(document))
    return path


class TestDefaults:

    def test_packaged_defaults_load(self):
        config = get_active_config()

        assert isinstance(config, EarningsConfig)
        assert config.config_id == "earnings-default"
        assert config.settlement.total_tolerance == Decimal("0.01")
        assert freeze_days_for("EXPERIENCE", config.settlement.freeze_days) == 3
        assert freeze_days_for("FUN", config.settlement.freeze_days) == 7
        assert config.reconciliation.default_page_size == 20
        assert config.reconciliation.allowed_roles == ("FINANCE", "SUPER_ADMIN")
        assert config.withdrawal.min_amount == Decimal("1.00")
        assert config.ledger.hold_release_batch_size == 200

    def test_trace_logged(self, captured_logs):
        config = get_active_config()

        traces = [r for r in captured_logs() if r["message"] == "EARNINGS_CONFIG_TRACE"]
        assert len(traces) == 1
        assert traces[0]["config_id"] == config.config_id
        assert traces[0]["checksum"] == config.checksum

    def test_config_is_frozen(self):
        config = get_active_config()

        with pytest.raises(AttributeError):
            config.version = 2


class TestValidation:

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")

    def test_missing_required_key(self, tmp_path, default_document):
        del default_document["withdrawal"]["min_amount"]

        with pytest.raises(KeyError):
            get_active_config(_write(tmp_path, default_document))

    def test_missing_default_freeze_window(self, default_document):
        del default_document["settlement"]["freeze_days"]["default"]

        with pytest.raises(KeyError):
            parse_config(default_document)

    def test_float_money_rejected(self, default_document):
        default_document["withdrawal"]["min_amount"] = 1.5

        with pytest.raises(ValueError, match="quoted"):
            parse_config(default_document)

    @pytest.mark.parametrize("value", [0, -1, True, "10"])
    def test_batch_size_must_be_positive_int(self, default_document, value):
        default_document["ledger"]["hold_release_batch_size"] = value

        with pytest.raises(ValueError):
            parse_config(default_document)

    def test_empty_roles_rejected(self, default_document):
        default_document["reconciliation"]["allowed_roles"] = []

        with pytest.raises(ValueError):
            parse_config(default_document)

    def test_page_size_ordering(self, default_document):
        default_document["reconciliation"]["default_page_size"] = 500

        with pytest.raises(ValueError, match="max_page_size"):
            parse_config(default_document)

    def test_parse_decimal(self):
        assert parse_decimal("0.05", "x") == Decimal("0.05")
        assert parse_decimal(3, "x") == Decimal("3")
        with pytest.raises(ValueError):
            parse_decimal("abc", "x")


class TestChecksum:

    def test_deterministic(self, default_document):
        assert compute_checksum(default_document) == compute_checksum(copy.deepcopy(default_document))

    def test_key_order_irrelevant(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_changes_with_content(self, tmp_path, default_document):
        baseline = get_active_config(_write(tmp_path, default_document))
        default_document["version"] = 2

        changed = get_active_config(_write(tmp_path, default_document))

        assert changed.checksum != baseline.checksum


class TestWiring:

    def test_withdrawal_minimum_from_config(self, tmp_path, default_document, session, wallet_ledger):
        default_document["withdrawal"]["min_amount"] = "50.00"
        config = get_active_config(_write(tmp_path, default_document))
        service = WithdrawalService(session, ledger=wallet_ledger, min_amount=config.withdrawal.min_amount)

        with pytest.raises(InvalidAmountError):
            service.apply(1, "49.99", "req-1", "BANK")

    def test_freeze_window_from_config(
        self, tmp_path, default_document, session, wallet_ledger, create_order
    ):
        default_document["settlement"]["freeze_days"]["ESCORT"] = 10
        config = get_active_config(_write(tmp_path, default_document))
        service = SettlementService(
            session,
            ledger=wallet_ledger,
            total_tolerance=config.settlement.total_tolerance,
            freeze_days=config.settlement.freeze_days,
        )
        completed = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)
        order = create_order(
            contributions=[(1, "1")], order_type=OrderType.ESCORT, completed_at=completed
        )

        hold_id = service.settle_order(order.id).hold_tx_ids[0]

        assert session.get(WalletTransaction, hold_id).unlock_at == completed + timedelta(days=10)

    def test_reconciliation_page_size_from_config(
        self, tmp_path, default_document, session, create_order, finance_caller
    ):
        default_document["reconciliation"]["default_page_size"] = 2
        config = get_active_config(_write(tmp_path, default_document))
        service = ReconciliationService(
            session,
            allowed_roles=config.reconciliation.allowed_roles,
            chunk_size=config.reconciliation.chunk_size,
            default_page_size=config.reconciliation.default_page_size,
            max_page_size=config.reconciliation.max_page_size,
        )
        for _ in range(3):
            create_order()
        start = datetime(2024, 3, 15, tzinfo=timezone.utc)

        page = service.orders(finance_caller, OrdersQuery(start, start + timedelta(days=1)))

        assert page.page_size == 2
        assert page.total == 3
        assert len(page.items) == 2
