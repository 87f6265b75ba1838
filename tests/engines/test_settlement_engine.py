"""
Tests for the settlement engine.

Covers:
- Fixed-rate and rating-based splits
- Supplement (shortfall) charges
- Rounding direction of club and worker shares
- Total validation against the order amount
- Default split rules, settlement cadence and freeze windows
- Customer-service share split
- Engine trace records
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from earnings_engines.settlement import (
    DEFAULT_SPLIT_RULES,
    Contribution,
    SettlementEngine,
    SplitMode,
    compute_unlock_at,
    freeze_days_for,
    settlement_type_for,
    split_customer_service_share,
)
from earnings_kernel.exceptions import InvalidAmountError
from earnings_kernel.models.order import OrderType
from earnings_kernel.models.settlement import SettlementType


def _worker(worker_id, rating, is_supplement=False):
    return Contribution(
        worker_id=worker_id,
        contribution=Decimal("1"),
        rating_rate=Decimal(rating),
        is_supplement=is_supplement,
    )


class TestFixedRateSplit:
    """Club takes a fixed rate, the rest is shared by rating."""

    def setup_method(self):
        self.engine = SettlementEngine()

    def test_club_rate_then_rating_split(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("1000"),
            base_amount=Decimal("0"),
            club_rate=Decimal("0.1"),
            contributions=[_worker(1, "0.6"), _worker(2, "0.4")],
            order_type=OrderType.FUN,
        )

        assert result.split_mode == SplitMode.FIXED
        assert result.club_earnings == Decimal("100.00")
        assert result.total_distribution == Decimal("900.00")
        assert [w.final_earnings for w in result.worker_earnings] == [
            Decimal("540.00"),
            Decimal("360.00"),
        ]

    def test_output_follows_input_order(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("1000"),
            base_amount=Decimal("0"),
            club_rate=Decimal("0.1"),
            contributions=[_worker(9, "0.4"), _worker(3, "0.6")],
            order_type=OrderType.FUN,
        )

        assert [w.worker_id for w in result.worker_earnings] == [9, 3]
        assert result.for_worker(3).final_earnings == Decimal("540.00")
        assert result.for_worker(42) is None

    def test_club_share_rounds_half_up(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("10.05"),
            base_amount=Decimal("0"),
            club_rate=Decimal("0.1"),
            contributions=[_worker(1, "1")],
            order_type=OrderType.EXPERIENCE,
        )

        assert result.club_earnings == Decimal("1.01")
        assert result.worker_earnings[0].final_earnings == Decimal("9.04")

    def test_worker_shares_round_down(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("100"),
            base_amount=Decimal("0"),
            club_rate=Decimal("0"),
            contributions=[_worker(1, "1"), _worker(2, "1"), _worker(3, "1")],
            order_type=OrderType.BLIND_BOX,
        )

        assert all(w.final_earnings == Decimal("33.33") for w in result.worker_earnings)
        assert result.worker_total == Decimal("99.99")


class TestRatingBasedSplit:
    """No club rate: the whole order amount is the pool."""

    def setup_method(self):
        self.engine = SettlementEngine()

    def test_supplement_worker_is_charged(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("1000"),
            base_amount=Decimal("500"),
            club_rate=None,
            contributions=[_worker(1, "1"), _worker(2, "0", is_supplement=True)],
            supplement_amount=Decimal("100"),
            order_type=OrderType.FUN,
        )

        assert result.split_mode == SplitMode.RATING_BASED
        assert result.club_earnings == Decimal("0.00")
        assert result.total_distribution == Decimal("1100.00")

        main = result.for_worker(1)
        assert main.base_earnings == Decimal("1100.00")
        assert main.final_earnings == Decimal("1100.00")

        supplement = result.for_worker(2)
        assert supplement.base_earnings == Decimal("0.00")
        assert supplement.supplement_earnings == Decimal("-200.00")
        assert supplement.final_earnings == Decimal("-200.00")

    def test_supplement_charge_is_split_between_supplement_workers(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("1000"),
            base_amount=Decimal("500"),
            club_rate=None,
            contributions=[
                _worker(1, "1"),
                _worker(2, "0", is_supplement=True),
                _worker(3, "0", is_supplement=True),
            ],
            supplement_amount=Decimal("100"),
            order_type=OrderType.FUN,
        )

        assert result.for_worker(2).final_earnings == Decimal("-100.00")
        assert result.for_worker(3).final_earnings == Decimal("-100.00")

    def test_zero_base_amount_skips_supplement(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("1000"),
            base_amount=Decimal("0"),
            club_rate=None,
            contributions=[_worker(1, "1"), _worker(2, "0", is_supplement=True)],
            supplement_amount=Decimal("100"),
            order_type=OrderType.FUN,
        )

        assert result.for_worker(2).final_earnings == Decimal("0.00")

    def test_zero_order_amount_skips_supplement(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("0"),
            base_amount=Decimal("500"),
            club_rate=None,
            contributions=[_worker(1, "1"), _worker(2, "0", is_supplement=True)],
            supplement_amount=Decimal("100"),
            order_type=OrderType.FUN,
        )

        assert result.for_worker(2).final_earnings == Decimal("0.00")

    def test_zero_rating_total_gives_no_shares(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("1000"),
            base_amount=Decimal("0"),
            club_rate=None,
            contributions=[_worker(1, "0"), _worker(2, "0")],
            order_type=OrderType.FUN,
        )

        assert result.worker_total == Decimal("0.00")

    def test_no_contributors(self):
        result = self.engine.compute_earnings(
            order_amount=Decimal("1000"),
            base_amount=Decimal("0"),
            club_rate=Decimal("0.1"),
            contributions=[],
            order_type=OrderType.EXPERIENCE,
        )

        assert result.worker_earnings == ()
        assert result.club_earnings == Decimal("100.00")


class TestInputValidation:

    def setup_method(self):
        self.engine = SettlementEngine()

    def test_negative_order_amount_raises(self):
        with pytest.raises(InvalidAmountError):
            self.engine.compute_earnings(
                order_amount=Decimal("-1"),
                base_amount=Decimal("0"),
                club_rate=None,
                contributions=[_worker(1, "1")],
                order_type=OrderType.FUN,
            )

    def test_float_order_amount_raises(self):
        with pytest.raises(InvalidAmountError):
            self.engine.compute_earnings(
                order_amount=1000.0,
                base_amount=Decimal("0"),
                club_rate=None,
                contributions=[_worker(1, "1")],
                order_type=OrderType.FUN,
            )


class TestValidateTotalEarnings:

    def setup_method(self):
        self.engine = SettlementEngine()

    def test_within_amount(self):
        assert self.engine.validate_total_earnings(
            Decimal("100"), [Decimal("540"), Decimal("360")], Decimal("1000")
        )

    def test_at_tolerance_limit(self):
        assert self.engine.validate_total_earnings(
            Decimal("100"), [Decimal("910")], Decimal("1000")
        )

    def test_beyond_tolerance(self):
        assert not self.engine.validate_total_earnings(
            Decimal("100"), [Decimal("910.01")], Decimal("1000")
        )

    def test_custom_tolerance(self):
        assert self.engine.validate_total_earnings(
            Decimal("0"), [Decimal("1050")], Decimal("1000"), tolerance=Decimal("0.05")
        )


class TestPolicyLookups:

    def test_default_split_rules(self):
        engine = SettlementEngine()
        assert engine.get_default_split_rule(OrderType.EXPERIENCE).club_rate == Decimal("0.1")
        assert engine.get_default_split_rule(OrderType.BLIND_BOX).club_rate == Decimal("0")
        assert engine.get_default_split_rule("FUN").split_mode == SplitMode.RATING_BASED

    def test_unknown_order_type_is_rating_based(self):
        rule = SettlementEngine().get_default_split_rule("SOMETHING_NEW")
        assert rule.club_rate is None

    def test_every_order_type_has_a_rule(self):
        assert {t.value for t in OrderType} <= set(DEFAULT_SPLIT_RULES)

    @pytest.mark.parametrize(
        "order_type,expected",
        [
            (OrderType.EXPERIENCE, SettlementType.EXPERIENCE),
            (OrderType.LUCKY_BAG, SettlementType.EXPERIENCE),
            (OrderType.FUN, SettlementType.REGULAR),
            ("ESCORT", SettlementType.REGULAR),
        ],
    )
    def test_settlement_type(self, order_type, expected):
        assert settlement_type_for(order_type) is expected


class TestCustomerServiceShare:

    def test_leftover_cents_go_to_first_rows(self):
        parts = split_customer_service_share(Decimal("100"), Decimal("0.05"), 3)
        assert parts == (Decimal("1.67"), Decimal("1.67"), Decimal("1.66"))
        assert sum(parts) == Decimal("5.00")

    def test_total_is_truncated(self):
        parts = split_customer_service_share(Decimal("10.99"), Decimal("0.1"), 1)
        assert parts == (Decimal("1.09"),)

    def test_zero_rate(self):
        assert split_customer_service_share(Decimal("100"), Decimal("0"), 2) == (
            Decimal("0.00"),
            Decimal("0.00"),
        )

    def test_no_rows(self):
        assert split_customer_service_share(Decimal("100"), Decimal("0.05"), 0) == ()


class TestUnlockTime:

    COMPLETED = datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)

    def test_short_cycle_types_freeze_three_days(self):
        assert compute_unlock_at(OrderType.EXPERIENCE, self.COMPLETED) == self.COMPLETED + timedelta(days=3)
        assert freeze_days_for(OrderType.LUCKY_BAG) == 3

    def test_other_types_freeze_seven_days(self):
        assert compute_unlock_at(OrderType.FUN, self.COMPLETED) == self.COMPLETED + timedelta(days=7)

    def test_configured_table(self):
        table = {"FUN": 1, "default": 10}
        assert freeze_days_for(OrderType.FUN, table) == 1
        assert freeze_days_for(OrderType.ESCORT, table) == 10

    def test_missing_completion_time_raises(self):
        with pytest.raises(ValueError):
            compute_unlock_at(OrderType.FUN, None)

    def test_naive_completion_time_raises(self):
        with pytest.raises(ValueError):
            compute_unlock_at(OrderType.FUN, datetime(2024, 3, 1, 8, 30))


class TestEngineTrace:

    def test_trace_fingerprint_is_deterministic(self, captured_logs):
        engine = SettlementEngine()
        kwargs = dict(
            order_amount=Decimal("1000"),
            base_amount=Decimal("0"),
            club_rate=Decimal("0.1"),
            contributions=[_worker(1, "0.6"), _worker(2, "0.4")],
            order_type=OrderType.FUN,
        )

        first = engine.compute_earnings(**kwargs)
        second = engine.compute_earnings(**kwargs)
        assert first == second

        traces = [r for r in captured_logs() if r["message"] == "EARNINGS_ENGINE_TRACE"]
        assert len(traces) == 2
        assert traces[0]["engine_name"] == "settlement"
        assert traces[0]["input_fingerprint"] == traces[1]["input_fingerprint"]
