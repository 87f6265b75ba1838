"""
Module: earnings_engines.settlement
Responsibility:
    Split an order's amount between the club and the contributing workers,
    and provide the static policy lookups that go with it: the default
    split rule per order type, the settlement cadence bucket, the
    customer-service share split and the hold unlock time.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import earnings_kernel.db.types, earnings_kernel.exceptions and
    the model enums.

Invariants enforced:
    - Decimal-only arithmetic.  Intermediate values stay exact; outputs are
      quantized to two places through round_money().
    - Rounding direction: club earnings ROUND_HALF_UP, positive worker
      shares ROUND_DOWN (never distribute more than the pool), negative
      supplement shares ROUND_HALF_UP.
    - No division by zero: an empty main-worker set or a zero rating total
      yields no base shares; a zero base amount, zero order amount or
      non-positive supplement amount skips the supplement step.
    - Determinism: identical inputs give equal outputs, and worker order
      follows input order.
    - Purity: no clock access.  compute_unlock_at() takes the completion
      time as an argument.

Failure modes:
    - InvalidAmountError on float input or a negative order amount.
    - ValueError from compute_unlock_at() when the completion time is
      missing or naive.

Audit relevance:
    compute_earnings() is traced with @traced_engine so every settlement
    leaves an EARNINGS_ENGINE_TRACE record with a deterministic fingerprint
    of its inputs.

Usage:
    from earnings_engines.settlement import Contribution, SettlementEngine

    engine = SettlementEngine()
    result = engine.compute_earnings(
        order_amount=Decimal("1000"),
        base_amount=Decimal("0"),
        club_rate=Decimal("0.1"),
        contributions=[
            Contribution(worker_id=1, contribution=Decimal("1"), rating_rate=Decimal("0.6")),
            Contribution(worker_id=2, contribution=Decimal("1"), rating_rate=Decimal("0.4")),
        ],
        order_type="FUN",
    )
    # result.club_earnings == Decimal("100.00")
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from earnings_engines.tracer import traced_engine
from earnings_kernel.db.types import ZERO, round_money, to_money, to_rate, truncate_money
from earnings_kernel.exceptions import InvalidAmountError
from earnings_kernel.logging_config import get_logger
from earnings_kernel.models.order import OrderType
from earnings_kernel.models.settlement import SettlementType

logger = get_logger("engines.settlement")

DEFAULT_TOTAL_TOLERANCE = Decimal("0.01")

CENT = Decimal("0.01")


class SplitMode(str, Enum):
    """How the order amount was divided."""

    FIXED = "FIXED"  # club took a fixed rate first
    RATING_BASED = "RATING_BASED"  # whole amount split by rating


@dataclass(frozen=True)
class Contribution:
    """
    One worker's structured contribution to an order.

    Produced upstream by the contribution normalizer and persisted as an
    OrderContribution row.
    """

    worker_id: int
    contribution: Decimal
    rating_rate: Decimal
    is_supplement: bool = False


@dataclass(frozen=True)
class WorkerEarning:
    """Computed earnings for one worker."""

    worker_id: int
    base_earnings: Decimal
    supplement_earnings: Decimal
    final_earnings: Decimal
    rating_rate: Decimal
    is_supplement: bool


@dataclass(frozen=True)
class SettlementComputation:
    """
    Result of compute_earnings().

    ``worker_earnings`` is in the same order as the input contributions.
    """

    club_earnings: Decimal
    worker_earnings: tuple[WorkerEarning, ...]
    split_mode: SplitMode
    total_distribution: Decimal

    @property
    def worker_total(self) -> Decimal:
        return sum((w.final_earnings for w in self.worker_earnings), ZERO)

    def for_worker(self, worker_id: int) -> WorkerEarning | None:
        for earning in self.worker_earnings:
            if earning.worker_id == worker_id:
                return earning
        return None


@dataclass(frozen=True)
class SplitRule:
    """Default club commission for an order type.  None means rating-based."""

    club_rate: Decimal | None
    description: str

    @property
    def split_mode(self) -> SplitMode:
        return SplitMode.RATING_BASED if self.club_rate is None else SplitMode.FIXED


DEFAULT_SPLIT_RULES: dict[str, SplitRule] = {
    OrderType.EXPERIENCE.value: SplitRule(Decimal("0.1"), "experience orders: fixed 10% club commission"),
    OrderType.FUN.value: SplitRule(None, "fun orders: split by rating"),
    OrderType.ESCORT.value: SplitRule(None, "escort orders: split by rating"),
    OrderType.LUCKY_BAG.value: SplitRule(None, "lucky bag orders: split by rating"),
    OrderType.BLIND_BOX.value: SplitRule(Decimal("0"), "blind box: no club commission"),
    OrderType.CUSTOM.value: SplitRule(None, "custom orders: split by rating"),
    OrderType.CUSTOMIZED.value: SplitRule(None, "customized orders: split by rating"),
}

FALLBACK_SPLIT_RULE = SplitRule(None, "split by rating")


def _type_key(order_type: OrderType | str) -> str:
    return order_type.value if isinstance(order_type, Enum) else str(order_type)


class SettlementEngine:
    """
    Pure earnings split.

    Contract:
        compute_earnings() takes the order economics and the structured
        contributions and returns a frozen SettlementComputation.  It never
        reads the database or the clock.

    Non-goals:
        - Does NOT validate the result against the order amount; callers
          use validate_total_earnings() and reject on False.
        - Does NOT persist anything.
    """

    @traced_engine(
        "settlement",
        "1.0",
        fingerprint_fields=(
            "order_amount",
            "base_amount",
            "club_rate",
            "contributions",
            "supplement_amount",
            "order_type",
        ),
    )
    def compute_earnings(
        self,
        *,
        order_amount: Decimal,
        base_amount: Decimal,
        club_rate: Decimal | None,
        contributions: Sequence[Contribution],
        supplement_amount: Decimal = ZERO,
        order_type: OrderType | str,
    ) -> SettlementComputation:
        """
        Split ``order_amount`` between the club and the contributors.

        Steps:
            1. With a club rate the club takes ``order_amount * club_rate``
               and the rest is the pool; without one the whole amount is the
               pool.
            2. Contributors are partitioned into main and supplement workers.
            3. If supplement_amount > 0, base_amount > 0 and supplement
               workers exist, each supplement worker is charged
               ``(supplement_amount / (base_amount / order_amount)) / n``.
            4. ``total_distribution = pool + |supplement_amount|`` is shared
               among main workers in proportion to rating_rate.
            5. final = base + supplement per worker.
        """
        amount = to_money(order_amount)
        if amount < 0:
            raise InvalidAmountError(order_amount, "order amount must not be negative")
        base = to_money(base_amount)
        supplement = to_money(supplement_amount)
        rate = to_rate(club_rate)

        if rate is not None:
            club_earnings = round_money(amount * rate, rounding=ROUND_HALF_UP)
            pool = amount - club_earnings
            split_mode = SplitMode.FIXED
        else:
            club_earnings = ZERO
            pool = amount
            split_mode = SplitMode.RATING_BASED

        main_workers = [c for c in contributions if not c.is_supplement]
        supplement_workers = [c for c in contributions if c.is_supplement]

        supplement_map: dict[int, Decimal] = {}
        if supplement > 0 and base > 0 and amount > 0 and supplement_workers:
            per_worker = (supplement / (base / amount)) / len(supplement_workers)
            charge = round_money(-abs(per_worker), rounding=ROUND_HALF_UP)
            for worker in supplement_workers:
                supplement_map[worker.worker_id] = charge

        total_distribution = pool + abs(supplement)

        base_map: dict[int, Decimal] = {}
        total_rating = sum((to_money(c.rating_rate) for c in main_workers), Decimal("0"))
        if main_workers and total_rating > 0:
            for worker in main_workers:
                share = total_distribution * to_money(worker.rating_rate) / total_rating
                base_map[worker.worker_id] = truncate_money(share)

        earnings = []
        for worker in contributions:
            base_earning = ZERO if worker.is_supplement else base_map.get(worker.worker_id, ZERO)
            supplement_earning = supplement_map.get(worker.worker_id, ZERO)
            earnings.append(
                WorkerEarning(
                    worker_id=worker.worker_id,
                    base_earnings=base_earning,
                    supplement_earnings=supplement_earning,
                    final_earnings=base_earning + supplement_earning,
                    rating_rate=to_money(worker.rating_rate),
                    is_supplement=worker.is_supplement,
                )
            )

        result = SettlementComputation(
            club_earnings=club_earnings,
            worker_earnings=tuple(earnings),
            split_mode=split_mode,
            total_distribution=round_money(total_distribution),
        )

        logger.debug(
            "settlement_computed",
            extra={
                "order_type": _type_key(order_type),
                "split_mode": split_mode.value,
                "club_earnings": str(club_earnings),
                "worker_count": len(earnings),
                "supplement_workers": len(supplement_workers),
            },
        )
        return result

    def validate_total_earnings(
        self,
        club_earnings: Decimal,
        worker_earnings: Sequence[Decimal],
        order_amount: Decimal,
        tolerance: Decimal = DEFAULT_TOTAL_TOLERANCE,
    ) -> bool:
        """False iff club + Σ worker earnings > order_amount * (1 + tolerance)."""
        total = to_money(club_earnings) + sum(
            (to_money(e) for e in worker_earnings), Decimal("0")
        )
        return total <= to_money(order_amount) * (1 + to_money(tolerance))

    def get_default_split_rule(self, order_type: OrderType | str) -> SplitRule:
        """Static default rule; unknown types are rating-based."""
        return DEFAULT_SPLIT_RULES.get(_type_key(order_type), FALLBACK_SPLIT_RULE)


def settlement_type_for(order_type: OrderType | str) -> SettlementType:
    """EXPERIENCE and LUCKY_BAG settle on the short cycle; everything else is REGULAR."""
    if _type_key(order_type) in (OrderType.EXPERIENCE.value, OrderType.LUCKY_BAG.value):
        return SettlementType.EXPERIENCE
    return SettlementType.REGULAR


def split_customer_service_share(
    order_amount: Decimal,
    cs_rate: Decimal,
    worker_count: int,
) -> tuple[Decimal, ...]:
    """
    Split the customer-service share of an order across settlement rows.

    The total is ``order_amount * cs_rate`` rounded down to the cent.  Each
    row gets the same base part; leftover cents go one each to the first
    rows, so the parts always sum to the total.
    """
    if worker_count <= 0:
        return ()
    total = truncate_money(to_money(order_amount) * to_money(cs_rate))
    if total <= 0:
        return tuple(ZERO for _ in range(worker_count))

    part = truncate_money(total / worker_count)
    leftover_cents = int((total - part * worker_count) / CENT)
    return tuple(
        part + CENT if index < leftover_cents else part
        for index in range(worker_count)
    )


DEFAULT_FREEZE_DAYS: dict[str, int] = {
    OrderType.EXPERIENCE.value: 3,
    OrderType.LUCKY_BAG.value: 3,
    "default": 7,
}


def freeze_days_for(
    order_type: OrderType | str,
    freeze_days: Mapping[str, int] | None = None,
) -> int:
    """Freeze window in days for an order type; ``"default"`` covers the rest."""
    table = freeze_days if freeze_days is not None else DEFAULT_FREEZE_DAYS
    key = _type_key(order_type)
    if key in table:
        return table[key]
    return table.get("default", DEFAULT_FREEZE_DAYS["default"])


def compute_unlock_at(
    order_type: OrderType | str,
    completed_at: datetime | None,
    freeze_days: Mapping[str, int] | None = None,
) -> datetime:
    """
    When frozen settlement earnings may be released.

    Raises:
        ValueError: If completed_at is missing or naive.
    """
    if completed_at is None:
        raise ValueError("completed_at is required to compute the unlock time")
    if completed_at.tzinfo is None:
        raise ValueError(f"completed_at must be timezone-aware: {completed_at!r}")
    return completed_at + timedelta(days=freeze_days_for(order_type, freeze_days))
