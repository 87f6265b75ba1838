"""
Module: earnings_kernel.models.settlement
Responsibility: ORM persistence for per-worker order settlements.
Architecture position: Kernel > Models.  May import from db/base.py and
    db/types.py only.

Invariants enforced:
    - Exactly one settlement row per (order, worker) (unique constraint).
    - final_earnings == calculated_earnings + manual_adjustment, maintained
      by SettlementService; engine-derived columns never change after insert
      (db/immutability.py).
    - Settlements are never deleted.

Failure modes:
    - IntegrityError on a second row for the same (order, worker).
    - ImmutabilityViolationError on edits to engine-derived columns or on
      DELETE.

Audit relevance:
    Settlements are the expense side of reconciliation
    (Σ final_earnings + Σ cs_earnings).  Manual adjustments and payment
    marks are recorded in the audit chain by SettlementService.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from earnings_kernel.db.base import TrackedBase, UUIDString
from earnings_kernel.db.types import enum_type


class SettlementType(str, Enum):
    """Settlement cadence bucket derived from the order type."""

    EXPERIENCE = "EXPERIENCE"
    REGULAR = "REGULAR"


class PaymentStatus(str, Enum):
    """Whether the worker has been paid for this settlement."""

    UNPAID = "UNPAID"
    PAID = "PAID"


# Columns produced by the settlement engine; fixed once inserted
ENGINE_DERIVED_FIELDS: frozenset[str] = frozenset({
    "order_id",
    "user_id",
    "settlement_type",
    "base_earnings",
    "supplement_earnings",
    "calculated_earnings",
    "cs_earnings",
    "rating_rate",
    "settled_at",
})


class OrderSettlement(TrackedBase):
    """
    Persisted earnings split for one worker on one order.

    Contract:
        Created exactly once per (order, worker) at settlement time.
        Afterwards only manual adjustment fields, final_earnings and payment
        fields may change, through SettlementService.

    Guarantees:
        - final_earnings == calculated_earnings + manual_adjustment.
    """

    __tablename__ = "order_settlements"

    __table_args__ = (
        UniqueConstraint("order_id", "user_id", name="uq_settlement_order_user"),
        Index("idx_settlement_user", "user_id"),
        Index("idx_settlement_type_settled", "settlement_type", "settled_at"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("orders.id"),
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(nullable=False)

    settlement_type: Mapped[SettlementType] = mapped_column(
        enum_type(SettlementType), nullable=False
    )

    base_earnings: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    supplement_earnings: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    calculated_earnings: Mapped[Decimal] = mapped_column(nullable=False)
    manual_adjustment: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    final_earnings: Mapped[Decimal] = mapped_column(nullable=False)
    cs_earnings: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    rating_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), default=Decimal("0"), nullable=False
    )
    is_supplement: Mapped[bool] = mapped_column(default=False, nullable=False)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        enum_type(PaymentStatus),
        default=PaymentStatus.UNPAID,
        nullable=False,
    )

    settled_at: Mapped[datetime] = mapped_column(nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    payment_remark: Mapped[str | None] = mapped_column(String(255), nullable=True)

    adjusted_by: Mapped[int | None] = mapped_column(nullable=True)
    adjusted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    adjust_remark: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<OrderSettlement order={self.order_id} user={self.user_id} "
            f"final={self.final_earnings}>"
        )
