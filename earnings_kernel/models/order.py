"""
Module: earnings_kernel.models.order
Responsibility: ORM persistence for dispatch orders and the structured
    worker contributions that feed settlement.
Architecture position: Kernel > Models.  May import from db/base.py and
    db/types.py only.

Invariants enforced:
    - auto_serial is unique (human-facing order reference).
    - One contribution row per (order, worker).
    - Monetary fields are exact decimals (Numeric(20, 2)); rates are
      Numeric(12, 6).

Failure modes:
    - IntegrityError on duplicate auto_serial or duplicate contribution.

Audit relevance:
    Orders are the income side of reconciliation: paid_amount, is_paid,
    is_gifted and payment_time decide which orders count as income, and
    status REFUNDED drives refund accounting.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from earnings_kernel.db.base import TrackedBase, UUIDString
from earnings_kernel.db.types import enum_type


class OrderType(str, Enum):
    """Order (project) types that drive split and freeze policy."""

    EXPERIENCE = "EXPERIENCE"
    FUN = "FUN"
    ESCORT = "ESCORT"
    LUCKY_BAG = "LUCKY_BAG"
    BLIND_BOX = "BLIND_BOX"
    CUSTOM = "CUSTOM"
    CUSTOMIZED = "CUSTOMIZED"


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    WAIT_ASSIGN = "WAIT_ASSIGN"
    WAIT_ACCEPT = "WAIT_ACCEPT"
    ACCEPTED = "ACCEPTED"
    ARCHIVED = "ARCHIVED"
    COMPLETED = "COMPLETED"
    WAIT_REVIEW = "WAIT_REVIEW"
    REVIEWED = "REVIEWED"
    WAIT_AFTERSALE = "WAIT_AFTERSALE"
    AFTERSALE_DONE = "AFTERSALE_DONE"
    REFUNDED = "REFUNDED"


# Orders in these states may be settled
SETTLEABLE_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.ARCHIVED,
    OrderStatus.COMPLETED,
})


class Order(TrackedBase):
    """
    A unit of dispatched work.

    Contract:
        Created on order placement by the order lifecycle collaborator.
        paid_amount and status change on payment and refund; club_earnings
        and settled_at are written once by settlement.

    Guarantees:
        - auto_serial is unique.
        - club_rate, when set, overrides the order type's default split rule.
    """

    __tablename__ = "orders"

    __table_args__ = (
        Index("idx_order_payment_time", "payment_time"),
        Index("idx_order_status", "status"),
    )

    auto_serial: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    order_type: Mapped[OrderType] = mapped_column(enum_type(OrderType), nullable=False)

    status: Mapped[OrderStatus] = mapped_column(
        enum_type(OrderStatus),
        default=OrderStatus.WAIT_ASSIGN,
        nullable=False,
    )

    paid_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    receivable_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    # Guaranteed quota and the shortfall covered by supplement work
    base_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    supplement_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    club_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 6), nullable=True)
    cs_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), default=Decimal("0"), nullable=False
    )

    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_gifted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    payment_time: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    club_earnings: Mapped[Decimal | None] = mapped_column(nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    dispatcher_id: Mapped[int | None] = mapped_column(nullable=True)

    contributions: Mapped[list["OrderContribution"]] = relationship(
        back_populates="order",
        order_by="OrderContribution.position",
    )

    def __repr__(self) -> str:
        return f"<Order {self.auto_serial} {self.status.value} paid={self.paid_amount}>"

    @property
    def settlement_amount(self) -> Decimal:
        """Amount split among club and workers.

        Gifted orders carry no payment, so the receivable amount is split.
        """
        return self.receivable_amount if self.is_gifted else self.paid_amount


class OrderContribution(TrackedBase):
    """
    Structured worker contribution produced by the upstream normalizer.

    Contract:
        One row per worker per order.  ``position`` preserves the order in
        which the normalizer emitted contributions, which is also the order
        of the settlement engine's output.
    """

    __tablename__ = "order_contributions"

    __table_args__ = (
        UniqueConstraint("order_id", "user_id", name="uq_contribution_order_user"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("orders.id"),
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(nullable=False)
    position: Mapped[int] = mapped_column(default=0, nullable=False)

    contribution: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    rating_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), default=Decimal("0"), nullable=False
    )
    is_supplement: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    order: Mapped[Order] = relationship(back_populates="contributions")
