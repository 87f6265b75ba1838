"""
Module: earnings_kernel.models.withdrawal
Responsibility: ORM persistence for worker withdrawal requests.
Architecture position: Kernel > Models.  May import from db/base.py and
    db/types.py only.

Invariants enforced:
    - (user_id, idempotency_key) is unique: a resubmitted request returns the
      original row.
    - Status moves PENDING_REVIEW -> PAID or PENDING_REVIEW -> REJECTED, once.

Audit relevance:
    reserve_tx_id links the request to the WITHDRAW_RESERVE ledger row whose
    payout or release settles it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from earnings_kernel.db.base import TrackedBase, UUIDString
from earnings_kernel.db.types import enum_type


class WithdrawalStatus(str, Enum):
    """Review state of a withdrawal request."""

    PENDING_REVIEW = "PENDING_REVIEW"
    PAID = "PAID"
    REJECTED = "REJECTED"


class WithdrawalRequest(TrackedBase):
    """A worker's request to take money out of the available balance."""

    __tablename__ = "withdrawal_requests"

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_withdrawal_user_key"),
        Index("idx_withdrawal_status", "status"),
    )

    user_id: Mapped[int] = mapped_column(nullable=False)
    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("wallet_accounts.id"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(
        enum_type(WithdrawalStatus),
        default=WithdrawalStatus.PENDING_REVIEW,
        nullable=False,
    )
    payout_channel: Mapped[str] = mapped_column(String(32), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(100), nullable=False)

    reserve_tx_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("wallet_transactions.id"),
        nullable=True,
    )

    reviewed_by: Mapped[int | None] = mapped_column(nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    review_remark: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<WithdrawalRequest user={self.user_id} {self.amount} {self.status.value}>"
