"""
Module: earnings_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listeners).
    - Hash chain integrity: hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash).  Validated by AuditorService.
    - seq is monotonically increasing, allocated by SequenceService.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a hash mismatch.

Audit relevance:
    AuditEvent IS the audit trail.  Every ledger mutation, settlement,
    adjustment, payment mark, refund, withdrawal review and reconciliation
    query produces an AuditEvent.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from earnings_kernel.db.base import Base
from earnings_kernel.db.types import enum_type


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Wallet ledger
    WALLET_ACCOUNT_OPENED = "WALLET_ACCOUNT_OPENED"
    WALLET_CREDITED = "WALLET_CREDITED"
    WALLET_FROZEN = "WALLET_FROZEN"
    WALLET_RELEASED = "WALLET_RELEASED"
    WALLET_REVERSED = "WALLET_REVERSED"
    WALLET_RESERVED = "WALLET_RESERVED"
    WALLET_PAID_OUT = "WALLET_PAID_OUT"

    # Settlement lifecycle
    ORDER_SETTLED = "ORDER_SETTLED"
    SETTLEMENT_ADJUSTED = "SETTLEMENT_ADJUSTED"
    SETTLEMENT_PAID = "SETTLEMENT_PAID"
    ORDER_REFUNDED = "ORDER_REFUNDED"

    # Withdrawals
    WITHDRAWAL_REQUESTED = "WITHDRAWAL_REQUESTED"
    WITHDRAWAL_APPROVED = "WITHDRAWAL_APPROVED"
    WITHDRAWAL_REJECTED = "WITHDRAWAL_REJECTED"

    # Reconciliation queries
    RECONCILE_SUMMARY = "RECONCILE_SUMMARY"
    RECONCILE_ORDERS = "RECONCILE_ORDERS"
    RECONCILE_ORDER_DETAIL = "RECONCILE_ORDER_DETAIL"
    REVENUE_OVERVIEW = "REVENUE_OVERVIEW"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Contract:
        AuditEvent rows are append-only, never updated or deleted.
        Each row's hash includes the previous row's hash.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis event.

    Non-goals:
        - This model does NOT enforce hash correctness at INSERT time;
          that is the responsibility of AuditorService.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    # e.g. "WalletTransaction", "Order", "Reconciliation"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)

    action: Mapped[AuditAction] = mapped_column(enum_type(AuditAction, 50), nullable=False)

    # External user identity of whoever performed the action (0 = system)
    actor_id: Mapped[int] = mapped_column(nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action.value} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        """Check if this is the first event in the hash chain."""
        return self.prev_hash is None
