"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every significant
    state change: wallet ledger mutations, settlements, adjustments,
    payment marks, refunds, withdrawal reviews and reconciliation queries.
    Provides chain validation for tamper detection and trace queries for
    forensic review.

Architecture position:
    Kernel > Services -- imperative shell, called by WalletLedgerService,
    SettlementService, WithdrawalService and ReconciliationService.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never raw SQL max+1).
    - Audit chain integrity: ``hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash)``.  Every audit event carries a
      cryptographic link to its predecessor.
    - Append-only: audit events are never modified or deleted (ORM
      listeners on the AuditEvent model).

Failure modes:
    - AuditChainBrokenError: Recomputed hash does not match stored hash,
      or prev_hash does not match the predecessor's hash.
    - IntegrityError: Concurrent insert race on sequence counter.

Audit relevance:
    This IS the audit service.  All audit events flow through
    ``_create_audit_event()`` which enforces hash chain linkage before
    persisting.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from earnings_kernel.domain.clock import Clock, SystemClock
from earnings_kernel.exceptions import AuditChainBrokenError
from earnings_kernel.logging_config import get_logger
from earnings_kernel.models.audit_event import AuditAction, AuditEvent
from earnings_kernel.services.sequence_service import SequenceService
from earnings_kernel.utils.hashing import canonicalize_json, hash_audit_event, hash_payload

logger = get_logger("services.auditor")

# Actor id recorded for jobs and other unattended callers
SYSTEM_ACTOR_ID = 0


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: int
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """
    Complete audit trace for an entity.

    Contains all audit events in chronological order.
    """

    entity_type: str
    entity_id: str
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(entry.action for entry in self.entries)


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Contract:
        Accepts domain-specific recording requests and creates append-only
        ``AuditEvent`` rows with cryptographic hash chain linkage.

    Guarantees:
        - Every audit event's ``hash`` is a deterministic function of
          ``(entity_type, entity_id, action, payload_hash, prev_hash)``.
          Tampering with any field is detectable by ``validate_chain()``.
        - Sequence numbers are allocated via ``SequenceService``.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT interpret or act on audit events.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        """Get the hash of the most recent audit event."""
        last_event = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID | str,
        action: AuditAction,
        actor_id: int,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Create a new audit event with hash chain linkage.

        Postconditions:
            - A new ``AuditEvent`` row is flushed with a monotonically
              increasing ``seq`` and a valid hash chain link.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        # Stored payload is exactly what was hashed (Decimal and UUID as strings)
        payload_data = json.loads(canonicalize_json(payload or {}))
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )

        return audit_event

    # Wallet ledger

    def record_account_opened(
        self,
        account_id: UUID,
        user_id: int,
        wallet_uid: str,
        actor_id: int = SYSTEM_ACTOR_ID,
    ) -> AuditEvent:
        """Record lazy creation of a wallet account."""
        return self._create_audit_event(
            entity_type="WalletAccount",
            entity_id=account_id,
            action=AuditAction.WALLET_ACCOUNT_OPENED,
            actor_id=actor_id,
            payload={"user_id": user_id, "wallet_uid": wallet_uid},
        )

    def record_wallet_transaction(
        self,
        action: AuditAction,
        transaction_id: UUID,
        account_id: UUID,
        biz_type: str,
        amount: Decimal,
        available_after: Decimal,
        frozen_after: Decimal,
        actor_id: int = SYSTEM_ACTOR_ID,
        related_tx_id: UUID | None = None,
        reason: str | None = None,
    ) -> AuditEvent:
        """
        Record a wallet ledger mutation.

        Preconditions:
            - ``transaction_id`` is the row just inserted in the same
              transaction; the snapshots are that row's post-balances.
        """
        payload: dict[str, Any] = {
            "account_id": account_id,
            "biz_type": biz_type,
            "amount": amount,
            "available_after": available_after,
            "frozen_after": frozen_after,
        }
        if related_tx_id is not None:
            payload["related_tx_id"] = related_tx_id
        if reason:
            payload["reason"] = reason
        return self._create_audit_event(
            entity_type="WalletTransaction",
            entity_id=transaction_id,
            action=action,
            actor_id=actor_id,
            payload=payload,
        )

    # Settlement lifecycle

    def record_order_settled(
        self,
        order_id: UUID,
        auto_serial: str,
        club_earnings: Decimal,
        created_count: int,
        actor_id: int,
    ) -> AuditEvent:
        """Record that settlement rows were written for an order."""
        return self._create_audit_event(
            entity_type="Order",
            entity_id=order_id,
            action=AuditAction.ORDER_SETTLED,
            actor_id=actor_id,
            payload={
                "auto_serial": auto_serial,
                "club_earnings": club_earnings,
                "created_count": created_count,
            },
        )

    def record_settlement_adjusted(
        self,
        settlement_id: UUID,
        previous_final: Decimal,
        manual_adjustment: Decimal,
        final_earnings: Decimal,
        actor_id: int,
        remark: str | None,
    ) -> AuditEvent:
        """Record a manual adjustment of a settlement."""
        return self._create_audit_event(
            entity_type="OrderSettlement",
            entity_id=settlement_id,
            action=AuditAction.SETTLEMENT_ADJUSTED,
            actor_id=actor_id,
            payload={
                "previous_final": previous_final,
                "manual_adjustment": manual_adjustment,
                "final_earnings": final_earnings,
                "remark": remark,
            },
        )

    def record_settlement_paid(
        self,
        settlement_id: UUID,
        final_earnings: Decimal,
        actor_id: int,
        remark: str | None,
    ) -> AuditEvent:
        """Record that a settlement was marked paid."""
        return self._create_audit_event(
            entity_type="OrderSettlement",
            entity_id=settlement_id,
            action=AuditAction.SETTLEMENT_PAID,
            actor_id=actor_id,
            payload={"final_earnings": final_earnings, "remark": remark},
        )

    def record_order_refunded(
        self,
        order_id: UUID,
        auto_serial: str,
        reversal_tx_ids: list[UUID],
        actor_id: int,
        reason: str,
    ) -> AuditEvent:
        """Record an order refund and the reversals it produced."""
        return self._create_audit_event(
            entity_type="Order",
            entity_id=order_id,
            action=AuditAction.ORDER_REFUNDED,
            actor_id=actor_id,
            payload={
                "auto_serial": auto_serial,
                "reversal_tx_ids": [str(tx_id) for tx_id in reversal_tx_ids],
                "reason": reason,
            },
        )

    # Withdrawals

    def record_withdrawal(
        self,
        action: AuditAction,
        request_id: UUID,
        user_id: int,
        amount: Decimal,
        actor_id: int,
        remark: str | None = None,
    ) -> AuditEvent:
        """Record a withdrawal request or its review outcome."""
        return self._create_audit_event(
            entity_type="WithdrawalRequest",
            entity_id=request_id,
            action=action,
            actor_id=actor_id,
            payload={"user_id": user_id, "amount": amount, "remark": remark},
        )

    # Reconciliation

    def record_reconciliation_query(
        self,
        action: AuditAction,
        actor_id: int,
        role: str,
        params: dict[str, Any],
    ) -> AuditEvent:
        """Record who ran which reconciliation query with which filters."""
        return self._create_audit_event(
            entity_type="Reconciliation",
            entity_id=action.value,
            action=action,
            actor_id=actor_id,
            payload={"role": role, "params": params},
        )

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Postconditions:
            - Returns ``True`` only if every event's stored ``hash`` matches
              the recomputed value and every event's ``prev_hash`` matches
              its predecessor's ``hash``.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if events[0].prev_hash is not None:
            logger.critical(
                "audit_chain_broken",
                extra={"audit_event_id": str(events[0].id), "check": "genesis"},
            )
            raise AuditChainBrokenError(str(events[0].id), "None", events[0].prev_hash)

        for i, event in enumerate(events):
            if hash_payload(event.payload or {}) != event.payload_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "check": "payload"},
                )
                raise AuditChainBrokenError(
                    str(event.id),
                    event.payload_hash,
                    hash_payload(event.payload or {}),
                )

            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                action=event.action.value,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "check": "hash"},
                )
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            if i > 0 and event.prev_hash != events[i - 1].hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "check": "link"},
                )
                raise AuditChainBrokenError(
                    str(event.id),
                    events[i - 1].hash,
                    event.prev_hash or "None",
                )

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    # Trace and query methods

    def get_trace(self, entity_type: str, entity_id: UUID | str) -> AuditTrace:
        """Get the complete audit trace for an entity, oldest first."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == str(entity_id),
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=event.action,
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )
        return AuditTrace(entity_type=entity_type, entity_id=str(entity_id), entries=entries)

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent audit events, newest first."""
        result = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(limit)
        )
        return list(result.scalars().all())
