"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The wallet ledger is append-only: history is corrected by new reversal rows,
never by editing or deleting old ones.  These listeners catch modifications
made through SQLAlchemy before the SQL reaches the database:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity              | Mutable after insert                     | Never
--------------------|------------------------------------------|----------------
WalletTransaction   | status (along VALID_TRANSITIONS)         | DELETE
OrderSettlement     | manual adjustment, final, payment fields | DELETE
WalletAccount       | balances, entry_count                    | DELETE, user_id,
                    |                                          | wallet_uid
AuditEvent          | nothing                                  | UPDATE, DELETE

updated_at is audit metadata and may always change.

===============================================================================
USAGE
===============================================================================

    from earnings_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from earnings_kernel.exceptions import ImmutabilityViolationError
from earnings_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_ALWAYS_MUTABLE = frozenset({"updated_at"})


def _changed_fields(target) -> set[str]:
    """Names of column attributes with pending changes on ``target``."""
    state = inspect(target)
    changed: set[str] = set()
    for attr in state.mapper.column_attrs:
        if state.attrs[attr.key].history.has_changes():
            changed.add(attr.key)
    return changed - _ALWAYS_MUTABLE


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


# =============================================================================
# WalletTransaction
# =============================================================================


def _check_wallet_transaction_immutability(mapper, connection, target):
    """
    Allow only status changes that follow VALID_TRANSITIONS.

    The history of ``status`` gives the value loaded from the database
    (deleted) and the value about to be written (added).
    """
    from earnings_kernel.models.wallet import VALID_TRANSITIONS

    changed = _changed_fields(target)
    forbidden = changed - {"status"}
    if forbidden:
        _block(
            "WalletTransaction",
            target,
            "UPDATE",
            f"Wallet transactions are append-only; cannot modify {sorted(forbidden)}",
        )

    if "status" in changed:
        history = inspect(target).attrs.status.history
        old = history.deleted[0] if history.deleted else None
        new = history.added[0] if history.added else None
        if old is not None and new not in VALID_TRANSITIONS[old]:
            _block(
                "WalletTransaction",
                target,
                "UPDATE",
                f"Illegal status transition {old.value} -> {new.value}",
            )


def _check_wallet_transaction_delete(mapper, connection, target):
    _block("WalletTransaction", target, "DELETE", "Wallet transactions cannot be deleted")


# =============================================================================
# OrderSettlement
# =============================================================================


def _check_settlement_immutability(mapper, connection, target):
    """Engine-derived settlement columns are fixed once inserted."""
    from earnings_kernel.models.settlement import ENGINE_DERIVED_FIELDS

    forbidden = _changed_fields(target) & ENGINE_DERIVED_FIELDS
    if forbidden:
        _block(
            "OrderSettlement",
            target,
            "UPDATE",
            f"Settlement engine output cannot be modified: {sorted(forbidden)}",
        )


def _check_settlement_delete(mapper, connection, target):
    _block("OrderSettlement", target, "DELETE", "Settlements are never deleted")


# =============================================================================
# WalletAccount
# =============================================================================


def _check_wallet_account_immutability(mapper, connection, target):
    forbidden = _changed_fields(target) & {"user_id", "wallet_uid"}
    if forbidden:
        _block(
            "WalletAccount",
            target,
            "UPDATE",
            f"Wallet identity cannot be modified: {sorted(forbidden)}",
        )


def _check_wallet_account_delete(mapper, connection, target):
    _block("WalletAccount", target, "DELETE", "Wallet accounts are never deleted")


# =============================================================================
# AuditEvent
# =============================================================================


def _check_audit_event_immutability(mapper, connection, target):
    _block("AuditEvent", target, "UPDATE", "Audit events are immutable")


def _check_audit_event_delete(mapper, connection, target):
    _block("AuditEvent", target, "DELETE", "Audit events cannot be deleted")


def _listeners():
    from earnings_kernel.models.audit_event import AuditEvent
    from earnings_kernel.models.settlement import OrderSettlement
    from earnings_kernel.models.wallet import WalletAccount, WalletTransaction

    return (
        (WalletTransaction, "before_update", _check_wallet_transaction_immutability),
        (WalletTransaction, "before_delete", _check_wallet_transaction_delete),
        (OrderSettlement, "before_update", _check_settlement_immutability),
        (OrderSettlement, "before_delete", _check_settlement_delete),
        (WalletAccount, "before_update", _check_wallet_account_immutability),
        (WalletAccount, "before_delete", _check_wallet_account_delete),
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners already registered are left in place.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
