"""
Idempotency key generation utilities.

Idempotency keys ensure that a retried ledger mutation finds the row the
first attempt wrote instead of moving money twice.  Every key is stored on
WalletTransaction.idempotency_key under a unique constraint.
"""

from enum import Enum
from uuid import UUID


def _tag(biz_type: Enum | str) -> str:
    return biz_type.value if isinstance(biz_type, Enum) else str(biz_type)


def settlement_key(
    biz_type: Enum | str,
    order_id: UUID | str,
    user_id: int,
) -> str:
    """
    Key for a settlement-driven credit or freeze.

    Format: biz_type:order_id:user_id

    Example:
        >>> settlement_key("SETTLEMENT_EARNING", order_uuid, 42)
        "SETTLEMENT_EARNING:550e8400-e29b-41d4-a716-446655440000:42"
    """
    return f"{_tag(biz_type)}:{order_id}:{user_id}"


def transaction_key(biz_type: Enum | str, tx_id: UUID | str) -> str:
    """
    Key for a mutation that acts on an existing transaction.

    Releases, payouts and reversals can each happen once per target, so the
    target transaction id is the natural key.

    Format: biz_type:tx:transaction_id
    """
    return f"{_tag(biz_type)}:tx:{tx_id}"


def withdrawal_key(user_id: int, request_id: UUID | str) -> str:
    """Key for the reserve backing a withdrawal request."""
    return f"WITHDRAW_RESERVE:withdrawal:{user_id}:{request_id}"


def parse_idempotency_key(key: str) -> tuple[str, str, str]:
    """
    Parse an idempotency key into (biz_type, scope, reference).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":", 2)
    if len(parts) != 3:
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1], parts[2]
