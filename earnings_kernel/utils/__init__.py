"""Utility modules for the earnings kernel."""

from earnings_kernel.utils.chunking import chunked
from earnings_kernel.utils.hashing import canonicalize_json, hash_audit_event, hash_payload
from earnings_kernel.utils.idempotency import (
    parse_idempotency_key,
    settlement_key,
    transaction_key,
    withdrawal_key,
)

__all__ = [
    "canonicalize_json",
    "chunked",
    "hash_audit_event",
    "hash_payload",
    "settlement_key",
    "parse_idempotency_key",
    "transaction_key",
    "withdrawal_key",
]
