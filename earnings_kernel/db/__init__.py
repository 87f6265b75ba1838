"""Database layer - engine, base classes, types, and immutability guards."""

from earnings_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from earnings_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    read_snapshot_scope,
    session_scope,
)
from earnings_kernel.db.types import Money, PayloadHash, Rate, Sequence

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "session_scope",
    "read_snapshot_scope",
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
    "Money",
    "Rate",
    "Sequence",
    "PayloadHash",
]
