"""
earnings_services.authorization -- Explicit role checks at operation boundaries.

Responsibility:
    Decide whether a caller may run an operation, given the caller's role as
    an explicit argument.  Reconciliation operations call
    ``authorize_reconciliation`` before issuing any query.

Architecture position:
    Services layer.  The kernel remains actor-agnostic; this module does not
    resolve identity (the caller supplies user_id and role).

Invariants:
    - The role set allowed to reconcile comes from configuration
      (``reconciliation.allowed_roles``), FINANCE and SUPER_ADMIN by default.
    - Denial raises before any database access.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from enum import Enum

from earnings_kernel.exceptions import ReconciliationAccessDeniedError
from earnings_kernel.logging_config import get_logger

logger = get_logger("services.authorization")


class UserRole(str, Enum):
    """Back-office and worker roles."""

    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    CUSTOMER_SERVICE = "CUSTOMER_SERVICE"
    OPERATION = "OPERATION"
    FINANCE = "FINANCE"
    REGISTERED_USER = "REGISTERED_USER"


DEFAULT_RECONCILIATION_ROLES: frozenset[str] = frozenset({
    UserRole.FINANCE.value,
    UserRole.SUPER_ADMIN.value,
})


@dataclass(frozen=True)
class Caller:
    """Identity of whoever invokes a service operation."""

    user_id: int
    role: UserRole | str

    @property
    def role_name(self) -> str:
        return self.role.value if isinstance(self.role, Enum) else str(self.role)


def check_reconciliation_access(
    role: UserRole | str | None,
    allowed_roles: Collection[str] = DEFAULT_RECONCILIATION_ROLES,
) -> tuple[bool, str]:
    """Check whether ``role`` may run reconciliation queries.

    Returns:
        (allowed, reason).  reason is empty when allowed.
    """
    if role is None or (isinstance(role, str) and not role.strip()):
        return (False, "no role supplied")
    name = role.value if isinstance(role, Enum) else str(role)
    if name not in allowed_roles:
        return (False, f"role '{name}' is not permitted to reconcile")
    return (True, "")


def authorize_reconciliation(
    role: UserRole | str | None,
    allowed_roles: Collection[str] = DEFAULT_RECONCILIATION_ROLES,
) -> None:
    """
    Raise unless ``role`` may run reconciliation queries.

    Raises:
        ReconciliationAccessDeniedError: The role is missing or not allowed.
    """
    allowed, reason = check_reconciliation_access(role, allowed_roles)
    if not allowed:
        role_name = role.value if isinstance(role, Enum) else str(role)
        logger.warning(
            "reconciliation_access_denied",
            extra={"role": role_name, "reason": reason},
        )
        raise ReconciliationAccessDeniedError(role_name, reason)
