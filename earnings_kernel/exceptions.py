"""
Typed Exception Hierarchy for the Earnings Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Ledger callers must react to failures precisely: a duplicate release is not
the same thing as an overdrawn account, and neither is an authorization
failure. Every error therefore has:
  1. A TYPED exception class (catch by type, not message)
  2. A CODE attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

Example:
    try:
        ledger.release(tx_id)
    except NotFrozenError as e:
        api_response(code=e.code, status=e.status)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EarningsKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |   +-- InvalidDateRangeError
    |   +-- MissingIdentifierError
    |   +-- InvalidPaginationError
    |
    +-- LedgerError
    |   +-- AccountNotFoundError
    |   +-- TransactionNotFoundError
    |   +-- NotFrozenError
    |   +-- TransactionNotReleasableError
    |   +-- AlreadyReversedError
    |   +-- InvalidReversalTargetError
    |   +-- InsufficientBalanceError
    |   +-- InvalidTransactionTransitionError
    |   +-- WalletUidExhaustedError
    |
    +-- SettlementError
    |   +-- OrderNotFoundError
    |   +-- OrderNotSettleableError
    |   +-- SettlementExceedsOrderError
    |   +-- SettlementNotFoundError
    |   +-- SettlementAlreadyPaidError
    |
    +-- WithdrawalError
    |   +-- WithdrawalNotFoundError
    |   +-- WithdrawalAlreadyReviewedError
    |
    +-- AuthorizationError
    |   +-- ReconciliationAccessDeniedError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
        +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                            | When Raised
----------------|---------------------------------|--------------------------------------
Validation      | INVALID_AMOUNT                  | Amount <= 0, float, or not a number
                | INVALID_DATE_RANGE              | start_at >= end_at or naive datetime
                | MISSING_IDENTIFIER              | Neither order_id nor auto_serial
                | INVALID_PAGINATION              | Page or page size out of range
----------------|---------------------------------|--------------------------------------
Ledger          | ACCOUNT_NOT_FOUND               | No wallet account for the user
                | TRANSACTION_NOT_FOUND           | Transaction ID doesn't exist
                | NOT_FROZEN                      | Release/payout of a non-FROZEN tx
                | TRANSACTION_NOT_RELEASABLE      | Release of a withdrawal reserve
                | ALREADY_REVERSED                | Transaction already has a reversal
                | INVALID_REVERSAL_TARGET         | Reversing a reversal or transition row
                | INSUFFICIENT_BALANCE            | Mutation would make a balance negative
                | INVALID_TRANSACTION_TRANSITION  | Status change not in the state machine
                | WALLET_UID_EXHAUSTED            | No unique wallet UID after retries
----------------|---------------------------------|--------------------------------------
Settlement      | ORDER_NOT_FOUND                 | Order ID / auto serial doesn't exist
                | ORDER_NOT_SETTLEABLE            | Order not ARCHIVED or COMPLETED
                | SETTLEMENT_EXCEEDS_ORDER        | Club + workers > order * (1 + tol)
                | SETTLEMENT_NOT_FOUND            | Settlement ID doesn't exist
                | SETTLEMENT_ALREADY_PAID         | Adjusting a PAID settlement
----------------|---------------------------------|--------------------------------------
Withdrawal      | WITHDRAWAL_NOT_FOUND            | Request ID doesn't exist
                | WITHDRAWAL_ALREADY_REVIEWED     | Request is not PENDING_REVIEW
----------------|---------------------------------|--------------------------------------
Authorization   | RECONCILIATION_ACCESS_DENIED    | Role may not run reconciliation
----------------|---------------------------------|--------------------------------------
Immutability    | IMMUTABILITY_VIOLATION          | Modifying an append-only record
----------------|---------------------------------|--------------------------------------
Audit           | AUDIT_CHAIN_BROKEN              | Hash chain validation failed
"""

from decimal import Decimal


class EarningsKernelError(Exception):
    """
    Base exception for all earnings kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "EARNINGS_KERNEL_ERROR"


# Validation errors


class ValidationError(EarningsKernelError):
    """Base exception for input rejected before any mutation."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Monetary amount is not a positive exact decimal."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: object, reason: str = "amount must be positive"):
        self.amount = str(amount)
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class InvalidDateRangeError(ValidationError):
    """Time window is empty, inverted, or not timezone-aware."""

    code: str = "INVALID_DATE_RANGE"

    def __init__(self, start_at: object, end_at: object, reason: str):
        self.start_at = str(start_at)
        self.end_at = str(end_at)
        self.reason = reason
        super().__init__(f"Invalid date range [{start_at}, {end_at}): {reason}")


class MissingIdentifierError(ValidationError):
    """None of the accepted identifiers was supplied."""

    code: str = "MISSING_IDENTIFIER"

    def __init__(self, accepted: tuple[str, ...]):
        self.accepted = list(accepted)
        super().__init__(f"One of {', '.join(accepted)} is required")


class InvalidPaginationError(ValidationError):
    """Page or page size outside the permitted range."""

    code: str = "INVALID_PAGINATION"

    def __init__(self, field: str, value: object):
        self.field = field
        self.value = value
        super().__init__(f"Invalid pagination value {field}={value!r}")


# Ledger errors


class LedgerError(EarningsKernelError):
    """Base exception for wallet ledger errors."""

    code: str = "LEDGER_ERROR"


class AccountNotFoundError(LedgerError):
    """No wallet account exists for the user."""

    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_ref: int | str):
        self.account_ref = str(account_ref)
        super().__init__(f"Wallet account not found: {account_ref}")


class TransactionNotFoundError(LedgerError):
    """Wallet transaction with given ID was not found."""

    code: str = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Wallet transaction not found: {transaction_id}")


class NotFrozenError(LedgerError):
    """Release or payout requested for a transaction that is not FROZEN."""

    code: str = "NOT_FROZEN"

    def __init__(self, transaction_id: str, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(
            f"Transaction {transaction_id} is {status}, expected FROZEN"
        )


class TransactionNotReleasableError(LedgerError):
    """Transaction kind cannot be released to the available balance."""

    code: str = "TRANSACTION_NOT_RELEASABLE"

    def __init__(self, transaction_id: str, biz_type: str):
        self.transaction_id = transaction_id
        self.biz_type = biz_type
        super().__init__(
            f"Transaction {transaction_id} ({biz_type}) cannot be released"
        )


class AlreadyReversedError(LedgerError):
    """Transaction has already been reversed."""

    code: str = "ALREADY_REVERSED"

    def __init__(self, transaction_id: str, reversal_tx_id: str | None = None):
        self.transaction_id = transaction_id
        self.reversal_tx_id = reversal_tx_id
        super().__init__(f"Transaction {transaction_id} has already been reversed")


class InvalidReversalTargetError(LedgerError):
    """Reversal rows and transition rows are never reversed directly."""

    code: str = "INVALID_REVERSAL_TARGET"

    def __init__(self, transaction_id: str, reason: str):
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"Cannot reverse transaction {transaction_id}: {reason}")


class InsufficientBalanceError(LedgerError):
    """Mutation would drive a wallet balance below zero."""

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        account_id: str,
        bucket: str,
        balance: Decimal,
        delta: Decimal,
    ):
        self.account_id = account_id
        self.bucket = bucket
        self.balance = str(balance)
        self.delta = str(delta)
        super().__init__(
            f"Account {account_id} {bucket} balance {balance} "
            f"cannot absorb {delta}"
        )


class InvalidTransactionTransitionError(LedgerError):
    """Status change not allowed by the transaction state machine."""

    code: str = "INVALID_TRANSACTION_TRANSITION"

    def __init__(self, transaction_id: str, from_status: str, to_status: str):
        self.transaction_id = transaction_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Transaction {transaction_id} cannot move from "
            f"{from_status} to {to_status}"
        )


class WalletUidExhaustedError(LedgerError):
    """Could not allocate a unique wallet UID."""

    code: str = "WALLET_UID_EXHAUSTED"

    def __init__(self, user_id: int, attempts: int):
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(
            f"No unique wallet UID for user {user_id} after {attempts} attempts"
        )


# Settlement errors


class SettlementError(EarningsKernelError):
    """Base exception for settlement errors."""

    code: str = "SETTLEMENT_ERROR"


class OrderNotFoundError(SettlementError):
    """Order with given ID or auto serial was not found."""

    code: str = "ORDER_NOT_FOUND"

    def __init__(self, order_ref: str):
        self.order_ref = order_ref
        super().__init__(f"Order not found: {order_ref}")


class OrderNotSettleableError(SettlementError):
    """Order is not in a state that allows settlement."""

    code: str = "ORDER_NOT_SETTLEABLE"

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} cannot be settled in status {status}")


class SettlementExceedsOrderError(SettlementError):
    """Club plus worker earnings exceed the order amount beyond tolerance."""

    code: str = "SETTLEMENT_EXCEEDS_ORDER"

    def __init__(
        self,
        order_id: str,
        order_amount: Decimal,
        club_earnings: Decimal,
        worker_total: Decimal,
    ):
        self.order_id = order_id
        self.order_amount = str(order_amount)
        self.club_earnings = str(club_earnings)
        self.worker_total = str(worker_total)
        super().__init__(
            f"Settlement for order {order_id} exceeds order amount: "
            f"club {club_earnings} + workers {worker_total} > {order_amount}"
        )


class SettlementNotFoundError(SettlementError):
    """Settlement with given ID was not found."""

    code: str = "SETTLEMENT_NOT_FOUND"

    def __init__(self, settlement_id: str):
        self.settlement_id = settlement_id
        super().__init__(f"Settlement not found: {settlement_id}")


class SettlementAlreadyPaidError(SettlementError):
    """Paid settlements can no longer be adjusted."""

    code: str = "SETTLEMENT_ALREADY_PAID"

    def __init__(self, settlement_id: str):
        self.settlement_id = settlement_id
        super().__init__(f"Settlement {settlement_id} is already paid")


# Withdrawal errors


class WithdrawalError(EarningsKernelError):
    """Base exception for withdrawal errors."""

    code: str = "WITHDRAWAL_ERROR"


class WithdrawalNotFoundError(WithdrawalError):
    """Withdrawal request with given ID was not found."""

    code: str = "WITHDRAWAL_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Withdrawal request not found: {request_id}")


class WithdrawalAlreadyReviewedError(WithdrawalError):
    """Withdrawal request is no longer pending review."""

    code: str = "WITHDRAWAL_ALREADY_REVIEWED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Withdrawal request {request_id} is already {status}")


# Authorization errors


class AuthorizationError(EarningsKernelError):
    """Base exception for authorization failures."""

    code: str = "AUTHORIZATION_ERROR"


class ReconciliationAccessDeniedError(AuthorizationError):
    """Caller role may not run reconciliation queries."""

    code: str = "RECONCILIATION_ACCESS_DENIED"

    def __init__(self, role: str, reason: str):
        self.role = role
        self.reason = reason
        super().__init__(f"Reconciliation denied for role {role}: {reason}")


# Immutability errors


class ImmutabilityError(EarningsKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record.

    Wallet transactions, settlements, wallet accounts and audit events are
    protected by ORM listeners in db/immutability.py.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit errors


class AuditError(EarningsKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )
