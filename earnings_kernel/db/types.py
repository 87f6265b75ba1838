"""
Module: earnings_kernel.db.types
Responsibility: Annotated type aliases and utility functions for money and
    rate columns.  Centralizes precision, rounding, and amount coercion so
    that every model, engine, and service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, selectors/, and the engines.  MUST NOT import from any of those
    layers.

Invariants enforced:
    - MONEY_DECIMAL_PLACES defines the canonical precision for stored
      amounts.  round_money() is the ONLY sanctioned rounding function.
    - No floats: to_money() and to_rate() reject float input outright.

Failure modes:
    - InvalidAmountError on float, bool, non-numeric or non-finite input.

Audit relevance:
    Every monetary column uses Money (Numeric(20, 2)); every rate column
    uses Rate (Numeric(12, 6)).  Balances and snapshots are therefore
    stored with identical precision system-wide.
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated

from sqlalchemy import BigInteger, Numeric, String
from sqlalchemy import Enum as SAEnum

from earnings_kernel.exceptions import InvalidAmountError

# Monetary amount: 20 digits total, 2 decimal places
Money = Annotated[Decimal, Numeric(20, 2)]

# Commission / rating rate: 12 digits total, 6 decimal places
Rate = Annotated[Decimal, Numeric(12, 6)]

# Monotonic sequence number for ordering
Sequence = Annotated[int, BigInteger]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

# Short identifier strings
ShortCode = Annotated[str, String(50)]

# Long text for remarks
LongText = Annotated[str, String(1000)]


MONEY_DECIMAL_PLACES = 2
RATE_DECIMAL_PLACES = 6
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0.00")


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to specified decimal places.

    This is the ONLY sanctioned rounding function for monetary values in the
    system.

    Preconditions: value is a Decimal.
    Postconditions: Returns value quantized to the specified decimal places
        using the specified rounding mode.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places else "1"
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def truncate_money(value: Decimal) -> Decimal:
    """Round toward zero; used for shares that must never over-distribute."""
    return round_money(value, rounding=ROUND_DOWN)


def _to_decimal(value: object) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(value, "floats and booleans are not accepted")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidAmountError(value, "not a number") from None
    else:
        raise InvalidAmountError(value, f"unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise InvalidAmountError(value, "not finite")
    return result


def to_money(value: object) -> Decimal:
    """
    Coerce an int, str, or Decimal into a money Decimal.

    The value is NOT rounded; callers that persist it quantize through
    round_money().

    Raises:
        InvalidAmountError: For floats, booleans, and non-numeric input.
    """
    return _to_decimal(value)


def to_rate(value: object | None) -> Decimal | None:
    """Coerce a rate; None passes through (rating-based split)."""
    if value is None:
        return None
    return _to_decimal(value)


def require_positive_money(value: object) -> Decimal:
    """
    Coerce and validate a ledger amount.

    Postconditions: Returns a Decimal with exactly MONEY_DECIMAL_PLACES
        places that is strictly positive.

    Raises:
        InvalidAmountError: If the amount is not positive or carries more
            precision than a stored amount can hold.
    """
    amount = to_money(value)
    if amount <= 0:
        raise InvalidAmountError(value)
    rounded = round_money(amount)
    if rounded != amount:
        raise InvalidAmountError(value, "more than 2 decimal places")
    return rounded


def enum_type(enum_cls: type, length: int = 32) -> SAEnum:
    """
    Column type for a closed ``str`` enum, stored by member name.

    Stored as VARCHAR (no native database enum) and loaded back as the enum
    member, so ``row.status is WalletTxStatus.FROZEN`` holds after a reload.
    """
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        validate_strings=True,
    )
