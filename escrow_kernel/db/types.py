"""
Module: escrow_kernel.db.types
Responsibility: Annotated column types and the sanctioned money helpers
    (quantization, validation, currency checks) shared by models and services.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats for money.  Amounts are Decimal, stored as Numeric(38, 9)
      and quantized to the currency's minor unit by round_money().
    - Timestamps round-trip as timezone-aware UTC on every backend
      (UTCDateTime), so expiry comparisons never mix naive and aware values.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.types import TypeDecorator

from escrow_kernel.exceptions import InvalidAmountError, InvalidCurrencyError


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime on every dialect.

    PostgreSQL stores TIMESTAMPTZ natively.  SQLite has no timezone support,
    so values are normalized to UTC on the way in and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# Monetary amount: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# ISO 4217 currency code
Currency = Annotated[str, String(3)]

# Caller-supplied idempotency key
IdempotencyKey = Annotated[str, String(200)]

Timestamp = Annotated[datetime, UTCDateTime()]

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0")

# Currencies the marketplace settles in.  Processor support drives this list.
SUPPORTED_CURRENCIES: frozenset[str] = frozenset({"USD", "CAD", "EUR", "GBP", "AUD"})


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the currency's minor unit.

    This is the ONLY sanctioned rounding function for money in the kernel.
    Fee policies and partial dispute splits both delegate here.
    """
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def to_amount(value, *, allow_zero: bool = False) -> Decimal:
    """
    Coerce a caller-supplied amount to a validated Decimal.

    Accepts Decimal, int, or str.  Floats are refused outright.

    Raises:
        InvalidAmountError: non-numeric, float, negative, zero (unless
            allow_zero), or more precise than the minor unit.
    """
    if isinstance(value, bool) or isinstance(value, float) or value is None:
        raise InvalidAmountError(value, "must be a Decimal, int, or numeric string")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(value, "not a number") from None
    if not amount.is_finite():
        raise InvalidAmountError(value, "must be finite")
    if amount < ZERO or (amount == ZERO and not allow_zero):
        raise InvalidAmountError(value)
    if round_money(amount) != amount:
        raise InvalidAmountError(
            value, f"more than {MONEY_DECIMAL_PLACES} decimal places"
        )
    return round_money(amount)


def validate_currency(currency: str) -> str:
    """
    Validate and normalize a currency code.

    Raises:
        InvalidCurrencyError: code is not in SUPPORTED_CURRENCIES.
    """
    if not currency or not isinstance(currency, str):
        raise InvalidCurrencyError(str(currency))
    normalized = currency.upper().strip()
    if normalized not in SUPPORTED_CURRENCIES:
        raise InvalidCurrencyError(currency)
    return normalized
