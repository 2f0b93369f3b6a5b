"""
Module: budget_kernel.db.types
Responsibility: Annotated type aliases and rounding helpers for monetary and
    quantity columns.  Centralizes precision and rounding so that every model,
    engine and service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    engines and services.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats for money.  All amounts, quantities and percentages are
      Decimal with explicit precision.
    - round_money() is the ONLY sanctioned rounding function for derived
      amounts (resource parcials, buckets, title and budget totals).  It uses
      ROUND_HALF_UP at 2 decimal places.

Failure modes:
    - decimal.InvalidOperation on non-numeric input to to_decimal().
"""

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from sqlalchemy import Enum as SAEnum, Numeric, String

# Amounts: 18 digits total, 6 decimal places.  Stored values are already
# rounded to 2 places by round_money(); the extra scale keeps unit prices
# and quantities entered with more precision intact.
MONEY = Numeric(18, 6)

# Quantities, yields, crew sizes.
QUANTITY = Numeric(18, 6)

# Percentages (tax, profit, waste).
PERCENTAGE = Numeric(9, 4)

# Sequential business identifiers (prefix + 10 digits).
BUSINESS_KEY = String(20)

LONG_TEXT = String(2000)


MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: object) -> Decimal:
    """
    Coerce a numeric input to Decimal.

    Floats go through ``str`` so that ``25.5`` becomes ``Decimal("25.5")``
    and not its binary expansion.  None becomes zero.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the specified decimal places.

    Preconditions: value is a Decimal (or coercible via to_decimal).
    Postconditions: Returns value quantized with ROUND_HALF_UP.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places else "0"
    return to_decimal(value).quantize(Decimal(quantize_str), rounding=rounding)


def percent_of(amount: Decimal, percentage: Decimal) -> Decimal:
    """Return ``round_money(amount * percentage / 100)``."""
    return round_money(to_decimal(amount) * to_decimal(percentage) / HUNDRED)


def enum_column(enum_cls: type[Enum], length: int = 40) -> SAEnum:
    """Store a str Enum by its value in a portable VARCHAR column."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )
