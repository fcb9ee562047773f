"""
Conversion between human-readable token amounts and base units.

Precision is a property of the token mint and is always passed in by the
caller.
"""
import re
from decimal import Decimal

from yield_aggregator.errors import InvalidAmount

U64_MAX = 2**64 - 1

# ASCII digits only; no underscores, no other scripts
_DECIMAL_TEXT = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


def _check_decimals(decimals: int):
    if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
        raise ValueError(f"decimals must be a non-negative integer, got {decimals!r}")


def parse_amount(text: str, decimals: int) -> int:
    """
    Parse a decimal string into base units.

    The result is floor(value * 10**decimals); extra fractional digits are
    truncated, never rounded up.

    Raises:
        InvalidAmount: if text is not a finite, non-negative number or the
            result does not fit in an unsigned 64-bit integer.
    """
    _check_decimals(decimals)

    if isinstance(text, Decimal):
        value = text
    else:
        if not isinstance(text, str):
            raise InvalidAmount(f"Amount must be a decimal string, got {type(text).__name__}")
        stripped = text.strip()
        if not _DECIMAL_TEXT.fullmatch(stripped):
            raise InvalidAmount(f"Amount {text!r} is not a decimal number")
        value = Decimal(stripped)

    if not value.is_finite():
        raise InvalidAmount(f"Amount {text!r} is not finite")
    if value < 0:
        raise InvalidAmount(f"Amount {text!r} is negative")

    if not value:
        return 0
    if value.adjusted() + decimals > 20:
        raise InvalidAmount(f"Amount {text!r} exceeds the u64 base-unit range")

    # Exact integer arithmetic; Decimal context rounding could round up.
    _, digits, exponent = value.as_tuple()
    mantissa = int(''.join(map(str, digits)))
    shift = exponent + decimals
    if shift < -(len(digits) + decimals + 1):
        return 0
    if shift >= 0:
        base_units = mantissa * 10 ** shift
    else:
        base_units = mantissa // 10 ** (-shift)

    if base_units > U64_MAX:
        raise InvalidAmount(f"Amount {text!r} exceeds the u64 base-unit range")
    return base_units


def format_amount(base_units: int, decimals: int) -> str:
    """Format base units with exactly `decimals` fractional digits."""
    _check_decimals(decimals)
    if isinstance(base_units, bool) or not isinstance(base_units, int) or base_units < 0:
        raise InvalidAmount(f"Base units must be a non-negative integer, got {base_units!r}")

    whole, frac = divmod(base_units, 10 ** decimals)
    if decimals == 0:
        return str(whole)
    return f"{whole}.{frac:0{decimals}d}"


def to_base_units(amount, decimals: int) -> int:
    """
    Normalise a caller-supplied amount.

    Strings and Decimals are human-readable amounts and go through
    parse_amount; ints are already base units.
    """
    if isinstance(amount, bool):
        raise InvalidAmount("Amount must not be a boolean")
    if isinstance(amount, int):
        if amount < 0 or amount > U64_MAX:
            raise InvalidAmount(f"Base-unit amount {amount} is outside the u64 range")
        return amount
    return parse_amount(amount, decimals)
