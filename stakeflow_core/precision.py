"""
Precision constants and helpers for StakeFlow.

All balances, stake amounts and rewards are integer *base units*.
One whole token is 10^8 base units:

    1 SFT = 100,000,000 units (smallest indivisible amount)

Reward arithmetic never leaves the integer domain; these helpers only
exist for display.  Amounts are unbounded, so conversions never go
through a fixed-precision Decimal context.
"""

from __future__ import annotations

from decimal import Decimal, localcontext

# Number of decimal places shown for token amounts.
TOKEN_DECIMALS: int = 8

# Base units per whole token.
UNITS_PER_TOKEN: int = 10 ** TOKEN_DECIMALS  # 100_000_000


def from_units(units: int) -> Decimal:
    """Convert base units to an exact ``Decimal`` token amount.

    >>> from_units(150_000_000)
    Decimal('1.50000000')
    """
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(str(abs(units))) + TOKEN_DECIMALS)
        return Decimal(units).scaleb(-TOKEN_DECIMALS)


def format_amount(units: int, symbol: str = "SFT") -> str:
    """Return a human-readable string with 8 decimal places."""
    sign = "-" if units < 0 else ""
    whole, frac = divmod(abs(units), UNITS_PER_TOKEN)
    return f"{sign}{whole}.{frac:0{TOKEN_DECIMALS}d} {symbol}"
