from decimal import Decimal, ROUND_HALF_UP

ZERO = Decimal("0.00")


def money(x) -> Decimal:
    """Always return 2-decimal Decimal with HALF_UP rounding."""
    if x is None:
        x = 0
    if not isinstance(x, Decimal):
        x = Decimal(str(x))
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def vnd(x) -> Decimal:
    """
    Round to a whole dong (HALF_UP), kept at 2 decimals for Numeric(14, 2).

    Example:
      vnd(84000.5) => 84001.00
    """
    return money(money(x).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(base, percent) -> Decimal:
    """base * percent / 100, rounded to a whole dong."""
    return vnd(money(base) * Decimal(str(percent)) / Decimal("100"))
