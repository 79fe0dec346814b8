"""Money helpers: Decimal arithmetic and Turkish lira display format."""

from decimal import ROUND_HALF_UP, Decimal

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """Normalise a float/str/int/Decimal amount to two decimal places."""
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def format_try(value) -> str:
    """
    Format an amount the way tr-TR renders it: ``₺1.234,56``.

    Thousands are grouped with dots and the decimal separator is a comma.
    """
    amount = to_money(value)
    sign = "-" if amount < 0 else ""
    whole, _, frac = f"{abs(amount):.2f}".partition(".")
    groups = []
    while len(whole) > 3:
        groups.insert(0, whole[-3:])
        whole = whole[:-3]
    groups.insert(0, whole)
    return f"{sign}₺{'.'.join(groups)},{frac}"
