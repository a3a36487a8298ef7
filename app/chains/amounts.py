"""
Token amount conversion.

Payments are denominated in minor units (cents) of the accounting currency;
chains report token base units (10**decimals per whole token). Stablecoins are
treated as 1:1 with the accounting currency. Conversions use Decimal and
ROUND_DOWN so a payer is never credited for a fraction of a cent they did not
send.
"""
from decimal import ROUND_DOWN, Decimal

MINOR_UNITS_PER_WHOLE = 100


def base_units_to_minor(amount: int, decimals: int) -> int:
    value = Decimal(int(amount)) * MINOR_UNITS_PER_WHOLE / (Decimal(10) ** decimals)
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def minor_to_base_units(amount_minor: int, decimals: int) -> int:
    value = Decimal(int(amount_minor)) * (Decimal(10) ** decimals) / MINOR_UNITS_PER_WHOLE
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def decimal_to_base_units(amount: str | Decimal, decimals: int) -> int:
    """'12.345' with 7 decimals -> 123450000."""
    quant = Decimal(1).scaleb(-decimals)
    return int((Decimal(amount).quantize(quant, rounding=ROUND_DOWN) * (Decimal(10) ** decimals)))


def decimal_to_minor(amount: str | Decimal) -> int:
    """Provider decimal string ('5.00') to minor units."""
    return int((Decimal(amount) * MINOR_UNITS_PER_WHOLE).to_integral_value(rounding=ROUND_DOWN))


def within_tolerance(received_minor: int, expected_minor: int, tolerance_minor: int) -> bool:
    """Accept overpayment; underpayment only within ``tolerance_minor``."""
    return received_minor + tolerance_minor >= expected_minor
