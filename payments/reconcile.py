"""Amount checks between a gateway notification and its order."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.conf import settings

# The gateway carries amounts multiplied by 100.
AMOUNT_SCALE = 100
DEFAULT_TOLERANCE = 1


def to_store_amount(raw) -> int | None:
    """Convert a scaled gateway amount to store minor units.

    Returns None when the value is missing or not a number.
    """
    if raw is None or str(raw).strip() == '':
        return None
    try:
        value = Decimal(str(raw).strip()) / AMOUNT_SCALE
        if not value.is_finite():
            return None
        return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        return None


def to_gateway_amount(amount: int) -> int:
    return int(amount) * AMOUNT_SCALE


def amount_tolerance() -> int:
    return int((getattr(settings, 'SETTLEMENT', None) or {}).get('AMOUNT_TOLERANCE', DEFAULT_TOLERANCE))


def amount_matches(notified: int | None, expected: int, tolerance: int | None = None) -> bool:
    """True when the notified amount is within rounding tolerance of the order total."""
    if notified is None:
        return False
    if tolerance is None:
        tolerance = amount_tolerance()
    return abs(int(notified) - int(expected)) <= tolerance
