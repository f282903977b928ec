"""
FLEETLINE - Logistics Utilities
================================
Distance calculation and payload coercion helpers.
"""

import math
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from django.conf import settings
from django.utils.dateparse import parse_datetime


# ============================================
# CONSTANTS
# ============================================

EARTH_RADIUS_KM = 6371.0
DISPLAY_QUANTUM = Decimal('0.01')


# ============================================
# DISTANCE CALCULATION
# ============================================

def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Straight-line distance between two GPS points, in kilometers.

    Used to prefill the booking distance from the picked locations.
    Rounded to two places like the booking form displays it.
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lng = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_lat / 2) ** 2 +
        math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return round(EARTH_RADIUS_KM * c, 2)


# ============================================
# PAYLOAD COERCION
# ============================================

def to_decimal(value) -> Optional[Decimal]:
    """
    Convert a JSON number/string to Decimal.

    None stays None: an absent field is unknown, not zero.
    Floats go through str() so 0.1 becomes Decimal('0.1').
    """
    if value is None or value == '':
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}")


def parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = parse_datetime(str(value).replace('Z', '+00:00'))
    if parsed is None:
        raise ValueError(f"Not a timestamp: {value!r}")
    return parsed


def to_ref(value) -> Optional[str]:
    """Reference fields arrive either as an id string or as a populated object."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get('_id') or value.get('id')
        return str(value) if value else None
    return str(value)


# ============================================
# DISPLAY
# ============================================

def round_for_display(amount: Decimal) -> Decimal:
    """Round half-up to two fraction digits. Display only."""
    return amount.quantize(DISPLAY_QUANTUM, rounding=ROUND_HALF_UP)


def format_amount(amount: Optional[Decimal]) -> str:
    """
    Format an amount for display, e.g. Decimal('230') -> '₹230.00'.
    Unknown amounts display as '-'.
    """
    if amount is None:
        return '-'
    symbol = getattr(settings, 'CURRENCY_SYMBOL', '')
    return f"{symbol}{round_for_display(amount):,.2f}"
