"""
TradeLedger Utility Helpers
Datetime and decimal helpers shared by the ledger and services.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Dict, Optional, Union

# Ledger precision, matches Numeric(20, 8)
LEDGER_PLACES = 8
LEDGER_QUANTUM = Decimal(1).scaleb(-LEDGER_PLACES)

# Smallest step used to keep per-account transaction timestamps strictly increasing
TIMESTAMP_EPSILON = timedelta(microseconds=1)


# ============================================================================
# DateTime Helpers
# ============================================================================

def utc_now() -> datetime:
    """
    Get current UTC datetime.

    Returns:
        datetime: Current UTC datetime with timezone info.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert datetime to UTC.

    Naive values are read as UTC; some backends (SQLite) drop the offset on
    storage and hand back naive datetimes.

    Args:
        dt: Datetime to convert.

    Returns:
        datetime: UTC datetime, or None when given None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def next_timestamp(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Return ``now`` or, if it does not move past ``previous``, previous + 1 microsecond."""
    now = now or utc_now()
    previous = to_utc(previous)
    if previous is not None and now <= previous:
        return previous + TIMESTAMP_EPSILON
    return now


# ============================================================================
# Decimal Helpers
# ============================================================================

def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    """
    Convert a numeric value to Decimal without binary float artefacts.

    Floats go through ``repr`` so 0.1 becomes Decimal("0.1").
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def round_decimal(value: Union[int, float, str, Decimal], precision: int = LEDGER_PLACES) -> Decimal:
    """
    Round a value to specified decimal precision.

    Args:
        value: Value to round.
        precision: Number of decimal places.

    Returns:
        Decimal: Rounded decimal value.
    """
    quantum = LEDGER_QUANTUM if precision == LEDGER_PLACES else Decimal(1).scaleb(-precision)
    return to_decimal(value).quantize(quantum, rounding=ROUND_HALF_EVEN)


def decimal_places(value: Decimal) -> int:
    """Number of fractional digits in a Decimal (0 for integral values)."""
    exponent = value.normalize().as_tuple().exponent
    if not isinstance(exponent, int):
        return 0
    return max(0, -exponent)


# ============================================================================
# Dict Helpers
# ============================================================================

def deep_merge(dict1: Dict, dict2: Dict) -> Dict:
    """
    Deep merge two dictionaries.

    Args:
        dict1: Base dictionary.
        dict2: Dictionary to merge.

    Returns:
        Dict: Merged dictionary.
    """
    result = dict1.copy()

    for key, value in dict2.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def json_safe(value: Any) -> Any:
    """Convert Decimals, datetimes and UUIDs nested in a payload into JSON-friendly values."""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return to_utc(value).isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value
