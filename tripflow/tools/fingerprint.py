"""Content fingerprint of a place — identifies the same real-world spot across devices."""

from __future__ import annotations

import hashlib
import math
from decimal import ROUND_HALF_UP, Decimal

_QUANTUM = Decimal("0.000001")  # 6 decimal places


def _format_coord(value: float) -> str:
    """Round to 6 decimals from the shortest repr, so 37.7749295 and 37.774930 agree.

    Rounding the binary float directly would depend on how the literal happened
    to be stored (37.7749295 is really 37.77492949...).
    """
    if not math.isfinite(value):
        # Input-contract violation: still hash something stable instead of raising.
        return str(value)
    quantized = Decimal(repr(value)).quantize(_QUANTUM, rounding=ROUND_HALF_UP)
    if quantized == 0:
        quantized = quantized.copy_abs()  # -0.000000 and 0.000000 are the same place
    return str(quantized)


def fingerprint(name: str, lat: float, lng: float) -> str:
    """SHA-256 hex digest of name + lat + lng (6 decimals each)."""
    data = f"{name}{_format_coord(lat)}{_format_coord(lng)}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def is_same_location(
    name1: str,
    lat1: float,
    lng1: float,
    name2: str,
    lat2: float,
    lng2: float,
) -> bool:
    return fingerprint(name1, lat1, lng1) == fingerprint(name2, lat2, lng2)
