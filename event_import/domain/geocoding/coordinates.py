"""Coordinate parsing and bounds checks."""
import math
import re
from typing import Any, Optional

LATITUDE_BOUNDS = (-90.0, 90.0)
LONGITUDE_BOUNDS = (-180.0, 180.0)

LATITUDE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"^lat$", r"^latitude$", r"^lat[_\s-]?deg", r"^.*[_\s-]lat$", r"^.*[_\s-]latitude$", r"^breite$", r"^breitengrad$", r"^y$")
]
LONGITUDE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^lng$",
        r"^lon$",
        r"^long$",
        r"^longitude$",
        r"^lon[_\s-]?deg",
        r"^.*[_\s-](lng|lon)$",
        r"^.*[_\s-]longitude$",
        r"^länge$",
        r"^laengengrad$",
        r"^längengrad$",
        r"^x$",
    )
]

_DECIMAL_RE = re.compile(r"^-?(?:\d+(?:\.\d+)?|\.\d+)(?:[eE][+-]?\d+)?$")
_DMS_RE = re.compile(r"^(-?\d{1,3})[°\s]\s*(\d{1,2})['′\s]\s*(\d{1,2}(?:\.\d{0,6})?)[\"″\s]?\s*([NSEW])?$", re.IGNORECASE)
_DM_RE = re.compile(r"^(-?\d{1,3})[°\s](\d{1,3}(?:\.\d{0,6})?)['′\s]?([NSEW])?$", re.IGNORECASE)
_DIRECTIONAL_RE = re.compile(r"^(-?\d{1,3}(?:\.\d{0,10})?)\s{0,2}([NSEW])$", re.IGNORECASE)


def _apply_direction(value: float, direction: Optional[str]) -> float:
    if direction and direction.upper() in ("S", "W"):
        return -abs(value)
    return value


def parse_coordinate(value: Any) -> Optional[float]:
    """
    Parse decimal degrees, DMS ("40°26'46\"N"), degrees + decimal minutes or
    directional ("40.7128 N") notation. Returns None when nothing matches.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) or math.isinf(value) else float(value)

    text = str(value).strip()
    if not text:
        return None

    if _DECIMAL_RE.match(text):
        return float(text)

    match = _DMS_RE.match(text)
    if match:
        degrees, minutes, seconds = float(match.group(1)), float(match.group(2)), float(match.group(3))
        fractional = minutes / 60 + seconds / 3600
        result = degrees - fractional if degrees < 0 else degrees + fractional
        return _apply_direction(result, match.group(4))

    match = _DM_RE.match(text)
    if match:
        degrees, minutes = float(match.group(1)), float(match.group(2))
        result = degrees - minutes / 60 if degrees < 0 else degrees + minutes / 60
        return _apply_direction(result, match.group(3))

    match = _DIRECTIONAL_RE.match(text)
    if match:
        return _apply_direction(float(match.group(1)), match.group(2))
    return None


def is_valid_latitude(value: Optional[float]) -> bool:
    return value is not None and LATITUDE_BOUNDS[0] <= value <= LATITUDE_BOUNDS[1]


def is_valid_longitude(value: Optional[float]) -> bool:
    return value is not None and LONGITUDE_BOUNDS[0] <= value <= LONGITUDE_BOUNDS[1]


def is_valid_coordinates(latitude: Optional[float], longitude: Optional[float]) -> bool:
    return is_valid_latitude(latitude) and is_valid_longitude(longitude)
