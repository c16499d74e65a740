"""
GeoProof Oracle — Coordinate Codec
===================================
Parses human-readable DMS coordinates into the signed degree/minute integers
used as circuit inputs.

    "23° 11' 6.0\" S, 18° 22' 36.0\" E"  →  GridCoordinate(-23, 11, 18, 22)

Grid resolution is one whole degree × one 6-minute bucket, so seconds are
parsed (the pattern requires them) and then dropped. Minutes are never
rounded here; anchoring to the 6-minute grid is done by floor_to_grid().
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass

from engine.errors import FormatError

logger = logging.getLogger("geoproof.codec")

GRID_STEP_MINUTES = 6
GRID_MINUTES      = tuple(range(0, 60, GRID_STEP_MINUTES))   # 0, 6, ..., 54

MAX_LAT_DEG = 90
MAX_LON_DEG = 180

_DMS_AXIS = r"(\d{1,3})\s*°\s*(\d{1,2})\s*'\s*(\d{1,2}(?:\.\d+)?)\s*\"\s*"
_DMS_PATTERN = re.compile(
    r"^\s*" + _DMS_AXIS + r"([NS])\s*,\s*" + _DMS_AXIS + r"([EW])\s*$"
)


@dataclass(frozen=True)
class GridCoordinate:
    lat_deg: int
    lat_min: int
    lon_deg: int
    lon_min: int

    def to_dict(self) -> dict:
        return asdict(self)

    def to_circuit_input(self) -> dict[str, int]:
        """Named input assignment for the CoordinateInGrid circuit."""
        return {
            "latDegVerify": self.lat_deg,
            "latMinVerify": self.lat_min,
            "lonDegVerify": self.lon_deg,
            "lonMinVerify": self.lon_min,
        }

    def anchored(self) -> "GridCoordinate":
        """Same coordinate with both minutes floored to their 6-minute anchor."""
        return GridCoordinate(
            lat_deg = self.lat_deg,
            lat_min = floor_to_grid(self.lat_min),
            lon_deg = self.lon_deg,
            lon_min = floor_to_grid(self.lon_min),
        )

    def __str__(self) -> str:
        return f"{self.lat_deg}°{self.lat_min:02d}', {self.lon_deg}°{self.lon_min:02d}'"


def floor_to_grid(minute: int) -> int:
    """Canonical bucket anchor: the largest multiple of 6 not above `minute`."""
    return (minute // GRID_STEP_MINUTES) * GRID_STEP_MINUTES


def parse(text: str) -> GridCoordinate:
    match = _DMS_PATTERN.match(text or "")
    if not match:
        raise FormatError(f"Coordinate string does not match DMS pattern: {text!r}", text=text)

    lat_d, lat_m, _lat_s, lat_h, lon_d, lon_m, _lon_s, lon_h = match.groups()
    lat_deg, lat_min = int(lat_d), int(lat_m)
    lon_deg, lon_min = int(lon_d), int(lon_m)

    if lat_deg > MAX_LAT_DEG or lon_deg > MAX_LON_DEG:
        raise FormatError(f"Degrees out of range in {text!r}", text=text)
    if lat_min > 59 or lon_min > 59:
        raise FormatError(f"Minutes out of range in {text!r}", text=text)

    if lat_h == "S":
        lat_deg = -lat_deg
    if lon_h == "W":
        lon_deg = -lon_deg

    coord = GridCoordinate(lat_deg, lat_min, lon_deg, lon_min)
    logger.debug(f"[CODEC] Parsed {text!r} -> {coord}")
    return coord


def render(coord: GridCoordinate) -> str:
    """Inverse of parse() on the numeric fields. Seconds render as 0.0."""
    lat_h = "S" if coord.lat_deg < 0 else "N"
    lon_h = "W" if coord.lon_deg < 0 else "E"
    return (
        f"{abs(coord.lat_deg)}° {coord.lat_min}' 0.0\" {lat_h}, "
        f"{abs(coord.lon_deg)}° {coord.lon_min}' 0.0\" {lon_h}"
    )
