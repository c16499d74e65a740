"""
GeoProof Oracle — Circuit Synthesizer
======================================
Emits one circom circuit per contribution. The contribution's true coordinate
is baked in as template parameters, so the verifier contract derived from it
can only ever answer "is this queried coordinate in the same grid cell?".

Circuit (per axis, ANDed, no partial credit):
    degree  in [-90, 90] / [-180, 180]
    minute  in {0, 6, ..., 54}
    degree  == true degree
    minute  in [anchor, anchor + 6)          anchor = floor_to_grid(true minute)

Range and membership checks are sums of IsEqual components rather than
bit-decomposition comparators: an out-of-range input therefore produces a
valid proof whose public signal is 0 instead of a failed witness.
"""

from __future__ import annotations

import hashlib
import re
from string import Template
from urllib.parse import urlparse

from engine.coordinate_codec import (
    GRID_MINUTES,
    GRID_STEP_MINUTES,
    MAX_LAT_DEG,
    MAX_LON_DEG,
    GridCoordinate,
)
from engine.errors import FormatError

CIRCUIT_TEMPLATE_NAME = "CoordinateInGrid"
CIRCUIT_PREFIX        = "coordinate-circuit"
VERIFIER_PREFIX       = "coordinate-verifier"

_CIRCUIT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

_CIRCUIT_SOURCE = Template("""\
pragma circom 2.0.0;

include "circomlib/circuits/comparators.circom";

// out = 1 iff lo <= in <= hi
template InRange(lo, hi) {
    signal input in;
    signal output out;

    var count = hi - lo + 1;
    component eq[count];
    var acc = 0;
    for (var i = 0; i < count; i++) {
        eq[i] = IsEqual();
        eq[i].in[0] <== in;
        eq[i].in[1] <== lo + i;
        acc += eq[i].out;
    }
    out <== acc;
}

// out = 1 iff in is one of 0, step, 2*step, ..., (buckets-1)*step
template OnGrid(step, buckets) {
    signal input in;
    signal output out;

    component eq[buckets];
    var acc = 0;
    for (var i = 0; i < buckets; i++) {
        eq[i] = IsEqual();
        eq[i].in[0] <== in;
        eq[i].in[1] <== i * step;
        acc += eq[i].out;
    }
    out <== acc;
}

template ${template_name}(latDeg, latAnchor, lonDeg, lonAnchor) {

    signal input latDegVerify;
    signal input latMinVerify;
    signal input lonDegVerify;
    signal input lonMinVerify;

    signal output isInGrid;

    component latDegRange = InRange(-${max_lat}, ${max_lat});
    latDegRange.in <== latDegVerify;
    component lonDegRange = InRange(-${max_lon}, ${max_lon});
    lonDegRange.in <== lonDegVerify;

    component latMinGrid = OnGrid(${step}, ${buckets});
    latMinGrid.in <== latMinVerify;
    component lonMinGrid = OnGrid(${step}, ${buckets});
    lonMinGrid.in <== lonMinVerify;

    component latDegEqual = IsEqual();
    latDegEqual.in[0] <== latDeg;
    latDegEqual.in[1] <== latDegVerify;
    component lonDegEqual = IsEqual();
    lonDegEqual.in[0] <== lonDeg;
    lonDegEqual.in[1] <== lonDegVerify;

    // [anchor, anchor + step)
    component latBucket = InRange(latAnchor, latAnchor + ${step} - 1);
    latBucket.in <== latMinVerify;
    component lonBucket = InRange(lonAnchor, lonAnchor + ${step} - 1);
    lonBucket.in <== lonMinVerify;

    signal checks[8];
    checks[0] <== latDegRange.out;
    checks[1] <== lonDegRange.out;
    checks[2] <== latMinGrid.out;
    checks[3] <== lonMinGrid.out;
    checks[4] <== latDegEqual.out;
    checks[5] <== lonDegEqual.out;
    checks[6] <== latBucket.out;
    checks[7] <== lonBucket.out;

    signal acc[8];
    acc[0] <== checks[0];
    for (var i = 1; i < 8; i++) {
        acc[i] <== acc[i - 1] * checks[i];
    }
    isInGrid <== acc[7];
}

component main = ${template_name}(${lat_deg}, ${lat_anchor}, ${lon_deg}, ${lon_anchor});
""")


def circuit_id_for(image_url: str) -> str:
    """Stable per-contribution identifier: the last path segment of the content URI."""
    segment = urlparse(image_url).path.rstrip("/").rsplit("/", 1)[-1]
    if not segment or not _CIRCUIT_ID_PATTERN.match(segment):
        raise FormatError(f"Cannot derive circuit id from content reference {image_url!r}", text=image_url)
    return segment


def synthesize(true_coordinate: GridCoordinate) -> str:
    anchor = true_coordinate.anchored()
    return _CIRCUIT_SOURCE.substitute(
        template_name = CIRCUIT_TEMPLATE_NAME,
        max_lat       = MAX_LAT_DEG,
        max_lon       = MAX_LON_DEG,
        step          = GRID_STEP_MINUTES,
        buckets       = len(GRID_MINUTES),
        lat_deg       = anchor.lat_deg,
        lat_anchor    = anchor.lat_min,
        lon_deg       = anchor.lon_deg,
        lon_anchor    = anchor.lon_min,
    )


def source_digest(source: str) -> str:
    return hashlib.sha256(source.encode()).hexdigest()


def _in_bucket(minute: int, anchor: int) -> bool:
    return anchor <= minute < anchor + GRID_STEP_MINUTES


def grid_signal(true_coordinate: GridCoordinate, verify: GridCoordinate) -> int:
    """Python mirror of the circuit's isInGrid output."""
    anchor = true_coordinate.anchored()
    checks = (
        -MAX_LAT_DEG <= verify.lat_deg <= MAX_LAT_DEG,
        -MAX_LON_DEG <= verify.lon_deg <= MAX_LON_DEG,
        verify.lat_min in GRID_MINUTES,
        verify.lon_min in GRID_MINUTES,
        verify.lat_deg == anchor.lat_deg,
        verify.lon_deg == anchor.lon_deg,
        _in_bucket(verify.lat_min, anchor.lat_min),
        _in_bucket(verify.lon_min, anchor.lon_min),
    )
    return int(all(checks))
