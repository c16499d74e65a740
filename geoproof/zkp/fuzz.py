"""
GeoProof Oracle — Grid Boundary Fuzz Harness
=============================================
Samples verification coordinates around the true coordinate's grid cell and
records the on-chain outcome of each, to check the [anchor, anchor + 6)
bucket semantics empirically.

Per trial and per axis (independently):
  - with probability `edge_probability`: an exact bucket edge chosen from the
    anchor and its two neighbouring edges (clipped to 0..54)
  - otherwise: a minute drawn uniformly inside the bucket just below or just
    above the true bucket
Degrees are kept at the true coordinate's degrees.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from eth_account.signers.local import LocalAccount

from engine.binding_registry import VerifierBinding
from engine.coordinate_codec import GRID_MINUTES, GRID_STEP_MINUTES, GridCoordinate, floor_to_grid
from zkp.circuit_synthesizer import grid_signal
from zkp.orchestrator import ProofRecord, ProofVerificationOrchestrator

logger = logging.getLogger("geoproof.fuzz")

DEFAULT_TRIALS = 1000


def _sample_minute(rng: np.random.Generator, anchor: int, edge_probability: float) -> int:
    if rng.random() < edge_probability:
        edges = [e for e in (anchor - GRID_STEP_MINUTES, anchor, anchor + GRID_STEP_MINUTES)
                 if e in GRID_MINUTES]
        return int(rng.choice(edges))

    neighbours = [b for b in (anchor - GRID_STEP_MINUTES, anchor + GRID_STEP_MINUTES) if b in GRID_MINUTES]
    bucket = int(rng.choice(neighbours))
    return int(rng.integers(bucket, bucket + GRID_STEP_MINUTES))


def sample_coordinate(
    rng:              np.random.Generator,
    true_coordinate:  GridCoordinate,
    edge_probability: float = 0.5,
) -> GridCoordinate:
    return GridCoordinate(
        lat_deg = true_coordinate.lat_deg,
        lat_min = _sample_minute(rng, floor_to_grid(true_coordinate.lat_min), edge_probability),
        lon_deg = true_coordinate.lon_deg,
        lon_min = _sample_minute(rng, floor_to_grid(true_coordinate.lon_min), edge_probability),
    )


def fuzz(
    orchestrator:     ProofVerificationOrchestrator,
    binding:          VerifierBinding,
    true_coordinate:  GridCoordinate,
    reviewer:         LocalAccount,
    trials:           int = DEFAULT_TRIALS,
    edge_probability: float = 0.5,
    seed:             Optional[int] = None,
) -> list[ProofRecord]:
    rng = np.random.default_rng(seed)
    records = []
    for _ in range(trials):
        queried = sample_coordinate(rng, true_coordinate, edge_probability)
        records.append(orchestrator.record(binding, queried, reviewer))

    logger.info(f"[FUZZ] #{binding.contribution_id}: {trials} trials, {summarize(records, true_coordinate)}")
    return records


def summarize(records: list[ProofRecord], true_coordinate: Optional[GridCoordinate] = None) -> dict:
    """Outcome counts; with the true coordinate, also mismatches against the predicate."""
    signals  = np.array([r.public_signal for r in records], dtype=int)
    accepted = np.array([r.accepted for r in records], dtype=bool)

    summary = {
        "trials":   int(signals.size),
        "in_grid":  int(np.sum(signals == 1)),
        "outside":  int(np.sum(signals == 0)),
        "failed":   int(np.sum(signals < 0)),
        "accepted": int(np.sum(accepted)),
    }
    if true_coordinate is not None:
        expected = np.array([grid_signal(true_coordinate, r.queried) for r in records], dtype=int)
        valid = signals >= 0
        summary["mismatches"] = int(np.sum(expected[valid] != signals[valid]))
    return summary
