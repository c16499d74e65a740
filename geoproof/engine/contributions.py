"""
GeoProof Oracle — Contribution State (event replay)
====================================================
Contributions are owned by the ledger. The pipeline never stores them; it
rebuilds their state by replaying the platform's events in block order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

logger = logging.getLogger("geoproof.contributions")


class EventKind(str, Enum):
    CONTRIBUTION_CREATED  = "ContributionCreated"
    CONTRIBUTION_ASSIGNED = "ContributionAssigned"
    COORDINATE_UPDATED    = "CoordinateUpdated"
    CONTRIBUTION_REVIEWED = "ContributionReviewed"
    VERIFIER_UPDATED      = "VerifierUpdated"


class ContributionStatus(str, Enum):
    CREATED             = "CREATED"
    ASSIGNED            = "ASSIGNED"
    COORDINATES_UPDATED = "COORDINATES_UPDATED"
    REVIEWED            = "REVIEWED"
    VERIFIER_LINKED     = "VERIFIER_LINKED"
    VERIFIED            = "VERIFIED"


# Review outcomes as emitted in ContributionReviewed.result
REVIEW_RESULTS = (0, 1, 2)
REVIEW_ACCEPTED = 1


@dataclass
class LedgerEvent:
    kind:            EventKind
    contribution_id: int
    args:            dict[str, Any] = field(default_factory=dict)
    block_number:    int = 0
    log_index:       int = 0


@dataclass
class Contribution:
    contribution_id:       int
    participant:           str
    image_url:             str
    status:                ContributionStatus = ContributionStatus.CREATED
    reviewer:              Optional[str] = None
    encrypted_coordinates: Optional[str] = None   # 0x-hex wire format
    review_result:         Optional[int] = None
    verifier:              Optional[str] = None


class ContributionIndex:
    """Contribution state derived from a stream of LedgerEvents."""

    def __init__(self, events: Iterable[LedgerEvent] = ()):
        self._contributions: dict[int, Contribution] = {}
        self._events: list[LedgerEvent] = []
        self.apply_all(events)

    # ------------------------------------------------------------------
    def apply_all(self, events: Iterable[LedgerEvent]) -> None:
        for event in sorted(events, key=lambda e: (e.block_number, e.log_index)):
            self.apply(event)

    def apply(self, event: LedgerEvent) -> None:
        self._events.append(event)
        args = event.args
        cid  = event.contribution_id

        if event.kind == EventKind.CONTRIBUTION_CREATED:
            self._contributions[cid] = Contribution(
                contribution_id = cid,
                participant     = args.get("participant", ""),
                image_url       = args.get("imageUrl", ""),
            )
            return

        contribution = self._contributions.get(cid)
        if contribution is None:
            # Partial replay (from_block > 0): synthesize from the event itself.
            contribution = Contribution(
                contribution_id = cid,
                participant     = args.get("participant", ""),
                image_url       = args.get("imageUrl", ""),
            )
            self._contributions[cid] = contribution

        if event.kind == EventKind.CONTRIBUTION_ASSIGNED:
            contribution.reviewer = args.get("reviewer")
            contribution.status   = ContributionStatus.ASSIGNED
        elif event.kind == EventKind.COORDINATE_UPDATED:
            coords = args.get("coordinates")
            if isinstance(coords, (bytes, bytearray)):
                coords = "0x" + bytes(coords).hex()
            contribution.encrypted_coordinates = coords
            contribution.status = ContributionStatus.COORDINATES_UPDATED
        elif event.kind == EventKind.CONTRIBUTION_REVIEWED:
            contribution.review_result = int(args.get("result", 0))
            contribution.reviewer      = args.get("reviewer", contribution.reviewer)
            contribution.status        = ContributionStatus.REVIEWED
        elif event.kind == EventKind.VERIFIER_UPDATED:
            contribution.verifier = args.get("verifier")
            contribution.status   = ContributionStatus.VERIFIER_LINKED

    # ------------------------------------------------------------------
    def get(self, contribution_id: int) -> Optional[Contribution]:
        return self._contributions.get(contribution_id)

    def all(self) -> list[Contribution]:
        return [self._contributions[k] for k in sorted(self._contributions)]

    def events(self, kind: EventKind) -> list[LedgerEvent]:
        return [e for e in self._events if e.kind == kind]

    def reviewed(self, result: Optional[int] = None) -> list[LedgerEvent]:
        """
        ContributionReviewed events, optionally filtered by review result.
        A result outside 0..2 matches nothing.
        """
        events = self.events(EventKind.CONTRIBUTION_REVIEWED)
        if result is None:
            return events
        if result not in REVIEW_RESULTS:
            return []
        return [e for e in events if int(e.args.get("result", -1)) == result]

    def mark_verified(self, contribution_id: int) -> None:
        contribution = self._contributions.get(contribution_id)
        if contribution is not None:
            contribution.status = ContributionStatus.VERIFIED
