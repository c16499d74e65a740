"""
GeoProof Oracle — Verifier Binding Registry
============================================
Local mirror of the on-ledger contribution → verifier mapping.
The ledger stays authoritative; this registry lets the lifecycle manager
refuse a second link before spending gas on a deployment.

Bindings are append-only: bind() never overwrites an existing entry.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Iterable, Optional

import redis

from engine.contributions import EventKind, LedgerEvent
from engine.errors import LinkError

logger = logging.getLogger("geoproof.bindings")


@dataclass(frozen=True)
class VerifierBinding:
    contribution_id:  int
    verifier_address: str
    image_url:        str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class BindingRegistry:
    """In-memory registry."""

    def __init__(self):
        self._bindings: dict[int, VerifierBinding] = {}
        self._lock = threading.Lock()

    def _insert(self, binding: VerifierBinding) -> bool:
        with self._lock:
            if binding.contribution_id in self._bindings:
                return False
            self._bindings[binding.contribution_id] = binding
            return True

    def bind(self, binding: VerifierBinding) -> VerifierBinding:
        if not self._insert(binding):
            existing = self.get(binding.contribution_id)
            raise LinkError(
                f"Contribution #{binding.contribution_id} already linked to {existing.verifier_address}",
                contribution_id  = binding.contribution_id,
                verifier_address = binding.verifier_address,
            )
        logger.info(f"[BINDING] #{binding.contribution_id} -> {binding.verifier_address}")
        return binding

    def get(self, contribution_id: int) -> Optional[VerifierBinding]:
        return self._bindings.get(contribution_id)

    def all(self) -> list[VerifierBinding]:
        return [self._bindings[k] for k in sorted(self._bindings)]

    def __contains__(self, contribution_id: int) -> bool:
        return self.get(contribution_id) is not None

    def sync_from_events(self, events: Iterable[LedgerEvent]) -> int:
        """Import VerifierUpdated events; existing bindings win. Returns count added."""
        added = 0
        for event in events:
            if event.kind != EventKind.VERIFIER_UPDATED:
                continue
            binding = VerifierBinding(
                contribution_id  = event.contribution_id,
                verifier_address = event.args.get("verifier", ""),
                image_url        = event.args.get("imageUrl", ""),
            )
            if self._insert(binding):
                added += 1
        return added


class RedisBindingRegistry(BindingRegistry):
    """Registry shared between gateway workers, backed by a single Redis hash."""

    KEY = "geoproof:bindings"

    def __init__(self, client: redis.Redis):
        super().__init__()
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisBindingRegistry":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def _insert(self, binding: VerifierBinding) -> bool:
        # HSETNX keeps the first writer's binding.
        return bool(self.client.hsetnx(self.KEY, str(binding.contribution_id), json.dumps(binding.to_dict())))

    def get(self, contribution_id: int) -> Optional[VerifierBinding]:
        raw = self.client.hget(self.KEY, str(contribution_id))
        return VerifierBinding(**json.loads(raw)) if raw else None

    def all(self) -> list[VerifierBinding]:
        rows = [VerifierBinding(**json.loads(v)) for v in self.client.hgetall(self.KEY).values()]
        return sorted(rows, key=lambda b: b.contribution_id)
