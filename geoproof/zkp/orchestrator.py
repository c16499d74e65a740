"""
GeoProof Oracle — Proof Verification Orchestrator
==================================================
For one verifier binding and one queried coordinate:

    locate artifact → content-store liveness → prove → export calldata
      → verifyProof on the bound verifier (as the reviewer)

A reviewer queries "is this coordinate in the contribution's grid cell?".
The proof is therefore checked against the in-grid claim (public input 1):
the verifier accepts iff the proof's own public signal is 1, so signal and
acceptance agree for every correctly deployed verifier.

Best-effort batch policy: any stage failure becomes a Failed result instead
of an exception, so one broken contribution never halts a batch.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Optional, Union

from eth_account.signers.local import LocalAccount

from engine.binding_registry import VerifierBinding
from engine.content_store import ContentStore
from engine.coordinate_codec import GridCoordinate
from engine.errors import VerificationError
from engine.ledger import LedgerClient
from zkp.artifact_store import ArtifactStore
from zkp.calldata import convert_calldata
from zkp.circuit_synthesizer import circuit_id_for
from zkp.toolchain import ProofToolchain

logger = logging.getLogger("geoproof.verify")

IN_GRID_CLAIM = 1
FAILED_SIGNAL = -1


@dataclass(frozen=True)
class Verified:
    public_signal: int
    accepted:      bool

    ok = True

    @property
    def consistent(self) -> bool:
        return (self.public_signal == IN_GRID_CLAIM) == self.accepted


@dataclass(frozen=True)
class Failed:
    reason: str

    ok            = False
    public_signal = FAILED_SIGNAL
    accepted      = False
    consistent    = True


VerificationResult = Union[Verified, Failed]


@dataclass(frozen=True)
class ProofRecord:
    image_ref:        str
    verifier_address: str
    queried:          GridCoordinate
    public_signal:    int
    accepted:         bool

    @property
    def queried_degrees(self) -> str:
        return f"{self.queried.lat_deg}, {self.queried.lon_deg}"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["queried_degrees"] = self.queried_degrees
        return d


class ProofVerificationOrchestrator:

    def __init__(
        self,
        ledger:        LedgerClient,
        store:         ArtifactStore,
        toolchain:     ProofToolchain,
        content_store: Optional[ContentStore] = None,
    ):
        self.ledger        = ledger
        self.store         = store
        self.toolchain     = toolchain
        self.content_store = content_store

    # ------------------------------------------------------------------
    def _verify(self, binding: VerifierBinding, queried: GridCoordinate, reviewer: LocalAccount) -> Verified:
        cid        = binding.contribution_id
        circuit_id = circuit_id_for(binding.image_url)
        artifact   = self.store.locate(circuit_id)
        if artifact is None:
            raise VerificationError(f"No circuit artifacts for {circuit_id}", contribution_id=cid)

        witness_cid = artifact.witness_cid
        if self.content_store is not None and witness_cid:
            self.content_store.cat(witness_cid)

        proof    = self.toolchain.prove(artifact, queried.to_circuit_input())
        calldata = convert_calldata(self.toolchain.export_calldata(proof))
        claim    = calldata.with_public_input(IN_GRID_CLAIM)

        accepted = self.ledger.verify_proof(binding.verifier_address, *claim.as_args(), account=reviewer)
        result   = Verified(public_signal=calldata.public_signal, accepted=accepted)

        if not result.consistent:
            logger.error(
                f"[VERIFY] #{cid} verifier {binding.verifier_address} disagrees with proof: "
                f"signal={result.public_signal} accepted={accepted}"
            )
        return result

    def verify(self, binding: VerifierBinding, queried: GridCoordinate, reviewer: LocalAccount) -> VerificationResult:
        try:
            result = self._verify(binding, queried, reviewer)
        except Exception as e:
            logger.warning(f"[VERIFY] #{binding.contribution_id} failed at {queried}: {e}")
            return Failed(reason=str(e))

        logger.info(
            f"[VERIFY] #{binding.contribution_id} {queried} -> "
            f"signal={result.public_signal} accepted={result.accepted}"
        )
        return result

    def record(self, binding: VerifierBinding, queried: GridCoordinate, reviewer: LocalAccount) -> ProofRecord:
        result = self.verify(binding, queried, reviewer)
        return ProofRecord(
            image_ref        = binding.image_url,
            verifier_address = binding.verifier_address,
            queried          = queried,
            public_signal    = result.public_signal,
            accepted         = result.accepted,
        )

    def verify_all(
        self,
        bindings: Iterable[VerifierBinding],
        queried:  GridCoordinate,
        reviewer: LocalAccount,
    ) -> list[ProofRecord]:
        return [self.record(binding, queried, reviewer) for binding in bindings]
