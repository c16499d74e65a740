"""
GeoProof Oracle — Batch ZKP Pipeline
=====================================
End-to-end run over every accepted contribution on the platform:

    1. replay events, select contributions reviewed with the given result
    2. resolve each true coordinate (plain mapping or decrypted on-chain blob)
    3. build circuits concurrently (toolchain slots bound the real load)
    4. deploy + link verifiers, one receipt at a time
    5. replay VerifierUpdated, verify every binding with the query coordinate

Failures are recorded per contribution and the batch runs to the end. The one
exception is a missing trusted-setup file, which stops the whole run.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional

from eth_account.signers.local import LocalAccount

from engine.binding_registry import BindingRegistry
from engine.contributions import REVIEW_ACCEPTED, Contribution, ContributionIndex, EventKind
from engine.coordinate_cipher import EncryptedCoordinates, decrypt
from engine.coordinate_codec import GridCoordinate, parse
from engine.errors import FormatError, SetupMissingError
from engine.ledger import LedgerClient
from zkp.artifact_store import CircuitArtifact
from zkp.circuit_builder import CircuitBuilder
from zkp.orchestrator import ProofRecord, ProofVerificationOrchestrator
from zkp.toolchain import TOOLCHAIN_WORKERS
from zkp.verifier_lifecycle import VerifierLifecycleManager

logger = logging.getLogger("geoproof.pipeline")


@dataclass
class ContributionOutcome:
    contribution_id:  int
    image_url:        str
    circuit_id:       Optional[str] = None
    verifier_address: Optional[str] = None
    record:           Optional[ProofRecord] = None
    error:            Optional[str] = None
    failed_stage:     Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PipelineReport:
    outcomes: dict[int, ContributionOutcome] = field(default_factory=dict)
    index:    Optional[ContributionIndex]     = None

    @property
    def completed(self) -> list[ContributionOutcome]:
        return [o for o in self.outcomes.values() if o.ok]

    @property
    def failed(self) -> list[ContributionOutcome]:
        return [o for o in self.outcomes.values() if not o.ok]


def load_index(ledger: LedgerClient, from_block: int = 0) -> ContributionIndex:
    events = []
    for kind in EventKind:
        events.extend(ledger.get_events(kind, from_block=from_block))
    return ContributionIndex(events)


def resolve_true_coordinate(
    contribution:   Contribution,
    coordinates:    Optional[dict[str, str]] = None,
    decryption_key: Optional[str] = None,
) -> GridCoordinate:
    """True coordinate from an off-chain url → DMS mapping, else from the on-chain ciphertext."""
    if coordinates and contribution.image_url in coordinates:
        return parse(coordinates[contribution.image_url])
    if decryption_key and contribution.encrypted_coordinates:
        blob = EncryptedCoordinates.from_hex(contribution.encrypted_coordinates)
        return parse(decrypt(decryption_key, blob))
    raise FormatError(f"No coordinate available for contribution #{contribution.contribution_id}")


class ZKPPipeline:

    def __init__(
        self,
        ledger:       LedgerClient,
        builder:      CircuitBuilder,
        lifecycle:    VerifierLifecycleManager,
        orchestrator: ProofVerificationOrchestrator,
        registry:     BindingRegistry,
        max_workers:  int = TOOLCHAIN_WORKERS,
    ):
        self.ledger       = ledger
        self.builder      = builder
        self.lifecycle    = lifecycle
        self.orchestrator = orchestrator
        self.registry     = registry
        self.max_workers  = max(1, max_workers)

    def _build(self, contribution: Contribution, coordinates, decryption_key) -> CircuitArtifact:
        true_coordinate = resolve_true_coordinate(contribution, coordinates, decryption_key)
        return self.builder.build(contribution.image_url, true_coordinate)

    def create_zkp_contracts(
        self,
        participants:   dict[str, LocalAccount],
        reviewer:       LocalAccount,
        query:          GridCoordinate,
        coordinates:    Optional[dict[str, str]] = None,
        decryption_key: Optional[str] = None,
        review_result:  int = REVIEW_ACCEPTED,
    ) -> PipelineReport:
        index  = load_index(self.ledger)
        report = PipelineReport(index=index)
        accounts = {address.lower(): account for address, account in participants.items()}

        selected_ids  = dict.fromkeys(e.contribution_id for e in index.reviewed(review_result))
        contributions = [index.get(cid) for cid in selected_ids if index.get(cid) is not None]
        for c in contributions:
            report.outcomes[c.contribution_id] = ContributionOutcome(c.contribution_id, c.image_url)
        logger.info(f"[PIPELINE] {len(contributions)} contribution(s) reviewed with result={review_result}")

        # ── Build ───────────────────────────────────────────────────────
        artifacts: dict[int, CircuitArtifact] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                pool.submit(self._build, c, coordinates, decryption_key): c
                for c in contributions
            }
            for future in as_completed(futures):
                c       = futures[future]
                outcome = report.outcomes[c.contribution_id]
                try:
                    artifacts[c.contribution_id] = future.result()
                    outcome.circuit_id = artifacts[c.contribution_id].circuit_id
                except SetupMissingError:
                    raise
                except Exception as e:
                    outcome.error, outcome.failed_stage = str(e), "build"
                    logger.error(f"[PIPELINE] #{c.contribution_id} build failed: {e}")

        # ── Deploy + link ───────────────────────────────────────────────
        for c in contributions:
            artifact = artifacts.get(c.contribution_id)
            if artifact is None:
                continue
            outcome = report.outcomes[c.contribution_id]
            account = accounts.get(c.participant.lower())
            if account is None:
                outcome.error, outcome.failed_stage = f"No signer for participant {c.participant}", "link"
                continue
            try:
                outcome.verifier_address = self.lifecycle.deploy_and_link(artifact, c, account)
            except Exception as e:
                outcome.error, outcome.failed_stage = str(e), "deploy"
                logger.error(f"[PIPELINE] #{c.contribution_id} deploy/link failed: {e}")

        # ── Verify ──────────────────────────────────────────────────────
        self.registry.sync_from_events(self.ledger.get_events(EventKind.VERIFIER_UPDATED))
        for binding in self.registry.all():
            outcome = report.outcomes.get(binding.contribution_id)
            if outcome is None or not outcome.ok:
                continue
            outcome.record = self.orchestrator.record(binding, query, reviewer)
            if outcome.record.public_signal < 0:
                outcome.error, outcome.failed_stage = "verification failed", "verify"
            elif outcome.record.accepted:
                index.mark_verified(binding.contribution_id)

        logger.info(
            f"[PIPELINE] done: {len(report.completed)} completed, {len(report.failed)} failed"
        )
        return report
