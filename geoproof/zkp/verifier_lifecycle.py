"""
GeoProof Oracle — Verifier Lifecycle Manager
=============================================
Deploys a contribution's Groth16 verifier and links it to the contribution
on the platform contract.

Rules:
  - Only the contribution's participant may link; any other signer is
    refused before a transaction is built.
  - One verifier per contribution. A second link is refused and the first
    binding is left untouched.
  - Deployment failure is final for the contribution (each verifier is unique).
  - A failed link does not unwind the deployment; the orphaned address is logged.
"""

from __future__ import annotations

import logging
from typing import Optional

from eth_account.signers.local import LocalAccount

from engine.binding_registry import BindingRegistry, VerifierBinding
from engine.contributions import Contribution, ContributionStatus
from engine.errors import DeploymentError, LedgerTransactionError, LinkError
from engine.ledger import LedgerClient
from zkp.artifact_store import ArtifactStore, CircuitArtifact

logger = logging.getLogger("geoproof.lifecycle")


class VerifierLifecycleManager:

    def __init__(self, ledger: LedgerClient, store: ArtifactStore, registry: BindingRegistry):
        self.ledger   = ledger
        self.store    = store
        self.registry = registry

    def _check_linkable(self, contribution: Contribution, participant: LocalAccount) -> None:
        cid = contribution.contribution_id
        if participant.address.lower() != contribution.participant.lower():
            raise LinkError(
                f"Signer {participant.address} is not the participant of contribution #{cid}",
                contribution_id=cid,
            )
        existing = self.registry.get(cid)
        if existing is not None or contribution.verifier:
            address = existing.verifier_address if existing else contribution.verifier
            raise LinkError(f"Contribution #{cid} already linked to {address}", contribution_id=cid)
        if contribution.status != ContributionStatus.REVIEWED:
            raise LinkError(
                f"Contribution #{cid} is {contribution.status.value}, expected REVIEWED",
                contribution_id=cid,
            )

    def deploy_and_link(
        self,
        artifact:     CircuitArtifact,
        contribution: Contribution,
        participant:  LocalAccount,
        deployer:     Optional[LocalAccount] = None,
    ) -> str:
        cid = contribution.contribution_id
        self._check_linkable(contribution, participant)

        abi, bytecode = artifact.verifier_build()
        try:
            verifier_address = self.ledger.deploy_contract(abi, bytecode, deployer or participant)
        except Exception as e:
            logger.error(f"[DEPLOY] #{cid} verifier deployment failed: {e}")
            raise DeploymentError(f"Verifier deployment failed for #{cid}: {e}", contribution_id=cid) from e
        logger.info(f"[DEPLOY] #{cid} verifier deployed at {verifier_address}")

        try:
            self.ledger.update_verifier(verifier_address, cid, participant)
        except LedgerTransactionError as e:
            logger.error(f"[LINK] #{cid} link rejected, verifier {verifier_address} left orphaned: {e}")
            raise LinkError(
                f"updateVerifier rejected for #{cid}: {e}",
                contribution_id  = cid,
                verifier_address = verifier_address,
            ) from e

        self.registry.bind(VerifierBinding(cid, verifier_address, contribution.image_url))
        contribution.verifier = verifier_address
        contribution.status   = ContributionStatus.VERIFIER_LINKED
        self.store.archive(artifact.circuit_id)
        logger.info(f"[LINK] #{cid} linked to {verifier_address}")
        return verifier_address
