"""
GeoProof Oracle — Circuit Builder
==================================
Runs the per-contribution build sequentially:
synthesize → store → compile → setup → verifier export/compile → pin wasm.
"""

from __future__ import annotations

import logging
from typing import Optional

from engine.content_store import ContentStore
from engine.coordinate_codec import GridCoordinate
from zkp.artifact_store import ArtifactStore, CircuitArtifact
from zkp.circuit_synthesizer import circuit_id_for, synthesize
from zkp.toolchain import ProofToolchain

logger = logging.getLogger("geoproof.builder")


class CircuitBuilder:

    def __init__(
        self,
        store:         ArtifactStore,
        toolchain:     ProofToolchain,
        content_store: Optional[ContentStore] = None,
    ):
        self.store         = store
        self.toolchain     = toolchain
        self.content_store = content_store

    def build(self, image_url: str, true_coordinate: GridCoordinate, force: bool = False) -> CircuitArtifact:
        circuit_id = circuit_id_for(image_url)
        source     = synthesize(true_coordinate)
        artifact   = self.store.write_source(circuit_id, source)
        manifest   = artifact.manifest()

        if not force and artifact.is_built() and manifest.get("built_sha256") == manifest.get("source_sha256"):
            logger.info(f"[BUILD] {circuit_id}: artifacts up to date, skipping toolchain")
            return artifact

        # Missing setup is process-wide: fail before spending a compile on it.
        ptau = self.store.ptau

        self.toolchain.compile(artifact)
        self.toolchain.setup(artifact, ptau)
        self.toolchain.export_verifier(artifact)
        abi, bytecode = self.toolchain.compile_verifier(artifact)
        self.store.write_verifier_build(artifact, abi, bytecode)

        if self.content_store is not None:
            cid = self.content_store.add(artifact.wasm_path.read_bytes(), filename=artifact.wasm_path.name)
            artifact.update_manifest(witness_cid=cid)

        artifact.update_manifest(built_sha256=manifest.get("source_sha256"), image_url=image_url)
        logger.info(f"[BUILD] {circuit_id}: circuit and verifier ready")
        return artifact
