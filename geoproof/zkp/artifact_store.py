"""
GeoProof Oracle — Circuit Artifact Store
=========================================
Explicit, content-keyed home for every per-contribution toolchain artifact
plus the shared trusted-setup (.ptau) file.

    <root>/<circuit_id>/coordinate-circuit-<id>.circom     source
                        coordinate-circuit-<id>.r1cs       constraint system
                        coordinate-circuit-<id>_js/*.wasm  witness generator
                        coordinate-circuit-<id>.zkey       proving key
                        coordinate-verifier-<id>.sol       verifier source
                        verifier.json                      compiled abi + bytecode
                        manifest.json                      digest, witness CID
    <root>/archive/<circuit_id>/...                        after deployment

Archived artifacts stay locatable: proving against a deployed verifier needs
the same witness generator and proving key.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from engine.errors import ProofGenerationError, SetupMissingError
from zkp.circuit_synthesizer import CIRCUIT_PREFIX, VERIFIER_PREFIX, source_digest

logger = logging.getLogger("geoproof.artifacts")

ARTIFACT_DIR = os.getenv("GEOPROOF_ARTIFACT_DIR", "./circuits")
PTAU_PATH    = os.getenv("GEOPROOF_PTAU_PATH", "data/pot14_final.ptau")

ARCHIVE_DIR = "archive"
MANIFEST    = "manifest.json"


@dataclass(frozen=True)
class CircuitArtifact:
    circuit_id: str
    directory:  Path

    @property
    def name(self) -> str:
        return f"{CIRCUIT_PREFIX}-{self.circuit_id}"

    @property
    def source_path(self) -> Path:
        return self.directory / f"{self.name}.circom"

    @property
    def r1cs_path(self) -> Path:
        return self.directory / f"{self.name}.r1cs"

    @property
    def wasm_path(self) -> Path:
        return self.directory / f"{self.name}_js" / f"{self.name}.wasm"

    @property
    def zkey_path(self) -> Path:
        return self.directory / f"{self.name}.zkey"

    @property
    def verifier_source_path(self) -> Path:
        return self.directory / f"{VERIFIER_PREFIX}-{self.circuit_id}.sol"

    @property
    def verifier_build_path(self) -> Path:
        return self.directory / "verifier.json"

    @property
    def manifest_path(self) -> Path:
        return self.directory / MANIFEST

    # ------------------------------------------------------------------
    def manifest(self) -> dict[str, Any]:
        if not self.manifest_path.exists():
            return {}
        return json.loads(self.manifest_path.read_text())

    def update_manifest(self, **fields: Any) -> None:
        data = self.manifest()
        data.update(fields)
        self.manifest_path.write_text(json.dumps(data, indent=2, sort_keys=True))

    @property
    def witness_cid(self) -> Optional[str]:
        return self.manifest().get("witness_cid")

    def verifier_build(self) -> tuple[list, str]:
        if not self.verifier_build_path.exists():
            raise ProofGenerationError(
                f"Verifier for {self.circuit_id} has not been compiled",
                circuit_id=self.circuit_id, stage="compile_verifier",
            )
        build = json.loads(self.verifier_build_path.read_text())
        return build["abi"], build["bytecode"]

    def is_built(self) -> bool:
        return all(p.exists() for p in (
            self.r1cs_path, self.wasm_path, self.zkey_path, self.verifier_build_path,
        ))


class ArtifactStore:

    def __init__(self, root: str | Path = ARTIFACT_DIR, ptau_path: str | Path = PTAU_PATH):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._ptau_path     = Path(ptau_path)
        self._ptau_resolved: Optional[Path] = None
        self._lock = threading.Lock()

    @property
    def ptau(self) -> Path:
        """The shared trusted-setup file, resolved once per process."""
        with self._lock:
            if self._ptau_resolved is None:
                if not self._ptau_path.is_file():
                    raise SetupMissingError(str(self._ptau_path))
                self._ptau_resolved = self._ptau_path.resolve()
                logger.info(f"[SETUP] Using trusted setup {self._ptau_resolved}")
            return self._ptau_resolved

    def artifact(self, circuit_id: str) -> CircuitArtifact:
        return CircuitArtifact(circuit_id, self.root / circuit_id)

    def locate(self, circuit_id: str) -> Optional[CircuitArtifact]:
        for directory in (self.root / circuit_id, self.root / ARCHIVE_DIR / circuit_id):
            if directory.is_dir():
                return CircuitArtifact(circuit_id, directory)
        return None

    def write_source(self, circuit_id: str, source: str) -> CircuitArtifact:
        """
        Store circuit source. Re-writing identical source is a no-op; new
        source overwrites and invalidates the recorded digest.
        """
        artifact = self.artifact(circuit_id)
        artifact.directory.mkdir(parents=True, exist_ok=True)
        digest = source_digest(source)

        if artifact.source_path.exists() and artifact.manifest().get("source_sha256") == digest:
            logger.info(f"[ARTIFACT] {circuit_id}: source unchanged ({digest[:12]})")
            return artifact

        artifact.source_path.write_text(source)
        artifact.update_manifest(circuit_id=circuit_id, source_sha256=digest)
        logger.info(f"[ARTIFACT] {circuit_id}: source written ({digest[:12]})")
        return artifact

    def write_verifier_build(self, artifact: CircuitArtifact, abi: list, bytecode: str) -> None:
        artifact.verifier_build_path.write_text(json.dumps({"abi": abi, "bytecode": bytecode}))

    def archive(self, circuit_id: str) -> CircuitArtifact:
        source = self.root / circuit_id
        target = self.root / ARCHIVE_DIR / circuit_id
        if not source.is_dir():
            located = self.locate(circuit_id)
            if located is None:
                raise FileNotFoundError(f"No artifacts for circuit {circuit_id}")
            return located
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            shutil.rmtree(target)
        shutil.move(str(source), str(target))
        logger.info(f"[ARTIFACT] {circuit_id}: archived")
        return CircuitArtifact(circuit_id, target)
