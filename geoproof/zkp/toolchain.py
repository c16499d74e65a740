"""
GeoProof Oracle — Proof Toolchain Adapter
==========================================
Stage interface over the external circom / snarkjs / solc processes.

    compile            circom  source  → r1cs + wasm witness generator
    setup              snarkjs groth16 setup (r1cs + shared ptau) → zkey
    export_verifier    snarkjs zkey export solidityverifier → .sol
    compile_verifier   solc --combined-json abi,bin → abi + bytecode
    prove              snarkjs groth16 fullprove → proof + public signals
    export_calldata    snarkjs zkey export soliditycalldata → flat token list

The pipeline only talks to ProofToolchain; tests substitute a fake.
Toolchain runs are CPU-heavy, so SnarkjsToolchain caps concurrent
invocations with a semaphore shared by all stages.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from engine.errors import ProofGenerationError
from zkp.artifact_store import CircuitArtifact

logger = logging.getLogger("geoproof.toolchain")

CIRCOM_CMD        = os.getenv("CIRCOM_CMD", "circom")
SNARKJS_CMD       = os.getenv("SNARKJS_CMD", "snarkjs")
SOLC_CMD          = os.getenv("SOLC_CMD", "solc")
CIRCOMLIB_PATH    = os.getenv("GEOPROOF_CIRCOMLIB_PATH", "node_modules")
TOOLCHAIN_WORKERS = int(os.getenv("GEOPROOF_TOOLCHAIN_WORKERS", "2"))
TOOLCHAIN_TIMEOUT = float(os.getenv("GEOPROOF_TOOLCHAIN_TIMEOUT_SEC", "600"))

VERIFIER_CONTRACT_NAME = "Groth16Verifier"
REQUIRED_INPUTS = ("latDegVerify", "latMinVerify", "lonDegVerify", "lonMinVerify")


@dataclass
class Proof:
    circuit_id:     str
    proof:          dict[str, Any]
    public_signals: list[str] = field(default_factory=list)

    @property
    def public_signal(self) -> int:
        return int(self.public_signals[0])


def validate_inputs(circuit_id: str, inputs: dict[str, Any]) -> dict[str, int]:
    missing = [name for name in REQUIRED_INPUTS if name not in inputs]
    if missing:
        raise ProofGenerationError(
            f"Missing circuit inputs {missing} for {circuit_id}",
            circuit_id=circuit_id, stage="prove",
        )
    clean = {}
    for name in REQUIRED_INPUTS:
        value = inputs[name]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ProofGenerationError(
                f"Circuit input {name}={value!r} is not an integer",
                circuit_id=circuit_id, stage="prove",
            )
        clean[name] = value
    return clean


class ProofToolchain(ABC):

    @abstractmethod
    def compile(self, artifact: CircuitArtifact) -> None: ...

    @abstractmethod
    def setup(self, artifact: CircuitArtifact, ptau: Path) -> None: ...

    @abstractmethod
    def export_verifier(self, artifact: CircuitArtifact) -> None: ...

    @abstractmethod
    def compile_verifier(self, artifact: CircuitArtifact) -> tuple[list, str]: ...

    @abstractmethod
    def prove(self, artifact: CircuitArtifact, inputs: dict[str, Any]) -> Proof: ...

    @abstractmethod
    def export_calldata(self, proof: Proof) -> str: ...


class SnarkjsToolchain(ProofToolchain):

    def __init__(
        self,
        circom:      str = CIRCOM_CMD,
        snarkjs:     str = SNARKJS_CMD,
        solc:        str = SOLC_CMD,
        include:     str = CIRCOMLIB_PATH,
        timeout:     float = TOOLCHAIN_TIMEOUT,
        max_workers: int = TOOLCHAIN_WORKERS,
    ):
        self.circom  = circom
        self.snarkjs = snarkjs
        self.solc    = solc
        self.include = include
        self.timeout = timeout
        self._slots  = threading.BoundedSemaphore(max(1, max_workers))

    # ------------------------------------------------------------------
    def _run(self, cmd: list[str], stage: str, circuit_id: str, cwd: Optional[Path] = None) -> str:
        with self._slots:
            logger.info(f"[{stage.upper()}] {circuit_id}: {' '.join(cmd)}")
            start = time.time()
            try:
                result = subprocess.run(
                    cmd, capture_output=True, text=True, cwd=cwd, timeout=self.timeout,
                )
            except subprocess.TimeoutExpired as e:
                raise ProofGenerationError(
                    f"{stage} timed out after {self.timeout:.0f}s",
                    circuit_id=circuit_id, stage=stage,
                ) from e
            except FileNotFoundError as e:
                raise ProofGenerationError(
                    f"{stage}: executable not found ({cmd[0]})",
                    circuit_id=circuit_id, stage=stage,
                ) from e
            elapsed = time.time() - start

        if result.returncode != 0:
            logger.error(f"[{stage.upper()}] {circuit_id} failed (exit {result.returncode}): {result.stderr.strip()}")
            raise ProofGenerationError(
                f"{stage} failed for {circuit_id}",
                circuit_id = circuit_id,
                stage      = stage,
                returncode = result.returncode,
                stderr     = result.stderr,
            )
        logger.info(f"[{stage.upper()}] {circuit_id}: completed in {elapsed:.2f}s")
        return result.stdout

    # ------------------------------------------------------------------
    def compile(self, artifact: CircuitArtifact) -> None:
        self._run(
            [self.circom, str(artifact.source_path), "--r1cs", "--wasm", "--sym",
             "-o", str(artifact.directory), "-l", self.include],
            "compile", artifact.circuit_id,
        )

    def setup(self, artifact: CircuitArtifact, ptau: Path) -> None:
        self._run(
            [self.snarkjs, "groth16", "setup", str(artifact.r1cs_path), str(ptau), str(artifact.zkey_path)],
            "setup", artifact.circuit_id,
        )

    def export_verifier(self, artifact: CircuitArtifact) -> None:
        self._run(
            [self.snarkjs, "zkey", "export", "solidityverifier",
             str(artifact.zkey_path), str(artifact.verifier_source_path)],
            "export_verifier", artifact.circuit_id,
        )

    def compile_verifier(self, artifact: CircuitArtifact) -> tuple[list, str]:
        stdout = self._run(
            [self.solc, "--optimize", "--combined-json", "abi,bin", str(artifact.verifier_source_path)],
            "compile_verifier", artifact.circuit_id,
        )
        contracts = json.loads(stdout).get("contracts", {})
        for key, build in contracts.items():
            if key.endswith(f":{VERIFIER_CONTRACT_NAME}"):
                abi = build["abi"]
                if isinstance(abi, str):   # solc < 0.8.10 nests abi as a JSON string
                    abi = json.loads(abi)
                return abi, "0x" + build["bin"]
        raise ProofGenerationError(
            f"{VERIFIER_CONTRACT_NAME} not found in solc output",
            circuit_id=artifact.circuit_id, stage="compile_verifier",
        )

    def prove(self, artifact: CircuitArtifact, inputs: dict[str, Any]) -> Proof:
        clean = validate_inputs(artifact.circuit_id, inputs)
        for path in (artifact.wasm_path, artifact.zkey_path):
            if not path.exists():
                raise ProofGenerationError(
                    f"Missing artifact {path.name}",
                    circuit_id=artifact.circuit_id, stage="prove",
                )

        # Per-call scratch dir: concurrent proofs for one circuit must not share files.
        with tempfile.TemporaryDirectory(prefix=f"proof-{artifact.circuit_id}-") as tmp:
            work = Path(tmp)
            (work / "input.json").write_text(json.dumps(clean))
            self._run(
                [self.snarkjs, "groth16", "fullprove", "input.json",
                 str(artifact.wasm_path.resolve()), str(artifact.zkey_path.resolve()),
                 "proof.json", "public.json"],
                "prove", artifact.circuit_id, cwd=work,
            )
            proof   = json.loads((work / "proof.json").read_text())
            signals = json.loads((work / "public.json").read_text())

        return Proof(circuit_id=artifact.circuit_id, proof=proof, public_signals=[str(s) for s in signals])

    def export_calldata(self, proof: Proof) -> str:
        with tempfile.TemporaryDirectory(prefix=f"calldata-{proof.circuit_id}-") as tmp:
            work = Path(tmp)
            (work / "proof.json").write_text(json.dumps(proof.proof))
            (work / "public.json").write_text(json.dumps(proof.public_signals))
            return self._run(
                [self.snarkjs, "zkey", "export", "soliditycalldata", "public.json", "proof.json"],
                "export_calldata", proof.circuit_id, cwd=work,
            ).strip()
