"""
GeoProof Oracle — Artifact Store + Circuit Builder Tests

Coverage:
  - artifact paths, idempotent source writes, manifest digest
  - trusted setup resolution (missing → SetupMissingError, before any compile)
  - build sequence, up-to-date skip, forced rebuild
  - archive keeps artifacts locatable
"""

import sys
import os

import pytest

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.coordinate_codec import GridCoordinate
from engine.errors import ProofGenerationError, SetupMissingError
from zkp.artifact_store import ArtifactStore
from zkp.circuit_builder import CircuitBuilder
from zkp.circuit_synthesizer import source_digest, synthesize

from fakes import FakeToolchain

TRUE      = GridCoordinate(-23, 11, 18, 22)
IMAGE_URL = "https://arweave.net/contribution_001"
BUILD_STAGES = ["compile", "setup", "export_verifier", "compile_verifier"]


@pytest.fixture
def ptau(tmp_path):
    path = tmp_path / "pot14_final.ptau"
    path.write_bytes(b"ptau")
    return path


@pytest.fixture
def store(tmp_path, ptau):
    return ArtifactStore(tmp_path / "circuits", ptau)


class FakeContentStore:

    def __init__(self):
        self.added = []
        self.fetched = []

    def add(self, data, filename="artifact"):
        self.added.append((filename, data))
        return f"Qm{len(self.added):044d}"

    def cat(self, cid):
        self.fetched.append(cid)
        return b""


# ── Artifact Store ────────────────────────────────────────────────────────────

class TestArtifactStore:

    def test_paths(self, store):
        artifact = store.artifact("abc")
        assert artifact.source_path.name == "coordinate-circuit-abc.circom"
        assert artifact.wasm_path.parent.name == "coordinate-circuit-abc_js"
        assert artifact.wasm_path.name == "coordinate-circuit-abc.wasm"
        assert artifact.verifier_source_path.name == "coordinate-verifier-abc.sol"

    def test_write_source_records_digest(self, store):
        source = synthesize(TRUE)
        artifact = store.write_source("abc", source)
        assert artifact.source_path.read_text() == source
        assert artifact.manifest()["source_sha256"] == source_digest(source)

    def test_write_source_idempotent(self, store):
        source = synthesize(TRUE)
        artifact = store.write_source("abc", source)
        artifact.update_manifest(built_sha256=source_digest(source))
        store.write_source("abc", source)
        assert artifact.manifest()["built_sha256"] == source_digest(source)

    def test_new_source_overwrites(self, store):
        store.write_source("abc", synthesize(TRUE))
        other = synthesize(GridCoordinate(-23, 30, 18, 22))
        artifact = store.write_source("abc", other)
        assert artifact.source_path.read_text() == other
        assert artifact.manifest()["source_sha256"] == source_digest(other)

    def test_ptau_resolved(self, store, ptau):
        assert store.ptau == ptau.resolve()

    def test_missing_ptau(self, tmp_path):
        store = ArtifactStore(tmp_path / "circuits", tmp_path / "missing.ptau")
        with pytest.raises(SetupMissingError) as exc:
            store.ptau
        assert "missing.ptau" in exc.value.ptau_path

    def test_unbuilt_verifier(self, store):
        artifact = store.write_source("abc", synthesize(TRUE))
        assert not artifact.is_built()
        with pytest.raises(ProofGenerationError):
            artifact.verifier_build()

    def test_archive_keeps_locatable(self, store):
        store.write_source("abc", synthesize(TRUE))
        archived = store.archive("abc")
        assert not (store.root / "abc").exists()
        assert archived.source_path.exists()
        assert store.locate("abc") == archived

    def test_archive_twice_is_noop(self, store):
        store.write_source("abc", synthesize(TRUE))
        first = store.archive("abc")
        assert store.archive("abc") == first

    def test_locate_unknown(self, store):
        assert store.locate("nope") is None
        with pytest.raises(FileNotFoundError):
            store.archive("nope")


# ── Circuit Builder ───────────────────────────────────────────────────────────

class TestCircuitBuilder:

    def test_build_runs_all_stages(self, store):
        toolchain = FakeToolchain()
        artifact = CircuitBuilder(store, toolchain).build(IMAGE_URL, TRUE)
        assert artifact.circuit_id == "contribution_001"
        assert toolchain.stages("contribution_001") == BUILD_STAGES
        assert artifact.is_built()
        abi, bytecode = artifact.verifier_build()
        assert abi[0]["name"] == "verifyProof"
        assert bytecode.startswith("0x")
        assert artifact.manifest()["image_url"] == IMAGE_URL

    def test_rebuild_skipped_when_up_to_date(self, store):
        toolchain = FakeToolchain()
        builder = CircuitBuilder(store, toolchain)
        builder.build(IMAGE_URL, TRUE)
        builder.build(IMAGE_URL, GridCoordinate(-23, 6, 18, 23))   # same cell
        assert toolchain.stages("contribution_001") == BUILD_STAGES

    def test_force_rebuild(self, store):
        toolchain = FakeToolchain()
        builder = CircuitBuilder(store, toolchain)
        builder.build(IMAGE_URL, TRUE)
        builder.build(IMAGE_URL, TRUE, force=True)
        assert toolchain.stages("contribution_001") == BUILD_STAGES * 2

    def test_changed_cell_rebuilds(self, store):
        toolchain = FakeToolchain()
        builder = CircuitBuilder(store, toolchain)
        builder.build(IMAGE_URL, TRUE)
        builder.build(IMAGE_URL, GridCoordinate(-23, 30, 18, 22))
        assert toolchain.stages("contribution_001") == BUILD_STAGES * 2

    def test_missing_ptau_before_compile(self, tmp_path):
        store = ArtifactStore(tmp_path / "circuits", tmp_path / "missing.ptau")
        toolchain = FakeToolchain()
        with pytest.raises(SetupMissingError):
            CircuitBuilder(store, toolchain).build(IMAGE_URL, TRUE)
        assert toolchain.calls == []

    def test_stage_failure_propagates(self, store):
        toolchain = FakeToolchain(fail_stage="setup")
        with pytest.raises(ProofGenerationError) as exc:
            CircuitBuilder(store, toolchain).build(IMAGE_URL, TRUE)
        assert exc.value.stage == "setup"
        assert not store.artifact("contribution_001").is_built()

    def test_witness_pinned_to_content_store(self, store):
        content = FakeContentStore()
        artifact = CircuitBuilder(store, FakeToolchain(), content).build(IMAGE_URL, TRUE)
        assert content.added[0][0] == "coordinate-circuit-contribution_001.wasm"
        assert artifact.witness_cid == "Qm" + "0" * 43 + "1"
