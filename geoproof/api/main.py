"""
GeoProof Oracle — API Gateway
FastAPI server exposing circuit building, proof verification and grid fuzzing
to reviewers and tooling.

  - GET  /health
  - POST /api/v1/coordinates/parse   DMS string → signed grid coordinate
  - POST /api/v1/circuits            synthesize + build a contribution circuit
  - GET  /api/v1/bindings            known contribution → verifier bindings
  - POST /api/v1/verify              verify a queried coordinate (rate limited)
  - POST /api/v1/fuzz                boundary fuzzing against a binding
"""

import logging
import os
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from fastapi import Depends, FastAPI, HTTPException, Request, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, Field
from dotenv import load_dotenv
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from engine.binding_registry import BindingRegistry, RedisBindingRegistry
from engine.content_store import ContentStore
from engine.contributions import EventKind
from engine.coordinate_codec import GridCoordinate, parse, render
from engine.errors import FormatError, GeoProofError, SetupMissingError
from engine.ledger import LedgerClient, Web3Ledger
from zkp.artifact_store import ArtifactStore
from zkp.circuit_builder import CircuitBuilder
from zkp.fuzz import fuzz, summarize
from zkp.orchestrator import ProofVerificationOrchestrator
from zkp.toolchain import SnarkjsToolchain

load_dotenv()

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] GEOPROOF :: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
log = logging.getLogger("geoproof.api")

VERSION = "1.0.0"

GEOPROOF_API_KEY  = os.getenv("GEOPROOF_API_KEY", "geoproof-dev-key-change-in-prod")
API_KEY_HEADER    = APIKeyHeader(name="X-GeoProof-Key", auto_error=True)

RPC_URL           = os.getenv("GEOPROOF_RPC_URL", "")
PLATFORM_ADDRESS  = os.getenv("GEOPROOF_PLATFORM_ADDRESS", "")
REDIS_URL         = os.getenv("GEOPROOF_REDIS_URL", "")
IPFS_API_URL      = os.getenv("GEOPROOF_IPFS_API_URL", "")
FUZZ_MAX_TRIALS   = int(os.getenv("GEOPROOF_FUZZ_MAX_TRIALS", "1000"))

# ─── Rate Limiter ─────────────────────────────────────────────────────────────
# Proving is CPU-heavy; e.g. RATE_LIMIT_VERIFY="10/minute"
RATE_LIMIT_VERIFY = os.getenv("RATE_LIMIT_VERIFY", "5/minute")
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="GeoProof Oracle API",
    description="Zero-knowledge grid-cell verification for geotagged contributions",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ─── CORS ─────────────────────────────────────────────────────────────────────
_raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
ALLOWED_ORIGINS: List[str] = [o.strip() for o in _raw_origins.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ─── Auth ─────────────────────────────────────────────────────────────────────
async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    if api_key != GEOPROOF_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid GeoProof API key",
        )
    return api_key


# ─── Services ─────────────────────────────────────────────────────────────────
@dataclass
class Services:
    store:        ArtifactStore
    builder:      CircuitBuilder
    registry:     BindingRegistry
    orchestrator: Optional[ProofVerificationOrchestrator]
    ledger:       Optional[LedgerClient]
    reviewer:     LocalAccount


def _reviewer_account() -> LocalAccount:
    key = os.getenv("GEOPROOF_REVIEWER_PRIVATE_KEY", "")
    if key:
        return Account.from_key(key)
    log.warning("No GEOPROOF_REVIEWER_PRIVATE_KEY set — using an ephemeral reviewer account (DEV ONLY)")
    return Account.create()


@lru_cache(maxsize=1)
def get_services() -> Services:
    store         = ArtifactStore()
    toolchain     = SnarkjsToolchain()
    content_store = ContentStore(IPFS_API_URL) if IPFS_API_URL else None
    registry      = RedisBindingRegistry.from_url(REDIS_URL) if REDIS_URL else BindingRegistry()

    ledger = None
    orchestrator = None
    if RPC_URL and PLATFORM_ADDRESS:
        ledger       = Web3Ledger.from_rpc(RPC_URL, PLATFORM_ADDRESS)
        orchestrator = ProofVerificationOrchestrator(ledger, store, toolchain, content_store)
    else:
        log.warning("GEOPROOF_RPC_URL / GEOPROOF_PLATFORM_ADDRESS not set — verification disabled")

    return Services(
        store        = store,
        builder      = CircuitBuilder(store, toolchain, content_store),
        registry     = registry,
        orchestrator = orchestrator,
        ledger       = ledger,
        reviewer     = _reviewer_account(),
    )


def _require_orchestrator(services: Services) -> ProofVerificationOrchestrator:
    if services.orchestrator is None:
        raise HTTPException(status_code=503, detail="Ledger not configured")
    return services.orchestrator


def _binding_or_404(services: Services, contribution_id: int):
    binding = services.registry.get(contribution_id)
    if binding is None:
        raise HTTPException(status_code=404, detail=f"No verifier bound to contribution #{contribution_id}")
    return binding


# ─── Request / Response Models ────────────────────────────────────────────────
class CoordinateString(BaseModel):
    coordinates: str = Field(..., description="DMS, e.g. 23° 11' 6.0\" S, 18° 22' 36.0\" E")


class GridCoordinateInput(BaseModel):
    lat_deg: int = Field(..., ge=-90,  le=90)
    lat_min: int = Field(..., ge=0,    le=59)
    lon_deg: int = Field(..., ge=-180, le=180)
    lon_min: int = Field(..., ge=0,    le=59)

    def to_grid(self) -> GridCoordinate:
        return GridCoordinate(self.lat_deg, self.lat_min, self.lon_deg, self.lon_min)


class BuildCircuitRequest(BaseModel):
    image_url:   str
    coordinates: str
    force:       bool = False


class VerifyRequest(BaseModel):
    contribution_id: int
    queried:         GridCoordinateInput


class FuzzRequest(BaseModel):
    contribution_id:  int
    coordinates:      str = Field(..., description="True coordinate (DMS) of the contribution")
    trials:           int = Field(100, ge=1)
    edge_probability: float = Field(0.5, ge=0.0, le=1.0)
    seed:             Optional[int] = None


# ─── Routes ───────────────────────────────────────────────────────────────────

@app.get("/health")
async def health(services: Services = Depends(get_services)):
    return {
        "status":           "operational",
        "version":          VERSION,
        "ledger_connected": services.ledger is not None,
        "bindings":         len(services.registry.all()),
        "timestamp":        int(time.time()),
    }


@app.post("/api/v1/coordinates/parse", summary="Parse DMS Coordinate")
async def parse_coordinates(
    body: CoordinateString,
    _:    str = Depends(verify_api_key),
) -> Dict[str, Any]:
    try:
        coord = parse(body.coordinates)
    except FormatError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {
        "coordinate": coord.to_dict(),
        "anchored":   coord.anchored().to_dict(),
        "rendered":   render(coord),
    }


@app.post("/api/v1/circuits", summary="Build Contribution Circuit")
def build_circuit(
    body:     BuildCircuitRequest,
    _:        str = Depends(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        artifact = services.builder.build(body.image_url, parse(body.coordinates), force=body.force)
    except FormatError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SetupMissingError as e:
        log.critical(f"[CIRCUIT] {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except GeoProofError as e:
        log.error(f"[CIRCUIT] Build failed for {body.image_url}: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    manifest = artifact.manifest()
    return {
        "circuit_id":    artifact.circuit_id,
        "source_sha256": manifest.get("source_sha256"),
        "witness_cid":   manifest.get("witness_cid"),
        "verifier":      artifact.verifier_source_path.name,
    }


@app.get("/api/v1/bindings", summary="List Verifier Bindings")
def list_bindings(
    sync:     bool = False,
    _:        str = Depends(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    if sync and services.ledger is not None:
        added = services.registry.sync_from_events(services.ledger.get_events(EventKind.VERIFIER_UPDATED))
        log.info(f"[BINDINGS] Synced {added} new binding(s) from ledger")
    items = [b.to_dict() for b in services.registry.all()]
    return {"count": len(items), "items": items}


@app.post("/api/v1/verify", summary="Verify Queried Coordinate")
@limiter.limit(RATE_LIMIT_VERIFY)
def verify_coordinate(
    request:  Request,                          # required by slowapi
    body:     VerifyRequest,
    _:        str = Depends(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    orchestrator = _require_orchestrator(services)
    binding      = _binding_or_404(services, body.contribution_id)

    t_start = time.perf_counter()
    result  = orchestrator.verify(binding, body.queried.to_grid(), services.reviewer)
    return {
        "contribution_id":    binding.contribution_id,
        "verifier_address":   binding.verifier_address,
        "ok":                 result.ok,
        "public_signal":      result.public_signal,
        "accepted":           result.accepted,
        "reason":             getattr(result, "reason", None),
        "processing_time_ms": round((time.perf_counter() - t_start) * 1000, 2),
    }


@app.post("/api/v1/fuzz", summary="Fuzz Grid Boundaries")
def fuzz_binding(
    body:     FuzzRequest,
    _:        str = Depends(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    if body.trials > FUZZ_MAX_TRIALS:
        raise HTTPException(status_code=422, detail=f"trials must be <= {FUZZ_MAX_TRIALS}")
    orchestrator = _require_orchestrator(services)
    binding      = _binding_or_404(services, body.contribution_id)
    try:
        true_coordinate = parse(body.coordinates)
    except FormatError as e:
        raise HTTPException(status_code=422, detail=str(e))

    records = fuzz(
        orchestrator, binding, true_coordinate, services.reviewer,
        trials=body.trials, edge_probability=body.edge_probability, seed=body.seed,
    )
    return {
        "contribution_id": binding.contribution_id,
        "summary":         summarize(records, true_coordinate),
    }
