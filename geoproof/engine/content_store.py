"""
GeoProof Oracle — Content Store Client
=======================================
IPFS-compatible HTTP API (kubo /api/v0). The compiled witness generator of
every circuit is pinned here; before proving, a `cat` on its CID serves as a
liveness check. Nothing read back is fed into the circuit.
"""

from __future__ import annotations

import logging
import os

import requests

from engine.errors import ContentStoreError

logger = logging.getLogger("geoproof.content_store")

IPFS_API_URL     = os.getenv("GEOPROOF_IPFS_API_URL", "http://127.0.0.1:5001")
IPFS_TIMEOUT_SEC = float(os.getenv("GEOPROOF_IPFS_TIMEOUT_SEC", "30"))


class ContentStore:

    def __init__(self, api_url: str = IPFS_API_URL, timeout: float = IPFS_TIMEOUT_SEC,
                 session: requests.Session | None = None):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def add(self, data: bytes, filename: str = "artifact") -> str:
        try:
            resp = self.session.post(
                f"{self.api_url}/api/v0/add",
                params  = {"pin": "true"},
                files   = {"file": (filename, data)},
                timeout = self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ContentStoreError(f"IPFS add failed for {filename}: {e}") from e

        cid = resp.json()["Hash"]
        logger.info(f"[IPFS] Stored {filename} ({len(data):,} bytes) as {cid}")
        return cid

    def cat(self, cid: str) -> bytes:
        try:
            resp = self.session.post(
                f"{self.api_url}/api/v0/cat",
                params  = {"arg": cid},
                timeout = self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ContentStoreError(f"IPFS cat failed: {e}", cid=cid) from e
        return resp.content
