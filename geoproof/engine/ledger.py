"""
GeoProof Oracle — Ledger Adapter
=================================
Thin web3 wrapper around the contribution platform contract and the
per-contribution Groth16 verifier contracts.

Every write is signed locally with an eth_account LocalAccount and blocks
until its receipt is mined: later stages read events that only exist after
confirmation.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Optional

from eth_account.signers.local import LocalAccount
from web3 import Web3

from engine.contributions import EventKind, LedgerEvent
from engine.errors import LedgerTransactionError

logger = logging.getLogger("geoproof.ledger")

RECEIPT_TIMEOUT_SEC = int(os.getenv("GEOPROOF_RECEIPT_TIMEOUT_SEC", "120"))


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    return {
        "anonymous": False,
        "name":      name,
        "type":      "event",
        "inputs": [
            {"indexed": indexed, "internalType": typ, "name": arg, "type": typ}
            for arg, typ, indexed in inputs
        ],
    }


def _function(name: str, inputs: list[tuple[str, str]], mutability: str = "nonpayable",
              outputs: Optional[list[str]] = None) -> dict:
    return {
        "name":            name,
        "type":            "function",
        "stateMutability": mutability,
        "inputs":  [{"internalType": typ, "name": arg, "type": typ} for arg, typ in inputs],
        "outputs": [{"internalType": typ, "name": "", "type": typ} for typ in (outputs or [])],
    }


# Subset of the contribution platform ABI used by the pipeline.
PLATFORM_ABI: list[dict] = [
    _function("createContribution", [("imageUrl", "string")]),
    _function("assignContribution", []),
    _function("updateCoordinates",  [("coordinates", "bytes"), ("contributionId", "uint256")]),
    _function("reviewContribution", [("contributionId", "uint256"), ("result", "uint8")]),
    _function("updateVerifier",     [("verifier", "address"), ("contributionId", "uint256")]),
    _event("ContributionCreated", [
        ("participant", "address", True), ("imageUrl", "string", False),
        ("contributionId", "uint256", False),
    ]),
    _event("ContributionAssigned", [
        ("contributionId", "uint256", False), ("participant", "address", True),
        ("imageUrl", "string", False), ("reviewer", "address", True),
    ]),
    _event("CoordinateUpdated", [
        ("contributionId", "uint256", False), ("participant", "address", True),
        ("imageUrl", "string", False), ("coordinates", "bytes", False),
    ]),
    _event("ContributionReviewed", [
        ("contributionId", "uint256", False), ("participant", "address", True),
        ("reviewer", "address", True), ("imageUrl", "string", False),
        ("result", "uint8", False),
    ]),
    _event("VerifierUpdated", [
        ("contributionId", "uint256", False), ("participant", "address", True),
        ("reviewer", "address", True), ("imageUrl", "string", False),
        ("verifier", "address", False),
    ]),
]

# snarkjs Groth16Verifier entry point for a single public signal.
VERIFIER_ABI: list[dict] = [
    _function(
        "verifyProof",
        [("_pA", "uint256[2]"), ("_pB", "uint256[2][2]"), ("_pC", "uint256[2]"),
         ("_pubSignals", "uint256[1]")],
        mutability="view",
        outputs=["bool"],
    ),
]


class LedgerClient(ABC):
    """Operations the pipeline needs from the ledger collaborator."""

    @abstractmethod
    def create_contribution(self, image_url: str, account: LocalAccount) -> dict: ...

    @abstractmethod
    def assign_contribution(self, account: LocalAccount) -> dict: ...

    @abstractmethod
    def update_coordinates(self, contribution_id: int, encrypted_hex: str, account: LocalAccount) -> dict: ...

    @abstractmethod
    def review_contribution(self, contribution_id: int, result: int, account: LocalAccount) -> dict: ...

    @abstractmethod
    def update_verifier(self, verifier_address: str, contribution_id: int, account: LocalAccount) -> dict: ...

    @abstractmethod
    def deploy_contract(self, abi: list, bytecode: str, account: LocalAccount) -> str: ...

    @abstractmethod
    def verify_proof(self, verifier_address: str, a: list, b: list, c: list,
                     public_input: list, account: LocalAccount) -> bool: ...

    @abstractmethod
    def get_events(self, kind: EventKind, from_block: int = 0) -> list[LedgerEvent]: ...


class Web3Ledger(LedgerClient):

    def __init__(
        self,
        w3:               Web3,
        platform_address: str,
        platform_abi:     Optional[list] = None,
        receipt_timeout:  int = RECEIPT_TIMEOUT_SEC,
    ):
        self.w3 = w3
        self.platform = w3.eth.contract(
            address = Web3.to_checksum_address(platform_address),
            abi     = platform_abi or PLATFORM_ABI,
        )
        self.receipt_timeout = receipt_timeout

    @classmethod
    def from_rpc(cls, rpc_url: str, platform_address: str, **kwargs) -> "Web3Ledger":
        return cls(Web3(Web3.HTTPProvider(rpc_url)), platform_address, **kwargs)

    # ------------------------------------------------------------------
    def _send(self, tx: dict, account: LocalAccount, label: str) -> Any:
        tx.setdefault("nonce", self.w3.eth.get_transaction_count(account.address))
        tx.setdefault("chainId", self.w3.eth.chain_id)
        signed  = account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] != 1:
            raise LedgerTransactionError(f"{label} reverted", tx_hash=tx_hash.hex())
        logger.info(f"[LEDGER] {label} mined in block {receipt['blockNumber']} ({tx_hash.hex()[:18]}...)")
        return receipt

    def _transact(self, fn, account: LocalAccount, label: str) -> dict:
        try:
            tx = fn.build_transaction({"from": account.address})
        except Exception as e:
            # Gas estimation surfaces contract reverts before anything is sent.
            raise LedgerTransactionError(f"{label} rejected: {e}") from e
        receipt = self._send(tx, account, label)
        return {
            "tx_hash":      receipt["transactionHash"].hex(),
            "block_number": receipt["blockNumber"],
            "events":       [e for e in map(self._decode_receipt_event, receipt["logs"]) if e is not None],
        }

    def _decode_receipt_event(self, log: Any) -> Optional[LedgerEvent]:
        for kind in EventKind:
            try:
                decoded = getattr(self.platform.events, kind.value)().process_log(log)
            except Exception:
                continue
            return self._to_ledger_event(kind, decoded)
        return None

    @staticmethod
    def _to_ledger_event(kind: EventKind, raw: Any) -> LedgerEvent:
        args = dict(raw["args"])
        return LedgerEvent(
            kind            = kind,
            contribution_id = int(args.get("contributionId", 0)),
            args            = args,
            block_number    = raw["blockNumber"],
            log_index       = raw["logIndex"],
        )

    # ------------------------------------------------------------------
    def create_contribution(self, image_url: str, account: LocalAccount) -> dict:
        return self._transact(self.platform.functions.createContribution(image_url), account, "createContribution")

    def assign_contribution(self, account: LocalAccount) -> dict:
        return self._transact(self.platform.functions.assignContribution(), account, "assignContribution")

    def update_coordinates(self, contribution_id: int, encrypted_hex: str, account: LocalAccount) -> dict:
        fn = self.platform.functions.updateCoordinates(Web3.to_bytes(hexstr=encrypted_hex), contribution_id)
        return self._transact(fn, account, f"updateCoordinates #{contribution_id}")

    def review_contribution(self, contribution_id: int, result: int, account: LocalAccount) -> dict:
        fn = self.platform.functions.reviewContribution(contribution_id, result)
        return self._transact(fn, account, f"reviewContribution #{contribution_id}")

    def update_verifier(self, verifier_address: str, contribution_id: int, account: LocalAccount) -> dict:
        fn = self.platform.functions.updateVerifier(Web3.to_checksum_address(verifier_address), contribution_id)
        return self._transact(fn, account, f"updateVerifier #{contribution_id}")

    def deploy_contract(self, abi: list, bytecode: str, account: LocalAccount) -> str:
        factory = self.w3.eth.contract(abi=abi, bytecode=bytecode)
        tx      = factory.constructor().build_transaction({"from": account.address})
        receipt = self._send(tx, account, "deploy verifier")
        return receipt["contractAddress"]

    def verify_proof(self, verifier_address: str, a: list, b: list, c: list,
                     public_input: list, account: LocalAccount) -> bool:
        verifier = self.w3.eth.contract(address=Web3.to_checksum_address(verifier_address), abi=VERIFIER_ABI)
        return bool(verifier.functions.verifyProof(a, b, c, public_input).call({"from": account.address}))

    def get_events(self, kind: EventKind, from_block: int = 0) -> list[LedgerEvent]:
        logs = getattr(self.platform.events, kind.value)().get_logs(from_block=from_block)
        return [self._to_ledger_event(kind, log) for log in logs]
