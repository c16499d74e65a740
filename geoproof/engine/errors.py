"""
GeoProof Oracle — Error Taxonomy
=================================
Every failure raised by the pipeline derives from GeoProofError so batch
callers can catch one type and keep iterating over contributions.

  FormatError            malformed coordinate string          (fatal, per contribution)
  SetupMissingError      shared .ptau file absent             (fatal, process-wide)
  ProofGenerationError   external toolchain failure           (fatal, per contribution)
  DeploymentError        verifier contract deploy failed      (fatal, per contribution)
  LinkError              updateVerifier refused / rejected    (reported, deploy kept)
  VerificationError      any failure while verifying a proof  (converted to Failed)
"""

from __future__ import annotations

from typing import Optional


class GeoProofError(RuntimeError):
    """Base class for all pipeline errors."""


class FormatError(GeoProofError, ValueError):
    def __init__(self, message: str, text: str = ""):
        super().__init__(message)
        self.text = text


class SetupMissingError(GeoProofError):
    def __init__(self, ptau_path: str):
        super().__init__(f"Trusted setup parameter file not found: {ptau_path}")
        self.ptau_path = ptau_path


class ProofGenerationError(GeoProofError):
    def __init__(
        self,
        message:    str,
        circuit_id: str = "",
        stage:      str = "",
        returncode: Optional[int] = None,
        stderr:     str = "",
    ):
        super().__init__(message)
        self.circuit_id = circuit_id
        self.stage      = stage
        self.returncode = returncode
        self.stderr     = stderr


class LedgerTransactionError(GeoProofError):
    def __init__(self, message: str, tx_hash: str = ""):
        super().__init__(message)
        self.tx_hash = tx_hash


class DeploymentError(GeoProofError):
    def __init__(self, message: str, contribution_id: Optional[int] = None):
        super().__init__(message)
        self.contribution_id = contribution_id


class LinkError(GeoProofError):
    def __init__(
        self,
        message:          str,
        contribution_id:  Optional[int] = None,
        verifier_address: str = "",
    ):
        super().__init__(message)
        self.contribution_id  = contribution_id
        self.verifier_address = verifier_address


class VerificationError(GeoProofError):
    def __init__(self, message: str, contribution_id: Optional[int] = None):
        super().__init__(message)
        self.contribution_id = contribution_id


class ContentStoreError(GeoProofError):
    def __init__(self, message: str, cid: str = ""):
        super().__init__(message)
        self.cid = cid
