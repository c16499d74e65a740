"""
GeoProof Oracle — Groth16 Calldata Marshalling
===============================================
`snarkjs zkey export soliditycalldata` prints a flat token list:

    ["a0","a1"],[["b00","b01"],["b10","b11"]],["c0","c1"],["s0"]

The verifier contract ABI is fixed to
    verifyProof(uint256[2] a, uint256[2][2] b, uint256[2] c, uint256[1] input)
so exactly nine tokens are accepted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from engine.errors import ProofGenerationError

CALLDATA_TOKENS = 9

_STRIP = re.compile(r'["\[\]\s]')


@dataclass(frozen=True)
class Calldata:
    a:     list[int]
    b:     list[list[int]]
    c:     list[int]
    input: list[int]

    @property
    def public_signal(self) -> int:
        return self.input[0]

    def with_public_input(self, value: int) -> "Calldata":
        """Same proof, checked against a claimed public signal."""
        return Calldata(a=self.a, b=self.b, c=self.c, input=[value])

    def as_args(self) -> tuple:
        return self.a, self.b, self.c, self.input


def convert_calldata(calldata: str) -> Calldata:
    tokens = [t for t in _STRIP.sub("", calldata).split(",") if t]
    if len(tokens) != CALLDATA_TOKENS:
        raise ProofGenerationError(
            f"Expected {CALLDATA_TOKENS} calldata tokens, got {len(tokens)}",
            stage="export_calldata",
        )
    try:
        argv = [int(t, 0) for t in tokens]
    except ValueError as e:
        raise ProofGenerationError(f"Non-integer calldata token: {e}", stage="export_calldata") from e

    return Calldata(
        a     = [argv[0], argv[1]],
        b     = [[argv[2], argv[3]], [argv[4], argv[5]]],
        c     = [argv[6], argv[7]],
        input = [argv[8]],
    )
