"""
GeoProof Oracle — Encrypted Coordinate Wire Format
===================================================
The participant's true coordinate is stored on-chain only as ciphertext.
The ledger contract keeps a single bytes field with this exact layout:

    iv (16) || ephemPublicKey (65, uncompressed) || ciphertext (n) || mac (32)

hex-encoded with a "0x" prefix. Encryption is ECIES over secp256k1:
    shared   = ECDH(ephemeral, recipient).x
    keys     = SHA-512(shared) → enc_key = [:32], mac_key = [32:]
    body     = AES-256-CBC(enc_key, iv, PKCS7(plaintext))
    mac      = HMAC-SHA256(mac_key, iv || ephemPublicKey || body)
"""

from __future__ import annotations

import hashlib
import hmac
import os
from dataclasses import dataclass

from cryptography.hazmat.primitives import padding, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from engine.errors import FormatError

IV_LENGTH          = 16
EPHEM_PUBKEY_LENGTH = 65
MAC_LENGTH         = 32


@dataclass(frozen=True)
class EncryptedCoordinates:
    iv:               bytes
    ephem_public_key: bytes
    ciphertext:       bytes
    mac:              bytes

    def to_hex(self) -> str:
        return "0x" + (self.iv + self.ephem_public_key + self.ciphertext + self.mac).hex()

    @classmethod
    def from_hex(cls, data: str) -> "EncryptedCoordinates":
        try:
            raw = bytes.fromhex(data.removeprefix("0x"))
        except ValueError as e:
            raise FormatError(f"Encrypted coordinate blob is not hex: {e}", text=data) from e
        if len(raw) < IV_LENGTH + EPHEM_PUBKEY_LENGTH + MAC_LENGTH:
            raise FormatError(f"Encrypted coordinate blob too short: {len(raw)} bytes", text=data)
        return cls(
            iv               = raw[:IV_LENGTH],
            ephem_public_key = raw[IV_LENGTH:IV_LENGTH + EPHEM_PUBKEY_LENGTH],
            ciphertext       = raw[IV_LENGTH + EPHEM_PUBKEY_LENGTH:len(raw) - MAC_LENGTH],
            mac              = raw[len(raw) - MAC_LENGTH:],
        )


def _load_public_key(public_key: bytes) -> ec.EllipticCurvePublicKey:
    # Ethereum tooling often hands out the 64-byte key without the 0x04 prefix.
    if len(public_key) == 64:
        public_key = b"\x04" + public_key
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
    except ValueError as e:
        raise FormatError(f"Invalid secp256k1 public key: {e}", text=public_key.hex()) from e


def _load_private_key(private_key_hex: str) -> ec.EllipticCurvePrivateKey:
    try:
        key_bytes = bytes.fromhex(private_key_hex.strip().removeprefix("0x"))
        return ec.derive_private_key(int.from_bytes(key_bytes, "big"), ec.SECP256K1())
    except ValueError as e:
        raise FormatError(f"Invalid secp256k1 private key: {e}") from e


def _derive_keys(private_key: ec.EllipticCurvePrivateKey, peer: ec.EllipticCurvePublicKey) -> tuple[bytes, bytes]:
    shared = private_key.exchange(ec.ECDH(), peer)
    digest = hashlib.sha512(shared).digest()
    return digest[:32], digest[32:]


def public_key_for(private_key_hex: str) -> bytes:
    """Uncompressed (65-byte) public key for a hex private key."""
    return _load_private_key(private_key_hex).public_key().public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )


def encrypt(recipient_public_key: bytes, plaintext: str) -> EncryptedCoordinates:
    ephemeral = ec.generate_private_key(ec.SECP256K1())
    ephem_pub = ephemeral.public_key().public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )
    enc_key, mac_key = _derive_keys(ephemeral, _load_public_key(recipient_public_key))

    iv       = os.urandom(IV_LENGTH)
    padder   = padding.PKCS7(128).padder()
    padded   = padder.update(plaintext.encode()) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    body     = encryptor.update(padded) + encryptor.finalize()

    mac = hmac.new(mac_key, iv + ephem_pub + body, hashlib.sha256).digest()
    return EncryptedCoordinates(iv=iv, ephem_public_key=ephem_pub, ciphertext=body, mac=mac)


def decrypt(private_key_hex: str, encrypted: EncryptedCoordinates) -> str:
    enc_key, mac_key = _derive_keys(
        _load_private_key(private_key_hex),
        _load_public_key(encrypted.ephem_public_key),
    )
    expected = hmac.new(
        mac_key,
        encrypted.iv + encrypted.ephem_public_key + encrypted.ciphertext,
        hashlib.sha256,
    ).digest()
    if not hmac.compare_digest(expected, encrypted.mac):
        raise FormatError("Encrypted coordinate MAC mismatch")

    decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(encrypted.iv)).decryptor()
    unpadder  = padding.PKCS7(128).unpadder()
    try:
        padded = decryptor.update(encrypted.ciphertext) + decryptor.finalize()
        return (unpadder.update(padded) + unpadder.finalize()).decode()
    except ValueError as e:
        raise FormatError(f"Encrypted coordinate payload is corrupt: {e}") from e
