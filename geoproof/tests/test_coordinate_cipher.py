"""
GeoProof Oracle — Encrypted Coordinate Wire Format Tests
"""

import hashlib
import hmac
import sys
import os

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.coordinate_cipher import (
    EPHEM_PUBKEY_LENGTH,
    IV_LENGTH,
    MAC_LENGTH,
    EncryptedCoordinates,
    _derive_keys,
    _load_private_key,
    _load_public_key,
    decrypt,
    encrypt,
    public_key_for,
)
from engine.errors import FormatError

PRIVATE_KEY = "0x" + "4c" * 32
PLAINTEXT   = '23° 11\' 6.0" S, 18° 22\' 36.0" E'


@pytest.fixture(scope="module")
def public_key():
    return public_key_for(PRIVATE_KEY)


class TestWireFormat:

    def test_public_key_uncompressed(self, public_key):
        assert len(public_key) == 65
        assert public_key[0] == 0x04

    def test_layout(self, public_key):
        blob = encrypt(public_key, PLAINTEXT)
        assert len(blob.iv) == IV_LENGTH
        assert len(blob.ephem_public_key) == EPHEM_PUBKEY_LENGTH
        assert len(blob.mac) == MAC_LENGTH
        assert len(blob.ciphertext) % 16 == 0

        wire = blob.to_hex()
        assert wire.startswith("0x")
        raw = bytes.fromhex(wire[2:])
        assert raw[:IV_LENGTH] == blob.iv
        assert raw[-MAC_LENGTH:] == blob.mac
        assert EncryptedCoordinates.from_hex(wire) == blob

    def test_too_short_blob_rejected(self):
        with pytest.raises(FormatError):
            EncryptedCoordinates.from_hex("0x" + "00" * 100)

    def test_non_hex_blob_rejected(self):
        with pytest.raises(FormatError) as exc:
            EncryptedCoordinates.from_hex("0x" + "zz" * 120)
        assert exc.value.text.startswith("0xzz")


class TestEncryptDecrypt:

    def test_recipient_can_decrypt(self, public_key):
        blob = EncryptedCoordinates.from_hex(encrypt(public_key, PLAINTEXT).to_hex())
        assert decrypt(PRIVATE_KEY, blob) == PLAINTEXT

    def test_64_byte_public_key_accepted(self, public_key):
        blob = encrypt(public_key[1:], PLAINTEXT)
        assert decrypt(PRIVATE_KEY, blob) == PLAINTEXT

    def test_fresh_ephemeral_key_each_time(self, public_key):
        first  = encrypt(public_key, PLAINTEXT)
        second = encrypt(public_key, PLAINTEXT)
        assert first.ephem_public_key != second.ephem_public_key
        assert first.ciphertext != second.ciphertext

    def test_tampered_ciphertext_rejected(self, public_key):
        blob = encrypt(public_key, PLAINTEXT)
        flipped = bytes([blob.ciphertext[0] ^ 0x01]) + blob.ciphertext[1:]
        tampered = EncryptedCoordinates(blob.iv, blob.ephem_public_key, flipped, blob.mac)
        with pytest.raises(FormatError, match="MAC"):
            decrypt(PRIVATE_KEY, tampered)

    def test_wrong_key_rejected(self, public_key):
        blob = encrypt(public_key, PLAINTEXT)
        with pytest.raises(FormatError):
            decrypt("0x" + "5d" * 32, blob)


# ── Corrupt Payloads ──────────────────────────────────────────────────────────

def _reseal(blob, body):
    """Swap in a new ciphertext body and recompute a valid MAC for it."""
    enc_key, mac_key = _derive_keys(_load_private_key(PRIVATE_KEY), _load_public_key(blob.ephem_public_key))
    mac = hmac.new(mac_key, blob.iv + blob.ephem_public_key + body, hashlib.sha256).digest()
    return EncryptedCoordinates(blob.iv, blob.ephem_public_key, body, mac), enc_key


class TestCorruptPayloads:

    def test_invalid_ephemeral_point(self):
        blob = EncryptedCoordinates.from_hex("0x" + "00" * 16 + "04" + "ff" * 64 + "00" * 48)
        with pytest.raises(FormatError, match="public key"):
            decrypt(PRIVATE_KEY, blob)

    def test_invalid_recipient_point(self):
        with pytest.raises(FormatError):
            encrypt(b"\x04" + b"\xff" * 64, PLAINTEXT)

    def test_non_hex_private_key(self, public_key):
        blob = encrypt(public_key, PLAINTEXT)
        with pytest.raises(FormatError, match="private key"):
            decrypt("0xnot-a-key", blob)

    def test_body_not_block_aligned(self, public_key):
        blob, _ = _reseal(encrypt(public_key, PLAINTEXT), b"\x00" * 15)
        with pytest.raises(FormatError, match="corrupt"):
            decrypt(PRIVATE_KEY, blob)

    def test_plaintext_not_utf8(self, public_key):
        blob = encrypt(public_key, PLAINTEXT)
        _, enc_key = _reseal(blob, blob.ciphertext)
        padder = padding.PKCS7(128).padder()
        padded = padder.update(b"\xff\xfe\xfd") + padder.finalize()
        encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(blob.iv)).encryptor()
        forged, _ = _reseal(blob, encryptor.update(padded) + encryptor.finalize())
        with pytest.raises(FormatError, match="corrupt"):
            decrypt(PRIVATE_KEY, forged)
