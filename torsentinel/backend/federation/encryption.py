"""
federation/encryption.py

AES-256-GCM envelope for federated messages.

Envelope layout (all binary fields hex-encoded):

    {
      "encryptedData": "<ciphertext>",
      "iv":            "<16-byte nonce>",
      "authTag":       "<16-byte GCM tag>",
      "algorithm":     "aes-256-gcm"
    }

The pre-shared key is 32 bytes, configured as 64 hex characters.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import InvalidSignature, MalformedMessage

ALGORITHM = "aes-256-gcm"
KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16

ENVELOPE_FIELDS = ("encryptedData", "iv", "authTag")


def parse_key(value: str | bytes) -> bytes:
    key = value if isinstance(value, bytes) else bytes.fromhex(value.strip())
    if len(key) != KEY_BYTES:
        raise ValueError(f"shared key must be {KEY_BYTES} bytes ({KEY_BYTES * 2} hex chars)")
    return key


def is_envelope(payload: object) -> bool:
    return isinstance(payload, dict) and "encryptedData" in payload


def encrypt(plaintext: str | bytes, key: bytes) -> dict[str, str]:
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    iv = os.urandom(IV_BYTES)
    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return {
        "encryptedData": sealed[:-TAG_BYTES].hex(),
        "iv": iv.hex(),
        "authTag": sealed[-TAG_BYTES:].hex(),
        "algorithm": ALGORITHM,
    }


def decrypt(envelope: dict, key: bytes) -> bytes:
    """
    Open an envelope.

    Raises:
        MalformedMessage:  fields missing, not hex, or an unknown algorithm
        InvalidSignature:  the GCM tag does not authenticate (wrong key or tampering)
    """
    missing = [f for f in ENVELOPE_FIELDS if not isinstance(envelope.get(f), str)]
    if missing:
        raise MalformedMessage(f"encrypted envelope missing {', '.join(missing)}")
    algorithm = envelope.get("algorithm", ALGORITHM)
    if algorithm != ALGORITHM:
        raise MalformedMessage(f"unsupported envelope algorithm {algorithm!r}")

    try:
        ciphertext = bytes.fromhex(envelope["encryptedData"])
        iv = bytes.fromhex(envelope["iv"])
        tag = bytes.fromhex(envelope["authTag"])
    except ValueError as exc:
        raise MalformedMessage(f"envelope field is not hex: {exc}") from exc

    if not iv or len(tag) != TAG_BYTES:
        raise MalformedMessage("envelope iv/authTag has the wrong length")

    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise InvalidSignature("encrypted envelope failed authentication") from exc
