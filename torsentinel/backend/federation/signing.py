"""
federation/signing.py

Message signing for federated correlations.

Three interchangeable schemes, all producing hex-encoded signatures:

    ed25519  — Ed25519 keypair (default)
    rsa      — RSA PKCS#1 v1.5 over SHA-256, compatible with existing peers
    hmac     — HMAC-SHA256 over a pre-shared secret

Key material may be given inline as PEM text or as a path to a PEM file.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from pathlib import Path
from typing import Protocol

from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

logger = logging.getLogger(__name__)

ALGORITHMS = ("ed25519", "rsa", "hmac")


class Signer(Protocol):
    algorithm: str

    def sign(self, data: bytes) -> str: ...


class Verifier(Protocol):
    algorithm: str

    def verify(self, data: bytes, signature: str) -> bool: ...


# ---------------------------------------------------------------------------
# Key loading
# ---------------------------------------------------------------------------

def read_key_material(value: str | bytes) -> bytes:
    """Return PEM bytes from inline PEM text or a path to a PEM file."""
    if isinstance(value, bytes):
        return value
    text = value.strip()
    if text.startswith("-----BEGIN"):
        # Env files often carry PEM with literal "\n" sequences
        return text.replace("\\n", "\n").encode()
    path = Path(text).expanduser()
    if not path.is_file():
        raise ValueError(f"key is neither PEM text nor a readable file: {text[:40]!r}")
    return path.read_bytes()


def load_private_key(value: str | bytes, password: bytes | None = None):
    return serialization.load_pem_private_key(read_key_material(value), password=password)


def load_public_key(value: str | bytes):
    return serialization.load_pem_public_key(read_key_material(value))


def read_secret(value: str | bytes) -> bytes:
    """HMAC secrets are hex when they look like hex, otherwise raw UTF-8."""
    if isinstance(value, bytes):
        return value
    try:
        return bytes.fromhex(value)
    except ValueError:
        return value.encode()


# ---------------------------------------------------------------------------
# Ed25519
# ---------------------------------------------------------------------------

class Ed25519Signer:
    algorithm = "ed25519"

    def __init__(self, private_key: ed25519.Ed25519PrivateKey) -> None:
        if not isinstance(private_key, ed25519.Ed25519PrivateKey):
            raise ValueError("ed25519 signing requires an Ed25519 private key")
        self._key = private_key

    @classmethod
    def generate(cls) -> "Ed25519Signer":
        return cls(ed25519.Ed25519PrivateKey.generate())

    def public_key(self) -> ed25519.Ed25519PublicKey:
        return self._key.public_key()

    def sign(self, data: bytes) -> str:
        return self._key.sign(data).hex()


class Ed25519Verifier:
    algorithm = "ed25519"

    def __init__(self, public_key: ed25519.Ed25519PublicKey) -> None:
        if not isinstance(public_key, ed25519.Ed25519PublicKey):
            raise ValueError("ed25519 verification requires an Ed25519 public key")
        self._key = public_key

    def verify(self, data: bytes, signature: str) -> bool:
        try:
            self._key.verify(bytes.fromhex(signature), data)
        except (ValueError, _CryptoInvalidSignature):
            return False
        return True


# ---------------------------------------------------------------------------
# RSA (PKCS#1 v1.5, SHA-256)
# ---------------------------------------------------------------------------

class RsaSigner:
    algorithm = "rsa"

    def __init__(self, private_key: rsa.RSAPrivateKey) -> None:
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError("rsa signing requires an RSA private key")
        self._key = private_key

    def public_key(self) -> rsa.RSAPublicKey:
        return self._key.public_key()

    def sign(self, data: bytes) -> str:
        return self._key.sign(data, padding.PKCS1v15(), hashes.SHA256()).hex()


class RsaVerifier:
    algorithm = "rsa"

    def __init__(self, public_key: rsa.RSAPublicKey) -> None:
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ValueError("rsa verification requires an RSA public key")
        self._key = public_key

    def verify(self, data: bytes, signature: str) -> bool:
        try:
            self._key.verify(bytes.fromhex(signature), data, padding.PKCS1v15(), hashes.SHA256())
        except (ValueError, _CryptoInvalidSignature):
            return False
        return True


# ---------------------------------------------------------------------------
# HMAC-SHA256 (symmetric: one object signs and verifies)
# ---------------------------------------------------------------------------

class HmacSigner:
    algorithm = "hmac"

    def __init__(self, secret: bytes) -> None:
        if not secret:
            raise ValueError("hmac signing requires a non-empty secret")
        self._secret = secret

    def sign(self, data: bytes) -> str:
        return hmac.new(self._secret, data, hashlib.sha256).hexdigest()

    def verify(self, data: bytes, signature: str) -> bool:
        expected = self.sign(data).encode("ascii")
        return hmac.compare_digest(expected, signature.lower().encode("utf-8", "replace"))


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_signer(algorithm: str, key: str | bytes) -> Signer:
    """Build a Signer from a private key (ed25519/rsa) or a secret (hmac)."""
    algorithm = algorithm.lower()
    if algorithm == "hmac":
        return HmacSigner(read_secret(key))
    private_key = load_private_key(key)
    if algorithm == "ed25519":
        return Ed25519Signer(private_key)
    if algorithm == "rsa":
        return RsaSigner(private_key)
    raise ValueError(f"unsupported signing algorithm {algorithm!r}")


def make_verifier(algorithm: str, key: str | bytes) -> Verifier:
    """Build a Verifier from a public key (ed25519/rsa) or a secret (hmac)."""
    algorithm = algorithm.lower()
    if algorithm == "hmac":
        return HmacSigner(read_secret(key))
    public_key = load_public_key(key)
    if algorithm == "ed25519":
        return Ed25519Verifier(public_key)
    if algorithm == "rsa":
        return RsaVerifier(public_key)
    raise ValueError(f"unsupported signing algorithm {algorithm!r}")


def public_pem(key) -> str:
    """PEM text for a public key object; used when publishing our own key."""
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
