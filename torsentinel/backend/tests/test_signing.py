"""
tests/test_signing.py

Tests for federation/signing.py and federation/keys.py.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from torsentinel.backend.errors import InvalidSignature
from torsentinel.backend.federation.keys import ANY_PEER, KeyDirectory
from torsentinel.backend.federation.signing import (
    Ed25519Signer,
    Ed25519Verifier,
    HmacSigner,
    RsaSigner,
    RsaVerifier,
    make_signer,
    make_verifier,
    public_pem,
    read_key_material,
    read_secret,
)


DATA = b'{"source":"node-a","type":"correlation"}'


def private_pem(key) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture(scope="module")
def ed_key():
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


# ---------------------------------------------------------------------------
# Signers and verifiers
# ---------------------------------------------------------------------------

class TestEd25519:

    def test_sign_and_verify(self, ed_key):
        signature = Ed25519Signer(ed_key).sign(DATA)
        verifier = Ed25519Verifier(ed_key.public_key())
        assert verifier.verify(DATA, signature)

    def test_tampered_data_rejected(self, ed_key):
        signature = Ed25519Signer(ed_key).sign(DATA)
        verifier = Ed25519Verifier(ed_key.public_key())
        assert not verifier.verify(DATA + b" ", signature)

    def test_garbage_signature_rejected(self, ed_key):
        verifier = Ed25519Verifier(ed_key.public_key())
        assert not verifier.verify(DATA, "not-hex")
        assert not verifier.verify(DATA, "00" * 64)

    def test_other_key_rejected(self, ed_key):
        signature = Ed25519Signer.generate().sign(DATA)
        assert not Ed25519Verifier(ed_key.public_key()).verify(DATA, signature)

    def test_wrong_key_type(self, rsa_key):
        with pytest.raises(ValueError):
            Ed25519Signer(rsa_key)


class TestRsa:

    def test_sign_and_verify(self, rsa_key):
        signature = RsaSigner(rsa_key).sign(DATA)
        verifier = RsaVerifier(rsa_key.public_key())
        assert verifier.verify(DATA, signature)
        assert not verifier.verify(b"other", signature)


class TestHmac:

    def test_symmetric(self):
        signer = HmacSigner(b"secret")
        signature = signer.sign(DATA)
        assert signer.verify(DATA, signature)
        assert signer.verify(DATA, signature.upper())
        assert not HmacSigner(b"other").verify(DATA, signature)

    def test_non_ascii_signature_rejected(self):
        signer = HmacSigner(b"secret")
        assert not signer.verify(DATA, "\u00e9" * 64)
        assert not signer.verify(DATA, "")

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            HmacSigner(b"")

    def test_read_secret_hex_or_text(self):
        assert read_secret("abcd") == b"\xab\xcd"
        assert read_secret("not hex!") == b"not hex!"


# ---------------------------------------------------------------------------
# Key loading and factories
# ---------------------------------------------------------------------------

class TestKeyLoading:

    def test_inline_pem_with_escaped_newlines(self, ed_key):
        pem = private_pem(ed_key).replace("\n", "\\n")
        signer = make_signer("ed25519", pem)
        verifier = make_verifier("ed25519", public_pem(ed_key.public_key()))
        assert verifier.verify(DATA, signer.sign(DATA))

    def test_pem_from_file(self, ed_key, tmp_path):
        path = tmp_path / "node.pem"
        path.write_text(private_pem(ed_key))
        assert read_key_material(str(path)).startswith(b"-----BEGIN")
        assert isinstance(make_signer("ed25519", str(path)), Ed25519Signer)

    def test_missing_file_rejected(self):
        with pytest.raises(ValueError, match="neither PEM"):
            read_key_material("/nonexistent/key.pem")

    def test_rsa_factory(self, rsa_key):
        signer = make_signer("RSA", private_pem(rsa_key))
        verifier = make_verifier("rsa", public_pem(rsa_key.public_key()))
        assert verifier.verify(DATA, signer.sign(DATA))

    def test_unsupported_algorithm(self, ed_key):
        with pytest.raises(ValueError, match="unsupported"):
            make_signer("dsa", private_pem(ed_key))


# ---------------------------------------------------------------------------
# KeyDirectory
# ---------------------------------------------------------------------------

def fed_settings(**overrides) -> SimpleNamespace:
    values = dict(
        NODE_ID="node-a",
        FEDERATION_SIGNING_ALGORITHM="ed25519",
        FEDERATION_PRIVATE_KEY=None,
        FEDERATION_PUBLIC_KEY=None,
        FEDERATION_SHARED_KEY=None,
        FEDERATION_PEER_KEYS={},
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestKeyDirectory:

    def test_unknown_peer_rejected(self):
        directory = KeyDirectory("node-a")
        with pytest.raises(InvalidSignature, match="unknown peer"):
            directory.verifier_for("node-x")

    def test_per_peer_keys(self, ed_key):
        peer_pub = public_pem(ed_key.public_key())
        directory = KeyDirectory.from_settings(fed_settings(
            FEDERATION_PRIVATE_KEY=private_pem(ed25519.Ed25519PrivateKey.generate()),
            FEDERATION_PEER_KEYS={"node-b": peer_pub},
        ))
        assert directory.can_sign
        assert directory.peers == ["node-b"]
        assert directory.verifier_for("node-b").verify(DATA, Ed25519Signer(ed_key).sign(DATA))
        with pytest.raises(InvalidSignature):
            directory.verifier_for("node-c")

    def test_public_key_trusts_any_peer(self, ed_key):
        directory = KeyDirectory.from_settings(fed_settings(
            FEDERATION_PUBLIC_KEY=public_pem(ed_key.public_key()),
        ))
        assert directory.peers == [ANY_PEER]
        assert not directory.can_sign
        assert directory.verifier_for("whoever").verify(DATA, Ed25519Signer(ed_key).sign(DATA))

    def test_hmac_mode_uses_shared_key(self):
        shared = "ab" * 32
        directory = KeyDirectory.from_settings(fed_settings(
            FEDERATION_SIGNING_ALGORITHM="hmac",
            FEDERATION_SHARED_KEY=shared,
        ))
        signature = directory.signer.sign(DATA)
        assert directory.verifier_for("node-b").verify(DATA, signature)
