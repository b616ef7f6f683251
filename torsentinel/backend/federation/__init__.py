"""
federation/__init__.py

Public API for peer-to-peer correlation sharing.
"""

from .gateway import FederationGateway, to_correlation
from .keys import KeyDirectory
from .messages import CorrelationSummary, FederatedMessage, parse_message
from .signing import (
    Ed25519Signer,
    Ed25519Verifier,
    HmacSigner,
    RsaSigner,
    RsaVerifier,
    Signer,
    Verifier,
    make_signer,
    make_verifier,
)

__all__ = [
    "CorrelationSummary",
    "Ed25519Signer",
    "Ed25519Verifier",
    "FederatedMessage",
    "FederationGateway",
    "HmacSigner",
    "KeyDirectory",
    "RsaSigner",
    "RsaVerifier",
    "Signer",
    "Verifier",
    "make_signer",
    "make_verifier",
    "parse_message",
    "to_correlation",
]
