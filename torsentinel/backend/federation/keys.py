"""
federation/keys.py

KeyDirectory — who we are, how we sign, and whom we trust.

    local node id + Signer       (outbound)
    peer node id  → Verifier     (inbound)

A message from a node that is not in the directory is rejected with
InvalidSignature, exactly like a message with a bad signature.
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import InvalidSignature
from .signing import Signer, Verifier, make_signer, make_verifier

logger = logging.getLogger(__name__)

# Peer entry used for every node without a key of its own
ANY_PEER = "*"


class KeyDirectory:
    def __init__(
        self,
        node_id: str,
        signer: Signer | None = None,
        peers: dict[str, Verifier] | None = None,
    ) -> None:
        self.node_id = node_id
        self.signer = signer
        self._peers: dict[str, Verifier] = dict(peers or {})

    def add_peer(self, node_id: str, verifier: Verifier) -> None:
        self._peers[node_id] = verifier

    def verifier_for(self, node_id: str) -> Verifier:
        verifier = self._peers.get(node_id) or self._peers.get(ANY_PEER)
        if verifier is None:
            raise InvalidSignature(f"unknown peer {node_id!r}")
        return verifier

    @property
    def peers(self) -> list[str]:
        return sorted(self._peers)

    @property
    def can_sign(self) -> bool:
        return self.signer is not None

    @classmethod
    def from_settings(cls, settings: Any) -> "KeyDirectory":
        """
        Build the directory from FEDERATION_* settings.

        ed25519/rsa sign with FEDERATION_PRIVATE_KEY and verify each peer with
        its FEDERATION_PEER_KEYS entry, falling back to FEDERATION_PUBLIC_KEY
        for peers that share one trust key. hmac uses FEDERATION_SHARED_KEY
        unless a peer has its own secret listed.
        """
        algorithm = settings.FEDERATION_SIGNING_ALGORITHM
        signer: Signer | None = None
        peers: dict[str, Verifier] = {}

        if algorithm == "hmac":
            if settings.FEDERATION_SHARED_KEY:
                signer = make_signer("hmac", settings.FEDERATION_SHARED_KEY)
        elif settings.FEDERATION_PRIVATE_KEY:
            signer = make_signer(algorithm, settings.FEDERATION_PRIVATE_KEY)

        for peer_id, key in settings.FEDERATION_PEER_KEYS.items():
            peers[peer_id] = make_verifier(algorithm, key)

        fallback = settings.FEDERATION_SHARED_KEY if algorithm == "hmac" else settings.FEDERATION_PUBLIC_KEY
        if not peers and fallback:
            logger.info("No per-peer keys configured; trusting the shared federation key for all peers")
            peers[ANY_PEER] = make_verifier(algorithm, fallback)

        if signer is None:
            logger.warning("Federation signing key not configured — outbound sharing disabled")

        directory = cls(settings.NODE_ID, signer, peers)
        logger.info(
            "KeyDirectory ready — node=%s algorithm=%s peers=%s",
            directory.node_id,
            algorithm,
            directory.peers,
        )
        return directory
