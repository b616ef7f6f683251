"""
backend/config.py

Application configuration via Pydantic Settings.
All values can be overridden with environment variables or a .env file.

Quick start — create a .env file in your project root:
    NODE_ID=tor-sentinel-1
    FEDERATION_ENABLED=true
    FEDERATION_ENDPOINTS=https://peer-a.example:8000,https://peer-b.example:8000
    FEDERATION_PRIVATE_KEY=keys/node.pem      # PEM text or a path to a PEM file
    FEDERATION_SHARED_KEY=<64 hex chars>
    FEDERATION_PEER_KEYS={"tor-sentinel-2": "keys/peer2.pub.pem"}
"""

from __future__ import annotations

import json
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Identity
    NODE_ID: str = "tor-sentinel-1"

    # Correlation
    CORRELATION_WINDOW_MS: int = 300_000
    MAX_BUFFER_SIZE: int = 10_000
    SWEEP_INTERVAL_SECONDS: float = 60.0
    RULES_FILE: str | None = None

    # Only used by callers filtering results — the detector never reads it
    MIN_CONFIDENCE_THRESHOLD: float = 0.7

    # Threat classifier
    CONNECTION_RATE_THRESHOLD: int = 100          # connections per minute
    DATA_EXFIL_THRESHOLD: int = 100_000_000       # bytes
    GEO_ANOMALY_THRESHOLD: float = 0.1
    GEO_BASELINE_TTL_SECONDS: int = 3_600

    # Federation
    FEDERATION_ENABLED: bool = False
    FEDERATION_ENDPOINTS: Annotated[list[str], NoDecode] = []
    FEDERATION_SIGNING_ALGORITHM: str = "ed25519"   # ed25519 | rsa | hmac
    FEDERATION_PRIVATE_KEY: str | None = None
    FEDERATION_PUBLIC_KEY: str | None = None
    FEDERATION_SHARED_KEY: str | None = None        # hex, 32 bytes
    FEDERATION_PEER_KEYS: dict[str, str] = {}       # node_id → public key PEM
    FEDERATION_API_KEY: str | None = None
    FEDERATION_TIMEOUT_SECONDS: float = 5.0
    FEDERATION_SUMMARY_CAP: int = 3

    # Queues
    INGEST_QUEUE_SIZE: int = 10_000

    # Storage
    DB_PATH: str = "data/correlations.db"
    CORRELATION_TTL_SECONDS: int = 86_400

    # API (federation receiver + subscriber WebSocket)
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"

    @field_validator("FEDERATION_ENDPOINTS", mode="before")
    @classmethod
    def parse_endpoints(cls, v):
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                return json.loads(v)
            return [url.strip().rstrip("/") for url in v.split(",") if url.strip()]
        return v

    @field_validator("FEDERATION_PEER_KEYS", mode="before")
    @classmethod
    def parse_peer_keys(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return json.loads(v) if v else {}
        return v

    @field_validator("FEDERATION_SIGNING_ALGORITHM")
    @classmethod
    def check_algorithm(cls, v: str) -> str:
        v = v.lower()
        if v not in ("ed25519", "rsa", "hmac"):
            raise ValueError(f"unsupported signing algorithm {v!r}")
        return v


settings = Settings()
