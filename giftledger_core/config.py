"""
TOML-based configuration for GiftLedger servers.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from giftledger_core.config import load_config
    cfg = load_config("giftledger.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass
class LedgerConfig:
    """Gift ledger and custody settings."""
    currency: str = "GFT"
    # Mixed into every custodial account address derivation.
    seed_namespace: str = "giftledger::escrow"
    # Run the InvariantChecker around every entry operation.
    check_invariants: bool = True


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # required on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # per-IP requests per minute (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 1_048_576


@dataclass
class StorageConfig:
    """SQLite persistence settings."""
    enabled: bool = False
    path: str = "data/giftledger.db"
    # Encrypts escrow capability secrets at rest.
    passphrase: str = ""


@dataclass
class GenesisConfig:
    """
    Dev / test funding.

    ``accounts`` maps address → starting balance, credited once when the
    server starts with an empty store.
    """
    accounts: dict[str, int] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class GiftLedgerConfig:
    """Top-level configuration container."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    genesis: GenesisConfig = field(default_factory=GenesisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> GiftLedgerConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        GIFTLEDGER_HOST             -> api.host
        GIFTLEDGER_PORT             -> api.port
        GIFTLEDGER_API_KEY          -> api.api_key
        GIFTLEDGER_CORS_ORIGINS     -> api.cors_origins (comma-separated)
        GIFTLEDGER_CURRENCY         -> ledger.currency
        GIFTLEDGER_CHECK_INVARIANTS -> ledger.check_invariants
        GIFTLEDGER_DB_PATH          -> storage.path (enables storage)
        GIFTLEDGER_DB_PASSPHRASE    -> storage.passphrase
        GIFTLEDGER_LOG_LEVEL        -> logging.level
        GIFTLEDGER_LOG_FMT          -> logging.format
    """
    cfg = GiftLedgerConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("ledger", cfg.ledger),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("genesis", cfg.genesis),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("GIFTLEDGER_HOST"):
        cfg.api.host = v
    if v := os.environ.get("GIFTLEDGER_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("GIFTLEDGER_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("GIFTLEDGER_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("GIFTLEDGER_CURRENCY"):
        cfg.ledger.currency = v
    if v := os.environ.get("GIFTLEDGER_CHECK_INVARIANTS"):
        cfg.ledger.check_invariants = _env_bool(v)
    if v := os.environ.get("GIFTLEDGER_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("GIFTLEDGER_DB_PASSPHRASE"):
        cfg.storage.passphrase = v
    if v := os.environ.get("GIFTLEDGER_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("GIFTLEDGER_LOG_FMT"):
        cfg.logging.format = v

    return cfg
