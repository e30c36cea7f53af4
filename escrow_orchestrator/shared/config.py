#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Connection configuration for the external collaborators: the DexScreener
price feed, the Solana JSON-RPC endpoint and the persistence store.
"""

from dataclasses import dataclass
from typing import Optional


class ConfigError(Exception):
    """Configuration-related errors"""
    pass


@dataclass
class FeedConnConfig:
    """Price feed (DexScreener) connection configuration"""
    base_url: str = "https://api.dexscreener.com"
    timeout: int = 10
    retries: int = 2
    backoff_seconds: float = 0.5

    def __post_init__(self):
        """Validate connection parameters"""
        if not self.base_url or not str(self.base_url).strip():
            raise ConfigError("feed base_url cannot be empty")
        if self.timeout <= 0:
            raise ConfigError("feed timeout must be positive")
        if self.retries < 0:
            raise ConfigError("feed retries cannot be negative")
        if self.backoff_seconds < 0:
            raise ConfigError("feed backoff_seconds cannot be negative")
        self.base_url = str(self.base_url).rstrip("/")


@dataclass
class RpcConnConfig:
    """Solana JSON-RPC connection configuration"""
    url: str = "https://api.mainnet-beta.solana.com"
    timeout: int = 15
    retries: int = 2
    backoff_seconds: float = 0.5
    commitment: str = "confirmed"

    def __post_init__(self):
        """Validate connection parameters"""
        if not self.url or not str(self.url).strip():
            raise ConfigError("rpc url cannot be empty")
        if not str(self.url).startswith(("http://", "https://")):
            raise ConfigError("rpc url must be http(s)")
        if self.timeout <= 0:
            raise ConfigError("rpc timeout must be positive")
        if self.retries < 0:
            raise ConfigError("rpc retries cannot be negative")
        if self.commitment not in ("processed", "confirmed", "finalized"):
            raise ConfigError("rpc commitment must be processed, confirmed or finalized")


@dataclass
class StoreConfig:
    """Persistence backend configuration"""
    backend: str = "sqlite"  # "sqlite" | "memory"
    path: Optional[str] = "data/escrow.db"

    def __post_init__(self):
        """Validate store parameters"""
        self.backend = str(self.backend or "sqlite").strip().lower()
        if self.backend not in ("sqlite", "memory"):
            raise ConfigError("store backend must be 'sqlite' or 'memory'")
        if self.backend == "sqlite" and not (self.path and str(self.path).strip()):
            raise ConfigError("store path is required for the sqlite backend")
