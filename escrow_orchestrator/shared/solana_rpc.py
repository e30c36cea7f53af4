#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Solana JSON-RPC chain reader.

Reads mint accounts (supply, decimals, authorities), escrow balances and the
cluster clock. Nothing is cached: supply and authorities can change between
calls and every evaluation must see fresh values.
"""
from __future__ import annotations

import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import RpcConnConfig
from .models import MintInfo

TOKEN_PROGRAMS = {
    "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
    "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb",
}


class ChainReadError(Exception):
    """RPC endpoint unreachable or returned an error"""
    pass


class ChainReader:
    def verify_mint_exists(self, token_mint: str) -> MintInfo:
        raise NotImplementedError

    def get_mint_authority(self, token_mint: str) -> Optional[str]:
        raise NotImplementedError

    def get_balance(self, address: str) -> int:
        raise NotImplementedError

    def get_chain_time(self) -> int:
        raise NotImplementedError


class SolanaRpcClient(ChainReader):
    """Minimal JSON-RPC client over a requests session"""

    def __init__(self, config: RpcConnConfig, session: Optional[requests.Session] = None, sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self.log = logging.getLogger(__name__)
        self._sleep = sleep
        self._clock = clock
        self._ids = itertools.count(1)
        self._session = session or requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "User-Agent": "EscrowOrchestrator/1.0",
        })

    def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        last_err: Optional[str] = None
        attempts = self.config.retries + 1
        for i in range(attempts):
            try:
                r = self._session.post(self.config.url, json=payload, timeout=self.config.timeout)
                if r.status_code == 200:
                    try:
                        body = r.json()
                    except ValueError as e:
                        raise ChainReadError(f"Invalid JSON from RPC: {e}")
                    if isinstance(body, dict) and body.get("error"):
                        err = body["error"]
                        msg = err.get("message") if isinstance(err, dict) else str(err)
                        raise ChainReadError(f"RPC {method} error: {msg}")
                    if not isinstance(body, dict) or "result" not in body:
                        raise ChainReadError(f"RPC {method} returned no result")
                    return body["result"]
                last_err = f"HTTP {r.status_code}: {r.text[:200]}"
            except requests.exceptions.Timeout:
                last_err = f"Request timeout after {self.config.timeout}s"
            except requests.exceptions.RequestException as e:
                last_err = f"Connection error: {e}"
            if i < attempts - 1:
                self._sleep(self.config.backoff_seconds * (2 ** i))
        self.log.warning(f"RPC {method} FAILED error={last_err}")
        raise ChainReadError(f"RPC {method} failed: {last_err}")

    def _parsed_mint(self, token_mint: str) -> Optional[Dict[str, Any]]:
        result = self._call("getAccountInfo", [token_mint, {"encoding": "jsonParsed", "commitment": self.config.commitment}])
        value = (result or {}).get("value") if isinstance(result, dict) else None
        return value

    def verify_mint_exists(self, token_mint: str) -> MintInfo:
        value = self._parsed_mint(token_mint)
        if not value:
            return MintInfo(exists=False, is_mint=False)
        data = value.get("data")
        parsed = data.get("parsed") if isinstance(data, dict) else None
        owner = str(value.get("owner") or "")
        if not isinstance(parsed, dict) or parsed.get("type") != "mint" or owner not in TOKEN_PROGRAMS:
            return MintInfo(exists=True, is_mint=False)
        info = parsed.get("info") or {}
        try:
            supply = int(str(info.get("supply")))
        except (TypeError, ValueError):
            supply = None
        decimals = info.get("decimals")
        return MintInfo(
            exists=True,
            is_mint=True,
            supply=supply,
            decimals=int(decimals) if decimals is not None else None,
            mint_authority=info.get("mintAuthority") or None,
            freeze_authority=info.get("freezeAuthority") or None,
        )

    def get_mint_authority(self, token_mint: str) -> Optional[str]:
        info = self.verify_mint_exists(token_mint)
        if not info.is_mint:
            raise ChainReadError(f"Not a mint account: {token_mint}")
        return info.mint_authority

    def get_balance(self, address: str) -> int:
        result = self._call("getBalance", [address, {"commitment": self.config.commitment}])
        value = result.get("value") if isinstance(result, dict) else result
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            raise ChainReadError(f"Invalid balance for {address}: {value!r}")

    def get_chain_time(self) -> int:
        slot = self._call("getSlot", [{"commitment": self.config.commitment}])
        block_time = self._call("getBlockTime", [slot])
        if block_time is None:
            # Block time can be unavailable for very recent slots
            self.log.warning(f"getBlockTime returned null for slot={slot}; using local clock")
            return int(self._clock())
        return int(block_time)
