#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
DexScreener price feed client.

Fetches all trading pairs for a token mint and parses them into Pair records.
Implements retry with exponential backoff; raises FeedError when the feed is
unreachable or returns a malformed payload.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import FeedConnConfig
from .models import Pair
from .utils import optional_float, safe_float


class FeedError(Exception):
    """Price feed unreachable or returned an unusable payload"""
    pass


class PriceFeed:
    def fetch_pairs_for_token(self, token_mint: str) -> List[Pair]:
        raise NotImplementedError


def parse_pair(raw: Dict[str, Any]) -> Optional[Pair]:
    """Convert one DexScreener pair object into a Pair; None when unusable."""
    if not isinstance(raw, dict):
        return None
    pair_address = str(raw.get("pairAddress") or "").strip()
    dex_id = str(raw.get("dexId") or "").strip()
    if not pair_address or not dex_id:
        return None
    liquidity = raw.get("liquidity") or {}
    volume = raw.get("volume") or {}
    return Pair(
        pair_address=pair_address,
        dex_id=dex_id,
        chain_id=str(raw.get("chainId") or "").strip().lower(),
        price_usd=safe_float(raw.get("priceUsd"), 0.0),
        liquidity_usd=safe_float(liquidity.get("usd") if isinstance(liquidity, dict) else None, 0.0),
        volume_h1_usd=safe_float(volume.get("h1") if isinstance(volume, dict) else None, 0.0),
        volume_h24_usd=safe_float(volume.get("h24") if isinstance(volume, dict) else None, 0.0),
        fdv=optional_float(raw.get("fdv")),
        market_cap=optional_float(raw.get("marketCap")),
        url=(str(raw["url"]) if raw.get("url") else None),
    )


class DexScreenerClient(PriceFeed):
    """Client for the public DexScreener token pairs endpoint"""

    def __init__(self, config: FeedConnConfig, session: Optional[requests.Session] = None, sleep: Callable[[float], None] = time.sleep) -> None:
        self.config = config
        self.log = logging.getLogger(__name__)
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "User-Agent": "EscrowOrchestrator/1.0",
        })

    def _get(self, path: str) -> Dict[str, Any]:
        url = f"{self.config.base_url}/{path.lstrip('/')}"
        last_err: Optional[str] = None
        attempts = self.config.retries + 1
        self.log.debug(f"DexScreener GET path={path}")
        for i in range(attempts):
            try:
                r = self._session.get(url, timeout=self.config.timeout)
                if r.status_code == 200:
                    try:
                        data = r.json()
                    except ValueError as e:
                        raise FeedError(f"Invalid JSON from feed: {e}")
                    if not isinstance(data, dict):
                        raise FeedError("Unexpected feed payload shape")
                    return data
                last_err = f"HTTP {r.status_code}: {r.text[:200]}"
                # Client errors will not improve on retry
                if 400 <= r.status_code < 500 and r.status_code != 429:
                    break
            except requests.exceptions.Timeout:
                last_err = f"Request timeout after {self.config.timeout}s"
            except requests.exceptions.RequestException as e:
                last_err = f"Connection error: {e}"
            if i < attempts - 1:
                self._sleep(self.config.backoff_seconds * (2 ** i))
        self.log.warning(f"DexScreener GET FAILED path={path} error={last_err}")
        raise FeedError(f"Price feed request failed: {last_err}")

    def fetch_pairs_for_token(self, token_mint: str) -> List[Pair]:
        mint = str(token_mint or "").strip()
        if not mint:
            raise FeedError("token mint is required")
        data = self._get(f"latest/dex/tokens/{mint}")
        raw_pairs = data.get("pairs") or []
        if not isinstance(raw_pairs, list):
            raise FeedError("Unexpected pairs payload")
        pairs: List[Pair] = []
        for raw in raw_pairs:
            p = parse_pair(raw)
            if p is not None:
                pairs.append(p)
        self.log.info(f"DexScreener: {len(pairs)} pairs for token={mint}")
        return pairs
