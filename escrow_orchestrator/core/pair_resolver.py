#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Canonical pair resolution and snapshot ingestion.

A token can trade on many pairs. The first time a qualifying pair is seen it
is pinned as canonical for (token, chain); from then on the pin is sticky so a
noisy feed or a freshly created pool cannot flip the pair that historical
threshold searches run against.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..shared.dexscreener_client import PriceFeed
from ..shared.models import CanonicalPair, Pair, PriceSnapshot
from .store import Store


def pick_best_pair(pairs: Iterable[Pair], chain_id: str, min_liquidity_usd: float) -> Optional[Pair]:
    """Highest-liquidity pair on chain_id whose liquidity meets the floor."""
    chain = str(chain_id or "").strip().lower()
    best: Optional[Pair] = None
    for p in pairs:
        if p.chain_id != chain:
            continue
        if not math.isfinite(p.liquidity_usd) or p.liquidity_usd < min_liquidity_usd:
            continue
        if best is None or p.liquidity_usd > best.liquidity_usd:
            best = p
    return best


class CanonicalPairResolver:
    def __init__(self, store: Store) -> None:
        self.store = store
        self.logger = logging.getLogger(self.__class__.__name__)

    def resolve_pair(self, token_mint: str, chain_id: str, candidates: List[Pair], min_liquidity_usd: float) -> Optional[Pair]:
        """
        Return the pair to observe for this token.

        - pinned pair present in candidates: returned unchanged
        - otherwise: best candidate by liquidity, or None
        The first selection is persisted as the pin; an existing pin is never
        replaced, only its url refreshed.
        """
        chain = str(chain_id or "").strip().lower()
        pinned = self.store.get_canonical_pair(token_mint, chain)
        if pinned is not None:
            for p in candidates:
                if p.pair_address == pinned.pair_address:
                    if p.url and p.url != pinned.url:
                        self.store.upsert_canonical_pair(CanonicalPair(
                            token_mint=token_mint,
                            chain_id=chain,
                            pair_address=pinned.pair_address,
                            dex_id=pinned.dex_id,
                            url=p.url,
                        ))
                    return p

        best = pick_best_pair(candidates, chain, min_liquidity_usd)
        if best is None:
            return None

        if pinned is not None:
            self.logger.warning(
                f"Pinned pair {pinned.pair_address} for token={token_mint} absent from feed; "
                f"observing {best.pair_address} without re-pinning"
            )
            return best

        stored = self.store.upsert_canonical_pair(CanonicalPair(
            token_mint=token_mint,
            chain_id=chain,
            pair_address=best.pair_address,
            dex_id=best.dex_id,
            url=best.url,
        ))
        if stored.pair_address != best.pair_address:
            # A concurrent run pinned a different pair first; its pin wins
            self.logger.info(f"Canonical pair for token={token_mint} already pinned to {stored.pair_address}")
            for p in candidates:
                if p.pair_address == stored.pair_address:
                    return p
        else:
            self.logger.info(f"Pinned canonical pair token={token_mint} chain={chain} pair={best.pair_address} dex={best.dex_id}")
        return best


@dataclass
class IngestResult:
    ok: bool
    token_mint: str
    pair_address: Optional[str] = None
    dex_id: Optional[str] = None
    error: Optional[str] = None


def ingest_latest_snapshot(
    store: Store,
    resolver: CanonicalPairResolver,
    feed: PriceFeed,
    token_mint: str,
    chain_id: str,
    min_liquidity_usd: float,
    now_unix: int,
) -> IngestResult:
    """
    Fetch the live pairs for a token, resolve the pair to observe and append
    one PriceSnapshot for it. FeedError propagates to the caller.
    """
    mint = str(token_mint or "").strip()
    chain = str(chain_id or "").strip().lower()
    pairs = feed.fetch_pairs_for_token(mint)

    best = resolver.resolve_pair(mint, chain, pairs, min_liquidity_usd)
    if best is None:
        return IngestResult(ok=False, token_mint=mint, error="No suitable pair")
    if not best.pair_address or not best.dex_id:
        return IngestResult(ok=False, token_mint=mint, error="Invalid pair")
    if not math.isfinite(best.price_usd) or best.price_usd <= 0:
        return IngestResult(ok=False, token_mint=mint, error="Invalid price")

    store.insert_snapshot(PriceSnapshot(
        token_mint=mint,
        chain_id=chain,
        pair_address=best.pair_address,
        dex_id=best.dex_id,
        fetched_at_unix=int(now_unix),
        price_usd=best.price_usd,
        liquidity_usd=best.liquidity_usd,
        volume_h1_usd=best.volume_h1_usd,
        volume_h24_usd=best.volume_h24_usd,
        fdv_usd=best.fdv,
        market_cap_usd=best.market_cap,
    ))
    return IngestResult(ok=True, token_mint=mint, pair_address=best.pair_address, dex_id=best.dex_id)
