#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Threshold evaluation over the price snapshot history.

A market-cap threshold becomes a price floor through the circulating supply
read from chain at evaluation time:

    min_price_usd = threshold_usd / supply_ui

Policies:
- first_sample: the earliest snapshot since `since_unix` meeting the price,
  liquidity and 1h-volume floors
- sustained: the earliest point at which a run of consecutive qualifying
  snapshots (no gap above max_gap_seconds) holds at least min_samples samples
  and spans at least min_minutes_above minutes
"""
from __future__ import annotations

import logging
import math
from typing import List, Optional

import numpy as np

from ..shared.models import PriceSnapshot
from .store import Store


def min_price_for_threshold(threshold_usd: float, supply_ui: float) -> Optional[float]:
    """Price floor implied by a market-cap threshold; None when inputs are unusable."""
    if not (math.isfinite(threshold_usd) and threshold_usd > 0):
        return None
    if not (math.isfinite(supply_ui) and supply_ui > 0):
        return None
    return threshold_usd / supply_ui


class ThresholdEvaluator:
    def __init__(
        self,
        store: Store,
        policy: str = "first_sample",
        min_minutes_above: int = 15,
        min_samples: int = 10,
        max_gap_seconds: int = 120,
    ) -> None:
        if policy not in ("first_sample", "sustained"):
            raise ValueError(f"Unknown confirmation policy: {policy}")
        self.store = store
        self.policy = policy
        self.min_minutes_above = int(min_minutes_above)
        self.min_samples = int(min_samples)
        self.max_gap_seconds = int(max_gap_seconds)
        self.logger = logging.getLogger(self.__class__.__name__)

    def find_first_above(
        self,
        token_mint: str,
        chain_id: str,
        pair_address: str,
        since_unix: int,
        min_price_usd: float,
        min_liquidity_usd: float,
        min_volume_h1_usd: float,
    ) -> Optional[PriceSnapshot]:
        """
        Return the qualifying snapshot, or None when the lookback window holds
        none. None does not distinguish "not yet" from "never".
        """
        if self.policy == "first_sample":
            return self.store.find_first_snapshot_above(
                token_mint, chain_id, pair_address, since_unix,
                min_price_usd, min_liquidity_usd, min_volume_h1_usd,
            )
        snaps = self.store.list_snapshots(token_mint, chain_id, pair_address, since_unix)
        return self._first_sustained(snaps, min_price_usd, min_liquidity_usd, min_volume_h1_usd)

    def _first_sustained(
        self,
        snaps: List[PriceSnapshot],
        min_price_usd: float,
        min_liquidity_usd: float,
        min_volume_h1_usd: float,
    ) -> Optional[PriceSnapshot]:
        if not snaps:
            return None
        ts = np.array([s.fetched_at_unix for s in snaps], dtype=np.int64)
        price = np.array([s.price_usd for s in snaps], dtype=float)
        liq = np.array([s.liquidity_usd for s in snaps], dtype=float)
        vol = np.array([s.volume_h1_usd for s in snaps], dtype=float)

        ok = (price >= min_price_usd) & (liq >= min_liquidity_usd) & (vol >= min_volume_h1_usd)
        if not ok.any():
            return None

        close = np.ones(len(ts), dtype=bool)
        close[1:] = np.diff(ts) <= self.max_gap_seconds
        prev_ok = np.concatenate(([False], ok[:-1]))
        # A run starts at every qualifying sample not continuing a qualifying neighbour
        starts = ok & ~(prev_ok & close)
        run_id = np.cumsum(starts)
        run_id[~ok] = 0

        span_needed = self.min_minutes_above * 60
        for rid in np.unique(run_id[run_id > 0]):
            idx = np.flatnonzero(run_id == rid)
            counts = np.arange(1, len(idx) + 1)
            spans = ts[idx] - ts[idx[0]]
            met = np.flatnonzero((counts >= self.min_samples) & (spans >= span_needed))
            if met.size:
                hit = snaps[int(idx[met[0]])]
                self.logger.debug(
                    f"Sustained run met at ts={hit.fetched_at_unix} samples={int(counts[met[0]])} span={int(spans[met[0]])}s"
                )
                return hit
        return None
