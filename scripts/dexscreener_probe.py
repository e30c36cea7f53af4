#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Quick probe for the DexScreener token pairs endpoint.

Usage:
  python scripts/dexscreener_probe.py --mint <TOKEN_MINT> --chain solana --min-liquidity 50000

Lists every pair the feed reports for the mint and shows which one the
resolver would pin as canonical (highest liquidity on the chain above the
floor).
"""
from __future__ import annotations

import argparse
import logging
import sys

from escrow_orchestrator.core.pair_resolver import pick_best_pair
from escrow_orchestrator.shared.config import FeedConnConfig
from escrow_orchestrator.shared.dexscreener_client import DexScreenerClient, FeedError
from escrow_orchestrator.shared.logging_setup import get_logger
from escrow_orchestrator.shared.utils import is_valid_solana_address


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--mint", required=True)
    parser.add_argument("--chain", default="solana")
    parser.add_argument("--min-liquidity", type=float, default=50_000.0)
    parser.add_argument("--base", default="https://api.dexscreener.com")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    log = get_logger("dexscreener_probe", level=logging.DEBUG if args.verbose else logging.INFO)

    if args.chain == "solana" and not is_valid_solana_address(args.mint):
        log.error(f"Not a valid Solana address: {args.mint}")
        return 2

    client = DexScreenerClient(FeedConnConfig(base_url=args.base))
    try:
        pairs = client.fetch_pairs_for_token(args.mint)
    except FeedError as e:
        log.error(f"FAIL: {e}")
        return 1

    print(f"{len(pairs)} pair(s) for {args.mint}")
    for p in sorted(pairs, key=lambda x: x.liquidity_usd, reverse=True):
        print(
            f"  {p.chain_id:<10} {p.dex_id:<12} {p.pair_address}  price={p.price_usd:.10g} "
            f"liq={p.liquidity_usd:,.0f} vol1h={p.volume_h1_usd:,.0f}"
        )

    best = pick_best_pair(pairs, args.chain, args.min_liquidity)
    if best is None:
        print(f"No pair on {args.chain} with liquidity >= {args.min_liquidity:,.0f}")
        return 1
    print(f"Canonical candidate: {best.pair_address} ({best.dex_id}) {best.url or ''}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
