#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Load commitments from a YAML (or JSON) file into the configured store.

Usage:
  python scripts/seed_commitments.py --config config/orchestrator_config.yaml --file commitments.yaml

File layout:

    commitments:
      - id: c-1
        authority: <wallet>
        escrow_pubkey: <escrow account>
        token_mint: <mint>
        milestones:
          - id: m-1
            auto_kind: market_cap
            market_cap_threshold_usd: 1000000
            unlock_percent: 25

Existing ids are skipped.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import yaml

from escrow_orchestrator.core.settings import SettingsError, load_settings
from escrow_orchestrator.core.store import StoreError, create_store
from escrow_orchestrator.shared.logging_setup import get_logger
from escrow_orchestrator.shared.models import Commitment


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default=None)
    parser.add_argument("--file", required=True)
    args = parser.parse_args()

    log = get_logger("seed_commitments")
    try:
        settings = load_settings(args.config)
    except SettingsError as e:
        log.error(f"{e}")
        return 2

    path = Path(args.file)
    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    items = raw.get("commitments") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        log.error(f"{path} must hold a list of commitments")
        return 2

    store = create_store(settings.store)
    inserted = 0
    try:
        for item in items:
            try:
                c = Commitment.from_dict(item)
            except (KeyError, ValueError) as e:
                log.error(f"Skipping invalid commitment {item.get('id') if isinstance(item, dict) else item!r}: {e}")
                continue
            try:
                store.insert_commitment(c)
                inserted += 1
            except StoreError as e:
                log.warning(f"{e}")
    finally:
        store.close()
    log.info(f"Inserted {inserted} of {len(items)} commitment(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
