#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Persistence store for commitments, price snapshots, canonical pair pins,
market-cap confirmations and audit records.

Two backends share one interface:
- InMemoryStore: thread-safe dict store for tests and dry runs
- SqliteStore: durable single-file store

Atomicity contracts the rest of the engine relies on:
- insert_confirmation_if_absent is a single insert-or-read keyed by
  (commitment_id, milestone_id); it never overwrites an existing row
- upsert_canonical_pair writes pair_address/dex_id once; later calls may only
  refresh url
- compare_and_update_commitment succeeds only when the stored version equals
  expected_version, then bumps the version
"""
from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..shared.config import StoreConfig
from ..shared.models import (
    CanonicalPair,
    Commitment,
    MarketCapConfirmation,
    PriceSnapshot,
)


class StoreError(Exception):
    """Persistence failures and constraint violations"""
    pass


class Store:
    def list_commitments(self) -> List[Commitment]:
        raise NotImplementedError

    def get_commitment(self, commitment_id: str) -> Optional[Commitment]:
        raise NotImplementedError

    def insert_commitment(self, commitment: Commitment) -> Commitment:
        raise NotImplementedError

    def compare_and_update_commitment(self, commitment: Commitment, expected_version: int) -> Optional[Commitment]:
        raise NotImplementedError

    def get_canonical_pair(self, token_mint: str, chain_id: str) -> Optional[CanonicalPair]:
        raise NotImplementedError

    def upsert_canonical_pair(self, pair: CanonicalPair) -> CanonicalPair:
        raise NotImplementedError

    def insert_snapshot(self, snapshot: PriceSnapshot) -> None:
        raise NotImplementedError

    def find_first_snapshot_above(
        self,
        token_mint: str,
        chain_id: str,
        pair_address: str,
        since_unix: int,
        min_price_usd: float,
        min_liquidity_usd: float,
        min_volume_h1_usd: float,
    ) -> Optional[PriceSnapshot]:
        raise NotImplementedError

    def list_snapshots(self, token_mint: str, chain_id: str, pair_address: str, since_unix: int) -> List[PriceSnapshot]:
        raise NotImplementedError

    def insert_confirmation_if_absent(self, confirmation: MarketCapConfirmation) -> Tuple[bool, MarketCapConfirmation]:
        raise NotImplementedError

    def get_confirmation(self, commitment_id: str, milestone_id: str) -> Optional[MarketCapConfirmation]:
        raise NotImplementedError

    def append_audit(self, event: str, payload: Dict[str, Any], at_unix: int) -> None:
        raise NotImplementedError

    def list_audit(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def close(self) -> None:
        pass


def _qualifies(s: PriceSnapshot, since_unix: int, min_price: float, min_liq: float, min_vol: float) -> bool:
    return (
        s.fetched_at_unix >= since_unix
        and s.price_usd >= min_price
        and s.liquidity_usd >= min_liq
        and s.volume_h1_usd >= min_vol
    )


class InMemoryStore(Store):
    """Dict-backed store; every read returns a copy so callers cannot mutate state."""

    def __init__(self, clock=time.time) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._commitments: Dict[str, Commitment] = {}
        self._pairs: Dict[Tuple[str, str], CanonicalPair] = {}
        self._snapshots: List[PriceSnapshot] = []
        self._confirmations: Dict[Tuple[str, str], MarketCapConfirmation] = {}
        self._audit: List[Dict[str, Any]] = []

    def list_commitments(self) -> List[Commitment]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._commitments.values()]

    def get_commitment(self, commitment_id: str) -> Optional[Commitment]:
        with self._lock:
            c = self._commitments.get(commitment_id)
            return copy.deepcopy(c) if c is not None else None

    def insert_commitment(self, commitment: Commitment) -> Commitment:
        with self._lock:
            if commitment.id in self._commitments:
                raise StoreError(f"Commitment already exists: {commitment.id}")
            stored = copy.deepcopy(commitment)
            now = int(self._clock())
            stored.created_at_unix = stored.created_at_unix or now
            stored.updated_at_unix = now
            stored.version = 0
            self._commitments[stored.id] = stored
            return copy.deepcopy(stored)

    def compare_and_update_commitment(self, commitment: Commitment, expected_version: int) -> Optional[Commitment]:
        with self._lock:
            current = self._commitments.get(commitment.id)
            if current is None:
                raise StoreError(f"Commitment not found: {commitment.id}")
            if current.version != expected_version:
                return None
            stored = copy.deepcopy(commitment)
            stored.version = expected_version + 1
            stored.updated_at_unix = int(self._clock())
            self._commitments[stored.id] = stored
            return copy.deepcopy(stored)

    def get_canonical_pair(self, token_mint: str, chain_id: str) -> Optional[CanonicalPair]:
        with self._lock:
            return self._pairs.get((token_mint, chain_id))

    def upsert_canonical_pair(self, pair: CanonicalPair) -> CanonicalPair:
        key = (pair.token_mint, pair.chain_id)
        with self._lock:
            existing = self._pairs.get(key)
            if existing is None:
                self._pairs[key] = pair
                return pair
            if pair.url and pair.url != existing.url:
                existing = CanonicalPair(
                    token_mint=existing.token_mint,
                    chain_id=existing.chain_id,
                    pair_address=existing.pair_address,
                    dex_id=existing.dex_id,
                    url=pair.url,
                )
                self._pairs[key] = existing
            return existing

    def insert_snapshot(self, snapshot: PriceSnapshot) -> None:
        with self._lock:
            self._snapshots.append(snapshot)

    def _matching(self, token_mint: str, chain_id: str, pair_address: str) -> List[PriceSnapshot]:
        rows = [
            s for s in self._snapshots
            if s.token_mint == token_mint and s.chain_id == chain_id and s.pair_address == pair_address
        ]
        # Stable sort keeps insertion order for equal fetch times
        return sorted(rows, key=lambda s: s.fetched_at_unix)

    def find_first_snapshot_above(self, token_mint, chain_id, pair_address, since_unix, min_price_usd, min_liquidity_usd, min_volume_h1_usd):
        with self._lock:
            for s in self._matching(token_mint, chain_id, pair_address):
                if _qualifies(s, since_unix, min_price_usd, min_liquidity_usd, min_volume_h1_usd):
                    return s
        return None

    def list_snapshots(self, token_mint: str, chain_id: str, pair_address: str, since_unix: int) -> List[PriceSnapshot]:
        with self._lock:
            return [s for s in self._matching(token_mint, chain_id, pair_address) if s.fetched_at_unix >= since_unix]

    def insert_confirmation_if_absent(self, confirmation: MarketCapConfirmation) -> Tuple[bool, MarketCapConfirmation]:
        key = (confirmation.commitment_id, confirmation.milestone_id)
        with self._lock:
            existing = self._confirmations.get(key)
            if existing is not None:
                return False, existing
            self._confirmations[key] = confirmation
            return True, confirmation

    def get_confirmation(self, commitment_id: str, milestone_id: str) -> Optional[MarketCapConfirmation]:
        with self._lock:
            return self._confirmations.get((commitment_id, milestone_id))

    def append_audit(self, event: str, payload: Dict[str, Any], at_unix: int) -> None:
        with self._lock:
            self._audit.append({"event": event, "payload": copy.deepcopy(payload), "at_unix": int(at_unix)})

    def list_audit(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._audit if event is None or r["event"] == event]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS commitments (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    token_mint TEXT,
    status TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    created_at_unix INTEGER NOT NULL,
    updated_at_unix INTEGER NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS canonical_pairs (
    token_mint TEXT NOT NULL,
    chain_id TEXT NOT NULL,
    pair_address TEXT NOT NULL,
    dex_id TEXT NOT NULL,
    url TEXT,
    created_at_unix INTEGER NOT NULL,
    PRIMARY KEY (token_mint, chain_id)
);
CREATE TABLE IF NOT EXISTS price_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    token_mint TEXT NOT NULL,
    chain_id TEXT NOT NULL,
    pair_address TEXT NOT NULL,
    dex_id TEXT NOT NULL,
    fetched_at_unix INTEGER NOT NULL,
    price_usd REAL NOT NULL,
    liquidity_usd REAL NOT NULL,
    volume_h1_usd REAL NOT NULL,
    volume_h24_usd REAL NOT NULL,
    fdv_usd REAL,
    market_cap_usd REAL
);
CREATE INDEX IF NOT EXISTS idx_snapshots_lookup
    ON price_snapshots (token_mint, chain_id, pair_address, fetched_at_unix);
CREATE TABLE IF NOT EXISTS marketcap_confirmations (
    commitment_id TEXT NOT NULL,
    milestone_id TEXT NOT NULL,
    token_mint TEXT NOT NULL,
    confirmed_at_unix INTEGER NOT NULL,
    total_funded_lamports INTEGER NOT NULL,
    unlock_lamports INTEGER NOT NULL,
    threshold_usd REAL NOT NULL,
    chain_id TEXT NOT NULL,
    pair_address TEXT NOT NULL,
    dex_id TEXT NOT NULL,
    evidence_json TEXT NOT NULL,
    PRIMARY KEY (commitment_id, milestone_id)
);
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event TEXT NOT NULL,
    payload TEXT NOT NULL,
    at_unix INTEGER NOT NULL
);
"""

_SNAPSHOT_COLUMNS = (
    "token_mint, chain_id, pair_address, dex_id, fetched_at_unix, price_usd, "
    "liquidity_usd, volume_h1_usd, volume_h24_usd, fdv_usd, market_cap_usd"
)

_CONFIRMATION_COLUMNS = (
    "commitment_id, milestone_id, token_mint, confirmed_at_unix, total_funded_lamports, "
    "unlock_lamports, threshold_usd, chain_id, pair_address, dex_id, evidence_json"
)


def _row_to_snapshot(row: sqlite3.Row) -> PriceSnapshot:
    return PriceSnapshot(
        token_mint=row["token_mint"],
        chain_id=row["chain_id"],
        pair_address=row["pair_address"],
        dex_id=row["dex_id"],
        fetched_at_unix=int(row["fetched_at_unix"]),
        price_usd=float(row["price_usd"]),
        liquidity_usd=float(row["liquidity_usd"]),
        volume_h1_usd=float(row["volume_h1_usd"]),
        volume_h24_usd=float(row["volume_h24_usd"]),
        fdv_usd=None if row["fdv_usd"] is None else float(row["fdv_usd"]),
        market_cap_usd=None if row["market_cap_usd"] is None else float(row["market_cap_usd"]),
    )


def _row_to_confirmation(row: sqlite3.Row) -> MarketCapConfirmation:
    return MarketCapConfirmation(
        commitment_id=row["commitment_id"],
        milestone_id=row["milestone_id"],
        token_mint=row["token_mint"],
        confirmed_at_unix=int(row["confirmed_at_unix"]),
        total_funded_lamports=int(row["total_funded_lamports"]),
        unlock_lamports=int(row["unlock_lamports"]),
        threshold_usd=float(row["threshold_usd"]),
        chain_id=row["chain_id"],
        pair_address=row["pair_address"],
        dex_id=row["dex_id"],
        evidence_json=row["evidence_json"],
    )


class SqliteStore(Store):
    """
    SQLite-backed store.

    Cross-process atomicity comes from SQLite itself (primary keys with
    INSERT OR IGNORE, versioned UPDATE); the in-process lock only serializes
    use of the shared connection between worker threads.
    """

    def __init__(self, path: str | Path, clock=time.time) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30.0, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(_SCHEMA)
        self.logger.info("Initialized SqliteStore path=%s", self.path)

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreError(f"SQLite error: {e}") from e

    def list_commitments(self) -> List[Commitment]:
        with self._lock:
            rows = self._execute("SELECT data, version, created_at_unix, updated_at_unix FROM commitments ORDER BY created_at_unix ASC, id ASC").fetchall()
        return [self._row_to_commitment(r) for r in rows]

    def get_commitment(self, commitment_id: str) -> Optional[Commitment]:
        with self._lock:
            row = self._execute(
                "SELECT data, version, created_at_unix, updated_at_unix FROM commitments WHERE id = ?",
                (commitment_id,),
            ).fetchone()
        return self._row_to_commitment(row) if row else None

    @staticmethod
    def _row_to_commitment(row: sqlite3.Row) -> Commitment:
        c = Commitment.from_dict(json.loads(row["data"]))
        c.version = int(row["version"])
        c.created_at_unix = int(row["created_at_unix"])
        c.updated_at_unix = int(row["updated_at_unix"])
        return c

    def insert_commitment(self, commitment: Commitment) -> Commitment:
        now = int(self._clock())
        stored = copy.deepcopy(commitment)
        stored.created_at_unix = stored.created_at_unix or now
        stored.updated_at_unix = now
        stored.version = 0
        with self._lock:
            try:
                self.conn.execute(
                    "INSERT INTO commitments (id, kind, token_mint, status, version, created_at_unix, updated_at_unix, data) "
                    "VALUES (?, ?, ?, ?, 0, ?, ?, ?)",
                    (stored.id, stored.kind, stored.token_mint, stored.status.value,
                     stored.created_at_unix, stored.updated_at_unix, json.dumps(stored.to_dict())),
                )
            except sqlite3.IntegrityError as e:
                raise StoreError(f"Commitment already exists: {stored.id}") from e
            except sqlite3.Error as e:
                raise StoreError(f"SQLite error: {e}") from e
        return stored

    def compare_and_update_commitment(self, commitment: Commitment, expected_version: int) -> Optional[Commitment]:
        stored = copy.deepcopy(commitment)
        stored.version = expected_version + 1
        stored.updated_at_unix = int(self._clock())
        with self._lock:
            cur = self._execute(
                "UPDATE commitments SET status = ?, version = ?, updated_at_unix = ?, data = ? "
                "WHERE id = ? AND version = ?",
                (stored.status.value, stored.version, stored.updated_at_unix,
                 json.dumps(stored.to_dict()), stored.id, expected_version),
            )
            if cur.rowcount == 1:
                return stored
            exists = self._execute("SELECT 1 FROM commitments WHERE id = ?", (stored.id,)).fetchone()
        if not exists:
            raise StoreError(f"Commitment not found: {stored.id}")
        return None

    def get_canonical_pair(self, token_mint: str, chain_id: str) -> Optional[CanonicalPair]:
        with self._lock:
            row = self._execute(
                "SELECT token_mint, chain_id, pair_address, dex_id, url FROM canonical_pairs WHERE token_mint = ? AND chain_id = ?",
                (token_mint, chain_id),
            ).fetchone()
        if not row:
            return None
        return CanonicalPair(
            token_mint=row["token_mint"],
            chain_id=row["chain_id"],
            pair_address=row["pair_address"],
            dex_id=row["dex_id"],
            url=row["url"],
        )

    def upsert_canonical_pair(self, pair: CanonicalPair) -> CanonicalPair:
        with self._lock:
            # pair_address/dex_id are deliberately absent from the UPDATE clause
            self._execute(
                "INSERT INTO canonical_pairs (token_mint, chain_id, pair_address, dex_id, url, created_at_unix) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(token_mint, chain_id) DO UPDATE SET url = COALESCE(excluded.url, canonical_pairs.url)",
                (pair.token_mint, pair.chain_id, pair.pair_address, pair.dex_id, pair.url, int(self._clock())),
            )
        stored = self.get_canonical_pair(pair.token_mint, pair.chain_id)
        if stored is None:
            raise StoreError("canonical pair vanished after upsert")
        return stored

    def insert_snapshot(self, snapshot: PriceSnapshot) -> None:
        with self._lock:
            self._execute(
                f"INSERT INTO price_snapshots ({_SNAPSHOT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (snapshot.token_mint, snapshot.chain_id, snapshot.pair_address, snapshot.dex_id,
                 int(snapshot.fetched_at_unix), float(snapshot.price_usd), float(snapshot.liquidity_usd),
                 float(snapshot.volume_h1_usd), float(snapshot.volume_h24_usd),
                 snapshot.fdv_usd, snapshot.market_cap_usd),
            )

    def find_first_snapshot_above(self, token_mint, chain_id, pair_address, since_unix, min_price_usd, min_liquidity_usd, min_volume_h1_usd):
        with self._lock:
            row = self._execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM price_snapshots "
                "WHERE token_mint = ? AND chain_id = ? AND pair_address = ? AND fetched_at_unix >= ? "
                "AND price_usd >= ? AND liquidity_usd >= ? AND volume_h1_usd >= ? "
                "ORDER BY fetched_at_unix ASC, id ASC LIMIT 1",
                (token_mint, chain_id, pair_address, int(since_unix), float(min_price_usd),
                 float(min_liquidity_usd), float(min_volume_h1_usd)),
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    def list_snapshots(self, token_mint: str, chain_id: str, pair_address: str, since_unix: int) -> List[PriceSnapshot]:
        with self._lock:
            rows = self._execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM price_snapshots "
                "WHERE token_mint = ? AND chain_id = ? AND pair_address = ? AND fetched_at_unix >= ? "
                "ORDER BY fetched_at_unix ASC, id ASC",
                (token_mint, chain_id, pair_address, int(since_unix)),
            ).fetchall()
        return [_row_to_snapshot(r) for r in rows]

    def insert_confirmation_if_absent(self, confirmation: MarketCapConfirmation) -> Tuple[bool, MarketCapConfirmation]:
        c = confirmation
        with self._lock:
            cur = self._execute(
                f"INSERT OR IGNORE INTO marketcap_confirmations ({_CONFIRMATION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (c.commitment_id, c.milestone_id, c.token_mint, int(c.confirmed_at_unix),
                 int(c.total_funded_lamports), int(c.unlock_lamports), float(c.threshold_usd),
                 c.chain_id, c.pair_address, c.dex_id, c.evidence_json),
            )
            inserted = cur.rowcount == 1
        if inserted:
            return True, confirmation
        existing = self.get_confirmation(c.commitment_id, c.milestone_id)
        if existing is None:
            raise StoreError("confirmation insert ignored but no existing row found")
        return False, existing

    def get_confirmation(self, commitment_id: str, milestone_id: str) -> Optional[MarketCapConfirmation]:
        with self._lock:
            row = self._execute(
                f"SELECT {_CONFIRMATION_COLUMNS} FROM marketcap_confirmations WHERE commitment_id = ? AND milestone_id = ?",
                (commitment_id, milestone_id),
            ).fetchone()
        return _row_to_confirmation(row) if row else None

    def append_audit(self, event: str, payload: Dict[str, Any], at_unix: int) -> None:
        with self._lock:
            self._execute(
                "INSERT INTO audit_log (event, payload, at_unix) VALUES (?, ?, ?)",
                (event, json.dumps(payload, default=str, sort_keys=True), int(at_unix)),
            )

    def list_audit(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if event is None:
                rows = self._execute("SELECT event, payload, at_unix FROM audit_log ORDER BY id ASC").fetchall()
            else:
                rows = self._execute("SELECT event, payload, at_unix FROM audit_log WHERE event = ? ORDER BY id ASC", (event,)).fetchall()
        return [{"event": r["event"], "payload": json.loads(r["payload"]), "at_unix": int(r["at_unix"])} for r in rows]

    def close(self) -> None:
        with self._lock:
            self.conn.close()


def create_store(config: StoreConfig) -> Store:
    """Factory function to create the configured store"""
    if config.backend == "memory":
        return InMemoryStore()
    return SqliteStore(config.path)
