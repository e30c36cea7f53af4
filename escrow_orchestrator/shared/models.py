#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Domain Models for the Milestone Escrow Orchestrator
Defines commitments, milestones, market observations and confirmation records.

All on-chain amounts are integers in the smallest unit (lamports). Times are
integer unix seconds.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


class CommitmentStatus(str, enum.Enum):
    CREATED = "created"
    ACTIVE = "active"
    RESOLVING = "resolving"
    RESOLVED_SUCCESS = "resolved_success"
    RESOLVED_FAILURE = "resolved_failure"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


# Commitments in these states are no longer evaluated or promoted
TERMINAL_COMMITMENT_STATUSES = frozenset({
    CommitmentStatus.RESOLVED_SUCCESS,
    CommitmentStatus.RESOLVED_FAILURE,
    CommitmentStatus.COMPLETED,
    CommitmentStatus.FAILED,
    CommitmentStatus.ARCHIVED,
})


class MilestoneStatus(str, enum.Enum):
    LOCKED = "locked"
    APPROVED = "approved"
    CLAIMABLE = "claimable"
    RELEASED = "released"


REWARD_KIND = "creator_reward"
AUTO_KIND_MARKET_CAP = "market_cap"


def _opt_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


@dataclass
class Milestone:
    """
    A single unlock condition within a commitment.

    Exactly one of unlock_lamports / unlock_percent is authoritative; the
    absolute amount wins when both are non-zero.
    """
    id: str
    title: str = ""
    unlock_lamports: int = 0
    unlock_percent: float = 0.0
    status: MilestoneStatus = MilestoneStatus.LOCKED
    auto_kind: Optional[str] = None
    market_cap_threshold_usd: Optional[float] = None
    require_no_mint_authority: bool = True
    completed_at_unix: Optional[int] = None
    approved_at_unix: Optional[int] = None
    claimable_at_unix: Optional[int] = None
    became_claimable_at_unix: Optional[int] = None
    auto_confirmed_at_unix: Optional[int] = None
    released_at_unix: Optional[int] = None
    release_tx_signature: Optional[str] = None
    auto_evidence: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        """Validate identifiers and coerce status"""
        if not self.id or not str(self.id).strip():
            raise ValueError("milestone id cannot be empty")
        self.status = MilestoneStatus(self.status)
        if self.unlock_lamports < 0:
            raise ValueError("unlock_lamports cannot be negative")
        if not math.isfinite(self.unlock_percent) or self.unlock_percent < 0 or self.unlock_percent > 100:
            raise ValueError("unlock_percent must be within [0, 100]")

    @property
    def is_market_cap(self) -> bool:
        return str(self.auto_kind or "") == AUTO_KIND_MARKET_CAP

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Milestone":
        # Anything other than an explicit false keeps the mint-authority guard on
        rnma = raw.get("require_no_mint_authority", True)
        require_no_mint = str(rnma).strip().lower() != "false"
        return cls(
            id=str(raw["id"]),
            title=str(raw.get("title") or ""),
            unlock_lamports=int(raw.get("unlock_lamports") or 0),
            unlock_percent=float(raw.get("unlock_percent") or 0.0),
            status=MilestoneStatus(raw.get("status") or "locked"),
            auto_kind=raw.get("auto_kind"),
            market_cap_threshold_usd=(
                None if raw.get("market_cap_threshold_usd") is None else float(raw["market_cap_threshold_usd"])
            ),
            require_no_mint_authority=require_no_mint,
            completed_at_unix=_opt_int(raw.get("completed_at_unix")),
            approved_at_unix=_opt_int(raw.get("approved_at_unix")),
            claimable_at_unix=_opt_int(raw.get("claimable_at_unix")),
            became_claimable_at_unix=_opt_int(raw.get("became_claimable_at_unix")),
            auto_confirmed_at_unix=_opt_int(raw.get("auto_confirmed_at_unix")),
            released_at_unix=_opt_int(raw.get("released_at_unix")),
            release_tx_signature=raw.get("release_tx_signature"),
            auto_evidence=raw.get("auto_evidence"),
        )


@dataclass
class Commitment:
    """
    A registered delivery obligation with escrowed funds and milestones.

    authority, escrow_pubkey and token_mint are fixed at creation; every other
    field changes only through the state machine or administrative actions.
    """
    id: str
    authority: str
    escrow_pubkey: str
    kind: str = REWARD_KIND
    token_mint: Optional[str] = None
    milestones: List[Milestone] = field(default_factory=list)
    unlocked_lamports: int = 0
    total_funded_lamports: int = 0
    status: CommitmentStatus = CommitmentStatus.CREATED
    statement: str = ""
    created_at_unix: int = 0
    updated_at_unix: int = 0
    version: int = 0

    def __post_init__(self):
        """Validate commitment data"""
        if not self.id or not str(self.id).strip():
            raise ValueError("commitment id cannot be empty")
        if not self.escrow_pubkey or not str(self.escrow_pubkey).strip():
            raise ValueError("escrow_pubkey cannot be empty")
        self.status = CommitmentStatus(self.status)
        ids = [m.id for m in self.milestones]
        if len(ids) != len(set(ids)):
            raise ValueError("milestone ids must be unique within a commitment")

    def milestone(self, milestone_id: str) -> Optional[Milestone]:
        for m in self.milestones:
            if m.id == milestone_id:
                return m
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "authority": self.authority,
            "escrow_pubkey": self.escrow_pubkey,
            "kind": self.kind,
            "token_mint": self.token_mint,
            "milestones": [m.to_dict() for m in self.milestones],
            "unlocked_lamports": self.unlocked_lamports,
            "total_funded_lamports": self.total_funded_lamports,
            "status": self.status.value,
            "statement": self.statement,
            "created_at_unix": self.created_at_unix,
            "updated_at_unix": self.updated_at_unix,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Commitment":
        return cls(
            id=str(raw["id"]),
            authority=str(raw.get("authority") or ""),
            escrow_pubkey=str(raw["escrow_pubkey"]),
            kind=str(raw.get("kind") or REWARD_KIND),
            token_mint=raw.get("token_mint"),
            milestones=[Milestone.from_dict(m) for m in (raw.get("milestones") or [])],
            unlocked_lamports=int(raw.get("unlocked_lamports") or 0),
            total_funded_lamports=int(raw.get("total_funded_lamports") or 0),
            status=CommitmentStatus(raw.get("status") or "created"),
            statement=str(raw.get("statement") or ""),
            created_at_unix=int(raw.get("created_at_unix") or 0),
            updated_at_unix=int(raw.get("updated_at_unix") or 0),
            version=int(raw.get("version") or 0),
        )


@dataclass(frozen=True)
class Pair:
    """A trading pair as reported by the price feed"""
    pair_address: str
    dex_id: str
    chain_id: str
    price_usd: float
    liquidity_usd: float = 0.0
    volume_h1_usd: float = 0.0
    volume_h24_usd: float = 0.0
    fdv: Optional[float] = None
    market_cap: Optional[float] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class PriceSnapshot:
    """One observed price point; append-only"""
    token_mint: str
    chain_id: str
    pair_address: str
    dex_id: str
    fetched_at_unix: int
    price_usd: float
    liquidity_usd: float = 0.0
    volume_h1_usd: float = 0.0
    volume_h24_usd: float = 0.0
    fdv_usd: Optional[float] = None
    market_cap_usd: Optional[float] = None


@dataclass(frozen=True)
class CanonicalPair:
    """The pinned, authoritative pair for a (token, chain)"""
    token_mint: str
    chain_id: str
    pair_address: str
    dex_id: str
    url: Optional[str] = None


@dataclass(frozen=True)
class MintInfo:
    """Mint account facts read from chain"""
    exists: bool
    is_mint: bool
    supply: Optional[int] = None
    decimals: Optional[int] = None
    mint_authority: Optional[str] = None
    freeze_authority: Optional[str] = None


@dataclass(frozen=True)
class MarketCapConfirmation:
    """
    Durable record that a market-cap milestone was satisfied.

    Primary key is (commitment_id, milestone_id); at most one row ever exists.
    """
    commitment_id: str
    milestone_id: str
    token_mint: str
    confirmed_at_unix: int
    total_funded_lamports: int
    unlock_lamports: int
    threshold_usd: float
    chain_id: str
    pair_address: str
    dex_id: str
    evidence_json: str = "{}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
