#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Milestone state machine.

Milestone lifecycle (forward only):
    LOCKED    -> APPROVED     (confirmed, claim delay still running)
    LOCKED    -> CLAIMABLE    (confirmed, claim delay already elapsed)
    APPROVED  -> CLAIMABLE    (claim delay elapsed on a later cycle)
    CLAIMABLE -> RELEASED     (payout recorded by an authorized release)

Every transition is applied to a fresh copy of the commitment and written with
a version check; a lost race re-reads and re-applies. Confirmation transitions
are derived only from ledger entries, so a re-application after a crash is
identical to the original one.

Administrative overrides bypass the transition table and are the only path
that can move a milestone backwards.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Iterable, List, Optional

from ..shared.models import (
    Commitment,
    CommitmentStatus,
    MarketCapConfirmation,
    Milestone,
    MilestoneStatus,
)
from .store import Store, StoreError


_TRANSITIONS: set[tuple[MilestoneStatus, MilestoneStatus]] = {
    (MilestoneStatus.LOCKED, MilestoneStatus.APPROVED),
    (MilestoneStatus.LOCKED, MilestoneStatus.CLAIMABLE),
    (MilestoneStatus.APPROVED, MilestoneStatus.CLAIMABLE),
    (MilestoneStatus.CLAIMABLE, MilestoneStatus.RELEASED),
}

_UNLOCKED_STATUSES = (MilestoneStatus.CLAIMABLE, MilestoneStatus.RELEASED)


class InvalidTransitionError(Exception):
    """Raised when a milestone transition is not allowed."""


class ConcurrentUpdateError(Exception):
    """Version check kept failing after every retry."""


def compute_unlock_lamports(milestone: Milestone, total_funded_lamports: int) -> int:
    """
    Amount released by a milestone.

    An absolute unlock_lamports wins over unlock_percent; the percent applies
    to the total funded amount and is floored to whole lamports. Returns 0
    when neither yields a positive finite amount.
    """
    if milestone.unlock_lamports and milestone.unlock_lamports > 0:
        return int(milestone.unlock_lamports)
    pct = Decimal(str(milestone.unlock_percent or 0))
    if not pct.is_finite() or pct <= 0 or total_funded_lamports <= 0:
        return 0
    amount = (Decimal(int(total_funded_lamports)) * pct / Decimal(100)).to_integral_value(rounding=ROUND_FLOOR)
    return int(amount)


def unlocked_lamports(commitment: Commitment) -> int:
    """Sum of unlock amounts over claimable and released milestones."""
    return sum(int(m.unlock_lamports or 0) for m in commitment.milestones if m.status in _UNLOCKED_STATUSES)


def released_lamports(commitment: Commitment) -> int:
    return sum(int(m.unlock_lamports or 0) for m in commitment.milestones if m.status == MilestoneStatus.RELEASED)


def check_transition(milestone: Milestone, target: MilestoneStatus) -> None:
    if (milestone.status, target) not in _TRANSITIONS:
        raise InvalidTransitionError(
            f"Illegal transition for milestone {milestone.id}: {milestone.status.value} -> {target.value}"
        )


def hit_time_of(confirmation: MarketCapConfirmation) -> int:
    """Hit time recorded in the entry's evidence, falling back to the confirmation time."""
    try:
        evidence = json.loads(confirmation.evidence_json or "{}")
    except ValueError:
        evidence = {}
    hit = evidence.get("hit_at_unix") if isinstance(evidence, dict) else None
    try:
        return int(hit) if hit is not None else int(confirmation.confirmed_at_unix)
    except (TypeError, ValueError):
        return int(confirmation.confirmed_at_unix)


def apply_confirmation(milestone: Milestone, confirmation: MarketCapConfirmation, now_unix: int, claim_delay_seconds: int) -> Milestone:
    """
    Move a locked milestone to approved or claimable from a ledger entry.

    completed_at is the threshold hit time (never later than the
    confirmation); claimable_at = completed_at + claim delay.
    """
    completed_at = min(int(confirmation.confirmed_at_unix), hit_time_of(confirmation))
    claimable_at = completed_at + int(claim_delay_seconds)
    target = MilestoneStatus.CLAIMABLE if now_unix >= claimable_at else MilestoneStatus.APPROVED
    check_transition(milestone, target)

    try:
        evidence = json.loads(confirmation.evidence_json or "{}")
    except ValueError:
        evidence = {}

    milestone.unlock_lamports = int(confirmation.unlock_lamports)
    milestone.completed_at_unix = completed_at
    milestone.approved_at_unix = completed_at
    milestone.claimable_at_unix = claimable_at
    if target == MilestoneStatus.CLAIMABLE and milestone.became_claimable_at_unix is None:
        milestone.became_claimable_at_unix = int(now_unix)
    milestone.auto_confirmed_at_unix = int(confirmation.confirmed_at_unix)
    milestone.auto_evidence = evidence
    milestone.status = target
    return milestone


def _recompute_totals(commitment: Commitment, escrow_balance_lamports: Optional[int] = None) -> None:
    commitment.unlocked_lamports = unlocked_lamports(commitment)
    if escrow_balance_lamports is not None:
        commitment.total_funded_lamports = int(escrow_balance_lamports) + released_lamports(commitment)
    if commitment.status == CommitmentStatus.CREATED:
        commitment.status = CommitmentStatus.ACTIVE


@dataclass
class CommitOutcome:
    commitment: Commitment
    applied: List[str] = field(default_factory=list)


class MilestoneStateMachine:
    """
    Applies milestone transitions to stored commitments.

    Usage:
        sm = MilestoneStateMachine(store, claim_delay_seconds=172800)
        out = sm.commit_confirmations("c1", [conf], now_unix=now, escrow_balance_lamports=bal)
    """

    def __init__(self, store: Store, claim_delay_seconds: int, retries: int = 3) -> None:
        self.store = store
        self.claim_delay_seconds = int(claim_delay_seconds)
        self.retries = max(1, int(retries))
        self.logger = logging.getLogger(self.__class__.__name__)

    def update(self, commitment_id: str, mutate: Callable[[Commitment], List[str]]) -> CommitOutcome:
        """
        Read, mutate and write a commitment under the version check.

        `mutate` edits the commitment in place and returns the ids of the
        milestones it changed (or any non-empty marker list); an empty list
        means nothing to write.

        Raises:
            StoreError: commitment missing
            ConcurrentUpdateError: version check failed on every attempt
        """
        for attempt in range(self.retries):
            current = self.store.get_commitment(commitment_id)
            if current is None:
                raise StoreError(f"Commitment not found: {commitment_id}")
            changed = mutate(current)
            if not changed:
                return CommitOutcome(commitment=current)
            stored = self.store.compare_and_update_commitment(current, current.version)
            if stored is not None:
                return CommitOutcome(commitment=stored, applied=list(changed))
            self.logger.info(
                f"Concurrent update on commitment={commitment_id} (attempt {attempt + 1}/{self.retries}); re-reading"
            )
        raise ConcurrentUpdateError(f"Commitment {commitment_id} kept changing; gave up after {self.retries} attempts")

    def commit_confirmations(
        self,
        commitment_id: str,
        confirmations: Iterable[MarketCapConfirmation],
        now_unix: int,
        escrow_balance_lamports: Optional[int] = None,
    ) -> CommitOutcome:
        """
        Apply ledger entries to their milestones in one commitment write and
        recompute unlocked and funded totals. Milestones already completed are
        left untouched.
        """
        confs = list(confirmations)

        def _mutate(c: Commitment) -> List[str]:
            applied: List[str] = []
            for conf in confs:
                m = c.milestone(conf.milestone_id)
                if m is None:
                    raise StoreError(f"Milestone {conf.milestone_id} not found on commitment {commitment_id}")
                if m.completed_at_unix is not None:
                    continue
                apply_confirmation(m, conf, now_unix, self.claim_delay_seconds)
                applied.append(m.id)
            if applied:
                balance = escrow_balance_lamports
                if balance is None:
                    # Resume path: fall back to the funded totals recorded in the ledger
                    c.total_funded_lamports = max([c.total_funded_lamports] + [int(x.total_funded_lamports) for x in confs])
                _recompute_totals(c, balance)
            return applied

        out = self.update(commitment_id, _mutate)
        for mid in out.applied:
            m = out.commitment.milestone(mid)
            self.logger.info(
                f"Milestone confirmed commitment={commitment_id} milestone={mid} status={m.status.value} "
                f"claimable_at={m.claimable_at_unix} unlock={m.unlock_lamports}"
            )
        return out

    def promote_due(self, commitment_id: str, now_unix: int) -> CommitOutcome:
        """approved -> claimable for every milestone whose claimable_at has passed."""

        def _mutate(c: Commitment) -> List[str]:
            promoted: List[str] = []
            for m in c.milestones:
                if m.status != MilestoneStatus.APPROVED or m.claimable_at_unix is None:
                    continue
                if now_unix < m.claimable_at_unix:
                    continue
                check_transition(m, MilestoneStatus.CLAIMABLE)
                m.status = MilestoneStatus.CLAIMABLE
                m.became_claimable_at_unix = int(now_unix)
                promoted.append(m.id)
            if promoted:
                _recompute_totals(c)
            return promoted

        return self.update(commitment_id, _mutate)

    def record_release(self, commitment_id: str, milestone_id: str, tx_signature: str, now_unix: int) -> CommitOutcome:
        """claimable -> released with the payout transaction signature."""
        sig = str(tx_signature or "").strip()
        if not sig:
            raise ValueError("tx_signature is required")

        def _mutate(c: Commitment) -> List[str]:
            m = c.milestone(milestone_id)
            if m is None:
                raise StoreError(f"Milestone {milestone_id} not found on commitment {commitment_id}")
            check_transition(m, MilestoneStatus.RELEASED)
            m.status = MilestoneStatus.RELEASED
            m.released_at_unix = int(now_unix)
            m.release_tx_signature = sig
            _recompute_totals(c)
            return [m.id]

        return self.update(commitment_id, _mutate)

    def override_milestone_status(self, commitment_id: str, milestone_id: str, status: MilestoneStatus, now_unix: int) -> CommitOutcome:
        """
        Administrative status change; may regress.

        Moving back to locked clears the completion timestamps so the milestone
        is eligible again, but auto_confirmed_at_unix is kept: an existing
        ledger entry is then treated as already applied and not resumed.
        """
        target = MilestoneStatus(status)

        def _mutate(c: Commitment) -> List[str]:
            m = c.milestone(milestone_id)
            if m is None:
                raise StoreError(f"Milestone {milestone_id} not found on commitment {commitment_id}")
            if m.status == target:
                return []
            previous = m.status
            m.status = target
            if target == MilestoneStatus.LOCKED:
                m.completed_at_unix = None
                m.approved_at_unix = None
                m.claimable_at_unix = None
                m.became_claimable_at_unix = None
            elif target == MilestoneStatus.APPROVED:
                m.completed_at_unix = m.completed_at_unix or int(now_unix)
                m.approved_at_unix = m.approved_at_unix or int(now_unix)
                m.claimable_at_unix = m.claimable_at_unix or (m.completed_at_unix + self.claim_delay_seconds)
                m.became_claimable_at_unix = None
            elif target == MilestoneStatus.CLAIMABLE:
                m.completed_at_unix = m.completed_at_unix or int(now_unix)
                m.approved_at_unix = m.approved_at_unix or int(now_unix)
                m.claimable_at_unix = m.claimable_at_unix or int(now_unix)
                m.became_claimable_at_unix = m.became_claimable_at_unix or int(now_unix)
            else:
                m.released_at_unix = m.released_at_unix or int(now_unix)
            if previous == MilestoneStatus.RELEASED and target != MilestoneStatus.RELEASED:
                m.released_at_unix = None
                m.release_tx_signature = None
            _recompute_totals(c)
            return [m.id]

        return self.update(commitment_id, _mutate)

    def set_commitment_status(self, commitment_id: str, status: CommitmentStatus) -> CommitOutcome:
        """Administrative commitment status change (failed/archived are only reachable here)."""
        target = CommitmentStatus(status)

        def _mutate(c: Commitment) -> List[str]:
            if c.status == target:
                return []
            c.status = target
            return [c.id]

        return self.update(commitment_id, _mutate)
