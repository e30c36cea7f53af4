#!/usr/bin/env python3
"""
Unit tests for the milestone state machine

Tests cover:
- unlock amount precedence, flooring and non-finite percentages
- approved vs claimable on confirmation, claimable_at derivation
- promotion once the claim delay has elapsed
- release and administrative overrides
- version-checked writes under a concurrent modification
"""
import json

import pytest

from escrow_orchestrator.core.state_machine import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    MilestoneStateMachine,
    apply_confirmation,
    compute_unlock_lamports,
    hit_time_of,
)
from escrow_orchestrator.core.store import InMemoryStore, StoreError
from escrow_orchestrator.shared.models import (
    CommitmentStatus,
    MarketCapConfirmation,
    Milestone,
    MilestoneStatus,
)

from fakes import T0, TOKEN, make_commitment

DELAY = 48 * 3600


def make_confirmation(confirmed_at, hit_at=None, unlock=2_500_000_000, total=10_000_000_000, mid="m-1"):
    evidence = {"hit_at_unix": hit_at} if hit_at is not None else {}
    return MarketCapConfirmation(
        commitment_id="c-1",
        milestone_id=mid,
        token_mint=TOKEN,
        confirmed_at_unix=confirmed_at,
        total_funded_lamports=total,
        unlock_lamports=unlock,
        threshold_usd=1_000_000.0,
        chain_id="solana",
        pair_address="pair",
        dex_id="raydium",
        evidence_json=json.dumps(evidence),
    )


@pytest.fixture
def sm(store):
    store.insert_commitment(make_commitment())
    return MilestoneStateMachine(store, claim_delay_seconds=DELAY)


class TestUnlockAmount:
    """Test compute_unlock_lamports"""

    def test_percent_of_total_is_floored(self):
        m = Milestone(id="m", unlock_percent=33.0)
        assert compute_unlock_lamports(m, 1_000) == 330
        assert compute_unlock_lamports(m, 1_001) == 330

    def test_absolute_amount_wins(self):
        m = Milestone(id="m", unlock_lamports=500_000_000, unlock_percent=50.0)
        assert compute_unlock_lamports(m, 10_000_000_000) == 500_000_000

    def test_nothing_to_unlock(self):
        assert compute_unlock_lamports(Milestone(id="m"), 10_000) == 0
        assert compute_unlock_lamports(Milestone(id="m", unlock_percent=10.0), 0) == 0

    def test_non_finite_percent_unlocks_nothing(self):
        m = Milestone(id="m", unlock_percent=10.0)
        m.unlock_percent = float("nan")
        assert compute_unlock_lamports(m, 10_000) == 0
        m.unlock_percent = float("inf")
        assert compute_unlock_lamports(m, 10_000) == 0

    @pytest.mark.parametrize("pct", [float("nan"), float("inf"), -1.0, 100.5])
    def test_milestone_rejects_bad_percent(self, pct):
        with pytest.raises(ValueError, match="unlock_percent"):
            Milestone(id="m", unlock_percent=pct)

    def test_from_dict_rejects_nan_percent(self):
        with pytest.raises(ValueError, match="unlock_percent"):
            Milestone.from_dict({"id": "m", "unlock_percent": "nan"})


class TestApplyConfirmation:
    """Test the locked -> approved/claimable transition"""

    def test_approved_while_delay_running(self):
        m = Milestone(id="m-1", unlock_percent=25.0, auto_kind="market_cap", market_cap_threshold_usd=1e6)
        conf = make_confirmation(confirmed_at=T0 + 10 * 3600, hit_at=T0)

        apply_confirmation(m, conf, now_unix=T0 + 10 * 3600, claim_delay_seconds=DELAY)

        assert m.status == MilestoneStatus.APPROVED
        assert m.completed_at_unix == T0
        assert m.approved_at_unix == T0
        assert m.claimable_at_unix == T0 + DELAY
        assert m.became_claimable_at_unix is None
        assert m.auto_confirmed_at_unix == T0 + 10 * 3600
        assert m.unlock_lamports == 2_500_000_000

    def test_claimable_when_delay_already_elapsed(self):
        m = Milestone(id="m-1", unlock_percent=25.0)
        now = T0 + DELAY + 60
        apply_confirmation(m, make_confirmation(confirmed_at=now, hit_at=T0), now, DELAY)

        assert m.status == MilestoneStatus.CLAIMABLE
        assert m.became_claimable_at_unix == now

    def test_hit_after_confirmation_is_clamped(self):
        conf = make_confirmation(confirmed_at=T0, hit_at=T0 + 500)
        m = Milestone(id="m-1")
        apply_confirmation(m, conf, T0, DELAY)
        assert m.completed_at_unix == T0

    def test_missing_hit_falls_back_to_confirmation_time(self):
        conf = make_confirmation(confirmed_at=T0 + 7)
        assert hit_time_of(conf) == T0 + 7

    def test_only_locked_milestones_can_be_confirmed(self):
        m = Milestone(id="m-1", status=MilestoneStatus.RELEASED)
        with pytest.raises(InvalidTransitionError):
            apply_confirmation(m, make_confirmation(T0, T0), T0, DELAY)


class TestCommitConfirmations:
    """Test the single-write commit of ledger entries"""

    def test_commit_sets_totals_and_activates(self, sm, store):
        now = T0 + 10 * 3600
        out = sm.commit_confirmations("c-1", [make_confirmation(now, T0)], now, escrow_balance_lamports=10_000_000_000)

        assert out.applied == ["m-1"]
        c = store.get_commitment("c-1")
        assert c.status == CommitmentStatus.ACTIVE
        assert c.total_funded_lamports == 10_000_000_000
        # Approved amounts are not unlocked yet
        assert c.unlocked_lamports == 0
        assert c.version == 1

    def test_commit_is_noop_for_completed_milestone(self, sm, store):
        now = T0 + 10 * 3600
        sm.commit_confirmations("c-1", [make_confirmation(now, T0)], now, 10_000_000_000)
        again = sm.commit_confirmations("c-1", [make_confirmation(now, T0, unlock=1)], now + 60, 1)

        assert again.applied == []
        c = store.get_commitment("c-1")
        assert c.version == 1
        assert c.milestone("m-1").unlock_lamports == 2_500_000_000

    def test_resume_without_balance_uses_ledger_total(self, sm, store):
        now = T0 + 10 * 3600
        sm.commit_confirmations("c-1", [make_confirmation(now, T0, total=7_000)], now)
        assert store.get_commitment("c-1").total_funded_lamports == 7_000

    def test_unknown_milestone_raises(self, sm):
        with pytest.raises(StoreError):
            sm.commit_confirmations("c-1", [make_confirmation(T0, T0, mid="nope")], T0)

    def test_missing_commitment_raises(self, sm):
        with pytest.raises(StoreError, match="not found"):
            sm.promote_due("missing", T0)


class TestPromotionAndRelease:
    """Test approved -> claimable -> released"""

    def test_promote_only_after_claimable_at(self, sm, store):
        sm.commit_confirmations("c-1", [make_confirmation(T0 + 3600, T0)], T0 + 3600, 10_000_000_000)

        early = sm.promote_due("c-1", T0 + DELAY - 1)
        assert early.applied == []

        out = sm.promote_due("c-1", T0 + DELAY)
        assert out.applied == ["m-1"]
        m = store.get_commitment("c-1").milestone("m-1")
        assert m.status == MilestoneStatus.CLAIMABLE
        assert m.became_claimable_at_unix == T0 + DELAY
        assert store.get_commitment("c-1").unlocked_lamports == 2_500_000_000

    def test_release_requires_claimable(self, sm):
        sm.commit_confirmations("c-1", [make_confirmation(T0 + 3600, T0)], T0 + 3600, 10_000_000_000)
        with pytest.raises(InvalidTransitionError):
            sm.record_release("c-1", "m-1", "sig", T0 + 7200)

    def test_release_records_signature(self, sm, store):
        sm.commit_confirmations("c-1", [make_confirmation(T0 + DELAY, T0)], T0 + DELAY, 10_000_000_000)
        sm.record_release("c-1", "m-1", "5igTx", T0 + DELAY + 10)

        c = store.get_commitment("c-1")
        m = c.milestone("m-1")
        assert m.status == MilestoneStatus.RELEASED
        assert m.release_tx_signature == "5igTx"
        assert m.released_at_unix == T0 + DELAY + 10
        assert c.unlocked_lamports == 2_500_000_000

    def test_release_needs_signature(self, sm):
        with pytest.raises(ValueError):
            sm.record_release("c-1", "m-1", "  ", T0)


class TestOverrides:
    """Test administrative status changes"""

    def test_reset_to_locked_keeps_auto_confirmed_at(self, sm, store):
        now = T0 + 3600
        sm.commit_confirmations("c-1", [make_confirmation(now, T0)], now, 10_000_000_000)
        sm.override_milestone_status("c-1", "m-1", MilestoneStatus.LOCKED, now + 60)

        m = store.get_commitment("c-1").milestone("m-1")
        assert m.status == MilestoneStatus.LOCKED
        assert m.completed_at_unix is None
        assert m.claimable_at_unix is None
        assert m.auto_confirmed_at_unix == now

    def test_release_undone_clears_signature(self, sm, store):
        sm.commit_confirmations("c-1", [make_confirmation(T0 + DELAY, T0)], T0 + DELAY, 10_000_000_000)
        sm.record_release("c-1", "m-1", "sig", T0 + DELAY)
        sm.override_milestone_status("c-1", "m-1", MilestoneStatus.CLAIMABLE, T0 + DELAY + 5)

        m = store.get_commitment("c-1").milestone("m-1")
        assert m.status == MilestoneStatus.CLAIMABLE
        assert m.release_tx_signature is None
        assert m.released_at_unix is None

    def test_same_status_writes_nothing(self, sm, store):
        out = sm.override_milestone_status("c-1", "m-1", MilestoneStatus.LOCKED, T0)
        assert out.applied == []
        assert store.get_commitment("c-1").version == 0

    def test_commitment_status(self, sm, store):
        sm.set_commitment_status("c-1", CommitmentStatus.ARCHIVED)
        assert store.get_commitment("c-1").status == CommitmentStatus.ARCHIVED


class InterferingStore(InMemoryStore):
    """Lets another writer bump the version right before the first write."""

    def __init__(self, interferences=1, **kwargs):
        super().__init__(**kwargs)
        self.interferences = interferences
        self.attempts = 0

    def compare_and_update_commitment(self, commitment, expected_version):
        self.attempts += 1
        if self.interferences > 0:
            self.interferences -= 1
            other = self.get_commitment(commitment.id)
            other.statement = "edited concurrently"
            super().compare_and_update_commitment(other, other.version)
        return super().compare_and_update_commitment(commitment, expected_version)


class TestVersionCheck:
    """Test lost-update protection"""

    def test_retry_preserves_concurrent_edit(self):
        store = InterferingStore(clock=lambda: T0)
        store.insert_commitment(make_commitment())
        sm = MilestoneStateMachine(store, DELAY, retries=3)

        out = sm.commit_confirmations("c-1", [make_confirmation(T0 + 60, T0)], T0 + 60, 10_000_000_000)

        assert out.applied == ["m-1"]
        assert store.attempts == 2
        c = store.get_commitment("c-1")
        assert c.statement == "edited concurrently"
        assert c.milestone("m-1").status == MilestoneStatus.APPROVED
        assert c.version == 2

    def test_gives_up_after_retries(self):
        store = InterferingStore(interferences=5, clock=lambda: T0)
        store.insert_commitment(make_commitment())
        sm = MilestoneStateMachine(store, DELAY, retries=2)

        with pytest.raises(ConcurrentUpdateError):
            sm.commit_confirmations("c-1", [make_confirmation(T0 + 60, T0)], T0 + 60, 1)
        assert store.attempts == 2
