#!/usr/bin/env python3
"""
Integration tests for the evaluation cycle

Tests cover:
- confirming a market-cap milestone end to end (pin, snapshot, ledger, state, audit)
- re-runs, lost races and resumption of orphaned ledger entries
- mint authority guard, feed and chain failures, invalid inputs
- eligibility, commitment filter, batch limits and promotion
- disabled engine and unexpected failures
"""
import json
import threading

import pytest

from escrow_orchestrator.core.audit import (
    MILESTONE_BECAME_CLAIMABLE,
    MILESTONE_CONFIRMED,
    RESOLVE_COMPLETED,
    RESOLVE_ERROR,
)
from escrow_orchestrator.core.orchestrator import CycleRequest, EvaluationOrchestrator, is_eligible
from escrow_orchestrator.core.settings import EngineDisabledError
from escrow_orchestrator.shared.models import (
    CommitmentStatus,
    MarketCapConfirmation,
    Milestone,
    MilestoneStatus,
)

from fakes import LAMPORTS_PER_SOL, PAIR, T0, TOKEN, FakeChain, FakeFeed, make_commitment, make_pair, make_snapshot

NOW = T0 + 10 * 3600
DELAY = 48 * 3600


def seed_history(store, token=TOKEN):
    for ts, price in ((T0 - 120, 0.0005), (T0 - 60, 0.0009), (T0, 0.0012)):
        store.insert_snapshot(make_snapshot(ts, price, token=token))


def ledger_entry(confirmed_at, threshold=1_000_000.0, unlock=123, total=1_000, hit_at=T0):
    return MarketCapConfirmation(
        commitment_id="c-1",
        milestone_id="m-1",
        token_mint=TOKEN,
        confirmed_at_unix=confirmed_at,
        total_funded_lamports=total,
        unlock_lamports=unlock,
        threshold_usd=threshold,
        chain_id="solana",
        pair_address=PAIR,
        dex_id="raydium",
        evidence_json=json.dumps({"hit_at_unix": hit_at}),
    )


def only_milestone(report):
    assert len(report.results) == 1
    assert len(report.results[0].milestones) == 1
    return report.results[0].milestones[0]


class TestConfirmation:
    """Test the happy path"""

    def test_confirms_and_approves(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        seed_history(store)

        report = orchestrator.run_cycle()

        assert report.now_unix == NOW
        assert report.target_count == 1
        assert report.confirmed_count == 1
        o = only_milestone(report)
        assert o.outcome == "confirmed"
        assert not o.idempotent
        assert o.unlock_lamports == 10 * LAMPORTS_PER_SOL // 4

        c = store.get_commitment("c-1")
        m = c.milestone("m-1")
        assert m.status == MilestoneStatus.APPROVED
        assert m.completed_at_unix == T0
        assert m.approved_at_unix == T0
        assert m.claimable_at_unix == T0 + DELAY
        assert m.auto_confirmed_at_unix == NOW
        assert m.unlock_lamports == 2_500_000_000
        assert c.status == CommitmentStatus.ACTIVE
        assert c.total_funded_lamports == 10 * LAMPORTS_PER_SOL
        assert c.unlocked_lamports == 0

    def test_pins_pair_and_records_snapshot(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        orchestrator.run_cycle()

        pin = store.get_canonical_pair(TOKEN, "solana")
        assert pin.pair_address == PAIR
        latest = store.list_snapshots(TOKEN, "solana", PAIR, NOW)
        assert [s.price_usd for s in latest] == [0.0011]

    def test_ledger_and_evidence(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        seed_history(store)
        orchestrator.run_cycle()

        entry = store.get_confirmation("c-1", "m-1")
        assert entry.confirmed_at_unix == NOW
        assert entry.unlock_lamports == 2_500_000_000
        assert entry.total_funded_lamports == 10 * LAMPORTS_PER_SOL
        evidence = json.loads(entry.evidence_json)
        assert evidence["hit_at_unix"] == T0
        assert evidence["hit"]["price_usd"] == 0.0012
        assert evidence["hit"]["market_cap_usd"] == pytest.approx(1_200_000.0)
        assert evidence["observed"]["min_price_usd"] == pytest.approx(0.001)
        assert evidence["observed"]["since_unix"] == NOW - 365 * 24 * 3600
        assert evidence["supply"]["supply_raw"] == str(10 ** 15)
        assert evidence["supply"]["mint_authority"] is None
        assert evidence["canonical_pair"]["pair_address"] == PAIR
        assert evidence["floors"]["confirmation_policy"] == "first_sample"

        m = store.get_commitment("c-1").milestone("m-1")
        assert m.auto_evidence == evidence

    def test_audit_records(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        seed_history(store)
        orchestrator.run_cycle(context={"cron": True})

        confirmed = store.list_audit(MILESTONE_CONFIRMED)
        assert len(confirmed) == 1
        payload = confirmed[0]["payload"]
        assert payload["commitment_id"] == "c-1"
        assert payload["hit_at_unix"] == T0
        assert payload["status"] == "approved"
        assert payload["resumed"] is False

        completed = store.list_audit(RESOLVE_COMPLETED)
        assert completed[0]["payload"]["confirmed_count"] == 1
        assert completed[0]["payload"]["cron"] is True

    def test_claimable_immediately_when_hit_is_old(self, orchestrator, store, chain):
        chain.now = T0 + DELAY + 60
        store.insert_commitment(make_commitment())
        seed_history(store)

        orchestrator.run_cycle()

        c = store.get_commitment("c-1")
        m = c.milestone("m-1")
        assert m.status == MilestoneStatus.CLAIMABLE
        assert m.became_claimable_at_unix == T0 + DELAY + 60
        assert c.unlocked_lamports == 2_500_000_000

    def test_absolute_unlock_wins(self, orchestrator, store):
        ms = [Milestone(id="m-1", unlock_lamports=500_000_000, unlock_percent=50.0,
                        auto_kind="market_cap", market_cap_threshold_usd=1_000_000.0)]
        store.insert_commitment(make_commitment(milestones=ms))
        seed_history(store)

        report = orchestrator.run_cycle()
        assert only_milestone(report).unlock_lamports == 500_000_000

    def test_balance_read_once_per_commitment(self, orchestrator, store, chain):
        ms = [
            Milestone(id="m-1", unlock_percent=10.0, auto_kind="market_cap", market_cap_threshold_usd=500_000.0),
            Milestone(id="m-2", unlock_percent=20.0, auto_kind="market_cap", market_cap_threshold_usd=1_000_000.0),
            Milestone(id="m-3", unlock_percent=30.0, auto_kind="market_cap", market_cap_threshold_usd=5_000_000.0),
        ]
        store.insert_commitment(make_commitment(milestones=ms))
        seed_history(store)

        report = orchestrator.run_cycle()

        outcomes = {o.milestone_id: o.outcome for o in report.results[0].milestones}
        assert outcomes == {"m-1": "confirmed", "m-2": "confirmed", "m-3": "skipped:threshold_not_hit"}
        assert chain.balance_reads == 1
        c = store.get_commitment("c-1")
        assert c.version == 1
        # 500k needs 0.0005, first met by the earliest snapshot
        assert c.milestone("m-1").completed_at_unix == T0 - 120
        assert c.milestone("m-3").status == MilestoneStatus.LOCKED


class TestIdempotency:
    """Test re-runs and overlapping runs"""

    def test_rerun_changes_nothing(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        seed_history(store)
        orchestrator.run_cycle()
        before = store.get_commitment("c-1")

        report = orchestrator.run_cycle()

        assert report.target_count == 0
        assert report.confirmed_count == 0
        after = store.get_commitment("c-1")
        assert after.version == before.version
        assert len(store.list_audit(MILESTONE_CONFIRMED)) == 1

    def test_fresh_entry_from_other_run_is_idempotent(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        store.insert_confirmation_if_absent(ledger_entry(confirmed_at=NOW - 10))

        report = orchestrator.run_cycle()

        o = only_milestone(report)
        assert o.confirmed and o.idempotent
        assert report.confirmed_count == 0
        assert store.get_commitment("c-1").milestone("m-1").status == MilestoneStatus.LOCKED
        assert store.list_audit(MILESTONE_CONFIRMED) == []

    def test_orphaned_entry_is_resumed(self, orchestrator, store, feed, chain):
        # Price never reached the floor here; only the ledger says otherwise
        feed.pairs = [make_pair(0.0001)]
        store.insert_commitment(make_commitment())
        store.insert_confirmation_if_absent(ledger_entry(confirmed_at=NOW - 600))

        report = orchestrator.run_cycle()

        o = only_milestone(report)
        assert o.step == "resume"
        assert o.resumed
        assert o.unlock_lamports == 123
        assert report.confirmed_count == 1
        assert chain.balance_reads == 0

        c = store.get_commitment("c-1")
        m = c.milestone("m-1")
        assert m.status == MilestoneStatus.APPROVED
        assert m.unlock_lamports == 123
        assert m.completed_at_unix == T0
        assert m.auto_confirmed_at_unix == NOW - 600
        assert c.total_funded_lamports == 1_000
        assert store.list_audit(MILESTONE_CONFIRMED)[0]["payload"]["resumed"] is True

    def test_mismatched_entry_is_an_error(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        store.insert_confirmation_if_absent(ledger_entry(confirmed_at=NOW - 600, threshold=2_000_000.0))

        report = orchestrator.run_cycle()

        o = only_milestone(report)
        assert not o.ok
        assert o.outcome == "error:Existing confirmation mismatch"
        assert store.get_commitment("c-1").milestone("m-1").status == MilestoneStatus.LOCKED

    def test_admin_reset_is_not_reconfirmed(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        seed_history(store)
        orchestrator.run_cycle()
        orchestrator.state_machine.override_milestone_status("c-1", "m-1", MilestoneStatus.LOCKED, NOW)
        orchestrator.chain.now = NOW + 3600

        report = orchestrator.run_cycle()

        o = only_milestone(report)
        assert o.idempotent
        assert store.get_commitment("c-1").milestone("m-1").status == MilestoneStatus.LOCKED
        assert len(store.list_audit(MILESTONE_CONFIRMED)) == 1

    def test_overlapping_runs_confirm_once(self, settings, store, audit):
        store.insert_commitment(make_commitment())
        seed_history(store)
        runs = [
            EvaluationOrchestrator(settings, store, FakeFeed([make_pair(0.0011)]), FakeChain(now=NOW), audit)
            for _ in range(4)
        ]
        barrier = threading.Barrier(len(runs))
        reports = []

        def go(orch):
            barrier.wait()
            reports.append(orch.run_cycle())

        threads = [threading.Thread(target=go, args=(r,)) for r in runs]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(reports) == 4
        assert sum(r.confirmed_count for r in reports) == 1
        assert len(store.list_audit(MILESTONE_CONFIRMED)) == 1
        m = store.get_commitment("c-1").milestone("m-1")
        assert m.status == MilestoneStatus.APPROVED
        assert m.unlock_lamports == 2_500_000_000


class TestGuardsAndFailures:
    """Test skips, per-commitment failures and batch continuation"""

    def test_mint_authority_present(self, orchestrator, store, chain):
        chain.mint_authority = "MintAuth111111111111111111111111111111111111"
        store.insert_commitment(make_commitment())
        seed_history(store)

        report = orchestrator.run_cycle()

        assert only_milestone(report).outcome == "skipped:mint_authority_present"
        assert store.get_confirmation("c-1", "m-1") is None

    def test_mint_authority_allowed_when_opted_out(self, orchestrator, store, chain):
        chain.mint_authority = "MintAuth111111111111111111111111111111111111"
        ms = [Milestone(id="m-1", unlock_percent=25.0, auto_kind="market_cap",
                        market_cap_threshold_usd=1_000_000.0, require_no_mint_authority=False)]
        store.insert_commitment(make_commitment(milestones=ms))
        seed_history(store)

        assert only_milestone(orchestrator.run_cycle()).outcome == "confirmed"

    def test_threshold_not_hit(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        store.insert_snapshot(make_snapshot(T0, 0.0005))
        # Live price below the floor as well
        orchestrator.feed.pairs = [make_pair(0.0007)]

        o = only_milestone(orchestrator.run_cycle())
        assert o.outcome == "skipped:threshold_not_hit"
        assert o.since_unix == NOW - 365 * 24 * 3600

    def test_feed_failure_does_not_stop_batch(self, orchestrator, store, feed):
        other = "OtherMint111111111111111111111111111111111"
        feed.fail_tokens.add(TOKEN)
        store.insert_commitment(make_commitment(cid="c-1"))
        store.insert_commitment(make_commitment(cid="c-2", token=other))
        seed_history(store, token=other)

        report = orchestrator.run_cycle()

        by_id = {r.commitment_id: r for r in report.results}
        assert not by_id["c-1"].ok
        assert by_id["c-1"].step == "ingest"
        assert by_id["c-1"].error.startswith("Price feed request failed")
        assert by_id["c-2"].ok
        assert by_id["c-2"].milestones[0].outcome == "confirmed"
        assert report.failed_count == 1

    def test_no_suitable_pair(self, orchestrator, store, feed):
        feed.pairs = [make_pair(0.002, liquidity=1_000.0)]
        store.insert_commitment(make_commitment())

        r = orchestrator.run_cycle().results[0]
        assert (r.ok, r.step, r.error) == (False, "ingest", "No suitable pair")

    def test_chain_failure_on_mint(self, orchestrator, store, chain):
        chain.fail_mints.add(TOKEN)
        store.insert_commitment(make_commitment())

        r = orchestrator.run_cycle().results[0]
        assert r.step == "mint"
        assert not r.ok

    def test_zero_supply(self, orchestrator, store, chain):
        chain.supply = 0
        store.insert_commitment(make_commitment())
        seed_history(store)

        o = only_milestone(orchestrator.run_cycle())
        assert o.outcome == "error:Invalid token supply"

    def test_invalid_threshold(self, orchestrator, store):
        ms = [Milestone(id="m-1", unlock_percent=25.0, auto_kind="market_cap", market_cap_threshold_usd=0.0)]
        store.insert_commitment(make_commitment(milestones=ms))

        o = only_milestone(orchestrator.run_cycle())
        assert o.ok
        assert o.outcome == "skipped:invalid_threshold"

    def test_invalid_unlock_amount(self, orchestrator, store):
        ms = [Milestone(id="m-1", auto_kind="market_cap", market_cap_threshold_usd=1_000_000.0)]
        store.insert_commitment(make_commitment(milestones=ms))
        seed_history(store)

        o = only_milestone(orchestrator.run_cycle())
        assert o.outcome == "error:Invalid unlock amount"
        assert store.get_confirmation("c-1", "m-1") is None

    def test_non_finite_percent_does_not_stop_batch(self, orchestrator, store):
        bad = Milestone(id="m-1", unlock_percent=25.0, auto_kind="market_cap", market_cap_threshold_usd=1_000_000.0)
        bad.unlock_percent = float("nan")
        store.insert_commitment(make_commitment(cid="c-bad", milestones=[bad]))
        store.insert_commitment(make_commitment(cid="c-good"))
        seed_history(store)

        report = orchestrator.run_cycle()

        by_id = {r.commitment_id: r for r in report.results}
        assert [m.outcome for m in by_id["c-bad"].milestones] == ["error:Invalid unlock amount"]
        assert [m.outcome for m in by_id["c-good"].milestones] == ["confirmed"]
        assert store.get_confirmation("c-bad", "m-1") is None
        assert store.get_commitment("c-bad").milestones[0].status == MilestoneStatus.LOCKED
        assert store.list_audit(RESOLVE_ERROR) == []

    def test_unexpected_error_fails_only_that_commitment(self, orchestrator, store, chain, monkeypatch):
        other = "OtherMint111111111111111111111111111111111"

        def mint_authority(token_mint):
            if token_mint == TOKEN:
                raise RuntimeError("unexpected account layout")
            return None

        monkeypatch.setattr(chain, "get_mint_authority", mint_authority)
        store.insert_commitment(make_commitment(cid="c-1"))
        store.insert_commitment(make_commitment(cid="c-2", token=other))
        seed_history(store, token=other)

        report = orchestrator.run_cycle()

        by_id = {r.commitment_id: r for r in report.results}
        assert (by_id["c-1"].ok, by_id["c-1"].step, by_id["c-1"].error) == (False, "evaluate", "unexpected account layout")
        assert by_id["c-2"].milestones[0].outcome == "confirmed"
        assert store.list_audit(RESOLVE_ERROR) == []
        assert len(store.list_audit(RESOLVE_COMPLETED)) == 1


class TestSelection:
    """Test eligibility, filters and limits"""

    def test_eligibility(self):
        assert is_eligible(make_commitment())
        assert not is_eligible(make_commitment(kind="bounty"))
        assert not is_eligible(make_commitment(token=None))
        assert not is_eligible(make_commitment(milestones=[Milestone(id="m", unlock_percent=5.0)]))
        done = Milestone(id="m", auto_kind="market_cap", market_cap_threshold_usd=1.0, completed_at_unix=T0)
        assert not is_eligible(make_commitment(milestones=[done]))

    @pytest.mark.parametrize("status", [
        CommitmentStatus.RESOLVED_SUCCESS,
        CommitmentStatus.RESOLVED_FAILURE,
        CommitmentStatus.COMPLETED,
        CommitmentStatus.FAILED,
        CommitmentStatus.ARCHIVED,
    ])
    def test_terminal_status_not_eligible(self, status):
        c = make_commitment()
        c.status = status
        assert not is_eligible(c)

    def test_active_status_eligible(self):
        c = make_commitment()
        c.status = CommitmentStatus.ACTIVE
        assert is_eligible(c)

    def test_commitment_filter(self, orchestrator, store, feed):
        store.insert_commitment(make_commitment(cid="c-1"))
        store.insert_commitment(make_commitment(cid="c-2"))

        report = orchestrator.run_cycle(CycleRequest(commitment_id=" c-2 "))

        assert report.commitment_id == "c-2"
        assert [r.commitment_id for r in report.results] == ["c-2"]
        assert len(feed.calls) == 1

    def test_limit(self, orchestrator, store):
        for i in range(5):
            store.insert_commitment(make_commitment(cid=f"c-{i}"))

        assert orchestrator.run_cycle(CycleRequest(limit=2)).target_count == 2

    @pytest.mark.parametrize("raw,expected", [
        (None, None),
        (0, None),
        (-3, None),
        ("abc", None),
        ("7", 7),
        (1_000, 200),
    ])
    def test_limit_parsing(self, raw, expected):
        assert CycleRequest(limit=raw).limit == expected

    def test_parallel_workers(self, settings, store, feed, chain, audit):
        settings.run.workers = 4
        orch = EvaluationOrchestrator(settings, store, feed, chain, audit)
        for i in range(6):
            store.insert_commitment(make_commitment(cid=f"c-{i}"))
        seed_history(store)

        report = orch.run_cycle()

        assert report.confirmed_count == 6
        assert sorted(r.commitment_id for r in report.results) == [f"c-{i}" for i in range(6)]


class TestPromotion:
    """Test approved -> claimable on later cycles"""

    def test_promotes_after_delay(self, orchestrator, store, chain):
        store.insert_commitment(make_commitment())
        seed_history(store)
        orchestrator.run_cycle()

        chain.now = T0 + DELAY
        report = orchestrator.run_cycle()

        assert report.target_count == 0
        assert report.promoted_count == 1
        c = store.get_commitment("c-1")
        assert c.milestone("m-1").status == MilestoneStatus.CLAIMABLE
        assert c.milestone("m-1").became_claimable_at_unix == T0 + DELAY
        assert c.unlocked_lamports == 2_500_000_000
        events = store.list_audit(MILESTONE_BECAME_CLAIMABLE)
        assert len(events) == 1
        assert events[0]["payload"]["milestone_id"] == "m-1"

    def test_not_before_claimable_at(self, orchestrator, store, chain):
        store.insert_commitment(make_commitment())
        seed_history(store)
        orchestrator.run_cycle()

        chain.now = T0 + DELAY - 1
        assert orchestrator.run_cycle().promoted_count == 0

    def test_terminal_commitment_not_promoted(self, orchestrator, store, chain):
        store.insert_commitment(make_commitment())
        seed_history(store)
        orchestrator.run_cycle()
        orchestrator.state_machine.set_commitment_status("c-1", CommitmentStatus.FAILED)

        chain.now = T0 + DELAY
        assert orchestrator.run_cycle().promoted_count == 0
        assert store.get_commitment("c-1").milestone("m-1").status == MilestoneStatus.APPROVED


class TestCycleLevel:
    """Test engine flag and unexpected failures"""

    def test_disabled_engine_reads_nothing(self, orchestrator, settings, store, feed):
        settings.market_cap.enabled = False
        store.insert_commitment(make_commitment())

        with pytest.raises(EngineDisabledError, match="CTS_ENABLE_MARKETCAP_MILESTONES"):
            orchestrator.run_cycle()
        assert feed.calls == []
        assert store.list_audit() == []

    def test_unexpected_error_is_audited_and_raised(self, orchestrator, store, chain):
        chain.time_error = RuntimeError("boom")
        store.insert_commitment(make_commitment())

        with pytest.raises(RuntimeError):
            orchestrator.run_cycle(context={"cron": True})

        errors = store.list_audit(RESOLVE_ERROR)
        assert errors[0]["payload"] == {"error": "boom", "cron": True}

    def test_report_dict(self, orchestrator, store):
        store.insert_commitment(make_commitment())
        seed_history(store)
        d = orchestrator.run_cycle().to_dict()

        assert d["ok"] is True
        assert d["target_count"] == 1
        r = d["results"][0]
        assert r["id"] == "c-1"
        assert r["milestones"][0]["outcome"] == "confirmed"
        assert r["commitment"]["milestones"][0]["status"] == "approved"

    def test_on_report_hook(self, settings, store, feed, chain, audit):
        seen = []
        orch = EvaluationOrchestrator(settings, store, feed, chain, audit, on_report=seen.append)
        orch.run_cycle()
        assert len(seen) == 1 and seen[0].target_count == 0
