#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Evaluation cycle orchestrator.

One cycle:
1. read chain time and select eligible commitments (creator rewards with a
   token, not in a terminal status, and at least one locked, uncompleted
   market-cap milestone)
2. per commitment: ingest a fresh snapshot, load the canonical pair, read the
   mint fresh from chain
3. per milestone: resume an existing ledger entry, or evaluate the threshold,
   compute the unlock amount and try to acquire the ledger entry
4. apply every acquired (or resumed) entry in one commitment update, then
   audit each confirmation
5. promote approved milestones whose claim delay has elapsed

A failure for one commitment or milestone becomes an outcome entry; the batch
always continues, even on unexpected exceptions. Failures outside the
per-commitment work (chain time, listing) abort the cycle and are audited.
"""
from __future__ import annotations

import json
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..shared.dexscreener_client import FeedError, PriceFeed
from ..shared.models import (
    CanonicalPair,
    Commitment,
    MarketCapConfirmation,
    Milestone,
    MilestoneStatus,
    MintInfo,
    PriceSnapshot,
    REWARD_KIND,
    TERMINAL_COMMITMENT_STATUSES,
)
from ..shared.solana_rpc import ChainReadError, ChainReader
from ..shared.utils import redact_sensitive, safe_error_message, supply_ui_amount
from .audit import (
    MILESTONE_BECAME_CLAIMABLE,
    MILESTONE_CONFIRMED,
    RESOLVE_COMPLETED,
    RESOLVE_ERROR,
    AuditSink,
)
from .ledger import ConfirmationLedger, ConfirmationMismatchError
from .pair_resolver import CanonicalPairResolver, ingest_latest_snapshot
from .settings import MAX_BATCH_LIMIT, EngineDisabledError, Settings
from .state_machine import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    MilestoneStateMachine,
    compute_unlock_lamports,
    released_lamports,
)
from .store import Store, StoreError
from .threshold import ThresholdEvaluator, min_price_for_threshold


@dataclass
class CycleRequest:
    """Request-scoped overrides: a single commitment and/or a smaller batch."""
    commitment_id: Optional[str] = None
    limit: Optional[int] = None

    def __post_init__(self):
        cid = str(self.commitment_id or "").strip()
        self.commitment_id = cid or None
        if self.limit is not None:
            try:
                lim = int(self.limit)
            except (TypeError, ValueError):
                lim = 0
            # Non-positive or unparsable limits fall back to the hard cap
            self.limit = min(MAX_BATCH_LIMIT, lim) if lim > 0 else None


@dataclass
class MilestoneOutcome:
    commitment_id: str
    milestone_id: Optional[str]
    step: str
    ok: bool
    confirmed: bool = False
    idempotent: bool = False
    resumed: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    unlock_lamports: Optional[int] = None
    since_unix: Optional[int] = None

    @property
    def outcome(self) -> str:
        if self.error is not None:
            return f"error:{self.error}"
        if self.confirmed:
            return "confirmed"
        if self.reason is not None:
            return f"skipped:{self.reason}"
        return "ok"

    def to_dict(self) -> Dict[str, Any]:
        d = {k: v for k, v in asdict(self).items() if v is not None and v is not False}
        d["ok"] = self.ok
        d["outcome"] = self.outcome
        return d


@dataclass
class CommitmentResult:
    commitment_id: str
    ok: bool = True
    step: Optional[str] = None
    error: Optional[str] = None
    milestones: List[MilestoneOutcome] = field(default_factory=list)
    commitment: Optional[Dict[str, Any]] = None

    def fail(self, step: str, error: str) -> "CommitmentResult":
        self.ok = False
        self.step = step
        self.error = error
        return self

    @property
    def confirmed_count(self) -> int:
        return sum(1 for m in self.milestones if m.confirmed and not m.idempotent)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"id": self.commitment_id, "ok": self.ok}
        if self.step:
            d["step"] = self.step
        if self.error:
            d["error"] = self.error
            d["outcome"] = f"error:{self.error}"
        d["milestones"] = [m.to_dict() for m in self.milestones]
        if self.commitment is not None:
            d["commitment"] = self.commitment
        return d


@dataclass
class CycleReport:
    now_unix: int
    commitment_id: Optional[str] = None
    target_count: int = 0
    confirmed_count: int = 0
    promoted_count: int = 0
    results: List[CommitmentResult] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        n = sum(1 for r in self.results if not r.ok)
        return n + sum(1 for r in self.results for m in r.milestones if m.error is not None)

    @property
    def skipped_count(self) -> int:
        return sum(1 for r in self.results for m in r.milestones if m.error is None and not m.confirmed and m.reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "now_unix": self.now_unix,
            "commitment_id": self.commitment_id,
            "target_count": self.target_count,
            "confirmed_count": self.confirmed_count,
            "promoted_count": self.promoted_count,
            "results": [r.to_dict() for r in self.results],
        }


def public_view(c: Commitment) -> Dict[str, Any]:
    """Operator-facing summary of a commitment after the cycle."""
    return {
        "id": c.id,
        "status": c.status.value,
        "token_mint": c.token_mint,
        "unlocked_lamports": c.unlocked_lamports,
        "total_funded_lamports": c.total_funded_lamports,
        "milestones": [
            {
                "id": m.id,
                "status": m.status.value,
                "unlock_lamports": m.unlock_lamports,
                "completed_at_unix": m.completed_at_unix,
                "claimable_at_unix": m.claimable_at_unix,
            }
            for m in c.milestones
        ],
    }


def is_pending_market_cap(m: Milestone) -> bool:
    return m.is_market_cap and m.status == MilestoneStatus.LOCKED and m.completed_at_unix is None


def is_eligible(c: Commitment) -> bool:
    if c.kind != REWARD_KIND or c.status in TERMINAL_COMMITMENT_STATUSES:
        return False
    if not str(c.token_mint or "").strip():
        return False
    return any(is_pending_market_cap(m) for m in c.milestones)


def _confirmed_audit_payload(conf: MarketCapConfirmation, m: Milestone, resumed: bool) -> Dict[str, Any]:
    evidence = m.auto_evidence or {}
    hit = evidence.get("hit") or {}
    supply = evidence.get("supply") or {}
    return {
        "commitment_id": conf.commitment_id,
        "milestone_id": conf.milestone_id,
        "token_mint": conf.token_mint,
        "threshold_usd": conf.threshold_usd,
        "chain_id": conf.chain_id,
        "pair_address": conf.pair_address,
        "dex_id": conf.dex_id,
        "confirmed_at_unix": conf.confirmed_at_unix,
        "hit_at_unix": m.completed_at_unix,
        "claimable_at_unix": m.claimable_at_unix,
        "status": m.status.value,
        "unlock_lamports": conf.unlock_lamports,
        "hit_price_usd": hit.get("price_usd"),
        "hit_market_cap_usd": hit.get("market_cap_usd"),
        "hit_liquidity_usd": hit.get("liquidity_usd"),
        "hit_volume_h1_usd": hit.get("volume_h1_usd"),
        "mint_authority": supply.get("mint_authority"),
        "resumed": resumed,
    }


class EvaluationOrchestrator:
    """
    Drives evaluation cycles over the commitment store.

    Usage:
        orch = EvaluationOrchestrator(settings, store, feed, chain, audit)
        report = orch.run_cycle(CycleRequest(limit=50))
    """

    def __init__(
        self,
        settings: Settings,
        store: Store,
        feed: PriceFeed,
        chain: ChainReader,
        audit: AuditSink,
        on_report: Optional[Callable[[CycleReport], None]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.feed = feed
        self.chain = chain
        self.audit = audit
        self.on_report = on_report
        mc = settings.market_cap
        self.resolver = CanonicalPairResolver(store)
        self.ledger = ConfirmationLedger(store)
        self.evaluator = ThresholdEvaluator(
            store,
            policy=mc.confirmation_policy,
            min_minutes_above=mc.min_minutes_above,
            min_samples=mc.min_samples,
            max_gap_seconds=mc.max_gap_seconds,
        )
        self.state_machine = MilestoneStateMachine(store, mc.claim_delay_seconds, retries=settings.run.commit_retries)
        self.logger = logging.getLogger(self.__class__.__name__)

    # ---------- cycle ----------
    def run_cycle(self, request: Optional[CycleRequest] = None, context: Optional[Dict[str, Any]] = None) -> CycleReport:
        """
        Run one evaluation cycle.

        Raises:
            EngineDisabledError: market-cap engine switched off; nothing is read
        """
        req = request or CycleRequest()
        if not self.settings.market_cap.enabled:
            raise EngineDisabledError(
                "Market cap milestones are disabled; set CTS_ENABLE_MARKETCAP_MILESTONES=1 to enable"
            )
        try:
            report = self._run(req)
        except Exception as e:
            self.audit.record(RESOLVE_ERROR, {"error": safe_error_message(e), **(context or {})})
            raise

        self.audit.record(RESOLVE_COMPLETED, {
            "now_unix": report.now_unix,
            "commitment_id": req.commitment_id,
            "target_count": report.target_count,
            "confirmed_count": report.confirmed_count,
            "promoted_count": report.promoted_count,
            **(context or {}),
        })
        self.logger.info(
            f"Cycle done now={report.now_unix} targets={report.target_count} confirmed={report.confirmed_count} "
            f"promoted={report.promoted_count} failed={report.failed_count}"
        )
        if self.on_report is not None:
            self.on_report(report)
        return report

    def _run(self, req: CycleRequest) -> CycleReport:
        now = int(self.chain.get_chain_time())
        cap = min(req.limit or self.settings.run.max_batch, MAX_BATCH_LIMIT)

        commitments = self.store.list_commitments()
        if req.commitment_id:
            commitments = [c for c in commitments if c.id == req.commitment_id]
        targets = [c for c in commitments if is_eligible(c)][:cap]
        self.logger.debug(f"Selected {len(targets)} target(s) of {len(commitments)} commitment(s) cap={cap}")

        report = CycleReport(now_unix=now, commitment_id=req.commitment_id, target_count=len(targets))

        workers = max(1, int(self.settings.run.workers))
        if workers > 1 and len(targets) > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="escrow-eval") as pool:
                report.results = list(pool.map(lambda c: self._process_commitment(c, now), targets))
        else:
            report.results = [self._process_commitment(c, now) for c in targets]

        report.confirmed_count = sum(r.confirmed_count for r in report.results)
        report.promoted_count = self._promote_due(commitments, now)
        return report

    # ---------- per commitment ----------
    def _process_commitment(self, c: Commitment, now: int) -> CommitmentResult:
        result = CommitmentResult(commitment_id=c.id)
        try:
            return self._evaluate_commitment(c, now, result)
        except Exception as e:
            self.logger.exception(f"Unexpected failure commitment={c.id}")
            return result.fail("evaluate", safe_error_message(e))

    def _evaluate_commitment(self, c: Commitment, now: int, result: CommitmentResult) -> CommitmentResult:
        mc = self.settings.market_cap
        chain_id = mc.chain_id.strip().lower()
        token = str(c.token_mint or "").strip()

        try:
            ingest = ingest_latest_snapshot(
                self.store, self.resolver, self.feed, token, chain_id, mc.min_liquidity_usd, now,
            )
        except FeedError as e:
            self.logger.warning(f"Feed failure commitment={c.id} token={token}: {e}")
            return result.fail("ingest", redact_sensitive(str(e)))
        except StoreError as e:
            return result.fail("ingest", safe_error_message(e))
        if not ingest.ok:
            return result.fail("ingest", ingest.error or "Ingest failed")

        try:
            canonical = self.store.get_canonical_pair(token, chain_id)
        except StoreError as e:
            return result.fail("canonical", safe_error_message(e))
        if canonical is None:
            return result.fail("canonical", "Canonical pair missing")

        try:
            mint = self.chain.verify_mint_exists(token)
            if not mint.exists or not mint.is_mint or mint.supply is None or mint.decimals is None:
                return result.fail("mint", "Mint not found")
            mint_authority = self.chain.get_mint_authority(token)
        except ChainReadError as e:
            self.logger.warning(f"Chain read failure commitment={c.id} token={token}: {e}")
            return result.fail("mint", redact_sensitive(str(e)))

        supply_ui = supply_ui_amount(mint.supply, mint.decimals)
        since = max(1, now - mc.lookback_seconds)

        pending: List[MarketCapConfirmation] = []
        pending_outcomes: Dict[str, MilestoneOutcome] = {}
        balance: Dict[str, Optional[int]] = {}

        for m in c.milestones:
            if not is_pending_market_cap(m):
                continue
            try:
                outcome, conf = self._evaluate_milestone(
                    c, m, now, since, token, chain_id, canonical, mint, mint_authority, supply_ui, balance,
                )
            except StoreError as e:
                outcome, conf = MilestoneOutcome(c.id, m.id, "evaluate", ok=False, error=safe_error_message(e)), None
            result.milestones.append(outcome)
            if conf is not None:
                pending.append(conf)
                pending_outcomes[m.id] = outcome

        latest = c
        if pending:
            latest = self._commit(c, pending, pending_outcomes, now, balance.get("lamports"))
        result.commitment = public_view(latest)
        return result

    def _evaluate_milestone(
        self,
        c: Commitment,
        m: Milestone,
        now: int,
        since: int,
        token: str,
        chain_id: str,
        canonical: CanonicalPair,
        mint: MintInfo,
        mint_authority: Optional[str],
        supply_ui: float,
        balance: Dict[str, Optional[int]],
    ) -> tuple[MilestoneOutcome, Optional[MarketCapConfirmation]]:
        """Outcome for one milestone plus the ledger entry to apply, if any."""
        mc = self.settings.market_cap

        def _out(step: str, **kw) -> MilestoneOutcome:
            return MilestoneOutcome(commitment_id=c.id, milestone_id=m.id, step=step, **kw)

        threshold = m.market_cap_threshold_usd
        if threshold is None or not math.isfinite(threshold) or threshold <= 0:
            return _out("evaluate", ok=True, reason="invalid_threshold"), None
        threshold = float(threshold)

        existing = self.ledger.get(c.id, m.id)
        if existing is not None:
            return self._from_existing(c, m, existing, now, token, threshold)

        if m.require_no_mint_authority and mint_authority:
            return _out("evaluate", ok=True, reason="mint_authority_present"), None

        min_price = min_price_for_threshold(threshold, supply_ui)
        if min_price is None:
            return _out("evaluate", ok=False, error="Invalid token supply"), None

        try:
            hit = self.evaluator.find_first_above(
                token, chain_id, canonical.pair_address, since,
                min_price, mc.min_liquidity_usd, mc.min_volume_h1_usd,
            )
        except StoreError as e:
            return _out("evaluate", ok=False, error=safe_error_message(e)), None
        if hit is None:
            return _out("evaluate", ok=True, reason="threshold_not_hit", since_unix=since), None

        # One balance read per commitment per cycle
        if "lamports" not in balance:
            try:
                balance["lamports"] = int(self.chain.get_balance(c.escrow_pubkey))
            except ChainReadError as e:
                self.logger.warning(f"Balance read failed commitment={c.id}: {e}")
                return _out("unlock", ok=False, error=redact_sensitive(str(e))), None
        total_funded = max(0, int(balance["lamports"]) + released_lamports(c))

        unlock = compute_unlock_lamports(m, total_funded)
        if unlock <= 0:
            return _out("unlock", ok=False, error="Invalid unlock amount"), None

        evidence = self._build_evidence(
            token, chain_id, threshold, now, hit, canonical, mint, mint_authority, supply_ui, since, min_price,
        )
        conf = MarketCapConfirmation(
            commitment_id=c.id,
            milestone_id=m.id,
            token_mint=token,
            confirmed_at_unix=now,
            total_funded_lamports=total_funded,
            unlock_lamports=unlock,
            threshold_usd=threshold,
            chain_id=chain_id,
            pair_address=canonical.pair_address,
            dex_id=canonical.dex_id,
            evidence_json=json.dumps(evidence, sort_keys=True),
        )

        try:
            acquired = self.ledger.try_acquire(conf)
        except ConfirmationMismatchError as e:
            return _out("confirm", ok=False, error=str(e)), None
        except StoreError as e:
            return _out("confirm", ok=False, error=safe_error_message(e)), None
        if not acquired.acquired:
            # Lost the race to a concurrent run; it owns the state update
            return _out("confirm", ok=True, confirmed=True, idempotent=True), None

        return _out("confirm", ok=True, confirmed=True, unlock_lamports=unlock), conf

    def _from_existing(
        self,
        c: Commitment,
        m: Milestone,
        existing: MarketCapConfirmation,
        now: int,
        token: str,
        threshold: float,
    ) -> tuple[MilestoneOutcome, Optional[MarketCapConfirmation]]:
        """
        A ledger entry exists for a milestone that is still uncompleted.

        - token or threshold differ: data-integrity failure, never reconciled
        - entry already applied once (milestone since reset by an administrator)
          or younger than the resume grace: idempotent, no write
        - otherwise the winner's state update was lost; re-apply from the entry
        """
        try:
            self.ledger.verify_existing(existing, token, threshold)
        except ConfirmationMismatchError as e:
            return MilestoneOutcome(c.id, m.id, "confirm", ok=False, error=str(e)), None

        applied_before = m.auto_confirmed_at_unix is not None and m.auto_confirmed_at_unix == existing.confirmed_at_unix
        age = now - int(existing.confirmed_at_unix)
        if applied_before or age < self.settings.market_cap.resume_grace_seconds:
            return MilestoneOutcome(c.id, m.id, "confirm", ok=True, confirmed=True, idempotent=True), None

        self.logger.warning(
            f"Resuming orphaned confirmation commitment={c.id} milestone={m.id} age={age}s"
        )
        outcome = MilestoneOutcome(
            c.id, m.id, "resume", ok=True, confirmed=True, resumed=True, unlock_lamports=existing.unlock_lamports,
        )
        return outcome, existing

    def _build_evidence(
        self,
        token: str,
        chain_id: str,
        threshold: float,
        now: int,
        hit: PriceSnapshot,
        canonical: CanonicalPair,
        mint: MintInfo,
        mint_authority: Optional[str],
        supply_ui: float,
        since: int,
        min_price: float,
    ) -> Dict[str, Any]:
        mc = self.settings.market_cap
        hit_at = min(now, int(hit.fetched_at_unix)) if hit.fetched_at_unix > 0 else now
        return {
            "token_mint": token,
            "chain_id": chain_id,
            "threshold_usd": threshold,
            "confirmed_at_unix": now,
            "hit_at_unix": hit_at,
            "hit": {
                "fetched_at_unix": hit.fetched_at_unix,
                "price_usd": hit.price_usd,
                "liquidity_usd": hit.liquidity_usd,
                "volume_h1_usd": hit.volume_h1_usd,
                "volume_h24_usd": hit.volume_h24_usd,
                "market_cap_usd": hit.price_usd * supply_ui,
            },
            "canonical_pair": {
                "pair_address": canonical.pair_address,
                "dex_id": canonical.dex_id,
                "url": canonical.url,
            },
            "supply": {
                "supply_raw": str(mint.supply),
                "decimals": mint.decimals,
                "supply_ui": supply_ui,
                "mint_authority": mint_authority,
            },
            "floors": {
                "min_liquidity_usd": mc.min_liquidity_usd,
                "min_volume_h1_usd": mc.min_volume_h1_usd,
                "lookback_seconds": mc.lookback_seconds,
                "confirmation_policy": mc.confirmation_policy,
            },
            "observed": {
                "since_unix": since,
                "min_price_usd": min_price,
            },
        }

    def _commit(
        self,
        c: Commitment,
        pending: List[MarketCapConfirmation],
        outcomes: Dict[str, MilestoneOutcome],
        now: int,
        balance_lamports: Optional[int],
    ) -> Commitment:
        """Single commitment write for every acquired or resumed entry, then audits."""
        try:
            out = self.state_machine.commit_confirmations(c.id, pending, now, balance_lamports)
        except (ConcurrentUpdateError, InvalidTransitionError, StoreError) as e:
            msg = safe_error_message(e)
            self.logger.error(f"Commit failed commitment={c.id}: {msg}; ledger entries will be resumed")
            for o in outcomes.values():
                o.ok = False
                o.confirmed = False
                o.step = "commit"
                o.error = msg
            return c

        applied = set(out.applied)
        for conf in pending:
            o = outcomes[conf.milestone_id]
            if conf.milestone_id not in applied:
                # Completed by a concurrent writer between our read and our write
                o.idempotent = True
                continue
            m = out.commitment.milestone(conf.milestone_id)
            self.audit.record(MILESTONE_CONFIRMED, _confirmed_audit_payload(conf, m, o.resumed))
        return out.commitment

    # ---------- promotion ----------
    def _promote_due(self, commitments: List[Commitment], now: int) -> int:
        promoted = 0
        for c in commitments:
            if c.kind != REWARD_KIND or c.status in TERMINAL_COMMITMENT_STATUSES:
                continue
            due = [
                m for m in c.milestones
                if m.status == MilestoneStatus.APPROVED and m.claimable_at_unix is not None and m.claimable_at_unix <= now
            ]
            if not due:
                continue
            try:
                out = self.state_machine.promote_due(c.id, now)
            except (ConcurrentUpdateError, StoreError) as e:
                self.logger.warning(f"Promotion failed commitment={c.id}: {safe_error_message(e)}")
                continue
            for mid in out.applied:
                m = out.commitment.milestone(mid)
                promoted += 1
                self.audit.record(MILESTONE_BECAME_CLAIMABLE, {
                    "commitment_id": c.id,
                    "milestone_id": mid,
                    "claimable_at_unix": m.claimable_at_unix,
                    "became_claimable_at_unix": m.became_claimable_at_unix,
                    "unlock_lamports": m.unlock_lamports,
                })
                self.logger.info(f"Milestone became claimable commitment={c.id} milestone={mid}")
        return promoted
