#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Administrative actions.

Every action is authorized through the Authorizer, audited, and answers with
an AdminResponse carrying an HTTP-style status code and a JSON body so the
same calls back the HTTP handler and direct use from Python.

Actions:
- resolve_market_cap_milestones: run one evaluation cycle on demand
- set_commitment_status: change a commitment's lifecycle status
- override_milestone_status: force a milestone status (may move backwards)
- record_release: mark a claimable milestone released with its payout tx
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from ..shared.models import CommitmentStatus, MilestoneStatus
from ..shared.utils import safe_error_message
from .audit import (
    COMMITMENT_UPDATE_DENIED,
    COMMITMENT_UPDATE_ERROR,
    COMMITMENT_UPDATE_OK,
    MILESTONE_OVERRIDE,
    MILESTONE_RELEASED,
    RESOLVE_DENIED,
    AuditSink,
)
from .authorization import Authorizer
from .orchestrator import CycleRequest, EvaluationOrchestrator, public_view
from .settings import Settings
from .state_machine import InvalidTransitionError, MilestoneStateMachine
from .store import Store

_COMMITMENT_STATUSES = {s.value for s in CommitmentStatus}
_MILESTONE_STATUSES = {s.value for s in MilestoneStatus}


@dataclass
class AdminRequest:
    headers: Mapping[str, Any] = field(default_factory=dict)
    body: Any = None

    def get(self, name: str) -> Any:
        return self.body.get(name) if isinstance(self.body, dict) else None

    def text(self, name: str) -> str:
        value = self.get(name)
        return value.strip() if isinstance(value, str) else ""


@dataclass
class AdminResponse:
    status_code: int
    body: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def _error(status_code: int, message: str, **extra: Any) -> AdminResponse:
    return AdminResponse(status_code, {"error": message, **extra})


class AdminService:
    def __init__(
        self,
        settings: Settings,
        store: Store,
        orchestrator: EvaluationOrchestrator,
        audit: AuditSink,
        authorizer: Authorizer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.orchestrator = orchestrator
        self.audit = audit
        self.authorizer = authorizer
        self._clock = clock
        self.state_machine = MilestoneStateMachine(
            store, settings.market_cap.claim_delay_seconds, retries=settings.run.commit_retries,
        )
        self.logger = logging.getLogger(self.__class__.__name__)

    def resolve_market_cap_milestones(self, request: AdminRequest, overrides: Optional[CycleRequest] = None) -> AdminResponse:
        """
        Guarded on-demand cycle.

        The feature flag is checked before authorization so a disabled engine
        answers 503 without touching the audit log. `overrides` wins over the
        request body's commitmentId / limit.
        """
        if not self.settings.market_cap.enabled:
            return _error(
                503,
                "Market cap milestones are disabled",
                hint="Set CTS_ENABLE_MARKETCAP_MILESTONES=1 (or true) to enable automated market cap milestones.",
            )
        if not self.authorizer.is_authorized(request):
            self.audit.record(RESOLVE_DENIED, {})
            self.logger.warning("Denied resolve request")
            return _error(401, "Unauthorized")

        if overrides is None:
            overrides = CycleRequest(commitment_id=request.text("commitmentId") or None, limit=request.get("limit"))
        try:
            report = self.orchestrator.run_cycle(overrides, context={"cron": True})
        except Exception as e:
            # run_cycle has already written the error audit record
            self.logger.exception(f"Resolve cycle failed: {e}")
            return _error(500, safe_error_message(e))
        return AdminResponse(200, report.to_dict())

    def set_commitment_status(self, request: AdminRequest) -> AdminResponse:
        if not self.authorizer.is_authorized(request):
            self.audit.record(COMMITMENT_UPDATE_DENIED, {"reason": "unauthorized"})
            return _error(401, "Unauthorized")
        try:
            cid = request.text("id")
            if not cid:
                return _error(400, "id is required")
            status = request.text("status")
            if status not in _COMMITMENT_STATUSES:
                return _error(400, "Invalid status")
            if self.store.get_commitment(cid) is None:
                return _error(404, "Not found")

            out = self.state_machine.set_commitment_status(cid, CommitmentStatus(status))
            self.audit.record(COMMITMENT_UPDATE_OK, {"id": cid, "status": status})
            self.logger.info(f"Commitment {cid} status set to {status}")
            return AdminResponse(200, {"ok": True, "commitment": public_view(out.commitment)})
        except Exception as e:
            self.audit.record(COMMITMENT_UPDATE_ERROR, {"error": safe_error_message(e)})
            self.logger.exception(f"Commitment update failed: {e}")
            return _error(500, safe_error_message(e))

    def override_milestone_status(self, request: AdminRequest) -> AdminResponse:
        if not self.authorizer.is_authorized(request):
            self.audit.record(COMMITMENT_UPDATE_DENIED, {"reason": "unauthorized", "action": "milestone_override"})
            return _error(401, "Unauthorized")
        try:
            cid = request.text("id")
            mid = request.text("milestoneId")
            if not cid or not mid:
                return _error(400, "id and milestoneId are required")
            status = request.text("status")
            if status not in _MILESTONE_STATUSES:
                return _error(400, "Invalid status")
            c = self.store.get_commitment(cid)
            if c is None or c.milestone(mid) is None:
                return _error(404, "Not found")

            previous = c.milestone(mid).status.value
            out = self.state_machine.override_milestone_status(cid, mid, MilestoneStatus(status), int(self._clock()))
            self.audit.record(MILESTONE_OVERRIDE, {"id": cid, "milestone_id": mid, "from": previous, "to": status})
            self.logger.warning(f"Milestone override commitment={cid} milestone={mid} {previous} -> {status}")
            return AdminResponse(200, {"ok": True, "commitment": public_view(out.commitment)})
        except Exception as e:
            self.audit.record(COMMITMENT_UPDATE_ERROR, {"error": safe_error_message(e), "action": "milestone_override"})
            self.logger.exception(f"Milestone override failed: {e}")
            return _error(500, safe_error_message(e))

    def record_release(self, request: AdminRequest) -> AdminResponse:
        if not self.authorizer.is_authorized(request):
            self.audit.record(COMMITMENT_UPDATE_DENIED, {"reason": "unauthorized", "action": "release"})
            return _error(401, "Unauthorized")
        try:
            cid = request.text("id")
            mid = request.text("milestoneId")
            sig = request.text("txSignature")
            if not cid or not mid or not sig:
                return _error(400, "id, milestoneId and txSignature are required")
            c = self.store.get_commitment(cid)
            if c is None or c.milestone(mid) is None:
                return _error(404, "Not found")

            try:
                out = self.state_machine.record_release(cid, mid, sig, int(self._clock()))
            except InvalidTransitionError as e:
                return _error(409, str(e))
            m = out.commitment.milestone(mid)
            self.audit.record(MILESTONE_RELEASED, {
                "id": cid,
                "milestone_id": mid,
                "tx_signature": sig,
                "unlock_lamports": m.unlock_lamports,
                "released_at_unix": m.released_at_unix,
            })
            self.logger.info(f"Milestone released commitment={cid} milestone={mid} tx={sig}")
            return AdminResponse(200, {"ok": True, "commitment": public_view(out.commitment)})
        except Exception as e:
            self.audit.record(COMMITMENT_UPDATE_ERROR, {"error": safe_error_message(e), "action": "release"})
            self.logger.exception(f"Release failed: {e}")
            return _error(500, safe_error_message(e))
