#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Audit sink.

Audit records are best-effort: a failed write is retried a bounded number of
times, then logged and dropped. An audit failure never rolls back or blocks
the state change it describes. Dropped events are counted and summarized in
an audit_records_dropped record once the store accepts writes again.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..shared.colored_logging import AUDIT_LOGGER_NAME
from ..shared.utils import retry_with_backoff, safe_error_message
from .store import Store, StoreError

# Event names
MILESTONE_CONFIRMED = "marketcap_milestone_confirmed"
MILESTONE_BECAME_CLAIMABLE = "milestone_became_claimable"
MILESTONE_RELEASED = "milestone_released"
MILESTONE_OVERRIDE = "admin_milestone_override"
RESOLVE_COMPLETED = "admin_resolve_marketcap_completed"
RESOLVE_ERROR = "admin_resolve_marketcap_error"
RESOLVE_DENIED = "admin_resolve_marketcap_denied"
COMMITMENT_UPDATE_OK = "admin_commitment_update_ok"
COMMITMENT_UPDATE_DENIED = "admin_commitment_update_denied"
COMMITMENT_UPDATE_ERROR = "admin_commitment_update_error"
AUDIT_RECORDS_DROPPED = "audit_records_dropped"


class AuditSink:
    def record(self, event: str, payload: Dict[str, Any]) -> bool:
        raise NotImplementedError


class LogAuditSink(AuditSink):
    """Writes audit events as JSON lines on the audit logger."""

    def __init__(self) -> None:
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def record(self, event: str, payload: Dict[str, Any]) -> bool:
        self.logger.info(f"{event} {json.dumps(payload, default=str, sort_keys=True)}")
        return True


class StoreAuditSink(AuditSink):
    """
    Persists audit events through the store with bounded retry.

    record() returns False instead of raising when every attempt failed; the
    failure is counted, logged on the audit logger and reported in the store
    after the next successful write.
    """

    def __init__(
        self,
        store: Store,
        retries: int = 2,
        backoff_seconds: float = 0.2,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.retries = max(0, int(retries))
        self.backoff_seconds = float(backoff_seconds)
        self._clock = clock
        self._sleep = sleep
        self.failures = 0
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)
        self._lock = threading.Lock()
        self._dropped: Dict[str, int] = {}
        self._first_dropped_at: Optional[int] = None

    def _append(self, event: str, payload: Dict[str, Any], at: int) -> None:
        retry_with_backoff(
            lambda: self.store.append_audit(event, payload, at),
            max_attempts=self.retries + 1,
            base_delay=self.backoff_seconds,
            exceptions=(StoreError,),
            sleep=self._sleep,
        )

    def record(self, event: str, payload: Dict[str, Any]) -> bool:
        at = int(self._clock())
        try:
            self._append(event, payload, at)
        except StoreError as e:
            with self._lock:
                self.failures += 1
                self._dropped[event] = self._dropped.get(event, 0) + 1
                if self._first_dropped_at is None:
                    self._first_dropped_at = at
            self.logger.error(f"Audit write dropped event={event} error={safe_error_message(e)}")
            return False
        self.logger.debug(f"{event} recorded")
        self._flush_dropped(at)
        return True

    def _flush_dropped(self, at: int) -> None:
        with self._lock:
            if not self._dropped:
                return
            events, first = self._dropped, self._first_dropped_at
            self._dropped, self._first_dropped_at = {}, None
        summary = {"count": sum(events.values()), "events": events, "first_dropped_at_unix": first}
        try:
            self._append(AUDIT_RECORDS_DROPPED, summary, at)
        except StoreError as e:
            # Keep the counts for the next successful write
            with self._lock:
                for name, n in events.items():
                    self._dropped[name] = self._dropped.get(name, 0) + n
                self._first_dropped_at = first
            self.logger.error(f"Audit drop summary not written error={safe_error_message(e)}")
            return
        self.logger.warning(f"Recorded {summary['count']} dropped audit event(s): {events}")

    @property
    def pending_dropped(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._dropped)

    def list(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.store.list_audit(event)


def create_audit_sink(kind: str, store: Store, retries: int = 2, backoff_seconds: float = 0.2) -> AuditSink:
    if kind == "log":
        return LogAuditSink()
    return StoreAuditSink(store, retries=retries, backoff_seconds=backoff_seconds)
