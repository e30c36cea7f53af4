#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Prometheus exporter using prometheus_client, plus the administrative HTTP API.

GET  /metrics                                   cycle gauges
POST /api/admin/resolve-marketcap-milestones    on-demand cycle
POST /api/admin/commitments/update              commitment status
POST /api/admin/milestones/override             milestone status override
POST /api/admin/milestones/release              record a payout
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Dict, Optional
from urllib.parse import urlparse

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest

from .admin import AdminRequest, AdminResponse, AdminService
from .orchestrator import CycleReport
from .settings import Settings

METRICS_PATH = "/metrics"


@dataclass
class MetricHandles:
    targets: Gauge
    confirmed: Gauge
    promoted: Gauge
    failed: Gauge
    skipped: Gauge
    outcomes: Gauge
    last_cycle_timestamp_seconds: Gauge
    cycle_errors: Gauge


class MetricsExporter:
    def __init__(self, settings: Settings, admin: Optional[AdminService] = None) -> None:
        self.settings = settings
        self.admin = admin
        self.registry = CollectorRegistry()
        self.logger = logging.getLogger(self.__class__.__name__)
        pfx = settings.telemetry.metric_prefix

        self.metrics = MetricHandles(
            targets=Gauge(f"{pfx}cycle_targets", "Commitments evaluated in the last cycle", registry=self.registry),
            confirmed=Gauge(f"{pfx}cycle_confirmed", "Milestones confirmed in the last cycle", registry=self.registry),
            promoted=Gauge(f"{pfx}cycle_promoted", "Milestones that became claimable in the last cycle", registry=self.registry),
            failed=Gauge(f"{pfx}cycle_failed", "Commitment or milestone failures in the last cycle", registry=self.registry),
            skipped=Gauge(f"{pfx}cycle_skipped", "Milestones skipped in the last cycle", registry=self.registry),
            outcomes=Gauge(f"{pfx}milestone_outcomes", "Milestone outcomes in the last cycle by step and kind", ['step', 'kind'], registry=self.registry),
            last_cycle_timestamp_seconds=Gauge(f"{pfx}last_cycle_timestamp_seconds", "Chain time of the last completed cycle (epoch seconds)", registry=self.registry),
            cycle_errors=Gauge(f"{pfx}cycle_errors", "Cycles aborted by an unexpected error since start", registry=self.registry),
        )

        self._metrics_payload_lock = threading.Lock()
        self._metrics_payload = generate_latest(self.registry)
        self._server: Optional[HTTPServer] = None

    def update(self, report: CycleReport) -> None:
        """Refresh gauges from a finished cycle."""
        m = self.metrics
        m.targets.set(report.target_count)
        m.confirmed.set(report.confirmed_count)
        m.promoted.set(report.promoted_count)
        m.failed.set(report.failed_count)
        m.skipped.set(report.skipped_count)
        m.last_cycle_timestamp_seconds.set(report.now_unix)

        counts: Dict[tuple, int] = {}
        for r in report.results:
            if not r.ok:
                key = (r.step or "unknown", "error")
                counts[key] = counts.get(key, 0) + 1
            for o in r.milestones:
                kind = o.outcome.split(":", 1)[0]
                key = (o.step, kind)
                counts[key] = counts.get(key, 0) + 1
        m.outcomes.clear()
        for (step, kind), n in counts.items():
            m.outcomes.labels(step=step, kind=kind).set(n)

        self._refresh_payload()

    def record_cycle_error(self) -> None:
        self.metrics.cycle_errors.inc()
        self._refresh_payload()

    def _refresh_payload(self) -> None:
        payload = generate_latest(self.registry)
        with self._metrics_payload_lock:
            self._metrics_payload = payload

    def _dispatch(self, path: str, request: AdminRequest) -> Optional[AdminResponse]:
        if self.admin is None:
            return None
        routes = {
            "/api/admin/resolve-marketcap-milestones": self.admin.resolve_market_cap_milestones,
            "/api/admin/commitments/update": self.admin.set_commitment_status,
            "/api/admin/milestones/override": self.admin.override_milestone_status,
            "/api/admin/milestones/release": self.admin.record_release,
        }
        handler = routes.get(path)
        return handler(request) if handler else None

    def start_http(self) -> HTTPServer:
        """Start an HTTP server exposing /metrics and the admin API."""
        tel = self.settings.telemetry
        outer_self = self

        class Handler(BaseHTTPRequestHandler):  # type: ignore
            def log_message(self, format: str, *args) -> None:  # quiet logs
                return

            def _send(self_inner, code: int, data: bytes, content_type: str) -> None:
                self_inner.send_response(code)
                self_inner.send_header("Content-Type", content_type)
                self_inner.send_header("Content-Length", str(len(data)))
                self_inner.end_headers()
                self_inner.wfile.write(data)

            def do_GET(self_inner):  # type: ignore
                path = urlparse(self_inner.path).path
                if path == METRICS_PATH:
                    with outer_self._metrics_payload_lock:
                        output = outer_self._metrics_payload
                    self_inner._send(200, output, CONTENT_TYPE_LATEST)
                    return
                self_inner.send_response(404)
                self_inner.end_headers()

            def do_POST(self_inner):  # type: ignore
                path = urlparse(self_inner.path).path
                content_length = int(self_inner.headers.get('Content-Length', 0) or 0)
                body = None
                if content_length > 0:
                    raw = self_inner.rfile.read(content_length)
                    try:
                        body = json.loads(raw.decode('utf-8'))
                    except ValueError:
                        body = None
                request = AdminRequest(headers=dict(self_inner.headers.items()), body=body)
                try:
                    response = outer_self._dispatch(path, request)
                except Exception as e:
                    outer_self.logger.exception(f"Admin request failed path={path}: {e}")
                    response = AdminResponse(500, {"error": "Internal error"})
                if response is None:
                    self_inner.send_response(404)
                    self_inner.end_headers()
                    return
                data = json.dumps(response.body, default=str).encode('utf-8')
                self_inner._send(response.status_code, data, "application/json")

        server = HTTPServer((tel.listen_address, int(tel.listen_port)), Handler)
        t = threading.Thread(target=server.serve_forever, daemon=True, name="MetricsHTTP")
        t.start()
        self._server = server
        self.logger.info(f"Metrics and admin API listening on {tel.listen_address}:{tel.listen_port}")
        return server

    def stop_http(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
