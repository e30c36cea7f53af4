#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Milestone escrow orchestrator main runner.
- Loads settings
- Starts the Prometheus /metrics server and admin API (prometheus_client)
- Periodically runs market-cap evaluation cycles

Usage examples:
  python -m escrow_orchestrator.main --help
  python -m escrow_orchestrator.main --config config/orchestrator_config.yaml
  python -m escrow_orchestrator.main --once  # run one cycle, print the report and exit
  python -m escrow_orchestrator.main --once --commitment-id c-123 --limit 10
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .core.admin import AdminService
from .core.audit import AuditSink, create_audit_sink
from .core.authorization import CronSecretAuthorizer
from .core.exporter import MetricsExporter
from .core.orchestrator import CycleReport, CycleRequest, EvaluationOrchestrator
from .core.settings import EngineDisabledError, Settings, SettingsError, load_settings
from .core.store import Store, create_store
from .shared.colored_logging import setup_colored_logging
from .shared.dexscreener_client import DexScreenerClient
from .shared.solana_rpc import SolanaRpcClient


@dataclass
class Runtime:
    settings: Settings
    store: Store
    audit: AuditSink
    orchestrator: EvaluationOrchestrator
    admin: AdminService


def build_runtime(settings: Settings) -> Runtime:
    store = create_store(settings.store)
    audit = create_audit_sink(settings.audit.sink, store, settings.audit.retries, settings.audit.backoff_seconds)
    orchestrator = EvaluationOrchestrator(
        settings,
        store,
        DexScreenerClient(settings.feed),
        SolanaRpcClient(settings.chain),
        audit,
    )
    admin = AdminService(settings, store, orchestrator, audit, CronSecretAuthorizer.from_env(settings.auth.cron_secret_env))
    return Runtime(settings=settings, store=store, audit=audit, orchestrator=orchestrator, admin=admin)


def _summary_lines(report: CycleReport) -> list[str]:
    lines = []
    for r in report.results:
        if not r.ok:
            lines.append(f"{r.commitment_id}: error:{r.error} [step: {r.step}]")
            continue
        if not r.milestones:
            lines.append(f"{r.commitment_id}: ok")
        for o in r.milestones:
            msg = f"{r.commitment_id}/{o.milestone_id}: {o.outcome}"
            if o.idempotent:
                msg += " (idempotent)"
            if o.resumed:
                msg += " (resumed)"
            if o.unlock_lamports:
                msg += f" unlock={o.unlock_lamports}"
            lines.append(msg)
    return lines


def _evaluation_loop(runtime: Runtime, request: CycleRequest, exporter: Optional[MetricsExporter]) -> None:
    interval = max(1, int(runtime.settings.run.interval_minutes)) * 60
    log = logging.getLogger(__name__)

    while True:
        try:
            report = runtime.orchestrator.run_cycle(request)
            if exporter is not None:
                exporter.update(report)
            lines = _summary_lines(report)
            log.info("Cycle: \n" + "\n".join(lines) if lines else "Cycle: no eligible commitments")
        except EngineDisabledError as e:
            log.warning(f"{e}")
        except Exception as e:
            log.exception(f"Cycle error: {e}")
            if exporter is not None:
                exporter.record_cycle_error()
        time.sleep(interval)


def main(
    config_path: Optional[str] = None,
    once: bool = False,
    no_telemetry: bool = False,
    log_level: Optional[int] = None,
    commitment_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> int:
    setup_colored_logging(level=log_level if log_level is not None else logging.INFO)
    log = logging.getLogger(__name__)

    base = Path(__file__).resolve().parents[1]
    default_cfg = base / 'config' / 'orchestrator_config.yaml'
    if config_path is None and not default_cfg.exists():
        cfg = None
    else:
        cfg = str(config_path or default_cfg)
    try:
        settings = load_settings(cfg)
    except SettingsError as e:
        print(f"{e}")
        return 2
    if log_level is None:
        # No CLI override: use the configured level
        setup_colored_logging(level=getattr(logging, settings.logging_level, logging.INFO))

    runtime = build_runtime(settings)
    request = CycleRequest(commitment_id=commitment_id, limit=limit)

    try:
        if once:
            try:
                report = runtime.orchestrator.run_cycle(request)
            except EngineDisabledError as e:
                print(f"{e}")
                return 3
            for line in _summary_lines(report):
                print(line)
            print(json.dumps(report.to_dict(), indent=2, sort_keys=True, default=str))
            return 0

        exporter = None
        if settings.telemetry.enabled and not no_telemetry:
            exporter = MetricsExporter(settings, admin=runtime.admin)
            exporter.start_http()
        else:
            log.info("Telemetry disabled; running cycles without metrics server")
        _evaluation_loop(runtime, request, exporter)
    except KeyboardInterrupt:
        log.info("Interrupted; shutting down")
    finally:
        runtime.store.close()
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Milestone Escrow Orchestrator')
    parser.add_argument('--config', type=str, default=None, help='Path to orchestrator_config.yaml')
    parser.add_argument('--once', action='store_true', help='Run one cycle and exit (no metrics server)')
    parser.add_argument('--no-telemetry', action='store_true', help='Disable metrics server even if enabled in config')
    parser.add_argument('--commitment-id', type=str, default=None, help='Restrict evaluation to one commitment')
    parser.add_argument('--limit', type=int, default=None, help='Batch cap for this run (hard maximum 200)')
    parser.add_argument('--log-level', type=str, default=None, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], help='Logging level')
    args = parser.parse_args()
    level = getattr(logging, args.log_level.upper(), logging.INFO) if args.log_level else None
    sys.exit(main(
        config_path=args.config,
        once=args.once,
        no_telemetry=args.no_telemetry,
        log_level=level,
        commitment_id=args.commitment_id,
        limit=args.limit,
    ))
