#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Orchestrator settings loader

Reads an optional YAML file, then applies environment overrides, then
validates everything at once. Any invalid value aborts before a cycle starts.

YAML layout (all sections optional):

    market_cap:   engine flag, floors, lookback, claim delay, policy
    run:          schedule interval, batch cap, workers, commit retries
    feed:         DexScreener connection
    chain:        Solana RPC connection
    store:        persistence backend
    audit:        audit sink retry policy
    telemetry:    Prometheus exporter
    auth:         cron secret env var name
    logging:      level
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from ..shared.config import ConfigError, FeedConnConfig, RpcConnConfig, StoreConfig
from ..shared.utils import parse_bool

log = logging.getLogger(__name__)

MAX_BATCH_LIMIT = 200
CONFIRMATION_POLICIES = ("first_sample", "sustained")


class SettingsError(Exception):
    """Invalid or unusable configuration; aborts the batch before any work."""
    pass


class EngineDisabledError(SettingsError):
    """The automated market-cap engine is switched off."""
    pass


@dataclass
class MarketCapConfig:
    enabled: bool = False
    chain_id: str = "solana"
    min_liquidity_usd: float = 50_000.0
    min_volume_h1_usd: float = 0.0
    # Sustained-policy knobs; ignored by the first_sample policy
    min_minutes_above: int = 15
    min_samples: int = 10
    max_gap_seconds: int = 120
    lookback_seconds: int = 365 * 24 * 60 * 60
    claim_delay_seconds: int = 48 * 60 * 60
    confirmation_policy: str = "first_sample"
    resume_grace_seconds: int = 300


@dataclass
class RunConfig:
    interval_minutes: int = 5
    max_batch: int = MAX_BATCH_LIMIT
    workers: int = 1
    commit_retries: int = 3


@dataclass
class AuditConfig:
    sink: str = "store"  # "store" | "log"
    retries: int = 2
    backoff_seconds: float = 0.2


@dataclass
class TelemetryConfig:
    enabled: bool = False
    listen_address: str = "0.0.0.0"
    listen_port: int = 9108
    metric_prefix: str = "escrow_"


@dataclass
class AuthConfig:
    cron_secret_env: str = "CRON_SECRET"


@dataclass
class Settings:
    market_cap: MarketCapConfig = field(default_factory=MarketCapConfig)
    run: RunConfig = field(default_factory=RunConfig)
    feed: FeedConnConfig = field(default_factory=FeedConnConfig)
    chain: RpcConnConfig = field(default_factory=RpcConnConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging_level: str = "INFO"
    config_path: Optional[str] = None


# env var -> (section, field, kind)
ENV_OVERRIDES = {
    "CTS_ENABLE_MARKETCAP_MILESTONES": ("market_cap", "enabled", "bool"),
    "CTS_MC_MIN_LIQUIDITY_USD": ("market_cap", "min_liquidity_usd", "float"),
    "CTS_MC_MIN_VOLUME_H1_USD": ("market_cap", "min_volume_h1_usd", "float"),
    "CTS_MC_MIN_MINUTES_ABOVE": ("market_cap", "min_minutes_above", "int"),
    "CTS_MC_MIN_SAMPLES": ("market_cap", "min_samples", "int"),
    "CTS_MC_MAX_GAP_SECONDS": ("market_cap", "max_gap_seconds", "int"),
    "CTS_MC_LOOKBACK_SECONDS": ("market_cap", "lookback_seconds", "int"),
    "CTS_MC_CONFIRMATION_POLICY": ("market_cap", "confirmation_policy", "str"),
    "REWARD_CLAIM_DELAY_SECONDS": ("market_cap", "claim_delay_seconds", "int"),
    "SOLANA_RPC_URL": ("chain", "url", "str"),
    "ESCROW_DB_PATH": ("store", "path", "str"),
}


def _coerce(value: Any, kind: str, label: str, errors: List[str]) -> Any:
    if kind == "bool":
        return parse_bool(value)
    if kind == "str":
        return str(value).strip()
    try:
        num = float(str(value).strip())
    except ValueError:
        errors.append(f"{label} must be a number, got: {value!r}")
        return None
    if not math.isfinite(num):
        errors.append(f"{label} must be finite, got: {value!r}")
        return None
    return int(math.floor(num)) if kind == "int" else num


def _kind_for(default: Any) -> str:
    if isinstance(default, bool):
        return "bool"
    if isinstance(default, int):
        return "int"
    if isinstance(default, float):
        return "float"
    return "str"


def _section(raw: Mapping[str, Any], name: str, errors: List[str]) -> Dict[str, Any]:
    sec = raw.get(name)
    if sec is None:
        return {}
    if not isinstance(sec, dict):
        errors.append(f"{name} must be a mapping")
        return {}
    return sec


def _build_plain(cls, raw: Mapping[str, Any], name: str, errors: List[str]):
    """Build a plain dataclass section, coercing each known key by its default's type."""
    sec = _section(raw, name, errors)
    defaults = cls()
    known = {f.name for f in fields(cls)}
    for key in sec:
        if key not in known:
            errors.append(f"{name}.{key} is not a recognized setting")
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name in sec and sec[f.name] is not None:
            val = _coerce(sec[f.name], _kind_for(getattr(defaults, f.name)), f"{name}.{f.name}", errors)
            if val is not None:
                kwargs[f.name] = val
    return cls(**kwargs)


def _build_conn(cls, raw: Mapping[str, Any], name: str, errors: List[str], overrides: Dict[str, Any]):
    """Build a self-validating connection config; ConfigError becomes a collected error."""
    sec = dict(_section(raw, name, errors))
    sec.update(overrides)
    known = {f.name for f in fields(cls)}
    unknown = [k for k in sec if k not in known]
    for key in unknown:
        errors.append(f"{name}.{key} is not a recognized setting")
        sec.pop(key)
    try:
        return cls(**{k: v for k, v in sec.items() if v is not None})
    except (ConfigError, TypeError, ValueError) as e:
        errors.append(f"{name}: {e}")
        return cls()


def _validate(settings: Settings, errors: List[str]) -> None:
    mc = settings.market_cap
    if not mc.chain_id or not mc.chain_id.strip():
        errors.append("market_cap.chain_id must be a non-empty string")
    if mc.min_liquidity_usd <= 0:
        errors.append(f"market_cap.min_liquidity_usd must be > 0, got: {mc.min_liquidity_usd}")
    if mc.min_volume_h1_usd < 0:
        errors.append(f"market_cap.min_volume_h1_usd must be >= 0, got: {mc.min_volume_h1_usd}")
    if mc.min_minutes_above <= 0:
        errors.append(f"market_cap.min_minutes_above must be > 0, got: {mc.min_minutes_above}")
    if mc.min_samples <= 0:
        errors.append(f"market_cap.min_samples must be > 0, got: {mc.min_samples}")
    if mc.max_gap_seconds <= 0:
        errors.append(f"market_cap.max_gap_seconds must be > 0, got: {mc.max_gap_seconds}")
    if mc.lookback_seconds <= 0:
        errors.append(f"market_cap.lookback_seconds must be > 0, got: {mc.lookback_seconds}")
    if mc.claim_delay_seconds < 0:
        errors.append(f"market_cap.claim_delay_seconds must be >= 0, got: {mc.claim_delay_seconds}")
    if mc.resume_grace_seconds < 0:
        errors.append(f"market_cap.resume_grace_seconds must be >= 0, got: {mc.resume_grace_seconds}")
    if mc.confirmation_policy not in CONFIRMATION_POLICIES:
        errors.append(f"market_cap.confirmation_policy must be one of {list(CONFIRMATION_POLICIES)}, got: {mc.confirmation_policy}")

    run = settings.run
    if run.interval_minutes < 1:
        errors.append(f"run.interval_minutes must be >= 1, got: {run.interval_minutes}")
    if not (1 <= run.max_batch <= MAX_BATCH_LIMIT):
        errors.append(f"run.max_batch must be in [1,{MAX_BATCH_LIMIT}], got: {run.max_batch}")
    if run.workers < 1:
        errors.append(f"run.workers must be >= 1, got: {run.workers}")
    if run.commit_retries < 1:
        errors.append(f"run.commit_retries must be >= 1, got: {run.commit_retries}")

    audit = settings.audit
    if audit.sink not in ("store", "log"):
        errors.append(f"audit.sink must be 'store' or 'log', got: {audit.sink}")
    if audit.retries < 0:
        errors.append(f"audit.retries must be >= 0, got: {audit.retries}")

    tel = settings.telemetry
    if tel.enabled:
        if not (1 <= tel.listen_port <= 65535):
            errors.append(f"telemetry.listen_port must be in [1,65535], got: {tel.listen_port}")
        if not tel.metric_prefix or not tel.metric_prefix.strip():
            errors.append("telemetry.metric_prefix required when telemetry enabled")

    if not settings.auth.cron_secret_env or not settings.auth.cron_secret_env.strip():
        errors.append("auth.cron_secret_env must be a non-empty string")

    valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if settings.logging_level.upper() not in valid_levels:
        errors.append(f"logging.level must be one of: {valid_levels}")
    settings.logging_level = settings.logging_level.upper()


def load_settings(config_path: Optional[str | Path] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load settings from an optional YAML file plus environment overrides.

    Raises:
        SettingsError: listing every invalid field at once
    """
    env = os.environ if env is None else env
    raw: Dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise SettingsError(f"Configuration file not found: {config_path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise SettingsError(f"Invalid YAML in {config_path}: {e}")
        if not isinstance(raw, dict):
            raise SettingsError(f"Top level of {config_path} must be a mapping")

    errors: List[str] = []

    # Environment overrides: blank values mean "use the default"
    env_values: Dict[str, Dict[str, Any]] = {}
    for var, (section, key, kind) in ENV_OVERRIDES.items():
        val = env.get(var)
        if val is None or str(val).strip() == "":
            continue
        coerced = _coerce(val, kind, var, errors)
        if coerced is not None:
            env_values.setdefault(section, {})[key] = coerced

    market_cap = _build_plain(MarketCapConfig, raw, "market_cap", errors)
    for key, val in env_values.get("market_cap", {}).items():
        setattr(market_cap, key, val)

    log_sec = _section(raw, "logging", errors)

    settings = Settings(
        market_cap=market_cap,
        run=_build_plain(RunConfig, raw, "run", errors),
        feed=_build_conn(FeedConnConfig, raw, "feed", errors, {}),
        chain=_build_conn(RpcConnConfig, raw, "chain", errors, env_values.get("chain", {})),
        store=_build_conn(StoreConfig, raw, "store", errors, env_values.get("store", {})),
        audit=_build_plain(AuditConfig, raw, "audit", errors),
        telemetry=_build_plain(TelemetryConfig, raw, "telemetry", errors),
        auth=_build_plain(AuthConfig, raw, "auth", errors),
        logging_level=str(log_sec.get("level") or "INFO"),
        config_path=str(config_path) if config_path is not None else None,
    )

    _validate(settings, errors)

    if errors:
        source = settings.config_path or "environment"
        error_msg = f"Configuration validation failed ({source}):\n" + "\n".join(f"  - {e}" for e in errors)
        raise SettingsError(error_msg)

    log.debug(
        "Settings loaded: engine_enabled=%s policy=%s lookback=%ss claim_delay=%ss",
        settings.market_cap.enabled,
        settings.market_cap.confirmation_policy,
        settings.market_cap.lookback_seconds,
        settings.market_cap.claim_delay_seconds,
    )
    return settings
