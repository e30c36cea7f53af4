#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Utility Functions for the Milestone Escrow Orchestrator
Shared helpers for numeric coercion, retries, token amounts, address checks
and error redaction.
"""

import logging
import math
import re
import time
from typing import Any, Optional

from solders.pubkey import Pubkey


def safe_float(value: Any, default: float = 0.0) -> float:
    """
    Safely convert value to a finite float

    Args:
        value: Value to convert
        default: Default value if conversion fails or the result is NaN/inf

    Returns:
        Float value or default
    """
    if value is None:
        return default

    try:
        out = float(value)
    except (ValueError, TypeError):
        return default
    if not math.isfinite(out):
        return default
    return out


def optional_float(value: Any) -> Optional[float]:
    """Like safe_float but keeps None for missing/invalid input."""
    if value is None:
        return None
    try:
        out = float(value)
    except (ValueError, TypeError):
        return None
    return out if math.isfinite(out) else None


def parse_bool(value: Any) -> bool:
    """Interpret env-style flags: 1/true/yes/on are true, anything else false."""
    if isinstance(value, bool):
        return value
    raw = str(value if value is not None else "").strip().lower()
    return raw in ("1", "true", "yes", "on")


def retry_with_backoff(
    func,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    sleep=time.sleep,
):
    """
    Retry function with exponential backoff

    Args:
        func: Function to retry
        max_attempts: Maximum number of attempts
        base_delay: Initial delay in seconds
        backoff_factor: Multiplier for delay on each retry
        exceptions: Tuple of exceptions to catch and retry
        sleep: Sleep function (injectable for tests)

    Returns:
        Function result

    Raises:
        Last exception if all retries fail
    """
    last_exception = None
    log = logging.getLogger(__name__)

    for attempt in range(max(1, max_attempts)):
        try:
            return func()
        except exceptions as e:
            last_exception = e

            if attempt < max_attempts - 1:
                delay = base_delay * (backoff_factor ** attempt)
                log.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s...")
                sleep(delay)
            else:
                log.error(f"All {max_attempts} attempts failed")

    if last_exception:
        raise last_exception


SUPPLY_FRACTION_DIGITS = 9
MAX_DECIMALS = 18


def supply_ui_amount(supply_raw: int, decimals: int) -> float:
    """
    Convert a raw integer token supply into display units.

    Uses integer division so very large supplies with many decimals keep their
    whole part exactly; the fractional remainder is truncated to
    SUPPLY_FRACTION_DIGITS digits. Decimals are clamped to [0, 18].
    """
    d = max(0, min(MAX_DECIMALS, int(decimals)))
    raw = int(supply_raw)
    if raw <= 0:
        return 0.0
    div = 10 ** d
    whole = raw // div
    frac = raw % div
    frac_str = str(frac).rjust(d, "0")[:SUPPLY_FRACTION_DIGITS] if d > 0 else ""
    frac_num = float(f"0.{frac_str}") if frac_str else 0.0
    return float(whole) + frac_num


def is_valid_solana_address(addr: str) -> bool:
    """
    Strict Solana public key validator: base58 text that parses into a
    32-byte public key.
    """
    if not isinstance(addr, str):
        return False
    s = addr.strip()
    if not (32 <= len(s) <= 44):
        return False
    try:
        Pubkey.from_string(s)
    except ValueError:
        return False
    return True


_PG_URL = re.compile(r"postgres(?:ql)?://[^\s]+", re.IGNORECASE)
_SUPABASE_HOST = re.compile(r"([a-z0-9-]+\.)*supabase\.co", re.IGNORECASE)


def redact_sensitive(text: str) -> str:
    """Mask credentials in database URLs and hosted database hostnames."""
    def _mask(m: "re.Match[str]") -> str:
        url = m.group(0)
        at = url.find("@")
        if at > 0:
            return f"postgres://[redacted]{url[at:]}"
        return "postgres://[redacted]"

    out = _PG_URL.sub(_mask, str(text if text is not None else ""))
    return _SUPABASE_HOST.sub("[redacted]", out)


def safe_error_message(err: Any) -> str:
    """
    Produce an error string safe to return to operators and audit payloads.

    Connection failures collapse into a generic message; everything else is
    passed through redact_sensitive.
    """
    raw = str(err) if not isinstance(err, BaseException) else (str(err) or err.__class__.__name__)
    lower = raw.lower()

    if "database_url is required" in lower:
        return "DATABASE_URL is required"

    if any(tok in lower for tok in ("getaddrinfo", "enotfound", "eai_again", "econnrefused", "etimedout", "timeout")):
        return "Database connection failed"

    if "password authentication failed" in lower or "28p01" in lower:
        return "Database authentication failed"

    return redact_sensitive(raw)


def now_unix() -> int:
    return int(time.time())
