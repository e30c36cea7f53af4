#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Authorization for administrative entry points.

The engine only needs a yes/no answer per request; CronSecretAuthorizer
answers it by comparing the x-cron-secret header with a shared secret taken
from the environment.
"""
from __future__ import annotations

import hmac
import logging
import os
from typing import Any, Mapping, Optional

CRON_SECRET_HEADER = "x-cron-secret"


def get_header(headers: Optional[Mapping[str, Any]], name: str) -> str:
    """Case-insensitive header lookup; missing headers read as empty."""
    if not headers:
        return ""
    want = name.lower()
    for k, v in headers.items():
        if str(k).lower() == want:
            return str(v if v is not None else "").strip()
    return ""


class Authorizer:
    def is_authorized(self, request: Any) -> bool:
        raise NotImplementedError


class CronSecretAuthorizer(Authorizer):
    """
    Authorizes requests carrying the configured cron secret.

    An unset or blank secret denies everything.
    """

    def __init__(self, secret: Optional[str]) -> None:
        self._secret = str(secret or "").strip()
        self.logger = logging.getLogger(self.__class__.__name__)
        if not self._secret:
            self.logger.warning("No cron secret configured; administrative requests will be denied")

    @classmethod
    def from_env(cls, env_name: str = "CRON_SECRET", env: Optional[Mapping[str, str]] = None) -> "CronSecretAuthorizer":
        env = os.environ if env is None else env
        return cls(env.get(env_name))

    def is_authorized(self, request: Any) -> bool:
        if not self._secret:
            return False
        headers = getattr(request, "headers", None)
        provided = get_header(headers, CRON_SECRET_HEADER)
        if not provided:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), self._secret.encode("utf-8"))
