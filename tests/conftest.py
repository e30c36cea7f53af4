#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared fixtures: in-memory store, audit sink, scripted feed and chain.
"""
from __future__ import annotations

import pytest

from escrow_orchestrator.core.audit import StoreAuditSink
from escrow_orchestrator.core.orchestrator import EvaluationOrchestrator
from escrow_orchestrator.core.settings import Settings
from escrow_orchestrator.core.store import InMemoryStore

from fakes import T0, FakeChain, FakeFeed, make_pair


@pytest.fixture
def store():
    return InMemoryStore(clock=lambda: T0)


@pytest.fixture
def settings():
    s = Settings()
    s.market_cap.enabled = True
    return s


@pytest.fixture
def audit(store):
    return StoreAuditSink(store, retries=1, backoff_seconds=0.0, clock=lambda: T0, sleep=lambda _s: None)


@pytest.fixture
def feed():
    return FakeFeed([make_pair(0.0011)])


@pytest.fixture
def chain():
    return FakeChain(now=T0 + 10 * 3600)


@pytest.fixture
def orchestrator(settings, store, feed, chain, audit):
    return EvaluationOrchestrator(settings, store, feed, chain, audit)
