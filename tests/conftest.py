"""
Root pytest configuration and shared fixtures.

The doubles these fixtures build live in ``helpers``.
"""

import threading
from typing import List

import pytest

from helpers import ManualClock
from wallbounce.config import WallbounceConfig


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config() -> WallbounceConfig:
    """Default configuration with the cache sweeper disabled."""
    cfg = WallbounceConfig()
    cfg.cache.sweep_interval = 0
    cfg.orchestrator.default_timeout = 5.0
    return cfg


@pytest.fixture
def release_gates():
    """Collects gate events and opens them at teardown so worker threads exit."""
    gates: List[threading.Event] = []

    def _make() -> threading.Event:
        gate = threading.Event()
        gates.append(gate)
        return gate

    yield _make
    for gate in gates:
        gate.set()
