"""Pytest configuration for repo-wide test behavior."""

# Ensure project root on sys.path for imports
import os
import sys

import pytest
from prometheus_client import CollectorRegistry

root = os.path.dirname(os.path.abspath(__file__))
proj = os.path.abspath(os.path.join(root, ".."))
if proj not in sys.path:
    sys.path.insert(0, proj)
if root not in sys.path:
    sys.path.insert(0, root)

from gossip_rotator.metrics import RotatorMetrics  # noqa: E402


@pytest.fixture
def metrics():
    """Metrics bound to a private registry so tests do not share counters."""
    return RotatorMetrics(registry=CollectorRegistry())


@pytest.fixture
def no_sleep():
    """Sleeper that returns immediately and records requested delays."""
    delays = []

    def sleep(seconds):
        delays.append(seconds)
        return True

    sleep.delays = delays
    return sleep
