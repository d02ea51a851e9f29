# Copyright 2025 Gossip Rotator Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Prometheus metrics for keyring rotation."""

from __future__ import annotations

import logging

import prometheus_client
from prometheus_client import CollectorRegistry, Counter, Gauge

logger = logging.getLogger(__name__)


class RotatorMetrics:
    """Collects rotation outcomes, RPC failures and degraded-state signals."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else prometheus_client.REGISTRY

        self.rotations_total = Counter(
            "gossip_rotations_total",
            "Rotation attempts that reached a terminal state",
            ["outcome"],
            registry=self.registry,
        )
        self.rotation_state = Gauge(
            "gossip_rotation_state",
            "Index of the current rotation state (0 = idle)",
            registry=self.registry,
        )
        self.rpc_errors_total = Counter(
            "gossip_keyring_rpc_errors_total",
            "Failed cluster API calls",
            ["operation", "kind"],
            registry=self.registry,
        )
        self.leadership_checks_total = Counter(
            "gossip_leadership_checks_total",
            "Leadership gate evaluations",
            ["result"],
            registry=self.registry,
        )
        self.stale_keys = Gauge(
            "gossip_stale_keys",
            "Non-primary keys left installed after the last rotation",
            registry=self.registry,
        )
        self.degraded = Gauge(
            "gossip_degraded",
            "1 while the keyring is in a safe but degraded condition",
            registry=self.registry,
        )

    def record_outcome(self, outcome: str) -> None:
        self.rotations_total.labels(outcome=outcome).inc()

    def record_rpc_error(self, operation: str, kind: str) -> None:
        self.rpc_errors_total.labels(operation=operation, kind=kind).inc()

    def record_leadership(self, result: str) -> None:
        self.leadership_checks_total.labels(result=result).inc()

    def set_state(self, index: int) -> None:
        self.rotation_state.set(index)

    def set_stale_keys(self, count: int) -> None:
        self.stale_keys.set(count)

    def set_degraded(self, degraded: bool) -> None:
        self.degraded.set(1 if degraded else 0)

    def value(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Read back a sample value (0.0 when never recorded)."""
        sample = self.registry.get_sample_value(name, labels or {})
        return sample if sample is not None else 0.0


def start_metrics_server(port: int, registry: CollectorRegistry | None = None) -> None:
    """Serve /metrics on ``port``. Port 0 disables exposition."""
    if port <= 0:
        return
    prometheus_client.start_http_server(port, registry=registry or prometheus_client.REGISTRY)
    logger.info("Metrics server listening", extra={"fields": {"port": port}})


_metrics: RotatorMetrics | None = None


def get_metrics() -> RotatorMetrics:
    """Process-wide metrics on the default registry."""
    global _metrics
    if _metrics is None:
        _metrics = RotatorMetrics()
    return _metrics
