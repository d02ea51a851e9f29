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

"""Leadership gate.

Only the sidecar colocated with the current cluster leader may mutate the
shared keyring. The gate asks the cluster for its leader address and compares
the host part against this process's own address.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import TYPE_CHECKING

from .error_mapping import ClusterAPIError

if TYPE_CHECKING:
    from .infrastructure.consul.client import ClusterAPI
    from .metrics import RotatorMetrics

logger = logging.getLogger(__name__)


def leader_host(address: str) -> str:
    """Host part of ``ip:port``, ``[v6]:port`` or a bare address."""
    address = address.strip()
    if address.startswith("["):
        return address[1 : address.index("]")] if "]" in address else address[1:]
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address


def same_host(a: str, b: str) -> bool:
    try:
        return ipaddress.ip_address(a) == ipaddress.ip_address(b)
    except ValueError:
        return a.lower() == b.lower()


class LeadershipGate:
    """Decides whether this instance may issue mutating keyring calls."""

    def __init__(
        self,
        cluster: ClusterAPI,
        local_address: str,
        timeout: float = 10.0,
        metrics: RotatorMetrics | None = None,
    ):
        self.cluster = cluster
        self.local_address = local_address
        self.timeout = timeout
        self.metrics = metrics

    def is_authorized(self) -> bool:
        """True only when the cluster leader runs on this host.

        Any failure to determine the leader yields False.
        """
        try:
            leader = self.cluster.get_leader(timeout=self.timeout)
        except (ClusterAPIError, OSError) as e:
            logger.debug(f"Leader lookup failed, staying passive: {e}")
            self._record("unknown")
            return False

        if not leader:
            logger.debug("Cluster reports no leader, staying passive")
            self._record("unknown")
            return False

        if not same_host(leader_host(leader), self.local_address):
            logger.debug(
                "Not colocated with cluster leader",
                extra={"fields": {"leader": leader, "local_address": self.local_address}},
            )
            self._record("not_leader")
            return False

        self._record("authorized")
        return True

    def _record(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record_leadership(result)
