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

"""Process assembly: builds every component from a RotatorConfig and runs it."""

from __future__ import annotations

import logging

from .change_detector import ChangeDetector
from .config import RotatorConfig
from .core.shutdown import ShutdownCoordinator
from .event_loop import EventLoop
from .infrastructure.consul.client import ClusterAPI, ConsulClusterAPI
from .keyring import KeyringClient
from .leadership import LeadershipGate
from .metrics import RotatorMetrics, get_metrics, start_metrics_server
from .orchestrator import RotationOrchestrator
from .watcher import PathWatcher

logger = logging.getLogger(__name__)


class RotatorSidecar:
    """Owns the cluster client, watcher and event loop for one process."""

    def __init__(
        self,
        config: RotatorConfig,
        cluster: ClusterAPI | None = None,
        shutdown: ShutdownCoordinator | None = None,
        metrics: RotatorMetrics | None = None,
        watch: bool = True,
    ):
        config.validate()
        self.config = config
        self.shutdown = shutdown or ShutdownCoordinator()
        self.metrics = metrics or get_metrics()
        self.cluster = cluster or ConsulClusterAPI.from_config(config)

        self.detector = ChangeDetector(config.gossip_key_file)
        self.keyring = KeyringClient(self.cluster, timeout=config.rpc_timeout_seconds)
        self.gate = LeadershipGate(
            self.cluster,
            config.pod_ip,
            timeout=config.rpc_timeout_seconds,
            metrics=self.metrics,
        )
        self.orchestrator = RotationOrchestrator.from_config(
            config,
            self.keyring,
            self.detector,
            sleep=self.shutdown.sleep,
            stop_requested=lambda: self.shutdown.is_shutting_down,
            metrics=self.metrics,
        )
        self.watcher: PathWatcher | None = None
        self.loop = EventLoop(
            self.detector,
            self.gate,
            self.orchestrator,
            self.keyring,
            self.shutdown,
            reconcile_interval=config.reconcile_interval_seconds,
            reconcile_with_keyring=config.reconcile_with_keyring,
        )
        if watch:
            self.watcher = PathWatcher(config.gossip_key_file, self.loop.on_watch_event)
            self.loop.rearm_watch = self.watcher.rearm

        self.shutdown.register_shutdown_handler(self._close)

    def run(self) -> None:
        """Capture the baseline, start watching and block until shutdown.

        Raises MalformedKeyError if the key file is unusable at startup.
        """
        try:
            self.detector.initialize()
            start_metrics_server(self.config.metrics_port, self.metrics.registry)
            if self.watcher is not None:
                self.watcher.start()
            self.loop.run()
        finally:
            self.shutdown.run_shutdown_handlers()

    def _close(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
        self.cluster.close()
