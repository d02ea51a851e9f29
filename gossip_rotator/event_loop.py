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

"""Single-consumer event loop driving detection and rotation.

File-watch events, the periodic safety timer and shutdown requests are merged
into one queue and handled in order by a single worker. Events that pile up
while a rotation is running are drained together afterwards, so they cost at
most one extra detection.
"""

from __future__ import annotations

import logging
import queue
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .change_detector import ChangeDetector, short_fingerprint
from .error_mapping import ClusterAPIError
from .errors import ErrorCode
from .keyring import KeyringClient
from .leadership import LeadershipGate
from .orchestrator import RotationOrchestrator, RotationOutcome
from .watcher import WatchEvent, WatchEventKind

if TYPE_CHECKING:
    from .core.shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)


class LoopEventKind(Enum):
    FILE_WRITE = "file_write"
    FILE_REMOVE = "file_remove"
    TIMER = "timer"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class LoopEvent:
    kind: LoopEventKind
    path: str = ""


_WATCH_KINDS = {
    WatchEventKind.WRITE: LoopEventKind.FILE_WRITE,
    WatchEventKind.REMOVE: LoopEventKind.FILE_REMOVE,
}


class EventLoop:
    """Merges watch events, timer ticks and shutdown into one ordered stream."""

    def __init__(
        self,
        detector: ChangeDetector,
        gate: LeadershipGate,
        orchestrator: RotationOrchestrator,
        keyring: KeyringClient,
        shutdown: ShutdownCoordinator,
        reconcile_interval: float = 600.0,
        reconcile_with_keyring: bool = True,
        rearm_watch: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.detector = detector
        self.gate = gate
        self.orchestrator = orchestrator
        self.keyring = keyring
        self.shutdown = shutdown
        self.reconcile_interval = reconcile_interval
        self.reconcile_with_keyring = reconcile_with_keyring
        self.rearm_watch = rearm_watch
        self.clock = clock

        # SimpleQueue.put is reentrant, so the shutdown wakeup may run in a signal handler.
        self._events: queue.SimpleQueue[LoopEvent] = queue.SimpleQueue()
        self.ticks = 0
        shutdown.register_wakeup(lambda: self._events.put(LoopEvent(LoopEventKind.SHUTDOWN)))

    # Producers

    def on_watch_event(self, event: WatchEvent) -> None:
        """Sink for PathWatcher; safe to call from the observer thread."""
        self._events.put(LoopEvent(_WATCH_KINDS[event.kind], event.path))

    def submit(self, event: LoopEvent) -> None:
        self._events.put(event)

    # Consumer

    def run(self, max_ticks: int | None = None) -> None:
        """Process events until shutdown (or ``max_ticks`` detection ticks).

        The first safety-timer tick fires immediately so a restarted process
        resumes an unfinished rotation without waiting a full interval.
        """
        logger.info(
            "Event loop started",
            extra={"fields": {"reconcile_interval_seconds": self.reconcile_interval}},
        )
        next_timer = self.clock()

        while not self.shutdown.is_shutting_down:
            if max_ticks is not None and self.ticks >= max_ticks:
                break
            batch = self._next_batch(max(0.0, next_timer - self.clock()))
            kinds = {event.kind for event in batch}

            if LoopEventKind.SHUTDOWN in kinds or self.shutdown.is_shutting_down:
                break
            if LoopEventKind.FILE_REMOVE in kinds and self.rearm_watch is not None:
                self.rearm_watch()

            timer_fired = LoopEventKind.TIMER in kinds
            if timer_fired:
                logger.debug("Reconcile timer fired")
                next_timer = self.clock() + self.reconcile_interval

            try:
                self.tick(reconcile=timer_fired)
            except Exception:
                # Next tick retries.
                logger.exception("Unexpected error during detection tick")

        logger.info("Event loop exiting")

    def _next_batch(self, timeout: float) -> list[LoopEvent]:
        try:
            first = self._events.get(timeout=timeout) if timeout > 0 else self._events.get_nowait()
        except queue.Empty:
            first = LoopEvent(LoopEventKind.TIMER)

        batch = [first]
        while True:
            try:
                batch.append(self._events.get_nowait())
            except queue.Empty:
                return batch

    def tick(self, reconcile: bool = False) -> RotationOutcome | None:
        """Run one detection cycle.

        A changed key file starts a rotation when this instance is authorized.
        On reconcile ticks an unchanged file is also compared against the
        cluster keyring, so a rotation interrupted by a restart is resumed.
        """
        self.ticks += 1
        material = self.detector.detect()
        if material is None:
            if reconcile and self.reconcile_with_keyring:
                return self._reconcile()
            return None

        if not self.gate.is_authorized():
            logger.info(
                "Key change detected but this instance is not the leader, staying passive",
                extra={"fields": {"fingerprint": material.short, "error_code": ErrorCode.NOT_AUTHORIZED.value}},
            )
            return None
        return self.orchestrator.rotate(material)

    def _reconcile(self) -> RotationOutcome | None:
        material = self.detector.read()
        if material is None or not self.gate.is_authorized():
            return None
        try:
            listing = self.keyring.list()
        except ClusterAPIError as e:
            logger.warning(f"Unable to list keyring during reconcile: {e}")
            return None

        if listing.is_sole_primary(material.key) and not listing.others(material.key):
            logger.debug("Keyring in sync with key file", extra={"fields": {"fingerprint": material.short}})
            return None

        logger.info(
            "Keyring out of sync with key file, resuming rotation",
            extra={
                "fields": {
                    "fingerprint": material.short,
                    "primary_keys": [short_fingerprint(e.fingerprint) for e in listing.entries if e.primary],
                    "installed_keys": len(listing.entries),
                }
            },
        )
        return self.orchestrator.rotate(material)

    def status(self) -> dict[str, Any]:
        outcome = self.orchestrator.last_outcome
        committed = self.detector.committed_fingerprint
        return {
            "state": self.orchestrator.state.value,
            "committed_fingerprint": short_fingerprint(committed) if committed else None,
            "ticks": self.ticks,
            "last_outcome": None
            if outcome is None
            else {
                "fingerprint": short_fingerprint(outcome.fingerprint),
                "state": outcome.state.value,
                "reached": outcome.reached.value,
                "error": outcome.error,
                "cancelled": outcome.cancelled,
                "stale_keys": len(outcome.stale_keys),
            },
        }
