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

"""Cooperative shutdown coordinator for the sidecar process."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class ShutdownCoordinator:
    """
    Coordinates graceful shutdown of the event loop and its collaborators.

    Features:
    - Translates SIGINT/SIGTERM into a shutdown event
    - Interruptible sleeps for retry backoff
    - Wakes blocked consumers through registered wakeup callbacks
    - Runs cleanup handlers once, in registration order
    """

    def __init__(self):
        self.shutdown_event = threading.Event()
        self._wakeups: list[Callable[[], None]] = []
        self._shutdown_handlers: list[Callable[[], None]] = []
        self._handlers_ran = False
        self._lock = threading.Lock()

    @property
    def is_shutting_down(self) -> bool:
        return self.shutdown_event.is_set()

    def install_signal_handlers(self, signals: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM)) -> None:
        """Route the given signals to request_shutdown. Main thread only."""
        for sig in signals:
            signal.signal(sig, self._on_signal)

    def _on_signal(self, signum: int, _frame) -> None:
        self.request_shutdown(f"{signal.Signals(signum).name} received")

    def register_wakeup(self, wakeup: Callable[[], None]) -> None:
        """Register a callback that unblocks a waiting consumer."""
        self._wakeups.append(wakeup)

    def register_shutdown_handler(self, handler: Callable[[], None]) -> None:
        """Register a cleanup handler run by run_shutdown_handlers."""
        self._shutdown_handlers.append(handler)

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        if self.shutdown_event.is_set():
            logger.debug("Shutdown already initiated")
            return
        logger.info("Initiating graceful shutdown", extra={"fields": {"reason": reason}})
        self.shutdown_event.set()
        for wakeup in self._wakeups:
            wakeup()

    def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``. Returns False if shutdown was requested."""
        return not self.shutdown_event.wait(seconds)

    def run_shutdown_handlers(self) -> None:
        """Run cleanup handlers once; errors are logged and do not stop the rest."""
        with self._lock:
            if self._handlers_ran:
                return
            self._handlers_ran = True

        start_time = time.monotonic()
        for handler in self._shutdown_handlers:
            try:
                handler()
            except Exception as e:
                logger.error(f"Shutdown handler error: {getattr(handler, '__name__', handler)}", exc_info=e)
        logger.info(
            "Graceful shutdown complete",
            extra={"fields": {"elapsed_seconds": round(time.monotonic() - start_time, 3)}},
        )
