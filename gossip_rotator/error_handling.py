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

"""Error handling utilities for the rotation path.

This module provides:
- A backoff policy shared by every keyring operation
- Bounded retry with cooperative cancellation between attempts
- Classification of cluster API failures
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .error_mapping import (
    ClusterAPIError,
    ConfigurationError,
    PropagationTimeoutError,
    RetryExhaustedError,
    RotationCancelledError,
    RotatorError,
)
from .errors import ErrorCode

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Sleeps for the given number of seconds. Returns False when shutdown was
# requested during the wait.
Sleeper = Callable[[float], bool]


def blocking_sleep(seconds: float) -> bool:
    time.sleep(seconds)
    return True


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded retry policy.

    With the default ``backoff_factor`` of 1.0 the spacing is a fixed
    ``interval``. ``jitter`` adds up to that fraction of the delay at random.
    """

    max_attempts: int = 100
    interval: float = 1.0
    backoff_factor: float = 1.0
    max_interval: float = 10.0
    jitter: float = 0.0

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.interval < 0:
            raise ConfigurationError("interval must be non-negative")
        if self.backoff_factor < 1.0:
            raise ConfigurationError("backoff_factor must be >= 1.0")
        if self.max_interval < self.interval:
            raise ConfigurationError("max_interval must be >= interval")
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigurationError("jitter must be between 0 and 1")

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given 1-based failed attempt."""
        delay = min(self.interval * (self.backoff_factor ** (attempt - 1)), self.max_interval)
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return delay


def classify_error(exc: BaseException) -> ErrorCode:
    """Map an exception seen in the rotation path to an ErrorCode."""
    if isinstance(exc, RotatorError):
        return exc.code
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCode.TRANSIENT_RPC
    return ErrorCode.INTERNAL


def is_transient(exc: BaseException) -> bool:
    return classify_error(exc) == ErrorCode.TRANSIENT_RPC


def retry_call(
    operation: Callable[[], T],
    policy: BackoffPolicy,
    sleep: Sleeper = blocking_sleep,
    description: str = "",
    on_error: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Call ``operation`` until it succeeds or ``policy`` is exhausted.

    Raises RetryExhaustedError carrying the last error after the final
    attempt, and RotationCancelledError if ``sleep`` reports shutdown.
    """
    name = description or getattr(operation, "__name__", "operation")
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return operation()
        except (ClusterAPIError, TimeoutError, ConnectionError) as e:
            last_error = e
            if on_error is not None:
                on_error(attempt, e)
            level = logging.WARNING if is_transient(e) else logging.ERROR
            _logger.log(level, f"Attempt {attempt}/{policy.max_attempts} failed for {name}: {e}")

        if attempt == policy.max_attempts:
            break
        if not sleep(policy.delay(attempt)):
            raise RotationCancelledError(f"shutdown requested while retrying {name}")

    raise RetryExhaustedError(f"All {policy.max_attempts} attempts failed for {name}", last_error=last_error)


def poll_until(
    probe: Callable[[], bool],
    policy: BackoffPolicy,
    sleep: Sleeper = blocking_sleep,
    description: str = "",
) -> None:
    """Call ``probe`` until it returns True, up to ``policy.max_attempts`` polls.

    A probe that raises a cluster API error counts as a failed poll. Raises
    PropagationTimeoutError when the polls run out.
    """
    name = description or getattr(probe, "__name__", "probe")
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            if probe():
                return
        except (ClusterAPIError, TimeoutError, ConnectionError) as e:
            last_error = e
            _logger.warning(f"Poll {attempt}/{policy.max_attempts} failed for {name}: {e}")

        if attempt == policy.max_attempts:
            break
        if not sleep(policy.delay(attempt)):
            raise RotationCancelledError(f"shutdown requested while polling {name}")

    detail = f"{name} not satisfied after {policy.max_attempts} polls"
    if last_error is not None:
        detail = f"{detail} (last error: {last_error})"
    raise PropagationTimeoutError(detail)


__all__ = [
    "BackoffPolicy",
    "Sleeper",
    "blocking_sleep",
    "classify_error",
    "is_transient",
    "poll_until",
    "retry_call",
]
