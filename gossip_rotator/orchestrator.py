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

"""Rotation orchestrator.

Drives one rotation of the shared gossip key through

    IDLE -> DETECTED -> INSTALLING -> AWAITING_PROPAGATION -> PROMOTING -> RETIRING -> DONE

with FAILED reachable from every non-terminal state once a step exhausts its
retries. Safety rules:

- PROMOTING is entered only after a keyring listing shows every member holding
  the new key. A propagation timeout fails the attempt before any promotion or
  removal, leaving the old key primary.
- Old keys are removed only after promotion succeeded. Each removal is retried
  on its own; a key that cannot be removed is reported and left installed.
- The new fingerprint is committed to the change detector only on DONE, so a
  failed or cancelled attempt is retried on the next detection tick.

Every keyring operation is idempotent, so re-running a partially applied
attempt produces no additional cluster-visible change.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .change_detector import ChangeDetector, KeyMaterial, short_fingerprint
from .error_handling import BackoffPolicy, Sleeper, blocking_sleep, classify_error, poll_until, retry_call
from .error_mapping import (
    PropagationTimeoutError,
    RetryExhaustedError,
    RotationCancelledError,
    RotatorError,
    marshal_exception,
)
from .errors import ErrorCode
from .keyring import KeyringClient, KeyringListing

if TYPE_CHECKING:
    from .config import RotatorConfig
    from .metrics import RotatorMetrics

logger = logging.getLogger(__name__)


class RotationState(Enum):
    """Rotation protocol states."""

    IDLE = "idle"
    DETECTED = "detected"
    INSTALLING = "installing"
    AWAITING_PROPAGATION = "awaiting_propagation"
    PROMOTING = "promoting"
    RETIRING = "retiring"
    DONE = "done"
    FAILED = "failed"

    @property
    def index(self) -> int:
        return list(RotationState).index(self)

    @property
    def terminal(self) -> bool:
        return self in (RotationState.DONE, RotationState.FAILED)


_TRANSITIONS: dict[RotationState, set[RotationState]] = {
    RotationState.IDLE: {RotationState.DETECTED},
    RotationState.DETECTED: {RotationState.INSTALLING, RotationState.FAILED},
    RotationState.INSTALLING: {RotationState.AWAITING_PROPAGATION, RotationState.FAILED},
    RotationState.AWAITING_PROPAGATION: {RotationState.PROMOTING, RotationState.FAILED},
    RotationState.PROMOTING: {RotationState.RETIRING, RotationState.FAILED},
    RotationState.RETIRING: {RotationState.DONE, RotationState.FAILED},
    RotationState.DONE: set(),
    RotationState.FAILED: set(),
}


@dataclass
class RotationAttempt:
    """State of one in-flight rotation. Discarded once terminal."""

    target: KeyMaterial
    state: RotationState = RotationState.IDLE
    attempts: dict[RotationState, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)
    last_error: BaseException | None = None
    observed: KeyringListing | None = None
    stale_keys: list[str] = field(default_factory=list)

    def count(self, state: RotationState) -> None:
        self.attempts[state] = self.attempts.get(state, 0) + 1


@dataclass(frozen=True)
class RotationOutcome:
    """Terminal result of a rotation attempt."""

    fingerprint: str
    state: RotationState
    reached: RotationState
    error: str | None = None
    cancelled: bool = False
    stale_keys: tuple[str, ...] = ()
    attempts: dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is RotationState.DONE

    @property
    def degraded(self) -> bool:
        """Safe but not clean: stale keys left, or propagation never confirmed."""
        return bool(self.stale_keys) or (
            self.state is RotationState.FAILED and self.reached is RotationState.AWAITING_PROPAGATION
        )


class RotationOrchestrator:
    """Runs rotation attempts one at a time against the shared keyring."""

    def __init__(
        self,
        keyring: KeyringClient,
        detector: ChangeDetector,
        install_policy: BackoffPolicy | None = None,
        propagation_policy: BackoffPolicy | None = None,
        promote_policy: BackoffPolicy | None = None,
        remove_policy: BackoffPolicy | None = None,
        sleep: Sleeper = blocking_sleep,
        stop_requested: Callable[[], bool] | None = None,
        metrics: RotatorMetrics | None = None,
    ):
        self.keyring = keyring
        self.detector = detector
        self.install_policy = install_policy or BackoffPolicy()
        self.propagation_policy = propagation_policy or BackoffPolicy()
        self.promote_policy = promote_policy or BackoffPolicy()
        self.remove_policy = remove_policy or BackoffPolicy()
        self.sleep = sleep
        self.stop_requested = stop_requested or (lambda: False)
        self.metrics = metrics

        self._attempt: RotationAttempt | None = None
        self.last_outcome: RotationOutcome | None = None

    @classmethod
    def from_config(
        cls,
        config: RotatorConfig,
        keyring: KeyringClient,
        detector: ChangeDetector,
        **kwargs,
    ) -> RotationOrchestrator:
        return cls(
            keyring,
            detector,
            install_policy=config.install_retry,
            propagation_policy=config.propagation_poll,
            promote_policy=config.promote_retry,
            remove_policy=config.remove_retry,
            **kwargs,
        )

    @property
    def state(self) -> RotationState:
        return self._attempt.state if self._attempt else RotationState.IDLE

    @property
    def in_flight(self) -> bool:
        return self._attempt is not None

    def rotate(self, material: KeyMaterial) -> RotationOutcome | None:
        """Run one rotation toward ``material``.

        Returns None without touching the keyring if an attempt is already in
        flight. Never raises for protocol failures; they end in FAILED.
        """
        if self._attempt is not None:
            logger.info(
                "Rotation already in flight, ignoring detection",
                extra={"fields": {"fingerprint": material.short, "in_flight": self._attempt.target.short}},
            )
            return None

        attempt = RotationAttempt(target=material)
        self._attempt = attempt
        try:
            self._transition(attempt, RotationState.DETECTED)
            self._install(attempt)
            self._await_propagation(attempt)
            self._promote(attempt)
            self._retire(attempt)
            self._transition(attempt, RotationState.DONE)
            self.detector.commit(material)
            return self._finish(attempt, RotationState.DONE)
        except RotationCancelledError as e:
            return self._fail(attempt, e, cancelled=True)
        except (RetryExhaustedError, PropagationTimeoutError) as e:
            return self._fail(attempt, e)
        except Exception as e:
            # Anything unclassified still ends the attempt, old primary intact.
            return self._fail(attempt, e)
        finally:
            self._attempt = None
            if self.metrics is not None:
                self.metrics.set_state(RotationState.IDLE.index)

    def _install(self, attempt: RotationAttempt) -> None:
        self._transition(attempt, RotationState.INSTALLING)
        key = attempt.target.key
        self._run_step(attempt, "install", lambda: self.keyring.install(key), self.install_policy)

    def _await_propagation(self, attempt: RotationAttempt) -> None:
        self._transition(attempt, RotationState.AWAITING_PROPAGATION)
        key = attempt.target.key

        def key_propagated() -> bool:
            attempt.count(RotationState.AWAITING_PROPAGATION)
            try:
                listing = self.keyring.list()
            except RotatorError as e:
                self._record_rpc_error("list", e)
                raise
            attempt.observed = listing
            entry = listing.get(key)
            logger.info(
                "Waiting for key propagation",
                extra={
                    "fields": {
                        "fingerprint": attempt.target.short,
                        "members": entry.members if entry else 0,
                        "total_members": listing.total_members,
                        "pools": list(listing.pool_names),
                    }
                },
            )
            return listing.is_propagated(key)

        self._check_stop()
        poll_until(key_propagated, self.propagation_policy, sleep=self.sleep, description="key propagation")

    def _promote(self, attempt: RotationAttempt) -> None:
        self._transition(attempt, RotationState.PROMOTING)
        key = attempt.target.key
        self._run_step(attempt, "promote", lambda: self.keyring.promote(key), self.promote_policy)

    def _retire(self, attempt: RotationAttempt) -> None:
        self._transition(attempt, RotationState.RETIRING)
        key = attempt.target.key

        try:
            listing = self._run_step(attempt, "list", self.keyring.list, self.remove_policy)
        except RetryExhaustedError as e:
            logger.warning(f"Unable to refresh keyring before retiring, using last observed listing: {e}")
            listing = attempt.observed

        stale = listing.others(key) if listing is not None else []
        for entry in stale:
            try:
                self._run_step(attempt, "remove", lambda k=entry.key: self.keyring.remove(k), self.remove_policy)
                logger.info("Removed stale key", extra={"fields": {"fingerprint": entry.short}})
            except RetryExhaustedError as e:
                attempt.stale_keys.append(entry.fingerprint)
                logger.error(
                    "Unable to remove stale key, leaving it installed as a non-primary key",
                    extra={
                        "fields": {
                            "fingerprint": entry.short,
                            "target": attempt.target.short,
                            "last_error": str(e.last_error or e),
                            "error_code": ErrorCode.PARTIAL_REMOVAL.value,
                        }
                    },
                )

    def _run_step(self, attempt: RotationAttempt, operation: str, call: Callable, policy: BackoffPolicy):
        self._check_stop()

        def counted():
            attempt.count(attempt.state)
            return call()

        return retry_call(
            counted,
            policy,
            sleep=self.sleep,
            description=f"keyring {operation}",
            on_error=lambda _attempt, e: self._record_rpc_error(operation, e),
        )

    def _check_stop(self) -> None:
        if self.stop_requested():
            raise RotationCancelledError("shutdown requested")

    def _record_rpc_error(self, operation: str, exc: BaseException) -> None:
        if self.metrics is not None:
            self.metrics.record_rpc_error(operation, classify_error(exc).value)

    def _transition(self, attempt: RotationAttempt, new_state: RotationState) -> None:
        if new_state not in _TRANSITIONS[attempt.state]:
            raise RuntimeError(f"Invalid transition from {attempt.state.value} to {new_state.value}")
        logger.info(
            "Rotation state transition",
            extra={
                "fields": {
                    "from": attempt.state.value,
                    "to": new_state.value,
                    "fingerprint": attempt.target.short,
                }
            },
        )
        attempt.state = new_state
        if self.metrics is not None:
            self.metrics.set_state(new_state.index)

    def _fail(self, attempt: RotationAttempt, error: BaseException, cancelled: bool = False) -> RotationOutcome:
        attempt.last_error = error
        reached = attempt.state
        self._transition(attempt, RotationState.FAILED)
        return self._finish(attempt, reached, cancelled=cancelled)

    def _finish(self, attempt: RotationAttempt, reached: RotationState, cancelled: bool = False) -> RotationOutcome:
        error = attempt.last_error
        last_error = getattr(error, "last_error", None) or error
        outcome = RotationOutcome(
            fingerprint=attempt.target.fingerprint,
            state=attempt.state,
            reached=reached,
            error=str(last_error) if last_error is not None else None,
            cancelled=cancelled,
            stale_keys=tuple(attempt.stale_keys),
            attempts={state.value: n for state, n in attempt.attempts.items()},
            duration_seconds=time.monotonic() - attempt.started_at,
        )
        self.last_outcome = outcome

        fields = {
            "fingerprint": attempt.target.short,
            "state": reached.value,
            "attempts": outcome.attempts,
            "duration_seconds": round(outcome.duration_seconds, 3),
        }
        if outcome.succeeded:
            fields["stale_keys"] = [short_fingerprint(f) for f in outcome.stale_keys]
            if outcome.stale_keys:
                logger.warning("Rotation completed with stale keys left installed", extra={"fields": fields})
            else:
                logger.info("Rotation completed", extra={"fields": fields})
        elif cancelled:
            logger.warning("Rotation cancelled by shutdown", extra={"fields": fields})
        else:
            fields["last_error"] = outcome.error
            if error is not None:
                fields["error"] = marshal_exception(error)
                if last_error is not error:
                    fields["cause"] = marshal_exception(last_error)
            logger.error(
                "Rotation failed, old primary key remains active",
                extra={"fields": fields},
                exc_info=None if isinstance(error, RotatorError) else error,
            )

        if self.metrics is not None:
            self.metrics.record_outcome("cancelled" if cancelled else attempt.state.value)
            if outcome.succeeded:
                self.metrics.set_stale_keys(len(outcome.stale_keys))
                self.metrics.set_degraded(bool(outcome.stale_keys))
            elif outcome.degraded:
                self.metrics.set_degraded(True)
        return outcome
