"""Tests for the detection event loop."""

import logging
import os
import queue
import signal
import threading
from unittest.mock import MagicMock

from fakes import FakeCluster, make_key

from gossip_rotator.change_detector import ChangeDetector
from gossip_rotator.core.shutdown import ShutdownCoordinator
from gossip_rotator.error_handling import BackoffPolicy
from gossip_rotator.error_mapping import TransientRPCError
from gossip_rotator.event_loop import EventLoop, LoopEvent, LoopEventKind
from gossip_rotator.keyring import KeyringClient
from gossip_rotator.leadership import LeadershipGate
from gossip_rotator.orchestrator import RotationOrchestrator
from gossip_rotator.watcher import WatchEvent, WatchEventKind

OLD = make_key(1)
NEW = make_key(2)

LEADER_IP = "10.0.0.1"
FAST = BackoffPolicy(max_attempts=3, interval=0.0, max_interval=0.0)
MUTATING = ("install", "use", "remove")


def build_loop(tmp_path, cluster, pod_ip=LEADER_IP, baseline=OLD, reconcile_with_keyring=True):
    key_file = tmp_path / f"gossip-{pod_ip}.key"
    key_file.write_text(baseline)
    detector = ChangeDetector(key_file)
    detector.initialize()

    shutdown = ShutdownCoordinator()
    keyring = KeyringClient(cluster)
    orchestrator = RotationOrchestrator(
        keyring,
        detector,
        install_policy=FAST,
        propagation_policy=FAST,
        promote_policy=FAST,
        remove_policy=FAST,
        sleep=shutdown.sleep,
        stop_requested=lambda: shutdown.is_shutting_down,
    )
    loop = EventLoop(
        detector,
        LeadershipGate(cluster, pod_ip),
        orchestrator,
        keyring,
        shutdown,
        reconcile_interval=600.0,
        reconcile_with_keyring=reconcile_with_keyring,
    )
    return loop, key_file


class TestTick:
    def test_changed_file_rotates_on_leader(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        loop, key_file = build_loop(tmp_path, cluster)
        key_file.write_text(NEW)

        outcome = loop.tick()

        assert outcome.succeeded
        assert cluster.primary == NEW
        assert loop.detector.committed_fingerprint == outcome.fingerprint

    def test_non_leader_stays_passive(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD, leader="10.0.0.9:8300")
        loop, key_file = build_loop(tmp_path, cluster)
        key_file.write_text(NEW)

        assert loop.tick() is None
        assert cluster.ops() == ["leader"]
        assert cluster.primary == OLD

    def test_passive_log_carries_not_authorized_code(self, tmp_path, caplog):
        cluster = FakeCluster(keys=[OLD], primary=OLD, leader="10.0.0.9:8300")
        loop, key_file = build_loop(tmp_path, cluster)
        key_file.write_text(NEW)

        with caplog.at_level(logging.INFO):
            loop.tick()

        [record] = [r for r in caplog.records if "not the leader" in r.getMessage()]
        assert record.fields["error_code"] == "not_authorized"

    def test_unknown_leader_stays_passive(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        cluster.fail_always("leader", TransientRPCError("connection refused", operation="leader"))
        loop, key_file = build_loop(tmp_path, cluster)
        key_file.write_text(NEW)

        assert loop.tick() is None
        assert cluster.ops(*MUTATING) == []

    def test_only_leader_mutates_shared_keyring(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD, leader="10.0.0.1:8300")
        leader_loop, leader_file = build_loop(tmp_path, cluster, pod_ip="10.0.0.1")
        follower_loop, follower_file = build_loop(tmp_path, cluster, pod_ip="10.0.0.2")
        leader_file.write_text(NEW)
        follower_file.write_text(NEW)

        follower_loop.tick()
        assert cluster.ops(*MUTATING) == []

        leader_loop.tick()
        assert cluster.primary == NEW
        # The follower still reports a change; it stays passive regardless.
        cluster.calls.clear()
        follower_loop.tick()
        assert cluster.ops(*MUTATING) == []

    def test_unchanged_file_without_reconcile_makes_no_calls(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        loop, _ = build_loop(tmp_path, cluster)

        assert loop.tick() is None
        assert cluster.calls == []

    def test_invalid_file_contents_are_ignored(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        loop, key_file = build_loop(tmp_path, cluster)
        key_file.write_text("not a key")

        assert loop.tick() is None
        assert cluster.calls == []

    def test_failed_rotation_retried_on_next_tick(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        cluster.fail("use", *[TransientRPCError("unavailable", operation="use")] * 3)
        loop, key_file = build_loop(tmp_path, cluster)
        key_file.write_text(NEW)

        first = loop.tick()
        second = loop.tick()

        assert not first.succeeded
        assert second.succeeded
        assert cluster.primary == NEW


class TestReconcile:
    def test_resumes_interrupted_rotation(self, tmp_path):
        # Restarted after installing NEW; the baseline is already NEW.
        cluster = FakeCluster(keys=[OLD, NEW], primary=OLD)
        loop, _ = build_loop(tmp_path, cluster, baseline=NEW)

        outcome = loop.tick(reconcile=True)

        assert outcome.succeeded
        assert cluster.primary == NEW
        assert set(cluster.keys) == {NEW}

    def test_in_sync_keyring_is_left_alone(self, tmp_path):
        cluster = FakeCluster(keys=[NEW], primary=NEW)
        loop, _ = build_loop(tmp_path, cluster, baseline=NEW)

        assert loop.tick(reconcile=True) is None
        assert cluster.ops() == ["leader", "list"]

    def test_retries_stale_key_removal(self, tmp_path):
        cluster = FakeCluster(keys=[OLD, NEW], primary=NEW)
        loop, _ = build_loop(tmp_path, cluster, baseline=NEW)

        outcome = loop.tick(reconcile=True)

        assert outcome.succeeded
        assert set(cluster.keys) == {NEW}

    def test_follower_does_not_reconcile(self, tmp_path):
        cluster = FakeCluster(keys=[OLD, NEW], primary=OLD, leader="10.0.0.9:8300")
        loop, _ = build_loop(tmp_path, cluster, baseline=NEW)

        assert loop.tick(reconcile=True) is None
        assert cluster.ops() == ["leader"]

    def test_list_failure_skips_reconcile(self, tmp_path):
        cluster = FakeCluster(keys=[OLD, NEW], primary=OLD)
        cluster.fail("list", TransientRPCError("timeout", operation="list"))
        loop, _ = build_loop(tmp_path, cluster, baseline=NEW)

        assert loop.tick(reconcile=True) is None
        assert cluster.ops(*MUTATING) == []

    def test_disabled(self, tmp_path):
        cluster = FakeCluster(keys=[OLD, NEW], primary=OLD)
        loop, _ = build_loop(tmp_path, cluster, baseline=NEW, reconcile_with_keyring=False)

        assert loop.tick(reconcile=True) is None
        assert cluster.calls == []


class TestRun:
    def test_first_timer_tick_fires_immediately(self, tmp_path):
        cluster = FakeCluster(keys=[OLD, NEW], primary=OLD)
        loop, _ = build_loop(tmp_path, cluster, baseline=NEW)

        loop.run(max_ticks=1)

        assert cluster.primary == NEW

    def test_burst_of_events_coalesced_into_one_tick(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        loop, key_file = build_loop(tmp_path, cluster)
        key_file.write_text(NEW)
        for _ in range(5):
            loop.on_watch_event(WatchEvent(WatchEventKind.WRITE, str(key_file)))

        loop.run(max_ticks=1)

        assert loop.ticks == 1
        assert cluster.ops("install") == ["install"]

    def test_remove_event_rearms_watch(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        loop, key_file = build_loop(tmp_path, cluster)
        loop.rearm_watch = MagicMock(return_value=True)
        loop.on_watch_event(WatchEvent(WatchEventKind.REMOVE, str(key_file)))

        loop.run(max_ticks=1)

        loop.rearm_watch.assert_called_once_with()

    def test_shutdown_requested_before_run(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        loop, _ = build_loop(tmp_path, cluster)
        loop.shutdown.request_shutdown("test")

        loop.run()

        assert loop.ticks == 0
        assert cluster.calls == []

    def test_shutdown_event_in_batch_stops_loop(self, tmp_path):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        loop, key_file = build_loop(tmp_path, cluster)
        key_file.write_text(NEW)
        loop.submit(LoopEvent(LoopEventKind.FILE_WRITE))
        loop.submit(LoopEvent(LoopEventKind.SHUTDOWN))

        loop.run()

        assert loop.ticks == 0
        assert cluster.ops(*MUTATING) == []

    def test_unexpected_tick_error_is_logged_not_raised(self, tmp_path, caplog):
        cluster = FakeCluster(keys=[OLD], primary=OLD)
        loop, key_file = build_loop(tmp_path, cluster)
        key_file.write_text(NEW)
        loop.gate = MagicMock()
        loop.gate.is_authorized.side_effect = RuntimeError("boom")

        with caplog.at_level(logging.ERROR):
            loop.run(max_ticks=1)

        assert "Unexpected error during detection tick" in caplog.text
        assert loop.ticks == 1


def test_request_shutdown_wakes_waiting_loop(tmp_path):
    cluster = FakeCluster(keys=[OLD], primary=OLD)
    loop, _ = build_loop(tmp_path, cluster)

    loop.shutdown.request_shutdown("signal")

    assert isinstance(loop._events, queue.SimpleQueue)
    assert loop._events.get_nowait() == LoopEvent(LoopEventKind.SHUTDOWN)


def test_signal_wakes_loop_blocked_on_queue(tmp_path):
    cluster = FakeCluster(keys=[OLD], primary=OLD)
    loop, _ = build_loop(tmp_path, cluster)
    previous = signal.getsignal(signal.SIGTERM)
    loop.shutdown.install_signal_handlers((signal.SIGTERM,))
    timer = threading.Timer(0.2, os.kill, (os.getpid(), signal.SIGTERM))
    try:
        timer.start()
        loop.run()
    finally:
        timer.cancel()
        signal.signal(signal.SIGTERM, previous)

    assert loop.shutdown.is_shutting_down
    assert loop.ticks <= 1
    assert cluster.ops(*MUTATING) == []


def test_status_reports_last_outcome(tmp_path):
    cluster = FakeCluster(keys=[OLD], primary=OLD)
    loop, key_file = build_loop(tmp_path, cluster)
    assert loop.status()["last_outcome"] is None

    key_file.write_text(NEW)
    loop.tick()
    status = loop.status()

    assert status["state"] == "idle"
    assert status["ticks"] == 1
    assert status["last_outcome"]["state"] == "done"
    assert status["last_outcome"]["stale_keys"] == 0
    assert len(status["committed_fingerprint"]) == 12
