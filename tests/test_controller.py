import sqlite3
import time
from collections import defaultdict
from threading import Lock

from xdeploy import db
from xdeploy.controller import Controller
from xdeploy.errors import ConflictError, NotFoundError, TransientDriverError
from xdeploy.models import ResourceKey, XDeploymentSpec
from xdeploy.reconciler import Reconciler, Result
from xdeploy.workqueue import BackoffRateLimiter, WorkQueue


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


class ScriptedReconciler:
    """Raises the queued outcomes in order, then succeeds."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def reconcile(self, key):
        self.calls.append(key)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return Result()


def make_queue():
    return WorkQueue(rate_limiter=BackoffRateLimiter(base_s=30.0, cap_s=60.0))


def test_transient_failure_is_retried_with_backoff(store, driver, key):
    queue = make_queue()
    ctl = Controller(store, driver, reconciler=ScriptedReconciler([TransientDriverError("down")]), queue=queue)
    queue.add(key)

    assert ctl.process_next_item(timeout=0) is True
    assert queue.num_requeues(key) == 1
    assert len(queue) == 0
    assert queue.pending_delayed() == 1


def test_unexpected_errors_do_not_escape_the_worker(store, driver, key):
    queue = make_queue()
    ctl = Controller(store, driver, reconciler=ScriptedReconciler([RuntimeError("bug")]), queue=queue)
    queue.add(key)

    assert ctl.process_next_item(timeout=0) is True
    assert queue.num_requeues(key) == 1
    assert queue.in_flight() == set()


def test_conflict_is_rerun_immediately(store, driver, key):
    queue = make_queue()
    rec = ScriptedReconciler([ConflictError("changed"), NotFoundError("gone")])
    ctl = Controller(store, driver, reconciler=rec, queue=queue)
    queue.add(key)

    ctl.process_next_item(timeout=0)
    assert len(queue) == 1
    ctl.process_next_item(timeout=0)
    assert len(queue) == 1
    ctl.process_next_item(timeout=0)
    assert len(queue) == 0
    assert queue.num_requeues(key) == 0
    assert rec.calls == [key, key, key]


def test_success_resets_backoff_and_honours_requeue_after(store, driver, key):
    queue = make_queue()
    rec = ScriptedReconciler([TransientDriverError("down"), Result(requeue_after=0.01)])
    ctl = Controller(store, driver, reconciler=rec, queue=queue)
    queue.add(key)
    ctl.process_next_item(timeout=0)
    assert queue.num_requeues(key) == 1

    queue.add(key)
    ctl.process_next_item(timeout=0)
    assert queue.num_requeues(key) == 0
    assert queue.get(timeout=2) == key


def test_process_next_item_reports_shutdown(store, driver):
    queue = make_queue()
    ctl = Controller(store, driver, reconciler=ScriptedReconciler([]), queue=queue)
    assert ctl.process_next_item(timeout=0) is True
    queue.shut_down()
    assert ctl.process_next_item(timeout=0) is False


def test_enqueue_all_includes_orphan_owners(store, driver, key):
    orphan = ResourceKey("default", "orphan")
    driver.seed(orphan, "app:v1", created_at=1.0)
    store.apply(key, XDeploymentSpec(image="app:v1"))
    queue = make_queue()
    ctl = Controller(store, driver, queue=queue)

    assert ctl.enqueue_all() == 2
    assert {queue.get(timeout=0), queue.get(timeout=0)} == {key, orphan}


class ConcurrencyProbe:
    def __init__(self):
        self.lock = Lock()
        self.active = defaultdict(int)
        self.max_active = 0
        self.passes = 0

    def reconcile(self, key):
        with self.lock:
            self.active[key] += 1
            self.max_active = max(self.max_active, self.active[key])
            self.passes += 1
        time.sleep(0.005)
        with self.lock:
            self.active[key] -= 1
        return Result()


def test_one_key_is_never_reconciled_by_two_workers(store, driver, key):
    probe = ConcurrencyProbe()
    ctl = Controller(store, driver, reconciler=probe, workers=4, resync_interval_s=60)
    ctl.start()
    try:
        for _ in range(200):
            ctl.queue.add(key)
            time.sleep(0.0005)
        assert wait_for(lambda: len(ctl.queue) == 0 and not ctl.queue.in_flight())
    finally:
        ctl.stop()
    assert probe.passes >= 2
    assert probe.max_active == 1


def test_controller_end_to_end(store, driver, key):
    rec = Reconciler(store, driver, clock=driver.clock, readiness_poll_s=0.02, ready_timeout_s=30.0)
    ctl = Controller(store, driver, reconciler=rec, workers=2, resync_interval_s=0.2)
    ctl.start()
    try:
        assert ctl.running
        store.apply(key, XDeploymentSpec(image="app:v1", replicas=2))
        assert wait_for(lambda: store.get(key).status.replicas == 2)
        assert len(driver.owned(key)) == 2

        store.apply(key, XDeploymentSpec(image="app:v2", replicas=2))
        assert wait_for(
            lambda: {c.image for c in driver.owned(key)} == {"app:v2"} and store.get(key).status.replicas == 2
        )
        assert len(driver.owned(key)) == 2

        store.request_delete(key)
        assert wait_for(lambda: store.get(key) is None)
        assert driver.owned(key) == []
    finally:
        ctl.stop()
    assert not ctl.running


def make_fast_queue():
    return WorkQueue(rate_limiter=BackoffRateLimiter(base_s=0.01, cap_s=0.01))


def test_worker_survives_when_the_event_log_is_locked(store, driver, key, monkeypatch, capsys):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "log_event", locked)
    locked_db = sqlite3.OperationalError("database is locked")
    rec = ScriptedReconciler([locked_db, locked_db])
    ctl = Controller(store, driver, reconciler=rec, queue=make_fast_queue(), workers=1, resync_interval_s=60)
    ctl.start()
    try:
        ctl.queue.add(key)
        assert wait_for(lambda: len(rec.calls) >= 3)
        other = ResourceKey("default", "other")
        ctl.queue.add(other)
        assert wait_for(lambda: other in rec.calls)
        assert all(t.is_alive() for t in ctl._threads)
    finally:
        ctl.stop()
    assert "event log unavailable" in capsys.readouterr().err


def test_resync_survives_store_and_log_failures(store, driver, monkeypatch):
    attempts = []

    def failing_keys():
        attempts.append(1)
        raise sqlite3.OperationalError("database is locked")

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "keys", failing_keys)
    monkeypatch.setattr(db, "log_event", locked)
    ctl = Controller(store, driver, reconciler=ScriptedReconciler([]), queue=make_fast_queue(), resync_interval_s=0.01)
    ctl.start()
    try:
        assert wait_for(lambda: len(attempts) >= 3)
        resync = [t for t in ctl._threads if t.name == "xdeploy-resync"]
        assert resync and resync[0].is_alive()
    finally:
        ctl.stop()


def test_controller_can_be_restarted(store, driver, key):
    rec = ScriptedReconciler([])
    ctl = Controller(store, driver, reconciler=rec, workers=2, resync_interval_s=60)
    ctl.start()
    ctl.stop()
    assert not ctl.running

    ctl.start()
    try:
        assert not ctl.queue.shutting_down
        ctl.queue.add(key)
        assert wait_for(lambda: key in rec.calls)
        workers = [t for t in ctl._threads if t.name.startswith("xdeploy-worker-")]
        assert len(workers) == 2
        assert all(t.is_alive() for t in workers)
    finally:
        ctl.stop()
