from __future__ import annotations

import sqlite3
import sys
from threading import Event, Thread

from . import db
from .driver import WorkloadDriver
from .errors import ConflictError, NotFoundError, TransientDriverError
from .models import ResourceKey
from .reconciler import Reconciler
from .settings import settings
from .store import STATUS, Watch, XDeploymentStore
from .workqueue import WorkQueue


class Controller:
    """Runs the reconciliation loop.

    Threads:
      - watch pump: store change events -> work queue
      - resync: periodically enqueues every known key and every owner the
        driver still has children for (orphans, dead containers)
      - N workers: one key at a time, never the same key on two workers
    """

    def __init__(
        self,
        store: XDeploymentStore,
        driver: WorkloadDriver,
        reconciler: Reconciler | None = None,
        queue: WorkQueue[ResourceKey] | None = None,
        workers: int | None = None,
        resync_interval_s: float | None = None,
    ):
        self.store = store
        self.driver = driver
        self.reconciler = reconciler or Reconciler(store, driver)
        self.queue: WorkQueue[ResourceKey] = queue if queue is not None else WorkQueue()
        self.workers = max(1, settings.workers if workers is None else int(workers))
        self.resync_interval_s = settings.resync_interval_s if resync_interval_s is None else resync_interval_s
        self._stop = Event()
        self._threads: list[Thread] = []
        self._watch: Watch | None = None

    def start(self) -> None:
        if self._threads:
            return
        if self.queue.shutting_down:
            # A shut-down queue stays shut; restart on a fresh one.
            self.queue = WorkQueue(rate_limiter=self.queue.rate_limiter)
        self._stop.clear()
        self._watch = self.store.watch()
        self._threads.append(
            Thread(target=self._pump_watch, args=(self._watch,), name="xdeploy-watch", daemon=True)
        )
        self._threads.append(Thread(target=self._resync_loop, name="xdeploy-resync", daemon=True))
        for i in range(self.workers):
            self._threads.append(Thread(target=self._worker, name=f"xdeploy-worker-{i}", daemon=True))
        for t in self._threads:
            t.start()
        self._log("INFO", f"Controller started with {self.workers} worker(s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self.queue.shut_down()
        if self._watch is not None:
            self._watch.stop()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        self._log("INFO", "Controller stopped")

    @staticmethod
    def _log(level: str, message: str, resource: str | None = None) -> None:
        """Event log write that cannot take a loop thread down with it."""
        try:
            db.log_event(level, message, resource=resource)
        except sqlite3.Error as e:
            print(f"[{level}] {resource or '-'}: {message} (event log unavailable: {e})", file=sys.stderr)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def enqueue_all(self) -> int:
        keys = set(self.store.keys())
        try:
            keys |= self.driver.list_owners()
        except TransientDriverError as e:
            self._log("WARN", f"Resync could not list child owners: {e}")
        for key in keys:
            self.queue.add(key)
        return len(keys)

    def _pump_watch(self, watch: Watch) -> None:
        for event in watch:
            # Status writes are our own; reacting to them only causes churn.
            if event.kind == STATUS:
                continue
            self.queue.add(event.key)

    def _resync_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.enqueue_all()
            except Exception as e:
                self._log("ERROR", f"Resync failed: {type(e).__name__}: {e}")
            self._stop.wait(max(0.1, self.resync_interval_s))

    def _worker(self) -> None:
        while True:
            try:
                if not self.process_next_item():
                    return
            except Exception as e:
                self._log("ERROR", f"Worker error: {type(e).__name__}: {e}")

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Reconcile one key. Returns False once the queue is shut down.

        Every error is classified here and turned into a requeue decision;
        nothing escapes to kill the worker.
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return not self.queue.shutting_down
        try:
            result = self.reconciler.reconcile(key)
        except (ConflictError, NotFoundError) as e:
            # Someone else wrote the object; re-read and run again right away.
            self._log("INFO", f"Re-running after {e.reason}: {e}", resource=str(key))
            self.queue.add(key)
        except TransientDriverError as e:
            delay = self.queue.add_rate_limited(key)
            self._log(
                "WARN",
                f"Transient failure ({e.reason}), retry {self.queue.num_requeues(key)} in {delay:.1f}s",
                resource=str(key),
            )
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            self._log(
                "ERROR",
                f"Reconcile failed: {type(e).__name__}: {e}; retry in {delay:.1f}s",
                resource=str(key),
            )
        else:
            self.queue.forget(key)
            if result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after)
        finally:
            self.queue.done(key)
        return True
