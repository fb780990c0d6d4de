from __future__ import annotations

import queue
from dataclasses import dataclass
from threading import Lock
from typing import Iterator

from . import db
from .db import XDeploymentRow
from .models import ResourceKey, XDeployment, XDeploymentSpec, XDeploymentStatus

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
STATUS = "STATUS"  # status-only write, spec untouched


@dataclass(frozen=True)
class WatchEvent:
    key: ResourceKey
    kind: str


class Watch:
    """A subscription to store changes. Iterate it; ``stop()`` ends iteration."""

    _STOP = object()

    def __init__(self, store: "XDeploymentStore"):
        self._store = store
        self._events: queue.Queue = queue.Queue()
        self._stopped = False

    def _push(self, event: WatchEvent) -> None:
        self._events.put(event)

    def next(self, timeout: float | None = None) -> WatchEvent | None:
        """Return the next event, or None when stopped or on timeout."""
        if self._stopped:
            return None
        try:
            item = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._STOP:
            self._stopped = True
            return None
        return item

    def __iter__(self) -> Iterator[WatchEvent]:
        while True:
            ev = self.next()
            if ev is None:
                return
            yield ev

    def stop(self) -> None:
        self._store._unsubscribe(self)
        self._events.put(self._STOP)


def _to_model(row: XDeploymentRow) -> XDeployment:
    return XDeployment(
        key=ResourceKey(row.namespace, row.name),
        spec=XDeploymentSpec.from_dict(row.spec),
        status=XDeploymentStatus.from_dict(row.status),
        generation=row.generation,
        resource_version=row.resource_version,
        deleting=row.deleting,
        created_at=row.created_at,
    )


class XDeploymentStore:
    """Desired-state store: SQLite persistence plus in-process watch fan-out.

    Spec is owned by the requester (``apply`` / ``request_delete``); status is
    owned by the controller (``update_status``), written compare-and-set.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._watchers: list[Watch] = []

    def get(self, key: ResourceKey) -> XDeployment | None:
        row = db.get_xdeployment(key.namespace, key.name)
        return _to_model(row) if row else None

    def list(self) -> list[XDeployment]:
        return [_to_model(r) for r in db.list_xdeployments()]

    def keys(self) -> list[ResourceKey]:
        return [ResourceKey(r.namespace, r.name) for r in db.list_xdeployments()]

    def apply(self, key: ResourceKey, spec: XDeploymentSpec) -> XDeployment:
        row, change = db.upsert_spec(key.namespace, key.name, spec.to_dict())
        if change:
            db.log_event("INFO", f"Spec {change.lower()} (generation {row.generation})", resource=str(key))
            self._notify(WatchEvent(key, change))
        return _to_model(row)

    def request_delete(self, key: ResourceKey) -> XDeployment:
        """Mark for deletion; the object stays until its children are finalized."""
        row = db.mark_deleting(key.namespace, key.name)
        db.log_event("INFO", "Deletion requested", resource=str(key))
        self._notify(WatchEvent(key, MODIFIED))
        return _to_model(row)

    def purge(self, key: ResourceKey) -> bool:
        removed = db.purge_xdeployment(key.namespace, key.name)
        if removed:
            self._notify(WatchEvent(key, DELETED))
        return removed

    def update_status(self, key: ResourceKey, status: XDeploymentStatus, expected_version: int) -> XDeployment:
        row = db.set_status(key.namespace, key.name, status.to_dict(), expected_version)
        self._notify(WatchEvent(key, STATUS))
        return _to_model(row)

    def watch(self) -> Watch:
        w = Watch(self)
        with self._lock:
            self._watchers.append(w)
        return w

    def _unsubscribe(self, w: Watch) -> None:
        with self._lock:
            if w in self._watchers:
                self._watchers.remove(w)

    def _notify(self, event: WatchEvent) -> None:
        with self._lock:
            watchers = list(self._watchers)
        for w in watchers:
            w._push(event)
