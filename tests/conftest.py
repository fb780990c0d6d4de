import os as _os
import sys
from dataclasses import replace
from threading import Lock

import pytest

# Ensure project root is importable (so `import cli` works without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from xdeploy import db  # noqa: E402
from xdeploy.driver import ChildTemplate, ChildWorkloadUnit, Readiness  # noqa: E402
from xdeploy.models import ResourceKey  # noqa: E402
from xdeploy.settings import settings  # noqa: E402
from xdeploy.store import XDeploymentStore  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDriver:
    """In-memory workload driver.

    A new child answers NOT_READY to its first ``warmup_polls`` readiness
    checks, then READY. Images in ``never_ready_images`` never become ready.
    ``ready_history`` records, per owner, the ready count after every
    create/delete.
    """

    def __init__(self, clock=None, warmup_polls: int = 0):
        self.clock = clock or FakeClock()
        self.warmup_polls = warmup_polls
        self.never_ready_images: set[str] = set()
        self.children: dict[str, ChildWorkloadUnit] = {}
        self.templates: dict[str, ChildTemplate] = {}
        self.calls: list[tuple] = []
        self.ready_history: dict[ResourceKey, list[int]] = {}
        self.fail_on: dict[str, Exception] = {}
        self.on_create = None
        self._polls: dict[str, int] = {}
        self._ready: set[str] = set()
        self._seq = 0
        self._lock = Lock()

    # -- helpers for tests -------------------------------------------------
    def seed(self, owner, image, created_at, ready=True, terminated=False, template=None):
        template = template or ChildTemplate(image=image)
        with self._lock:
            self._seq += 1
            unit_id = f"u{self._seq:04d}"
            self.children[unit_id] = ChildWorkloadUnit(
                unit_id=unit_id,
                owner=owner,
                image=image,
                revision=template.revision,
                created_at=created_at,
                terminated=terminated,
            )
            self.templates[unit_id] = template
            if ready:
                self._ready.add(unit_id)
        return unit_id

    def owned(self, owner):
        with self._lock:
            return sorted(
                (c for c in self.children.values() if c.owner == owner), key=lambda c: (c.created_at, c.unit_id)
            )

    def ready_now(self, owner) -> int:
        with self._lock:
            return self._ready_count_locked(owner)

    def mutations(self):
        with self._lock:
            return [c for c in self.calls if c[0] in ("create", "delete")]

    def _ready_count_locked(self, owner) -> int:
        return sum(
            1 for c in self.children.values() if c.owner == owner and not c.terminated and c.unit_id in self._ready
        )

    def _maybe_fail(self, op: str) -> None:
        err = self.fail_on.get(op)
        if err is not None:
            raise err

    # -- WorkloadDriver ----------------------------------------------------
    def list_children(self, owner):
        self._maybe_fail("list")
        with self._lock:
            self.calls.append(("list", owner))
            return [c for c in self.children.values() if c.owner == owner]

    def list_owners(self):
        with self._lock:
            return {c.owner for c in self.children.values()}

    def create_child(self, owner, template):
        self._maybe_fail("create")
        with self._lock:
            self._seq += 1
            unit_id = f"u{self._seq:04d}"
            self.children[unit_id] = ChildWorkloadUnit(
                unit_id=unit_id,
                owner=owner,
                image=template.image,
                revision=template.revision,
                created_at=self.clock(),
            )
            self.templates[unit_id] = template
            self.calls.append(("create", owner, unit_id, template.image))
            self.ready_history.setdefault(owner, []).append(self._ready_count_locked(owner))
        if self.on_create is not None:
            hook, self.on_create = self.on_create, None
            hook()
        return unit_id

    def delete_child(self, unit_id):
        self._maybe_fail("delete")
        with self._lock:
            child = self.children.pop(unit_id, None)
            self._ready.discard(unit_id)
            self.calls.append(("delete", child.owner if child else None, unit_id))
            if child is not None:
                self.ready_history.setdefault(child.owner, []).append(self._ready_count_locked(child.owner))

    def get_readiness(self, unit_id):
        self._maybe_fail("readiness")
        with self._lock:
            child = self.children.get(unit_id)
            if child is None:
                return Readiness.UNKNOWN
            if unit_id in self._ready:
                return Readiness.READY
            if child.terminated or child.image in self.never_ready_images:
                return Readiness.NOT_READY
            polls = self._polls.get(unit_id, 0) + 1
            self._polls[unit_id] = polls
            if polls > self.warmup_polls:
                self._ready.add(unit_id)
                return Readiness.READY
            return Readiness.NOT_READY


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    path = str(tmp_path / "xdeploy-test.db")
    monkeypatch.setattr(db, "settings", replace(settings, db_path=path))
    db.init_db()
    return path


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def driver(clock):
    return FakeDriver(clock=clock)


@pytest.fixture()
def store():
    return XDeploymentStore()


@pytest.fixture()
def key():
    return ResourceKey("default", "web")
