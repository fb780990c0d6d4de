from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from .errors import ConflictError, NotFoundError
from .models import utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "xdeploy.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10.0)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def _session() -> Iterator[sqlite3.Connection]:
    """Short-lived connection, committed on success and always closed."""
    conn = connect()
    try:
        with conn:
            yield conn
    finally:
        conn.close()


@contextmanager
def _transaction() -> Iterator[sqlite3.Connection]:
    """Write-locked read-modify-write (``BEGIN IMMEDIATE``)."""
    conn = connect()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def init_db() -> None:
    """Create tables if they do not exist."""
    with _session() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS xdeployments (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              namespace TEXT NOT NULL,
              name TEXT NOT NULL,
              spec TEXT NOT NULL,            -- json
              status TEXT NOT NULL,          -- json, written only by the controller
              generation INTEGER NOT NULL,   -- bumped on spec change
              resource_version INTEGER NOT NULL,  -- bumped on every write
              deleting INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE(namespace, name)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              resource TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, resource: str | None = None) -> None:
    with _session() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, resource, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), resource, message),
        )


def latest_events(limit: int = 100, resource: str | None = None) -> list[dict[str, Any]]:
    with _session() as conn:
        if resource:
            rows = conn.execute(
                "SELECT * FROM events WHERE resource=? ORDER BY id DESC LIMIT ?", (resource, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class XDeploymentRow:
    id: int
    namespace: str
    name: str
    spec: dict[str, Any]
    status: dict[str, Any]
    generation: int
    resource_version: int
    deleting: bool
    created_at: str
    updated_at: str


def _row(r: sqlite3.Row) -> XDeploymentRow:
    d = dict(r)
    d["spec"] = json.loads(d["spec"])
    d["status"] = json.loads(d["status"])
    d["deleting"] = bool(d["deleting"])
    return XDeploymentRow(**d)


def _rows(rows: Iterable[sqlite3.Row]) -> list[XDeploymentRow]:
    return [_row(r) for r in rows]


def _select(conn: sqlite3.Connection, namespace: str, name: str) -> XDeploymentRow | None:
    r = conn.execute("SELECT * FROM xdeployments WHERE namespace=? AND name=?", (namespace, name)).fetchone()
    return _row(r) if r else None


def get_xdeployment(namespace: str, name: str) -> XDeploymentRow | None:
    with _session() as conn:
        return _select(conn, namespace, name)


def list_xdeployments() -> list[XDeploymentRow]:
    with _session() as conn:
        rows = conn.execute("SELECT * FROM xdeployments ORDER BY namespace, name").fetchall()
        return _rows(rows)


def upsert_spec(namespace: str, name: str, spec: dict[str, Any]) -> tuple[XDeploymentRow, str | None]:
    """Create or update the spec of an XDeployment.

    Returns (row, change) where change is "ADDED", "MODIFIED" or None when the
    stored spec was already identical.
    """
    spec_json = json.dumps(spec, sort_keys=True)
    now = utc_now()
    with _transaction() as conn:
        current = _select(conn, namespace, name)
        if current is None:
            conn.execute(
                """
                INSERT INTO xdeployments
                  (namespace, name, spec, status, generation, resource_version, deleting, created_at, updated_at)
                VALUES (?, ?, ?, '{}', 1, 1, 0, ?, ?)
                """,
                (namespace, name, spec_json, now, now),
            )
            change: str | None = "ADDED"
        elif current.deleting:
            raise ConflictError(f"{namespace}/{name} is being deleted")
        elif json.dumps(current.spec, sort_keys=True) == spec_json:
            return current, None
        else:
            conn.execute(
                """
                UPDATE xdeployments
                SET spec=?, generation=generation+1, resource_version=resource_version+1, updated_at=?
                WHERE id=?
                """,
                (spec_json, now, current.id),
            )
            change = "MODIFIED"
        row = _select(conn, namespace, name)
        assert row is not None
        return row, change


def set_status(namespace: str, name: str, status: dict[str, Any], expected_version: int) -> XDeploymentRow:
    """Compare-and-set the status against ``expected_version``."""
    with _transaction() as conn:
        cur = conn.execute(
            """
            UPDATE xdeployments
            SET status=?, resource_version=resource_version+1, updated_at=?
            WHERE namespace=? AND name=? AND resource_version=?
            """,
            (json.dumps(status, sort_keys=True), utc_now(), namespace, name, expected_version),
        )
        row = _select(conn, namespace, name)
        if row is None:
            raise NotFoundError(f"{namespace}/{name} not found")
        if cur.rowcount == 0:
            raise ConflictError(
                f"{namespace}/{name} changed (expected version {expected_version}, found {row.resource_version})"
            )
        return row


def mark_deleting(namespace: str, name: str) -> XDeploymentRow:
    with _transaction() as conn:
        current = _select(conn, namespace, name)
        if current is None:
            raise NotFoundError(f"{namespace}/{name} not found")
        if not current.deleting:
            conn.execute(
                """
                UPDATE xdeployments
                SET deleting=1, resource_version=resource_version+1, updated_at=?
                WHERE id=?
                """,
                (utc_now(), current.id),
            )
        row = _select(conn, namespace, name)
        assert row is not None
        return row


def purge_xdeployment(namespace: str, name: str) -> bool:
    with _session() as conn:
        cur = conn.execute("DELETE FROM xdeployments WHERE namespace=? AND name=?", (namespace, name))
        return cur.rowcount > 0
