from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class NotFound(LookupError):
    pass


class AlreadyExists(Exception):
    pass


def object_key(obj: dict[str, Any]) -> tuple[str, str, str]:
    meta = obj.get("metadata") or {}
    if "kind" not in obj or "name" not in meta:
        raise ValueError("object needs 'kind' and 'metadata.name'")
    return obj["kind"], meta.get("namespace") or "default", meta["name"]


@runtime_checkable
class ResourceStore(Protocol):
    """Everything the operator reads or writes goes through this interface."""

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]: ...

    def create(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def list(self, kind: str, namespace: str | None = None) -> list[dict[str, Any]]: ...

    def update_status(self, kind: str, namespace: str, name: str, status: dict[str, Any]) -> dict[str, Any]: ...

    def log_event(
        self,
        level: str,
        message: str,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
    ) -> None: ...

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]: ...


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory; in that case the DB file goes inside it.
    """
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "mco.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


class SqliteStore:
    """Object store with a status sub-resource, backed by one SQLite file.

    Objects are plain dicts with ``kind`` and ``metadata.{name,namespace}``.
    ``update`` never touches status; ``update_status`` touches nothing else.
    """

    def __init__(self, path: str | None = None):
        self.path = _resolve_db_path(path or settings.db_path)
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS objects (
                  kind TEXT NOT NULL,
                  namespace TEXT NOT NULL,
                  name TEXT NOT NULL,
                  body TEXT NOT NULL,
                  status TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (kind, namespace, name)
                );

                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  kind TEXT,
                  namespace TEXT,
                  name TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_objects_kind ON objects(kind, namespace);
                """
            )

    @staticmethod
    def _split(obj: dict[str, Any]) -> tuple[str, str | None]:
        body = {k: v for k, v in obj.items() if k != "status"}
        status = obj.get("status")
        return json.dumps(body, sort_keys=True), (json.dumps(status, sort_keys=True) if status is not None else None)

    @staticmethod
    def _row_to_object(row: sqlite3.Row) -> dict[str, Any]:
        obj = json.loads(row["body"])
        if row["status"] is not None:
            obj["status"] = json.loads(row["status"])
        return obj

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT body, status FROM objects WHERE kind=? AND namespace=? AND name=?",
                (kind, namespace, name),
            ).fetchone()
        if row is None:
            raise NotFound(f"{kind} {namespace}/{name} not found")
        return self._row_to_object(row)

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, name = object_key(obj)
        body, status = self._split(obj)
        now = utc_now()
        try:
            with self.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO objects (kind, namespace, name, body, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (kind, namespace, name, body, status, now, now),
                )
        except sqlite3.IntegrityError as e:
            raise AlreadyExists(f"{kind} {namespace}/{name} already exists") from e
        return self.get(kind, namespace, name)

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, name = object_key(obj)
        body, _ = self._split(obj)
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE objects SET body=?, updated_at=? WHERE kind=? AND namespace=? AND name=?",
                (body, utc_now(), kind, namespace, name),
            )
            if cur.rowcount == 0:
                raise NotFound(f"{kind} {namespace}/{name} not found")
        return self.get(kind, namespace, name)

    def update_status(self, kind: str, namespace: str, name: str, status: dict[str, Any]) -> dict[str, Any]:
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE objects SET status=?, updated_at=? WHERE kind=? AND namespace=? AND name=?",
                (json.dumps(status, sort_keys=True), utc_now(), kind, namespace, name),
            )
            if cur.rowcount == 0:
                raise NotFound(f"{kind} {namespace}/{name} not found")
        return self.get(kind, namespace, name)

    def list(self, kind: str, namespace: str | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if namespace:
                rows = conn.execute(
                    "SELECT body, status FROM objects WHERE kind=? AND namespace=? ORDER BY namespace, name",
                    (kind, namespace),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT body, status FROM objects WHERE kind=? ORDER BY namespace, name",
                    (kind,),
                ).fetchall()
        return [self._row_to_object(r) for r in rows]

    def delete(self, kind: str, namespace: str, name: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM objects WHERE kind=? AND namespace=? AND name=?", (kind, namespace, name))

    def log_event(
        self,
        level: str,
        message: str,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, kind, namespace, name, message) VALUES (?, ?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), kind, namespace, name, message),
            )

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]
