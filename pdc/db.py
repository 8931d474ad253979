from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from .models import RolloutState, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    Why this exists:
    - When the controller runs in a container with a bind-mounted *file*
      path that does not exist yet, Docker creates a *directory* at that
      location and sqlite then fails with "unable to open database file".
    - If the configured path is a directory, we place the DB file inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "pdc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              rollout_id TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rollouts (
              id TEXT PRIMARY KEY,
              service_name TEXT NOT NULL,
              phase TEXT NOT NULL, -- Succeeded|RolledBack|Failed
              degraded INTEGER NOT NULL DEFAULT 0,
              started_at TEXT NOT NULL,
              finished_at TEXT,
              state_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_rollout ON events(rollout_id);
            CREATE INDEX IF NOT EXISTS idx_rollouts_service ON rollouts(service_name);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None, rollout_id: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, rollout_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, rollout_id, message),
        )


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?",
                (service_name, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def events_for_rollout(rollout_id: str) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events WHERE rollout_id=? ORDER BY id", (rollout_id,)).fetchall()
        return [dict(r) for r in rows]


def archive_rollout(state: RolloutState) -> None:
    """Persist a terminal rollout so it outlives the in-memory registry."""
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO rollouts (id, service_name, phase, degraded, started_at, finished_at, state_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              phase=excluded.phase,
              degraded=excluded.degraded,
              finished_at=excluded.finished_at,
              state_json=excluded.state_json
            """,
            (
                state.id,
                state.service,
                state.phase.value,
                int(state.degraded),
                state.started_at,
                state.finished_at,
                json.dumps(state.to_dict()),
            ),
        )


def get_archived_rollout(rollout_id: str) -> RolloutState | None:
    with connect() as conn:
        row = conn.execute("SELECT state_json FROM rollouts WHERE id=?", (rollout_id,)).fetchone()
        return RolloutState.from_dict(json.loads(row["state_json"])) if row else None


def list_archived_rollouts(service_name: str | None = None, limit: int = 50) -> list[RolloutState]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT state_json FROM rollouts WHERE service_name=? ORDER BY finished_at DESC, rowid DESC LIMIT ?",
                (service_name, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT state_json FROM rollouts ORDER BY finished_at DESC, rowid DESC LIMIT ?", (limit,)).fetchall()
        return [RolloutState.from_dict(json.loads(r["state_json"])) for r in rows]
