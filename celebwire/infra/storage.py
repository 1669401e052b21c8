"""SQLite-backed pipeline state: rotation cursor and credential health."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Dict

from ..models import Credential, CredentialStatus, RotationState


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees."""

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS rotation_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                cursor INTEGER NOT NULL,
                total_batches INTEGER NOT NULL,
                updated_at TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credential_state (
                key_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                last_checked TEXT,
                last_used TEXT,
                daily_usage INTEGER DEFAULT 0,
                successful_requests INTEGER DEFAULT 0,
                rate_limited_count INTEGER DEFAULT 0,
                consecutive_failures INTEGER DEFAULT 0,
                health_score INTEGER DEFAULT 100,
                rate_limit_reset TEXT
            )
            """
        )
        conn.commit()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class StateStore:
    """Persist the rotation cursor and per-credential status between processes."""

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = db_path
        self._lock = Lock()
        self._conn = self.manager.connect(db_path)

    # ------------------------------------------------------------------
    # Rotation cursor
    # ------------------------------------------------------------------
    def load_rotation(self) -> RotationState:
        with self._lock:
            row = self._conn.execute(
                "SELECT cursor, total_batches FROM rotation_state WHERE id = 1"
            ).fetchone()
        if row is None:
            return RotationState()
        return RotationState(cursor=row["cursor"], total_batches=row["total_batches"])

    def save_rotation(self, state: RotationState, now: datetime) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO rotation_state(id, cursor, total_batches, updated_at) "
                "VALUES (1, ?, ?, ?)",
                (state.cursor, state.total_batches, now.isoformat()),
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Credential health
    # ------------------------------------------------------------------
    def load_credential(self, credential: Credential) -> bool:
        """Hydrate ``credential`` from persisted state; return False when unseen."""

        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM credential_state WHERE key_id = ?", (credential.key_id,)
            ).fetchone()
        if row is None:
            return False
        credential.status = CredentialStatus(row["status"])
        credential.last_checked = _parse(row["last_checked"])
        credential.last_used = _parse(row["last_used"])
        credential.daily_usage = row["daily_usage"]
        credential.successful_requests = row["successful_requests"]
        credential.rate_limited_count = row["rate_limited_count"]
        credential.consecutive_failures = row["consecutive_failures"]
        credential.health_score = row["health_score"]
        credential.rate_limit_reset = _parse(row["rate_limit_reset"])
        return True

    def save_credential(self, credential: Credential) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO credential_state(
                    key_id, status, last_checked, last_used, daily_usage,
                    successful_requests, rate_limited_count, consecutive_failures,
                    health_score, rate_limit_reset
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    credential.key_id,
                    credential.status.value,
                    _iso(credential.last_checked),
                    _iso(credential.last_used),
                    credential.daily_usage,
                    credential.successful_requests,
                    credential.rate_limited_count,
                    credential.consecutive_failures,
                    credential.health_score,
                    _iso(credential.rate_limit_reset),
                ),
            )
            self._conn.commit()


__all__ = ["SQLiteManager", "StateStore"]
