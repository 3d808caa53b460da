"""Snapshot storage backends for the workspace.

Beginner terms:
- Snapshot: one JSON blob holding files, schema document and schema name.
- Migration: creating the table before normal reads/writes.
- JSONB: PostgreSQL JSON type used for the snapshot payload.

Callers treat storage as best-effort: the document model logs and swallows
every error raised here.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any, Protocol

DEFAULT_SNAPSHOT_KEY = "schema_workspace_v1"


class SnapshotStorage(Protocol):
    def save_snapshot(self, snapshot: dict[str, Any]) -> None: ...

    def load_snapshot(self) -> dict[str, Any] | None: ...

    def clear_snapshot(self) -> None: ...


class StorageCapacityError(RuntimeError):
    """Raised when a snapshot does not fit the configured capacity."""


class InMemorySnapshotStorage:
    """Process-local storage, used by default and in tests.

    `capacity_bytes` emulates a storage quota: larger snapshots are refused.
    """

    def __init__(self, capacity_bytes: int | None = None) -> None:
        self.capacity_bytes = capacity_bytes
        self._payload: str | None = None

    def save_snapshot(self, snapshot: dict[str, Any]) -> None:
        payload = json.dumps(snapshot)
        if self.capacity_bytes is not None and len(payload.encode("utf-8")) > self.capacity_bytes:
            raise StorageCapacityError(
                f"Snapshot of {len(payload)} bytes exceeds capacity of {self.capacity_bytes} bytes"
            )
        self._payload = payload

    def load_snapshot(self) -> dict[str, Any] | None:
        if self._payload is None:
            return None
        parsed = json.loads(self._payload)
        return parsed if isinstance(parsed, dict) else None

    def clear_snapshot(self) -> None:
        self._payload = None


class PostgresSnapshotStorage:
    """Thread-safe PostgreSQL-backed snapshot store (one row per key)."""

    def __init__(self, database_url: str, *, key: str = DEFAULT_SNAPSHOT_KEY) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        self.key = key
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()
        self.migrate()

    def migrate(self) -> None:
        """Create the snapshot table if it does not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workspace_snapshots (
                    snapshot_key TEXT PRIMARY KEY,
                    payload_json JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.commit()

    def save_snapshot(self, snapshot: dict[str, Any]) -> None:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workspace_snapshots (snapshot_key, payload_json, updated_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (snapshot_key)
                DO UPDATE SET payload_json = EXCLUDED.payload_json,
                              updated_at = EXCLUDED.updated_at
                """,
                (self.key, self._json_wrapper(snapshot), now),
            )
            conn.commit()

    def load_snapshot(self) -> dict[str, Any] | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM workspace_snapshots WHERE snapshot_key = %s",
                (self.key,),
            ).fetchone()
        if row is None:
            return None
        raw = row["payload_json"]
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        return parsed if isinstance(parsed, dict) else None

    def clear_snapshot(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                "DELETE FROM workspace_snapshots WHERE snapshot_key = %s",
                (self.key,),
            )
            conn.commit()

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL snapshots require psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json
