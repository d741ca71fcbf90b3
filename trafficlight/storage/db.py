"""DuckDB storage for trafficlight state.

State is a small key/value document store (JSON values) plus a capped
activity log. All public methods are coroutines; the blocking DuckDB
calls run in a worker thread on their own cursor so the event loop is
never stalled by disk I/O.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import duckdb

from trafficlight.models import ActivityEntry

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

ACTIVITY_LOG_LIMIT = 100

# Keys used by the policy core
KEY_COLOR_COUNTERS = "color_counters"
KEY_COUNTER_TIMESTAMPS = "counter_timestamps"
KEY_BLOCK_STATE = "block_state"
KEY_POLICY_CONFIG = "policy_config"
KEY_RULE_OVERRIDES = "rule_overrides"


class StorageError(Exception):
    """A state read or write failed."""


class StateStore:
    """DuckDB-backed key/value state and activity log."""

    def __init__(self, db_path: Path, activity_limit: int = ACTIVITY_LOG_LIMIT) -> None:
        """Initialize the state store.

        Args:
            db_path: Path to the DuckDB database file. Use ":memory:" for in-memory.
            activity_limit: Maximum activity log entries kept
        """
        self.db_path = Path(db_path)
        self.activity_limit = activity_limit
        self._conn: Optional[duckdb.DuckDBPyConnection] = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        if self.db_path == Path(":memory:"):
            db_str = ":memory:"
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            db_str = str(self.db_path)

        self._conn = duckdb.connect(db_str)
        self._ensure_schema()
        logger.debug(f"State store open at {db_str}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "StateStore":
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get the database connection, raising if not connected."""
        if self._conn is None:
            raise RuntimeError("StateStore not connected. Call connect() first.")
        return self._conn

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        result = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current_version = result[0] if result and result[0] else 0

        if current_version < SCHEMA_VERSION:
            self._apply_schema()
            self.conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                [SCHEMA_VERSION]
            )

    def _apply_schema(self) -> None:
        """Apply the database schema."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_state (
                key VARCHAR PRIMARY KEY,
                value VARCHAR NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.execute("CREATE SEQUENCE IF NOT EXISTS activity_log_seq")
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS activity_log (
                id BIGINT PRIMARY KEY DEFAULT nextval('activity_log_seq'),
                timestamp VARCHAR NOT NULL,  -- ISO-8601, UTC
                context_id VARCHAR NOT NULL,
                url VARCHAR NOT NULL,
                tier VARCHAR NOT NULL,
                reason VARCHAR NOT NULL
            )
        """)

    # -- blocking implementations (run in a worker thread) -------------------

    def _get_sync(self, keys: list[str]) -> dict[str, Any]:
        cursor = self.conn.cursor()
        try:
            placeholders = ", ".join("?" for _ in keys)
            rows = cursor.execute(
                f"SELECT key, value FROM kv_state WHERE key IN ({placeholders})",
                keys,
            ).fetchall()
        finally:
            cursor.close()
        return {key: json.loads(value) for key, value in rows}

    def _set_sync(self, items: dict[str, Any]) -> None:
        rows = [(key, json.dumps(value)) for key, value in items.items()]
        cursor = self.conn.cursor()
        try:
            cursor.execute("BEGIN TRANSACTION")
            cursor.executemany("""
                INSERT INTO kv_state (key, value) VALUES (?, ?)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    updated_at = now()
            """, rows)
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise
        finally:
            cursor.close()

    def _get_all_sync(self) -> dict[str, Any]:
        cursor = self.conn.cursor()
        try:
            rows = cursor.execute("SELECT key, value FROM kv_state ORDER BY key").fetchall()
        finally:
            cursor.close()
        return {key: json.loads(value) for key, value in rows}

    def _clear_sync(self) -> None:
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM kv_state")
            cursor.execute("DELETE FROM activity_log")
        finally:
            cursor.close()

    def _append_activity_sync(self, entry: ActivityEntry) -> None:
        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                INSERT INTO activity_log (timestamp, context_id, url, tier, reason)
                VALUES (?, ?, ?, ?, ?)
            """, [entry.timestamp.isoformat(), entry.context_id, entry.url, entry.tier.value, entry.reason])
            # Truncate from the front: keep only the newest entries
            cursor.execute("""
                DELETE FROM activity_log
                WHERE id NOT IN (
                    SELECT id FROM activity_log ORDER BY id DESC LIMIT ?
                )
            """, [self.activity_limit])
        finally:
            cursor.close()

    def _get_activity_sync(self, limit: int) -> list[ActivityEntry]:
        cursor = self.conn.cursor()
        try:
            rows = cursor.execute("""
                SELECT timestamp, context_id, url, tier, reason
                FROM activity_log
                ORDER BY id DESC
                LIMIT ?
            """, [limit]).fetchall()
        finally:
            cursor.close()

        entries = []
        for timestamp, context_id, url, tier, reason in reversed(rows):
            entries.append(ActivityEntry.from_dict({
                "timestamp": timestamp,
                "context_id": context_id,
                "url": url,
                "tier": tier,
                "reason": reason,
            }))
        return entries

    # -- async API -----------------------------------------------------------

    async def _run(self, func: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except (duckdb.Error, OSError, ValueError, TypeError) as e:
            raise StorageError(f"{func.__name__.strip('_')} failed: {e}") from e

    async def get(self, keys: list[str]) -> dict[str, Any]:
        """Read the given keys. Missing keys are absent from the result."""
        if not keys:
            return {}
        return await self._run(self._get_sync, list(keys))

    async def set(self, items: dict[str, Any]) -> None:
        """Write several keys in one transaction. Values must be JSON-serializable."""
        if not items:
            return
        await self._run(self._set_sync, dict(items))

    async def get_all(self) -> dict[str, Any]:
        """Read every stored key (used for settings export)."""
        return await self._run(self._get_all_sync)

    async def clear(self) -> None:
        """Delete all state and the activity log."""
        await self._run(self._clear_sync)

    async def append_activity(self, entry: ActivityEntry) -> None:
        """Append to the activity log, dropping the oldest entries past the cap."""
        await self._run(self._append_activity_sync, entry)

    async def get_activity(self, limit: int = 50) -> list[ActivityEntry]:
        """Return the newest ``limit`` entries, oldest first."""
        return await self._run(self._get_activity_sync, max(0, int(limit)))
