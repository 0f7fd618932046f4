"""
Snapshot store.

SQLite database holding the append-only history of:
- Network snapshots (devices serialized as JSON)
- Diffs between snapshot pairs (one per ordered pair)

Uses WAL mode for crash safety and concurrent reads. Connections are
short-lived, one per call; the async methods run the blocking work in the
default executor so the event loop never waits on disk.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from ._types import (
    DeviceDiff,
    DiffSummary,
    NetworkSnapshot,
    Page,
    Pagination,
    SnapshotDiff,
    SnapshotFilter,
    now_utc,
)
from .exceptions import ConflictError, InfrastructureError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Ordered schema migrations: (version, name, sql)
MIGRATIONS: list[tuple[int, str, str]] = [
    (1, "initial_schema", """
-- Point-in-time network snapshots
CREATE TABLE IF NOT EXISTS snapshots (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    device_count INTEGER NOT NULL DEFAULT 0,
    total_ports INTEGER NOT NULL DEFAULT 0,
    checksum TEXT NOT NULL,
    scan_type TEXT NOT NULL,
    metadata TEXT NOT NULL,  -- JSON object
    devices TEXT NOT NULL,   -- JSON array
    created_at TEXT NOT NULL
);

-- Diffs between snapshot pairs
CREATE TABLE IF NOT EXISTS snapshot_diffs (
    id TEXT PRIMARY KEY,
    from_id TEXT NOT NULL,
    to_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    devices_added INTEGER NOT NULL DEFAULT 0,
    devices_removed INTEGER NOT NULL DEFAULT 0,
    devices_changed INTEGER NOT NULL DEFAULT 0,
    ports_changed INTEGER NOT NULL DEFAULT 0,
    services_changed INTEGER NOT NULL DEFAULT 0,
    total_changes INTEGER NOT NULL DEFAULT 0,
    diff_data TEXT NOT NULL,  -- JSON array of device changes
    created_at TEXT NOT NULL,
    FOREIGN KEY (from_id) REFERENCES snapshots(id) ON DELETE CASCADE,
    FOREIGN KEY (to_id) REFERENCES snapshots(id) ON DELETE CASCADE,
    UNIQUE(from_id, to_id),
    CHECK(from_id != to_id)
);

CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON snapshots(timestamp);
CREATE INDEX IF NOT EXISTS idx_snapshot_diffs_timestamp ON snapshot_diffs(timestamp);
"""),
    (2, "diff_lookup_indexes", """
CREATE INDEX IF NOT EXISTS idx_snapshot_diffs_from ON snapshot_diffs(from_id);
CREATE INDEX IF NOT EXISTS idx_snapshot_diffs_to ON snapshot_diffs(to_id);
CREATE INDEX IF NOT EXISTS idx_snapshots_scan_type ON snapshots(scan_type);
"""),
]


def _iso_format(dt: datetime) -> str:
    """Format datetime as a fixed-width UTC ISO string so text order is time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


class SnapshotStore:
    """
    SQLite persistence for snapshots and diffs.

    Snapshots are never updated once written; rows only disappear through
    delete() or delete_older_than(). Every sqlite3 failure surfaces as
    InfrastructureError so callers can retry it.
    """

    def __init__(self, db_path: Path | str = "/var/lib/network-monitor/snapshots.db"):
        self.db_path = Path(db_path)
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise InfrastructureError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
        except sqlite3.Error as e:
            raise InfrastructureError(f"Database error: {e}") from e
        finally:
            conn.close()

    async def _run(self, fn: Callable[..., T], *args) -> T:
        """Run a blocking store call in the default executor."""
        if not self._connected:
            raise InfrastructureError("Snapshot store is not connected")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the database and apply pending migrations."""
        loop = asyncio.get_running_loop()
        applied = await loop.run_in_executor(None, self._init_db)
        self._connected = True
        if applied:
            logger.info(f"Applied {applied} schema migration(s) to {self.db_path}")
        logger.info(f"Snapshot store connected: {self.db_path}")

    async def close(self) -> None:
        self._connected = False
        logger.info("Snapshot store closed")

    async def ping(self) -> bool:
        """Round-trip a trivial query; raises InfrastructureError on failure."""
        return await self._run(self._ping)

    def _ping(self) -> bool:
        with self._get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def _init_db(self) -> int:
        """Ensure directory, enable WAL and apply migrations. Returns count applied."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InfrastructureError(f"Cannot create database directory: {e}") from e

        with self._get_connection() as conn:
            # Enable WAL mode for crash safety
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
            """)
            conn.commit()

            done = {
                row["version"]
                for row in conn.execute("SELECT version FROM schema_migrations")
            }
            applied = 0
            for version, name, sql in MIGRATIONS:
                if version in done:
                    continue
                logger.debug(f"Applying migration {version}: {name}")
                conn.executescript(sql)
                conn.execute(
                    "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (version, name, _iso_format(now_utc())),
                )
                conn.commit()
                applied += 1
            return applied

    async def schema_version(self) -> int:
        return await self._run(self._schema_version)

    def _schema_version(self) -> int:
        with self._get_connection() as conn:
            row = conn.execute("SELECT MAX(version) AS v FROM schema_migrations").fetchone()
            return row["v"] or 0

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def create(self, snapshot: NetworkSnapshot) -> str:
        """Persist a new snapshot. Returns its id."""
        return await self._run(self._create, snapshot)

    def _create(self, snapshot: NetworkSnapshot) -> str:
        with self._get_connection() as conn:
            try:
                conn.execute("""
                    INSERT INTO snapshots (
                        id, timestamp, device_count, total_ports, checksum,
                        scan_type, metadata, devices, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    snapshot.id,
                    _iso_format(snapshot.timestamp),
                    snapshot.device_count,
                    snapshot.total_ports,
                    snapshot.checksum,
                    snapshot.metadata.scan_type.value,
                    json.dumps(snapshot.metadata.to_dict()),
                    json.dumps([d.to_dict() for d in snapshot.devices]),
                    _iso_format(now_utc()),
                ))
            except sqlite3.IntegrityError:
                raise ConflictError(f"Snapshot already exists: {snapshot.id}")
            conn.commit()

        logger.debug(f"Stored snapshot {snapshot.id} ({snapshot.device_count} devices)")
        return snapshot.id

    async def get_by_id(self, snapshot_id: str) -> NetworkSnapshot:
        """Get snapshot by ID, raising NotFoundError if absent."""
        return await self._run(self._get_by_id, snapshot_id)

    def _get_by_id(self, snapshot_id: str) -> NetworkSnapshot:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM snapshots WHERE id = ?", (snapshot_id,)
            ).fetchone()
        if not row:
            raise NotFoundError(f"Snapshot not found: {snapshot_id}")
        return self._row_to_snapshot(row)

    async def get_latest(self, exclude_id: Optional[str] = None) -> Optional[NetworkSnapshot]:
        """Most recent snapshot by timestamp, optionally skipping one id."""
        return await self._run(self._get_latest, exclude_id)

    def _get_latest(self, exclude_id: Optional[str]) -> Optional[NetworkSnapshot]:
        with self._get_connection() as conn:
            if exclude_id:
                row = conn.execute("""
                    SELECT * FROM snapshots WHERE id != ?
                    ORDER BY timestamp DESC, rowid DESC LIMIT 1
                """, (exclude_id,)).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM snapshots ORDER BY timestamp DESC, rowid DESC LIMIT 1"
                ).fetchone()
        return self._row_to_snapshot(row) if row else None

    async def list(
        self,
        filter: Optional[SnapshotFilter] = None,
        pagination: Optional[Pagination] = None,
    ) -> Page:
        """List snapshots newest first."""
        return await self._run(self._list, filter or SnapshotFilter(), pagination or Pagination())

    def _list(self, filter: SnapshotFilter, pagination: Pagination) -> Page:
        clauses = []
        params: list = []
        if filter.since:
            clauses.append("timestamp >= ?")
            params.append(_iso_format(filter.since))
        if filter.until:
            clauses.append("timestamp <= ?")
            params.append(_iso_format(filter.until))
        if filter.scan_type:
            clauses.append("scan_type = ?")
            params.append(filter.scan_type.value)
        if filter.min_devices is not None:
            clauses.append("device_count >= ?")
            params.append(filter.min_devices)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._get_connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS n FROM snapshots {where}", params
            ).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM snapshots {where} "
                "ORDER BY timestamp DESC, rowid DESC LIMIT ? OFFSET ?",
                params + [pagination.limit, pagination.offset],
            ).fetchall()

        return Page(
            items=[self._row_to_snapshot(r) for r in rows],
            total=total,
            limit=pagination.limit,
            offset=pagination.offset,
        )

    async def count(self) -> int:
        return await self._run(self._count)

    def _count(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) AS n FROM snapshots").fetchone()["n"]

    async def delete(self, snapshot_id: str) -> None:
        """Delete one snapshot and the diffs that reference it."""
        await self._run(self._delete, snapshot_id)

    def _delete(self, snapshot_id: str) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM snapshots WHERE id = ?", (snapshot_id,))
            conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"Snapshot not found: {snapshot_id}")
        logger.info(f"Deleted snapshot {snapshot_id}")

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Retention sweep. Returns the number of snapshots removed."""
        return await self._run(self._delete_older_than, cutoff)

    def _delete_older_than(self, cutoff: datetime) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM snapshots WHERE timestamp < ?", (_iso_format(cutoff),)
            )
            conn.commit()
        if cursor.rowcount:
            logger.info(f"Retention removed {cursor.rowcount} snapshot(s) older than {cutoff}")
        return cursor.rowcount

    def _row_to_snapshot(self, row: sqlite3.Row) -> NetworkSnapshot:
        """Convert database row to NetworkSnapshot."""
        return NetworkSnapshot.from_dict({
            "id": row["id"],
            "timestamp": row["timestamp"],
            "checksum": row["checksum"],
            "devices": json.loads(row["devices"]),
            "metadata": json.loads(row["metadata"]),
        })

    # -------------------------------------------------------------------------
    # Diffs
    # -------------------------------------------------------------------------

    async def create_diff(self, diff: SnapshotDiff) -> str:
        """
        Persist a diff. Idempotent per (from, to): a repeat submission
        returns the id of the row already stored.
        """
        return await self._run(self._create_diff, diff)

    def _create_diff(self, diff: SnapshotDiff) -> str:
        if diff.from_snapshot == diff.to_snapshot:
            raise ValidationError("Cannot store a diff of a snapshot against itself")

        diff_id = diff.id or str(uuid.uuid4())
        s = diff.summary

        with self._get_connection() as conn:
            existing = {
                r["id"] for r in conn.execute(
                    "SELECT id FROM snapshots WHERE id IN (?, ?)",
                    (diff.from_snapshot, diff.to_snapshot),
                )
            }
            missing = {diff.from_snapshot, diff.to_snapshot} - existing
            if missing:
                raise ValidationError(
                    f"Diff references unknown snapshot(s): {sorted(missing)}"
                )

            try:
                conn.execute("""
                    INSERT INTO snapshot_diffs (
                        id, from_id, to_id, timestamp,
                        devices_added, devices_removed, devices_changed,
                        ports_changed, services_changed, total_changes,
                        diff_data, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    diff_id,
                    diff.from_snapshot,
                    diff.to_snapshot,
                    _iso_format(diff.timestamp),
                    s.devices_added,
                    s.devices_removed,
                    s.devices_changed,
                    s.ports_changed,
                    s.services_changed,
                    s.total_changes,
                    json.dumps([c.to_dict() for c in diff.device_changes]),
                    _iso_format(now_utc()),
                ))
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                row = conn.execute(
                    "SELECT id FROM snapshot_diffs WHERE from_id = ? AND to_id = ?",
                    (diff.from_snapshot, diff.to_snapshot),
                ).fetchone()
                if row is None:
                    raise
                logger.debug(
                    f"Diff {diff.from_snapshot} -> {diff.to_snapshot} already stored as {row['id']}"
                )
                return row["id"]

        return diff_id

    async def get_diff(self, from_id: str, to_id: str) -> Optional[SnapshotDiff]:
        return await self._run(self._get_diff, from_id, to_id)

    def _get_diff(self, from_id: str, to_id: str) -> Optional[SnapshotDiff]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM snapshot_diffs WHERE from_id = ? AND to_id = ?",
                (from_id, to_id),
            ).fetchone()
        return self._row_to_diff(row) if row else None

    async def list_recent_diffs(self, since: datetime) -> list[SnapshotDiff]:
        """Diffs with timestamp >= since, oldest first."""
        return await self._run(self._list_recent_diffs, since)

    def _list_recent_diffs(self, since: datetime) -> list[SnapshotDiff]:
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM snapshot_diffs WHERE timestamp >= ?
                ORDER BY timestamp ASC, rowid ASC
            """, (_iso_format(since),)).fetchall()
        return [self._row_to_diff(r) for r in rows]

    async def count_diffs(self) -> int:
        return await self._run(self._count_diffs)

    def _count_diffs(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) AS n FROM snapshot_diffs").fetchone()["n"]

    def _row_to_diff(self, row: sqlite3.Row) -> SnapshotDiff:
        """Convert database row to SnapshotDiff; total_changes is re-derived."""
        return SnapshotDiff(
            id=row["id"],
            from_snapshot=row["from_id"],
            to_snapshot=row["to_id"],
            timestamp=_parse_datetime(row["timestamp"]) or now_utc(),
            summary=DiffSummary(
                devices_added=row["devices_added"],
                devices_removed=row["devices_removed"],
                devices_changed=row["devices_changed"],
                ports_changed=row["ports_changed"],
                services_changed=row["services_changed"],
            ),
            device_changes=tuple(
                DeviceDiff.from_dict(d) for d in json.loads(row["diff_data"])
            ),
        )
