"""
Audit log store with monthly sharding and incremental appends.

Every user gets at most one *open* row per UTC day. Actions are appended to that
row's JSON array until it holds ``MAX_ACTIONS_PER_ROW`` actions or would grow past
``MAX_ROW_BYTES``, at which point a new row is started and the old one is never
touched again. Rows live in one table per calendar month
(``audit_logs_YYYY_MM``), created on first use and dropped whole once the month
falls out of the retention window.

The store is the only writer of ``audit_logs_*`` tables.
"""

from __future__ import annotations

import gzip
import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Sequence

from cms_backend.clock import Clock, SystemClock, as_utc, isoformat, parse_timestamp
from cms_backend.db import SqlDatastore
from cms_backend.errors import (
    AuditCleanupError,
    AuditPayloadTooLargeError,
    SerializationError,
)
from cms_backend.storage import StorageClient

logger = logging.getLogger(__name__)

SHARD_PREFIX = "audit_logs_"
MAX_ACTIONS_PER_ROW = 50
MAX_ROW_BYTES = 1_048_576
DEFAULT_RETENTION_DAYS = 90

_SHARD_NAME_RE = re.compile(r"^audit_logs_(\d{4})_(\d{2})$")

Archiver = Callable[[str, list], None]


@dataclass(frozen=True)
class AuditAction:
    timestamp: datetime
    action: str
    resource_id: Optional[str] = None
    details: Any = None

    def to_dict(self) -> dict:
        return {
            "timestamp": isoformat(self.timestamp),
            "action": self.action,
            "resource_id": self.resource_id,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditAction":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            action=data["action"],
            resource_id=data.get("resource_id"),
            details=data.get("details"),
        )


@dataclass
class AuditRow:
    id: str
    user_id: str
    session_date: str
    actions: list[AuditAction] = field(default_factory=list)
    row_seq: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def serialize_actions(actions: Iterable[AuditAction]) -> str:
    return json.dumps(
        [action.to_dict() for action in actions],
        separators=(",", ":"),
        ensure_ascii=False,
    )


def serialized_size(actions: Iterable[AuditAction]) -> int:
    return len(serialize_actions(actions).encode("utf-8"))


def deserialize_actions(payload: str) -> list[AuditAction]:
    """Decode a stored action array. Raises ``SerializationError`` on bad data."""
    try:
        decoded = json.loads(payload)
        if not isinstance(decoded, list):
            raise TypeError("stored actions are not a JSON array")
        return [AuditAction.from_dict(item) for item in decoded]
    except (TypeError, ValueError, KeyError) as exc:
        raise SerializationError(f"Malformed audit actions: {exc}") from exc


def should_rotate(
    actions: Sequence[AuditAction],
    new_action: AuditAction,
    *,
    max_actions: int = MAX_ACTIONS_PER_ROW,
    max_bytes: int = MAX_ROW_BYTES,
) -> bool:
    """True when ``new_action`` must start a new row instead of extending ``actions``."""
    if len(actions) >= max_actions:
        return True
    return serialized_size([*actions, new_action]) > max_bytes


def shard_name(year: int, month: int) -> str:
    return f"{SHARD_PREFIX}{year:04d}_{month:02d}"


def parse_shard_name(name: str) -> Optional[tuple[int, int]]:
    match = _SHARD_NAME_RE.match(name)
    if not match:
        return None
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        return None
    return year, month


def shards_for_range(start: datetime, end: datetime) -> list[str]:
    """Shard names for every calendar month touched by ``[start, end]``."""
    start, end = as_utc(start), as_utc(end)
    if start > end:
        return []
    year, month = start.year, start.month
    names = []
    while (year, month) <= (end.year, end.month):
        names.append(shard_name(year, month))
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return names


class AuditLogStore:
    """Records user actions into monthly shards and serves them back by range."""

    def __init__(
        self,
        datastore: SqlDatastore,
        clock: Optional[Clock] = None,
        *,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        max_actions_per_row: int = MAX_ACTIONS_PER_ROW,
        max_row_bytes: int = MAX_ROW_BYTES,
        archiver: Optional[Archiver] = None,
    ):
        self.datastore = datastore
        self.clock = clock or SystemClock()
        self.retention_days = retention_days
        self.max_actions_per_row = max_actions_per_row
        self.max_row_bytes = max_row_bytes
        self.archiver = archiver
        self._known_shards: set[str] = set()
        self._shard_lock = threading.Lock()

    # Shards

    def ensure_shard(self, year: int, month: int) -> str:
        """Create the shard for ``(year, month)`` if needed and return its name."""
        name = shard_name(year, month)
        if name in self._known_shards:
            return name
        with self._shard_lock:
            if name in self._known_shards:
                return name
            table = self.datastore.quote(name)
            self.datastore.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    session_date TEXT NOT NULL,
                    row_seq INTEGER NOT NULL DEFAULT 1,
                    actions TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            for column in ("user_id", "session_date", "created_at"):
                index = self.datastore.quote(f"idx_{name}_{column}")
                self.datastore.execute(
                    f"CREATE INDEX IF NOT EXISTS {index} ON {table} ({column})"
                )
            self._known_shards.add(name)
        return name

    def forget_shards(self) -> None:
        """Drop the shard cache, e.g. after the database was replaced underneath."""
        with self._shard_lock:
            self._known_shards.clear()

    def list_shards(self) -> list[str]:
        return [
            name
            for name in self.datastore.list_tables(SHARD_PREFIX)
            if parse_shard_name(name) is not None
        ]

    # Writes

    def log_action(
        self,
        user_id: str,
        action: str,
        resource_id: Optional[str] = None,
        details: Any = None,
    ) -> None:
        """
        Append one action to the caller's open row for today, rotating to a new
        row when the open one is full.

        The read of the open row and the following insert/update run in a single
        transaction. Datastore errors propagate unchanged.
        """
        if not user_id:
            raise ValueError("user_id is required")

        now = as_utc(self.clock.now())
        new_action = AuditAction(
            timestamp=now, action=action, resource_id=resource_id, details=details
        )
        size = serialized_size([new_action])
        if size > self.max_row_bytes:
            raise AuditPayloadTooLargeError(size, self.max_row_bytes)

        session_date = now.strftime("%Y-%m-%d")
        table = self.datastore.quote(self.ensure_shard(now.year, now.month))

        with self.datastore.transaction() as tx:
            open_row = tx.query_one(
                f"SELECT id, row_seq, actions FROM {table} "
                "WHERE user_id = :user_id AND session_date = :session_date "
                "ORDER BY updated_at DESC, row_seq DESC LIMIT 1"
                f"{self._row_lock_clause()}",
                {"user_id": user_id, "session_date": session_date},
            )
            if open_row is None:
                self._insert_row(tx, table, user_id, session_date, 1, new_action, now)
                return

            try:
                actions = deserialize_actions(open_row["actions"])
            except SerializationError:
                logger.warning(
                    "Sealing unreadable audit row %s in %s", open_row["id"], table
                )
                rotate = True
            else:
                rotate = should_rotate(
                    actions,
                    new_action,
                    max_actions=self.max_actions_per_row,
                    max_bytes=self.max_row_bytes,
                )

            if rotate:
                logger.debug(
                    "Rotating audit row %s for user %s on %s",
                    open_row["id"],
                    user_id,
                    session_date,
                )
                self._insert_row(
                    tx,
                    table,
                    user_id,
                    session_date,
                    int(open_row["row_seq"]) + 1,
                    new_action,
                    now,
                )
                return

            actions.append(new_action)
            tx.execute(
                f"UPDATE {table} SET actions = :actions, updated_at = :updated_at "
                "WHERE id = :id",
                {
                    "actions": serialize_actions(actions),
                    "updated_at": isoformat(now),
                    "id": open_row["id"],
                },
            )

    def _insert_row(
        self,
        tx: SqlDatastore,
        table: str,
        user_id: str,
        session_date: str,
        row_seq: int,
        first_action: AuditAction,
        now: datetime,
    ) -> None:
        tx.execute(
            f"INSERT INTO {table} "
            "(id, user_id, session_date, row_seq, actions, created_at, updated_at) "
            "VALUES (:id, :user_id, :session_date, :row_seq, :actions, :created_at, :updated_at)",
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "session_date": session_date,
                "row_seq": row_seq,
                "actions": serialize_actions([first_action]),
                "created_at": isoformat(now),
                "updated_at": isoformat(now),
            },
        )

    def _row_lock_clause(self) -> str:
        # SQLite already holds the database write lock via BEGIN IMMEDIATE.
        if self.datastore.dialect_name in ("postgresql", "mysql", "mariadb"):
            return " FOR UPDATE"
        return ""

    # Reads

    def get_user_audit_logs(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[AuditAction]:
        """
        Every action of ``user_id`` with ``start <= timestamp <= end``, oldest first.

        Month shards that were never created are skipped. Rows are preselected by
        whether their lifetime overlaps the range; the per-action timestamp check
        is the authoritative cut.
        """
        start, end = as_utc(start), as_utc(end)
        collected: list[AuditAction] = []
        for name in shards_for_range(start, end):
            if not self.datastore.table_exists(name):
                continue
            rows = self.datastore.query_many(
                f"SELECT id, actions FROM {self.datastore.quote(name)} "
                "WHERE user_id = :user_id AND created_at <= :end AND updated_at >= :start "
                "ORDER BY created_at, row_seq",
                {"user_id": user_id, "start": isoformat(start), "end": isoformat(end)},
            )
            for row in rows:
                for action in self._read_actions(name, row):
                    if start <= action.timestamp <= end:
                        collected.append(action)
        collected.sort(key=lambda action: action.timestamp)
        return collected

    def list_rows(self, user_id: str, session_date: str) -> list[AuditRow]:
        """All rows for a user/day in creation order (open row last)."""
        year, month = int(session_date[:4]), int(session_date[5:7])
        name = shard_name(year, month)
        if not self.datastore.table_exists(name):
            return []
        rows = self.datastore.query_many(
            f"SELECT id, user_id, session_date, row_seq, actions, created_at, updated_at "
            f"FROM {self.datastore.quote(name)} "
            "WHERE user_id = :user_id AND session_date = :session_date "
            "ORDER BY row_seq, created_at",
            {"user_id": user_id, "session_date": session_date},
        )
        return [
            AuditRow(
                id=row["id"],
                user_id=row["user_id"],
                session_date=row["session_date"],
                actions=self._read_actions(name, row),
                row_seq=int(row["row_seq"]),
                created_at=parse_timestamp(row["created_at"]),
                updated_at=parse_timestamp(row["updated_at"]),
            )
            for row in rows
        ]

    def _read_actions(self, shard: str, row: dict) -> list[AuditAction]:
        try:
            return deserialize_actions(row["actions"])
        except SerializationError as exc:
            logger.warning("Skipping audit row %s in %s: %s", row["id"], shard, exc)
            return []

    # Retention

    def cleanup_old_audit_tables(self) -> list[str]:
        """
        Drop every shard whose month began more than ``retention_days`` ago.

        Each expiring shard is archived first when an archiver is configured.
        Failures do not stop the sweep; they are raised together at the end as
        ``AuditCleanupError``. Returns the names of the dropped shards.
        """
        cutoff = as_utc(self.clock.now()) - timedelta(days=self.retention_days)
        dropped: list[str] = []
        failures: dict[str, Exception] = {}

        for name in self.datastore.list_tables(SHARD_PREFIX):
            parsed = parse_shard_name(name)
            if parsed is None:
                continue
            first_day = datetime(parsed[0], parsed[1], 1, tzinfo=timezone.utc)
            if first_day >= cutoff:
                continue
            try:
                if self.archiver is not None:
                    self.archiver(name, self._export_rows(name))
                logger.info("Dropping old audit table: %s", name)
                self.datastore.drop_table(name)
            except Exception as exc:
                logger.exception("Failed to clean up audit table %s", name)
                failures[name] = exc
                continue
            with self._shard_lock:
                self._known_shards.discard(name)
            dropped.append(name)

        if failures:
            raise AuditCleanupError(failures)
        return dropped

    def _export_rows(self, name: str) -> list[dict]:
        return self.datastore.query_many(
            f"SELECT id, user_id, session_date, row_seq, actions, created_at, updated_at "
            f"FROM {self.datastore.quote(name)} ORDER BY created_at, row_seq"
        )


class StorageArchiver:
    """Writes an expiring shard to object storage as gzipped JSON lines."""

    def __init__(self, storage: StorageClient, prefix: str = "audit_archive"):
        self.storage = storage
        self.prefix = prefix.rstrip("/")

    def __call__(self, shard: str, rows: list) -> None:
        lines = [json.dumps(row, default=str) for row in rows]
        body = gzip.compress("\n".join(lines).encode("utf-8"))
        path = f"{self.prefix}/{shard}.jsonl.gz"
        self.storage.put_bytes(path, body, content_type="application/gzip")
        logger.info("Archived %d audit rows from %s to %s", len(rows), shard, path)
