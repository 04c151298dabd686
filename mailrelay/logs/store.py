"""
Append-only audit log of send attempts, auth events and config changes.

Entries are stored in SQLite. Each operation opens its own connection in
WAL mode, so the daily prune can run while requests keep inserting.
Entries are never updated; rows only leave the table through
:meth:`AuditLogStore.clear_all` or :meth:`AuditLogStore.prune`.
"""
from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

from mailrelay.common.config import DEFAULT_RETENTION_DAYS, LogLevel, LogType
from mailrelay.logging import get_logger
from mailrelay.logs.models import ORDERABLE_COLUMNS, LogEntry, LogFilter, LogPage, LogStats

logger = get_logger(__name__)

TABLE_NAME = "mailrelay_logs"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
DEFAULT_PAGE_SIZE = 50
STATS_WINDOW_DAYS = 30

_SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        level TEXT NOT NULL DEFAULT 'info',
        message TEXT NOT NULL,
        details TEXT,
        recipient TEXT,
        subject TEXT,
        transport TEXT,
        actor TEXT,
        created_at TEXT NOT NULL
    )
"""
_INDEXES = ("type", "level", "created_at", "recipient", "transport")


class AuditLogStore:
    def __init__(
        self,
        db_path: Path | str,
        *,
        clock: Callable[[], datetime] | None = None,
        actor: Callable[[], str | None] | None = None,
        default_transport: Callable[[], str | None] | None = None,
    ) -> None:
        self._db_path = Path(db_path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._actor = actor or (lambda: None)
        self._default_transport = default_transport or (lambda: None)
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def init_schema(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.execute(_SCHEMA)
            for column in _INDEXES:
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_{column} ON {TABLE_NAME}({column})"
                )

    # -------------
    # Writes
    # -------------
    def append(
        self,
        type: LogType,
        level: LogLevel,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> int | None:
        """
        Insert one entry and return its id.

        Returns None instead of raising when the insert fails, so a broken
        log table never breaks mail sending.
        """
        details = dict(details or {})
        recipient = _as_text(details.get("recipient"))
        subject = _as_text(details.get("subject"))
        transport = _as_text(details.get("transport"))
        try:
            actor = self._actor()
            if transport is None:
                transport = self._default_transport()
            with closing(self._connect()) as conn, conn:
                cursor = conn.execute(
                    f"""
                    INSERT INTO {TABLE_NAME}
                        (type, level, message, details, recipient, subject, transport, actor, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        type,
                        level,
                        message,
                        json.dumps(details, default=str) if details else None,
                        recipient,
                        subject,
                        transport,
                        actor,
                        _format_ts(self._clock()),
                    ),
                )
                return cursor.lastrowid
        except Exception:
            logger.exception("Failed to insert audit log entry (type=%s)", type)
            return None

    def clear_all(self) -> bool:
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute(f"DELETE FROM {TABLE_NAME}")
        except sqlite3.Error:
            logger.exception("Failed to clear audit log")
            return False
        logger.info("Audit log cleared")
        return True

    def prune(self, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete entries created before now - ``older_than_days``; return how many."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                f"DELETE FROM {TABLE_NAME} WHERE created_at < ?",
                (_format_ts(cutoff),),
            )
            deleted = cursor.rowcount if cursor.rowcount is not None and cursor.rowcount >= 0 else 0
        if deleted:
            logger.info("Pruned %d audit log entries older than %d days", deleted, older_than_days)
        return deleted

    # -------------
    # Reads
    # -------------
    def query(
        self,
        filters: LogFilter | None = None,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        order_by: str = "created_at",
        order: str = "desc",
    ) -> LogPage:
        where, params = _where_clause(filters or LogFilter())
        column = order_by if order_by in ORDERABLE_COLUMNS else "created_at"
        direction = "ASC" if str(order).lower() == "asc" else "DESC"
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        offset = (page - 1) * page_size

        with closing(self._connect()) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME} {where}", params).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM {TABLE_NAME} {where}
                ORDER BY {column} {direction}, id {direction}
                LIMIT ? OFFSET ?
                """,
                [*params, page_size, offset],
            ).fetchall()

        return LogPage(
            entries=[_row_to_entry(row) for row in rows],
            total_count=int(total),
            page=page,
            page_size=page_size,
        )

    def iter_entries(self, filters: LogFilter | None = None) -> Iterator[LogEntry]:
        """Yield every matching entry oldest-first."""
        where, params = _where_clause(filters or LogFilter())
        with closing(self._connect()) as conn:
            for row in conn.execute(
                f"SELECT * FROM {TABLE_NAME} {where} ORDER BY created_at ASC, id ASC", params
            ):
                yield _row_to_entry(row)

    def stats(self, date_from: date | None = None, date_to: date | None = None) -> LogStats:
        today = self._clock().date()
        if date_from is None:
            date_from = today - timedelta(days=STATS_WINDOW_DAYS)
        if date_to is None:
            date_to = today
        where, params = _where_clause(LogFilter(date_from=date_from, date_to=date_to))

        stats = LogStats()
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"""
                SELECT type, level, COUNT(*) AS count FROM {TABLE_NAME} {where}
                GROUP BY type, level
                """,
                params,
            ).fetchall()
        for row in rows:
            stats.total += row["count"]
            stats.by_type[row["type"]] = stats.by_type.get(row["type"], 0) + row["count"]
            stats.by_level[row["level"]] = stats.by_level.get(row["level"], 0) + row["count"]
        return stats


def _where_clause(filters: LogFilter) -> tuple[str, list[Any]]:
    conditions: list[str] = []
    params: list[Any] = []

    if filters.type:
        conditions.append("type = ?")
        params.append(filters.type)
    if filters.level:
        conditions.append("level = ?")
        params.append(filters.level)
    if filters.transport:
        conditions.append("transport = ?")
        params.append(filters.transport)
    if filters.date_from:
        conditions.append("created_at >= ?")
        params.append(_format_ts(datetime.combine(filters.date_from, time.min)))
    if filters.date_to:
        conditions.append("created_at <= ?")
        params.append(_format_ts(datetime.combine(filters.date_to, time.max)))
    if filters.search:
        term = "%" + _escape_like(filters.search) + "%"
        conditions.append(
            "(message LIKE ? ESCAPE '\\' OR recipient LIKE ? ESCAPE '\\' OR subject LIKE ? ESCAPE '\\')"
        )
        params.extend([term, term, term])

    where = "WHERE " + " AND ".join(conditions) if conditions else ""
    return where, params


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _format_ts(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(TIMESTAMP_FORMAT)


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _as_text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value) or None
    return str(value)


def _row_to_entry(row: sqlite3.Row) -> LogEntry:
    details: dict[str, Any] = {}
    if row["details"]:
        try:
            details = json.loads(row["details"])
        except json.JSONDecodeError:
            details = {"raw": row["details"]}
    return LogEntry(
        id=row["id"],
        type=row["type"],
        level=row["level"],
        message=row["message"],
        details=details,
        recipient=row["recipient"],
        subject=row["subject"],
        transport=row["transport"],
        actor=row["actor"],
        created_at=_parse_ts(row["created_at"]),
    )
