"""基于 SQLite 的持久化存储：条目、优化记录、备份、游标与队列。"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Iterator, Optional

from media_optimizer.core.exceptions import PersistenceError
from media_optimizer.core.models import (
    BackupRecord,
    BatchCursor,
    BatchState,
    LogSummary,
    OptimizableItem,
    OptimizationRecord,
    QueueEntry,
    QueueStatus,
    RecordStatus,
)

LOGGER = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    item_id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    mime TEXT,
    size INTEGER NOT NULL DEFAULT 0,
    variants TEXT NOT NULL DEFAULT '{}'
);
CREATE TABLE IF NOT EXISTS records (
    item_id INTEGER PRIMARY KEY,
    status TEXT NOT NULL,
    method TEXT,
    original_size INTEGER NOT NULL DEFAULT 0,
    optimized_size INTEGER NOT NULL DEFAULT 0,
    variant_savings INTEGER NOT NULL DEFAULT 0,
    timestamp REAL NOT NULL,
    error TEXT
);
CREATE TABLE IF NOT EXISTS backups (
    item_id INTEGER PRIMARY KEY,
    backup_path TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS optimization_log (
    log_id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id INTEGER NOT NULL,
    status TEXT NOT NULL,
    method TEXT,
    original_size INTEGER NOT NULL DEFAULT 0,
    optimized_size INTEGER NOT NULL DEFAULT 0,
    savings_bytes INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    timestamp REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_log_item ON optimization_log (item_id);
CREATE TABLE IF NOT EXISTS queue (
    queue_id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id INTEGER NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 5,
    added_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL,
    retries INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS idx_queue_status ON queue (status, priority, added_at);
CREATE TABLE IF NOT EXISTS options (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS batch_visits (
    item_id INTEGER PRIMARY KEY,
    run REAL NOT NULL
);
"""

CURSOR_KEY = "batch_cursor"


class Store:
    """所有持久化状态的唯一入口，可被多个服务对象共享。"""

    def __init__(self, path: Path | str) -> None:
        self.path = path
        if isinstance(path, Path):
            path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise PersistenceError(f"无法打开数据库: {path}") from exc
        self._lock = threading.RLock()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    # ---- items -------------------------------------------------------

    def add_item(
        self,
        path: Path,
        mime: Optional[str] = None,
        size: int = 0,
        variants: Optional[dict[str, Path]] = None,
    ) -> OptimizableItem:
        """登记条目；同一路径重复登记时只更新元信息。"""

        encoded = json.dumps({name: str(p) for name, p in (variants or {}).items()})
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO items (path, mime, size, variants) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(path) DO UPDATE SET mime = excluded.mime, size = excluded.size, "
                "variants = excluded.variants",
                (str(path), mime, size, encoded),
            )
            row = conn.execute("SELECT * FROM items WHERE path = ?", (str(path),)).fetchone()
        return _item_from_row(row)

    def get_item(self, item_id: int) -> Optional[OptimizableItem]:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM items WHERE item_id = ?", (item_id,)).fetchone()
        return _item_from_row(row) if row else None

    def count_items(self) -> int:
        with self._tx() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM items").fetchone()[0])

    def list_pending(self, since: Optional[float], offset: int, limit: int) -> list[OptimizableItem]:
        """按 item_id 顺序分页列出未优化条目。

        ``since`` 为本轮批量运行的开始时间。本轮已经处理过的条目无论结果如何
        都留在待处理集合中，保证偏移量稳定；本轮之外被优化的条目则退出集合。
        """

        where, params = _pending_clause(since)
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT i.* FROM items i LEFT JOIN records r ON r.item_id = i.item_id "
                f"WHERE {where} ORDER BY i.item_id LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [_item_from_row(row) for row in rows]

    def count_pending(self, since: Optional[float]) -> int:
        where, params = _pending_clause(since)
        with self._tx() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM items i LEFT JOIN records r ON r.item_id = i.item_id WHERE {where}",
                params,
            ).fetchone()
        return int(row[0])

    def mark_visited(self, item_id: int, run: float) -> None:
        with self._tx() as conn:
            conn.execute("INSERT OR REPLACE INTO batch_visits (item_id, run) VALUES (?, ?)", (item_id, run))

    def clear_visits(self) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM batch_visits")

    # ---- records -----------------------------------------------------

    def get_record(self, item_id: int) -> Optional[OptimizationRecord]:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM records WHERE item_id = ?", (item_id,)).fetchone()
        return _record_from_row(row) if row else None

    def save_record(self, record: OptimizationRecord) -> None:
        """写入（覆盖）条目的优化记录，并追加一条优化日志。"""

        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO records "
                "(item_id, status, method, original_size, optimized_size, variant_savings, timestamp, error) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.item_id,
                    record.status.value,
                    record.method,
                    record.original_size,
                    record.optimized_size,
                    record.variant_savings,
                    record.timestamp,
                    record.error,
                ),
            )
            conn.execute(
                "INSERT INTO optimization_log "
                "(item_id, status, method, original_size, optimized_size, savings_bytes, error_message, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.item_id,
                    record.status.value,
                    record.method,
                    record.original_size,
                    record.optimized_size,
                    record.savings,
                    record.error or "",
                    record.timestamp,
                ),
            )

    def clear_record(self, item_id: int) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM records WHERE item_id = ?", (item_id,))

    def iter_records(self) -> list[tuple[OptimizableItem, OptimizationRecord]]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT i.item_id, i.path, i.mime, i.size, i.variants, r.status, r.method, "
                "r.original_size, r.optimized_size, r.variant_savings, r.timestamp, r.error "
                "FROM records r JOIN items i ON i.item_id = r.item_id ORDER BY i.item_id"
            ).fetchall()
        return [(_item_from_row(row), _record_from_row(row)) for row in rows]

    def record_totals(self) -> tuple[int, int]:
        """返回 (已优化条目数, 总节省字节)。"""

        with self._tx() as conn:
            row = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(MAX(0, original_size - optimized_size) + variant_savings), 0) "
                "FROM records r JOIN items i ON i.item_id = r.item_id WHERE r.status = ?",
                (RecordStatus.SUCCESS.value,),
            ).fetchone()
        return int(row[0]), int(row[1])

    def log_summary(self) -> LogSummary:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT COUNT(*), "
                "SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END), "
                "SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), "
                "COALESCE(SUM(savings_bytes), 0), COALESCE(AVG(savings_bytes), 0) "
                "FROM optimization_log"
            ).fetchone()
        return LogSummary(
            total_optimizations=int(row[0]),
            successful_optimizations=int(row[1] or 0),
            failed_optimizations=int(row[2] or 0),
            total_savings=int(row[3]),
            average_savings=float(row[4]),
        )

    # ---- backups -----------------------------------------------------

    def get_backup(self, item_id: int) -> Optional[BackupRecord]:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM backups WHERE item_id = ?", (item_id,)).fetchone()
        if not row:
            return None
        return BackupRecord(item_id=row["item_id"], backup_path=Path(row["backup_path"]), created_at=row["created_at"])

    def save_backup(self, record: BackupRecord) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO backups (item_id, backup_path, created_at) VALUES (?, ?, ?)",
                (record.item_id, str(record.backup_path), record.created_at),
            )

    def delete_backups(self, paths: list[Path]) -> None:
        if not paths:
            return
        with self._tx() as conn:
            conn.executemany("DELETE FROM backups WHERE backup_path = ?", [(str(p),) for p in paths])

    # ---- options / cursor --------------------------------------------

    def get_option(self, key: str, default: object = None) -> object:
        with self._tx() as conn:
            row = conn.execute("SELECT value FROM options WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else default

    def set_option(self, key: str, value: object) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO options (key, value) VALUES (?, ?)",
                (key, json.dumps(value)),
            )

    def load_cursor(self) -> BatchCursor:
        data = self.get_option(CURSOR_KEY)
        if not isinstance(data, dict):
            return BatchCursor()
        data = dict(data)
        data["state"] = BatchState(data.get("state", BatchState.IDLE.value))
        return BatchCursor(**data)

    def save_cursor(self, cursor: BatchCursor) -> None:
        data = asdict(cursor)
        data["state"] = cursor.state.value
        self.set_option(CURSOR_KEY, data)

    # ---- queue -------------------------------------------------------

    def enqueue(self, item_id: int, priority: int = 5, max_retries: int = 3) -> bool:
        """加入后台队列；条目已在队列中时返回 False。"""

        priority = max(1, min(10, priority))
        with self._tx() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO queue (item_id, priority, added_at, max_retries) VALUES (?, ?, ?, ?)",
                (item_id, priority, time.time(), max_retries),
            )
        return cursor.rowcount == 1

    def next_queue_entry(self) -> Optional[QueueEntry]:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM queue WHERE status = ? AND retries < max_retries "
                "ORDER BY priority ASC, added_at ASC, queue_id ASC LIMIT 1",
                (QueueStatus.PENDING.value,),
            ).fetchone()
        return _queue_from_row(row) if row else None

    def update_queue_entry(self, entry: QueueEntry) -> None:
        with self._tx() as conn:
            conn.execute(
                "UPDATE queue SET status = ?, priority = ?, started_at = ?, completed_at = ?, "
                "retries = ?, max_retries = ?, error_message = ? WHERE queue_id = ?",
                (
                    entry.status.value,
                    entry.priority,
                    entry.started_at,
                    entry.completed_at,
                    entry.retries,
                    entry.max_retries,
                    entry.error,
                    entry.queue_id,
                ),
            )

    def cleanup_queue(self, older_than: float) -> int:
        with self._tx() as conn:
            cursor = conn.execute(
                "DELETE FROM queue WHERE status IN (?, ?) AND completed_at < ?",
                (QueueStatus.COMPLETED.value, QueueStatus.FAILED.value, older_than),
            )
        return cursor.rowcount


def _pending_clause(since: Optional[float]) -> tuple[str, tuple]:
    where = "(r.item_id IS NULL OR r.status != 'success')"
    if since is None:
        return where, ()
    visited = "i.item_id IN (SELECT item_id FROM batch_visits WHERE run = ?)"
    return f"({where} OR {visited})", (since,)


def _item_from_row(row: sqlite3.Row) -> OptimizableItem:
    variants = {name: Path(p) for name, p in json.loads(row["variants"] or "{}").items()}
    return OptimizableItem(
        item_id=row["item_id"],
        path=Path(row["path"]),
        mime=row["mime"],
        size=row["size"],
        variants=variants,
    )


def _record_from_row(row: sqlite3.Row) -> OptimizationRecord:
    return OptimizationRecord(
        item_id=row["item_id"],
        status=RecordStatus(row["status"]),
        method=row["method"],
        original_size=row["original_size"],
        optimized_size=row["optimized_size"],
        variant_savings=row["variant_savings"],
        timestamp=row["timestamp"],
        error=row["error"],
    )


def _queue_from_row(row: sqlite3.Row) -> QueueEntry:
    return QueueEntry(
        queue_id=row["queue_id"],
        item_id=row["item_id"],
        status=QueueStatus(row["status"]),
        priority=row["priority"],
        retries=row["retries"],
        max_retries=row["max_retries"],
        added_at=row["added_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        error=row["error_message"],
    )
