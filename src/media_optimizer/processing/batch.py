"""批量优化协调器：分页处理未优化条目，维护可续跑的游标。

协调器不自行调度下一批，调用方根据 ``BatchResult.should_continue``
决定是否（通常延迟一段时间后）再次调用 ``run_batch``。
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from media_optimizer.core.models import (
    BatchCursor,
    BatchResult,
    BatchState,
    LogEntry,
    OptimizationRecord,
    RecordStatus,
)
from media_optimizer.core.store import Store
from media_optimizer.processing.engine import OptimizationEngine
from media_optimizer.utils.sizes import format_file_size

LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 3


class BatchCoordinator:
    """状态机：Idle → Running ⇄ Paused → Completed。

    游标持久化在 ``Store`` 中，进程重启后可从原偏移继续。同一进程内
    ``start`` 与 ``run_batch`` 串行执行。
    """

    def __init__(self, store: Store, engine: OptimizationEngine, default_limit: int = DEFAULT_LIMIT) -> None:
        self.store = store
        self.engine = engine
        self.default_limit = default_limit
        self._lock = threading.Lock()

    @property
    def cursor(self) -> BatchCursor:
        return self.store.load_cursor()

    def start(self, limit: Optional[int] = None, force: bool = False) -> BatchCursor:
        """开始新一轮批量优化，重置偏移与累计统计。"""

        with self._lock:
            cursor = self.store.load_cursor()
            if cursor.state is BatchState.RUNNING and not force:
                LOGGER.warning("批量优化已在运行中（偏移 %d），忽略重复启动", cursor.offset)
                return cursor
            return self._start_locked(limit)

    def pause(self) -> BatchCursor:
        """设置暂停标记，正在执行的批次会完整跑完后生效。"""

        cursor = self.store.load_cursor()
        cursor.paused = True
        if cursor.state is BatchState.RUNNING:
            cursor.state = BatchState.PAUSED
        self.store.save_cursor(cursor)
        LOGGER.info("批量优化已暂停，偏移保持在 %d", cursor.offset)
        return cursor

    def resume(self) -> BatchCursor:
        """清除暂停标记，从持久化的偏移继续。"""

        with self._lock:
            cursor = self.store.load_cursor()
            if cursor.started_at is None or cursor.state in (BatchState.IDLE, BatchState.COMPLETED):
                return self._start_locked(cursor.limit)
            cursor.paused = False
            cursor.state = BatchState.RUNNING
            self.store.save_cursor(cursor)
            LOGGER.info("批量优化继续，从偏移 %d 开始", cursor.offset)
            return cursor

    def run_batch(self, offset: Optional[int] = None, limit: Optional[int] = None) -> BatchResult:
        """处理一页未优化条目并推进游标。

        ``offset`` 为空时使用持久化游标的位置。偏移按实际取到的条目数推进，
        最后一页不足 ``limit`` 时也能正确结束。
        """

        with self._lock:
            cursor = self.store.load_cursor()
            start_offset = cursor.offset if offset is None else max(0, offset)
            if cursor.started_at is None or (cursor.state is BatchState.COMPLETED and start_offset == 0):
                cursor = self._start_locked(limit or cursor.limit)
            limit = max(1, limit or cursor.limit or self.default_limit)

            items = self.store.list_pending(cursor.started_at, start_offset, limit)
            log: list[LogEntry] = []
            records: list[OptimizationRecord] = []
            succeeded = failed = skipped = 0
            savings = 0

            for item in items:
                name = item.path.name
                try:
                    record = self.engine.process(item)
                except Exception as exc:  # noqa: BLE001
                    LOGGER.exception("处理条目 %s 时发生异常：%s", item.item_id, exc)
                    record = OptimizationRecord(item_id=item.item_id, status=RecordStatus.FAILED, error=str(exc))
                self.store.mark_visited(item.item_id, cursor.started_at)
                records.append(record)

                if record.status is RecordStatus.SUCCESS:
                    succeeded += 1
                    savings += record.total_savings
                    log.append(LogEntry("success", f"已优化 {name}，节省 {format_file_size(record.total_savings)}"))
                elif record.status is RecordStatus.SKIPPED:
                    skipped += 1
                    log.append(LogEntry("skipped", f"跳过 {name}（{record.error}）"))
                else:
                    failed += 1
                    detail = f"（{record.error}）" if record.error else ""
                    log.append(LogEntry("failed", f"优化失败 {name}{detail}"))

            next_offset = start_offset + len(items)
            remaining = max(0, self.store.count_pending(cursor.started_at) - next_offset)
            has_more = remaining > 0

            # 重新读取游标，保留批次执行期间外部设置的暂停标记
            latest = self.store.load_cursor()
            latest.offset = next_offset
            latest.limit = limit
            latest.started_at = cursor.started_at
            latest.processed += len(items)
            latest.succeeded += succeeded
            latest.failed += failed
            latest.skipped += skipped
            latest.savings += savings
            if not has_more:
                latest.state = BatchState.COMPLETED
                latest.paused = False
            elif latest.paused:
                latest.state = BatchState.PAUSED
            else:
                latest.state = BatchState.RUNNING
            self.store.save_cursor(latest)

        LOGGER.info(
            "批次完成：处理 %d，成功 %d，失败 %d，跳过 %d，节省 %s，剩余 %d",
            len(items),
            succeeded,
            failed,
            skipped,
            format_file_size(savings),
            remaining,
        )
        return BatchResult(
            processed_count=len(items),
            succeeded_count=succeeded,
            failed_count=failed,
            skipped_count=skipped,
            total_savings=savings,
            log=log,
            next_offset=next_offset,
            has_more=has_more,
            total_remaining=remaining,
            paused=latest.paused,
            records=records,
        )

    def _start_locked(self, limit: Optional[int]) -> BatchCursor:
        cursor = BatchCursor(
            offset=0,
            limit=limit or self.default_limit,
            paused=False,
            state=BatchState.RUNNING,
            started_at=time.time(),
        )
        self.store.clear_visits()
        self.store.save_cursor(cursor)
        LOGGER.info("开始批量优化，每批 %d 个条目", cursor.limit)
        return cursor
