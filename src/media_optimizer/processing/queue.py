"""后台优化队列：按优先级与加入时间逐个处理，失败时有限次重试。"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Callable, Optional

from media_optimizer.core.models import QueueEntry, QueueStatus, RecordStatus
from media_optimizer.core.store import Store
from media_optimizer.processing.engine import OptimizationEngine

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class OptimizationQueue:
    """单消费者轮询队列。

    状态流转：pending → processing → completed | failed。失败会累加重试次数，
    仍有剩余次数时回到 pending 等待下一次轮询。
    """

    def __init__(self, store: Store, engine: OptimizationEngine, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.engine = engine
        self._clock = clock

    def enqueue(self, item_id: int, priority: int = 5, max_retries: int = DEFAULT_MAX_RETRIES) -> bool:
        added = self.store.enqueue(item_id, priority, max_retries)
        if added:
            LOGGER.debug("条目 %s 已加入优化队列（优先级 %d）", item_id, priority)
        return added

    def next_entry(self) -> Optional[QueueEntry]:
        return self.store.next_queue_entry()

    def process_next(self) -> Optional[QueueEntry]:
        """取出并处理一个条目，队列为空时返回 None。"""

        entry = self.store.next_queue_entry()
        if entry is None:
            return None

        entry.status = QueueStatus.PROCESSING
        entry.started_at = self._clock()
        self.store.update_queue_entry(entry)

        item = self.store.get_item(entry.item_id)
        if item is None:
            self._mark_failed(entry, "条目不存在", retry=False)
            return entry

        try:
            record = self.engine.process(item)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("处理队列条目 %s 时发生异常：%s", entry.item_id, exc)
            self._mark_failed(entry, str(exc))
            return entry

        if record.status is RecordStatus.FAILED:
            self._mark_failed(entry, record.error or "优化失败")
        else:
            entry.status = QueueStatus.COMPLETED
            entry.completed_at = self._clock()
            entry.error = record.error if record.status is RecordStatus.SKIPPED else None
            self.store.update_queue_entry(entry)
        return entry

    def work(self, max_items: Optional[int] = None) -> int:
        """处理队列直到为空或达到 ``max_items``，返回处理的条目数。"""

        processed = 0
        while max_items is None or processed < max_items:
            if self.process_next() is None:
                break
            processed += 1
        LOGGER.info("队列处理完成，本次处理 %d 个条目", processed)
        return processed

    def cleanup(self, days_old: int = 7) -> int:
        cutoff = self._clock() - timedelta(days=days_old).total_seconds()
        removed = self.store.cleanup_queue(cutoff)
        if removed:
            LOGGER.info("已清理 %d 个旧队列条目", removed)
        return removed

    def _mark_failed(self, entry: QueueEntry, error: str, retry: bool = True) -> None:
        entry.retries = entry.retries + 1 if retry else entry.max_retries
        entry.error = error
        entry.completed_at = self._clock()
        if entry.retries < entry.max_retries:
            entry.status = QueueStatus.PENDING
            LOGGER.warning("队列条目 %s 失败，稍后重试（%d/%d）：%s", entry.item_id, entry.retries, entry.max_retries, error)
        else:
            entry.status = QueueStatus.FAILED
            LOGGER.error("队列条目 %s 已达到最大重试次数：%s", entry.item_id, error)
        self.store.update_queue_entry(entry)
