"""对外的组合根：在一处构造存储、后端选择、备份与批处理，并暴露宿主调用的操作。"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import httpx

from media_optimizer.core.cache import TTLCache
from media_optimizer.core.config import OptimizerConfig
from media_optimizer.core.exceptions import BackupError, ItemNotFoundError, PersistenceError
from media_optimizer.core.models import (
    BackendKind,
    BackupStats,
    BatchCursor,
    BatchResult,
    ConnectionStatus,
    LibraryStats,
    LogSummary,
    OptimizableItem,
    OptimizationRecord,
)
from media_optimizer.core.report import write_csv_report
from media_optimizer.core.scanner import register_file, register_images
from media_optimizer.core.store import Store
from media_optimizer.processing.backends import BackendSelector
from media_optimizer.processing.backup import BackupStore
from media_optimizer.processing.batch import BatchCoordinator
from media_optimizer.processing.engine import OptimizationEngine
from media_optimizer.processing.queue import OptimizationQueue
from media_optimizer.processing.remote import available_services, check_connection, get_provider

LOGGER = logging.getLogger(__name__)


class MediaOptimizer:
    """宿主与优化核心之间的唯一入口。

    所有协作对象在构造时创建一次并通过引用传递，测试可以注入替身。
    """

    def __init__(
        self,
        config: OptimizerConfig,
        store: Optional[Store] = None,
        selector: Optional[BackendSelector] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.config = config.validated()
        if self.config.remote.public_base_url and self.config.remote.public_root is None:
            self.config.remote.public_root = self.config.media_root

        self.store = store or Store(self.config.database_path)
        self.selector = selector or BackendSelector()
        self._client = client
        self.stats_cache: TTLCache[LibraryStats] = TTLCache(self.config.stats_ttl)
        self.backups = BackupStore(
            self.store,
            self.config.backup,
            self.config.media_root,
            self.config.backup_dir,
            stats_cache=self.stats_cache,
        )
        self.engine = OptimizationEngine(
            self.config,
            self.store,
            self.selector,
            self.backups,
            remote=get_provider(self.config.remote, client),
        )
        self.batches = BatchCoordinator(self.store, self.engine, default_limit=self.config.batch_limit)
        self.queue = OptimizationQueue(self.store, self.engine)

    def __enter__(self) -> "MediaOptimizer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.store.close()

    # 条目

    def get_item(self, item_id: int) -> OptimizableItem:
        item = self.store.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(f"条目不存在: {item_id}")
        return item

    def scan(self, root: Optional[Path] = None) -> list[OptimizableItem]:
        items = register_images(self.store, root or self.config.media_root)
        self.stats_cache.invalidate()
        return items

    def register(self, path: Path, auto_optimize: Optional[bool] = None) -> OptimizableItem:
        """登记单个新文件，按配置决定是否立即优化（对应上传后自动优化）。"""

        item = register_file(self.store, Path(path))
        self.stats_cache.invalidate()
        if self.config.auto_optimize if auto_optimize is None else auto_optimize:
            self.process_one(item.item_id)
        return item

    # 优化

    def get_backend_kind(self) -> BackendKind:
        return self.selector.select_backend()

    def process_one(self, item_id: int, force: bool = False) -> OptimizationRecord:
        """同步优化单个条目。已优化的条目直接返回已有记录，``force`` 时先清除记录。"""

        item = self.get_item(item_id)
        existing = self.store.get_record(item_id)
        if existing is not None and existing.optimized:
            if not force:
                LOGGER.info("条目 %s 已优化，跳过", item_id)
                return existing
            self.store.clear_record(item_id)

        record = self.engine.process(item)
        self.stats_cache.invalidate()
        return record

    def reset(self, item_id: int) -> None:
        """清除条目的优化标记与错误信息，以便重新优化。"""

        self.get_item(item_id)
        self.store.clear_record(item_id)
        self.stats_cache.invalidate()

    # 批处理

    def start_bulk(self, limit: Optional[int] = None, force: bool = False) -> BatchCursor:
        return self.batches.start(limit, force=force)

    def run_batch(self, offset: Optional[int] = None, limit: Optional[int] = None) -> BatchResult:
        result = self.batches.run_batch(offset, limit)
        if result.processed_count:
            self.stats_cache.invalidate()
        return result

    def pause(self) -> BatchCursor:
        return self.batches.pause()

    def resume(self) -> BatchCursor:
        return self.batches.resume()

    @property
    def cursor(self) -> BatchCursor:
        return self.batches.cursor

    # 统计

    def get_stats(self, fresh: bool = False) -> LibraryStats:
        return self.stats_cache.get(self._compute_stats, fresh=fresh)

    def _compute_stats(self) -> LibraryStats:
        optimized, savings = self.store.record_totals()
        return LibraryStats(
            total_items=self.store.count_items(),
            optimized_items=optimized,
            total_savings=savings,
        )

    def log_summary(self) -> LogSummary:
        return self.store.log_summary()

    def write_report(self, path: Path) -> Path:
        report = write_csv_report(self.store.iter_records(), Path(path))
        LOGGER.info("报告已写入：%s", report)
        return report

    # 备份

    def restore(self, item_id: int) -> bool:
        return self.backups.restore(self.get_item(item_id))

    def create_backup(self, item_id: int) -> bool:
        item = self.get_item(item_id)
        if not self.backups.enabled:
            LOGGER.warning("备份未启用，无法为条目 %s 创建备份", item_id)
            return False
        try:
            return self.backups.backup(item) is not None
        except (BackupError, PersistenceError) as exc:
            LOGGER.error("为条目 %s 创建备份失败：%s", item_id, exc)
            return False

    def cleanup_backups(self, days: Optional[int] = None) -> int:
        if days is None:
            return self.backups.cleanup_expired()
        return self.backups.cleanup_older_than(timedelta(days=days))

    def backup_stats(self) -> BackupStats:
        return self.backups.stats()

    # 远程服务

    def test_backend_connection(self, service: Optional[str] = None, probe: bool = False) -> ConnectionStatus:
        return check_connection(service or self.config.remote.service, self.config.remote, self._client, probe=probe)

    @staticmethod
    def available_services() -> list[dict[str, object]]:
        return available_services()

    # 后台队列

    def enqueue(self, item_id: int, priority: int = 5) -> bool:
        self.get_item(item_id)
        return self.queue.enqueue(item_id, priority)

    def work_queue(self, max_items: Optional[int] = None) -> int:
        processed = self.queue.work(max_items)
        if processed:
            self.stats_cache.invalidate()
        return processed

    def cleanup_queue(self, days_old: int = 7) -> int:
        return self.queue.cleanup(days_old)
