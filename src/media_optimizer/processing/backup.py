"""原图备份：首次优化前复制原文件，支持还原与按时间清理。"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import Optional

from media_optimizer.core.cache import TTLCache
from media_optimizer.core.config import BackupConfig
from media_optimizer.core.exceptions import BackupError
from media_optimizer.core.models import BackupRecord, BackupStats, OptimizableItem
from media_optimizer.core.store import Store
from media_optimizer.utils.files import atomic_copy

LOGGER = logging.getLogger(__name__)

EXTERNAL_DIR = "_external"


class BackupStore:
    """以条目为键的原图备份。

    备份路径由条目相对媒体根目录的路径决定，镜像原目录结构。备份一旦创建
    就不会被后续优化覆盖，还原也不会删除备份，只有按时间清理会移除它。
    """

    def __init__(
        self,
        store: Store,
        config: BackupConfig,
        media_root: Path,
        backup_dir: Path,
        stats_cache: Optional[TTLCache] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.media_root = media_root
        self.backup_dir = backup_dir
        self.stats_cache = stats_cache

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def backup_path_for(self, item: OptimizableItem) -> Path:
        try:
            relative = item.path.resolve().relative_to(self.media_root.resolve())
        except ValueError:
            relative = Path(EXTERNAL_DIR) / str(item.item_id) / item.path.name
        return self.backup_dir / relative

    def backup(self, item: OptimizableItem) -> Optional[Path]:
        """创建备份并返回路径；未启用备份时直接返回 None。

        已存在备份时不会覆盖，保证保存的始终是最初的原图。
        """

        if not self.enabled:
            return None

        existing = self.store.get_backup(item.item_id)
        if existing is not None and existing.backup_path.is_file():
            LOGGER.debug("条目 %s 已有备份，保留原始版本", item.item_id)
            return existing.backup_path

        if not item.path.is_file():
            raise BackupError(f"无法备份，文件不存在或不可读: {item.path}")

        destination = self.backup_path_for(item)
        try:
            atomic_copy(item.path, destination)
        except OSError as exc:
            raise BackupError(f"创建备份失败: {item.path} -> {destination}") from exc

        self.store.save_backup(BackupRecord(item_id=item.item_id, backup_path=destination, created_at=time.time()))
        LOGGER.info("已创建备份：条目 %s -> %s", item.item_id, destination)
        return destination

    def restore(self, item: OptimizableItem) -> bool:
        """用备份覆盖当前文件，并清除该条目的优化记录。"""

        record = self.store.get_backup(item.item_id)
        if record is None or not record.backup_path.is_file():
            LOGGER.error("未找到条目 %s 的备份文件", item.item_id)
            return False

        try:
            atomic_copy(record.backup_path, item.path)
        except OSError as exc:
            LOGGER.error("还原条目 %s 失败：%s", item.item_id, exc)
            return False

        self.store.clear_record(item.item_id)
        if self.stats_cache is not None:
            self.stats_cache.invalidate()
        LOGGER.info("已从备份还原条目 %s：%s", item.item_id, record.backup_path)
        return True

    def cleanup_older_than(self, max_age: timedelta) -> int:
        """删除修改时间早于 ``now - max_age`` 的备份文件及随之变空的目录。"""

        if not self.backup_dir.is_dir():
            return 0

        cutoff = time.time() - max_age.total_seconds()
        removed: list[Path] = []
        for candidate in self.backup_dir.rglob("*"):
            if not candidate.is_file():
                continue
            try:
                if candidate.stat().st_mtime < cutoff:
                    candidate.unlink()
                    removed.append(candidate)
            except OSError as exc:
                LOGGER.warning("删除过期备份失败 %s：%s", candidate, exc)

        self.store.delete_backups(removed)
        self._remove_empty_dirs()
        LOGGER.info("已清理 %d 个过期备份文件", len(removed))
        return len(removed)

    def cleanup_expired(self) -> int:
        return self.cleanup_older_than(timedelta(days=self.config.retention_days))

    def stats(self) -> BackupStats:
        result = BackupStats()
        if not self.backup_dir.is_dir():
            return result

        for candidate in self.backup_dir.rglob("*"):
            if not candidate.is_file():
                continue
            info = candidate.stat()
            result.total_files += 1
            result.total_size += info.st_size
            if result.oldest_backup is None or info.st_mtime < result.oldest_backup:
                result.oldest_backup = info.st_mtime
            if result.newest_backup is None or info.st_mtime > result.newest_backup:
                result.newest_backup = info.st_mtime
        return result

    def _remove_empty_dirs(self) -> None:
        directories = sorted(
            (p for p in self.backup_dir.rglob("*") if p.is_dir()),
            key=lambda p: len(p.parts),
            reverse=True,
        )
        for directory in directories:
            if not any(directory.iterdir()):
                directory.rmdir()
