"""单个条目的优化流程：选择后端、备份、转码/远程压缩、统计与记录。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from media_optimizer.core.config import OptimizerConfig
from media_optimizer.core.exceptions import BackupError, PersistenceError
from media_optimizer.core.models import BackendKind, OptimizableItem, OptimizationRecord, RecordStatus
from media_optimizer.core.store import Store
from media_optimizer.processing.backends import BackendSelector
from media_optimizer.processing.backup import BackupStore
from media_optimizer.processing.inspector import SUPPORTED_FORMATS, detect_format, file_size
from media_optimizer.processing.remote import RemoteProvider, get_provider
from media_optimizer.processing.transcoder import Transcoder, build_transcoder
from media_optimizer.utils.sizes import format_file_size, savings_percentage

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class FileOutcome:
    """单个文件（主图或缩略图）的处理结果。"""

    path: Path
    success: bool
    method: Optional[str]
    original_size: int
    optimized_size: int
    error: Optional[str] = None

    @property
    def savings(self) -> int:
        return max(0, self.original_size - self.optimized_size) if self.success else 0


class OptimizationEngine:
    """优化编排器。

    引擎本身无状态、不判断幂等：是否重新优化已优化的条目由调用方决定。
    """

    def __init__(
        self,
        config: OptimizerConfig,
        store: Store,
        selector: BackendSelector,
        backups: BackupStore,
        remote: Optional[RemoteProvider] = None,
        transcoders: Optional[dict[BackendKind, Transcoder]] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.selector = selector
        self.backups = backups
        self.remote = remote or get_provider(config.remote)
        self._transcoders: dict[BackendKind, Transcoder] = dict(transcoders or {})

    def transcoder(self, kind: BackendKind) -> Transcoder:
        if kind not in self._transcoders:
            self._transcoders[kind] = build_transcoder(
                kind, self.config.quality, self.config.resize, self.config.limits
            )
        return self._transcoders[kind]

    def process(self, item: OptimizableItem) -> OptimizationRecord:
        """优化条目的主文件及其缩略图，写入并返回优化记录。"""

        path = item.path
        if not path.is_file():
            LOGGER.info("条目 %s 文件不存在，跳过：%s", item.item_id, path)
            return self._skipped(item, "文件不存在")

        image_format = detect_format(path)
        if image_format not in SUPPORTED_FORMATS:
            LOGGER.info("条目 %s 不是受支持的图片格式，跳过", item.item_id)
            return self._skipped(item, "不支持的图片格式")

        original_size = file_size(path)
        if original_size <= self.config.min_size:
            LOGGER.info("条目 %s 文件过小 (%s)，无需优化", item.item_id, format_file_size(original_size))
            return self._skipped(item, "文件过小，无需优化", original_size)

        if self.backups.enabled:
            try:
                self.backups.backup(item)
            except (BackupError, PersistenceError) as exc:
                LOGGER.warning("条目 %s 备份失败，继续优化：%s", item.item_id, exc)

        main = self.optimize_file(path, image_format)
        if not main.success:
            record = OptimizationRecord(
                item_id=item.item_id,
                status=RecordStatus.FAILED,
                method=main.method,
                original_size=original_size,
                optimized_size=original_size,
                error=main.error or f"使用 {main.method} 优化失败",
            )
            self._persist(record)
            return record

        record = OptimizationRecord(
            item_id=item.item_id,
            status=RecordStatus.SUCCESS,
            method=main.method,
            original_size=main.original_size,
            optimized_size=main.optimized_size,
        )
        if self.config.optimize_variants and item.variants:
            record.variant_savings = self._optimize_variants(item)

        LOGGER.info(
            "条目 %s 优化成功：%s -> %s，节省 %s (%.2f%%)，方式 %s",
            item.item_id,
            format_file_size(record.original_size),
            format_file_size(record.optimized_size),
            format_file_size(record.savings),
            savings_percentage(record.original_size, record.optimized_size),
            record.method,
        )
        self._persist(record)
        return record

    def optimize_file(self, path: Path, image_format: Optional[str] = None) -> FileOutcome:
        """按后端回退链处理单个文件。

        进程内后端因格式不支持或资源超限而拒绝时交给下一个后端；其他失败
        直接记为失败。远程 API 永远是链上最后一个后端。
        """

        image_format = image_format or detect_format(path)
        original_size = file_size(path)
        method: Optional[str] = None
        error: Optional[str] = None

        for kind in self.selector.fallback_chain():
            if kind is BackendKind.REMOTE:
                method = self.remote.name
                if self.remote.optimize(path, self.config.quality.compression_level):
                    return FileOutcome(path, True, method, original_size, file_size(path))
                error = f"{self.remote.service_name()} 优化失败"
                break

            method = kind.value
            result = self.transcoder(kind).transcode(path, image_format)
            if result:
                return FileOutcome(path, True, method, original_size, file_size(path))
            error = result.message
            if not result.fallback:
                break
            LOGGER.warning("%s 无法处理 %s，尝试下一个后端", kind.value, path.name)

        LOGGER.warning("文件优化失败：%s (方式 %s)", path.name, method)
        return FileOutcome(path, False, method, original_size, original_size, error)

    def _optimize_variants(self, item: OptimizableItem) -> int:
        excluded = set(self.config.exclude_variants)
        total = 0
        for name, variant_path in item.variants.items():
            if name in excluded or not variant_path.is_file():
                continue
            image_format = detect_format(variant_path)
            if image_format not in SUPPORTED_FORMATS:
                continue
            outcome = self.optimize_file(variant_path, image_format)
            total += outcome.savings
        return total

    def _persist(self, record: OptimizationRecord) -> None:
        try:
            self.store.save_record(record)
        except PersistenceError as exc:
            # 文件已经写回，记录失败不回滚
            LOGGER.error("保存条目 %s 的优化记录失败：%s", record.item_id, exc)

    @staticmethod
    def _skipped(item: OptimizableItem, reason: str, size: int = 0) -> OptimizationRecord:
        return OptimizationRecord(
            item_id=item.item_id,
            status=RecordStatus.SKIPPED,
            original_size=size,
            optimized_size=size,
            error=reason,
        )
