"""核心数据模型定义。"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class BackendKind(str, Enum):
    """可用的优化后端，按优先级从高到低排列。"""

    PILLOW = "pillow"
    OPENCV = "opencv"
    REMOTE = "remote"


class RecordStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class BatchState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class OptimizableItem:
    """媒体库中的一张可优化图片。"""

    item_id: int
    path: Path
    mime: Optional[str] = None
    size: int = 0
    variants: dict[str, Path] = field(default_factory=dict)


@dataclass(slots=True)
class OptimizationRecord:
    """单个条目的优化结果。

    ``savings`` 只描述主文件，恒等于 ``max(0, original_size - optimized_size)``；
    缩略图节省的字节计入 ``variant_savings``。
    """

    item_id: int
    status: RecordStatus
    method: Optional[str] = None
    original_size: int = 0
    optimized_size: int = 0
    variant_savings: int = 0
    timestamp: float = field(default_factory=time.time)
    error: Optional[str] = None

    @property
    def optimized(self) -> bool:
        return self.status is RecordStatus.SUCCESS

    @property
    def savings(self) -> int:
        return max(0, self.original_size - self.optimized_size)

    @property
    def total_savings(self) -> int:
        return self.savings + self.variant_savings


@dataclass(slots=True)
class BackupRecord:
    item_id: int
    backup_path: Path
    created_at: float


@dataclass(slots=True)
class LogEntry:
    """批处理日志行，仅存在于一次批处理响应中。"""

    type: str  # success | failed | skipped
    message: str


@dataclass(slots=True)
class BatchCursor:
    """批量优化的持久化游标。"""

    offset: int = 0
    limit: int = 3
    paused: bool = False
    state: BatchState = BatchState.IDLE
    started_at: Optional[float] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    savings: int = 0


@dataclass(slots=True)
class BatchResult:
    """一次批处理的产出。"""

    processed_count: int
    succeeded_count: int
    failed_count: int
    skipped_count: int
    total_savings: int
    log: list[LogEntry]
    next_offset: int
    has_more: bool
    total_remaining: int = 0
    paused: bool = False
    records: list[OptimizationRecord] = field(default_factory=list)

    @property
    def should_continue(self) -> bool:
        """调用方是否应继续请求下一批。"""

        return self.has_more and not self.paused


@dataclass(slots=True)
class QueueEntry:
    """后台队列中的一个条目。"""

    queue_id: int
    item_id: int
    status: QueueStatus = QueueStatus.PENDING
    priority: int = 5
    retries: int = 0
    max_retries: int = 3
    added_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None


@dataclass(slots=True)
class LibraryStats:
    total_items: int
    optimized_items: int
    total_savings: int

    @property
    def unoptimized_items(self) -> int:
        return max(0, self.total_items - self.optimized_items)


@dataclass(slots=True)
class LogSummary:
    """优化日志的聚合统计。"""

    total_optimizations: int = 0
    successful_optimizations: int = 0
    failed_optimizations: int = 0
    total_savings: int = 0
    average_savings: float = 0.0


@dataclass(slots=True)
class BackupStats:
    total_files: int = 0
    total_size: int = 0
    oldest_backup: Optional[float] = None
    newest_backup: Optional[float] = None


@dataclass(slots=True)
class ConnectionStatus:
    ok: bool
    message: str
