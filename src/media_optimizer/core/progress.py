"""批量优化进度：把逐批返回的结果累积为可展示的进度。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from media_optimizer.core.models import BatchResult, LogEntry

ProgressCallback = Optional[Callable[["ProgressUpdate"], None]]


@dataclass(slots=True)
class ProgressUpdate:
    """一次批处理之后的累计进度。"""

    total: int
    completed: int
    savings: int = 0
    log: list[LogEntry] = field(default_factory=list)
    status: str = "running"


class BulkProgress:
    """累计多次 ``run_batch`` 的结果。

    ``total`` 取开始时的未优化条目数；运行期间新增条目时随已处理数增长。
    """

    def __init__(self, total: int, callback: ProgressCallback = None) -> None:
        self.total = total
        self.completed = 0
        self.savings = 0
        self.failed = 0
        self._callback = callback

    def advance(self, result: BatchResult) -> ProgressUpdate:
        self.completed += result.processed_count
        self.savings += result.total_savings
        self.failed += result.failed_count
        self.total = max(self.total, self.completed)

        if not result.has_more:
            status = "completed"
        elif result.paused:
            status = "paused"
        else:
            status = "running"

        update = ProgressUpdate(
            total=self.total,
            completed=self.completed,
            savings=self.savings,
            log=list(result.log),
            status=status,
        )
        if self._callback is not None:
            self._callback(update)
        return update
