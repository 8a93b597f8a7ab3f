"""报告生成工具。"""

from __future__ import annotations

import csv
from datetime import datetime
from pathlib import Path
from typing import Iterable

from media_optimizer.core.models import OptimizableItem, OptimizationRecord
from media_optimizer.utils.sizes import savings_percentage

HEADER = [
    "item_id",
    "path",
    "status",
    "method",
    "original_size",
    "optimized_size",
    "savings",
    "variant_savings",
    "percent",
    "timestamp",
    "error",
]


def write_csv_report(rows: Iterable[tuple[OptimizableItem, OptimizationRecord]], report_path: Path) -> Path:
    """将优化记录写入 CSV 报告。"""

    report_path.parent.mkdir(parents=True, exist_ok=True)
    with report_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(HEADER)
        for item, record in rows:
            writer.writerow(
                [
                    item.item_id,
                    str(item.path),
                    record.status.value,
                    record.method or "",
                    record.original_size,
                    record.optimized_size,
                    record.savings,
                    record.variant_savings,
                    _format_percent(record),
                    _format_timestamp(record.timestamp),
                    record.error or "",
                ]
            )
    return report_path


def _format_percent(record: OptimizationRecord) -> str:
    if not record.optimized:
        return ""
    return f"{savings_percentage(record.original_size, record.optimized_size):.2f}"


def _format_timestamp(value: float) -> str:
    return datetime.fromtimestamp(value).isoformat(timespec="seconds")
