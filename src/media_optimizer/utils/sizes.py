"""字节大小与节省比例工具函数。"""

from __future__ import annotations

UNITS = ("B", "KB", "MB", "GB", "TB")


def format_file_size(num_bytes: int) -> str:
    """将字节数格式化为带单位的字符串，例如 ``1.5 MB``。"""

    value = max(int(num_bytes), 0)
    power = 0
    while power < len(UNITS) - 1 and value >= 1024 ** (power + 1):
        power += 1
    scaled = round(value / (1024**power), 2)
    if scaled == int(scaled):
        return f"{int(scaled)} {UNITS[power]}"
    return f"{scaled} {UNITS[power]}"


def savings_percentage(original_size: int, optimized_size: int) -> float:
    """计算节省百分比，保留两位小数；原始大小为 0 时返回 0。"""

    if original_size <= 0:
        return 0.0
    return round((original_size - optimized_size) / original_size * 100, 2)


def recommended_quality(file_size: int) -> int:
    """根据文件大小给出建议的有损压缩质量。"""

    if file_size > 2 * 1024 * 1024:
        return 75
    if file_size > 1024 * 1024:
        return 80
    if file_size > 512 * 1024:
        return 85
    return 90
