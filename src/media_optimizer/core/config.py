"""优化任务的配置模型。"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from media_optimizer.core.exceptions import InvalidConfigurationError

LOGGER = logging.getLogger(__name__)

KB = 1024
MB = 1024 * 1024

RemoteService = str  # resmushit | tinypng
REMOTE_SERVICES = ("resmushit", "tinypng")


@dataclass(slots=True)
class QualityConfig:
    """各格式的压缩质量（1~100）。"""

    jpeg: int = 82
    png: int = 90
    webp: int = 80
    compression_level: int = 82

    def for_format(self, image_format: str) -> int:
        """返回指定格式使用的质量值，未知格式使用通用压缩等级。"""

        key = image_format.lower()
        if key in {"jpeg", "jpg"}:
            return self.jpeg
        if key == "png":
            return self.png
        if key == "webp":
            return self.webp
        return self.compression_level


@dataclass(slots=True)
class ResizeConfig:
    """尺寸上限配置，0 表示不限制。"""

    max_width: int = 0
    max_height: int = 0
    memory_cap: int = 32 * MB

    @property
    def enabled(self) -> bool:
        return self.max_width > 0 or self.max_height > 0


@dataclass(slots=True)
class ResourceLimits:
    """单次转码允许消耗的资源上限。"""

    max_input_bytes: int = 5 * MB
    memory: int = 64 * MB
    map: int = 128 * MB
    disk: int = 256 * MB
    time_seconds: float = 30.0
    threads: int = 1


@dataclass(slots=True)
class BackupConfig:
    """原图备份配置。"""

    enabled: bool = False
    backup_dir: Optional[Path] = None
    retention_days: int = 30


@dataclass(slots=True)
class RemoteConfig:
    """远程压缩服务配置。"""

    service: RemoteService = "resmushit"
    tinypng_api_key: str = ""
    public_root: Optional[Path] = None
    public_base_url: str = ""
    timeout: float = 30.0


@dataclass(slots=True)
class OptimizerConfig:
    """优化器的配置集合。"""

    media_root: Path
    database: Optional[Path] = None
    quality: QualityConfig = field(default_factory=QualityConfig)
    resize: ResizeConfig = field(default_factory=ResizeConfig)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    backup: BackupConfig = field(default_factory=BackupConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    min_size: int = 10 * KB
    auto_optimize: bool = True
    optimize_variants: bool = True
    exclude_variants: Sequence[str] = field(default_factory=tuple)
    batch_limit: int = 3
    stats_ttl: float = 60.0

    @property
    def database_path(self) -> Path:
        return self.database or self.media_root / ".media-optimizer.sqlite3"

    @property
    def backup_dir(self) -> Path:
        return self.backup.backup_dir or self.media_root / ".mio-backups"

    def validated(self) -> "OptimizerConfig":
        """校验并就地修正配置，数值越界时截断到合法范围。"""

        if not str(self.media_root):
            raise InvalidConfigurationError("media_root 不能为空")
        self.media_root = Path(self.media_root).expanduser().resolve()

        if self.remote.service not in REMOTE_SERVICES:
            raise InvalidConfigurationError(f"未知的远程服务: {self.remote.service}")

        q = self.quality
        q.jpeg = _clamp("quality.jpeg", q.jpeg, 1, 100)
        q.png = _clamp("quality.png", q.png, 1, 100)
        q.webp = _clamp("quality.webp", q.webp, 1, 100)
        q.compression_level = _clamp("quality.compression_level", q.compression_level, 1, 100)

        self.resize.max_width = _clamp("resize.max_width", self.resize.max_width, 0, 10000)
        self.resize.max_height = _clamp("resize.max_height", self.resize.max_height, 0, 10000)
        self.backup.retention_days = _clamp("backup.retention_days", self.backup.retention_days, 1, 365)
        self.batch_limit = _clamp("batch_limit", self.batch_limit, 1, 500)

        if self.limits.time_seconds <= 0:
            raise InvalidConfigurationError("limits.time_seconds 必须大于 0")
        return self


def _clamp(name: str, value: int, low: int, high: int) -> int:
    try:
        number = abs(int(value))
    except (TypeError, ValueError) as exc:
        raise InvalidConfigurationError(f"{name} 必须为整数: {value!r}") from exc

    if number < low:
        LOGGER.warning("配置 %s=%s 低于下限，使用 %s", name, value, low)
        return low
    if number > high:
        LOGGER.warning("配置 %s=%s 超出上限，使用 %s", name, value, high)
        return high
    return number
