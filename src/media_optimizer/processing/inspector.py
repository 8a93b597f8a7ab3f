"""图片探测：按内容识别格式、读取尺寸、判断是否值得优化。"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from media_optimizer.core.exceptions import IntegrityError

LOGGER = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("jpeg", "png", "gif", "webp")

MIME_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}

_SNIFF_BYTES = 16


def sniff_format(header: bytes) -> Optional[str]:
    """根据文件头魔数识别格式，无法识别时返回 None。"""

    if header.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    if header.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if header[:6] in (b"GIF87a", b"GIF89a"):
        return "gif"
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return "webp"
    return None


def detect_format(path: Path) -> Optional[str]:
    """读取文件头判断真实格式（不依赖扩展名）。"""

    try:
        with path.open("rb") as handle:
            header = handle.read(_SNIFF_BYTES)
    except OSError as exc:
        LOGGER.debug("无法读取文件头 %s: %s", path, exc)
        return None
    return sniff_format(header)


def mime_type(path: Path) -> Optional[str]:
    image_format = detect_format(path)
    return MIME_TYPES.get(image_format) if image_format else None


def get_dimensions(path: Path) -> Optional[Tuple[int, int]]:
    """返回图片宽高，读取失败时返回 None。"""

    try:
        with Image.open(path) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as exc:
        LOGGER.debug("无法读取图片尺寸 %s: %s", path, exc)
        return None


def file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def is_supported(path: Path) -> bool:
    return detect_format(path) in SUPPORTED_FORMATS


def needs_optimization(path: Path, min_size: int = 10 * 1024) -> bool:
    """文件存在、格式受支持且大于 ``min_size`` 时才值得优化。"""

    if not path.is_file():
        return False
    if not is_supported(path):
        return False
    return file_size(path) > min_size


def calculate_resize_dimensions(width: int, height: int, max_width: int = 0, max_height: int = 0) -> Tuple[int, int]:
    """在保持宽高比的前提下，计算不超过上限的目标尺寸。"""

    if max_width <= 0 and max_height <= 0:
        return width, height

    ratio = min(
        max_width / width if max_width > 0 else float("inf"),
        max_height / height if max_height > 0 else float("inf"),
    )
    if ratio >= 1:
        return width, height
    return max(1, int(round(width * ratio))), max(1, int(round(height * ratio)))


def verify_image_bytes(data: bytes, expected_format: Optional[str] = None) -> str:
    """校验即将写回磁盘的字节是完整图片，返回识别出的格式。"""

    detected = sniff_format(data[:_SNIFF_BYTES])
    if detected is None:
        raise IntegrityError("输出内容不是可识别的图片")
    if expected_format and detected != expected_format:
        raise IntegrityError(f"输出格式 {detected} 与原格式 {expected_format} 不一致")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise IntegrityError(f"输出图片已损坏: {exc}") from exc
    return detected
