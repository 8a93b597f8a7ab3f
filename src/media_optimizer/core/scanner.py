"""媒体目录扫描：发现图片并登记为可优化条目。"""

from __future__ import annotations

import logging
import re
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterator, Optional, Sequence

from media_optimizer.core.models import OptimizableItem
from media_optimizer.core.store import Store
from media_optimizer.processing.inspector import MIME_TYPES, detect_format, file_size

LOGGER = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}

# 缩略图命名约定：photo-150x150.jpg 属于 photo.jpg
VARIANT_RE = re.compile(r"^(?P<stem>.+)-(?P<size>\d+x\d+)$")


def _iter_candidate_files(root: Path, recursive: bool) -> Iterator[Path]:
    """遍历目录下的文件，跳过隐藏文件与隐藏目录（含备份目录）。"""

    if root.is_file():
        yield root
        return
    if not root.is_dir():
        return

    iterator = root.rglob("*") if recursive else root.glob("*")
    for candidate in iterator:
        relative_parts = candidate.relative_to(root).parts
        if any(part.startswith(".") for part in relative_parts):
            continue
        if candidate.is_file():
            yield candidate


def _matches_any(name: str, patterns: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch(lowered, pattern.lower()) for pattern in patterns)


def group_variants(paths: Sequence[Path]) -> dict[Path, dict[str, Path]]:
    """将缩略图归并到主图下，返回 {主图: {尺寸名: 缩略图路径}}。"""

    by_key = {(p.parent, p.stem, p.suffix.lower()): p for p in paths}
    groups: dict[Path, dict[str, Path]] = {}
    variant_paths: set[Path] = set()

    for path in paths:
        match = VARIANT_RE.match(path.stem)
        if not match:
            continue
        parent = by_key.get((path.parent, match.group("stem"), path.suffix.lower()))
        if parent is None:
            continue
        groups.setdefault(parent, {})[match.group("size")] = path
        variant_paths.add(path)

    for path in paths:
        if path not in variant_paths:
            groups.setdefault(path, {})
    return groups


def collect_images(
    root: Path,
    recursive: bool = True,
    exclude_patterns: Sequence[str] = (),
) -> dict[Path, dict[str, Path]]:
    """扫描 ``root``，按内容过滤出图片并归并缩略图。"""

    resolved_root = root.resolve()
    candidates: list[Path] = []
    for candidate in _iter_candidate_files(resolved_root, recursive):
        if candidate.suffix.lower() not in IMAGE_EXTENSIONS:
            continue
        if exclude_patterns and _matches_any(candidate.name, exclude_patterns):
            continue
        if detect_format(candidate) is None:
            LOGGER.debug("扩展名匹配但内容不是图片，忽略：%s", candidate)
            continue
        candidates.append(candidate)

    candidates.sort(key=lambda x: str(x).lower())
    return group_variants(candidates)


def register_images(
    store: Store,
    root: Path,
    recursive: bool = True,
    exclude_patterns: Sequence[str] = (),
) -> list[OptimizableItem]:
    """扫描并登记图片，返回登记（或更新）的条目列表。"""

    LOGGER.info("开始扫描媒体目录：%s", root)
    groups = collect_images(root, recursive, exclude_patterns)
    items = [register_file(store, path, variants) for path, variants in groups.items()]
    LOGGER.info("登记了 %d 个条目", len(items))
    return items


def register_file(store: Store, path: Path, variants: Optional[dict[str, Path]] = None) -> OptimizableItem:
    image_format = detect_format(path)
    return store.add_item(
        path.resolve(),
        mime=MIME_TYPES.get(image_format) if image_format else None,
        size=file_size(path),
        variants=variants or {},
    )
