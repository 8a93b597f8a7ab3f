"""优化后端的探测与选择。

优先级固定：Pillow（高质量） > OpenCV（基础） > 远程 API。远程 API 在选择层
总是视为可用，真正的可用性由 provider 的 ``is_configured`` 在调用时判断。
"""

from __future__ import annotations

import importlib.util
import logging
from typing import Callable, Optional

from media_optimizer.core.models import BackendKind

LOGGER = logging.getLogger(__name__)

Probe = Callable[[], bool]

_LABELS = {
    BackendKind.PILLOW: "Pillow",
    BackendKind.OPENCV: "OpenCV",
    BackendKind.REMOTE: "远程 API",
}


def pillow_available() -> bool:
    return importlib.util.find_spec("PIL") is not None


def opencv_available() -> bool:
    return importlib.util.find_spec("cv2") is not None


def choose_backend(has_pillow: bool, has_opencv: bool) -> BackendKind:
    """根据能力标志返回最高优先级的后端。"""

    if has_pillow:
        return BackendKind.PILLOW
    if has_opencv:
        return BackendKind.OPENCV
    return BackendKind.REMOTE


class BackendSelector:
    """探测运行环境并缓存后端选择结果。"""

    def __init__(self, pillow_probe: Probe = pillow_available, opencv_probe: Probe = opencv_available) -> None:
        self._pillow_probe = pillow_probe
        self._opencv_probe = opencv_probe
        self._selected: Optional[BackendKind] = None
        self._available: Optional[dict[BackendKind, bool]] = None

    def available(self) -> dict[BackendKind, bool]:
        if self._available is None:
            self._available = {
                BackendKind.PILLOW: bool(self._pillow_probe()),
                BackendKind.OPENCV: bool(self._opencv_probe()),
                BackendKind.REMOTE: True,
            }
        return self._available

    def select_backend(self) -> BackendKind:
        """返回首选后端；首次调用时记录一次选择结果。"""

        if self._selected is None:
            caps = self.available()
            self._selected = choose_backend(caps[BackendKind.PILLOW], caps[BackendKind.OPENCV])
            LOGGER.info("优化后端确定为：%s", _LABELS[self._selected])
        return self._selected

    def fallback_chain(self) -> list[BackendKind]:
        """首选后端及其后所有可用后端，按优先级排列，远程 API 始终在末尾。"""

        caps = self.available()
        preferred = self.select_backend()
        order = list(BackendKind)
        start = order.index(preferred)
        return [kind for kind in order[start:] if caps[kind]]
