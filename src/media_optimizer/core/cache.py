"""带过期时间的简单缓存，用于聚合统计。"""

from __future__ import annotations

import threading
import time
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class TTLCache(Generic[T]):
    """缓存单个计算结果 ``ttl`` 秒，过期或失效后重新计算。"""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._value: Optional[T] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get(self, compute: Callable[[], T], *, fresh: bool = False) -> T:
        with self._lock:
            now = self._clock()
            if fresh or self._value is None or now >= self._expires_at:
                self._value = compute()
                self._expires_at = now + self.ttl
            return self._value

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._expires_at = 0.0
