"""测试共用的对象装配。"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

from media_optimizer.core.config import OptimizerConfig
from media_optimizer.core.store import Store
from media_optimizer.processing.backends import BackendSelector
from media_optimizer.processing.backup import BackupStore
from media_optimizer.processing.engine import OptimizationEngine
from media_optimizer.processing.remote import RemoteProvider


class RecordingRemote(RemoteProvider):
    """记录调用的远程服务替身，不发起任何网络请求。"""

    name = "fake"

    def __init__(self, succeed: bool = False) -> None:
        super().__init__()
        self.succeed = succeed
        self.calls: list[Path] = []

    def service_name(self) -> str:
        return "Fake"

    def is_configured(self) -> bool:
        return True

    def _fetch_optimized(self, client, path, quality):
        raise NotImplementedError

    def optimize(self, path: Path, quality: Optional[int] = None) -> bool:
        self.calls.append(path)
        return self.succeed


@pytest.fixture
def store() -> Iterator[Store]:
    db = Store(":memory:")
    yield db
    db.close()


@pytest.fixture
def config(tmp_path: Path) -> OptimizerConfig:
    return OptimizerConfig(media_root=tmp_path).validated()


@pytest.fixture
def fake_remote() -> RecordingRemote:
    return RecordingRemote()


@pytest.fixture
def make_engine(
    config: OptimizerConfig, store: Store, fake_remote: RecordingRemote
) -> Callable[..., OptimizationEngine]:
    def factory(
        pillow: bool = True,
        opencv: bool = False,
        remote: Optional[RemoteProvider] = None,
        engine_config: Optional[OptimizerConfig] = None,
    ) -> OptimizationEngine:
        cfg = engine_config or config
        selector = BackendSelector(lambda: pillow, lambda: opencv)
        backups = BackupStore(store, cfg.backup, cfg.media_root, cfg.backup_dir)
        return OptimizationEngine(cfg, store, selector, backups, remote=remote or fake_remote)

    return factory
