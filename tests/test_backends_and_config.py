"""后端选择与配置校验。"""

from __future__ import annotations

from pathlib import Path

import pytest

from media_optimizer.core.config import BackupConfig, OptimizerConfig, QualityConfig, RemoteConfig
from media_optimizer.core.exceptions import InvalidConfigurationError
from media_optimizer.core.models import BackendKind
from media_optimizer.processing.backends import BackendSelector, choose_backend


@pytest.mark.parametrize(
    ("has_pillow", "has_opencv", "expected"),
    [
        (True, True, BackendKind.PILLOW),
        (True, False, BackendKind.PILLOW),
        (False, True, BackendKind.OPENCV),
        (False, False, BackendKind.REMOTE),
    ],
)
def test_choose_backend_priority(has_pillow: bool, has_opencv: bool, expected: BackendKind) -> None:
    assert choose_backend(has_pillow, has_opencv) is expected


def test_selector_probes_once() -> None:
    calls = {"pillow": 0, "opencv": 0}

    def pillow_probe() -> bool:
        calls["pillow"] += 1
        return False

    def opencv_probe() -> bool:
        calls["opencv"] += 1
        return True

    selector = BackendSelector(pillow_probe, opencv_probe)
    for _ in range(3):
        assert selector.select_backend() is BackendKind.OPENCV

    assert calls == {"pillow": 1, "opencv": 1}


def test_fallback_chain_ends_with_remote() -> None:
    assert BackendSelector(lambda: True, lambda: True).fallback_chain() == [
        BackendKind.PILLOW,
        BackendKind.OPENCV,
        BackendKind.REMOTE,
    ]
    assert BackendSelector(lambda: True, lambda: False).fallback_chain() == [BackendKind.PILLOW, BackendKind.REMOTE]
    assert BackendSelector(lambda: False, lambda: False).fallback_chain() == [BackendKind.REMOTE]


def test_config_clamps_out_of_range_values(tmp_path: Path) -> None:
    config = OptimizerConfig(
        media_root=tmp_path,
        quality=QualityConfig(jpeg=150, png=0),
        backup=BackupConfig(retention_days=1000),
        batch_limit=0,
    ).validated()

    assert config.quality.jpeg == 100
    assert config.quality.png == 1
    assert config.backup.retention_days == 365
    assert config.batch_limit == 1
    assert config.database_path == tmp_path.resolve() / ".media-optimizer.sqlite3"
    assert config.backup_dir == tmp_path.resolve() / ".mio-backups"


def test_config_rejects_unknown_service(tmp_path: Path) -> None:
    with pytest.raises(InvalidConfigurationError):
        OptimizerConfig(media_root=tmp_path, remote=RemoteConfig(service="imagify")).validated()


def test_quality_for_format() -> None:
    quality = QualityConfig(jpeg=70, png=95, webp=60, compression_level=50)
    assert quality.for_format("jpeg") == 70
    assert quality.for_format("png") == 95
    assert quality.for_format("webp") == 60
    assert quality.for_format("gif") == 50
