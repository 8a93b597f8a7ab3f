"""命令行入口的端到端冒烟测试。"""

from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from media_optimizer.cli.main import app
from imaging import write_jpeg

runner = CliRunner()


def invoke(root: Path, *args: str):
    return runner.invoke(app, ["--media-root", str(root), *args])


def test_scan_bulk_and_stats(tmp_path: Path) -> None:
    for index in range(4):
        write_jpeg(tmp_path / f"photo-{index}.jpg", quality=98, seed=index)

    scanned = invoke(tmp_path, "scan")
    assert scanned.exit_code == 0, scanned.output
    assert "已登记 4 个条目" in scanned.output

    bulk = invoke(tmp_path, "bulk", "--limit", "3", "--delay", "0")
    assert bulk.exit_code == 0, bulk.output
    assert "成功 4 个" in bulk.output

    stats = invoke(tmp_path, "stats")
    assert stats.exit_code == 0, stats.output
    assert "已优化" in stats.output


def test_optimize_unknown_item_exits_with_error(tmp_path: Path) -> None:
    result = invoke(tmp_path, "optimize", "42")

    assert result.exit_code == 1


def test_invalid_service_is_rejected(tmp_path: Path) -> None:
    result = invoke(tmp_path, "--service", "imagify", "backend")

    assert result.exit_code == 2


def test_restore_without_backup_fails(tmp_path: Path) -> None:
    write_jpeg(tmp_path / "photo.jpg")
    invoke(tmp_path, "scan")

    result = invoke(tmp_path, "restore", "1")

    assert result.exit_code == 1
