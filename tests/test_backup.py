"""原图备份：创建、还原与按时间清理。"""

from __future__ import annotations

import os
import time
from datetime import timedelta
from pathlib import Path

from media_optimizer.core.cache import TTLCache
from media_optimizer.core.config import BackupConfig
from media_optimizer.core.store import Store
from media_optimizer.processing.backup import BackupStore
from imaging import write_jpeg


def make_backups(store: Store, root: Path, enabled: bool = True) -> BackupStore:
    return BackupStore(store, BackupConfig(enabled=enabled), root, root / ".mio-backups")


def test_backup_disabled_returns_none(tmp_path: Path, store: Store) -> None:
    item = store.add_item(write_jpeg(tmp_path / "photo.jpg"))

    assert make_backups(store, tmp_path, enabled=False).backup(item) is None
    assert not (tmp_path / ".mio-backups").exists()


def test_backup_mirrors_relative_path(tmp_path: Path, store: Store) -> None:
    item = store.add_item(write_jpeg(tmp_path / "2024" / "05" / "photo.jpg"))
    backups = make_backups(store, tmp_path)

    destination = backups.backup(item)

    assert destination == tmp_path / ".mio-backups" / "2024" / "05" / "photo.jpg"
    assert destination.read_bytes() == item.path.read_bytes()
    assert store.get_backup(item.item_id).backup_path == destination


def test_backup_outside_media_root(tmp_path: Path, store: Store) -> None:
    root = tmp_path / "media"
    root.mkdir()
    item = store.add_item(write_jpeg(tmp_path / "elsewhere" / "photo.jpg"))

    destination = make_backups(store, root).backup(item)

    assert destination == root / ".mio-backups" / "_external" / str(item.item_id) / "photo.jpg"


def test_existing_backup_is_not_overwritten(tmp_path: Path, store: Store) -> None:
    path = write_jpeg(tmp_path / "photo.jpg")
    original = path.read_bytes()
    item = store.add_item(path)
    backups = make_backups(store, tmp_path)

    backups.backup(item)
    write_jpeg(path, seed=7)
    destination = backups.backup(item)

    assert destination.read_bytes() == original


def test_restore_round_trip(tmp_path: Path, store: Store, make_engine) -> None:
    path = write_jpeg(tmp_path / "photo.jpg", quality=98)
    original = path.read_bytes()
    item = store.add_item(path)
    cache: TTLCache[int] = TTLCache(60)
    cache.get(lambda: 1)
    backups = BackupStore(store, BackupConfig(enabled=True), tmp_path, tmp_path / ".mio-backups", stats_cache=cache)
    engine = make_engine()
    engine.backups = backups

    record = engine.process(item)
    assert record.optimized
    assert path.read_bytes() != original

    assert backups.restore(item)
    assert path.read_bytes() == original
    assert store.get_record(item.item_id) is None
    assert cache.get(lambda: 2) == 2

    # 备份在还原后仍然保留，可以多次还原
    assert backups.restore(item)
    assert path.read_bytes() == original


def test_restore_without_backup(tmp_path: Path, store: Store) -> None:
    item = store.add_item(write_jpeg(tmp_path / "photo.jpg"))

    assert not make_backups(store, tmp_path).restore(item)


def test_cleanup_removes_old_backups(tmp_path: Path, store: Store) -> None:
    backups = make_backups(store, tmp_path)
    old_item = store.add_item(write_jpeg(tmp_path / "old" / "a.jpg"))
    new_item = store.add_item(write_jpeg(tmp_path / "new" / "b.jpg", seed=1))
    old_backup = backups.backup(old_item)
    new_backup = backups.backup(new_item)

    ten_days_ago = time.time() - timedelta(days=10).total_seconds()
    os.utime(old_backup, (ten_days_ago, ten_days_ago))

    assert backups.cleanup_older_than(timedelta(days=5)) == 1
    assert not old_backup.exists()
    assert not old_backup.parent.exists()
    assert new_backup.exists()
    assert store.get_backup(old_item.item_id) is None
    assert store.get_backup(new_item.item_id) is not None


def test_backup_stats(tmp_path: Path, store: Store) -> None:
    backups = make_backups(store, tmp_path)
    assert backups.stats().total_files == 0

    item = store.add_item(write_jpeg(tmp_path / "photo.jpg"))
    destination = backups.backup(item)
    stats = backups.stats()

    assert stats.total_files == 1
    assert stats.total_size == destination.stat().st_size
    assert stats.oldest_backup == stats.newest_backup
