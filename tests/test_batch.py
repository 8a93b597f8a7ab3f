"""批量优化：分页、续跑、暂停与计数。"""

from __future__ import annotations

import math
from pathlib import Path

import pytest

from media_optimizer.core.models import BatchState, OptimizableItem, OptimizationRecord, RecordStatus
from media_optimizer.core.progress import BulkProgress, ProgressUpdate
from media_optimizer.core.store import Store
from media_optimizer.processing.batch import BatchCoordinator
from imaging import write_jpeg


class StubEngine:
    """把每个条目都记为成功，并记录处理顺序。"""

    def __init__(self, store: Store, fail_ids: tuple[int, ...] = ()) -> None:
        self.store = store
        self.fail_ids = fail_ids
        self.seen: list[int] = []

    def process(self, item: OptimizableItem) -> OptimizationRecord:
        self.seen.append(item.item_id)
        if item.item_id in self.fail_ids:
            raise RuntimeError("解码器崩溃")
        record = OptimizationRecord(
            item_id=item.item_id,
            status=RecordStatus.SUCCESS,
            method="pillow",
            original_size=1000,
            optimized_size=600,
        )
        self.store.save_record(record)
        return record


def add_items(store: Store, tmp_path: Path, count: int) -> list[OptimizableItem]:
    return [store.add_item(tmp_path / f"img-{index}.jpg") for index in range(count)]


@pytest.mark.parametrize(("total", "limit"), [(7, 3), (6, 3), (1, 3), (10, 1)])
def test_pagination_visits_each_item_once(tmp_path: Path, store: Store, total: int, limit: int) -> None:
    items = add_items(store, tmp_path, total)
    engine = StubEngine(store)
    coordinator = BatchCoordinator(store, engine)
    coordinator.start(limit)

    calls = 0
    offset = 0
    while True:
        result = coordinator.run_batch(offset, limit)
        calls += 1
        offset = result.next_offset
        if not result.has_more:
            break

    assert sorted(engine.seen) == [item.item_id for item in items]
    assert len(engine.seen) == total
    assert calls == math.ceil(total / limit)
    assert coordinator.cursor.state is BatchState.COMPLETED


def test_new_run_excludes_already_optimized(tmp_path: Path, store: Store) -> None:
    add_items(store, tmp_path, 4)
    engine = StubEngine(store)
    coordinator = BatchCoordinator(store, engine)

    coordinator.start(2)
    coordinator.run_batch(limit=2)

    coordinator.start(2, force=True)
    result = coordinator.run_batch(limit=2)

    assert engine.seen == [1, 2, 3, 4]
    assert result.next_offset == 2
    assert not result.has_more


def test_three_items_single_batch(tmp_path: Path, store: Store, make_engine) -> None:
    for index in range(3):
        store.add_item(write_jpeg(tmp_path / f"photo-{index}.jpg", quality=98, seed=index))
    coordinator = BatchCoordinator(store, make_engine())

    result = coordinator.run_batch(offset=0, limit=3)

    assert result.processed_count == 3
    assert result.succeeded_count == 3
    assert result.next_offset == 3
    assert not result.has_more
    assert result.total_savings == sum(record.total_savings for record in result.records)
    assert [entry.type for entry in result.log] == ["success"] * 3


def test_failures_and_skips_do_not_abort_batch(tmp_path: Path, store: Store, make_engine) -> None:
    store.add_item(tmp_path / "missing.jpg")
    store.add_item(write_jpeg(tmp_path / "photo.jpg", quality=98))
    coordinator = BatchCoordinator(store, make_engine())

    result = coordinator.run_batch(offset=0, limit=5)

    assert result.processed_count == 2
    assert result.skipped_count == 1
    assert result.succeeded_count == 1
    assert [entry.type for entry in result.log] == ["skipped", "success"]


def test_engine_exception_counts_as_failure(tmp_path: Path, store: Store) -> None:
    add_items(store, tmp_path, 3)
    coordinator = BatchCoordinator(store, StubEngine(store, fail_ids=(2,)))

    result = coordinator.run_batch(offset=0, limit=3)

    assert result.failed_count == 1
    assert result.succeeded_count == 2
    assert result.log[1].type == "failed"
    assert "解码器崩溃" in result.log[1].message


def test_pause_and_resume_from_persisted_offset(tmp_path: Path, store: Store) -> None:
    add_items(store, tmp_path, 6)
    engine = StubEngine(store)
    coordinator = BatchCoordinator(store, engine)
    coordinator.start(2)

    first = coordinator.run_batch()
    assert first.should_continue

    coordinator.pause()
    second = coordinator.run_batch()
    assert second.paused
    assert not second.should_continue
    assert coordinator.cursor.state is BatchState.PAUSED

    # 模拟进程重启：新的协调器从持久化游标继续
    restarted = BatchCoordinator(store, engine)
    cursor = restarted.resume()
    assert cursor.offset == 4
    assert not cursor.paused

    third = restarted.run_batch()
    assert not third.has_more
    assert engine.seen == [1, 2, 3, 4, 5, 6]
    assert restarted.cursor.processed == 6
    assert restarted.cursor.savings == 6 * 400


def test_item_optimized_elsewhere_during_run_is_not_reprocessed(tmp_path: Path, store: Store) -> None:
    add_items(store, tmp_path, 4)
    engine = StubEngine(store)
    coordinator = BatchCoordinator(store, engine)
    coordinator.start(2)
    coordinator.run_batch()

    # 两批之间条目 4 已通过单条优化入口完成
    store.save_record(
        OptimizationRecord(item_id=4, status=RecordStatus.SUCCESS, method="pillow", original_size=1000, optimized_size=600)
    )
    result = coordinator.run_batch()

    assert engine.seen == [1, 2, 3]
    assert result.processed_count == 1
    assert result.next_offset == 3
    assert not result.has_more


def test_failed_item_before_offset_keeps_later_items_in_place(tmp_path: Path, store: Store) -> None:
    add_items(store, tmp_path, 4)
    engine = StubEngine(store, fail_ids=(1,))
    coordinator = BatchCoordinator(store, engine)
    coordinator.start(2)
    coordinator.run_batch()

    # 本轮失败过的条目随后在别处优化成功，偏移之后的条目不能被跳过
    store.save_record(OptimizationRecord(item_id=1, status=RecordStatus.SUCCESS, original_size=1000, optimized_size=600))
    result = coordinator.run_batch()

    assert engine.seen == [1, 2, 3, 4]
    assert not result.has_more


def test_duplicate_start_is_ignored_while_running(tmp_path: Path, store: Store) -> None:
    add_items(store, tmp_path, 4)
    coordinator = BatchCoordinator(store, StubEngine(store))
    coordinator.start(2)
    coordinator.run_batch()

    cursor = coordinator.start(2)

    assert cursor.offset == 2
    assert cursor.state is BatchState.RUNNING


def test_run_batch_on_empty_library(store: Store) -> None:
    result = BatchCoordinator(store, StubEngine(store)).run_batch(offset=0, limit=3)

    assert result.processed_count == 0
    assert result.next_offset == 0
    assert not result.has_more


def test_bulk_progress_accumulates_results(tmp_path: Path, store: Store) -> None:
    add_items(store, tmp_path, 5)
    coordinator = BatchCoordinator(store, StubEngine(store))
    updates: list[ProgressUpdate] = []
    tracker = BulkProgress(total=5, callback=updates.append)

    while True:
        result = coordinator.run_batch(limit=2)
        tracker.advance(result)
        if not result.should_continue:
            break

    assert [update.completed for update in updates] == [2, 4, 5]
    assert updates[-1].status == "completed"
    assert updates[-1].savings == 5 * 400
    assert all(len(update.log) == 2 for update in updates[:2])
