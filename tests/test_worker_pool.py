from __future__ import annotations

import json
import time

import pytest

from photo_ingest.catalog import SqlCatalog
from photo_ingest.config import WorkerConfig
from photo_ingest.models import TaskPayload, TaskStatus
from photo_ingest.pipeline import MediaPipeline
from photo_ingest.worker_pool import WorkerPool

from conftest import FakeExtractor

MOV_HEADER = b"\x00\x00\x00\x14ftypqt  \x00\x00\x00\x00qt  " + b"\x00" * 64


class _SlowExtractor(FakeExtractor):
    def __init__(self, delay: float) -> None:
        super().__init__({"Make": "Apple"})
        self.delay = delay

    def extract(self, path):
        time.sleep(self.delay)
        return super().extract(path)


def _pool(queue, store, db_url, settings, retry, extractor=None, **config) -> WorkerPool:
    extractor = extractor or FakeExtractor({"Make": "Nikon"})
    pipeline = MediaPipeline(store, extractor=extractor, settings=settings, retry=retry)
    cfg = WorkerConfig(
        count=config.pop("count", 1),
        interval_seconds=config.pop("interval_seconds", 0.01),
        pairing_wait_interval_seconds=config.pop("pairing_wait_interval_seconds", 0.0),
        stats_report_interval_seconds=0,
        rebalance_interval_seconds=0,
        **config,
    )
    return WorkerPool(queue, pipeline, SqlCatalog(db_url), config=cfg)


def test_photo_task_completes_and_is_catalogued(queue, store, db_url, fast_settings, no_sleep_retry, make_image) -> None:
    store.put("photos/beach/sunny.jpg", make_image(800, 600))
    task_id = queue.enqueue(TaskPayload.photo("photos/beach/sunny.jpg"))
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry)

    assert pool.drain() == 1

    task = queue.get(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.stage == "persist"
    row = SqlCatalog(db_url).get("sunny")
    assert row is not None
    assert (row.width, row.height) == (800, 600)
    assert json.loads(row.tags_json) == ["beach"]
    assert json.loads(row.exif_json)["Make"] == "Nikon"
    assert row.thumbnail_key == "thumbnails/sunny.webp"


def test_missing_object_fails_without_consuming_attempts(queue, store, db_url, fast_settings, no_sleep_retry) -> None:
    task_id = queue.enqueue(TaskPayload.photo("photos/ghost.jpg"), max_attempts=3)
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry)

    pool.drain()

    task = queue.get(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.attempts == 1
    assert "NotFoundError" in task.error_message
    assert task.stage == "acquire"


def test_oversized_image_fails_without_retries(
    queue, store, db_url, fast_settings, no_sleep_retry, make_image, monkeypatch
) -> None:
    from PIL import Image

    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    store.put("photos/huge.jpg", make_image(100, 100))
    task_id = queue.enqueue(TaskPayload.photo("photos/huge.jpg"), max_attempts=3)
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry)

    pool.drain()

    task = queue.get(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.attempts == 1
    assert task.stage == "geometry"


def test_unexpected_errors_are_retried_then_failed(queue, store, db_url, fast_settings, no_sleep_retry) -> None:
    task_id = queue.enqueue(TaskPayload.photo("photos/a.jpg"), max_attempts=2)
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry)

    def explode(*_args, **_kwargs):
        raise RuntimeError("pipeline bug")

    pool._pipeline.run = explode  # type: ignore[method-assign]

    assert pool.tick() is True
    assert queue.get(task_id).status is TaskStatus.PENDING
    assert pool.tick() is True
    task = queue.get(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.attempts == 2
    assert task.error_message == "RuntimeError: pipeline bug"
    assert pool.tick() is False

    workers = pool.get_pool_stats().workers
    assert workers[0]["failed"] == 2
    assert workers[0]["state"] == "idle"


def test_motion_video_updates_existing_still(queue, store, db_url, fast_settings, no_sleep_retry, make_image) -> None:
    store.put("photos/IMG_7.jpg", make_image(400, 300))
    store.put("photos/IMG_7.mov", MOV_HEADER)
    video_id = queue.enqueue(TaskPayload.motion_video("photos/IMG_7.mov"), priority=5)
    queue.enqueue(TaskPayload.photo("photos/IMG_7.jpg"), priority=0)
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry)

    assert pool.drain() == 2

    assert queue.get(video_id).status is TaskStatus.COMPLETED
    row = SqlCatalog(db_url).get("IMG_7")
    assert row.is_live_photo is True
    assert row.live_photo_video_key == "photos/IMG_7.mov"


def test_motion_video_completes_before_still_is_catalogued(
    queue, store, db_url, fast_settings, no_sleep_retry, make_image
) -> None:
    store.put("photos/IMG_8.jpg", make_image(40, 30))
    store.put("photos/IMG_8.mov", MOV_HEADER)
    video_id = queue.enqueue(TaskPayload.motion_video("photos/IMG_8.mov"))
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry, pairing_wait_attempts=2)

    assert pool.tick() is True

    task = queue.get(video_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.attempts == 0
    assert SqlCatalog(db_url).get("IMG_8") is None

    queue.enqueue(TaskPayload.photo("photos/IMG_8.jpg"))
    assert pool.drain() == 1
    row = SqlCatalog(db_url).get("IMG_8")
    assert row.is_live_photo is True
    assert row.live_photo_video_key == "photos/IMG_8.mov"


def test_video_claimed_while_still_is_processing_does_not_fail(
    queue, store, db_url, fast_settings, no_sleep_retry, make_image
) -> None:
    store.put("photos/IMG_1.jpg", make_image(200, 150))
    store.put("photos/IMG_1.mov", MOV_HEADER)
    photo_id = queue.enqueue(TaskPayload.photo("photos/IMG_1.jpg"))
    video_id = queue.enqueue(TaskPayload.motion_video("photos/IMG_1.mov"))
    pool = _pool(
        queue,
        store,
        db_url,
        fast_settings,
        no_sleep_retry,
        extractor=_SlowExtractor(0.4),
        count=2,
        pairing_wait_interval_seconds=0.05,
    )

    pool.start()
    deadline = time.monotonic() + 30
    while queue.status_counts()["completed"] < 2 and time.monotonic() < deadline:
        time.sleep(0.05)
    pool.stop(wait=True, timeout=10)

    assert queue.get(photo_id).status is TaskStatus.COMPLETED
    video = queue.get(video_id)
    assert video.status is TaskStatus.COMPLETED
    assert video.error_message is None
    assert queue.status_counts()["failed"] == 0
    row = SqlCatalog(db_url).get("IMG_1")
    assert row.is_live_photo is True
    assert row.live_photo_video_key == "photos/IMG_1.mov"


def test_worker_state_is_cleared_when_recording_a_failure_raises(
    queue, store, db_url, fast_settings, no_sleep_retry, monkeypatch
) -> None:
    queue.enqueue(TaskPayload.photo("photos/ghost.jpg"))
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry)

    def locked(*_args, **_kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(queue, "fail_or_retry", locked)

    with pytest.raises(RuntimeError):
        pool.tick()

    worker = pool.get_pool_stats().workers[0]
    assert worker["current_task_id"] is None
    assert worker["state"] == "idle"
    assert worker["failed"] == 1


def test_throughput_counts_completions_in_window(queue, store, db_url, fast_settings, no_sleep_retry, make_image) -> None:
    for name in ("one", "two"):
        store.put(f"photos/{name}.jpg", make_image(50, 50))
        queue.enqueue(TaskPayload.photo(f"photos/{name}.jpg"))
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry, throughput_window_seconds=600)

    pool.drain()
    stats = pool.get_pool_stats()

    assert stats.status_counts["completed"] == 2
    assert stats.throughput_per_minute == pytest.approx(0.2)
    assert stats.workers[0]["processed"] == 2
    assert stats.workers[0]["last_active"] is not None
    assert stats.to_dict()["total"] == 2


def test_rebalance_moves_slow_and_erratic_workers(queue, store, db_url, fast_settings, no_sleep_retry) -> None:
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry, count=4)
    workers = pool._workers
    workers[0].recent.extend([(1.0, True)] * 5)
    workers[1].recent.extend([(1.2, True)] * 5)
    workers[2].recent.extend([(9.0, True)] * 5)
    workers[3].recent.extend([(1.0, False)] * 4 + [(1.0, True)])

    bands = pool.rebalance()

    assert bands == {0: None, 1: None, 2: (3, 9), 3: (3, 9)}

    workers[2].recent.clear()
    workers[2].recent.extend([(1.1, True)] * 5)
    assert pool.rebalance()[2] is None


def test_rebalance_is_inert_when_disabled(queue, store, db_url, fast_settings, no_sleep_retry) -> None:
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry, count=2, enable_load_balancing=False)
    pool._workers[1].recent.extend([(50.0, False)] * 5)

    assert pool.rebalance() == {0: None, 1: None}


def test_threads_process_queue_and_stop_cleanly(queue, store, db_url, fast_settings, no_sleep_retry, make_image) -> None:
    for index in range(4):
        store.put(f"photos/t{index}.jpg", make_image(60, 40))
        queue.enqueue(TaskPayload.photo(f"photos/t{index}.jpg"))
    orphan = queue.claim_next()
    pool = _pool(queue, store, db_url, fast_settings, no_sleep_retry, count=2)

    pool.start()
    deadline = time.monotonic() + 30
    while queue.status_counts()["completed"] < 4 and time.monotonic() < deadline:
        time.sleep(0.05)
    pool.stop(wait=True, timeout=10)

    assert queue.status_counts()["completed"] == 4
    assert queue.get(orphan.id).status is TaskStatus.COMPLETED
    assert not pool.running
    assert {worker["state"] for worker in pool.get_pool_stats().workers} == {"stopped"}
