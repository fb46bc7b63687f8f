from __future__ import annotations

import pytest

from photo_ingest.admin import QueueAdmin
from photo_ingest.config import QueueConfig
from photo_ingest.errors import InvalidPayloadError
from photo_ingest.models import TaskPayload, TaskStatus
from photo_ingest.task_queue import ALL_FAILED, QueueStore


def _fail(queue: QueueStore, payload: TaskPayload) -> int:
    task_id = queue.enqueue(payload, priority=4, max_attempts=1)
    claimed = queue.claim_next()
    assert claimed is not None and claimed.id == task_id
    queue.fail_or_retry(task_id, RuntimeError("boom"))
    return task_id


def test_enqueue_uses_configured_defaults(queue: QueueStore) -> None:
    admin = QueueAdmin(queue, config=QueueConfig(default_priority=6, default_max_attempts=2))

    task_id = admin.enqueue({"kind": "photo", "storageKey": "photos/a.jpg"})

    task = queue.get(task_id)
    assert (task.priority, task.max_attempts, task.status) == (6, 2, TaskStatus.PENDING)
    assert admin.enqueue(TaskPayload.photo("photos/b.jpg"), priority=0, max_attempts=5) == task_id + 1


def test_enqueue_rejects_bad_payload(queue: QueueStore) -> None:
    admin = QueueAdmin(queue)
    with pytest.raises(InvalidPayloadError):
        admin.enqueue({"kind": "audio", "storage_key": "a.mp3"})
    with pytest.raises(InvalidPayloadError):
        admin.enqueue({"kind": "photo", "storage_key": "   "})
    with pytest.raises(InvalidPayloadError):
        admin.enqueue(TaskPayload.photo("a.jpg"), priority=10)


def test_batch_size_limits(queue: QueueStore) -> None:
    admin = QueueAdmin(queue)
    tasks = [{"kind": "photo", "storage_key": f"photos/{index}.jpg"} for index in range(1001)]

    with pytest.raises(InvalidPayloadError):
        admin.enqueue_batch([])
    with pytest.raises(InvalidPayloadError):
        admin.enqueue_batch(tasks)
    assert queue.status_counts()["pending"] == 0

    outcome = admin.enqueue_batch(tasks[:1000])
    assert len(outcome["results"]) == 1000
    assert outcome["errors"] == []
    assert queue.status_counts()["pending"] == 1000


def test_batch_reports_invalid_entries_by_index(queue: QueueStore) -> None:
    admin = QueueAdmin(queue)
    outcome = admin.enqueue_batch(
        [
            {"kind": "photo", "storage_key": "photos/ok.jpg", "priority": 1},
            {"kind": "sticker", "storage_key": "photos/what.png"},
            {"kind": "motion-video", "storageKey": "photos/ok.mov", "maxAttempts": 5},
            {"kind": "photo", "storage_key": "photos/bad.jpg", "priority": 42},
            "photos/not-an-object.jpg",
        ],
        default_priority=3,
    )

    assert [entry["index"] for entry in outcome["results"]] == [0, 2]
    assert all(entry["success"] for entry in outcome["results"])
    assert [(entry["index"], entry["storage_key"]) for entry in outcome["errors"]] == [
        (1, "photos/what.png"),
        (3, "photos/bad.jpg"),
        (4, None),
    ]
    assert "priority" in outcome["errors"][1]["error"]

    photo = queue.get(outcome["results"][0]["task_id"])
    video = queue.get(outcome["results"][1]["task_id"])
    assert photo.priority == 1
    assert (video.priority, video.max_attempts) == (3, 5)


def test_list_failed_pagination(queue: QueueStore) -> None:
    admin = QueueAdmin(queue)
    for index in range(25):
        _fail(queue, TaskPayload.photo(f"photos/{index}.jpg"))
    queue.enqueue(TaskPayload.photo("photos/pending.jpg"))

    first = admin.list_failed(page=1, page_size=20)
    second = admin.list_failed(page=2, page_size=20)

    assert len(first["tasks"]) == 20
    assert first["pagination"] == {
        "page": 1,
        "page_size": 20,
        "total": 25,
        "total_pages": 2,
        "has_next": True,
        "has_prev": False,
    }
    assert len(second["tasks"]) == 5
    assert second["pagination"]["has_next"] is False
    assert second["pagination"]["has_prev"] is True
    assert first["tasks"][0]["error_message"] == "RuntimeError: boom"


def test_list_failed_on_empty_queue(queue: QueueStore) -> None:
    page = QueueAdmin(queue).list_failed()

    assert page["tasks"] == []
    assert page["pagination"]["total_pages"] == 0
    assert page["pagination"]["has_next"] is False


def test_retry_and_delete_batches(queue: QueueStore) -> None:
    admin = QueueAdmin(queue)
    failed = [_fail(queue, TaskPayload.photo(f"photos/{index}.jpg")) for index in range(4)]
    pending = queue.enqueue(TaskPayload.photo("photos/still-pending.jpg"))

    assert admin.retry_failed_batch([failed[0], failed[1], pending]) == 2
    retried = queue.get(failed[0])
    assert (retried.status, retried.attempts, retried.priority) == (TaskStatus.PENDING, 0, 0)

    assert admin.delete_failed_batch([failed[2], pending]) == 1
    assert queue.get(failed[2]) is None
    assert queue.get(pending) is not None

    assert admin.retry_failed(failed[3]) == 1
    assert admin.delete_failed(ALL_FAILED) == 0
    assert admin.retry_failed_batch([]) == 0


def test_retry_and_delete_require_an_explicit_selector(queue: QueueStore) -> None:
    admin = QueueAdmin(queue)
    failed = [_fail(queue, TaskPayload.photo(f"photos/{index}.jpg")) for index in range(2)]

    with pytest.raises(TypeError):
        admin.delete_failed()
    with pytest.raises(TypeError):
        admin.retry_failed()

    assert admin.delete_failed(str(failed[0])) == 1
    assert queue.get(failed[0]) is None
    assert queue.get(failed[1]).status is TaskStatus.FAILED


def test_pool_stats_without_pool(queue: QueueStore) -> None:
    admin = QueueAdmin(queue)
    _fail(queue, TaskPayload.photo("photos/x.jpg"))
    queue.enqueue(TaskPayload.motion_video("photos/x.mov"))

    stats = admin.get_pool_stats()

    assert stats["status_counts"] == {"pending": 1, "in-progress": 0, "completed": 0, "failed": 1}
    assert stats["total"] == 2
    assert stats["average_attempts"] == pytest.approx(0.5)
    assert stats["workers"] == []
    assert stats["throughput"]["per_minute"] == 0.0
