from __future__ import annotations

from photo_ingest.dev.enqueue import discover_tasks
from photo_ingest.dev.queue_status import collect_report
from photo_ingest.models import TaskPayload


def test_discover_tasks_orders_stills_before_videos() -> None:
    keys = [
        "photos/a.MOV",
        "photos/a.HEIC",
        "photos/a.jpeg",
        "photos/b.jpeg",
        "photos/c.png",
        "photos/notes.txt",
        "thumbnails/a.webp",
    ]

    entries = discover_tasks(keys)

    assert entries == [
        {"kind": "photo", "storage_key": "photos/a.HEIC"},
        {"kind": "photo", "storage_key": "photos/b.jpeg"},
        {"kind": "photo", "storage_key": "photos/c.png"},
        {"kind": "motion-video", "storage_key": "photos/a.MOV"},
    ]


def test_collect_report(queue) -> None:
    failed_video = queue.enqueue(TaskPayload.motion_video("photos/x.mov"), max_attempts=1)
    queue.claim_next()
    queue.fail_or_retry(failed_video, "NotFoundError: no still")
    queue.enqueue(TaskPayload.photo("photos/y.jpg"))
    stuck = queue.claim_next()

    report = collect_report(queue, stuck_after_seconds=-1, failed_limit=5)

    assert report["status_counts"]["failed"] == 1
    assert report["status_counts"]["in-progress"] == 1
    assert report["total"] == 2
    assert [task["id"] for task in report["stuck"]] == [stuck.id]
    assert [task["id"] for task in report["recent_failed"]] == [failed_video]
    assert [task["storage_key"] for task in report["recent_failed_motion"]] == ["photos/x.mov"]
