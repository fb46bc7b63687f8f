"""Scan the local object store and enqueue ingestion tasks for discovered media."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path, PurePosixPath
from typing import Optional

import typer

from utils.logging import configure_logging, get_logger
from photo_ingest.admin import QueueAdmin
from photo_ingest.config import load_settings
from photo_ingest.imaging import HEIC_EXTENSIONS
from photo_ingest.models import PayloadKind
from photo_ingest.motion import IMAGE_EXTENSIONS, VIDEO_EXTENSIONS
from photo_ingest.pipeline import THUMBNAIL_PREFIX
from photo_ingest.storage import LocalObjectStore
from photo_ingest.task_queue import QueueStore

LOGGER = get_logger(__name__, extra={"component": "enqueue"})


def discover_tasks(keys: Sequence[str]) -> list[dict[str, str]]:
    """Turn stored keys into task entries: stills first, then companion videos.

    Thumbnails and the JPEG copies written next to HEIC originals are skipped.
    """

    heic_stems = {
        str(PurePosixPath(key).with_suffix(""))
        for key in keys
        if PurePosixPath(key).suffix.lower() in HEIC_EXTENSIONS
    }

    photos: list[dict[str, str]] = []
    videos: list[dict[str, str]] = []
    for key in keys:
        path = PurePosixPath(key)
        if path.parts and path.parts[0] == THUMBNAIL_PREFIX:
            continue
        suffix = path.suffix.lower()
        if suffix in VIDEO_EXTENSIONS:
            videos.append({"kind": PayloadKind.MOTION_VIDEO.value, "storage_key": key})
        elif suffix in IMAGE_EXTENSIONS:
            if suffix == ".jpeg" and str(path.with_suffix("")) in heic_stems:
                continue
            photos.append({"kind": PayloadKind.PHOTO.value, "storage_key": key})
    return photos + videos


def main(
    prefix: str = typer.Argument("", help="Only enqueue keys under this storage prefix."),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to settings.yaml."),
    priority: Optional[int] = typer.Option(None, "--priority", min=0, max=9, help="Priority for every task (0 = most urgent)."),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", min=1, max=5, help="Attempt ceiling per task."),
    dry_run: bool = typer.Option(False, "--dry-run", help="List what would be enqueued without writing."),
) -> None:
    """Enqueue photo and motion-video tasks for objects in the local store."""

    configure_logging()
    settings = load_settings(config)
    store = LocalObjectStore(settings.storage.root, public_base_url=settings.storage.public_base_url)
    entries = discover_tasks(store.list_keys(prefix))

    LOGGER.info(
        "enqueue_start",
        extra={"storage_root": str(store.root), "prefix": prefix, "discovered": len(entries), "dry_run": dry_run},
    )
    if not entries:
        LOGGER.warning("enqueue_no_media", extra={"storage_root": str(store.root), "prefix": prefix})
        return

    if dry_run:
        for entry in entries:
            typer.echo(f"{entry['kind']}\t{entry['storage_key']}")
        return

    admin = QueueAdmin(QueueStore(settings.database.url), config=settings.queue)
    batch_size = max(1, settings.queue.max_batch_size)
    queued = 0
    rejected = 0
    for start in range(0, len(entries), batch_size):
        outcome = admin.enqueue_batch(
            entries[start : start + batch_size],
            default_priority=priority,
            default_max_attempts=max_attempts,
        )
        queued += len(outcome["results"])
        rejected += len(outcome["errors"])
        for error in outcome["errors"]:
            LOGGER.warning("enqueue_rejected", extra=error)

    LOGGER.info("enqueue_complete", extra={"queued": queued, "rejected": rejected})


if __name__ == "__main__":
    typer.run(main)


__all__ = ["discover_tasks", "main"]
