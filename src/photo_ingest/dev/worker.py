"""CLI entry point that runs the ingestion worker pool until interrupted.

Workers poll the ``pipeline_queue`` table, run the media pipeline for each
claimed task, and write finished photos into the ``photos`` catalog table.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from utils.logging import configure_logging, get_logger
from photo_ingest.catalog import SqlCatalog
from photo_ingest.config import Settings, load_settings
from photo_ingest.pipeline import MediaPipeline
from photo_ingest.storage import LocalObjectStore
from photo_ingest.task_queue import QueueStore
from photo_ingest.worker_pool import WorkerPool

LOGGER = get_logger(__name__, extra={"component": "worker"})


def build_pool(settings: Settings) -> WorkerPool:
    """Wire the queue, pipeline, and catalog described by ``settings``."""

    store = LocalObjectStore(
        settings.storage.root,
        public_base_url=settings.storage.public_base_url,
        signing_secret=settings.storage.signing_secret,
    )
    pipeline = MediaPipeline.from_settings(settings, store)
    return WorkerPool(
        QueueStore(settings.database.url),
        pipeline,
        SqlCatalog(settings.database.url),
        config=settings.workers,
    )


def main(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        help="Path to settings.yaml (defaults to config/settings.yaml or $PHOTO_INGEST_SETTINGS).",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        min=1,
        help="Override the number of worker threads.",
    ),
    interval: Optional[float] = typer.Option(
        None,
        "--interval",
        min=0.0,
        help="Override the polling interval in seconds.",
    ),
    drain: bool = typer.Option(
        False,
        "--drain",
        help="Process pending tasks on the current thread and exit when the queue is empty.",
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level, e.g. DEBUG."),
) -> None:
    """Run workers that process queued photo and motion-video tasks."""

    configure_logging(level=log_level)
    settings = load_settings(config)
    if workers is not None:
        settings.workers.count = workers
    if interval is not None:
        settings.workers.interval_seconds = interval

    LOGGER.info(
        "worker_start",
        extra={
            "database": settings.database.url,
            "storage_root": settings.storage.root,
            "workers": settings.workers.count,
            "drain": drain,
        },
    )

    pool = build_pool(settings)
    if drain:
        processed = pool.drain()
        stats = pool.report_stats()
        LOGGER.info("worker_drain_complete", extra={"processed": processed, "status_counts": stats.status_counts})
        return

    pool.run_until_signal()


if __name__ == "__main__":
    typer.run(main)


__all__ = ["build_pool", "main"]
