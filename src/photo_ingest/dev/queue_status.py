"""Print queue health: status counts, stuck tasks, and recent failures."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer

from utils.logging import configure_logging, get_logger
from photo_ingest.admin import QueueAdmin
from photo_ingest.config import load_settings
from photo_ingest.task_queue import ALL_FAILED, QueueStore

LOGGER = get_logger(__name__, extra={"component": "queue_status"})


def _fmt_ts(value: float | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def collect_report(queue: QueueStore, stuck_after_seconds: float, failed_limit: int = 10) -> dict[str, Any]:
    admin = QueueAdmin(queue)
    stats = admin.get_pool_stats()
    failed = admin.list_failed(page=1, page_size=failed_limit)
    motion_failed = admin.list_failed(page=1, page_size=failed_limit, kind="motion-video")
    return {
        "status_counts": stats["status_counts"],
        "total": stats["total"],
        "average_attempts": stats["average_attempts"],
        "stuck": [task.to_dict() for task in queue.find_stuck(stuck_after_seconds)],
        "recent_failed": failed["tasks"],
        "recent_failed_motion": motion_failed["tasks"],
    }


def _print_report(report: dict[str, Any]) -> None:
    typer.echo("Queue status")
    for status, count in report["status_counts"].items():
        typer.echo(f"  {status:<12} {count}")
    typer.echo(f"  {'total':<12} {report['total']}")
    typer.echo(f"  average attempts: {report['average_attempts']:.2f}")

    typer.echo(f"Stuck in progress: {len(report['stuck'])}")
    for task in report["stuck"]:
        typer.echo(f"  #{task['id']} {task['kind']} {task['storage_key']} stage={task['stage'] or '-'}")

    for title, key in (("Recent failures", "recent_failed"), ("Recent motion-video failures", "recent_failed_motion")):
        typer.echo(f"{title}: {len(report[key])}")
        for task in report[key]:
            typer.echo(
                f"  #{task['id']} {task['storage_key']} attempts={task['attempts']}/{task['max_attempts']} "
                f"at={_fmt_ts(task['completed_at'])} error={task['error_message'] or '-'}"
            )


def main(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to settings.yaml."),
    as_json: bool = typer.Option(False, "--json", help="Emit the report as JSON."),
    failed_limit: int = typer.Option(10, "--failed-limit", min=1, help="How many recent failures to show."),
    retry_all: bool = typer.Option(False, "--retry-all", help="Re-queue every failed task after reporting."),
) -> None:
    """Report queue health for the configured database."""

    configure_logging()
    settings = load_settings(config)
    queue = QueueStore(settings.database.url)
    report = collect_report(queue, settings.queue.stuck_after_seconds, failed_limit=failed_limit)

    if as_json:
        typer.echo(json.dumps(report, indent=2, ensure_ascii=False))
    else:
        _print_report(report)

    if retry_all:
        count = queue.retry(ALL_FAILED)
        LOGGER.info("queue_status_retry_all", extra={"retried": count})
        typer.echo(f"Re-queued {count} failed task(s).")


if __name__ == "__main__":
    typer.run(main)


__all__ = ["collect_report", "main"]
