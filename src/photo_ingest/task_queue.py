"""Durable task queue backed by the ``pipeline_queue`` table.

Claims are compare-and-swap updates (``... WHERE id = :id AND status =
'pending'``), so concurrent workers, threads or processes, can never
hold the same task at once.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from utils.logging import get_logger
from photo_ingest.db import PipelineTask, open_session
from photo_ingest.errors import describe_error
from photo_ingest.models import (
    MIN_PRIORITY,
    PayloadKind,
    QueueTask,
    TaskPayload,
    TaskStatus,
    validate_max_attempts,
    validate_priority,
)

LOGGER = get_logger(__name__, extra={"component": "task_queue"})

ALL_FAILED = "all"
# Administrative retries jump to the most urgent band.
RETRY_PRIORITY = MIN_PRIORITY

_MAX_CLAIM_RACES = 8

TaskSelector = Union[int, str, Iterable[int]]


def _to_task(row: PipelineTask) -> QueueTask:
    return QueueTask(
        id=row.id,
        payload=TaskPayload.from_json(row.payload),
        priority=row.priority,
        status=TaskStatus(row.status),
        stage=row.stage,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        error_message=row.error_message,
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


class QueueStore:
    """Owns the lifecycle of every :class:`QueueTask`."""

    def __init__(self, database_url: str | Path) -> None:
        self._database_url = database_url

    def _session(self) -> Session:
        return open_session(self._database_url)

    # -- producers ---------------------------------------------------------

    def enqueue(self, payload: TaskPayload, priority: int = 0, max_attempts: int = 3) -> int:
        """Insert one pending task and return its id."""

        return self.enqueue_many([(payload, priority, max_attempts)])[0]

    def enqueue_many(self, items: Sequence[tuple[TaskPayload, int, int]]) -> list[int]:
        """Insert several validated tasks in one transaction, preserving order."""

        rows: list[PipelineTask] = []
        now = time.time()
        for payload, priority, max_attempts in items:
            rows.append(
                PipelineTask(
                    payload=payload.to_json(),
                    kind=payload.kind.value,
                    priority=validate_priority(priority),
                    attempts=0,
                    max_attempts=validate_max_attempts(max_attempts),
                    status=TaskStatus.PENDING.value,
                    stage=None,
                    error_message=None,
                    created_at=now,
                    claimed_at=None,
                    completed_at=None,
                )
            )

        if not rows:
            return []

        with self._session() as session:
            session.add_all(rows)
            session.commit()
            ids = [row.id for row in rows]

        LOGGER.info("queue_enqueued", extra={"count": len(ids), "first_id": ids[0], "last_id": ids[-1]})
        return ids

    # -- workers -----------------------------------------------------------

    def claim_next(self, priority_band: tuple[int, int] | None = None) -> QueueTask | None:
        """Atomically move the most urgent pending task to ``in-progress``.

        Args:
            priority_band: Optional inclusive ``(low, high)`` priority range to
                try first. When it has no pending work, any pending task is
                eligible.

        Returns:
            The claimed task, or ``None`` when nothing is pending.
        """

        bands: list[tuple[int, int] | None] = [priority_band] if priority_band is not None else []
        bands.append(None)

        with self._session() as session:
            for band in bands:
                for _ in range(_MAX_CLAIM_RACES):
                    query = select(PipelineTask.id).where(PipelineTask.status == TaskStatus.PENDING.value)
                    if band is not None:
                        query = query.where(PipelineTask.priority.between(band[0], band[1]))
                    candidate = session.execute(
                        query.order_by(PipelineTask.priority, PipelineTask.id).limit(1)
                    ).scalar_one_or_none()
                    if candidate is None:
                        break

                    result = session.execute(
                        update(PipelineTask)
                        .where(
                            PipelineTask.id == candidate,
                            PipelineTask.status == TaskStatus.PENDING.value,
                        )
                        .values(status=TaskStatus.IN_PROGRESS.value, claimed_at=time.time(), stage=None)
                    )
                    session.commit()
                    if result.rowcount == 1:
                        row = session.get(PipelineTask, candidate, populate_existing=True)
                        assert row is not None
                        return _to_task(row)

                    LOGGER.debug("queue_claim_race_lost", extra={"task_id": candidate})
        return None

    def mark_stage(self, task_id: int, stage: str) -> None:
        with self._session() as session:
            session.execute(
                update(PipelineTask)
                .where(PipelineTask.id == task_id, PipelineTask.status == TaskStatus.IN_PROGRESS.value)
                .values(stage=stage)
            )
            session.commit()

    def complete(self, task_id: int) -> None:
        with self._session() as session:
            result = session.execute(
                update(PipelineTask)
                .where(PipelineTask.id == task_id, PipelineTask.status == TaskStatus.IN_PROGRESS.value)
                .values(status=TaskStatus.COMPLETED.value, completed_at=time.time(), error_message=None)
            )
            session.commit()
        if result.rowcount != 1:
            LOGGER.warning("queue_complete_unclaimed", extra={"task_id": task_id})

    def fail_or_retry(self, task_id: int, error: BaseException | str, retryable: bool = True) -> TaskStatus | None:
        """Record a failed attempt and decide between re-pending and failing.

        Below the attempt ceiling the task goes straight back to ``pending``;
        at the ceiling, or when ``retryable`` is false, it becomes ``failed``.

        Returns:
            The new status, or ``None`` when the task was not in progress.
        """

        message = error if isinstance(error, str) else describe_error(error)
        with self._session() as session:
            row = session.execute(
                select(PipelineTask).where(
                    PipelineTask.id == task_id,
                    PipelineTask.status == TaskStatus.IN_PROGRESS.value,
                )
            ).scalar_one_or_none()
            if row is None:
                LOGGER.warning("queue_fail_unclaimed", extra={"task_id": task_id})
                return None

            attempts = row.attempts + 1
            if retryable and attempts < row.max_attempts:
                status = TaskStatus.PENDING
                completed_at = None
            else:
                status = TaskStatus.FAILED
                completed_at = time.time()

            session.execute(
                update(PipelineTask)
                .where(PipelineTask.id == task_id, PipelineTask.status == TaskStatus.IN_PROGRESS.value)
                .values(
                    attempts=attempts,
                    status=status.value,
                    error_message=message,
                    claimed_at=None,
                    completed_at=completed_at,
                )
            )
            session.commit()

        LOGGER.info(
            "queue_task_failed_attempt",
            extra={
                "task_id": task_id,
                "attempts": attempts,
                "status": status.value,
                "retryable": retryable,
                "error": message,
            },
        )
        return status

    def reset_in_flight(self) -> int:
        """Return tasks orphaned in ``in-progress`` by a dead process to ``pending``."""

        with self._session() as session:
            result = session.execute(
                update(PipelineTask)
                .where(PipelineTask.status == TaskStatus.IN_PROGRESS.value)
                .values(status=TaskStatus.PENDING.value, claimed_at=None)
            )
            session.commit()
        if result.rowcount:
            LOGGER.warning("queue_reset_in_flight", extra={"count": result.rowcount})
        return result.rowcount

    # -- administration ----------------------------------------------------

    def get(self, task_id: int) -> QueueTask | None:
        with self._session() as session:
            row = session.get(PipelineTask, task_id)
            return _to_task(row) if row is not None else None

    def list_failed(
        self,
        page: int = 1,
        page_size: int = 20,
        kind: PayloadKind | str | None = None,
    ) -> tuple[list[QueueTask], int]:
        """Return one page of failed tasks, newest first, and the total count."""

        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")

        conditions = [PipelineTask.status == TaskStatus.FAILED.value]
        if kind is not None:
            conditions.append(PipelineTask.kind == PayloadKind(kind).value)

        with self._session() as session:
            total = session.execute(select(func.count()).select_from(PipelineTask).where(*conditions)).scalar_one()
            rows = session.execute(
                select(PipelineTask)
                .where(*conditions)
                .order_by(PipelineTask.created_at.desc(), PipelineTask.id.desc())
                .limit(page_size)
                .offset((page - 1) * page_size)
            ).scalars().all()
            return [_to_task(row) for row in rows], int(total)

    def retry(self, selector: TaskSelector) -> int:
        """Reset failed tasks to ``pending``; other statuses are left alone."""

        conditions = self._failed_conditions(selector)
        if conditions is None:
            return 0
        with self._session() as session:
            result = session.execute(
                update(PipelineTask)
                .where(*conditions)
                .values(
                    status=TaskStatus.PENDING.value,
                    attempts=0,
                    error_message=None,
                    stage=None,
                    priority=RETRY_PRIORITY,
                    claimed_at=None,
                    completed_at=None,
                )
            )
            session.commit()
        LOGGER.info("queue_failed_retried", extra={"count": result.rowcount})
        return result.rowcount

    def delete(self, selector: TaskSelector) -> int:
        """Delete failed tasks; other statuses are left alone."""

        conditions = self._failed_conditions(selector)
        if conditions is None:
            return 0
        with self._session() as session:
            result = session.execute(delete(PipelineTask).where(*conditions))
            session.commit()
        LOGGER.info("queue_failed_deleted", extra={"count": result.rowcount})
        return result.rowcount

    @staticmethod
    def _failed_conditions(selector: TaskSelector) -> list | None:
        conditions = [PipelineTask.status == TaskStatus.FAILED.value]
        if isinstance(selector, str) and selector.strip().isdigit():
            selector = int(selector)
        if isinstance(selector, str):
            if selector != ALL_FAILED:
                raise ValueError(f"unsupported task selector: {selector!r}")
            return conditions
        if isinstance(selector, int):
            conditions.append(PipelineTask.id == selector)
            return conditions
        ids = sorted({int(task_id) for task_id in selector})
        if not ids:
            return None
        conditions.append(PipelineTask.id.in_(ids))
        return conditions

    # -- diagnostics -------------------------------------------------------

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        with self._session() as session:
            rows = session.execute(
                select(PipelineTask.status, func.count()).group_by(PipelineTask.status)
            ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def average_attempts(self) -> float:
        with self._session() as session:
            value = session.execute(select(func.avg(PipelineTask.attempts))).scalar_one()
        return float(value or 0.0)

    def find_stuck(self, older_than_seconds: float) -> list[QueueTask]:
        """Tasks that have been ``in-progress`` longer than the threshold."""

        cutoff = time.time() - older_than_seconds
        with self._session() as session:
            rows = session.execute(
                select(PipelineTask)
                .where(
                    PipelineTask.status == TaskStatus.IN_PROGRESS.value,
                    PipelineTask.claimed_at.is_not(None),
                    PipelineTask.claimed_at < cutoff,
                )
                .order_by(PipelineTask.claimed_at)
            ).scalars().all()
            return [_to_task(row) for row in rows]


__all__ = ["QueueStore", "ALL_FAILED", "RETRY_PRIORITY", "TaskSelector"]
