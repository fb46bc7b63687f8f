"""Queue administration: enqueueing, failed-task triage, and pool health."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from utils.logging import get_logger
from photo_ingest.config import QueueConfig
from photo_ingest.errors import InvalidPayloadError
from photo_ingest.models import PayloadKind, PoolStats, TaskPayload, validate_max_attempts, validate_priority
from photo_ingest.task_queue import QueueStore
from photo_ingest.worker_pool import WorkerPool

LOGGER = get_logger(__name__, extra={"component": "admin"})


def _payload_from(item: TaskPayload | Mapping[str, Any]) -> TaskPayload:
    if isinstance(item, TaskPayload):
        return item
    if not isinstance(item, Mapping):
        raise InvalidPayloadError("task must be an object with kind and storage_key")
    storage_key = item.get("storage_key", item.get("storageKey", ""))
    return TaskPayload.create(item.get("kind", ""), storage_key)


def _option(item: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in item and item[name] is not None:
            return item[name]
    return None


class QueueAdmin:
    """Operator-facing facade over :class:`QueueStore` and an optional pool.

    Without a pool the health report still carries queue counts; worker and
    throughput figures are then empty.
    """

    def __init__(self, queue: QueueStore, config: QueueConfig | None = None, pool: WorkerPool | None = None) -> None:
        self._queue = queue
        self._config = config or QueueConfig()
        self._pool = pool

    def enqueue(
        self,
        payload: TaskPayload | Mapping[str, Any],
        priority: int | None = None,
        max_attempts: int | None = None,
    ) -> int:
        resolved = _payload_from(payload)
        task_id = self._queue.enqueue(
            resolved,
            priority=self._config.default_priority if priority is None else priority,
            max_attempts=self._config.default_max_attempts if max_attempts is None else max_attempts,
        )
        LOGGER.info(
            "admin_enqueued",
            extra={"task_id": task_id, "kind": resolved.kind.value, "storage_key": resolved.storage_key},
        )
        return task_id

    def enqueue_batch(
        self,
        tasks: Sequence[TaskPayload | Mapping[str, Any]],
        default_priority: int | None = None,
        default_max_attempts: int | None = None,
    ) -> dict[str, list[dict[str, Any]]]:
        """Validate every entry, insert the valid ones, and report both lists.

        Each entry may carry its own ``priority`` and ``max_attempts``. Invalid
        entries land in ``errors`` with their index; they never block the rest.

        Raises:
            InvalidPayloadError: when ``tasks`` is empty or exceeds the batch ceiling.
        """

        if not tasks:
            raise InvalidPayloadError("batch must contain at least one task")
        if len(tasks) > self._config.max_batch_size:
            raise InvalidPayloadError(f"batch exceeds {self._config.max_batch_size} tasks")

        base_priority = self._config.default_priority if default_priority is None else default_priority
        base_attempts = self._config.default_max_attempts if default_max_attempts is None else default_max_attempts

        accepted: list[tuple[int, TaskPayload, int, int]] = []
        errors: list[dict[str, Any]] = []
        for index, item in enumerate(tasks):
            storage_key = None
            try:
                payload = _payload_from(item)
                storage_key = payload.storage_key
                options = item if isinstance(item, Mapping) else {}
                priority = _option(options, "priority")
                attempts = _option(options, "max_attempts", "maxAttempts")
                accepted.append(
                    (
                        index,
                        payload,
                        validate_priority(base_priority if priority is None else priority),
                        validate_max_attempts(base_attempts if attempts is None else attempts),
                    )
                )
            except InvalidPayloadError as exc:
                if storage_key is None and isinstance(item, Mapping):
                    storage_key = item.get("storage_key", item.get("storageKey"))
                errors.append({"index": index, "storage_key": storage_key, "error": str(exc)})

        ids = self._queue.enqueue_many([(payload, priority, attempts) for _, payload, priority, attempts in accepted])
        results = [
            {"index": index, "task_id": task_id, "storage_key": payload.storage_key, "success": True}
            for (index, payload, _, _), task_id in zip(accepted, ids)
        ]

        LOGGER.info(
            "admin_batch_enqueued",
            extra={"requested": len(tasks), "accepted": len(results), "rejected": len(errors)},
        )
        return {"results": results, "errors": errors}

    def list_failed(
        self,
        page: int = 1,
        page_size: int = 20,
        kind: PayloadKind | str | None = None,
    ) -> dict[str, Any]:
        tasks, total = self._queue.list_failed(page=page, page_size=page_size, kind=kind)
        total_pages = math.ceil(total / page_size) if total else 0
        return {
            "tasks": [task.to_dict() for task in tasks],
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        }

    def retry_failed(self, task_id: int | str) -> int:
        """Re-queue one failed task or, with ``"all"``, every failed task."""

        return self._queue.retry(task_id)

    def retry_failed_batch(self, task_ids: Iterable[int]) -> int:
        return self._queue.retry(list(task_ids))

    def delete_failed(self, task_id: int | str) -> int:
        return self._queue.delete(task_id)

    def delete_failed_batch(self, task_ids: Iterable[int]) -> int:
        return self._queue.delete(list(task_ids))

    def get_pool_stats(self) -> dict[str, Any]:
        if self._pool is not None:
            return self._pool.get_pool_stats().to_dict()
        stats = PoolStats(
            status_counts=self._queue.status_counts(),
            average_attempts=self._queue.average_attempts(),
        )
        return stats.to_dict()


__all__ = ["QueueAdmin"]
