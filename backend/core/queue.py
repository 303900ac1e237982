"""Celery application and batch submission for billing jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, Sequence

from celery import Celery, group
from celery.exceptions import CeleryError
from kombu import Queue
from kombu.exceptions import KombuError

from backend.core.config import settings
from backend.core.logging import get_logger

logger = get_logger(__name__)


class JobQueueError(Exception):
    """The broker rejected or could not receive a batch."""


celery_app = Celery(
    "billing",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    imports=["agents.billing.tasks"],
    task_queues=[Queue(settings.BILLING_QUEUE)],
    task_default_queue=settings.BILLING_QUEUE,
    task_routes={"agents.billing.tasks.*": {"queue": settings.BILLING_QUEUE}},
    task_create_missing_queues=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
)


@dataclass
class JobDescriptor:
    task_name: str
    kwargs: Dict[str, Any] = field(default_factory=dict)


class BatchHandle(Protocol):
    id: str
    name: str
    total: int

    def completed_count(self) -> int: ...

    def failed_count(self) -> int: ...


class JobQueue(Protocol):
    def dispatch_batch(
        self,
        name: str,
        jobs: Sequence[JobDescriptor],
        allow_failures: bool = True,
        queue: str = "billing",
    ) -> BatchHandle:
        """Submit ``jobs`` as one named batch.

        Raises:
            JobQueueError: the batch could not be handed to the broker
        """
        ...


class CeleryBatchHandle:
    def __init__(self, name: str, result, total: int) -> None:
        self.id = result.id
        self.name = name
        self.total = total
        self._result = result

    def completed_count(self) -> int:
        return self._result.completed_count()

    def failed_count(self) -> int:
        return sum(1 for r in self._result.results if r.failed())


class CeleryJobQueue:
    """Submits a batch as a Celery group; group members succeed or fail independently."""

    def __init__(self, app: Celery = celery_app) -> None:
        self.app = app

    def dispatch_batch(
        self,
        name: str,
        jobs: Sequence[JobDescriptor],
        allow_failures: bool = True,
        queue: str = "billing",
    ) -> CeleryBatchHandle:
        headers = {"batch_name": name, "allow_failures": allow_failures}
        signatures = [
            self.app.signature(job.task_name, kwargs=job.kwargs, queue=queue, headers=headers)
            for job in jobs
        ]
        try:
            result = group(signatures).apply_async()
        except (KombuError, CeleryError, OSError) as e:
            raise JobQueueError(f"batch {name!r} not submitted: {e}") from e
        logger.info("batch_dispatched", extra={"batch_name": name, "jobs": len(jobs), "queue": queue})
        return CeleryBatchHandle(name, result, len(jobs))
