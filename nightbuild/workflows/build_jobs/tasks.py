"""Celery transport for build jobs: dispatch, wake-up and approval tasks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Coroutine, Optional, TypeVar

from celery import Celery
from celery.signals import worker_shutdown

from api_service.db.base import async_session_maker
from nightbuild.config.settings import settings
from nightbuild.schemas.build_job_models import BuildJob
from nightbuild.workflows.build_jobs.celeryconfig import (
    AFFINITY_HEADER,
    BUILD_TASK_PREFIX,
    build_task_router,
    get_build_shard_router,
)
from nightbuild.workflows.build_jobs.dispatcher import BuildJobDispatcher
from nightbuild.workflows.build_jobs.owner import BuildJobOwnerRegistry
from nightbuild.workflows.build_jobs.storage import BuildArtifactStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

CELERY_NAMESPACE = "nightbuild.workflows.build_jobs"
TASK_DISPATCH = f"{BUILD_TASK_PREFIX}dispatch"
TASK_WAKE_UP = f"{BUILD_TASK_PREFIX}wake_up"
TASK_APPROVE = f"{BUILD_TASK_PREFIX}approve"


def create_celery_app() -> Celery:
    """Instantiate the Celery application for build job workers."""

    app = Celery(CELERY_NAMESPACE)
    shard_router = get_build_shard_router()
    app.conf.update(
        broker_url=settings.celery.broker_url,
        result_backend=settings.celery.result_backend,
        task_default_queue=settings.celery.default_queue,
        task_default_exchange=settings.celery.default_exchange,
        task_default_routing_key=settings.celery.default_routing_key,
        task_serializer=settings.celery.task_serializer,
        result_serializer=settings.celery.result_serializer,
        accept_content=list(settings.celery.accept_content),
        task_acks_late=settings.celery.task_acks_late,
        task_reject_on_worker_lost=settings.celery.task_reject_on_worker_lost,
        worker_prefetch_multiplier=settings.celery.worker_prefetch_multiplier,
        result_expires=settings.celery.result_expires,
        task_queues=shard_router.build_queues(include_default=True),
        task_routes=build_task_router(shard_router),
    )
    return app


celery_app = create_celery_app()


class CeleryWakeUpScheduler:
    """Schedules wake-ups as countdown tasks on the job's shard queue."""

    def schedule(self, job_id: str, delay_seconds: float) -> None:
        wake_build_job.apply_async(
            kwargs={"job_id": job_id},
            countdown=max(0.0, float(delay_seconds)),
            headers={AFFINITY_HEADER: job_id},
        )


@dataclass
class CeleryQueueMessage:
    """Adapts one task delivery to the dispatcher's message protocol."""

    body: Any
    attempts: int
    acked: bool = False
    retry_requested: bool = False

    def ack(self) -> None:
        self.acked = True

    def retry(self) -> None:
        self.retry_requested = True


class _WorkerRuntime:
    """Per-process event loop and owner registry.

    The loop outlives individual tasks so that owner locks and database
    connections stay bound to a single loop.
    """

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self.registry = BuildJobOwnerRegistry.from_settings(
            settings.build_jobs,
            session_factory=async_session_maker,
            scheduler=CeleryWakeUpScheduler(),
        )
        self.dispatcher = BuildJobDispatcher(
            self.registry,
            BuildArtifactStorage(settings.build_jobs.storage_root),
            max_retries=settings.build_jobs.max_queue_retries,
            dispatch_timeout_seconds=settings.build_jobs.dispatch_timeout_seconds,
        )

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        return self.loop.run_until_complete(coro)

    def close(self) -> None:
        if not self.loop.is_closed():
            self.loop.close()


_runtime: Optional[_WorkerRuntime] = None


def get_runtime() -> _WorkerRuntime:
    global _runtime
    if _runtime is None:
        _runtime = _WorkerRuntime()
    return _runtime


@worker_shutdown.connect
def _close_runtime(**_kwargs: Any) -> None:
    global _runtime
    if _runtime is not None:
        _runtime.close()
        _runtime = None


@celery_app.task(bind=True, name=TASK_DISPATCH, acks_late=True)
def dispatch_build_job(
    self, message: dict[str, Any], job_id: Optional[str] = None
) -> dict[str, Any]:
    """Hand one job message to its owner, retrying transient failures."""

    runtime = get_runtime()
    delivery = CeleryQueueMessage(body=message, attempts=self.request.retries)
    outcome = runtime.run(runtime.dispatcher.dispatch(delivery))
    if delivery.retry_requested:
        raise self.retry(
            countdown=settings.build_jobs.queue_retry_delay_seconds,
            max_retries=settings.build_jobs.max_queue_retries,
        )
    logger.info(
        "Dispatch of build job %s finished (ok=%s, task_id=%s)",
        outcome.job_id,
        outcome.ok,
        getattr(self.request, "id", None),
    )
    return outcome.to_dict()


@celery_app.task(name=TASK_WAKE_UP)
def wake_build_job(job_id: str) -> None:
    runtime = get_runtime()
    runtime.run(runtime.registry.wake_up(job_id))


@celery_app.task(name=TASK_APPROVE)
def approve_build_job(job_id: str) -> dict[str, Any]:
    runtime = get_runtime()
    state = runtime.run(runtime.registry.approve(job_id))
    return {"jobId": state.job_id, "status": state.status.value, "approved": state.approved}


def enqueue_build_job(job: BuildJob) -> str:
    """Publish a job message to its shard queue and return the task id."""

    result = dispatch_build_job.apply_async(
        kwargs={"message": job.to_payload(), "job_id": job.job_id},
        headers={AFFINITY_HEADER: job.job_id},
    )
    return result.id


def enqueue_approval(job_id: str) -> str:
    result = approve_build_job.apply_async(
        kwargs={"job_id": job_id},
        headers={AFFINITY_HEADER: job_id},
    )
    return result.id


__all__ = [
    "CeleryQueueMessage",
    "CeleryWakeUpScheduler",
    "approve_build_job",
    "celery_app",
    "create_celery_app",
    "dispatch_build_job",
    "enqueue_approval",
    "enqueue_build_job",
    "get_runtime",
    "wake_build_job",
]
