"""Celery worker entrypoint for build jobs.

Run one worker per shard with ``--concurrency 1`` so that every task for a
given job id is processed serially by the same process::

    BUILD_JOB_WORKER_SHARD=0 celery -A celery_worker.build_worker worker \
        --concurrency 1 -Q build-jobs,build-jobs-0
"""

from __future__ import annotations

import logging
import os

from nightbuild.config.logging import configure_logging
from nightbuild.config.settings import settings
from nightbuild.workflows.build_jobs.celeryconfig import get_build_shard_router
from nightbuild.workflows.build_jobs.tasks import celery_app as build_celery_app

configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


def _consumed_queue_names() -> tuple[str, ...]:
    """Default queue plus this worker's shard, or every shard when unpinned."""

    router = get_build_shard_router()
    shard = settings.build_jobs.worker_shard
    if shard is None:
        shard_queues = router.queue_names()
    else:
        shard_queues = (router.queue_name(shard),)
    return (settings.celery.default_queue, *shard_queues)


def _log_queue_configuration() -> tuple[str, ...]:
    """Emit a log describing the Celery queues/QoS bindings for this worker."""

    queue_names = _consumed_queue_names()
    queue_csv = ",".join(queue_names)
    os.environ.setdefault("CELERY_QUEUES", queue_csv)
    logger.info(
        "Build worker consuming Celery queues: %s",
        queue_csv,
        extra={
            "celery_queues": queue_names,
            "celery_prefetch": build_celery_app.conf.worker_prefetch_multiplier,
            "celery_reject_on_worker_lost": build_celery_app.conf.task_reject_on_worker_lost,
            "shard_count": settings.build_jobs.shard_count,
        },
    )
    if settings.build_jobs.worker_shard is None and settings.build_jobs.shard_count > 1:
        logger.warning(
            "Worker is not pinned to a shard; run one single-concurrency worker "
            "per shard to keep job ids serialized"
        )
    return queue_names


celery_app = build_celery_app

# ``celery -A celery_worker.build_worker worker`` looks for ``app``.
app = celery_app

_log_queue_configuration()


if __name__ == "__main__":  # pragma: no cover - CLI execution path
    celery_app.start()
