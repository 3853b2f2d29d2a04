"""Celery routing that pins every task of a job id to one shard queue."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Tuple

from kombu import Queue

from nightbuild.config.settings import settings

BUILD_TASK_PREFIX = "nightbuild.build_jobs."
AFFINITY_HEADER = "build-job-affinity"
QUEUE_HEADER = "build-job-queue"


def _hash_affinity_key(key: str) -> int:
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=False)


@dataclass(frozen=True, slots=True)
class BuildShardRouter:
    """Deterministic job id to queue mapping.

    Each queue is consumed by exactly one worker process running with
    concurrency 1, which serializes all work for the job ids it owns.
    """

    shard_count: int
    queue_prefix: str = "build-jobs-"

    def __post_init__(self) -> None:
        if self.shard_count <= 0:
            raise ValueError(
                f"shard_count must be a positive integer; received {self.shard_count!r}"
            )

    def queue_name(self, shard_index: int) -> str:
        if shard_index < 0 or shard_index >= self.shard_count:
            raise ValueError(
                "shard_index must be between 0 and shard_count - 1; "
                f"received {shard_index!r}"
            )
        return f"{self.queue_prefix}{shard_index}"

    def queue_names(self) -> Tuple[str, ...]:
        return tuple(self.queue_name(index) for index in range(self.shard_count))

    def shard_for_key(self, job_id: str) -> int:
        if not job_id:
            raise ValueError("job_id must be a non-empty string")
        return _hash_affinity_key(job_id) % self.shard_count

    def queue_for_key(self, job_id: str) -> str:
        return self.queue_name(self.shard_for_key(job_id))

    def build_queues(self, *, include_default: bool = False) -> Tuple[Queue, ...]:
        queues: list[Queue] = []
        if include_default:
            queues.append(
                Queue(
                    settings.celery.default_queue,
                    exchange=settings.celery.default_exchange,
                    routing_key=settings.celery.default_routing_key,
                    durable=True,
                )
            )
        for name in self.queue_names():
            queues.append(
                Queue(
                    name,
                    exchange=settings.celery.default_exchange,
                    routing_key=name,
                    durable=True,
                )
            )
        return tuple(queues)


def get_build_shard_router(shard_count: int | None = None) -> BuildShardRouter:
    return BuildShardRouter(
        shard_count=shard_count or settings.build_jobs.shard_count,
        queue_prefix=settings.build_jobs.queue_prefix,
    )


def build_task_router(
    router: BuildShardRouter,
) -> Tuple[Callable[..., Mapping[str, Any]], ...]:
    def _route_task(
        name: str,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        options: Mapping[str, Any],
        task: Any = None,
        **_extra: Any,
    ) -> Mapping[str, Any]:
        queue = options.get("queue")
        if queue:
            return {"queue": queue, "routing_key": options.get("routing_key") or queue}

        headers = options.get("headers") or {}
        header_queue = headers.get(QUEUE_HEADER)
        if header_queue:
            return {"queue": header_queue, "routing_key": header_queue}

        affinity = headers.get(AFFINITY_HEADER) or kwargs.get("job_id")
        if affinity and name.startswith(BUILD_TASK_PREFIX):
            queue_name = router.queue_for_key(str(affinity))
            return {"queue": queue_name, "routing_key": queue_name}

        return {
            "queue": settings.celery.default_queue,
            "routing_key": settings.celery.default_routing_key,
        }

    return (_route_task,)


__all__ = [
    "AFFINITY_HEADER",
    "BUILD_TASK_PREFIX",
    "BuildShardRouter",
    "QUEUE_HEADER",
    "build_task_router",
    "get_build_shard_router",
]
