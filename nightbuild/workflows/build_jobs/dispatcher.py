"""Queue-side entry point: validate, route to the owner, retry or dead-letter."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any, Callable, Iterable, Optional, Protocol

from pydantic import ValidationError

from nightbuild.schemas.build_job_models import BuildJob
from nightbuild.workflows.build_jobs.contracts import DeadLetterRecord, QueueOutcome
from nightbuild.workflows.build_jobs.owner import BuildJobOwnerRegistry
from nightbuild.workflows.build_jobs.safety import validate_job
from nightbuild.workflows.build_jobs.storage import BuildArtifactStorage

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class QueueMessage(Protocol):
    """One delivery of a job message.

    ``attempts`` counts previous deliveries and is 0 on the first one.
    """

    @property
    def body(self) -> Any: ...

    @property
    def attempts(self) -> int: ...

    def ack(self) -> None: ...

    def retry(self) -> None: ...


def _job_id_from_body(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("jobId") or "unknown")
    return "unknown"


class BuildJobDispatcher:
    """Hands inbound job messages to their owners.

    Malformed jobs and business rejections are dead-lettered immediately;
    exceptions and timeouts are retried until the delivery budget runs out.
    """

    def __init__(
        self,
        registry: BuildJobOwnerRegistry,
        storage: BuildArtifactStorage,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        dispatch_timeout_seconds: Optional[float] = 30.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._registry = registry
        self._storage = storage
        self._max_retries = max(1, int(max_retries))
        self._timeout = dispatch_timeout_seconds
        self._clock = clock

    def _dead_letter(self, job: Any, error: str, attempts: int) -> None:
        """Archive a message; a storage failure is logged and the message still acked."""

        record = DeadLetterRecord(
            job=job, error=error, attempts=attempts, failed_at=self._clock()
        )
        try:
            key = self._storage.write_dead_letter(record)
        except (OSError, ValueError):
            logger.exception(
                "Failed to write dead-letter record for build job %s: %s",
                record.job_id,
                error,
                extra={"job_id": record.job_id},
            )
            return
        logger.warning(
            "Dead-lettered build job %s after %d attempt(s): %s",
            record.job_id,
            attempts,
            error,
            extra={"job_id": record.job_id, "dead_letter_key": key},
        )

    async def dispatch(self, message: QueueMessage) -> QueueOutcome:
        started = time.monotonic()
        job_id = _job_id_from_body(message.body)
        attempts = message.attempts

        def _outcome(ok: bool, error: Optional[str] = None) -> QueueOutcome:
            elapsed = int((time.monotonic() - started) * 1000)
            return QueueOutcome(job_id=job_id, ok=ok, duration_ms=elapsed, error=error)

        try:
            job = BuildJob.model_validate(message.body)
        except ValidationError as exc:
            error = f"Malformed job message: {exc.error_count()} validation error(s)"
            self._dead_letter(message.body, error, attempts + 1)
            message.ack()
            return _outcome(False, error)

        validation = validate_job(job)
        if not validation.allowed:
            error = validation.reason or "Invalid job"
            self._dead_letter(job, error, attempts + 1)
            message.ack()
            return _outcome(False, error)

        try:
            if self._timeout is None:
                result = await self._registry.start_job(job)
            else:
                result = await asyncio.wait_for(
                    self._registry.start_job(job), self._timeout
                )
        except Exception as exc:
            error = (
                f"Dispatch timed out after {self._timeout}s"
                if isinstance(exc, asyncio.TimeoutError)
                else f"{type(exc).__name__}: {exc}"
            )
            if attempts >= self._max_retries - 1:
                self._dead_letter(job, error, attempts + 1)
                message.ack()
            else:
                logger.warning(
                    "Retrying build job %s (attempt %d/%d): %s",
                    job.job_id,
                    attempts + 1,
                    self._max_retries,
                    error,
                    extra={"job_id": job.job_id},
                )
                message.retry()
            return _outcome(False, error)

        if not result.ok:
            error = result.error or "Job rejected"
            self._dead_letter(job, error, attempts + 1)
            message.ack()
            return _outcome(False, error)

        message.ack()
        if result.duplicate:
            logger.info(
                "Build job %s already in flight; delivery acknowledged",
                job.job_id,
                extra={"job_id": job.job_id},
            )
        return _outcome(True)

    async def dispatch_batch(self, messages: Iterable[QueueMessage]) -> list[QueueOutcome]:
        outcomes = [await self.dispatch(message) for message in messages]
        succeeded = sum(1 for outcome in outcomes if outcome.ok)
        logger.info(
            "Dispatched %d build job message(s): %d ok, %d failed",
            len(outcomes),
            succeeded,
            len(outcomes) - succeeded,
            extra={"outcomes": [outcome.to_dict() for outcome in outcomes]},
        )
        return outcomes
