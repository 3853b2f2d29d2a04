"""Single-writer owner of one build job's state.

Each job id maps to one ``BuildJobOwner`` per process; all mutation of that
job goes through the owner's lock and is persisted before any callback or
collaborator call that follows it. Across processes the Celery shard router
sends every task for a job id to the same single-concurrency worker.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import AsyncIterator, Callable, Optional

from nightbuild.config.settings import BuildJobSettings
from nightbuild.schemas.build_job_models import BuildJob
from nightbuild.workflows.build_jobs.callbacks import CallbackNotifier, JobCallbacks
from nightbuild.workflows.build_jobs.collaborators import (
    GenerationCollaborator,
    WriteCollaborator,
    load_collaborator,
)
from nightbuild.workflows.build_jobs.contracts import (
    JobState,
    JobStateNotFoundError,
    JobStateTransitionError,
    StartJobResult,
)
from nightbuild.workflows.build_jobs.executor import (
    DEFAULT_COST_MODEL_ID,
    StepExecutor,
    fail_job,
)
from nightbuild.workflows.build_jobs.models import BuildJobStatus
from nightbuild.workflows.build_jobs.repositories import JobStateStore, SessionFactory
from nightbuild.workflows.build_jobs.review import ReviewCollaborator
from nightbuild.workflows.build_jobs.safety import check_budget, validate_job
from nightbuild.workflows.build_jobs.scheduler import WakeUpScheduler
from nightbuild.workflows.build_jobs.storage import BuildArtifactStorage

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DriveStalledError(Exception):
    """Raised when a drive persists no progress within the stall threshold."""


@dataclass(frozen=True, slots=True)
class OwnerConfig:
    stall_threshold_seconds: float = 300
    watchdog_interval_seconds: float = 90
    start_delay_seconds: float = 0.1
    max_drive_attempts: int = 3
    callback_secret: Optional[str] = None
    cost_model_id: str = DEFAULT_COST_MODEL_ID

    @classmethod
    def from_settings(cls, config: BuildJobSettings) -> "OwnerConfig":
        return cls(
            stall_threshold_seconds=config.stall_threshold_seconds,
            watchdog_interval_seconds=config.watchdog_interval_seconds,
            start_delay_seconds=config.start_delay_seconds,
            max_drive_attempts=config.max_drive_attempts,
            callback_secret=config.callback_secret,
            cost_model_id=config.cost_model_id,
        )


class BuildJobOwner:
    """Drives one job through queued, running, paused and a terminal state."""

    def __init__(
        self,
        job_id: str,
        *,
        store: JobStateStore,
        scheduler: WakeUpScheduler,
        notifier: CallbackNotifier,
        write_collaborator: WriteCollaborator,
        generation_collaborator: Optional[GenerationCollaborator] = None,
        review_collaborator: Optional[ReviewCollaborator] = None,
        artifact_storage: Optional[BuildArtifactStorage] = None,
        config: OwnerConfig = OwnerConfig(),
        clock: Clock = _utcnow,
    ) -> None:
        self.job_id = job_id
        self._store = store
        self._scheduler = scheduler
        self._notifier = notifier
        self._writer = write_collaborator
        self._generator = generation_collaborator
        self._reviewer = review_collaborator
        self._storage = artifact_storage
        self._config = config
        self._clock = clock
        self._lock = asyncio.Lock()
        self._drive_deadline: Optional[asyncio.Timeout] = None
        self.last_status: Optional[BuildJobStatus] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _callbacks(self, state: JobState) -> JobCallbacks:
        return JobCallbacks(
            self._notifier,
            callback_url=state.job.callback_url,
            job_id=state.job_id,
            secret=self._config.callback_secret,
        )

    async def _persist(self, state: JobState) -> None:
        state.updated_at = self._clock()
        await self._store.save(state)
        self.last_status = state.status
        if self._drive_deadline is not None:
            # Each persisted step restarts the stall window of the running drive.
            self._drive_deadline.reschedule(
                asyncio.get_running_loop().time() + self._config.stall_threshold_seconds
            )

    def _needs_wake_up(self, state: JobState) -> bool:
        if state.status is BuildJobStatus.QUEUED:
            return True
        return state.status is BuildJobStatus.PAUSED and state.approved

    async def start_job(self, job: BuildJob) -> StartJobResult:
        """Accept a job, creating its queued state and first wake-up.

        Re-delivery of a job that is still in flight is accepted without
        touching its state; a job id that already finished is rejected. A
        re-delivered job that is waiting to run gets its wake-up armed again,
        since the delivery that created it may have failed before scheduling.
        """

        if job.job_id != self.job_id:
            raise ValueError(f"Owner for {self.job_id} cannot start job {job.job_id}")

        validation = validate_job(job)
        if not validation.allowed:
            return StartJobResult(ok=False, error=validation.reason)
        budget = check_budget(0, 0.0, job.budget)
        if not budget.allowed:
            return StartJobResult(ok=False, error=f"Budget already exhausted: {budget.reason}")

        if self._lock.locked():
            # Another delivery of this job is being handled right now.
            return StartJobResult(ok=True, duplicate=True)

        async with self._lock:
            existing = await self._store.load(self.job_id)
            if existing is not None:
                self.last_status = existing.status
                if existing.status.is_terminal:
                    return StartJobResult(
                        ok=False,
                        error=f"Job {self.job_id} already {existing.status.value}",
                    )
                if self._needs_wake_up(existing):
                    self._scheduler.schedule(self.job_id, self._config.start_delay_seconds)
                    logger.info(
                        "Re-armed wake-up for re-delivered build job %s",
                        self.job_id,
                        extra={"job_id": self.job_id, "status": existing.status.value},
                    )
                return StartJobResult(ok=True, duplicate=True)

            now = self._clock()
            state = JobState(
                job_id=self.job_id,
                status=BuildJobStatus.QUEUED,
                job=job,
                started_at=now,
                updated_at=now,
            )
            await self._store.create(state)
            self.last_status = state.status

        self._scheduler.schedule(self.job_id, self._config.start_delay_seconds)
        logger.info(
            "Accepted build job %s for %s",
            self.job_id,
            job.repository,
            extra={"job_id": self.job_id, "priority": job.priority.value},
        )
        return StartJobResult(ok=True)

    async def wake_up(self) -> None:
        """Check for stalls, then drive the build to a resting state."""

        async with self._lock:
            state = await self._store.load(self.job_id)
            if state is None:
                return
            self.last_status = state.status
            if state.status.is_terminal:
                return
            if state.status is BuildJobStatus.PAUSED and not state.approved:
                return

            callbacks = self._callbacks(state)
            if state.status is BuildJobStatus.RUNNING:
                idle = (self._clock() - state.updated_at).total_seconds()
                if idle > self._config.stall_threshold_seconds:
                    await fail_job(
                        state,
                        f"Stalled: no progress for {int(idle)}s "
                        f"(threshold {int(self._config.stall_threshold_seconds)}s)",
                        persist=self._persist,
                        callbacks=callbacks,
                    )
                    return

            if state.drive_attempts >= self._config.max_drive_attempts:
                await fail_job(
                    state,
                    f"Gave up after {state.drive_attempts} drive attempts",
                    persist=self._persist,
                    callbacks=callbacks,
                )
                return

            first_drive = state.drive_attempts == 0
            state.transition(BuildJobStatus.RUNNING)
            state.drive_attempts += 1
            await self._persist(state)
            self._scheduler.schedule(self.job_id, self._config.watchdog_interval_seconds)

            executor = StepExecutor(
                write_collaborator=self._writer,
                generation_collaborator=self._generator,
                review_collaborator=self._reviewer,
                artifact_storage=self._storage,
                persist=self._persist,
                cost_model_id=self._config.cost_model_id,
                clock=self._clock,
            )
            try:
                await self._drive(executor, state, callbacks, first_drive=first_drive)
            except DriveStalledError:
                logger.error(
                    "Build job %s drive %d stalled",
                    self.job_id,
                    state.drive_attempts,
                    extra={"job_id": self.job_id},
                )
                if state.status is BuildJobStatus.RUNNING:
                    await fail_job(
                        state,
                        "Stalled: drive made no progress for "
                        f"{self._config.stall_threshold_seconds:g}s",
                        persist=self._persist,
                        callbacks=callbacks,
                    )
            except Exception as exc:
                logger.exception(
                    "Build job %s raised during drive %d",
                    self.job_id,
                    state.drive_attempts,
                    extra={"job_id": self.job_id},
                )
                if not state.status.is_terminal:
                    await fail_job(
                        state,
                        f"Unexpected error: {exc}",
                        persist=self._persist,
                        callbacks=callbacks,
                    )

    async def _drive(
        self,
        executor: StepExecutor,
        state: JobState,
        callbacks: JobCallbacks,
        *,
        first_drive: bool,
    ) -> None:
        """Run one drive, cancelling it once it stops persisting progress."""

        try:
            async with asyncio.timeout(self._config.stall_threshold_seconds) as deadline:
                self._drive_deadline = deadline
                await executor.run(state, callbacks, first_drive=first_drive)
        except TimeoutError as exc:
            if deadline.expired():
                raise DriveStalledError(self.job_id) from exc
            raise
        finally:
            self._drive_deadline = None

    async def approve(self) -> JobState:
        """Approve a paused job and schedule the wake-up that resumes it."""

        async with self._lock:
            state = await self._store.load(self.job_id)
            if state is None:
                raise JobStateNotFoundError(self.job_id)
            if state.status is not BuildJobStatus.PAUSED:
                raise JobStateTransitionError(
                    self.job_id, state.status, BuildJobStatus.RUNNING
                )
            if not state.approved:
                state.approved = True
                await self._persist(state)

        self._scheduler.schedule(self.job_id, self._config.start_delay_seconds)
        logger.info("Build job %s approved", self.job_id, extra={"job_id": self.job_id})
        return state

    async def get_status(self) -> Optional[JobState]:
        return await self._store.load(self.job_id)


class BuildJobOwnerRegistry:
    """Process-local map of job id to its owner.

    ``get`` returns the same instance for a job id while any call through the
    registry is using it. Owners keep no state beyond their lock, so an idle
    owner is dropped once its last call returns and rebuilt on the next one.
    """

    def __init__(
        self,
        *,
        store: JobStateStore,
        scheduler: WakeUpScheduler,
        notifier: CallbackNotifier,
        write_collaborator: WriteCollaborator,
        generation_collaborator: Optional[GenerationCollaborator] = None,
        review_collaborator: Optional[ReviewCollaborator] = None,
        artifact_storage: Optional[BuildArtifactStorage] = None,
        config: OwnerConfig = OwnerConfig(),
        clock: Clock = _utcnow,
    ) -> None:
        self._owners: dict[str, BuildJobOwner] = {}
        self._leases: dict[str, int] = {}
        self._store = store
        self._scheduler = scheduler
        self._notifier = notifier
        self._writer = write_collaborator
        self._generator = generation_collaborator
        self._reviewer = review_collaborator
        self._storage = artifact_storage
        self._config = config
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        config: BuildJobSettings,
        *,
        session_factory: SessionFactory,
        scheduler: WakeUpScheduler,
        notifier: Optional[CallbackNotifier] = None,
    ) -> "BuildJobOwnerRegistry":
        storage = BuildArtifactStorage(config.storage_root)
        generator = (
            load_collaborator(config.generation_collaborator)
            if config.generation_collaborator
            else None
        )
        reviewer = (
            load_collaborator(config.review_collaborator)
            if config.review_collaborator
            else None
        )
        return cls(
            store=JobStateStore(session_factory),
            scheduler=scheduler,
            notifier=notifier
            or CallbackNotifier(
                timeout_seconds=config.callback_timeout_seconds,
                max_retries=config.callback_max_retries,
                backoff_seconds=config.callback_backoff_seconds,
            ),
            write_collaborator=load_collaborator(config.write_collaborator, storage=storage),
            generation_collaborator=generator,
            review_collaborator=reviewer,
            artifact_storage=storage,
            config=OwnerConfig.from_settings(config),
        )

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._owners

    def __len__(self) -> int:
        return len(self._owners)

    def get(self, job_id: str) -> BuildJobOwner:
        owner = self._owners.get(job_id)
        if owner is None:
            owner = BuildJobOwner(
                job_id,
                store=self._store,
                scheduler=self._scheduler,
                notifier=self._notifier,
                write_collaborator=self._writer,
                generation_collaborator=self._generator,
                review_collaborator=self._reviewer,
                artifact_storage=self._storage,
                config=self._config,
                clock=self._clock,
            )
            self._owners[job_id] = owner
        return owner

    @asynccontextmanager
    async def _lease(self, job_id: str) -> AsyncIterator[BuildJobOwner]:
        owner = self.get(job_id)
        self._leases[job_id] = self._leases.get(job_id, 0) + 1
        try:
            yield owner
        finally:
            remaining = self._leases[job_id] - 1
            if remaining:
                self._leases[job_id] = remaining
            else:
                del self._leases[job_id]
                if not owner.busy and self._owners.get(job_id) is owner:
                    del self._owners[job_id]

    async def start_job(self, job: BuildJob) -> StartJobResult:
        async with self._lease(job.job_id) as owner:
            return await owner.start_job(job)

    async def wake_up(self, job_id: str) -> None:
        async with self._lease(job_id) as owner:
            await owner.wake_up()

    async def approve(self, job_id: str) -> JobState:
        async with self._lease(job_id) as owner:
            return await owner.approve()

    async def get_status(self, job_id: str) -> Optional[JobState]:
        owner = self._owners.get(job_id)
        if owner is not None:
            return await owner.get_status()
        return await self._store.load(job_id)
