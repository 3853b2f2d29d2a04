"""Persistence of ``JobState`` snapshots."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nightbuild.schemas.build_job_models import BuildJob
from nightbuild.workflows.build_jobs.contracts import JobState, RiskReview, WorkPlan
from nightbuild.workflows.build_jobs.models import BuildJobStateRecord, BuildJobStatus


class BuildJobRepositoryError(Exception):
    """Base class for build job repository errors."""


class BuildJobStateExistsError(BuildJobRepositoryError):
    """Raised when creating state for a job id that already has a row."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"State for job {job_id} already exists")
        self.job_id = job_id


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def record_to_state(record: BuildJobStateRecord) -> JobState:
    return JobState(
        job_id=record.job_id,
        status=BuildJobStatus(record.status),
        job=BuildJob.model_validate(record.job),
        started_at=_as_utc(record.started_at),
        updated_at=_as_utc(record.updated_at),
        plan=WorkPlan.from_dict(record.plan) if record.plan else None,
        completed_items=list(record.completed_items or []),
        result_url=record.result_url,
        deploy_url=record.deploy_url,
        error=record.error,
        tokens_used=record.tokens_used,
        cost_estimate=record.cost_estimate,
        approved=record.approved,
        validation_warnings=list(record.validation_warnings or []),
        drive_attempts=record.drive_attempts,
        branch_created=record.branch_created,
        risk_review=(
            RiskReview.from_dict(record.risk_review) if record.risk_review else None
        ),
    )


def _apply_state(record: BuildJobStateRecord, state: JobState) -> None:
    record.status = state.status
    record.job = state.job.to_payload()
    record.plan = state.plan.to_dict() if state.plan is not None else None
    record.completed_items = list(state.completed_items)
    record.result_url = state.result_url
    record.deploy_url = state.deploy_url
    record.error = state.error
    record.tokens_used = state.tokens_used
    record.cost_estimate = state.cost_estimate
    record.approved = state.approved
    record.validation_warnings = list(state.validation_warnings)
    record.drive_attempts = state.drive_attempts
    record.branch_created = state.branch_created
    record.risk_review = (
        state.risk_review.to_dict() if state.risk_review is not None else None
    )
    record.started_at = state.started_at
    record.updated_at = state.updated_at


class BuildJobStateRepository:
    """Row-level access to ``build_job_states`` within one session."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def get(self, job_id: str) -> Optional[JobState]:
        record = await self._session.get(BuildJobStateRecord, job_id)
        if record is None:
            return None
        return record_to_state(record)

    async def create(self, state: JobState) -> None:
        if await self._session.get(BuildJobStateRecord, state.job_id) is not None:
            raise BuildJobStateExistsError(state.job_id)
        record = BuildJobStateRecord(job_id=state.job_id)
        _apply_state(record, state)
        self._session.add(record)
        await self._session.flush()

    async def save(self, state: JobState) -> None:
        """Insert or overwrite the snapshot for ``state.job_id``."""

        record = await self._session.get(BuildJobStateRecord, state.job_id)
        if record is None:
            record = BuildJobStateRecord(job_id=state.job_id)
            self._session.add(record)
        _apply_state(record, state)
        await self._session.flush()

    async def list_states(
        self,
        *,
        status: Optional[BuildJobStatus] = None,
        limit: int = 50,
    ) -> list[JobState]:
        stmt = select(BuildJobStateRecord).order_by(
            BuildJobStateRecord.updated_at.desc()
        )
        if status is not None:
            stmt = stmt.where(BuildJobStateRecord.status == status)
        result = await self._session.execute(stmt.limit(max(1, min(limit, 500))))
        return [record_to_state(record) for record in result.scalars().all()]


SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class JobStateStore:
    """Short-lived session per operation, committed before returning.

    Owners call this around every mutation so that state is durable before
    any side effect that follows.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def load(self, job_id: str) -> Optional[JobState]:
        async with self._session_factory() as session:
            return await BuildJobStateRepository(session).get(job_id)

    async def create(self, state: JobState) -> None:
        async with self._session_factory() as session:
            repo = BuildJobStateRepository(session)
            await repo.create(state)
            await repo.commit()

    async def save(self, state: JobState) -> None:
        async with self._session_factory() as session:
            repo = BuildJobStateRepository(session)
            await repo.save(state)
            await repo.commit()

    async def list_states(
        self, *, status: Optional[BuildJobStatus] = None, limit: int = 50
    ) -> list[JobState]:
        async with self._session_factory() as session:
            return await BuildJobStateRepository(session).list_states(
                status=status, limit=limit
            )
