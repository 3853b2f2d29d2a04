"""REST router for submitting, inspecting and approving build jobs."""

from __future__ import annotations

import hmac
import logging
from typing import Optional, Protocol

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from api_service.db.base import get_async_session
from nightbuild.config.settings import BuildJobSettings, settings
from nightbuild.schemas.build_job_models import (
    BuildJob,
    JobStateListResponse,
    JobStateModel,
    SubmitJobResponse,
    TrustLevel,
)
from nightbuild.workflows.build_jobs.contracts import (
    BuildJobAuthenticationError,
    BuildJobAuthorizationError,
    BuildJobError,
    JobState,
    JobStateNotFoundError,
    JobStateTransitionError,
)
from nightbuild.workflows.build_jobs.models import BuildJobStatus
from nightbuild.workflows.build_jobs.repositories import BuildJobStateRepository
from nightbuild.workflows.build_jobs.safety import validate_job

router = APIRouter(prefix="/api/build-jobs", tags=["build-jobs"])
logger = logging.getLogger(__name__)

_BUILD_TRUST_LEVELS = frozenset({TrustLevel.BUILDER, TrustLevel.SHIPPER})


class BuildJobEnqueuer(Protocol):
    def submit(self, job: BuildJob) -> str: ...

    def approve(self, job_id: str) -> str: ...


class CeleryBuildJobEnqueuer:
    """Publishes to the build job Celery queues."""

    def submit(self, job: BuildJob) -> str:
        from nightbuild.workflows.build_jobs.tasks import enqueue_build_job

        return enqueue_build_job(job)

    def approve(self, job_id: str) -> str:
        from nightbuild.workflows.build_jobs.tasks import enqueue_approval

        return enqueue_approval(job_id)


async def _get_repository(
    session: AsyncSession = Depends(get_async_session),
) -> BuildJobStateRepository:
    return BuildJobStateRepository(session)


def _get_enqueuer() -> BuildJobEnqueuer:
    return CeleryBuildJobEnqueuer()


def _get_build_job_settings() -> BuildJobSettings:
    return settings.build_jobs


async def _require_api_auth(
    authorization: Optional[str] = Header(None),
    config: BuildJobSettings = Depends(_get_build_job_settings),
) -> None:
    """Require ``Authorization: Bearer <api_secret>`` unless auth is disabled."""

    if config.api_auth_disabled:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if (
        not config.api_secret
        or scheme.lower() != "bearer"
        or not hmac.compare_digest(
            token.strip().encode("utf-8"), config.api_secret.encode("utf-8")
        )
    ):
        raise _to_http_exception(
            BuildJobAuthenticationError("a valid bearer secret is required")
        )


def _serialize_state(state: JobState) -> JobStateModel:
    return JobStateModel.model_validate(state)


def _to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, BuildJobAuthenticationError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "build_job_auth_failed",
                "message": "Build job API authentication failed.",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(exc, BuildJobAuthorizationError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "build_job_not_authorized", "message": str(exc)},
        )
    if isinstance(exc, JobStateNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": "build_job_not_found",
                "message": "The requested build job was not found.",
            },
        )
    if isinstance(exc, JobStateTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "build_job_state_conflict",
                "message": str(exc),
            },
        )
    if isinstance(exc, BuildJobError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "build_job_error", "message": str(exc)},
        )
    logger.exception("Unhandled build job API error", exc_info=exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "code": "build_job_backend_unavailable",
            "message": "The build job backend is unavailable.",
        },
    )


async def _load_state(repository: BuildJobStateRepository, job_id: str) -> JobState:
    state = await repository.get(job_id)
    if state is None:
        raise _to_http_exception(JobStateNotFoundError(job_id))
    return state


@router.post(
    "",
    response_model=SubmitJobResponse,
    dependencies=[Depends(_require_api_auth)],
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_build_job(
    payload: BuildJob,
    enqueuer: BuildJobEnqueuer = Depends(_get_enqueuer),
) -> SubmitJobResponse:
    """Validate a job and publish it to its shard queue."""

    validation = validate_job(payload)
    if not validation.allowed:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "invalid_build_job", "message": validation.reason},
        )
    if payload.trust_level not in _BUILD_TRUST_LEVELS:
        level = payload.trust_level.value if payload.trust_level else "none"
        raise _to_http_exception(
            BuildJobAuthorizationError(
                f"Trust level {level} cannot start builds; builder or shipper is required"
            )
        )
    try:
        task_id = enqueuer.submit(payload)
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    logger.info(
        "Enqueued build job %s",
        payload.job_id,
        extra={"job_id": payload.job_id, "task_id": task_id},
    )
    return SubmitJobResponse(job_id=payload.job_id, queued=True, task_id=task_id)


@router.get(
    "",
    response_model=JobStateListResponse,
    dependencies=[Depends(_require_api_auth)],
)
async def list_build_jobs(
    *,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    repository: BuildJobStateRepository = Depends(_get_repository),
) -> JobStateListResponse:
    """List recently updated jobs, optionally filtered by status."""

    parsed_status = None
    if status_filter is not None:
        try:
            parsed_status = BuildJobStatus(status_filter)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={
                    "code": "invalid_status",
                    "message": f"Unknown build job status: {status_filter}",
                },
            ) from exc
    states = await repository.list_states(status=parsed_status, limit=limit)
    return JobStateListResponse(items=[_serialize_state(state) for state in states])


@router.get(
    "/{job_id}",
    response_model=JobStateModel,
    dependencies=[Depends(_require_api_auth)],
)
async def get_build_job(
    job_id: str,
    repository: BuildJobStateRepository = Depends(_get_repository),
) -> JobStateModel:
    return _serialize_state(await _load_state(repository, job_id))


@router.post(
    "/{job_id}/approve",
    response_model=SubmitJobResponse,
    dependencies=[Depends(_require_api_auth)],
    status_code=status.HTTP_202_ACCEPTED,
)
async def approve_build_job(
    job_id: str,
    repository: BuildJobStateRepository = Depends(_get_repository),
    enqueuer: BuildJobEnqueuer = Depends(_get_enqueuer),
) -> SubmitJobResponse:
    """Approve a job paused on destructive operations."""

    state = await _load_state(repository, job_id)
    if state.status is not BuildJobStatus.PAUSED:
        raise _to_http_exception(
            JobStateTransitionError(job_id, state.status, BuildJobStatus.RUNNING)
        )
    try:
        task_id = enqueuer.approve(job_id)
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return SubmitJobResponse(job_id=job_id, queued=True, task_id=task_id)
