"""Unit tests for the per-job owner and its registry."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from nightbuild.workflows.build_jobs.collaborators import (
    CollaboratorResult,
    GeneratedContent,
)
from nightbuild.workflows.build_jobs.contracts import (
    JobState,
    JobStateNotFoundError,
    JobStateTransitionError,
)
from nightbuild.workflows.build_jobs.models import BuildJobStatus
from nightbuild.workflows.build_jobs.owner import (
    BuildJobOwner,
    BuildJobOwnerRegistry,
    OwnerConfig,
)
from nightbuild.workflows.build_jobs.repositories import JobStateStore

pytestmark = [pytest.mark.asyncio]

NOW = datetime(2026, 5, 4, 12, 0, tzinfo=UTC)
DESTRUCTIVE_SPEC = "# Cleanup\n\n## Overview\nDROP TABLE users;\n"
ROUTES_SPEC = """# Widget Tracker

## API Routes
- GET /widgets
- POST /widgets
- GET /widgets/:id
- PUT /widgets/:id
"""


class _Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _owner(session_maker, scheduler, notifier, writer, **kwargs) -> BuildJobOwner:
    kwargs.setdefault("clock", _Clock())
    return BuildJobOwner(
        "job-123",
        store=JobStateStore(session_maker),
        scheduler=scheduler,
        notifier=notifier,
        write_collaborator=writer,
        **kwargs,
    )


async def test_start_job_persists_queued_state_and_schedules_wake_up(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)

        result = await owner.start_job(make_job())
        state = await owner.get_status()

    assert result.ok is True
    assert result.duplicate is False
    assert state.status is BuildJobStatus.QUEUED
    assert state.started_at == NOW
    assert scheduler.calls == [("job-123", 0.1)]
    # No callback is sent until the first drive.
    assert notifier.updates == []


async def test_start_job_twice_is_a_duplicate(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)

        await owner.start_job(make_job())
        again = await owner.start_job(make_job())

    assert again.ok is True
    assert again.duplicate is True
    # A queued job may have lost its first wake-up, so it is armed again.
    assert scheduler.calls == [("job-123", 0.1), ("job-123", 0.1)]


async def test_start_job_while_owner_is_busy_is_a_duplicate(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)

        async with owner._lock:
            result = await owner.start_job(make_job())
        state = await owner.get_status()

    assert result.duplicate is True
    assert state is None


async def test_start_job_rejects_exhausted_budget_and_mismatched_id(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)

        result = await owner.start_job(make_job(budget={"maxTokens": 0, "maxDollars": 1.0}))
        with pytest.raises(ValueError):
            await owner.start_job(make_job(jobId="other"))

    assert result.ok is False
    assert result.error.startswith("Budget already exhausted")
    assert scheduler.calls == []


async def test_wake_up_drives_job_to_completion(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)
        await owner.start_job(make_job())

        await owner.wake_up()
        state = await owner.get_status()

    assert state.status is BuildJobStatus.COMPLETE
    assert state.drive_attempts == 1
    assert state.result_url == "https://github.com/acme/widgets/pull/7"
    assert owner.last_status is BuildJobStatus.COMPLETE
    assert notifier.statuses == [
        "started",
        "planning",
        "writing",
        "testing",
        "pr_open",
        "complete",
    ]
    assert scheduler.calls == [("job-123", 0.1), ("job-123", 90)]


async def test_wake_up_after_completion_is_a_no_op(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)
        await owner.start_job(make_job())
        await owner.wake_up()
        sent = len(notifier.updates)

        await owner.wake_up()
        result = await owner.start_job(make_job())

    assert len(notifier.updates) == sent
    assert result.ok is False
    assert result.error == "Job job-123 already complete"


async def test_wake_up_for_unknown_job_does_nothing(
    state_db, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)
        await owner.wake_up()

    assert notifier.updates == []
    assert scheduler.calls == []


async def test_stalled_running_job_is_failed(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    job = make_job()
    async with state_db() as session_maker:
        store = JobStateStore(session_maker)
        await store.create(
            JobState(
                job_id=job.job_id,
                status=BuildJobStatus.RUNNING,
                job=job,
                started_at=NOW - timedelta(minutes=20),
                updated_at=NOW - timedelta(seconds=600),
                drive_attempts=1,
            )
        )
        owner = _owner(session_maker, scheduler, notifier, writer)

        await owner.wake_up()
        state = await owner.get_status()

    assert state.status is BuildJobStatus.FAILED
    assert state.error == "Stalled: no progress for 600s (threshold 300s)"
    assert notifier.statuses == ["failed"]
    assert writer.branches == []


async def test_running_job_within_threshold_is_driven_again(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    job = make_job()
    async with state_db() as session_maker:
        store = JobStateStore(session_maker)
        await store.create(
            JobState(
                job_id=job.job_id,
                status=BuildJobStatus.RUNNING,
                job=job,
                started_at=NOW,
                updated_at=NOW - timedelta(seconds=30),
                drive_attempts=1,
            )
        )
        owner = _owner(session_maker, scheduler, notifier, writer)

        await owner.wake_up()
        state = await owner.get_status()

    assert state.status is BuildJobStatus.COMPLETE
    assert state.drive_attempts == 2
    # A re-drive does not announce the start again.
    assert notifier.statuses[0] == "planning"


async def test_gives_up_after_max_drive_attempts(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    job = make_job()
    async with state_db() as session_maker:
        store = JobStateStore(session_maker)
        await store.create(
            JobState(
                job_id=job.job_id,
                status=BuildJobStatus.RUNNING,
                job=job,
                started_at=NOW,
                updated_at=NOW,
                drive_attempts=2,
            )
        )
        owner = _owner(
            session_maker,
            scheduler,
            notifier,
            writer,
            config=OwnerConfig(max_drive_attempts=2),
        )

        await owner.wake_up()
        state = await owner.get_status()

    assert state.status is BuildJobStatus.FAILED
    assert state.error == "Gave up after 2 drive attempts"


async def test_collaborator_exception_fails_the_job(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async def _explode(**_: object) -> CollaboratorResult:
        raise RuntimeError("socket closed")

    writer.create_branch = _explode
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)
        await owner.start_job(make_job())

        await owner.wake_up()
        state = await owner.get_status()

    assert state.status is BuildJobStatus.FAILED
    assert state.error == "Unexpected error: socket closed"
    assert notifier.statuses[-1] == "failed"


async def test_paused_job_resumes_only_after_approval(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)
        await owner.start_job(make_job(specMarkdown=DESTRUCTIVE_SPEC))

        await owner.wake_up()
        paused = await owner.get_status()
        await owner.wake_up()
        still_paused = await owner.get_status()

        approved = await owner.approve()
        await owner.wake_up()
        finished = await owner.get_status()

    assert paused.status is BuildJobStatus.PAUSED
    assert still_paused.drive_attempts == 1
    assert approved.approved is True
    assert finished.status is BuildJobStatus.COMPLETE
    assert finished.drive_attempts == 2
    assert notifier.statuses == [
        "started",
        "planning",
        "paused_approval",
        "planning",
        "writing",
        "testing",
        "pr_open",
        "complete",
    ]
    assert scheduler.calls[-1] == ("job-123", 90)


async def test_approve_requires_a_paused_job(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(session_maker, scheduler, notifier, writer)
        with pytest.raises(JobStateNotFoundError):
            await owner.approve()

        await owner.start_job(make_job())
        with pytest.raises(JobStateTransitionError):
            await owner.approve()


async def test_registry_returns_one_owner_per_job_and_releases_settled_ones(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        registry = BuildJobOwnerRegistry(
            store=JobStateStore(session_maker),
            scheduler=scheduler,
            notifier=notifier,
            write_collaborator=writer,
            clock=_Clock(),
        )

        owner = registry.get("job-123")
        assert registry.get("job-123") is owner
        assert registry.get("job-456") is not owner

        await owner.start_job(make_job())
        await registry.wake_up("job-123")
        state = await registry.get_status("job-123")
        missing = await registry.get_status("job-789")

    assert state.status is BuildJobStatus.COMPLETE
    assert "job-123" not in registry
    assert missing is None
    assert "job-789" not in registry
    assert len(registry) == 1


async def test_redelivered_approved_pause_rearms_wake_up(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    job = make_job()
    async with state_db() as session_maker:
        store = JobStateStore(session_maker)
        await store.create(
            JobState(
                job_id=job.job_id,
                status=BuildJobStatus.PAUSED,
                job=job,
                started_at=NOW,
                updated_at=NOW,
                approved=True,
                drive_attempts=1,
            )
        )
        owner = _owner(session_maker, scheduler, notifier, writer)

        result = await owner.start_job(job)

    assert result.duplicate is True
    assert scheduler.calls == [("job-123", 0.1)]


async def test_redelivered_running_or_unapproved_job_is_not_rearmed(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    running = make_job()
    paused = make_job(jobId="job-456")
    async with state_db() as session_maker:
        store = JobStateStore(session_maker)
        for job, status in ((running, BuildJobStatus.RUNNING), (paused, BuildJobStatus.PAUSED)):
            await store.create(
                JobState(
                    job_id=job.job_id,
                    status=status,
                    job=job,
                    started_at=NOW,
                    updated_at=NOW,
                    drive_attempts=1,
                )
            )
        owner = _owner(session_maker, scheduler, notifier, writer)
        other = BuildJobOwner(
            "job-456",
            store=store,
            scheduler=scheduler,
            notifier=notifier,
            write_collaborator=writer,
            clock=_Clock(),
        )

        assert (await owner.start_job(running)).duplicate is True
        assert (await other.start_job(paused)).duplicate is True

    assert scheduler.calls == []


class _HangingGenerator:
    def __init__(self) -> None:
        self.calls = 0
        self.release = asyncio.Event()

    async def generate(self, item, spec) -> GeneratedContent:
        self.calls += 1
        await self.release.wait()
        return GeneratedContent(content="export {};\n")


class _SlowGenerator:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    async def generate(self, item, spec) -> GeneratedContent:
        await asyncio.sleep(self.delay)
        return GeneratedContent(content="export const ok = true;\n", tokens_in=1, tokens_out=1)


async def test_hung_drive_is_failed_once_progress_stops(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    generator = _HangingGenerator()
    async with state_db() as session_maker:
        owner = _owner(
            session_maker,
            scheduler,
            notifier,
            writer,
            generation_collaborator=generator,
            config=OwnerConfig(stall_threshold_seconds=0.5),
        )
        await owner.start_job(make_job(specMarkdown=ROUTES_SPEC))

        await asyncio.wait_for(owner.wake_up(), timeout=10)
        state = await owner.get_status()
        await owner.wake_up()
        after_watchdog = await owner.get_status()

    assert generator.calls == 1
    assert owner.busy is False
    assert state.status is BuildJobStatus.FAILED
    assert state.error == "Stalled: drive made no progress for 0.5s"
    assert state.completed_items == ["docs/build-specs/widget-tracker.md"]
    assert notifier.statuses[-1] == "failed"
    assert notifier.statuses.count("failed") == 1
    assert after_watchdog.updated_at == state.updated_at


async def test_drive_that_keeps_persisting_progress_is_not_stalled(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        owner = _owner(
            session_maker,
            scheduler,
            notifier,
            writer,
            generation_collaborator=_SlowGenerator(0.2),
            config=OwnerConfig(stall_threshold_seconds=0.6),
        )
        await owner.start_job(make_job(specMarkdown=ROUTES_SPEC))

        await owner.wake_up()
        state = await owner.get_status()

    # Three generated items take longer than one stall window in total.
    assert state.status is BuildJobStatus.COMPLETE
    assert len(state.completed_items) == 4


async def test_registry_releases_owners_after_every_call(
    state_db, make_job, scheduler, notifier, writer
) -> None:
    async with state_db() as session_maker:
        registry = BuildJobOwnerRegistry(
            store=JobStateStore(session_maker),
            scheduler=scheduler,
            notifier=notifier,
            write_collaborator=writer,
            clock=_Clock(),
        )

        accepted = await registry.start_job(make_job(specMarkdown=DESTRUCTIVE_SPEC))
        rejected = await registry.start_job(
            make_job(jobId="job-456", budget={"maxTokens": 0, "maxDollars": 1.0})
        )
        await registry.wake_up("job-123")
        paused = await registry.get_status("job-123")
        with pytest.raises(JobStateNotFoundError):
            await registry.approve("job-789")
        await registry.approve("job-123")

    assert accepted.ok is True
    assert rejected.ok is False
    assert paused.status is BuildJobStatus.PAUSED
    assert len(registry) == 0
