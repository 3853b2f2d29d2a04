"""Unit tests for queue message dispatch, retries and dead-lettering."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import pytest

from nightbuild.workflows.build_jobs.dispatcher import BuildJobDispatcher
from nightbuild.workflows.build_jobs.models import BuildJobStatus
from nightbuild.workflows.build_jobs.owner import BuildJobOwnerRegistry
from nightbuild.workflows.build_jobs.repositories import JobStateStore
from nightbuild.workflows.build_jobs.storage import BuildArtifactStorage

pytestmark = [pytest.mark.asyncio]

FAILED_AT = datetime(2026, 5, 4, 1, 2, 3, tzinfo=UTC)


@dataclass
class _Message:
    body: Any
    attempts: int = 0
    acked: bool = False
    retried: bool = False

    def ack(self) -> None:
        self.acked = True

    def retry(self) -> None:
        self.retried = True


def _registry(session_maker, scheduler, notifier, writer) -> BuildJobOwnerRegistry:
    return BuildJobOwnerRegistry(
        store=JobStateStore(session_maker),
        scheduler=scheduler,
        notifier=notifier,
        write_collaborator=writer,
    )


def _dispatcher(registry, storage, **kwargs) -> BuildJobDispatcher:
    kwargs.setdefault("clock", lambda: FAILED_AT)
    return BuildJobDispatcher(registry, storage, **kwargs)


def _dead_letters(storage: BuildArtifactStorage, job_id: str) -> list[dict[str, Any]]:
    return [json.loads(path.read_text()) for path in storage.list_dead_letters(job_id)]


async def test_valid_message_starts_job_and_acks(
    tmp_path, state_db, make_payload, scheduler, notifier, writer
) -> None:
    storage = BuildArtifactStorage(tmp_path)
    message = _Message(make_payload())

    async with state_db() as session_maker:
        registry = _registry(session_maker, scheduler, notifier, writer)
        outcome = await _dispatcher(registry, storage).dispatch(message)
        state = await registry.get_status("job-123")

    assert outcome.ok is True
    assert outcome.job_id == "job-123"
    assert outcome.duration_ms >= 0
    assert message.acked is True
    assert message.retried is False
    assert state.status is BuildJobStatus.QUEUED
    assert scheduler.calls == [("job-123", 0.1)]


async def test_malformed_message_is_dead_lettered_without_state(
    tmp_path, state_db, scheduler, notifier, writer
) -> None:
    storage = BuildArtifactStorage(tmp_path)
    message = _Message({"jobId": "job-bad", "budget": "lots"})

    async with state_db() as session_maker:
        registry = _registry(session_maker, scheduler, notifier, writer)
        outcome = await _dispatcher(registry, storage).dispatch(message)
        state = await registry.get_status("job-bad")

    assert outcome.ok is False
    assert outcome.error.startswith("Malformed job message")
    assert message.acked is True
    assert state is None
    [record] = _dead_letters(storage, "job-bad")
    assert record["job"] == {"jobId": "job-bad", "budget": "lots"}
    assert record["attempts"] == 1
    assert record["failedAt"] == int(FAILED_AT.timestamp() * 1000)


async def test_invalid_job_is_dead_lettered_and_never_started(
    tmp_path, state_db, make_payload, scheduler, notifier, writer
) -> None:
    storage = BuildArtifactStorage(tmp_path)
    message = _Message(make_payload(specMarkdown=""))

    async with state_db() as session_maker:
        registry = _registry(session_maker, scheduler, notifier, writer)
        outcome = await _dispatcher(registry, storage).dispatch(message)
        state = await registry.get_status("job-123")

    assert outcome.ok is False
    assert "specMarkdown" in outcome.error
    assert message.acked is True
    assert state is None
    assert scheduler.calls == []
    assert notifier.updates == []
    [record] = _dead_letters(storage, "job-123")
    assert record["job"]["jobId"] == "job-123"
    assert "specMarkdown" in record["error"]


async def test_finished_job_redelivery_is_rejected(
    tmp_path, state_db, make_payload, scheduler, notifier, writer
) -> None:
    storage = BuildArtifactStorage(tmp_path)

    async with state_db() as session_maker:
        registry = _registry(session_maker, scheduler, notifier, writer)
        dispatcher = _dispatcher(registry, storage)
        await dispatcher.dispatch(_Message(make_payload()))
        await registry.wake_up("job-123")

        redelivery = _Message(make_payload())
        outcome = await dispatcher.dispatch(redelivery)

    assert outcome.ok is False
    assert outcome.error == "Job job-123 already complete"
    assert redelivery.acked is True
    assert len(_dead_letters(storage, "job-123")) == 1


async def test_in_flight_redelivery_is_acknowledged(
    tmp_path, state_db, make_payload, scheduler, notifier, writer
) -> None:
    storage = BuildArtifactStorage(tmp_path)

    async with state_db() as session_maker:
        registry = _registry(session_maker, scheduler, notifier, writer)
        dispatcher = _dispatcher(registry, storage)
        await dispatcher.dispatch(_Message(make_payload()))
        outcome = await dispatcher.dispatch(_Message(make_payload(), attempts=1))

    assert outcome.ok is True
    assert storage.list_dead_letters("job-123") == []


class _FailingOwner:
    def __init__(self, exc: BaseException | None = None, delay: float = 0.0) -> None:
        self.exc = exc
        self.delay = delay

    async def start_job(self, job):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc


class _StubRegistry:
    def __init__(self, owner) -> None:
        self.owner = owner

    async def start_job(self, job):
        return await self.owner.start_job(job)


async def test_exception_is_retried_while_attempts_remain(tmp_path, make_payload) -> None:
    storage = BuildArtifactStorage(tmp_path)
    dispatcher = _dispatcher(
        _StubRegistry(_FailingOwner(RuntimeError("database down"))),
        storage,
        max_retries=3,
    )
    message = _Message(make_payload(), attempts=0)

    outcome = await dispatcher.dispatch(message)

    assert outcome.ok is False
    assert outcome.error == "RuntimeError: database down"
    assert message.retried is True
    assert message.acked is False
    assert storage.list_dead_letters("job-123") == []


async def test_exception_on_last_attempt_is_dead_lettered(tmp_path, make_payload) -> None:
    storage = BuildArtifactStorage(tmp_path)
    dispatcher = _dispatcher(
        _StubRegistry(_FailingOwner(RuntimeError("database down"))),
        storage,
        max_retries=3,
    )
    message = _Message(make_payload(), attempts=2)

    outcome = await dispatcher.dispatch(message)

    assert outcome.ok is False
    assert message.acked is True
    assert message.retried is False
    [record] = _dead_letters(storage, "job-123")
    assert record["attempts"] == 3
    assert record["error"] == "RuntimeError: database down"


async def test_dispatch_timeout_counts_as_retryable_failure(tmp_path, make_payload) -> None:
    storage = BuildArtifactStorage(tmp_path)
    dispatcher = _dispatcher(
        _StubRegistry(_FailingOwner(delay=1.0)),
        storage,
        dispatch_timeout_seconds=0.01,
    )
    message = _Message(make_payload())

    outcome = await dispatcher.dispatch(message)

    assert outcome.ok is False
    assert outcome.error.startswith("Dispatch timed out")
    assert message.retried is True


async def test_dispatch_batch_reports_each_message(
    tmp_path, state_db, make_payload, scheduler, notifier, writer
) -> None:
    storage = BuildArtifactStorage(tmp_path)
    messages = [
        _Message(make_payload(jobId="job-a")),
        _Message("not a job"),
        _Message(make_payload(jobId="job-b")),
    ]

    async with state_db() as session_maker:
        registry = _registry(session_maker, scheduler, notifier, writer)
        outcomes = await _dispatcher(registry, storage).dispatch_batch(messages)

    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert [outcome.job_id for outcome in outcomes] == ["job-a", "unknown", "job-b"]
    assert all(message.acked for message in messages)
    assert outcomes[1].to_dict()["error"].startswith("Malformed job message")


class _SchedulerDownOnce:
    def __init__(self) -> None:
        self.calls: list[tuple[str, float]] = []
        self.failures = 0

    def schedule(self, job_id: str, delay_seconds: float) -> None:
        if not self.failures:
            self.failures += 1
            raise ConnectionError("broker unavailable")
        self.calls.append((job_id, delay_seconds))


async def test_redelivery_rearms_wake_up_lost_to_scheduler_failure(
    tmp_path, state_db, make_payload, notifier, writer
) -> None:
    storage = BuildArtifactStorage(tmp_path)
    scheduler = _SchedulerDownOnce()

    async with state_db() as session_maker:
        registry = _registry(session_maker, scheduler, notifier, writer)
        dispatcher = _dispatcher(registry, storage)
        first = _Message(make_payload())
        first_outcome = await dispatcher.dispatch(first)
        second = _Message(make_payload(), attempts=1)
        second_outcome = await dispatcher.dispatch(second)
        state = await registry.get_status("job-123")

    assert first_outcome.ok is False
    assert first.retried is True
    assert second_outcome.ok is True
    assert second.acked is True
    assert state.status is BuildJobStatus.QUEUED
    assert scheduler.calls == [("job-123", 0.1)]


class _BrokenDeadLetterStorage(BuildArtifactStorage):
    def write_dead_letter(self, record) -> str:
        raise OSError("disk full")


async def test_dead_letter_write_failure_still_acks(tmp_path, make_payload) -> None:
    storage = _BrokenDeadLetterStorage(tmp_path)
    dispatcher = _dispatcher(_StubRegistry(_FailingOwner()), storage)
    message = _Message(make_payload(jobId="", specId=""))

    outcome = await dispatcher.dispatch(message)

    assert outcome.ok is False
    assert outcome.error
    assert message.acked is True
    assert message.retried is False
