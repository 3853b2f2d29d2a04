import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api_service.db.models import Base
from nightbuild.schemas.build_job_models import BuildJob, StatusUpdate
from nightbuild.workflows.build_jobs import models as build_job_models  # noqa: F401
from nightbuild.workflows.build_jobs.callbacks import CallbackNotifier
from nightbuild.workflows.build_jobs.collaborators import CollaboratorResult


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "asyncio: mark a test as requiring an asyncio event loop",
    )


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute `@pytest.mark.asyncio` tests without requiring pytest-asyncio."""

    if "asyncio" not in pyfuncitem.keywords:
        return None

    test_function = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_function):
        return None

    signature = inspect.signature(test_function)
    bound_args = {
        name: pyfuncitem.funcargs[name]
        for name in signature.parameters
        if name in pyfuncitem.funcargs
    }

    asyncio.run(test_function(**bound_args))
    return True


def job_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "jobId": "job-123",
        "specId": "spec-9",
        "userId": "user-1",
        "targetRepoType": "custom",
        "repoOwner": "acme",
        "repoName": "widgets",
        "baseBranch": "main",
        "branchPrefix": "nightbuild/",
        "specMarkdown": "# Widget Tracker\n\n## Overview\nTrack widgets.\n",
        "estimatedEffort": "2h",
        "priority": "medium",
        "callbackUrl": "https://hooks.example.com/build-status",
        "budget": {"maxTokens": 100000, "maxDollars": 5.0},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_payload():
    return job_payload


@pytest.fixture
def make_job():
    def _make(**overrides: Any) -> BuildJob:
        return BuildJob.model_validate(job_payload(**overrides))

    return _make


@pytest.fixture
def state_db(tmp_path):
    """Factory for an isolated sqlite database holding build job state."""

    @asynccontextmanager
    async def _open():
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path}/build_jobs.db", future=True
        )
        session_maker = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            yield session_maker
        finally:
            await engine.dispose()

    return _open


class RecordingScheduler:
    def __init__(self) -> None:
        self.calls: list[tuple[str, float]] = []

    def schedule(self, job_id: str, delay_seconds: float) -> None:
        self.calls.append((job_id, delay_seconds))


class RecordingNotifier(CallbackNotifier):
    def __init__(self) -> None:
        super().__init__()
        self.updates: list[StatusUpdate] = []

    async def notify(
        self, callback_url: str, update: StatusUpdate, secret: Optional[str] = None
    ) -> bool:
        self.updates.append(update)
        return True

    @property
    def statuses(self) -> list[str]:
        return [update.status.value for update in self.updates]


class FakeWriter:
    """Write collaborator double recording every call."""

    def __init__(self, *, fail_on_path: Optional[str] = None) -> None:
        self.fail_on_path = fail_on_path
        self.branch_result = CollaboratorResult.success()
        self.open_result_value = CollaboratorResult.success(
            url="https://github.com/acme/widgets/pull/7"
        )
        self.merge_result_value = CollaboratorResult.failure("auto-merge disabled")
        self.branches: list[str] = []
        self.written: list[tuple[str, str]] = []
        self.opened: list[dict[str, str]] = []
        self.merged: list[str] = []

    async def create_branch(self, *, owner, repo, branch, base_branch):
        self.branches.append(branch)
        return self.branch_result

    async def write_file(self, *, owner, repo, branch, path, content, message):
        if path == self.fail_on_path:
            return CollaboratorResult.failure("permission denied")
        self.written.append((path, content))
        return CollaboratorResult.success()

    async def open_result(self, *, owner, repo, branch, base_branch, title, body):
        self.opened.append({"branch": branch, "title": title, "body": body})
        return self.open_result_value

    async def merge_result(self, *, owner, repo, result_url):
        self.merged.append(result_url)
        return self.merge_result_value


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def writer() -> FakeWriter:
    return FakeWriter()
