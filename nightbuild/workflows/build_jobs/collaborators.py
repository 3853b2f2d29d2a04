"""Contracts for the external generation and write collaborators.

Collaborator calls report failure through ``CollaboratorResult`` rather than
raising, so the executor decides whether a failure is fatal. A generation
collaborator may raise; the executor treats that as a per-item degradation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from importlib import import_module
from typing import TYPE_CHECKING, Any, Optional, Protocol

from nightbuild.workflows.build_jobs.contracts import WorkItem
from nightbuild.workflows.build_jobs.storage import BuildArtifactStorage

if TYPE_CHECKING:
    from nightbuild.workflows.build_jobs.planner import ParsedSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CollaboratorResult:
    ok: bool
    error: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def success(cls, url: Optional[str] = None) -> "CollaboratorResult":
        return cls(ok=True, url=url)

    @classmethod
    def failure(cls, error: str) -> "CollaboratorResult":
        return cls(ok=False, error=error)


@dataclass(frozen=True, slots=True)
class GeneratedContent:
    content: str
    tokens_in: int = 0
    tokens_out: int = 0

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out


class GenerationCollaborator(Protocol):
    """Produces file content for a single work item."""

    async def generate(self, item: WorkItem, spec: "ParsedSpec") -> GeneratedContent: ...


class WriteCollaborator(Protocol):
    """Lands work items on a branch and opens the reviewable result."""

    async def create_branch(
        self, *, owner: str, repo: str, branch: str, base_branch: str
    ) -> CollaboratorResult: ...

    async def write_file(
        self,
        *,
        owner: str,
        repo: str,
        branch: str,
        path: str,
        content: str,
        message: str,
    ) -> CollaboratorResult: ...

    async def open_result(
        self,
        *,
        owner: str,
        repo: str,
        branch: str,
        base_branch: str,
        title: str,
        body: str,
    ) -> CollaboratorResult: ...

    async def merge_result(
        self, *, owner: str, repo: str, result_url: str
    ) -> CollaboratorResult: ...


class DryRunWriteCollaborator:
    """Write collaborator that lands files in local storage instead of a forge.

    Each branch becomes one artifact directory keyed by owner, repo and branch;
    the "pull request" is a markdown file inside it.
    """

    def __init__(self, storage: BuildArtifactStorage) -> None:
        self._storage = storage

    @staticmethod
    def _namespace(owner: str, repo: str, branch: str) -> str:
        return f"dry-run/{owner}/{repo}/{branch.replace('/', '__')}"

    async def create_branch(
        self, *, owner: str, repo: str, branch: str, base_branch: str
    ) -> CollaboratorResult:
        try:
            self._storage.write_artifact(
                job_id=self._namespace(owner, repo, branch),
                artifact_path="BRANCH",
                content=f"{branch} from {base_branch}\n",
            )
        except (OSError, ValueError) as exc:
            return CollaboratorResult.failure(str(exc))
        return CollaboratorResult.success()

    async def write_file(
        self,
        *,
        owner: str,
        repo: str,
        branch: str,
        path: str,
        content: str,
        message: str,
    ) -> CollaboratorResult:
        try:
            self._storage.write_artifact(
                job_id=self._namespace(owner, repo, branch),
                artifact_path=f"tree/{path}",
                content=content,
            )
        except (OSError, ValueError) as exc:
            return CollaboratorResult.failure(str(exc))
        logger.debug("Dry-run write %s on %s: %s", path, branch, message)
        return CollaboratorResult.success()

    async def open_result(
        self,
        *,
        owner: str,
        repo: str,
        branch: str,
        base_branch: str,
        title: str,
        body: str,
    ) -> CollaboratorResult:
        namespace = self._namespace(owner, repo, branch)
        try:
            self._storage.write_artifact(
                job_id=namespace,
                artifact_path="PULL_REQUEST.md",
                content=f"# {title}\n\nInto: {base_branch}\n\n{body}\n",
            )
            path = self._storage.resolve_artifact_path(namespace, "PULL_REQUEST.md")
        except (OSError, ValueError) as exc:
            return CollaboratorResult.failure(str(exc))
        return CollaboratorResult.success(url=path.as_uri())

    async def merge_result(
        self, *, owner: str, repo: str, result_url: str
    ) -> CollaboratorResult:
        return CollaboratorResult.failure("dry-run results cannot be merged")


def load_collaborator(import_path: str, **kwargs: Any) -> Any:
    """Instantiate a collaborator from ``package.module:Factory``.

    A dotted path without a colon is split on its last dot.
    """

    if ":" in import_path:
        module_name, attr = import_path.split(":", 1)
    else:
        module_name, _, attr = import_path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Invalid collaborator import path: {import_path!r}")
    factory = getattr(import_module(module_name), attr)
    return factory(**kwargs)
