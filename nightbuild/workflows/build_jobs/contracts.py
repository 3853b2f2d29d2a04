"""Domain records exchanged between the build job components."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from nightbuild.schemas.build_job_models import BuildJob
from nightbuild.workflows.build_jobs.models import BuildJobStatus


class BuildJobError(Exception):
    """Base class for build job domain errors."""


class JobStateTransitionError(BuildJobError):
    """Raised when a status change would violate the job lifecycle."""

    def __init__(self, job_id: str, current: BuildJobStatus, target: BuildJobStatus) -> None:
        super().__init__(
            f"Job {job_id} cannot move from {current.value} to {target.value}"
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class JobStateNotFoundError(BuildJobError):
    """Raised when an operation needs persisted state that does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} was not found")
        self.job_id = job_id


class BuildJobAuthenticationError(BuildJobError):
    """Raised when an API caller presents no valid credentials."""


class BuildJobAuthorizationError(BuildJobError):
    """Raised when an authenticated caller may not perform the action."""


_ALLOWED_TRANSITIONS: dict[BuildJobStatus, frozenset[BuildJobStatus]] = {
    BuildJobStatus.QUEUED: frozenset({BuildJobStatus.RUNNING, BuildJobStatus.FAILED}),
    BuildJobStatus.RUNNING: frozenset(
        {
            BuildJobStatus.RUNNING,
            BuildJobStatus.PAUSED,
            BuildJobStatus.COMPLETE,
            BuildJobStatus.FAILED,
        }
    ),
    BuildJobStatus.PAUSED: frozenset({BuildJobStatus.RUNNING, BuildJobStatus.FAILED}),
    BuildJobStatus.COMPLETE: frozenset(),
    BuildJobStatus.FAILED: frozenset(),
}


def can_transition(current: BuildJobStatus, target: BuildJobStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class SafetyCheckResult:
    """Outcome of one safety gate check."""

    allowed: bool
    reason: Optional[str] = None
    flagged_items: tuple[str, ...] = ()

    @classmethod
    def ok(cls) -> "SafetyCheckResult":
        return cls(allowed=True)

    @classmethod
    def reject(
        cls, reason: str, flagged_items: tuple[str, ...] = ()
    ) -> "SafetyCheckResult":
        return cls(allowed=False, reason=reason, flagged_items=flagged_items)


@dataclass(slots=True)
class WorkItem:
    """One file-level change. ``content`` starts as a placeholder."""

    path: str
    content: str
    description: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "content": self.content, "description": self.description}


@dataclass(slots=True)
class WorkPlan:
    """Ordered file changes for one job; item paths are unique."""

    title: str
    branch: str
    items: list[WorkItem]
    pr_body: str

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for item in self.items:
            if item.path in seen:
                raise ValueError(f"duplicate work item path: {item.path}")
            seen.add(item.path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "branch": self.branch,
            "items": [item.to_dict() for item in self.items],
            "prBody": self.pr_body,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkPlan":
        return cls(
            title=data["title"],
            branch=data["branch"],
            items=[
                WorkItem(
                    path=item["path"],
                    content=item.get("content", ""),
                    description=item.get("description", ""),
                )
                for item in data.get("items", [])
            ],
            pr_body=data.get("prBody", ""),
        )


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANKS[self]


_RISK_RANKS = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class ReviewRecommendation(str, enum.Enum):
    PROCEED = "proceed"
    PAUSE = "pause"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class RiskReview:
    """Verdict of the post-generation risk review."""

    risk_level: RiskLevel
    summary: str
    flagged_items: tuple[str, ...]
    recommendation: ReviewRecommendation
    reviewed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "riskLevel": self.risk_level.value,
            "summary": self.summary,
            "flaggedItems": list(self.flagged_items),
            "recommendation": self.recommendation.value,
            "reviewedAt": self.reviewed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RiskReview":
        return cls(
            risk_level=RiskLevel(data["riskLevel"]),
            summary=data.get("summary", ""),
            flagged_items=tuple(data.get("flaggedItems", ())),
            recommendation=ReviewRecommendation(data["recommendation"]),
            reviewed_at=datetime.fromisoformat(data["reviewedAt"]),
        )


@dataclass(slots=True)
class JobState:
    """Authoritative mutable state of one job, owned by a single job owner."""

    job_id: str
    status: BuildJobStatus
    job: BuildJob
    started_at: datetime
    updated_at: datetime
    plan: Optional[WorkPlan] = None
    completed_items: list[str] = field(default_factory=list)
    result_url: Optional[str] = None
    deploy_url: Optional[str] = None
    error: Optional[str] = None
    tokens_used: int = 0
    cost_estimate: float = 0.0
    approved: bool = False
    validation_warnings: list[str] = field(default_factory=list)
    drive_attempts: int = 0
    branch_created: bool = False
    risk_review: Optional[RiskReview] = None

    def transition(self, target: BuildJobStatus) -> None:
        if not can_transition(self.status, target):
            raise JobStateTransitionError(self.job_id, self.status, target)
        self.status = target


@dataclass(frozen=True, slots=True)
class StartJobResult:
    """Answer of ``start_job``; ``ok=False`` is a business rejection."""

    ok: bool
    error: Optional[str] = None
    duplicate: bool = False


@dataclass(frozen=True, slots=True)
class QueueOutcome:
    """Per-message dispatch result, for observability only."""

    job_id: str
    ok: bool
    duration_ms: int
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jobId": self.job_id,
            "ok": self.ok,
            "durationMs": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True, slots=True)
class DeadLetterRecord:
    """A message removed from the retry path, archived for inspection."""

    job: Any
    error: str
    attempts: int
    failed_at: datetime

    @property
    def job_id(self) -> str:
        if isinstance(self.job, BuildJob):
            return self.job.job_id or "unknown"
        if isinstance(self.job, dict):
            return str(self.job.get("jobId") or "unknown")
        return "unknown"

    def to_dict(self) -> dict[str, Any]:
        job = self.job.to_payload() if isinstance(self.job, BuildJob) else self.job
        return {
            "job": job,
            "error": self.error,
            "attempts": self.attempts,
            "failedAt": int(self.failed_at.timestamp() * 1000),
        }
