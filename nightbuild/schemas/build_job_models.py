"""Pydantic schemas for build job messages, callbacks and REST endpoints."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from nightbuild.workflows.build_jobs.models import BuildJobStatus


class BuildPriority(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TrustLevel(str, enum.Enum):
    """How far a requester is allowed to take a build without a human."""

    OBSERVER = "observer"
    PLANNER = "planner"
    BUILDER = "builder"
    SHIPPER = "shipper"


class CallbackStatus(str, enum.Enum):
    """Status values reported to the requester's callback URL."""

    STARTED = "started"
    PLANNING = "planning"
    WRITING = "writing"
    TESTING = "testing"
    PR_OPEN = "pr_open"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    COMPLETE = "complete"
    FAILED = "failed"
    PAUSED_APPROVAL = "paused_approval"


class BudgetLimits(BaseModel):
    """Spending ceiling for one job."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    max_tokens: int = Field(..., alias="maxTokens")
    max_dollars: float = Field(..., alias="maxDollars")


class BuildJob(BaseModel):
    """Immutable build request as carried by the queue message body.

    String fields default to empty so that structurally incomplete messages
    still parse and are rejected by ``validate_job`` with a readable reason.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: str = Field("", alias="jobId")
    spec_id: str = Field("", alias="specId")
    user_id: str = Field("", alias="userId")
    target_repo_type: str = Field("custom", alias="targetRepoType")
    repo_owner: str = Field("", alias="repoOwner")
    repo_name: str = Field("", alias="repoName")
    base_branch: str = Field("main", alias="baseBranch")
    branch_prefix: str = Field("nightbuild/", alias="branchPrefix")
    spec_markdown: str = Field("", alias="specMarkdown")
    estimated_effort: str = Field("", alias="estimatedEffort")
    priority: BuildPriority = Field(BuildPriority.MEDIUM, alias="priority")
    callback_url: str = Field("", alias="callbackUrl")
    budget: BudgetLimits = Field(..., alias="budget")
    trust_level: Optional[TrustLevel] = Field(None, alias="trustLevel")
    queue_name: Optional[str] = Field(None, alias="queueName")

    @property
    def repository(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    def to_payload(self) -> dict[str, Any]:
        """Serialize back to the camelCase queue message body."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StatusUpdate(BaseModel):
    """Body POSTed to the callback URL on each status transition."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    status: CallbackStatus = Field(..., alias="status")
    step: Optional[str] = Field(None, alias="step")
    message: Optional[str] = Field(None, alias="message")
    pr_url: Optional[str] = Field(None, alias="prUrl")
    error: Optional[str] = Field(None, alias="error")


class WorkItemModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    path: str = Field(..., alias="path")
    description: str = Field(..., alias="description")


class WorkPlanModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    title: str = Field(..., alias="title")
    branch: str = Field(..., alias="branch")
    items: list[WorkItemModel] = Field(default_factory=list, alias="items")


class JobStateModel(BaseModel):
    """Serialized job state returned by the status endpoint."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    job_id: str = Field(..., alias="jobId")
    status: BuildJobStatus = Field(..., alias="status")
    plan: Optional[WorkPlanModel] = Field(None, alias="plan")
    completed_items: list[str] = Field(default_factory=list, alias="completedItems")
    result_url: Optional[str] = Field(None, alias="prUrl")
    deploy_url: Optional[str] = Field(None, alias="deployUrl")
    error: Optional[str] = Field(None, alias="error")
    tokens_used: int = Field(0, alias="tokensUsed")
    cost_estimate: float = Field(0.0, alias="costEstimate")
    approved: bool = Field(False, alias="approved")
    validation_warnings: list[str] = Field(
        default_factory=list, alias="validationWarnings"
    )
    started_at: datetime = Field(..., alias="startedAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class SubmitJobResponse(BaseModel):
    """Envelope returned when a job or an approval is enqueued."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    queued: bool = Field(True, alias="queued")
    task_id: Optional[str] = Field(None, alias="taskId")


class JobStateListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: list[JobStateModel] = Field(default_factory=list, alias="items")
