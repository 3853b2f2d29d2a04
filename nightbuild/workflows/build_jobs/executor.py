"""Per-drive build loop: plan, gate, generate, write, validate, review, open result."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Awaitable, Callable, Optional

from nightbuild.schemas.build_job_models import TrustLevel
from nightbuild.workflows.build_jobs.callbacks import JobCallbacks
from nightbuild.workflows.build_jobs.collaborators import (
    GenerationCollaborator,
    WriteCollaborator,
)
from nightbuild.workflows.build_jobs.contracts import (
    JobState,
    ReviewRecommendation,
    RiskReview,
    WorkItem,
    WorkPlan,
)
from nightbuild.workflows.build_jobs.models import BuildJobStatus
from nightbuild.workflows.build_jobs.planner import (
    ParsedSpec,
    append_pr_sections,
    build_work_plan,
    parse_spec_markdown,
    slugify,
)
from nightbuild.workflows.build_jobs.pricing import estimate_cost
from nightbuild.workflows.build_jobs.review import (
    ReviewCollaborator,
    format_risk_review_section,
    run_risk_review,
    scan_for_risks,
)
from nightbuild.workflows.build_jobs.safety import (
    check_branch_safety,
    check_budget,
    check_destructive_ops,
)
from nightbuild.workflows.build_jobs.storage import BuildArtifactStorage
from nightbuild.workflows.build_jobs.validation import (
    format_validation_warnings,
    validate_generated_files,
)

logger = logging.getLogger(__name__)

PersistState = Callable[[JobState], Awaitable[None]]

DEFAULT_COST_MODEL_ID = "anthropic/claude-sonnet-4.5"
_REFERENCE_DOC_PREFIX = "docs/"


async def fail_job(
    state: JobState,
    reason: str,
    *,
    persist: PersistState,
    callbacks: JobCallbacks,
) -> None:
    """Move ``state`` to failed, persist, then report the failure."""

    state.transition(BuildJobStatus.FAILED)
    state.error = reason
    await persist(state)
    logger.warning(
        "Build job %s failed: %s",
        state.job_id,
        reason,
        extra={"job_id": state.job_id, "status": state.status.value},
    )
    await callbacks.failed(reason)


class StepExecutor:
    """Runs one full drive of a build inside a single wake-up.

    Work already recorded in ``completed_items`` is skipped, so a re-drive
    after a crash resumes from the last persisted checkpoint.
    """

    def __init__(
        self,
        *,
        write_collaborator: WriteCollaborator,
        persist: PersistState,
        generation_collaborator: Optional[GenerationCollaborator] = None,
        review_collaborator: Optional[ReviewCollaborator] = None,
        artifact_storage: Optional[BuildArtifactStorage] = None,
        cost_model_id: str = DEFAULT_COST_MODEL_ID,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._writer = write_collaborator
        self._generator = generation_collaborator
        self._reviewer = review_collaborator
        self._storage = artifact_storage
        self._persist = persist
        self._cost_model_id = cost_model_id
        self._clock = clock

    async def _fail(self, state: JobState, callbacks: JobCallbacks, reason: str) -> None:
        await fail_job(state, reason, persist=self._persist, callbacks=callbacks)

    async def run(
        self, state: JobState, callbacks: JobCallbacks, *, first_drive: bool
    ) -> None:
        job = state.job
        if first_drive:
            await callbacks.started()
        await callbacks.planning()

        parsed = parse_spec_markdown(job.spec_markdown)
        plan = await self._plan(state, callbacks, parsed)
        if plan is None:
            return

        if not state.approved:
            destructive = check_destructive_ops(plan.items)
            if not destructive.allowed:
                state.transition(BuildJobStatus.PAUSED)
                await self._persist(state)
                logger.info(
                    "Build job %s paused for approval",
                    state.job_id,
                    extra={
                        "job_id": state.job_id,
                        "flagged_items": list(destructive.flagged_items),
                    },
                )
                await callbacks.paused_approval(
                    f"{destructive.reason}: {', '.join(destructive.flagged_items)}"
                )
                return

        if not (state.branch_created or state.completed_items):
            branch_result = await self._writer.create_branch(
                owner=job.repo_owner,
                repo=job.repo_name,
                branch=plan.branch,
                base_branch=job.base_branch,
            )
            if not branch_result.ok:
                await self._fail(
                    state, callbacks, f"Failed to create branch: {branch_result.error}"
                )
                return
            state.branch_created = True
            await self._persist(state)

        for item in plan.items:
            if item.path in state.completed_items:
                continue
            if not await self._write_item(state, callbacks, parsed, plan, item):
                return

        await callbacks.testing()
        code_items = [
            item for item in plan.items if not item.path.startswith(_REFERENCE_DOC_PREFIX)
        ]
        report = validate_generated_files(code_items)
        state.validation_warnings = report.warning_messages()
        await self._persist(state)
        if not report.passed:
            logger.info(
                "Build job %s has %d validation warnings",
                state.job_id,
                len(state.validation_warnings),
                extra={"job_id": state.job_id},
            )

        review = await self._review(state, parsed, code_items)
        if review is not None:
            if review.recommendation is ReviewRecommendation.REJECT:
                await self._fail(
                    state,
                    callbacks,
                    f"Risk review rejected build: {review.summary[:200]}",
                )
                return
            if review.recommendation is ReviewRecommendation.PAUSE and not state.approved:
                state.transition(BuildJobStatus.PAUSED)
                await self._persist(state)
                await callbacks.paused_approval(
                    f"Risk review flagged risks: {review.summary[:200]}"
                )
                return

        if state.result_url is None:
            pr_body = append_pr_sections(
                plan.pr_body,
                [format_validation_warnings(report), format_risk_review_section(review)],
            )
            opened = await self._writer.open_result(
                owner=job.repo_owner,
                repo=job.repo_name,
                branch=plan.branch,
                base_branch=job.base_branch,
                title=plan.title,
                body=pr_body,
            )
            if not opened.ok or not opened.url:
                await self._fail(
                    state,
                    callbacks,
                    f"Failed to open pull request: {opened.error or 'no URL returned'}",
                )
                return
            state.result_url = opened.url
            await self._persist(state)
        await callbacks.pr_open(state.result_url)

        if job.trust_level is TrustLevel.SHIPPER:
            await self._ship(state, callbacks)

        state.transition(BuildJobStatus.COMPLETE)
        await self._persist(state)
        logger.info(
            "Build job %s complete",
            state.job_id,
            extra={
                "job_id": state.job_id,
                "tokens_used": state.tokens_used,
                "cost_estimate": round(state.cost_estimate, 6),
            },
        )
        await callbacks.complete(state.result_url)

    async def _plan(
        self, state: JobState, callbacks: JobCallbacks, parsed: ParsedSpec
    ) -> Optional[WorkPlan]:
        if state.plan is not None:
            branch = state.plan.branch
        else:
            branch = f"{state.job.branch_prefix}{slugify(parsed.title)}"

        branch_check = check_branch_safety(branch)
        if not branch_check.allowed:
            await self._fail(state, callbacks, branch_check.reason or "Unsafe branch name")
            return None

        if state.plan is None:
            state.plan = build_work_plan(parsed, state.job.spec_markdown, branch)
            await self._persist(state)
        return state.plan

    async def _review(
        self, state: JobState, parsed: ParsedSpec, code_items: list[WorkItem]
    ) -> Optional[RiskReview]:
        findings = scan_for_risks(code_items)
        if not findings:
            return None
        review = await run_risk_review(
            findings, parsed.title, reviewed_at=self._clock(), reviewer=self._reviewer
        )
        state.risk_review = review
        await self._persist(state)
        logger.info(
            "Build job %s risk review: %s, %s",
            state.job_id,
            review.risk_level.value,
            review.recommendation.value,
            extra={"job_id": state.job_id, "flagged": len(findings)},
        )
        return review

    async def _write_item(
        self,
        state: JobState,
        callbacks: JobCallbacks,
        parsed: ParsedSpec,
        plan: WorkPlan,
        item: WorkItem,
    ) -> bool:
        job = state.job
        budget = check_budget(state.tokens_used, state.cost_estimate, job.budget)
        if not budget.allowed:
            await self._fail(state, callbacks, budget.reason or "Budget exceeded")
            return False

        await callbacks.writing(item.path)

        if self._generator is not None and not item.path.startswith(_REFERENCE_DOC_PREFIX):
            try:
                generated = await self._generator.generate(item, parsed)
            except Exception as exc:  # noqa: BLE001 - placeholder content is kept
                logger.warning(
                    "Generation failed for %s in job %s: %s",
                    item.path,
                    state.job_id,
                    exc,
                    extra={"job_id": state.job_id, "path": item.path},
                )
            else:
                item.content = generated.content
                state.tokens_used += generated.total_tokens
                state.cost_estimate += estimate_cost(
                    self._cost_model_id, generated.tokens_in, generated.tokens_out
                )
                # Writing is the committing step; do not land over-budget output.
                budget = check_budget(state.tokens_used, state.cost_estimate, job.budget)
                if not budget.allowed:
                    await self._fail(state, callbacks, budget.reason or "Budget exceeded")
                    return False

        written = await self._writer.write_file(
            owner=job.repo_owner,
            repo=job.repo_name,
            branch=plan.branch,
            path=item.path,
            content=item.content,
            message=f"[nightbuild] {plan.title}: {item.path}",
        )
        if not written.ok:
            await self._fail(state, callbacks, f"Failed to write {item.path}: {written.error}")
            return False

        state.completed_items.append(item.path)
        await self._persist(state)
        self._store_artifact(state.job_id, item)
        return True

    def _store_artifact(self, job_id: str, item: WorkItem) -> None:
        if self._storage is None:
            return
        try:
            self._storage.write_artifact(
                job_id=job_id, artifact_path=item.path, content=item.content
            )
        except (OSError, ValueError) as exc:
            logger.warning(
                "Failed to store artifact %s for job %s: %s",
                item.path,
                job_id,
                exc,
                extra={"job_id": job_id},
            )

    async def _ship(self, state: JobState, callbacks: JobCallbacks) -> None:
        job = state.job
        assert state.result_url is not None
        await callbacks.deploying(state.result_url)
        merged = await self._writer.merge_result(
            owner=job.repo_owner, repo=job.repo_name, result_url=state.result_url
        )
        if not merged.ok:
            logger.info(
                "Merge unavailable for job %s: %s",
                state.job_id,
                merged.error,
                extra={"job_id": state.job_id},
            )
            return
        if merged.url:
            state.deploy_url = merged.url
            await self._persist(state)
        await callbacks.deployed(state.result_url, state.deploy_url)
