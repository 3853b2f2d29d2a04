"""Safety gate for build jobs.

Every check is a pure function of its inputs so that it can be re-evaluated
after a crash or a resume and give the same answer.
"""

from __future__ import annotations

import re
from typing import Iterable
from urllib.parse import urlsplit

from nightbuild.schemas.build_job_models import BudgetLimits, BuildJob
from nightbuild.workflows.build_jobs.contracts import SafetyCheckResult, WorkItem

_OWNER_REPO_SEGMENT = re.compile(r"^[A-Za-z0-9_.-]+$")

PROTECTED_BRANCHES: frozenset[str] = frozenset(
    {"main", "master", "develop", "production", "staging", "release", "gh-pages", "head"}
)
_PROTECTED_BRANCH_PREFIXES: tuple[str, ...] = ("release/", "refs/")
_INVALID_REF_CHARS = re.compile(r"[\s~^:?*\[\\]")

# (category, signature) pairs; a match anywhere in an item's content flags it.
DESTRUCTIVE_SIGNATURES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("database", re.compile(r"\bDROP\s+TABLE\b(?!\s+IF\s+EXISTS)", re.IGNORECASE)),
    ("database", re.compile(r"\bDROP\s+(?:DATABASE|SCHEMA)\b", re.IGNORECASE)),
    ("database", re.compile(r"\bTRUNCATE\s+TABLE\b", re.IGNORECASE)),
    ("database", re.compile(r"\bDELETE\s+FROM\s+[\w.\"`]+\s*;", re.IGNORECASE)),
    ("filesystem", re.compile(r"\brm\s+-(?:rf|fr|r\s+-f|f\s+-r)\b", re.IGNORECASE)),
    ("filesystem", re.compile(r"\bshutil\.rmtree\s*\(")),
    ("git", re.compile(r"\bgit\s+push\b[^\n]*(?:--force\b|\s-f\b)", re.IGNORECASE)),
    ("git", re.compile(r"\bgit\s+reset\s+--hard\b", re.IGNORECASE)),
)


def validate_job(job: BuildJob) -> SafetyCheckResult:
    """Reject structurally invalid jobs. Failures here are never retried."""

    required = (
        ("jobId", job.job_id),
        ("specId", job.spec_id),
        ("specMarkdown", job.spec_markdown),
        ("repoOwner", job.repo_owner),
        ("repoName", job.repo_name),
    )
    missing = [name for name, value in required if not value or not value.strip()]
    if missing:
        return SafetyCheckResult.reject(f"Missing required fields: {', '.join(missing)}")

    for name, value in (("repoOwner", job.repo_owner), ("repoName", job.repo_name)):
        if not _OWNER_REPO_SEGMENT.match(value):
            return SafetyCheckResult.reject(f"{name} contains invalid characters: {value!r}")

    callback = job.callback_url.strip()
    if not callback:
        return SafetyCheckResult.reject("Missing callbackUrl")
    parts = urlsplit(callback)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        return SafetyCheckResult.reject(f"callbackUrl must be an http(s) URL: {callback!r}")

    if job.budget.max_tokens < 0 or job.budget.max_dollars < 0:
        return SafetyCheckResult.reject("Budget limits must not be negative")

    return SafetyCheckResult.ok()


def check_budget(
    tokens_used: int, cost_estimate: float, limits: BudgetLimits
) -> SafetyCheckResult:
    """Reject once either running total meets or exceeds its limit."""

    if tokens_used >= limits.max_tokens:
        return SafetyCheckResult.reject(
            f"Token budget exceeded: {tokens_used}/{limits.max_tokens}"
        )
    if cost_estimate >= limits.max_dollars:
        return SafetyCheckResult.reject(
            f"Cost budget exceeded: ${cost_estimate:.4f}/${limits.max_dollars:.2f}"
        )
    return SafetyCheckResult.ok()


def check_destructive_ops(items: Iterable[WorkItem]) -> SafetyCheckResult:
    """Flag items whose content matches a destructive signature.

    The offending paths are returned instead of a hard failure so the caller
    can pause for approval.
    """

    flagged: list[str] = []
    categories: list[str] = []
    for item in items:
        for category, signature in DESTRUCTIVE_SIGNATURES:
            if signature.search(item.content):
                if item.path not in flagged:
                    flagged.append(item.path)
                if category not in categories:
                    categories.append(category)

    if not flagged:
        return SafetyCheckResult.ok()
    return SafetyCheckResult.reject(
        f"Destructive operations detected ({', '.join(categories)})",
        flagged_items=tuple(flagged),
    )


def check_branch_safety(branch_name: str) -> SafetyCheckResult:
    """Reject branch names that collide with protected or malformed refs."""

    name = branch_name.strip()
    if not name:
        return SafetyCheckResult.reject("Branch name is empty")
    if name.lower() in PROTECTED_BRANCHES:
        return SafetyCheckResult.reject(f"Branch {name!r} is protected")
    if name.lower().startswith(_PROTECTED_BRANCH_PREFIXES):
        return SafetyCheckResult.reject(f"Branch {name!r} is under a protected namespace")
    if (
        name != branch_name
        or ".." in name
        or "@{" in name
        or _INVALID_REF_CHARS.search(name)
        or name.startswith(("/", "-", "."))
        or name.endswith(("/", ".", ".lock"))
        or "//" in name
    ):
        return SafetyCheckResult.reject(f"Branch {name!r} is not a valid ref name")
    return SafetyCheckResult.ok()
