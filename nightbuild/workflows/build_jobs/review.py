"""Post-generation risk review of the files a build is about to propose.

Generated content is scanned line by line for risky patterns. The overall
risk level decides the recommendation unless an optional review
collaborator gives an explicit verdict.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence

from nightbuild.workflows.build_jobs.contracts import (
    ReviewRecommendation,
    RiskLevel,
    RiskReview,
    WorkItem,
)

logger = logging.getLogger(__name__)

_SNIPPET_LENGTH = 120
_SUMMARY_LENGTH = 500

RISKY_PATTERNS: tuple[tuple[re.Pattern[str], str, RiskLevel], ...] = (
    (re.compile(r"DROP\s+TABLE", re.IGNORECASE), "database", RiskLevel.CRITICAL),
    (re.compile(r"DROP\s+DATABASE", re.IGNORECASE), "database", RiskLevel.CRITICAL),
    (re.compile(r"TRUNCATE\s+TABLE", re.IGNORECASE), "database", RiskLevel.HIGH),
    (re.compile(r"DELETE\s+FROM\s+\w+\s*;", re.IGNORECASE), "database", RiskLevel.HIGH),
    (re.compile(r"ALTER\s+TABLE\s+\w+\s+DROP", re.IGNORECASE), "database", RiskLevel.MEDIUM),
    (re.compile(r"--force", re.IGNORECASE), "git", RiskLevel.HIGH),
    (re.compile(r"--hard", re.IGNORECASE), "git", RiskLevel.HIGH),
    (re.compile(r"rm\s+-rf", re.IGNORECASE), "filesystem", RiskLevel.CRITICAL),
    (re.compile(r"process\.exit", re.IGNORECASE), "runtime", RiskLevel.MEDIUM),
    (re.compile(r"eval\s*\(", re.IGNORECASE), "security", RiskLevel.HIGH),
    (re.compile(r"Function\s*\(", re.IGNORECASE), "security", RiskLevel.MEDIUM),
    (re.compile(r"child_process", re.IGNORECASE), "security", RiskLevel.HIGH),
    (re.compile(r"\.env\b", re.IGNORECASE), "security", RiskLevel.MEDIUM),
    (re.compile(r"SECRET|PASSWORD|TOKEN", re.IGNORECASE), "secrets", RiskLevel.MEDIUM),
)

_CATEGORY_SUMMARIES = (
    (
        "database",
        "Destructive database operations detected. Verify migrations have "
        "IF EXISTS guards and backups are in place.",
    ),
    (
        "security",
        "Security-sensitive patterns found (eval, child_process, or env access). "
        "Review for injection vectors.",
    ),
    (
        "secrets",
        "Potential secret or credential references detected. Verify no hardcoded values.",
    ),
    (
        "filesystem",
        "Destructive filesystem operations detected (rm -rf). Verify paths are constrained.",
    ),
    ("git", "Force or hard git operations detected. Verify branch targeting."),
)


@dataclass(frozen=True, slots=True)
class RiskFinding:
    """One risky line in one generated file."""

    path: str
    pattern: str
    category: str
    severity: RiskLevel
    line_snippet: str

    def describe(self) -> str:
        return f"{self.path}: {self.category} ({self.severity.value}) - {self.line_snippet}"


class ReviewCollaborator(Protocol):
    """Second opinion on flagged findings, typically backed by a model.

    The returned text should end with PROCEED, PAUSE or REJECT.
    """

    async def review(self, findings: Sequence[RiskFinding], title: str) -> str: ...


def scan_for_risks(items: Iterable[WorkItem]) -> list[RiskFinding]:
    findings: list[RiskFinding] = []
    for item in items:
        lines = item.content.split("\n")
        for pattern, category, severity in RISKY_PATTERNS:
            for line in lines:
                if pattern.search(line):
                    findings.append(
                        RiskFinding(
                            path=item.path,
                            pattern=pattern.pattern,
                            category=category,
                            severity=severity,
                            line_snippet=line.strip()[:_SNIPPET_LENGTH],
                        )
                    )
    return findings


def assess_risk_level(findings: Sequence[RiskFinding]) -> RiskLevel:
    if not findings:
        return RiskLevel.LOW
    return max((finding.severity for finding in findings), key=lambda level: level.rank)


def _default_recommendation(risk_level: RiskLevel) -> ReviewRecommendation:
    if risk_level is RiskLevel.CRITICAL:
        return ReviewRecommendation.REJECT
    if risk_level is RiskLevel.HIGH:
        return ReviewRecommendation.PAUSE
    return ReviewRecommendation.PROCEED


def parse_recommendation(text: str, risk_level: RiskLevel) -> ReviewRecommendation:
    """Read the verdict out of free-form review text.

    The strictest verdict mentioned wins; without one the risk level decides.
    """

    upper = text.upper()
    for recommendation in (
        ReviewRecommendation.REJECT,
        ReviewRecommendation.PAUSE,
        ReviewRecommendation.PROCEED,
    ):
        if recommendation.value.upper() in upper:
            return recommendation
    return _default_recommendation(risk_level)


def build_rule_based_review(
    findings: Sequence[RiskFinding], *, reviewed_at: datetime
) -> RiskReview:
    risk_level = assess_risk_level(findings)
    categories = {finding.category for finding in findings}
    summary = " ".join(
        text for category, text in _CATEGORY_SUMMARIES if category in categories
    )
    return RiskReview(
        risk_level=risk_level,
        summary=summary or "Minor risks detected, within acceptable thresholds.",
        flagged_items=tuple(finding.describe() for finding in findings),
        recommendation=_default_recommendation(risk_level),
        reviewed_at=reviewed_at,
    )


async def run_risk_review(
    findings: Sequence[RiskFinding],
    title: str,
    *,
    reviewed_at: datetime,
    reviewer: Optional[ReviewCollaborator] = None,
) -> RiskReview:
    """Review ``findings``, falling back to the rules when the reviewer fails."""

    if reviewer is None:
        return build_rule_based_review(findings, reviewed_at=reviewed_at)

    risk_level = assess_risk_level(findings)
    try:
        text = await reviewer.review(findings, title)
    except Exception:  # noqa: BLE001 - the rules still give a verdict
        logger.exception("Risk reviewer failed for %s; using rule-based review", title)
        return build_rule_based_review(findings, reviewed_at=reviewed_at)

    return RiskReview(
        risk_level=risk_level,
        summary=text[:_SUMMARY_LENGTH],
        flagged_items=tuple(finding.describe() for finding in findings),
        recommendation=parse_recommendation(text, risk_level),
        reviewed_at=reviewed_at,
    )


def format_risk_review_section(review: Optional[RiskReview]) -> str:
    """Render a review as a PR body section; empty when nothing was flagged."""

    if review is None or (review.risk_level is RiskLevel.LOW and not review.flagged_items):
        return ""

    lines = [
        "### Risk Review",
        "",
        f"**Risk Level:** {review.risk_level.value.upper()}",
        f"**Recommendation:** {review.recommendation.value}",
        "",
    ]
    if review.summary:
        lines.extend(["#### Summary", "", review.summary, ""])
    if review.flagged_items:
        lines.extend(["#### Flagged Items", ""])
        lines.extend(f"- `{item}`" for item in review.flagged_items)
    return "\n".join(lines).rstrip()
