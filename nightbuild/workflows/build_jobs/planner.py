"""Turn a markdown build specification into an ordered work plan."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Iterable, Optional

from nightbuild.workflows.build_jobs.contracts import WorkItem, WorkPlan

PR_BODY_FOOTER = "*Generated by the nightbuild build worker*"
SPEC_DOCS_DIR = "docs/build-specs"
_MAX_SLUG_LENGTH = 60

_HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_BULLET = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(.*\S)\s*$")

_REQUIREMENT_HEADINGS = ("requirement", "feature", "user stor")
_API_HEADINGS = ("api", "route", "endpoint")
_DB_HEADINGS = ("database", "db", "schema", "migration", "data model")
_UI_HEADINGS = ("ui", "component", "frontend", "screen", "page")


@dataclass(slots=True)
class ParsedSpec:
    """Structured view of the specification payload."""

    title: str
    overview: str = ""
    requirements: list[str] = field(default_factory=list)
    api_routes: list[str] = field(default_factory=list)
    db_changes: list[str] = field(default_factory=list)
    ui_components: list[str] = field(default_factory=list)
    raw_sections: dict[str, str] = field(default_factory=dict)


def slugify(text: str) -> str:
    """Lowercase ASCII slug with single hyphens, capped in length."""

    normalized = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode()
    slug = re.sub(r"[^a-z0-9]+", "-", normalized.lower()).strip("-")
    return slug[:_MAX_SLUG_LENGTH].rstrip("-")


def _heading_matches(heading: str, keywords: Iterable[str]) -> bool:
    words = re.findall(r"[a-z]+", heading.lower())
    joined = " ".join(words)
    for keyword in keywords:
        if " " in keyword:
            if keyword in joined:
                return True
        elif any(word == keyword or word.startswith(keyword) for word in words):
            return True
    return False


def _bullets(body: str) -> list[str]:
    items = []
    for line in body.splitlines():
        match = _BULLET.match(line)
        if match:
            items.append(match.group(1).strip())
    return items


def parse_spec_markdown(markdown: str) -> ParsedSpec:
    """Split the payload on headings and collect bullets per known section.

    The first level-one heading becomes the title; level-two headings open
    sections. Text before the first section, or a section named "Overview"
    or "Summary", becomes the overview.
    """

    title: Optional[str] = None
    preamble: list[str] = []
    sections: dict[str, list[str]] = {}
    current: Optional[str] = None

    for line in markdown.splitlines():
        heading = _HEADING.match(line)
        if heading:
            level = len(heading.group(1))
            text = heading.group(2).strip()
            if level == 1 and title is None:
                title = text
                continue
            if level == 2:
                current = text
                sections.setdefault(current, [])
                continue
        if current is None:
            preamble.append(line)
        else:
            sections[current].append(line)

    raw_sections = {name: "\n".join(lines).strip() for name, lines in sections.items()}
    parsed = ParsedSpec(title=title or "Untitled build", raw_sections=raw_sections)

    for name, body in raw_sections.items():
        if _heading_matches(name, ("overview", "summary", "description")):
            if not parsed.overview:
                parsed.overview = body
        elif _heading_matches(name, _API_HEADINGS):
            parsed.api_routes.extend(_bullets(body))
        elif _heading_matches(name, _DB_HEADINGS):
            parsed.db_changes.extend(_bullets(body))
        elif _heading_matches(name, _UI_HEADINGS):
            parsed.ui_components.extend(_bullets(body))
        elif _heading_matches(name, _REQUIREMENT_HEADINGS):
            parsed.requirements.extend(_bullets(body))

    if not parsed.overview:
        parsed.overview = "\n".join(preamble).strip()
    return parsed


def _append_unique(items: list[WorkItem], item: WorkItem) -> None:
    if all(existing.path != item.path for existing in items):
        items.append(item)


def build_work_plan(parsed: ParsedSpec, spec_markdown: str, branch: str) -> WorkPlan:
    """Derive placeholder work items in a fixed order.

    The spec markdown itself lands first as a reference document, followed by API
    routes, UI components and database migrations. Bullets whose slug
    collides with an earlier item of the same kind are dropped.
    """

    title_slug = slugify(parsed.title) or "build"
    items: list[WorkItem] = [
        WorkItem(
            path=f"{SPEC_DOCS_DIR}/{title_slug}.md",
            content=spec_markdown,
            description="Build specification reference",
        )
    ]

    for route in parsed.api_routes:
        slug = slugify(route)
        if slug:
            _append_unique(
                items,
                WorkItem(
                    path=f"src/routes/{slug}.ts",
                    content=(
                        f"// Placeholder route: {route}\n"
                        "// Generated by the nightbuild build worker\n\nexport {};\n"
                    ),
                    description=f"API route: {route}",
                ),
            )

    for component in parsed.ui_components:
        slug = slugify(component)
        if slug:
            _append_unique(
                items,
                WorkItem(
                    path=f"src/components/{slug}.tsx",
                    content=(
                        f"// Placeholder component: {component}\n"
                        "// Generated by the nightbuild build worker\n\nexport {};\n"
                    ),
                    description=f"UI component: {component}",
                ),
            )

    for change in parsed.db_changes:
        slug = slugify(change)
        if slug:
            _append_unique(
                items,
                WorkItem(
                    path=f"migrations/{slug}.sql",
                    content=(
                        f"-- Placeholder migration: {change}\n"
                        "-- Generated by the nightbuild build worker\n"
                    ),
                    description=f"DB migration: {change}",
                ),
            )

    return WorkPlan(
        title=parsed.title,
        branch=branch,
        items=items,
        pr_body=generate_pr_body(parsed, [item.path for item in items]),
    )


def generate_pr_body(parsed: ParsedSpec, paths: list[str]) -> str:
    lines = [f"## {parsed.title}", ""]
    if parsed.overview:
        lines.extend([parsed.overview, ""])
    if parsed.requirements:
        lines.append("### Requirements")
        lines.extend(f"- [ ] {requirement}" for requirement in parsed.requirements)
        lines.append("")
    lines.append("### Files")
    lines.extend(f"- `{path}`" for path in paths)
    lines.extend(["", "---", PR_BODY_FOOTER])
    return "\n".join(lines)


def append_pr_sections(pr_body: str, sections: Iterable[str]) -> str:
    """Insert extra markdown sections just above the generated-by footer."""

    combined = "\n\n".join(section for section in sections if section)
    if not combined:
        return pr_body
    marker = f"---\n{PR_BODY_FOOTER}"
    if marker in pr_body:
        return pr_body.replace(marker, f"{combined}\n\n{marker}", 1)
    return f"{pr_body}\n\n{combined}"
