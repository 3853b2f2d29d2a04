"""Lightweight checks on generated files before the pull request is opened.

These catch obviously broken output (empty files, unbalanced brackets,
untouched placeholders) so the result is reviewable. They are not a
replacement for the target repository's CI.
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from typing import Iterable

from nightbuild.workflows.build_jobs.contracts import WorkItem

_SQL_KEYWORDS = ("CREATE", "ALTER", "INSERT", "SELECT", "DROP", "UPDATE", "DELETE")
_PLACEHOLDER_LINE = re.compile(r"^(?://|--|#)")
_EVAL_CALL = re.compile(r"\beval\s*\(")
_ANY_TYPE = re.compile(r":\s*any\b|\bas\s+any\b")
_DROP_TABLE = re.compile(r"\bDROP\s+TABLE\b", re.IGNORECASE)
_IF_EXISTS = re.compile(r"\bIF\s+EXISTS\b", re.IGNORECASE)

VALIDATION_FOOTNOTE = (
    "> These warnings come from pre-PR validation of generated files. "
    "Manual review recommended."
)


@dataclass(slots=True)
class FileValidationResult:
    path: str
    ok: bool
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ValidationReport:
    passed: bool
    results: list[FileValidationResult]

    def warning_messages(self) -> list[str]:
        return [
            f"{result.path}: {warning}"
            for result in self.results
            if not result.ok
            for warning in result.warnings
        ]


def _is_placeholder_only(content: str) -> bool:
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped == "export {};" or _PLACEHOLDER_LINE.match(stripped):
            continue
        return False
    return True


def _brackets_balanced(source: str, opening: str, closing: str) -> bool:
    """Count bracket depth outside string literals and comments."""

    depth = 0
    quote = None
    in_line_comment = False
    in_block_comment = False
    index = 0
    length = len(source)

    while index < length:
        char = source[index]
        nxt = source[index + 1] if index + 1 < length else ""

        if in_line_comment:
            if char == "\n":
                in_line_comment = False
        elif in_block_comment:
            if char == "*" and nxt == "/":
                in_block_comment = False
                index += 1
        elif quote is not None:
            if char == "\\":
                index += 1
            elif char == quote:
                quote = None
        elif char == "/" and nxt == "/":
            in_line_comment = True
        elif char == "/" and nxt == "*":
            in_block_comment = True
            index += 1
        elif char in ("'", '"', "`"):
            quote = char
        elif char == opening:
            depth += 1
        elif char == closing:
            depth -= 1
            if depth < 0:
                return False
        index += 1

    return depth == 0


def _check_typescript(content: str) -> list[str]:
    warnings = []
    for opening, closing, label in (
        ("{", "}", "curly braces {}"),
        ("(", ")", "parentheses ()"),
        ("[", "]", "square brackets []"),
    ):
        if not _brackets_balanced(content, opening, closing):
            warnings.append(f"Unbalanced {label}")
    if _EVAL_CALL.search(content):
        warnings.append("Contains eval()")
    if _ANY_TYPE.search(content):
        warnings.append("Contains `any` type; use proper typing or `unknown`")
    return warnings


def _check_sql(content: str) -> list[str]:
    warnings = []
    upper = content.upper()
    if not any(keyword in upper for keyword in _SQL_KEYWORDS):
        warnings.append("No SQL statements found (expected CREATE, ALTER, INSERT, ...)")
    if _DROP_TABLE.search(content) and not _IF_EXISTS.search(content):
        warnings.append("DROP TABLE without IF EXISTS; potential data loss")
    return warnings


def _check_python(content: str) -> list[str]:
    try:
        ast.parse(content)
    except SyntaxError as exc:
        return [f"Python syntax error on line {exc.lineno}: {exc.msg}"]
    return []


def validate_file(path: str, content: str) -> FileValidationResult:
    """Validate one generated file; reference docs always pass."""

    if path.startswith("docs/"):
        return FileValidationResult(path=path, ok=True)

    trimmed = content.strip()
    if not trimmed:
        return FileValidationResult(path=path, ok=False, warnings=["File is empty"])

    warnings: list[str] = []
    if _is_placeholder_only(trimmed):
        warnings.append("File contains only placeholder content")

    extension = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    if extension in {"ts", "tsx"}:
        warnings.extend(_check_typescript(trimmed))
    elif extension == "sql":
        warnings.extend(_check_sql(trimmed))
    elif extension == "py":
        warnings.extend(_check_python(content))

    return FileValidationResult(path=path, ok=not warnings, warnings=warnings)


def validate_generated_files(items: Iterable[WorkItem]) -> ValidationReport:
    results = [validate_file(item.path, item.content) for item in items]
    return ValidationReport(passed=all(result.ok for result in results), results=results)


def format_validation_warnings(report: ValidationReport) -> str:
    """Render failed results as a markdown section for the PR body."""

    failed = [result for result in report.results if not result.ok]
    if not failed:
        return ""
    lines = ["### Validation Warnings", ""]
    for result in failed:
        lines.append(f"**`{result.path}`**:")
        lines.extend(f"- {warning}" for warning in result.warnings)
        lines.append("")
    lines.append(VALIDATION_FOOTNOTE)
    return "\n".join(lines)
