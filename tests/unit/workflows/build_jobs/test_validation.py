"""Unit tests for generated-file validation."""

from __future__ import annotations

from nightbuild.workflows.build_jobs.contracts import WorkItem
from nightbuild.workflows.build_jobs.validation import (
    VALIDATION_FOOTNOTE,
    format_validation_warnings,
    validate_file,
    validate_generated_files,
)

ROUTE = """import { Hono } from "hono";

const app = new Hono();
app.get("/widgets", (c) => c.json({ items: ["a{", "b)"] }));

export default app;
"""


def test_reference_docs_always_pass() -> None:
    assert validate_file("docs/build-specs/x.md", "").ok is True


def test_empty_file_fails() -> None:
    result = validate_file("src/routes/a.ts", "   \n")

    assert result.ok is False
    assert result.warnings == ["File is empty"]


def test_placeholder_only_content_is_flagged() -> None:
    result = validate_file(
        "src/routes/a.ts", "// Placeholder route: a\n// Generated\n\nexport {};\n"
    )

    assert result.ok is False
    assert "placeholder" in result.warnings[0]


def test_typescript_brackets_inside_strings_are_ignored() -> None:
    assert validate_file("src/routes/widgets.ts", ROUTE).ok is True


def test_typescript_reports_unbalanced_brackets_eval_and_any() -> None:
    result = validate_file(
        "src/components/card.tsx",
        "export function Card(props: any) {\n  return eval(props.code;\n",
    )

    assert result.ok is False
    assert "Unbalanced curly braces {}" in result.warnings
    assert "Unbalanced parentheses ()" in result.warnings
    assert "Contains eval()" in result.warnings
    assert any("`any`" in warning for warning in result.warnings)


def test_sql_checks_keywords_and_unguarded_drop() -> None:
    assert validate_file("migrations/a.sql", "CREATE TABLE IF NOT EXISTS a (id int);").ok

    missing = validate_file("migrations/b.sql", "hello world")
    assert missing.warnings[0].startswith("No SQL statements found")

    drop = validate_file("migrations/c.sql", "DROP TABLE a;")
    assert any("IF EXISTS" in warning for warning in drop.warnings)


def test_python_files_are_parsed() -> None:
    assert validate_file("tools/ok.py", "def ok():\n    return 1\n").ok is True

    broken = validate_file("tools/bad.py", "def broken(:\n    pass\n")
    assert broken.ok is False
    assert broken.warnings[0].startswith("Python syntax error on line 1")


def test_report_and_markdown_section() -> None:
    report = validate_generated_files(
        [
            WorkItem("src/routes/widgets.ts", ROUTE, ""),
            WorkItem("migrations/x.sql", "", ""),
        ]
    )

    assert report.passed is False
    assert report.warning_messages() == ["migrations/x.sql: File is empty"]
    section = format_validation_warnings(report)
    assert section.startswith("### Validation Warnings")
    assert "**`migrations/x.sql`**:" in section
    assert section.endswith(VALIDATION_FOOTNOTE)


def test_markdown_section_is_empty_when_everything_passes() -> None:
    report = validate_generated_files([WorkItem("src/routes/widgets.ts", ROUTE, "")])

    assert report.passed is True
    assert format_validation_warnings(report) == ""
