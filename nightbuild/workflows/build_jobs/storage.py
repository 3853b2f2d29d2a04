"""Filesystem storage for dead-letter records and generated artifacts."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Union

from nightbuild.workflows.build_jobs.contracts import DeadLetterRecord

DEAD_LETTER_PREFIX = "dead-letters"
ARTIFACT_PREFIX = "artifacts"
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _safe_key_component(value: str) -> str:
    cleaned = _UNSAFE_KEY_CHARS.sub("_", value.strip())
    if not cleaned or set(cleaned) == {"."}:
        return "unknown"
    return cleaned


class BuildArtifactStorage:
    """Append-by-unique-key storage rooted at a local directory.

    Dead-letter records are never overwritten: a numeric suffix is added when
    a key is already taken.
    """

    def __init__(self, storage_root: Union[str, Path]) -> None:
        self.storage_root = Path(storage_root)

    def _resolve_relative(self, relative: Path) -> Path:
        if not relative.parts:
            raise ValueError("storage path must not be empty")
        if relative.is_absolute() or any(part == ".." for part in relative.parts):
            raise ValueError(
                "storage path must be relative without traversal components"
            )
        destination = (self.storage_root / relative).resolve()
        if not destination.is_relative_to(self.storage_root.resolve()):
            raise ValueError("storage path resolves outside storage root")
        return destination

    def get_job_artifact_dir(self, job_id: str) -> Path:
        return self._resolve_relative(Path(ARTIFACT_PREFIX) / _safe_key_component(job_id))

    def resolve_artifact_path(self, job_id: str, artifact_path: str) -> Path:
        """Resolve a job artifact destination with traversal checks."""

        relative = Path(artifact_path)
        if not relative.parts:
            raise ValueError("artifact path must not be empty")
        if relative.is_absolute() or any(part == ".." for part in relative.parts):
            raise ValueError(
                "artifact path must be relative without traversal components"
            )
        job_dir = self.get_job_artifact_dir(job_id)
        destination = (job_dir / relative).resolve()
        if not destination.is_relative_to(job_dir):
            raise ValueError("artifact path resolves outside job directory")
        return destination

    def write_artifact(self, *, job_id: str, artifact_path: str, content: str) -> str:
        """Write one generated file and return its storage-relative key."""

        destination = self.resolve_artifact_path(job_id, artifact_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(content, encoding="utf-8")
        return destination.relative_to(self.storage_root.resolve()).as_posix()

    def read_artifact(self, *, job_id: str, artifact_path: str) -> str:
        return self.resolve_artifact_path(job_id, artifact_path).read_text(encoding="utf-8")

    def write_dead_letter(self, record: DeadLetterRecord) -> str:
        """Persist a dead-letter record under ``dead-letters/<job>/<ms>.json``."""

        job_dir = self._resolve_relative(
            Path(DEAD_LETTER_PREFIX) / _safe_key_component(record.job_id)
        )
        job_dir.mkdir(parents=True, exist_ok=True)
        failed_at_ms = int(record.failed_at.timestamp() * 1000)
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True, default=str)

        suffix = 0
        while True:
            name = f"{failed_at_ms}.json" if suffix == 0 else f"{failed_at_ms}-{suffix}.json"
            destination = job_dir / name
            try:
                with destination.open("x", encoding="utf-8") as handle:
                    handle.write(payload)
            except FileExistsError:
                suffix += 1
                continue
            return destination.relative_to(self.storage_root.resolve()).as_posix()

    def list_dead_letters(self, job_id: str) -> list[Path]:
        job_dir = self._resolve_relative(
            Path(DEAD_LETTER_PREFIX) / _safe_key_component(job_id)
        )
        if not job_dir.exists():
            return []
        return sorted(job_dir.glob("*.json"))
