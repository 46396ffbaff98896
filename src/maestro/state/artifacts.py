from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path

from maestro.models import PhaseName

STAGE_PREFIXES: dict[PhaseName, str] = {
    PhaseName.RESEARCH: "research",
    PhaseName.PLANNING: "plan",
    PhaseName.IMPLEMENTATION: "impl",
    PhaseName.VALIDATION: "validation",
    PhaseName.POST_MORTEM: "post-mortem",
    PhaseName.DOCUMENTATION: "docs",
}


def slugify(text: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.strip().lower()).strip("-")
    return slug[:max_length].rstrip("-") or "task"


class ArtifactStore:
    """Names phase artifacts as ``{stage}_{topic}_{timestamp}.md`` under one directory."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def artifact_path(self, phase: PhaseName, topic: str, *, timestamp: str | None = None) -> Path:
        stamp = timestamp or datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        directory = self.root / phase.value
        directory.mkdir(parents=True, exist_ok=True)
        base = f"{STAGE_PREFIXES[phase]}_{slugify(topic)}_{stamp}"
        candidate = directory / f"{base}.md"
        suffix = 2
        while candidate.exists():
            candidate = directory / f"{base}-{suffix}.md"
            suffix += 1
        return candidate

    @staticmethod
    def reviewed_path(locator: str) -> Path:
        path = Path(locator)
        return path.with_name(f"{path.stem}-reviewed.md")

    @staticmethod
    def grade_path(locator: str) -> Path:
        path = Path(locator)
        return path.with_name(f"{path.stem}-grade.md")

    def write_grade(self, locator: str, phase: PhaseName, grade: int, *, passed: bool) -> Path:
        path = self.grade_path(locator)
        verdict = "APPROVED" if passed else "REJECTED"
        path.write_text(
            f"# {phase.value} grade\n\n- Score: {grade}\n- Verdict: {verdict}\n",
            encoding="utf-8",
        )
        return path

    def list_artifacts(self, phase: PhaseName | None = None) -> list[Path]:
        if not self.root.exists():
            return []
        pattern = f"{phase.value}/*.md" if phase else "*/*.md"
        return sorted(self.root.glob(pattern))
