"""Task complexity scoring and pipeline mode selection."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from maestro.errors import ValidationError
from maestro.models import Mode, Task


class Category(str, Enum):
    SCOPE = "scope"
    KNOWLEDGE = "knowledge"
    RISK = "risk"
    DEPENDENCY = "dependency"


class Indicator(str, Enum):
    SINGLE_FILE = "single_file"
    FEW_FILES = "few_files"
    MANY_FILES = "many_files"
    EXACT_LOCATION = "exact_location"
    KNOWN_AREA = "known_area"
    UNKNOWN_LOCATION = "unknown_location"
    ISOLATED = "isolated"
    SHARED_MODULE = "shared_module"
    SYSTEM_WIDE = "system_wide"
    EXISTING_PATTERN = "existing_pattern"
    NEW_PATTERN = "new_pattern"
    NEW_DEPENDENCY = "new_dependency"


INDICATOR_TABLE: dict[Indicator, tuple[Category, int]] = {
    Indicator.SINGLE_FILE: (Category.SCOPE, 0),
    Indicator.FEW_FILES: (Category.SCOPE, 1),
    Indicator.MANY_FILES: (Category.SCOPE, 2),
    Indicator.EXACT_LOCATION: (Category.KNOWLEDGE, 0),
    Indicator.KNOWN_AREA: (Category.KNOWLEDGE, 1),
    Indicator.UNKNOWN_LOCATION: (Category.KNOWLEDGE, 2),
    Indicator.ISOLATED: (Category.RISK, 0),
    Indicator.SHARED_MODULE: (Category.RISK, 1),
    Indicator.SYSTEM_WIDE: (Category.RISK, 2),
    Indicator.EXISTING_PATTERN: (Category.DEPENDENCY, 0),
    Indicator.NEW_PATTERN: (Category.DEPENDENCY, 1),
    Indicator.NEW_DEPENDENCY: (Category.DEPENDENCY, 2),
}

FULL_MODE_MIN_SCORE = 5


@dataclass(slots=True, frozen=True)
class ScopeIndicators:
    """Selected indicators plus the exact-instructions affirmation.

    Instant mode is only reachable when ``exact_instructions`` is set and the
    selected indicators sum to zero.
    """

    selected: frozenset[Indicator] = field(default_factory=frozenset)
    exact_instructions: bool = False

    @classmethod
    def of(cls, *indicators: Indicator | str, exact_instructions: bool = False) -> ScopeIndicators:
        return cls(
            selected=frozenset(_parse_indicators(indicators)),
            exact_instructions=exact_instructions,
        )

    @classmethod
    def from_counts(
        cls,
        *,
        file_count: int | None = None,
        extra: Iterable[Indicator | str] = (),
        exact_instructions: bool = False,
    ) -> ScopeIndicators:
        selected = set(_parse_indicators(extra))
        if file_count is not None:
            if file_count < 0:
                raise ValidationError(f"File count must be non-negative, got {file_count}.")
            if file_count <= 1:
                selected.add(Indicator.SINGLE_FILE)
            elif file_count <= 3:
                selected.add(Indicator.FEW_FILES)
            else:
                selected.add(Indicator.MANY_FILES)
        return cls(selected=frozenset(selected), exact_instructions=exact_instructions)


def _parse_indicators(values: Iterable[Indicator | str]) -> list[Indicator]:
    parsed: list[Indicator] = []
    for value in values:
        if isinstance(value, Indicator):
            parsed.append(value)
            continue
        try:
            parsed.append(Indicator(str(value).strip().lower().replace("-", "_")))
        except ValueError as exc:
            raise ValidationError(f"Unknown complexity indicator: {value}") from exc
    return parsed


def score(indicators: ScopeIndicators) -> int:
    return sum(INDICATOR_TABLE[indicator][1] for indicator in indicators.selected)


def mode_for_score(value: int, *, exact_instructions: bool = False) -> Mode:
    if value >= FULL_MODE_MIN_SCORE:
        return Mode.FULL
    if value == 0 and exact_instructions:
        return Mode.INSTANT
    return Mode.FAST_TRACK


def classify(indicators: ScopeIndicators) -> tuple[int, Mode]:
    total = score(indicators)
    return total, mode_for_score(total, exact_instructions=indicators.exact_instructions)


def build_task(
    description: str,
    indicators: ScopeIndicators,
    *,
    task_id: str | None = None,
) -> Task:
    if not description.strip():
        raise ValidationError("Task description must not be empty.")
    total, mode = classify(indicators)
    return Task(
        id=task_id or f"task-{uuid4().hex[:8]}",
        description=description.strip(),
        score=total,
        mode=mode,
    )
