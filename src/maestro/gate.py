from __future__ import annotations

from maestro.models import PhaseName, QualityGateResult

DEFAULT_THRESHOLD = 80
MIN_GRADE = 0
MAX_GRADE = 100

LETTER_GRADES: tuple[tuple[int, str], ...] = (
    (97, "A+"),
    (93, "A"),
    (90, "A-"),
    (87, "B+"),
    (83, "B"),
    (80, "B-"),
    (77, "C+"),
    (73, "C"),
    (70, "C-"),
    (60, "D"),
)


def clamp_grade(grade: int) -> tuple[int, bool]:
    if grade < MIN_GRADE:
        return MIN_GRADE, True
    if grade > MAX_GRADE:
        return MAX_GRADE, True
    return grade, False


def evaluate(
    grade: int,
    threshold: int = DEFAULT_THRESHOLD,
    *,
    phase: PhaseName | None = None,
) -> QualityGateResult:
    """Decide pass/fail for a phase grade.

    Out-of-range grades are clamped and flagged as anomalous instead of raising,
    so a malformed upstream grade still produces a usable result.
    """
    raw = int(grade)
    clamped, anomalous = clamp_grade(raw)
    return QualityGateResult(
        phase=phase,
        grade=clamped,
        passed=clamped >= threshold,
        threshold=threshold,
        anomalous=anomalous,
        raw_grade=raw,
    )


def letter_grade(score: float) -> str:
    for floor, letter in LETTER_GRADES:
        if score >= floor:
            return letter
    return "F"
