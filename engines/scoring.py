"""Bounded 0–100 scores for single tests and whole sessions."""

from __future__ import annotations

from typing import Iterable, Optional

from schemas import SessionType

MIN_SCORE = 0.0
MAX_SCORE = 100.0


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def compute_test_score(
    mistakes: int,
    total_elements: int,
    reference_step_count: int,
    learner_step_count: int,
) -> Optional[float]:
    """Score one test, or ``None`` when the learner submitted nothing scoreable.

    The element ratio measures correctness over what the learner submitted;
    the step ratio penalises solutions shorter or longer than the reference.
    """
    if total_elements <= 0 or learner_step_count <= 0:
        return None
    correctness = 1.0 - float(mistakes) / float(total_elements)
    length_ratio = float(reference_step_count) / float(learner_step_count)
    return clamp(MAX_SCORE * correctness * length_ratio, MIN_SCORE, MAX_SCORE)


def session_score(scores: Iterable[Optional[float]]) -> Optional[float]:
    """Arithmetic mean of the tests that produced a score."""
    produced = [float(score) for score in scores if score is not None]
    if not produced:
        return None
    return sum(produced) / len(produced)


def overwrites_grade(session_type: SessionType | str) -> bool:
    """Scored sessions replace the stored grade; practice keeps the first one."""
    return SessionType(session_type).is_scored
