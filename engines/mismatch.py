"""Turns alignment findings into the structured error taxonomy."""

from __future__ import annotations

from typing import Iterable, List, Sequence

from engines.alignment import AlignmentResult, Divergence
from schemas import MismatchError, MismatchKind, TestEvaluation, TrainingReport

NO_ERRORS = "no errors found"
EXTRA_STEPS = "extra steps submitted"
UNFINISHED = "solution is not finished"
ERRORS_AND_UNFINISHED = "errors and unfinished solution"
ERRORS_FOUND = "errors found"


def _describe(divergence: Divergence) -> str:
    kind = divergence.kind
    if kind is MismatchKind.SEQUENCE_BREAK:
        return f"sequence break: expected step {divergence.expected}, got {divergence.actual}"
    if kind is MismatchKind.WRONG_STEP_NUMBER:
        if divergence.expected is None:
            return f"step {divergence.actual} does not match the executed line"
        return f"wrong step number: expected {divergence.expected}, got {divergence.actual}"
    if kind is MismatchKind.MISSING_STEP:
        return f"missing step {divergence.sequence}"
    if kind is MismatchKind.EXTRA_STEP:
        return f"extra step {divergence.sequence}"
    if kind is MismatchKind.VALUE_MISMATCH:
        return f"wrong value of {divergence.variable_name}"
    if kind is MismatchKind.NAME_NOT_FOUND:
        return f"variable {divergence.variable_name} not found at step {divergence.step}"
    return "program looped"


def classify(test_id: int, alignment: AlignmentResult) -> List[MismatchError]:
    """One error per divergence, in detection order."""
    return [
        MismatchError(
            test_id=test_id,
            sequence=divergence.sequence,
            step=divergence.step,
            variable_name=divergence.variable_name,
            kind=divergence.kind,
            message=_describe(divergence),
            expected=divergence.expected,
            actual=divergence.actual,
        )
        for divergence in alignment.divergences
    ]


def program_looped(test_id: int) -> MismatchError:
    return MismatchError(
        test_id=test_id,
        sequence=0,
        step=0,
        kind=MismatchKind.PROGRAM_LOOPED,
        message="program looped",
    )


def summary_message(errors: Sequence[MismatchError], missing_steps: Sequence[int], extra_steps: Sequence[int]) -> str:
    if extra_steps:
        return EXTRA_STEPS
    if missing_steps:
        others = [error for error in errors if error.kind is not MismatchKind.MISSING_STEP]
        return ERRORS_AND_UNFINISHED if others else UNFINISHED
    if errors:
        return ERRORS_FOUND
    return NO_ERRORS


def build_report(tests: Iterable[TestEvaluation]) -> TrainingReport:
    """Training-mode report accumulated across every evaluated test."""
    errors: List[MismatchError] = []
    missing: List[int] = []
    extra: List[int] = []
    failures = []
    for test in tests:
        errors.extend(test.errors)
        for step in test.missing_steps:
            if step not in missing:
                missing.append(step)
        for step in test.extra_steps:
            if step not in extra:
                extra.append(step)
        if test.failure is not None:
            failures.append(test.failure)
    return TrainingReport(
        message=summary_message(errors, missing, extra),
        errors=errors,
        missing_steps=missing,
        extra_steps=extra,
        failures=failures,
    )
