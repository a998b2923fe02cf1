"""Validation of learner submissions before they reach the aligner."""

from typing import Any, Dict, Mapping, Optional, Set

from engines.alignment import SequenceAligner
from schemas import TestSubmission

class ValidationError(Exception):
    """Base class for validation errors."""
    pass

class SubmissionValidationError(ValidationError):
    """Raised when one test of a submission cannot be evaluated as sent."""

    def __init__(self, test_id: int, message: str):
        super().__init__(message)
        self.test_id = test_id

class UnknownSessionError(ValidationError):
    """Raised when the submission names a session the store does not know."""
    pass

def validate_session(session: Optional[Mapping[str, Any]], session_id: int) -> Set[int]:
    """Return the test ids the session allows.

    Raises UnknownSessionError if the session does not exist.
    """
    if session is None:
        raise UnknownSessionError(f"Session not found: {session_id}")
    return {int(test_id) for test_id in session.get("test_ids") or []}

def validate_test_membership(test_id: int, allowed: Set[int]) -> None:
    if test_id not in allowed:
        raise SubmissionValidationError(test_id, f"Test {test_id} is not associated with the session")

def validate_submission(submission: TestSubmission, aligner: SequenceAligner) -> None:
    """Check a test submission against the algorithm's step/line map.

    Raises SubmissionValidationError on the first problem found.
    """
    test_id = submission.test_id
    claimed: Dict[int, int] = {}
    seen: Set[tuple] = set()
    for variable in submission.variables:
        if not aligner.is_tracked(variable.variable_name):
            raise SubmissionValidationError(
                test_id,
                f"Variable not found: {variable.variable_name} is not tracked by the algorithm",
            )

        key = (variable.sequence, variable.variable_name.lower())
        if key in seen:
            raise SubmissionValidationError(
                test_id,
                f"Variable {variable.variable_name} submitted twice at sequence {variable.sequence}",
            )
        seen.add(key)

        previous = claimed.setdefault(variable.sequence, variable.step)
        if previous != variable.step:
            raise SubmissionValidationError(
                test_id,
                f"Sequence {variable.sequence} claims both step {previous} and step {variable.step}",
            )
