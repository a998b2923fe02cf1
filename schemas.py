"""Pydantic schemas for submissions, traces and grading outcomes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator

__all__ = [
    "MismatchKind",
    "GradingMode",
    "SessionType",
    "VariableRecord",
    "TraceResult",
    "StepLine",
    "TestInfo",
    "AlgoStepInfo",
    "SubmittedVariable",
    "TestSubmission",
    "UploadRequest",
    "MismatchError",
    "TestFailure",
    "TestEvaluation",
    "TrainingReport",
    "EvaluationOutcome",
    "StepResult",
    "QualityUpdate",
]


class MismatchKind(str, Enum):
    PROGRAM_LOOPED = "program-looped"
    SEQUENCE_BREAK = "sequence-break"
    WRONG_STEP_NUMBER = "wrong-step-number"
    MISSING_STEP = "missing-step"
    EXTRA_STEP = "extra-step"
    VALUE_MISMATCH = "value-mismatch"
    NAME_NOT_FOUND = "name-not-found"


class GradingMode(str, Enum):
    """Training returns the error report, assessment returns the score."""

    TRAINING = "training"
    ASSESSMENT = "assessment"


class SessionType(str, Enum):
    EXAM = "exam"
    PRACTICE = "practice"

    @property
    def is_scored(self) -> bool:
        return self is SessionType.EXAM


class _CollaboratorModel(BaseModel):
    """Payloads coming from the interpreter and test management services.

    Those services serialise either camelCase or PascalCase keys, so each field
    accepts both next to its snake_case name.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}


class VariableRecord(_CollaboratorModel):
    step: int = Field(validation_alias=AliasChoices("step", "Step"))
    variable_name: str = Field(validation_alias=AliasChoices("variable_name", "variableName", "VariableName"))
    type: str = Field(default="", validation_alias=AliasChoices("type", "Type"))
    rank: int = Field(default=0, ge=0, le=2, validation_alias=AliasChoices("rank", "Rank"))
    value: str = Field(default="", validation_alias=AliasChoices("value", "Value"))
    line_number: int | None = Field(
        default=None,
        validation_alias=AliasChoices("line_number", "lineNumber", "LineNumber"),
        description="Source line the interpreter recorded the value at, when reported.",
    )

    @field_validator("value", "type", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class TraceResult(_CollaboratorModel):
    success: bool = True
    records: List[VariableRecord] = Field(default_factory=list)

    def steps(self) -> List[int]:
        """Sorted unique execution steps present in the trace."""
        return sorted({record.step for record in self.records})

    def by_step(self) -> Dict[int, List[VariableRecord]]:
        grouped: Dict[int, List[VariableRecord]] = {}
        for record in self.records:
            grouped.setdefault(record.step, []).append(record)
        return grouped


class StepLine(_CollaboratorModel):
    step: int = Field(validation_alias=AliasChoices("step", "Step"))
    line_number: int = Field(validation_alias=AliasChoices("line_number", "lineNumber", "LineNumber"))
    var_name: str = Field(validation_alias=AliasChoices("var_name", "varName", "VarName"))
    var_type: str = Field(default="", validation_alias=AliasChoices("var_type", "varType", "VarType"))


class TestInfo(_CollaboratorModel):
    __test__ = False  # keep pytest from collecting the model

    test_id: int = Field(validation_alias=AliasChoices("test_id", "testId", "TestId"))
    algo_id: int = Field(validation_alias=AliasChoices("algo_id", "algoId", "AlgoId"))
    difficulty: float | None = Field(
        default=None,
        validation_alias=AliasChoices("difficulty", "difficult", "Difficult"),
    )


class AlgoStepInfo(_CollaboratorModel):
    algo_id: int = Field(validation_alias=AliasChoices("algo_id", "algoId", "AlgoId"))
    step: int = Field(validation_alias=AliasChoices("step", "Step"))
    difficulty: float | None = Field(
        default=None,
        validation_alias=AliasChoices("difficulty", "difficult", "Difficult"),
    )


class SubmittedVariable(BaseModel):
    sequence: int = Field(ge=1, description="Learner's chronological position of the answer.")
    step: int = Field(description="Algorithm step the learner claims the value belongs to.")
    variable_name: str = Field(min_length=1)
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _value_as_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (int, float)):
            return str(value)
        return value


class TestSubmission(BaseModel):
    __test__ = False

    test_id: int
    variables: List[SubmittedVariable] = Field(default_factory=list)


class UploadRequest(BaseModel):
    user_id: int
    session_id: int
    mode: GradingMode = GradingMode.TRAINING
    tests: List[TestSubmission] = Field(default_factory=list)


class MismatchError(BaseModel):
    test_id: int
    sequence: int
    step: int
    variable_name: str | None = None
    kind: MismatchKind
    message: str
    expected: str | None = None
    actual: str | None = None


class TestFailure(BaseModel):
    """Input or collaborator error that aborted the evaluation of one test."""

    __test__ = False

    test_id: int
    reason: Literal["input", "collaborator"]
    detail: str


class TestEvaluation(BaseModel):
    __test__ = False

    test_id: int
    algo_id: int | None = None
    score: float | None = None
    mistakes: int = 0
    total_elements: int = 0
    learner_step_count: int = 0
    reference_step_count: int = 0
    errors: List[MismatchError] = Field(default_factory=list)
    missing_steps: List[int] = Field(default_factory=list)
    extra_steps: List[int] = Field(default_factory=list)
    failure: TestFailure | None = None


class TrainingReport(BaseModel):
    message: str
    errors: List[MismatchError] = Field(default_factory=list)
    missing_steps: List[int] = Field(default_factory=list)
    extra_steps: List[int] = Field(default_factory=list)
    failures: List[TestFailure] = Field(default_factory=list)


class EvaluationOutcome(BaseModel):
    user_id: int
    session_id: int
    mode: GradingMode
    tests: List[TestEvaluation] = Field(default_factory=list)
    score: float | None = None
    report: TrainingReport | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def errors(self) -> List[MismatchError]:
        return [error for test in self.tests for error in test.errors]

    @property
    def failures(self) -> List[TestFailure]:
        return [test.failure for test in self.tests if test.failure is not None]

    def result(self) -> TrainingReport | float | None:
        """Mode-selected answer: the report in training, the score in assessment."""
        if self.mode is GradingMode.ASSESSMENT:
            return self.score
        return self.report


class StepResult(BaseModel):
    step: int
    is_correct: bool


class QualityUpdate(BaseModel):
    """Per-test step outcomes fed to the difficulty estimator."""

    test_id: int
    algo_id: int
    step_results: List[StepResult] = Field(default_factory=list)
