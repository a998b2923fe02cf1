"""Grading facade: sequences collaborator calls and feeds the engines.

For every test of a submission the service fetches the algorithm's step/line
map, runs the program twice (with the learner's values injected and without),
aligns the learner's steps with the unconditioned trace, classifies the
divergences, scores the test and updates step/test difficulty and the
learner's ability. Tests are independent: an input or collaborator failure
aborts only the affected test.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any, Dict, List, Mapping, Optional, Sequence

import db
from engines.alignment import LearnerStep, SequenceAligner, group_learner_steps
from engines.difficulty import DifficultyEstimator, DifficultyUpdate
from engines.mismatch import build_report, classify, program_looped
from engines.scoring import compute_test_score, overwrites_grade, session_score
from engines.validation import (
    SubmissionValidationError,
    validate_session,
    validate_submission,
    validate_test_membership,
)
from env_validation import get_env_bool
from interpreter import (
    CollaboratorError,
    HttpMetadataProvider,
    HttpTraceService,
    MetadataProvider,
    SubstitutedValue,
    TraceService,
)
from schemas import (
    EvaluationOutcome,
    GradingMode,
    QualityUpdate,
    TestEvaluation,
    TestFailure,
    TestInfo,
    TestSubmission,
    TraceResult,
    UploadRequest,
    VariableRecord,
)

LOGGER = logging.getLogger("tracemark.grading")

DEFAULT_DIFFICULTY = 0.5
MATCHING_WINDOW = 0.1


class NoProcessableTestsError(RuntimeError):
    """Raised when not a single test of a submission could be evaluated."""

    def __init__(self, failures: Sequence[TestFailure]):
        details = "; ".join(f"test {failure.test_id}: {failure.detail}" for failure in failures)
        super().__init__(f"No processable tests in submission{': ' + details if details else ''}")
        self.failures = list(failures)


class GradingService:
    def __init__(
        self,
        metadata: MetadataProvider,
        tracer: TraceService,
        *,
        store: Any = db,
        estimator: Optional[DifficultyEstimator] = None,
        parallel: Optional[bool] = None,
        propagate: bool = True,
    ):
        self._metadata = metadata
        self._tracer = tracer
        self._store = store
        self._estimator = estimator or DifficultyEstimator(store)
        self.parallel = get_env_bool("GRADING_PARALLEL_TESTS", True) if parallel is None else parallel
        self.propagate = propagate

    @classmethod
    def from_env(cls, **kwargs: Any) -> "GradingService":
        return cls(HttpMetadataProvider.from_env(), HttpTraceService.from_env(), **kwargs)

    # ------------------------------------------------------------------
    # evaluation
    # ------------------------------------------------------------------
    async def evaluate(self, request: UploadRequest) -> EvaluationOutcome:
        session = await asyncio.to_thread(self._store.get_session, request.session_id)
        allowed = validate_session(session, request.session_id)

        if self.parallel:
            evaluations = list(
                await asyncio.gather(
                    *(self._evaluate_test(request, submission, allowed) for submission in request.tests)
                )
            )
        else:
            evaluations = []
            for submission in request.tests:
                evaluations.append(await self._evaluate_test(request, submission, allowed))

        processed = [evaluation for evaluation in evaluations if evaluation.failure is None]
        if not processed:
            raise NoProcessableTestsError([evaluation.failure for evaluation in evaluations if evaluation.failure])

        score = session_score(evaluation.score for evaluation in processed)
        if score is not None:
            stored = await asyncio.to_thread(
                self._store.upsert_grade,
                request.user_id,
                request.session_id,
                score,
                overwrite=overwrites_grade(session["session_type"]),
            )
            LOGGER.info(
                "Session %s user %s: mean %.2f over %s test(s), stored grade %.2f",
                request.session_id,
                request.user_id,
                score,
                len(processed),
                stored,
            )

        outcome = EvaluationOutcome(
            user_id=request.user_id,
            session_id=request.session_id,
            mode=request.mode,
            tests=evaluations,
            score=score,
        )
        if request.mode is GradingMode.TRAINING:
            outcome.report = build_report(evaluations)
        return outcome

    async def _evaluate_test(
        self,
        request: UploadRequest,
        submission: TestSubmission,
        allowed: set,
    ) -> TestEvaluation:
        test_id = submission.test_id
        try:
            validate_test_membership(test_id, allowed)
            test = await asyncio.to_thread(self._metadata.fetch_test, test_id)
            step_lines = await asyncio.to_thread(self._metadata.fetch_step_lines, test.algo_id)
            aligner = SequenceAligner(step_lines)
            validate_submission(submission, aligner)

            learner_steps = group_learner_steps(submission.variables)
            substitutions = self._substitutions(learner_steps, aligner)
            substituted, reference = await asyncio.gather(
                asyncio.to_thread(self._tracer.run_trace, test.algo_id, test_id, substitutions),
                asyncio.to_thread(self._tracer.run_trace, test.algo_id, test_id, None),
            )
            await self._persist_solutions(request, test_id, learner_steps, aligner, reference)
            return await self._grade_test(request, test, aligner, learner_steps, reference, substituted)
        except SubmissionValidationError as exc:
            LOGGER.warning("Rejected test %s of session %s: %s", test_id, request.session_id, exc)
            return TestEvaluation(
                test_id=test_id,
                failure=TestFailure(test_id=test_id, reason="input", detail=str(exc)),
            )
        except (CollaboratorError, sqlite3.Error) as exc:
            LOGGER.error("Skipping test %s of session %s: %s", test_id, request.session_id, exc)
            return TestEvaluation(
                test_id=test_id,
                failure=TestFailure(test_id=test_id, reason="collaborator", detail=str(exc)),
            )

    async def _grade_test(
        self,
        request: UploadRequest,
        test: TestInfo,
        aligner: SequenceAligner,
        learner_steps: Sequence[LearnerStep],
        reference: TraceResult,
        substituted: TraceResult,
    ) -> TestEvaluation:
        total_elements = aligner.learner_elements(learner_steps)
        reference_steps = reference.steps()

        if not (reference.success and substituted.success):
            LOGGER.warning("Program looped: algo %s test %s", test.algo_id, test.test_id)
            return TestEvaluation(
                test_id=test.test_id,
                algo_id=test.algo_id,
                score=0.0,
                total_elements=total_elements,
                learner_step_count=len(learner_steps),
                reference_step_count=len(reference_steps),
                errors=[program_looped(test.test_id)],
            )

        alignment = aligner.align(learner_steps, reference.by_step(), substituted.by_step())
        score = compute_test_score(
            alignment.mistakes,
            total_elements,
            alignment.reference_step_count,
            alignment.learner_step_count,
        )
        await self._update_quality(request.user_id, test, alignment.step_outcomes)
        LOGGER.debug(
            "Test %s: %s mistake(s) over %s element(s), score=%s",
            test.test_id,
            alignment.mistakes,
            total_elements,
            score,
        )
        return TestEvaluation(
            test_id=test.test_id,
            algo_id=test.algo_id,
            score=score,
            mistakes=alignment.mistakes,
            total_elements=total_elements,
            learner_step_count=alignment.learner_step_count,
            reference_step_count=alignment.reference_step_count,
            errors=classify(test.test_id, alignment),
            missing_steps=alignment.missing_steps,
            extra_steps=alignment.extra_steps,
        )

    @staticmethod
    def _substitutions(learner_steps: Sequence[LearnerStep], aligner: SequenceAligner) -> List[SubstitutedValue]:
        values = []
        for learner_step in learner_steps:
            for variable in learner_step.variables:
                line = aligner.line_for(learner_step.step, variable.variable_name)
                if line is None:
                    continue
                values.append(SubstitutedValue(learner_step.sequence, line, variable.variable_name, variable.value))
        return values

    async def _persist_solutions(
        self,
        request: UploadRequest,
        test_id: int,
        learner_steps: Sequence[LearnerStep],
        aligner: SequenceAligner,
        reference: TraceResult,
    ) -> None:
        learner_rows = [
            {
                "sequence": learner_step.sequence,
                "step": learner_step.step,
                "line_number": aligner.line_for(learner_step.step, learner_step.variables[0].variable_name)
                if learner_step.variables
                else None,
                "variables": [
                    {"name": variable.variable_name, "value": variable.value} for variable in learner_step.variables
                ],
            }
            for learner_step in learner_steps
        ]
        reference_rows = [
            {
                "step": step,
                "line_number": _reference_line(records, aligner),
                "variables": [{"name": record.variable_name, "value": record.value} for record in records],
            }
            for step, records in sorted(reference.by_step().items())
        ]
        await asyncio.to_thread(
            self._store.save_solution, request.session_id, request.user_id, test_id, learner_rows
        )
        await asyncio.to_thread(self._store.save_reference_solution, request.session_id, test_id, reference_rows)

    # ------------------------------------------------------------------
    # difficulty / ability
    # ------------------------------------------------------------------
    async def _prior_step_difficulties(self, algo_id: int) -> Dict[int, Optional[float]]:
        try:
            algo_steps = await asyncio.to_thread(self._metadata.fetch_algo_steps, algo_id)
        except CollaboratorError as exc:
            LOGGER.warning("Algorithm %s steps unavailable, using stored difficulties only: %s", algo_id, exc)
            return {}
        return {item.step: item.difficulty for item in algo_steps}

    async def _update_quality(self, user_id: int, test: TestInfo, step_outcomes: Mapping[int, bool]) -> None:
        if not step_outcomes:
            return
        priors = await self._prior_step_difficulties(test.algo_id)
        result = await asyncio.to_thread(
            lambda: self._estimator.record_attempt(
                user_id=user_id,
                test_id=test.test_id,
                algo_id=test.algo_id,
                step_outcomes=step_outcomes,
                prior_step_difficulties=priors,
                prior_test_difficulty=test.difficulty,
            )
        )
        await self._propagate(result["difficulty"])

    async def _propagate(self, update: DifficultyUpdate) -> None:
        """Push refreshed difficulties to the metadata provider; failures are logged only."""
        if not self.propagate:
            return
        try:
            for step, difficulty in sorted(update.step_difficulties.items()):
                if difficulty is None:
                    continue
                await asyncio.to_thread(self._metadata.update_step_difficulty, update.algo_id, step, difficulty)
            if update.test_difficulty is not None:
                await asyncio.to_thread(self._metadata.update_test_difficulty, update.test_id, update.test_difficulty)
        except CollaboratorError as exc:
            LOGGER.error("Failed to propagate quality parameters for test %s: %s", update.test_id, exc)

    # ------------------------------------------------------------------
    # quality parameters and statistics
    # ------------------------------------------------------------------
    async def upload_quality_parameters(self, updates: Sequence[QualityUpdate]) -> List[DifficultyUpdate]:
        """Apply externally reported step results to the difficulty tallies."""
        applied: List[DifficultyUpdate] = []
        for update in updates:
            try:
                test = await asyncio.to_thread(self._metadata.fetch_test, update.test_id)
            except CollaboratorError as exc:
                LOGGER.error("Test not found: test_id=%s: %s", update.test_id, exc)
                continue
            if test.algo_id != update.algo_id:
                LOGGER.error("Algorithm mismatch for test %s: %s != %s", update.test_id, test.algo_id, update.algo_id)
                continue
            if not update.step_results:
                LOGGER.debug("No step results for test %s", update.test_id)
                continue
            outcomes: Dict[int, bool] = {}
            for result in update.step_results:
                outcomes[result.step] = outcomes.get(result.step, True) and result.is_correct
            priors = await self._prior_step_difficulties(test.algo_id)
            difficulty = await asyncio.to_thread(
                lambda: self._estimator.update_difficulties(
                    algo_id=test.algo_id,
                    test_id=test.test_id,
                    step_outcomes=outcomes,
                    prior_step_difficulties=priors,
                    prior_test_difficulty=test.difficulty,
                )
            )
            await self._propagate(difficulty)
            applied.append(difficulty)
        return applied

    def tests_for_user(self, user_id: int, algo_id: int) -> List[int]:
        """Tests of ``algo_id`` whose difficulty sits close to the learner's ability."""
        abilities = self._store.list_abilities(user_id)
        suitable = []
        for test in self._metadata.fetch_tests(algo_id):
            difficulty = self._store.get_test_difficulty(test.test_id)
            if difficulty is None:
                difficulty = DEFAULT_DIFFICULTY if test.difficulty is None else test.difficulty
            if abs(difficulty - abilities.get(test.test_id, 0.0)) < MATCHING_WINDOW:
                suitable.append(test.test_id)
        LOGGER.info("Found %s suitable test(s) for user %s, algo %s", len(suitable), user_id, algo_id)
        return suitable

    def test_parameters(self, test_id: int) -> Dict[str, Any]:
        test = self._metadata.fetch_test(test_id)
        step_difficulties: Dict[int, Optional[float]] = {
            item.step: item.difficulty for item in self._metadata.fetch_algo_steps(test.algo_id)
        }
        step_counts: Dict[int, Dict[str, int]] = {}
        for row in self._store.list_step_responses(test.algo_id):
            step = int(row["step"])
            if row["difficulty"] is not None:
                step_difficulties[step] = float(row["difficulty"])
            step_counts[step] = {"correct": row["correct_count"], "incorrect": row["incorrect_count"]}
        difficulty = self._store.get_test_difficulty(test_id)
        return {
            "test_id": test.test_id,
            "algo_id": test.algo_id,
            "difficulty": test.difficulty if difficulty is None else difficulty,
            "step_difficulties": dict(sorted(step_difficulties.items())),
            "step_counts": dict(sorted(step_counts.items())),
        }

    def test_statistics(self, test_id: int, user_id: int) -> Dict[str, Any]:
        """Learner's solutions of a test across sessions, with the test's quality parameters."""
        parameters = self.test_parameters(test_id)
        return {
            "test_id": parameters["test_id"],
            "user_id": user_id,
            "algo_id": parameters["algo_id"],
            "difficulty": parameters["difficulty"],
            "step_difficulties": parameters["step_difficulties"],
            "solutions": self._store.list_solutions(user_id, test_id),
            "ability": self._store.get_ability(user_id, test_id),
        }

    def solution_stats(self, session_id: int, user_id: int, test_id: int) -> Dict[str, Any]:
        """Learner's stored solution next to the program's, with grade and ability."""
        allowed = validate_session(self._store.get_session(session_id), session_id)
        validate_test_membership(test_id, allowed)
        grade = self._store.get_grade(user_id, session_id)
        return {
            "session_id": session_id,
            "user_id": user_id,
            "test_id": test_id,
            "user_solution": self._store.get_solution(session_id, user_id, test_id),
            "program_solution": self._store.get_reference_solution(session_id, test_id),
            "grade": None if grade is None else grade["mark"],
            "ability": self._store.get_ability(user_id, test_id),
        }


def _reference_line(records: Sequence[VariableRecord], aligner: SequenceAligner) -> Optional[int]:
    for record in records:
        if record.line_number is not None:
            return record.line_number
    algo_step = aligner.resolve_algo_step(records)
    if algo_step is None or not records:
        return None
    return aligner.line_for(algo_step, records[0].variable_name)
