"""Positional alignment of a learner's trace against the program's own trace.

The learner reports answers in chronological order (``sequence``) and claims
an algorithm step for each of them. The reference run of the program yields
execution steps ``1..M``; a correct solution reproduces them one to one. The
aligner walks both lists by position: once the learner diverges (a sequence
break or a claim for the wrong algorithm step) the remainder of the reference
is charged as mistaken and no further positional matching is attempted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from engines.comparator import compare, count_elements, rank_from_type
from schemas import MismatchKind, StepLine, SubmittedVariable, VariableRecord


@dataclass
class LearnerStep:
    sequence: int
    step: int
    variables: List[SubmittedVariable] = field(default_factory=list)


@dataclass
class Divergence:
    kind: MismatchKind
    sequence: int
    step: int
    variable_name: Optional[str] = None
    mistakes: int = 0
    expected: Optional[str] = None
    actual: Optional[str] = None


@dataclass
class AlignmentResult:
    divergences: List[Divergence]
    mistakes: int
    learner_step_count: int
    reference_step_count: int
    break_index: Optional[int] = None
    wrong_step_index: Optional[int] = None
    step_outcomes: Dict[int, bool] = field(default_factory=dict)
    missing_steps: List[int] = field(default_factory=list)
    extra_steps: List[int] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.divergences


def group_learner_steps(variables: Iterable[SubmittedVariable]) -> List[LearnerStep]:
    """Group submitted variables by sequence, ordered chronologically."""
    grouped: Dict[int, LearnerStep] = {}
    for variable in variables:
        entry = grouped.setdefault(variable.sequence, LearnerStep(variable.sequence, variable.step))
        entry.variables.append(variable)
    return [grouped[sequence] for sequence in sorted(grouped)]


class SequenceAligner:
    """Aligns learner steps with reference steps for one algorithm."""

    def __init__(self, step_lines: Sequence[StepLine]):
        self._lines_by_step: Dict[int, Set[int]] = {}
        self._names_by_step: Dict[int, Set[str]] = {}
        self._types: Dict[Tuple[int, str], str] = {}
        self._line_by_key: Dict[Tuple[int, str], int] = {}
        self._type_by_name: Dict[str, str] = {}
        for entry in step_lines:
            name = entry.var_name.lower()
            self._lines_by_step.setdefault(entry.step, set()).add(entry.line_number)
            self._names_by_step.setdefault(entry.step, set()).add(name)
            self._types.setdefault((entry.step, name), entry.var_type)
            self._line_by_key.setdefault((entry.step, name), entry.line_number)
            self._type_by_name.setdefault(name, entry.var_type)

    # ------------------------------------------------------------------
    # step/line map lookups
    # ------------------------------------------------------------------
    @property
    def known_steps(self) -> Set[int]:
        return set(self._lines_by_step)

    def type_of(self, step: int, variable_name: str) -> Optional[str]:
        name = variable_name.lower()
        return self._types.get((step, name), self._type_by_name.get(name))

    def is_tracked(self, variable_name: str) -> bool:
        return variable_name.lower() in self._type_by_name

    def line_for(self, step: int, variable_name: str) -> Optional[int]:
        """Line the interpreter should inject ``variable_name`` at for ``step``."""
        name = variable_name.lower()
        if (step, name) in self._line_by_key:
            return self._line_by_key[(step, name)]
        # claimed step does not track the name; use the first step that does
        for candidate in sorted(self._names_by_step):
            if (candidate, name) in self._line_by_key:
                return self._line_by_key[(candidate, name)]
        return None

    def resolve_algo_step(self, records: Sequence[VariableRecord]) -> Optional[int]:
        """Algorithm step a group of reference records was recorded at."""
        if not records:
            return None
        lines = {record.line_number for record in records if record.line_number is not None}
        if lines:
            for step in sorted(self._lines_by_step):
                if lines & self._lines_by_step[step]:
                    return step
            return None
        names = {record.variable_name.lower() for record in records}
        for step in sorted(self._names_by_step):
            if names <= self._names_by_step[step]:
                return step
        return None

    def claims_match(self, claimed_step: int, records: Sequence[VariableRecord]) -> bool:
        if claimed_step not in self._lines_by_step:
            return False
        if not records:
            return True
        lines = {record.line_number for record in records if record.line_number is not None}
        if lines:
            return bool(lines & self._lines_by_step[claimed_step])
        names = {record.variable_name.lower() for record in records}
        return names <= self._names_by_step[claimed_step]

    # ------------------------------------------------------------------
    # element counting
    # ------------------------------------------------------------------
    def learner_elements(self, learner_steps: Sequence[LearnerStep]) -> int:
        """Scoreable elements across everything the learner submitted."""
        total = 0
        for learner_step in learner_steps:
            for variable in learner_step.variables:
                var_type = self.type_of(learner_step.step, variable.variable_name)
                total += count_elements(variable.value, var_type, rank_from_type(var_type))
        return total

    @staticmethod
    def reference_elements(records: Sequence[VariableRecord]) -> int:
        return sum(count_elements(record.value, record.type, record.rank) for record in records)

    # ------------------------------------------------------------------
    # alignment
    # ------------------------------------------------------------------
    def align(
        self,
        learner_steps: Sequence[LearnerStep],
        reference: Mapping[int, Sequence[VariableRecord]],
        substituted: Optional[Mapping[int, Sequence[VariableRecord]]] = None,
    ) -> AlignmentResult:
        substituted = substituted or {}
        reference_steps = sorted(reference)
        learner_sequences = [learner_step.sequence for learner_step in learner_steps]
        common = min(len(learner_steps), len(reference_steps))

        break_index = next(
            (i for i in range(common) if learner_sequences[i] != reference_steps[i]),
            None,
        )
        wrong_step_index = next(
            (
                i
                for i in range(common)
                if not self.claims_match(learner_steps[i].step, reference[reference_steps[i]])
            ),
            None,
        )
        flagged = [index for index in (break_index, wrong_step_index) if index is not None]
        cutoff = min(flagged) if flagged else common

        divergences: List[Divergence] = []
        outcomes: Dict[int, bool] = {}

        for position in range(cutoff):
            learner_step = learner_steps[position]
            execution_step = reference_steps[position]
            records = substituted.get(execution_step) or reference[execution_step]
            found = self._compare_step(learner_step, records)
            divergences.extend(found)
            self._mark(outcomes, learner_step.step, not found)

        charged = 0
        for position in range(cutoff, common):
            records = reference[reference_steps[position]]
            charged += self.reference_elements(records)
            self._mark(outcomes, self.resolve_algo_step(records), False)

        if break_index is not None:
            learner_step = learner_steps[break_index]
            divergences.append(
                Divergence(
                    kind=MismatchKind.SEQUENCE_BREAK,
                    sequence=learner_step.sequence,
                    step=learner_step.step,
                    mistakes=charged if break_index == cutoff else 0,
                    expected=str(reference_steps[break_index]),
                    actual=str(learner_step.sequence),
                )
            )
        if wrong_step_index is not None:
            learner_step = learner_steps[wrong_step_index]
            records = reference[reference_steps[wrong_step_index]]
            expected_step = self.resolve_algo_step(records)
            owns_charge = wrong_step_index == cutoff and break_index != cutoff
            divergences.append(
                Divergence(
                    kind=MismatchKind.WRONG_STEP_NUMBER,
                    sequence=learner_step.sequence,
                    step=learner_step.step,
                    mistakes=charged if owns_charge else 0,
                    expected=None if expected_step is None else str(expected_step),
                    actual=str(learner_step.step),
                )
            )
            self._mark(outcomes, learner_step.step, False)

        missing_steps: List[int] = []
        for position in range(common, len(reference_steps)):
            execution_step = reference_steps[position]
            records = reference[execution_step]
            algo_step = self.resolve_algo_step(records)
            missing_steps.append(execution_step)
            divergences.append(
                Divergence(
                    kind=MismatchKind.MISSING_STEP,
                    sequence=execution_step,
                    step=execution_step if algo_step is None else algo_step,
                    mistakes=self.reference_elements(records),
                )
            )
            self._mark(outcomes, algo_step, False)

        extra_steps: List[int] = []
        for position in range(common, len(learner_steps)):
            learner_step = learner_steps[position]
            extra_steps.append(learner_step.sequence)
            divergences.append(
                Divergence(
                    kind=MismatchKind.EXTRA_STEP,
                    sequence=learner_step.sequence,
                    step=learner_step.step,
                    # the learner's values carry no trusted type here
                    mistakes=sum(count_elements(variable.value) for variable in learner_step.variables),
                )
            )
            self._mark(outcomes, learner_step.step, False)

        return AlignmentResult(
            divergences=divergences,
            mistakes=sum(divergence.mistakes for divergence in divergences),
            learner_step_count=len(learner_steps),
            reference_step_count=len(reference_steps),
            break_index=break_index,
            wrong_step_index=wrong_step_index,
            step_outcomes=outcomes,
            missing_steps=missing_steps,
            extra_steps=extra_steps,
        )

    def _compare_step(self, learner_step: LearnerStep, records: Sequence[VariableRecord]) -> List[Divergence]:
        found: List[Divergence] = []
        remaining = {variable.variable_name.lower(): variable for variable in learner_step.variables}
        for record in records:
            submitted = remaining.pop(record.variable_name.lower(), None)
            if submitted is None:
                found.append(
                    Divergence(
                        kind=MismatchKind.NAME_NOT_FOUND,
                        sequence=learner_step.sequence,
                        step=learner_step.step,
                        variable_name=record.variable_name,
                        mistakes=count_elements(record.value, record.type, record.rank),
                        expected=record.value,
                    )
                )
                continue
            match = compare(submitted.value, record.value, record.type, record.rank)
            if not match.is_exact:
                found.append(
                    Divergence(
                        kind=MismatchKind.VALUE_MISMATCH,
                        sequence=learner_step.sequence,
                        step=learner_step.step,
                        variable_name=submitted.variable_name,
                        mistakes=match.mistakes,
                        expected=record.value,
                        actual=submitted.value,
                    )
                )
        for leftover in remaining.values():
            var_type = self.type_of(learner_step.step, leftover.variable_name)
            found.append(
                Divergence(
                    kind=MismatchKind.NAME_NOT_FOUND,
                    sequence=learner_step.sequence,
                    step=learner_step.step,
                    variable_name=leftover.variable_name,
                    mistakes=count_elements(leftover.value, var_type, rank_from_type(var_type)),
                    actual=leftover.value,
                )
            )
        return found

    def _mark(self, outcomes: Dict[int, bool], algo_step: Optional[int], correct: bool) -> None:
        # An algorithm step is only correct if every occurrence in the attempt was.
        if algo_step is None or algo_step not in self._lines_by_step:
            return
        outcomes[algo_step] = outcomes.get(algo_step, True) and correct
