"""Step/test difficulty and per-learner ability from correct/incorrect tallies.

Every estimate is a log-odds transform of cumulative counts, clamped to a
fixed range. Stored values are never replaced outright: a new test difficulty
or ability is averaged with the stored one.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import db
from engines.scoring import clamp

_LOGGER = logging.getLogger(__name__)

DIFFICULTY_MIN, DIFFICULTY_MAX = 0.0, 1.0
ABILITY_MIN, ABILITY_MAX = 0.0, 0.95


def log_odds(correct: int, incorrect: int) -> float:
    """ln(correct/incorrect), ln(correct) without failures, 0 without successes."""
    if correct <= 0:
        return 0.0
    if incorrect > 0:
        return math.log(correct / incorrect)
    return math.log(correct)


def step_difficulty(correct: int, incorrect: int, prior: Optional[float] = None) -> Optional[float]:
    if correct <= 0 and incorrect <= 0:
        return prior
    return clamp(log_odds(correct, incorrect), DIFFICULTY_MIN, DIFFICULTY_MAX)


def mean_difficulty(difficulties: Mapping[int, Optional[float]]) -> Optional[float]:
    known = [float(value) for value in difficulties.values() if value is not None]
    if not known:
        return None
    return clamp(sum(known) / len(known), DIFFICULTY_MIN, DIFFICULTY_MAX)


def blend_difficulty(value: float, stored: Optional[float]) -> float:
    if stored is None:
        return clamp(value, DIFFICULTY_MIN, DIFFICULTY_MAX)
    return clamp((value + stored) / 2.0, DIFFICULTY_MIN, DIFFICULTY_MAX)


def ability_estimate(correct: int, incorrect: int) -> float:
    return clamp(log_odds(correct, incorrect), ABILITY_MIN, ABILITY_MAX)


def blend_ability(estimate: float, stored: Optional[float]) -> float:
    if stored is None:
        return clamp(estimate, ABILITY_MIN, ABILITY_MAX)
    return clamp((estimate + stored) / 2.0, ABILITY_MIN, ABILITY_MAX)


@dataclass
class DifficultyUpdate:
    algo_id: int
    test_id: int
    steps: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    test_difficulty: Optional[float] = None

    @property
    def step_difficulties(self) -> Dict[int, Optional[float]]:
        return {step: row.get("difficulty") for step, row in self.steps.items()}


@dataclass
class AbilityUpdate:
    user_id: int
    test_id: int
    estimate: float
    ability_before: Optional[float]
    ability: float


class DifficultyEstimator:
    """Applies attempt outcomes to the shared tallies in ``store``.

    ``store`` defaults to the :mod:`db` module; each per-key update is one
    store transaction and the lock serialises updates issued from this
    process.
    """

    def __init__(self, store: Any = db):
        self._store = store
        self._lock = threading.Lock()

    def update_difficulties(
        self,
        *,
        algo_id: int,
        test_id: int,
        step_outcomes: Mapping[int, bool],
        prior_step_difficulties: Optional[Mapping[int, Optional[float]]] = None,
        prior_test_difficulty: Optional[float] = None,
    ) -> DifficultyUpdate:
        priors = dict(prior_step_difficulties or {})
        update = DifficultyUpdate(algo_id=algo_id, test_id=test_id)
        with self._lock:
            for step in sorted(step_outcomes):
                update.steps[step] = self._store.record_step_outcome(
                    algo_id,
                    step,
                    correct=bool(step_outcomes[step]),
                    estimate=step_difficulty,
                    prior=priors.get(step),
                )

            known: Dict[int, Optional[float]] = dict(priors)
            for row in self._store.list_step_responses(algo_id):
                if row.get("difficulty") is not None:
                    known[int(row["step"])] = float(row["difficulty"])
            known.update(update.step_difficulties)

            mean = mean_difficulty(known)
            if mean is not None:
                update.test_difficulty = self._store.blend_test_difficulty(
                    test_id,
                    algo_id,
                    mean,
                    combine=blend_difficulty,
                    prior=prior_test_difficulty,
                )
        _LOGGER.debug(
            "Updated %s step difficulties for algo %s; test %s difficulty=%s",
            len(update.steps),
            algo_id,
            test_id,
            update.test_difficulty,
        )
        return update

    def update_ability(self, *, user_id: int, test_id: int, step_outcomes: Mapping[int, bool]) -> Optional[AbilityUpdate]:
        if not step_outcomes:
            return None
        correct = sum(1 for outcome in step_outcomes.values() if outcome)
        incorrect = len(step_outcomes) - correct
        estimate = ability_estimate(correct, incorrect)
        with self._lock:
            stored = self._store.blend_ability(user_id, test_id, estimate, combine=blend_ability)
        return AbilityUpdate(
            user_id=user_id,
            test_id=test_id,
            estimate=estimate,
            ability_before=stored["ability_before"],
            ability=stored["ability"],
        )

    def record_attempt(
        self,
        *,
        user_id: int,
        test_id: int,
        algo_id: int,
        step_outcomes: Mapping[int, bool],
        prior_step_difficulties: Optional[Mapping[int, Optional[float]]] = None,
        prior_test_difficulty: Optional[float] = None,
    ) -> Dict[str, Any]:
        difficulties = self.update_difficulties(
            algo_id=algo_id,
            test_id=test_id,
            step_outcomes=step_outcomes,
            prior_step_difficulties=prior_step_difficulties,
            prior_test_difficulty=prior_test_difficulty,
        )
        ability = self.update_ability(user_id=user_id, test_id=test_id, step_outcomes=step_outcomes)
        return {"difficulty": difficulties, "ability": ability}
