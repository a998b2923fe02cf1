import importlib
import math
import os
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import db
import engines.difficulty as difficulty_module


class DifficultyFormulaTests(unittest.TestCase):
    def test_log_odds(self):
        self.assertEqual(difficulty_module.log_odds(0, 3), 0.0)
        self.assertAlmostEqual(difficulty_module.log_odds(5, 1), math.log(5))
        self.assertAlmostEqual(difficulty_module.log_odds(3, 0), math.log(3))
        self.assertAlmostEqual(difficulty_module.log_odds(1, 2), math.log(0.5))

    def test_step_difficulty_is_clamped(self):
        self.assertEqual(difficulty_module.step_difficulty(5, 1), 1.0)
        self.assertEqual(difficulty_module.step_difficulty(1, 4), 0.0)
        self.assertAlmostEqual(difficulty_module.step_difficulty(3, 2), math.log(1.5))

    def test_step_difficulty_keeps_prior_without_observations(self):
        self.assertEqual(difficulty_module.step_difficulty(0, 0, 0.3), 0.3)
        self.assertIsNone(difficulty_module.step_difficulty(0, 0))

    def test_ability_is_capped(self):
        self.assertEqual(difficulty_module.ability_estimate(5, 1), 0.95)
        self.assertEqual(difficulty_module.blend_ability(0.95, 0.95), 0.95)
        self.assertAlmostEqual(difficulty_module.blend_ability(0.2, 0.6), 0.4)

    def test_mean_and_blend(self):
        self.assertIsNone(difficulty_module.mean_difficulty({1: None}))
        self.assertAlmostEqual(difficulty_module.mean_difficulty({1: 0.2, 2: None, 3: 0.6}), 0.4)
        self.assertEqual(difficulty_module.blend_difficulty(0.4, None), 0.4)
        self.assertAlmostEqual(difficulty_module.blend_difficulty(0.4, 0.8), 0.6)


class DifficultyEstimatorDbTests(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self._prev_db_path = os.environ.get("DB_PATH")
        os.environ["DB_PATH"] = os.path.join(self._tmpdir.name, "test.db")

        importlib.reload(db)
        db.init()
        importlib.reload(difficulty_module)

        self.estimator = difficulty_module.DifficultyEstimator(db)

    def tearDown(self):
        db._pool.close_all()
        if self._prev_db_path is not None:
            os.environ["DB_PATH"] = self._prev_db_path
        else:
            os.environ.pop("DB_PATH", None)

        importlib.reload(db)
        importlib.reload(difficulty_module)
        self._tmpdir.cleanup()

    def test_step_counters_accumulate(self):
        for _ in range(5):
            self.estimator.update_difficulties(algo_id=1, test_id=10, step_outcomes={1: True})
        update = self.estimator.update_difficulties(algo_id=1, test_id=10, step_outcomes={1: False})

        row = update.steps[1]
        self.assertEqual((row["correct_count"], row["incorrect_count"]), (5, 1))
        # ln(5) is above the upper bound
        self.assertEqual(row["difficulty"], 1.0)
        [stored] = db.list_step_responses(1)
        self.assertEqual(stored["correct_count"], 5)
        self.assertEqual(stored["incorrect_count"], 1)

    def test_test_difficulty_is_blended_with_stored_value(self):
        db.save_step_difficulty(1, 2, 0.6)
        db.save_test_difficulty(10, 1, 0.8)

        update = self.estimator.update_difficulties(algo_id=1, test_id=10, step_outcomes={1: False})

        # step 1 has only failures, so its difficulty is 0; mean(0, 0.6) = 0.3
        self.assertEqual(update.step_difficulties, {1: 0.0})
        self.assertAlmostEqual(update.test_difficulty, (0.3 + 0.8) / 2)
        self.assertAlmostEqual(db.get_test_difficulty(10), (0.3 + 0.8) / 2)

    def test_provider_priors_fill_in_unknown_steps(self):
        update = self.estimator.update_difficulties(
            algo_id=2,
            test_id=20,
            step_outcomes={1: False},
            prior_step_difficulties={1: 0.9, 2: 0.5, 3: None},
            prior_test_difficulty=0.7,
        )

        self.assertAlmostEqual(update.test_difficulty, (0.25 + 0.7) / 2)

    def test_ability_is_averaged_with_stored_value(self):
        first = self.estimator.update_ability(user_id=1, test_id=10, step_outcomes={1: True, 2: True})
        self.assertIsNone(first.ability_before)
        self.assertAlmostEqual(first.ability, math.log(2))

        second = self.estimator.update_ability(user_id=1, test_id=10, step_outcomes={1: False, 2: False})
        self.assertAlmostEqual(second.ability_before, math.log(2))
        self.assertAlmostEqual(second.ability, math.log(2) / 2)
        self.assertAlmostEqual(db.get_ability(1, 10), math.log(2) / 2)

    def test_no_outcomes_leaves_ability_untouched(self):
        self.assertIsNone(self.estimator.update_ability(user_id=1, test_id=10, step_outcomes={}))
        self.assertIsNone(db.get_ability(1, 10))

    def test_record_attempt_updates_both(self):
        result = self.estimator.record_attempt(
            user_id=3, test_id=30, algo_id=3, step_outcomes={1: True, 2: False}
        )

        self.assertEqual(set(result), {"difficulty", "ability"})
        self.assertEqual(result["difficulty"].step_difficulties, {1: 0.0, 2: 0.0})
        self.assertEqual(result["ability"].ability, 0.0)
        self.assertEqual(db.list_abilities(3), {30: 0.0})


if __name__ == "__main__":
    unittest.main()
