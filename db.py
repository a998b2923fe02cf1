import json
import logging
import os
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

from db_pool import SQLiteConnectionPool

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_LOCK_RETRY_ATTEMPTS = 5
_LOCK_RETRY_DELAY = 0.05

_T = TypeVar("_T")

SESSION_TYPES = ("exam", "practice")


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _is_lock_conflict(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


def _atomic(work: Callable[[sqlite3.Connection], _T]) -> _T:
    """Run ``work`` inside one ``BEGIN IMMEDIATE`` transaction.

    The write lock is taken before anything is read, so read-modify-write
    sequences on shared counters cannot interleave. Lock conflicts are retried
    with exponential backoff and re-raised once the attempts are exhausted.
    """
    delay = _LOCK_RETRY_DELAY
    for attempt in range(1, _LOCK_RETRY_ATTEMPTS + 1):
        with _conn() as con:
            try:
                con.execute("BEGIN IMMEDIATE")
                result = work(con)
                con.commit()
                return result
            except sqlite3.OperationalError as exc:
                con.rollback()
                if not _is_lock_conflict(exc) or attempt == _LOCK_RETRY_ATTEMPTS:
                    raise
                logger.warning("Store busy on attempt %s, retrying: %s", attempt, exc)
        time.sleep(delay)
        delay *= 2
    raise RuntimeError("unreachable")


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS sessions (
              session_id   INTEGER PRIMARY KEY,
              session_type TEXT NOT NULL DEFAULT 'exam'
                           CHECK (session_type IN ('exam', 'practice')),
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS session_tests (
              session_id INTEGER NOT NULL,
              test_id    INTEGER NOT NULL,
              PRIMARY KEY (session_id, test_id),
              FOREIGN KEY(session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS learner_solutions (
              session_id  INTEGER NOT NULL,
              user_id     INTEGER NOT NULL,
              test_id     INTEGER NOT NULL,
              sequence    INTEGER NOT NULL,
              step        INTEGER NOT NULL,
              line_number INTEGER,
              variables   TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (session_id, user_id, test_id, sequence)
            );

            CREATE TABLE IF NOT EXISTS reference_solutions (
              session_id  INTEGER NOT NULL,
              test_id     INTEGER NOT NULL,
              step        INTEGER NOT NULL,
              line_number INTEGER,
              variables   TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (session_id, test_id, step)
            );

            CREATE TABLE IF NOT EXISTS step_responses (
              algo_id         INTEGER NOT NULL,
              step            INTEGER NOT NULL,
              correct_count   INTEGER NOT NULL DEFAULT 0,
              incorrect_count INTEGER NOT NULL DEFAULT 0,
              difficulty      REAL,
              updated_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (algo_id, step)
            );

            CREATE TABLE IF NOT EXISTS test_quality (
              test_id    INTEGER PRIMARY KEY,
              algo_id    INTEGER NOT NULL,
              difficulty REAL NOT NULL,
              updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS user_test_abilities (
              user_id    INTEGER NOT NULL,
              test_id    INTEGER NOT NULL,
              ability    REAL NOT NULL DEFAULT 0.0,
              attempts   INTEGER NOT NULL DEFAULT 0,
              updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (user_id, test_id)
            );

            CREATE TABLE IF NOT EXISTS grades (
              user_id    INTEGER NOT NULL,
              session_id INTEGER NOT NULL,
              mark       REAL NOT NULL,
              updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (user_id, session_id)
            );

            CREATE INDEX IF NOT EXISTS idx_learner_solutions_test
              ON learner_solutions(test_id, user_id);
            CREATE INDEX IF NOT EXISTS idx_abilities_user
              ON user_test_abilities(user_id);
            """
        )
        con.commit()


# -------------- sessions --------------
def create_session(session_id: int, session_type: str = "exam", test_ids: Sequence[int] = ()) -> None:
    """Register ``session_id`` and the tests it contains (idempotent)."""
    if session_type not in SESSION_TYPES:
        raise ValueError(f"session_type must be one of {', '.join(SESSION_TYPES)}")

    def work(con: sqlite3.Connection) -> None:
        con.execute(
            """
            INSERT INTO sessions(session_id, session_type) VALUES (?, ?)
            ON CONFLICT(session_id) DO UPDATE SET session_type = excluded.session_type
            """,
            (int(session_id), session_type),
        )
        con.executemany(
            "INSERT OR IGNORE INTO session_tests(session_id, test_id) VALUES (?, ?)",
            [(int(session_id), int(test_id)) for test_id in test_ids],
        )

    _atomic(work)


def get_session(session_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT session_id, session_type FROM sessions WHERE session_id = ?",
        (int(session_id),),
    )
    if not rows:
        return None
    tests = _query(
        "SELECT test_id FROM session_tests WHERE session_id = ? ORDER BY test_id",
        (int(session_id),),
    )
    return {
        "session_id": rows[0]["session_id"],
        "session_type": rows[0]["session_type"],
        "test_ids": [row["test_id"] for row in tests],
    }


# -------------- solutions --------------
def _steps_payload(steps: Sequence[Mapping[str, Any]], key: str) -> List[tuple]:
    payload = []
    for step in steps:
        variables = [
            {"name": str(item.get("name")), "value": "" if item.get("value") is None else str(item.get("value"))}
            for item in step.get("variables") or []
        ]
        payload.append(
            (
                int(step[key]),
                int(step["step"]),
                step.get("line_number"),
                json.dumps(variables, ensure_ascii=False),
            )
        )
    return payload


def save_solution(session_id: int, user_id: int, test_id: int, steps: Sequence[Mapping[str, Any]]) -> None:
    """Replace the learner's stored solution for one test of a session.

    ``steps`` items carry ``sequence``, ``step``, ``line_number`` and
    ``variables`` (a list of ``{"name", "value"}``).
    """
    rows = _steps_payload(steps, "sequence")

    def work(con: sqlite3.Connection) -> None:
        con.execute(
            "DELETE FROM learner_solutions WHERE session_id = ? AND user_id = ? AND test_id = ?",
            (int(session_id), int(user_id), int(test_id)),
        )
        con.executemany(
            """
            INSERT INTO learner_solutions(session_id, user_id, test_id, sequence, step, line_number, variables)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [(int(session_id), int(user_id), int(test_id), *row) for row in rows],
        )

    _atomic(work)


def save_reference_solution(session_id: int, test_id: int, steps: Sequence[Mapping[str, Any]]) -> None:
    """Replace the stored reference trace of one test within a session."""
    rows = [(row[1], row[2], row[3]) for row in _steps_payload(steps, "step")]

    def work(con: sqlite3.Connection) -> None:
        con.execute(
            "DELETE FROM reference_solutions WHERE session_id = ? AND test_id = ?",
            (int(session_id), int(test_id)),
        )
        con.executemany(
            """
            INSERT INTO reference_solutions(session_id, test_id, step, line_number, variables)
            VALUES (?, ?, ?, ?, ?)
            """,
            [(int(session_id), int(test_id), *row) for row in rows],
        )

    _atomic(work)


def _decode_variables(raw: Optional[str]) -> List[Dict[str, str]]:
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed stored variables: %r", raw[:80])
        return []
    return decoded if isinstance(decoded, list) else []


def get_solution(session_id: int, user_id: int, test_id: int) -> List[Dict[str, Any]]:
    rows = _query(
        """
        SELECT sequence, step, line_number, variables FROM learner_solutions
        WHERE session_id = ? AND user_id = ? AND test_id = ?
        ORDER BY sequence
        """,
        (int(session_id), int(user_id), int(test_id)),
    )
    return [
        {
            "sequence": row["sequence"],
            "step": row["step"],
            "line_number": row["line_number"],
            "variables": _decode_variables(row["variables"]),
        }
        for row in rows
    ]


def list_solutions(user_id: int, test_id: int) -> Dict[int, List[Dict[str, Any]]]:
    """Learner's stored solutions of one test in every session, keyed by session."""
    rows = _query(
        """
        SELECT session_id, sequence, step, line_number, variables FROM learner_solutions
        WHERE user_id = ? AND test_id = ?
        ORDER BY session_id, sequence
        """,
        (int(user_id), int(test_id)),
    )
    solutions: Dict[int, List[Dict[str, Any]]] = {}
    for row in rows:
        solutions.setdefault(int(row["session_id"]), []).append(
            {
                "sequence": row["sequence"],
                "step": row["step"],
                "line_number": row["line_number"],
                "variables": _decode_variables(row["variables"]),
            }
        )
    return solutions


def get_reference_solution(session_id: int, test_id: int) -> List[Dict[str, Any]]:
    rows = _query(
        """
        SELECT step, line_number, variables FROM reference_solutions
        WHERE session_id = ? AND test_id = ?
        ORDER BY step
        """,
        (int(session_id), int(test_id)),
    )
    return [
        {
            "step": row["step"],
            "line_number": row["line_number"],
            "variables": _decode_variables(row["variables"]),
        }
        for row in rows
    ]


# -------------- step difficulty --------------
def record_step_outcome(
    algo_id: int,
    step: int,
    *,
    correct: bool,
    estimate: Callable[[int, int, Optional[float]], Optional[float]],
    prior: Optional[float] = None,
) -> Dict[str, Any]:
    """Count one attempt at ``(algo_id, step)`` and refresh its difficulty.

    ``estimate(correct_count, incorrect_count, prior)`` runs inside the same
    transaction as the counter increment. ``prior`` is used when the store has
    no difficulty yet (typically the metadata provider's value).
    """

    def work(con: sqlite3.Connection) -> Dict[str, Any]:
        row = con.execute(
            "SELECT correct_count, incorrect_count, difficulty FROM step_responses WHERE algo_id = ? AND step = ?",
            (int(algo_id), int(step)),
        ).fetchone()
        correct_count = (row["correct_count"] if row else 0) + (1 if correct else 0)
        incorrect_count = (row["incorrect_count"] if row else 0) + (0 if correct else 1)
        stored = row["difficulty"] if row and row["difficulty"] is not None else prior
        difficulty = estimate(correct_count, incorrect_count, stored)
        con.execute(
            """
            INSERT INTO step_responses(algo_id, step, correct_count, incorrect_count, difficulty, updated_at)
            VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(algo_id, step) DO UPDATE SET
              correct_count = excluded.correct_count,
              incorrect_count = excluded.incorrect_count,
              difficulty = excluded.difficulty,
              updated_at = CURRENT_TIMESTAMP
            """,
            (int(algo_id), int(step), correct_count, incorrect_count, difficulty),
        )
        return {
            "algo_id": int(algo_id),
            "step": int(step),
            "correct_count": correct_count,
            "incorrect_count": incorrect_count,
            "difficulty": difficulty,
        }

    return _atomic(work)


def save_step_difficulty(algo_id: int, step: int, difficulty: float) -> None:
    _exec(
        """
        INSERT INTO step_responses(algo_id, step, difficulty, updated_at)
        VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(algo_id, step) DO UPDATE SET
          difficulty = excluded.difficulty,
          updated_at = CURRENT_TIMESTAMP
        """,
        (int(algo_id), int(step), float(difficulty)),
    )


def list_step_responses(algo_id: int) -> List[Dict[str, Any]]:
    rows = _query(
        """
        SELECT algo_id, step, correct_count, incorrect_count, difficulty
        FROM step_responses WHERE algo_id = ? ORDER BY step
        """,
        (int(algo_id),),
    )
    return [dict(row) for row in rows]


# -------------- test difficulty --------------
def get_test_difficulty(test_id: int) -> Optional[float]:
    rows = _query("SELECT difficulty FROM test_quality WHERE test_id = ?", (int(test_id),))
    return float(rows[0]["difficulty"]) if rows else None


def blend_test_difficulty(
    test_id: int,
    algo_id: int,
    value: float,
    *,
    combine: Callable[[float, Optional[float]], float],
    prior: Optional[float] = None,
) -> float:
    """Merge ``value`` into the stored test difficulty atomically."""

    def work(con: sqlite3.Connection) -> float:
        row = con.execute("SELECT difficulty FROM test_quality WHERE test_id = ?", (int(test_id),)).fetchone()
        stored = float(row["difficulty"]) if row else prior
        merged = combine(value, stored)
        con.execute(
            """
            INSERT INTO test_quality(test_id, algo_id, difficulty, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(test_id) DO UPDATE SET
              algo_id = excluded.algo_id,
              difficulty = excluded.difficulty,
              updated_at = CURRENT_TIMESTAMP
            """,
            (int(test_id), int(algo_id), merged),
        )
        return merged

    return _atomic(work)


def save_test_difficulty(test_id: int, algo_id: int, difficulty: float) -> None:
    _exec(
        """
        INSERT INTO test_quality(test_id, algo_id, difficulty, updated_at)
        VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(test_id) DO UPDATE SET
          algo_id = excluded.algo_id,
          difficulty = excluded.difficulty,
          updated_at = CURRENT_TIMESTAMP
        """,
        (int(test_id), int(algo_id), float(difficulty)),
    )


# -------------- ability --------------
def get_ability(user_id: int, test_id: int) -> Optional[float]:
    rows = _query(
        "SELECT ability FROM user_test_abilities WHERE user_id = ? AND test_id = ?",
        (int(user_id), int(test_id)),
    )
    return float(rows[0]["ability"]) if rows else None


def list_abilities(user_id: int) -> Dict[int, float]:
    rows = _query(
        "SELECT test_id, ability FROM user_test_abilities WHERE user_id = ?",
        (int(user_id),),
    )
    return {int(row["test_id"]): float(row["ability"]) for row in rows}


def blend_ability(
    user_id: int,
    test_id: int,
    estimate: float,
    *,
    combine: Callable[[float, Optional[float]], float],
) -> Dict[str, Any]:
    """Fold a new ability estimate into the stored one in a single transaction."""

    def work(con: sqlite3.Connection) -> Dict[str, Any]:
        row = con.execute(
            "SELECT ability, attempts FROM user_test_abilities WHERE user_id = ? AND test_id = ?",
            (int(user_id), int(test_id)),
        ).fetchone()
        stored = float(row["ability"]) if row else None
        attempts = (row["attempts"] if row else 0) + 1
        ability = combine(estimate, stored)
        con.execute(
            """
            INSERT INTO user_test_abilities(user_id, test_id, ability, attempts, updated_at)
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(user_id, test_id) DO UPDATE SET
              ability = excluded.ability,
              attempts = excluded.attempts,
              updated_at = CURRENT_TIMESTAMP
            """,
            (int(user_id), int(test_id), ability, attempts),
        )
        return {"ability_before": stored, "ability": ability, "attempts": attempts}

    return _atomic(work)


def save_ability(user_id: int, test_id: int, ability: float) -> None:
    _exec(
        """
        INSERT INTO user_test_abilities(user_id, test_id, ability, attempts, updated_at)
        VALUES (?, ?, ?, 1, CURRENT_TIMESTAMP)
        ON CONFLICT(user_id, test_id) DO UPDATE SET
          ability = excluded.ability,
          updated_at = CURRENT_TIMESTAMP
        """,
        (int(user_id), int(test_id), float(ability)),
    )


# -------------- grades --------------
def upsert_grade(user_id: int, session_id: int, mark: float, *, overwrite: bool = True) -> float:
    """Create the grade if absent; replace it only when ``overwrite`` is set.

    Returns the mark that is stored after the call.
    """

    def work(con: sqlite3.Connection) -> float:
        row = con.execute(
            "SELECT mark FROM grades WHERE user_id = ? AND session_id = ?",
            (int(user_id), int(session_id)),
        ).fetchone()
        if row is not None and not overwrite:
            return float(row["mark"])
        con.execute(
            """
            INSERT INTO grades(user_id, session_id, mark, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(user_id, session_id) DO UPDATE SET
              mark = excluded.mark,
              updated_at = CURRENT_TIMESTAMP
            """,
            (int(user_id), int(session_id), float(mark)),
        )
        return float(mark)

    return _atomic(work)


def get_grade(user_id: int, session_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT user_id, session_id, mark, updated_at FROM grades WHERE user_id = ? AND session_id = ?",
        (int(user_id), int(session_id)),
    )
    return dict(rows[0]) if rows else None
