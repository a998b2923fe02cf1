"""Grade a learner's trace submission read from a JSON file."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from engines.validation import UnknownSessionError
from env_validation import EnvironmentError, validate_environment
from grading import GradingService, NoProcessableTestsError
from schemas import SessionType, UploadRequest

LOGGER = logging.getLogger("tracemark.cli")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "submission",
        help="Path to the submission JSON (use '-' to read standard input).",
    )
    parser.add_argument(
        "--create-session",
        choices=[session_type.value for session_type in SessionType],
        help="Register the submission's session with this type and its tests before grading.",
    )
    parser.add_argument(
        "--sequential",
        action="store_true",
        help="Evaluate the tests one after another instead of concurrently.",
    )
    parser.add_argument(
        "--output",
        help="Optional path to write the JSON result to.",
    )
    return parser.parse_args(argv)


def _load_submission(source: str) -> UploadRequest:
    if source == "-":
        text = sys.stdin.read()
    else:
        text = Path(source).read_text(encoding="utf-8")
    return UploadRequest.model_validate_json(text)


def _render(outcome: Any) -> str:
    result = outcome.result()
    payload = {
        "user_id": outcome.user_id,
        "session_id": outcome.session_id,
        "mode": outcome.mode.value,
        "score": outcome.score,
        "result": result.model_dump(mode="json") if hasattr(result, "model_dump") else result,
        "tests": [test.model_dump(mode="json") for test in outcome.tests],
    }
    return json.dumps(payload, indent=2, ensure_ascii=False)


def main(argv: Sequence[str] | None = None, *, service: GradingService | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        validate_environment()
        request = _load_submission(args.submission)
    except (EnvironmentError, OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    db.init()
    if args.create_session:
        db.create_session(
            request.session_id,
            args.create_session,
            [test.test_id for test in request.tests],
        )

    if service is None:
        service = GradingService.from_env(parallel=False if args.sequential else None)
    elif args.sequential:
        service.parallel = False

    try:
        outcome = asyncio.run(service.evaluate(request))
    except UnknownSessionError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except NoProcessableTestsError as exc:
        LOGGER.error("%s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1

    payload = _render(outcome)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
