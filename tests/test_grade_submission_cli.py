import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from grading import GradingService
from scripts import grade_submission
from test_grading_service import CORRECT, FakeMetadata, FakeTracer


@pytest.fixture
def submission_file(tmp_path, monkeypatch):
    monkeypatch.setenv("INTERPRETER_URL", "http://localhost/api/Code")
    monkeypatch.setenv("TEST_MANAGEMENT_URL", "http://localhost/api/TestManagement")
    path = tmp_path / "submission.json"
    path.write_text(
        json.dumps(
            {
                "user_id": 3,
                "session_id": 1,
                "mode": "assessment",
                "tests": [{"test_id": 5, "variables": CORRECT}],
            }
        ),
        encoding="utf-8",
    )
    return path


def _service():
    return GradingService(FakeMetadata(), FakeTracer())


def test_cli_grades_submission(temp_db, submission_file, tmp_path, capsys):
    output = tmp_path / "result.json"
    exit_code = grade_submission.main(
        [str(submission_file), "--create-session", "exam", "--output", str(output)],
        service=_service(),
    )
    captured = capsys.readouterr()

    assert exit_code == 0
    payload = json.loads(captured.out)
    assert payload["result"] == pytest.approx(100.0)
    assert payload["tests"][0]["test_id"] == 5
    assert json.loads(output.read_text(encoding="utf-8")) == payload
    assert db.get_session(1)["test_ids"] == [5]


def test_cli_reports_unknown_session(temp_db, submission_file, capsys):
    exit_code = grade_submission.main([str(submission_file)], service=_service())
    captured = capsys.readouterr()

    assert exit_code == 1
    assert "Session not found: 1" in captured.err


def test_cli_rejects_malformed_submission(temp_db, tmp_path, capsys):
    path = tmp_path / "broken.json"
    path.write_text('{"user_id": "nobody"}', encoding="utf-8")

    exit_code = grade_submission.main([str(path)], service=_service())

    assert exit_code == 2
    assert "error:" in capsys.readouterr().err
