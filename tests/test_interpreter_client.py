import pytest
import requests

import interpreter
from interpreter import (
    CollaboratorError,
    HttpMetadataProvider,
    HttpTraceService,
    SubstitutedValue,
    format_user_data,
    parse_trace,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self._text = text

    def json(self):
        if self._text is not None:
            raise ValueError("not json")
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(interpreter.time, "sleep", lambda _seconds: None)


def _metadata(*responses, **kwargs):
    session = FakeSession(*responses)
    client = HttpMetadataProvider(
        "http://code/api/Code/",
        "http://tm/api/TestManagement",
        session=session,
        timeout=2.0,
        max_attempts=kwargs.pop("max_attempts", 3),
    )
    return client, session


def test_format_user_data():
    values = [SubstitutedValue(1, 10, "i", "0"), SubstitutedValue(2, 20, "arr", "1,2,3")]
    assert format_user_data(values) == "1 10 i 0\n2 20 arr 1,2,3\n"
    assert format_user_data([]) == ""


def test_parse_trace_reads_interpreter_payload():
    trace = parse_trace(
        {
            "codeModel": {"isSuccessful": False},
            "values": [
                {"Step": 1, "VariableName": "i", "Type": "int", "Rank": 0, "Value": None, "LineNumber": 10},
                {"step": 2, "variableName": "arr", "type": "int[]", "rank": 1, "value": "1,2"},
            ],
        }
    )
    assert trace.success is False
    assert trace.steps() == [1, 2]
    assert trace.records[0].value == ""
    assert trace.records[0].line_number == 10
    assert trace.records[1].line_number is None


def test_parse_trace_rejects_malformed_records():
    with pytest.raises(CollaboratorError):
        parse_trace({"values": [{"step": "one"}]})
    with pytest.raises(CollaboratorError):
        parse_trace(["not", "an", "object"])


def test_fetch_test_parses_pascal_case():
    client, session = _metadata(FakeResponse(payload={"TestId": 5, "AlgoId": 7, "Difficult": 0.4}))
    test = client.fetch_test(5)

    assert (test.test_id, test.algo_id, test.difficulty) == (5, 7, 0.4)
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", "http://code/api/Code/tests/5")
    assert kwargs["timeout"] == 2.0


def test_server_errors_are_retried():
    client, session = _metadata(
        FakeResponse(status_code=503),
        requests.ConnectionError("reset"),
        FakeResponse(payload=[{"step": 1, "lineNumber": 10, "varName": "i", "varType": "int"}]),
    )
    lines = client.fetch_step_lines(7)

    assert len(session.calls) == 3
    assert lines[0].var_name == "i"
    assert session.calls[0][1] == "http://code/api/Code/getVariables/7"


def test_client_errors_fail_immediately():
    client, session = _metadata(FakeResponse(status_code=404), FakeResponse(payload={}))
    with pytest.raises(CollaboratorError) as excinfo:
        client.fetch_test(99)
    assert excinfo.value.status_code == 404
    assert len(session.calls) == 1


def test_attempts_are_bounded():
    client, session = _metadata(
        FakeResponse(status_code=500), FakeResponse(status_code=502), max_attempts=2
    )
    with pytest.raises(CollaboratorError) as excinfo:
        client.fetch_algo_steps(7)
    assert excinfo.value.status_code == 502
    assert len(session.calls) == 2


def test_non_json_body_is_a_collaborator_error():
    client, _ = _metadata(FakeResponse(text="<html>"))
    with pytest.raises(CollaboratorError, match="non-JSON"):
        client.fetch_tests(7)


def test_difficulty_updates_are_put():
    client, session = _metadata(FakeResponse(payload=None), FakeResponse(payload=None))
    client.update_step_difficulty(7, 2, 0.25)
    client.update_test_difficulty(5, 0.5)

    assert session.calls[0][:2] == ("PUT", "http://tm/api/TestManagement/modify-algo-step/7/2")
    assert session.calls[0][2]["json"] == {"AlgoId": 7, "Step": 2, "Difficult": 0.25}
    assert session.calls[1][:2] == ("PUT", "http://tm/api/TestManagement/modify-test/5")
    assert session.calls[1][2]["json"] == {"TestId": 5, "difficult": 0.5}


def test_run_trace_uploads_user_data_file():
    session = FakeSession(FakeResponse(payload={"codeModel": {"isSuccessful": True}, "values": []}))
    service = HttpTraceService("http://code/api/Code", session=session, max_attempts=1)

    trace = service.run_trace(7, 5, [SubstitutedValue(1, 10, "i", "0")])

    assert trace.success is True
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "http://code/api/Code/substitute-values/7/5")
    name, content, mime = kwargs["files"]["userDataFile"]
    assert name == "user_data.txt"
    assert content == b"1 10 i 0\n"
    assert mime == "text/plain"


def test_from_env_uses_configured_urls(monkeypatch):
    monkeypatch.setenv("INTERPRETER_URL", "http://code/api/Code/")
    monkeypatch.setenv("TEST_MANAGEMENT_URL", "http://tm/api/TestManagement")
    monkeypatch.setenv("HTTP_MAX_ATTEMPTS", "4")

    client = HttpMetadataProvider.from_env(session=FakeSession())

    assert client.code_url == "http://code/api/Code"
    assert client.max_attempts == 4


def test_trace_run_is_not_retried():
    session = FakeSession(FakeResponse(status_code=503), FakeResponse(payload={"values": []}))
    service = HttpTraceService("http://code/api/Code", session=session, max_attempts=3)

    with pytest.raises(CollaboratorError) as excinfo:
        service.run_trace(7, 5)

    assert excinfo.value.status_code == 503
    assert len(session.calls) == 1


def test_transport_errors_surface_after_last_attempt():
    client, session = _metadata(
        requests.Timeout("slow"), requests.Timeout("slower"), max_attempts=2
    )
    with pytest.raises(CollaboratorError, match="slower"):
        client.fetch_test(5)
    assert len(session.calls) == 2
