"""Clients for the interpreter and test management services.

The grading core only depends on the :class:`MetadataProvider` and
:class:`TraceService` protocols; the ``Http*`` classes implement them against
the services' REST endpoints. Calls are blocking ``requests`` calls, and the
grading facade moves them off the event loop with ``asyncio.to_thread``.
Idempotent calls are retried with exponential backoff on transport errors
and 5xx responses; 4xx responses fail immediately.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Iterable, List, NamedTuple, Optional, Protocol, Sequence, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from env_validation import get_env_float, get_env_int, get_service_url
from schemas import AlgoStepInfo, StepLine, TestInfo, TraceResult, VariableRecord

LOGGER = logging.getLogger("tracemark.interpreter")

_M = TypeVar("_M", bound=BaseModel)

USER_DATA_FIELD = "userDataFile"
USER_DATA_FILENAME = "user_data.txt"


class CollaboratorError(RuntimeError):
    """An external service was unreachable or answered with an error."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SubstitutedValue(NamedTuple):
    sequence: int
    line_number: int
    variable_name: str
    value: str


class MetadataProvider(Protocol):
    def fetch_test(self, test_id: int) -> TestInfo: ...

    def fetch_step_lines(self, algo_id: int) -> List[StepLine]: ...

    def fetch_algo_steps(self, algo_id: int) -> List[AlgoStepInfo]: ...

    def fetch_tests(self, algo_id: int) -> List[TestInfo]: ...

    def update_step_difficulty(self, algo_id: int, step: int, difficulty: float) -> None: ...

    def update_test_difficulty(self, test_id: int, difficulty: float) -> None: ...


class TraceService(Protocol):
    def run_trace(
        self,
        algo_id: int,
        test_id: int,
        substituted_values: Optional[Sequence[SubstitutedValue]] = None,
    ) -> TraceResult: ...


def format_user_data(values: Iterable[SubstitutedValue]) -> str:
    """Render values as ``<sequence> <line> <name> <value>`` lines."""
    return "".join(
        f"{item.sequence} {item.line_number} {item.variable_name} {item.value}\n" for item in values
    )


def _first(payload: Any, *keys: str, default: Any = None) -> Any:
    if not isinstance(payload, dict):
        return default
    for key in keys:
        if key in payload:
            return payload[key]
    return default


def _parse_one(model: Type[_M], payload: Any, what: str) -> _M:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise CollaboratorError(f"Malformed {what}: {exc.error_count()} validation error(s)") from exc


def _parse_many(model: Type[_M], payload: Any, what: str) -> List[_M]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise CollaboratorError(f"Malformed {what}: expected a list")
    return [_parse_one(model, item, what) for item in payload]


def parse_trace(payload: Any) -> TraceResult:
    """Build a :class:`TraceResult` from an interpreter response body."""
    if not isinstance(payload, dict):
        raise CollaboratorError("Malformed trace: expected an object")
    code_model = _first(payload, "codeModel", "CodeModel")
    if isinstance(code_model, dict):
        success = bool(_first(code_model, "isSuccessful", "IsSuccessful", default=True))
    else:
        success = bool(_first(payload, "success", "Success", default=True))
    records = _parse_many(
        VariableRecord,
        _first(payload, "values", "Values", "records", default=[]),
        "trace record",
    )
    return TraceResult(success=success, records=records)


class _HttpClient:
    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff: float = 0.5,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout if timeout is not None else get_env_float("HTTP_TIMEOUT", 10.0)
        self.max_attempts = max(1, max_attempts if max_attempts is not None else get_env_int("HTTP_MAX_ATTEMPTS", 3))
        self.backoff = backoff
        self._session = session or requests.Session()

    def _request(self, method: str, url: str, *, retry: bool = True, **kwargs: Any) -> requests.Response:
        attempts = self.max_attempts if retry else 1
        delay = self.backoff
        last_error = CollaboratorError(f"{method} {url} failed")
        for attempt in range(1, attempts + 1):
            try:
                response = self._session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as exc:
                LOGGER.warning("%s %s failed (attempt %s): %s", method, url, attempt, exc)
                last_error = CollaboratorError(f"{method} {url} failed: {exc}")
            else:
                if response.status_code < 400:
                    return response
                error = CollaboratorError(
                    f"{method} {url} returned {response.status_code}",
                    status_code=response.status_code,
                )
                if response.status_code < 500:
                    raise error
                LOGGER.warning(
                    "%s %s responded with status %s on attempt %s", method, url, response.status_code, attempt
                )
                last_error = error
            if attempt < attempts:
                time.sleep(delay)
                delay *= 2
        raise last_error

    def _json(self, method: str, url: str, **kwargs: Any) -> Any:
        response = self._request(method, url, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise CollaboratorError(f"{method} {url} returned a non-JSON body") from exc


class HttpMetadataProvider(_HttpClient):
    """Test/algorithm metadata and quality-parameter propagation."""

    def __init__(self, code_url: str, test_management_url: str, **kwargs: Any):
        super().__init__(**kwargs)
        self.code_url = code_url.rstrip("/")
        self.test_management_url = test_management_url.rstrip("/")

    @classmethod
    def from_env(cls, **kwargs: Any) -> "HttpMetadataProvider":
        return cls(get_service_url("INTERPRETER_URL"), get_service_url("TEST_MANAGEMENT_URL"), **kwargs)

    def fetch_test(self, test_id: int) -> TestInfo:
        payload = self._json("GET", f"{self.code_url}/tests/{test_id}")
        return _parse_one(TestInfo, payload, "test")

    def fetch_step_lines(self, algo_id: int) -> List[StepLine]:
        payload = self._json("GET", f"{self.code_url}/getVariables/{algo_id}")
        return _parse_many(StepLine, payload, "tracked variable")

    def fetch_algo_steps(self, algo_id: int) -> List[AlgoStepInfo]:
        payload = self._json("GET", f"{self.test_management_url}/fetch-algo-steps/{algo_id}")
        return _parse_many(AlgoStepInfo, payload, "algorithm step")

    def fetch_tests(self, algo_id: int) -> List[TestInfo]:
        payload = self._json("GET", f"{self.test_management_url}/fetch-tests", params={"algoId": algo_id})
        return _parse_many(TestInfo, payload, "test")

    def update_step_difficulty(self, algo_id: int, step: int, difficulty: float) -> None:
        # PUT of an absolute value, safe to repeat
        self._request(
            "PUT",
            f"{self.test_management_url}/modify-algo-step/{algo_id}/{step}",
            json={"AlgoId": algo_id, "Step": step, "Difficult": float(difficulty)},
        )

    def update_test_difficulty(self, test_id: int, difficulty: float) -> None:
        self._request(
            "PUT",
            f"{self.test_management_url}/modify-test/{test_id}",
            json={"TestId": test_id, "difficult": float(difficulty)},
        )


class HttpTraceService(_HttpClient):
    """Runs an algorithm for a test, optionally with the learner's values injected."""

    def __init__(self, code_url: str, **kwargs: Any):
        super().__init__(**kwargs)
        self.code_url = code_url.rstrip("/")

    @classmethod
    def from_env(cls, **kwargs: Any) -> "HttpTraceService":
        return cls(get_service_url("INTERPRETER_URL"), **kwargs)

    def run_trace(
        self,
        algo_id: int,
        test_id: int,
        substituted_values: Optional[Sequence[SubstitutedValue]] = None,
    ) -> TraceResult:
        # An empty user data file asks for the unconditioned run.
        user_data = format_user_data(substituted_values or ())
        files = {USER_DATA_FIELD: (USER_DATA_FILENAME, user_data.encode("utf-8"), "text/plain")}
        payload = self._json(
            "POST",
            f"{self.code_url}/substitute-values/{algo_id}/{test_id}",
            retry=False,
            files=files,
        )
        trace = parse_trace(payload)
        LOGGER.debug(
            "Trace for algo %s test %s: success=%s records=%s substituted=%s",
            algo_id,
            test_id,
            trace.success,
            len(trace.records),
            bool(substituted_values),
        )
        return trace
