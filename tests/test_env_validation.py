import os

import pytest

import env_validation
from env_validation import EnvironmentError, get_env_bool, get_env_float, get_env_int, get_service_url


def test_defaults_are_applied(monkeypatch):
    # empty counts as unset and lets monkeypatch restore the previous values
    monkeypatch.setenv("INTERPRETER_URL", "")
    monkeypatch.setenv("TEST_MANAGEMENT_URL", "")
    for var in ("HTTP_TIMEOUT", "HTTP_MAX_ATTEMPTS"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("DB_PATH", "custom.db")

    env_validation.validate_environment()

    assert os.environ["INTERPRETER_URL"] == "http://localhost:8080/api/Code"
    assert os.environ["TEST_MANAGEMENT_URL"] == "http://localhost:8080/api/TestManagement"
    assert os.environ["DB_PATH"] == "custom.db"


def test_invalid_url_is_rejected(monkeypatch):
    monkeypatch.setenv("INTERPRETER_URL", "ftp://interpreter")
    with pytest.raises(EnvironmentError, match="INTERPRETER_URL"):
        env_validation.validate_environment()


@pytest.mark.parametrize("value", ["abc", "0", "-2"])
def test_invalid_timeout_is_rejected(monkeypatch, value):
    monkeypatch.setenv("INTERPRETER_URL", "http://localhost/api/Code")
    monkeypatch.setenv("TEST_MANAGEMENT_URL", "http://localhost/api/TestManagement")
    monkeypatch.setenv("HTTP_TIMEOUT", value)
    with pytest.raises(EnvironmentError, match="HTTP_TIMEOUT"):
        env_validation.validate_environment()


def test_typed_getters(monkeypatch):
    monkeypatch.setenv("FLAG_ON", "Yes")
    monkeypatch.setenv("NUMBER", "2.5")
    monkeypatch.setenv("BROKEN", "many")
    monkeypatch.delenv("MISSING", raising=False)

    assert get_env_bool("FLAG_ON") is True
    assert get_env_bool("MISSING", default=True) is True
    assert get_env_float("NUMBER", 1.0) == 2.5
    assert get_env_float("BROKEN", 1.0) == 1.0
    assert get_env_int("NUMBER", 1) == 2
    assert get_env_int("MISSING", 3) == 3


def test_service_url_strips_trailing_slash(monkeypatch):
    monkeypatch.setenv("INTERPRETER_URL", "http://host/api/Code/")
    assert get_service_url("INTERPRETER_URL") == "http://host/api/Code"
    monkeypatch.delenv("INTERPRETER_URL")
    with pytest.raises(EnvironmentError):
        get_service_url("INTERPRETER_URL")
