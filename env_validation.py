"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate the grading service configuration.

    Raises EnvironmentError if validation fails.
    """
    # The collaborator URLs have local defaults, so nothing is strictly
    # required; the mapping stays for deployments that pin a value.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "INTERPRETER_URL": os.getenv("INTERPRETER_URL") or "http://localhost:8080/api/Code",
        "TEST_MANAGEMENT_URL": os.getenv("TEST_MANAGEMENT_URL") or "http://localhost:8080/api/TestManagement",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "HTTP_TIMEOUT": "Timeout in seconds for collaborator requests",
        "HTTP_MAX_ATTEMPTS": "Attempts per idempotent collaborator request",
        "GRADING_PARALLEL_TESTS": "Evaluate the tests of one submission concurrently",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"INTERPRETER_URL", "TEST_MANAGEMENT_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var in ("HTTP_TIMEOUT", "HTTP_MAX_ATTEMPTS"):
        value = os.getenv(var)
        if value is None:
            continue
        try:
            parsed = float(value)
        except ValueError:
            raise EnvironmentError(f"{var} must be numeric, got {value!r}") from None
        if parsed <= 0:
            raise EnvironmentError(f"{var} must be positive, got {value!r}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.debug("Optional environment variable not set: %s (%s)", var, description)

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, value, default)
        return default

def get_env_int(name: str, default: int) -> int:
    return int(get_env_float(name, float(default)))

def get_service_url(name: str, default: Optional[str] = None) -> str:
    """Return a collaborator base URL without its trailing slash."""
    value = os.getenv(name) or default
    if not value:
        raise EnvironmentError(f"{name} is not configured")
    return value.rstrip("/")
