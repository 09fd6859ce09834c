"""Configuration management with validation.

Limits are enforced at configuration load time so a bad environment fails
before any template is read or any remote call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MAX_CONCURRENCY_LIMIT = 64

DEFAULT_ACTION_TIMEOUT_SECONDS = 1800
DEFAULT_READINESS_TIMEOUT_SECONDS = 600
MAX_TIMEOUT_SECONDS = 6 * 3600

DEFAULT_MAX_RETRIES = 5
MAX_RETRIES_LIMIT = 20
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0

DEFAULT_POLL_INTERVAL_SECONDS = 2.0

DEFAULT_STATE_FILE = ".stack-state.json"
DEFAULT_REMOTE_FILE = ".stack-remote.json"
DEFAULT_REGION = "us-east-1"

# Security constraints
MAX_TEMPLATE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max template
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024
MAX_RESOURCES_PER_TEMPLATE = 500

# Input validation patterns
VALID_STACK_NAME_PATTERN = r"^[a-zA-Z][-a-zA-Z0-9]{0,127}$"
VALID_REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d$"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and polling behaviour for remote calls.

    Backoff for attempt n (1-based) is ``backoff_base * 2 ** (n - 1)`` plus up
    to 20% jitter, capped at max_backoff.
    """

    max_attempts: int = DEFAULT_MAX_RETRIES
    backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    max_backoff_seconds: float = MAX_BACKOFF_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS

    def backoff(self, attempt: int) -> float:
        """Base delay before retry number ``attempt`` (jitter not included)."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    stack_name: str
    region: str = DEFAULT_REGION

    # Paths
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))
    remote_file: Path = field(default_factory=lambda: Path(DEFAULT_REMOTE_FILE))

    # Execution
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    action_timeout_seconds: float = DEFAULT_ACTION_TIMEOUT_SECONDS
    readiness_timeout_seconds: float = DEFAULT_READINESS_TIMEOUT_SECONDS
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All errors are collected and reported together.
        """
        errors: list[str] = []

        if not self.stack_name:
            errors.append("STACK_NAME is required")
        elif not re.match(VALID_STACK_NAME_PATTERN, self.stack_name):
            errors.append(
                f"STACK_NAME must match pattern {VALID_STACK_NAME_PATTERN}: {self.stack_name}"
            )

        if not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"STACK_REGION must be a valid region name: {self.region}")

        if not (1 <= self.max_concurrency <= MAX_CONCURRENCY_LIMIT):
            errors.append(f"MAX_CONCURRENCY must be between 1 and {MAX_CONCURRENCY_LIMIT}")

        for label, value in (
            ("ACTION_TIMEOUT", self.action_timeout_seconds),
            ("READINESS_TIMEOUT", self.readiness_timeout_seconds),
        ):
            if not (0 < value <= MAX_TIMEOUT_SECONDS):
                errors.append(f"{label} must be between 0 and {MAX_TIMEOUT_SECONDS} seconds")

        if self.readiness_timeout_seconds > self.action_timeout_seconds:
            errors.append("READINESS_TIMEOUT cannot exceed ACTION_TIMEOUT")

        if not (1 <= self.retry.max_attempts <= MAX_RETRIES_LIMIT):
            errors.append(f"MAX_RETRIES must be between 1 and {MAX_RETRIES_LIMIT}")

        if self.retry.backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE cannot be negative")

        if self.retry.poll_interval_seconds <= 0:
            errors.append("POLL_INTERVAL must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Keyword overrides (e.g., from CLI options) win over the environment;
        ``None`` overrides are ignored.

        Environment Variables:
            STACK_NAME: Name of the stack (required)
            STACK_REGION: Region reported as AWS::Region (default: us-east-1)
            STATE_FILE: Applied state file (default: .stack-state.json)
            REMOTE_FILE: Simulated remote store file (default: .stack-remote.json)
            MAX_CONCURRENCY: Parallel actions (default: 4)
            ACTION_TIMEOUT: Per-action timeout in seconds (default: 1800)
            READINESS_TIMEOUT: Readiness polling timeout in seconds (default: 600)
            MAX_RETRIES: Attempts for transient remote errors (default: 5)
            RETRY_BACKOFF_BASE: Backoff base in seconds (default: 1.0)
            POLL_INTERVAL: Initial readiness poll interval in seconds (default: 2.0)
            DRY_RUN: If "true", plan only and skip remote calls (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        values: dict[str, object] = {
            "stack_name": os.environ.get("STACK_NAME", ""),
            "region": os.environ.get("STACK_REGION", DEFAULT_REGION),
            "state_file": Path(os.environ.get("STATE_FILE", DEFAULT_STATE_FILE)),
            "remote_file": Path(os.environ.get("REMOTE_FILE", DEFAULT_REMOTE_FILE)),
            "max_concurrency": get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            "action_timeout_seconds": get_float(
                "ACTION_TIMEOUT", DEFAULT_ACTION_TIMEOUT_SECONDS
            ),
            "readiness_timeout_seconds": get_float(
                "READINESS_TIMEOUT", DEFAULT_READINESS_TIMEOUT_SECONDS
            ),
            "retry": RetryPolicy(
                max_attempts=get_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
                backoff_base_seconds=get_float(
                    "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
                ),
                poll_interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            ),
            "dry_run": get_bool("DRY_RUN", False),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]
