"""Configuration management with validation.

Limits on retries, timeouts and concurrency are enforced at load time so a
misconfigured run fails before it touches any cloud resource.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class RollbackPolicy(str, Enum):
    """Which resources created by a failed run are torn down."""

    ALL = "all"  # Every resource the run created
    KEEP_PREREQUISITES = "keep-prerequisites"  # Keep role, function and api


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CALL_TIMEOUT_SECONDS = 30
MIN_CALL_TIMEOUT_SECONDS = 1
MAX_CALL_TIMEOUT_SECONDS = 900

DEFAULT_MAX_ATTEMPTS = 3
MAX_ATTEMPTS_LIMIT = 10

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1.0
MAX_RETRY_BACKOFF_BASE_SECONDS = 60.0

DEFAULT_MAX_CONCURRENCY = 1
MAX_CONCURRENCY_LIMIT = 8

# Request files are tiny; anything bigger is a mistake
MAX_REQUEST_FILE_SIZE_BYTES = 64 * 1024

VALID_REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d$"


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    region: str | None = None
    endpoint_url: str | None = None

    # Timing
    call_timeout_seconds: int = DEFAULT_CALL_TIMEOUT_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS

    # Behavior
    rollback_policy: RollbackPolicy = RollbackPolicy.ALL
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    dry_run: bool = False

    # Where failed run states are written for later rollback replay
    state_dir: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if self.region is not None and not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if not (MIN_CALL_TIMEOUT_SECONDS <= self.call_timeout_seconds <= MAX_CALL_TIMEOUT_SECONDS):
            errors.append(
                f"CALL_TIMEOUT_SECONDS must be between {MIN_CALL_TIMEOUT_SECONDS} "
                f"and {MAX_CALL_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT):
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_LIMIT}")

        if not (0 <= self.retry_backoff_base_seconds <= MAX_RETRY_BACKOFF_BASE_SECONDS):
            errors.append(
                f"RETRY_BACKOFF_BASE_SECONDS must be between 0 and {MAX_RETRY_BACKOFF_BASE_SECONDS}"
            )

        if not (1 <= self.max_concurrency <= MAX_CONCURRENCY_LIMIT):
            errors.append(f"MAX_CONCURRENCY must be between 1 and {MAX_CONCURRENCY_LIMIT}")

        if self.state_dir is not None and self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"STATE_DIR is not a directory: {self.state_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AWS_REGION / AWS_DEFAULT_REGION: Target region (default: boto3 resolution)
            AWS_ENDPOINT_URL: Override endpoint, e.g. for localstack
            CALL_TIMEOUT_SECONDS: Timeout per provider call (default: 30)
            MAX_ATTEMPTS: Attempts per node for transient errors (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: First retry delay, doubled per attempt (default: 1)
            ROLLBACK_POLICY: "all" or "keep-prerequisites" (default: all)
            MAX_CONCURRENCY: Independent nodes created in parallel (default: 1)
            STATE_DIR: Directory for failed run states (default: unset)
            DRY_RUN: If "true", only print the plan (default: false)
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

        def get_policy(value: str | None) -> RollbackPolicy:
            if not value:
                return RollbackPolicy.ALL
            try:
                return RollbackPolicy(value)
            except ValueError as e:
                valid = [p.value for p in RollbackPolicy]
                raise ConfigurationError(f"ROLLBACK_POLICY must be one of {valid}: {value}") from e

        state_dir = os.environ.get("STATE_DIR")

        return cls(
            region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"),
            endpoint_url=os.environ.get("AWS_ENDPOINT_URL"),
            call_timeout_seconds=get_int("CALL_TIMEOUT_SECONDS", DEFAULT_CALL_TIMEOUT_SECONDS),
            max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            rollback_policy=get_policy(os.environ.get("ROLLBACK_POLICY")),
            max_concurrency=get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            dry_run=get_bool("DRY_RUN", False),
            state_dir=Path(state_dir) if state_dir else None,
        )
