"""Configuration management with validation.

Timing and naming knobs for an access session. Invalid values are
rejected at load time so a session never starts with a configuration that
would make rollback misbehave (for example a poll timeout shorter than
its interval).
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class LogFormat(str, Enum):
    """Supported log output formats."""

    TEXT = "text"
    JSON = "json"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_ROLE_NAME = "Key Vault Secrets Officer"

DEFAULT_POLL_INTERVAL_SECONDS = 5
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 60

DEFAULT_POLL_TIMEOUT_SECONDS = 300
MAX_POLL_TIMEOUT_SECONDS = 3600

# Role assignments take a few seconds to become effective in Entra ID
DEFAULT_ROLE_SETTLE_SECONDS = 5
# Lock deletion is accepted before ARM stops enforcing it
DEFAULT_LOCK_SETTLE_SECONDS = 3
MAX_SETTLE_SECONDS = 120

DEFAULT_CACHE_MAX_AGE_DAYS = 30
MAX_CACHE_MAX_AGE_DAYS = 365

DEFAULT_IP_LOOKUP_URL = "https://icanhazip.com"
DEFAULT_STATE_DIR = Path.home() / ".ztvo"

CONFIG_FILE_NAME = "config.yaml"
CACHE_FILE_NAME = "vault_cache.json"

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class Config:
    """Operator configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-session.
    """

    state_dir: Path = field(default_factory=lambda: DEFAULT_STATE_DIR)
    role_name: str = DEFAULT_ROLE_NAME

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    poll_timeout_seconds: int = DEFAULT_POLL_TIMEOUT_SECONDS
    role_settle_seconds: int = DEFAULT_ROLE_SETTLE_SECONDS
    lock_settle_seconds: int = DEFAULT_LOCK_SETTLE_SECONDS

    # Local state
    cache_max_age_days: int = DEFAULT_CACHE_MAX_AGE_DAYS
    subscription_id: str | None = None

    ip_lookup_url: str = DEFAULT_IP_LOOKUP_URL

    # Logging
    log_format: LogFormat = LogFormat.TEXT
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.role_name or not self.role_name.strip():
            errors.append("ZTVO_ROLE_NAME must not be empty")

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"ZTVO_POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not (self.poll_interval_seconds <= self.poll_timeout_seconds <= MAX_POLL_TIMEOUT_SECONDS):
            errors.append(
                f"ZTVO_POLL_TIMEOUT must be between the poll interval and "
                f"{MAX_POLL_TIMEOUT_SECONDS} seconds"
            )

        for name, value in (
            ("ZTVO_ROLE_SETTLE_SECONDS", self.role_settle_seconds),
            ("ZTVO_LOCK_SETTLE_SECONDS", self.lock_settle_seconds),
        ):
            if not (0 <= value <= MAX_SETTLE_SECONDS):
                errors.append(f"{name} must be between 0 and {MAX_SETTLE_SECONDS} seconds")

        if not (1 <= self.cache_max_age_days <= MAX_CACHE_MAX_AGE_DAYS):
            errors.append(f"ZTVO_CACHE_MAX_AGE_DAYS must be between 1 and {MAX_CACHE_MAX_AGE_DAYS}")

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.ip_lookup_url.startswith("https://"):
            errors.append(f"ZTVO_IP_LOOKUP_URL must use https: {self.ip_lookup_url}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"ZTVO_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            ZTVO_STATE_DIR: Directory for config and cache files (default: ~/.ztvo)
            ZTVO_ROLE_NAME: Role granted for the session (default: Key Vault Secrets Officer)
            ZTVO_POLL_INTERVAL: Seconds between propagation checks (default: 5)
            ZTVO_POLL_TIMEOUT: Seconds before a propagation wait gives up (default: 300)
            ZTVO_ROLE_SETTLE_SECONDS: Wait after the role grant (default: 5)
            ZTVO_LOCK_SETTLE_SECONDS: Wait after lock removal (default: 3)
            ZTVO_CACHE_MAX_AGE_DAYS: Vault listing cache lifetime (default: 30)
            ZTVO_IP_LOOKUP_URL: Public IP lookup service (default: https://icanhazip.com)
            ZTVO_LOG_FORMAT: text or json (default: text)
            ZTVO_LOG_LEVEL: Root log level (default: INFO)
            AZURE_SUBSCRIPTION_ID: Overrides the persisted subscription selection

        Args:
            **overrides: Field values that take precedence over the environment
                (used by CLI options). None values are ignored.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.TEXT
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"ZTVO_LOG_FORMAT must be one of {valid}: {value}") from e

        state_dir = os.environ.get("ZTVO_STATE_DIR")

        values: dict[str, object] = {
            "state_dir": Path(state_dir).expanduser() if state_dir else DEFAULT_STATE_DIR,
            "role_name": os.environ.get("ZTVO_ROLE_NAME", DEFAULT_ROLE_NAME),
            "poll_interval_seconds": get_int("ZTVO_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            "poll_timeout_seconds": get_int("ZTVO_POLL_TIMEOUT", DEFAULT_POLL_TIMEOUT_SECONDS),
            "role_settle_seconds": get_int("ZTVO_ROLE_SETTLE_SECONDS", DEFAULT_ROLE_SETTLE_SECONDS),
            "lock_settle_seconds": get_int("ZTVO_LOCK_SETTLE_SECONDS", DEFAULT_LOCK_SETTLE_SECONDS),
            "cache_max_age_days": get_int("ZTVO_CACHE_MAX_AGE_DAYS", DEFAULT_CACHE_MAX_AGE_DAYS),
            "subscription_id": os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            "ip_lookup_url": os.environ.get("ZTVO_IP_LOOKUP_URL", DEFAULT_IP_LOOKUP_URL),
            "log_format": get_log_format(os.environ.get("ZTVO_LOG_FORMAT")),
            "log_level": os.environ.get("ZTVO_LOG_LEVEL", "INFO").upper(),
        }

        for key, value in overrides.items():
            if value is None:
                continue
            if key == "log_format" and isinstance(value, str):
                value = get_log_format(value)
            values[key] = value

        return cls(**values)  # type: ignore[arg-type]
