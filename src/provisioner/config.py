"""Configuration management with validation.

Polling budgets are configuration, not code: every bounded wait in the
reconciliation core reads its attempt count and interval from here so
tests and slow zones can tune them without touching the algorithms.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_API_URL = "https://public-api.virakcloud.com"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
MAX_REQUEST_TIMEOUT_SECONDS = 600

# Poll intervals
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_NETWORK_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_VOLUME_POLL_INTERVAL_SECONDS = 5.0
MAX_POLL_INTERVAL_SECONDS = 300.0

# Poll budgets (attempts, not wall clock)
MAX_INSTANCE_STATUS_RETRIES = 120
MAX_NETWORK_CONNECTION_RETRIES = 30
MAX_VOLUME_ATTACHMENT_RETRIES = 120
MAX_VOLUME_DETACH_RETRIES = 60
MAX_VOLUME_STATUS_RETRIES = 30
MAX_VOLUME_DISCOVERY_RETRIES = 10
MAX_NETWORK_DISCOVERY_RETRIES = 60
MAX_NETWORK_DELETION_RETRIES = 5
MAX_INSTANCE_DELETION_RETRIES = 100
MAX_AUXILIARY_DISCOVERY_RETRIES = 10

# Network deletion backoff: base delay doubled after every refused attempt
NETWORK_DELETION_BACKOFF_SECONDS = 2.0
NETWORK_VERIFY_RETRIES = 10
NETWORK_VERIFY_INTERVAL_SECONDS = 2.0

# Upper bound for any single attempt budget (prevents multi-hour waits)
MAX_POLL_ATTEMPTS = 1000

# Instance names are hostnames
MAX_INSTANCE_NAME_LENGTH = 63

# Manifest files are small YAML documents
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB


@dataclass(frozen=True)
class PollingConfig:
    """Attempt budgets and intervals for every bounded wait.

    Each wait is ``attempts x interval`` at most; there is no wall-clock
    deadline independent of the attempt count.
    """

    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    network_poll_interval_seconds: float = DEFAULT_NETWORK_POLL_INTERVAL_SECONDS
    volume_poll_interval_seconds: float = DEFAULT_VOLUME_POLL_INTERVAL_SECONDS

    instance_status_attempts: int = MAX_INSTANCE_STATUS_RETRIES
    instance_deletion_attempts: int = MAX_INSTANCE_DELETION_RETRIES
    network_connection_attempts: int = MAX_NETWORK_CONNECTION_RETRIES
    network_discovery_attempts: int = MAX_NETWORK_DISCOVERY_RETRIES
    network_verify_attempts: int = NETWORK_VERIFY_RETRIES
    network_verify_interval_seconds: float = NETWORK_VERIFY_INTERVAL_SECONDS
    network_deletion_retries: int = MAX_NETWORK_DELETION_RETRIES
    network_deletion_backoff_seconds: float = NETWORK_DELETION_BACKOFF_SECONDS
    volume_attachment_attempts: int = MAX_VOLUME_ATTACHMENT_RETRIES
    volume_detach_attempts: int = MAX_VOLUME_DETACH_RETRIES
    volume_status_attempts: int = MAX_VOLUME_STATUS_RETRIES
    volume_status_interval_seconds: float = 1.0
    volume_discovery_attempts: int = MAX_VOLUME_DISCOVERY_RETRIES
    volume_discovery_interval_seconds: float = 1.0
    auxiliary_discovery_attempts: int = MAX_AUXILIARY_DISCOVERY_RETRIES

    def validate(self) -> list[str]:
        """Return a list of validation problems (empty when valid)."""
        errors: list[str] = []

        for name in (
            "poll_interval_seconds",
            "network_poll_interval_seconds",
            "volume_poll_interval_seconds",
            "network_verify_interval_seconds",
            "network_deletion_backoff_seconds",
            "volume_status_interval_seconds",
            "volume_discovery_interval_seconds",
        ):
            value = getattr(self, name)
            if not (0 <= value <= MAX_POLL_INTERVAL_SECONDS):
                errors.append(f"{name} must be between 0 and {MAX_POLL_INTERVAL_SECONDS}: {value}")

        for name in (
            "instance_status_attempts",
            "instance_deletion_attempts",
            "network_connection_attempts",
            "network_discovery_attempts",
            "network_verify_attempts",
            "network_deletion_retries",
            "volume_attachment_attempts",
            "volume_detach_attempts",
            "volume_status_attempts",
            "volume_discovery_attempts",
            "auxiliary_discovery_attempts",
        ):
            value = getattr(self, name)
            if not (1 <= value <= MAX_POLL_ATTEMPTS):
                errors.append(f"{name} must be between 1 and {MAX_POLL_ATTEMPTS}: {value}")

        return errors


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-reconcile.
    """

    api_base_url: str = DEFAULT_API_URL
    api_token: str = ""
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    polling: PollingConfig = field(default_factory=PollingConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.api_base_url:
            errors.append("PROVISIONER_API_URL is required")
        elif not self.api_base_url.startswith(("https://", "http://")):
            errors.append(f"PROVISIONER_API_URL must be an http(s) URL: {self.api_base_url}")

        if not (1 <= self.request_timeout_seconds <= MAX_REQUEST_TIMEOUT_SECONDS):
            errors.append(
                f"REQUEST_TIMEOUT must be between 1 and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        errors.extend(self.polling.validate())

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            PROVISIONER_API_URL: Control-plane API base URL.
            PROVISIONER_API_TOKEN: Bearer token for the API.
            REQUEST_TIMEOUT: Per-request timeout in seconds (default: 60).
            POLL_INTERVAL: Instance/status poll interval in seconds (default: 5).
            NETWORK_POLL_INTERVAL: Network attach/detach poll interval (default: 1).
            VOLUME_POLL_INTERVAL: Volume attach/detach poll interval (default: 5).
            INSTANCE_STATUS_RETRIES: Attempts when waiting on instance status (default: 120).
            NETWORK_CONNECTION_RETRIES: Attempts when verifying NIC changes (default: 30).
            VOLUME_ATTACHMENT_RETRIES: Attempts when verifying volume attach (default: 120).
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

        return cls(
            api_base_url=os.environ.get("PROVISIONER_API_URL", DEFAULT_API_URL),
            api_token=os.environ.get("PROVISIONER_API_TOKEN", ""),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            polling=PollingConfig(
                poll_interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
                network_poll_interval_seconds=get_float(
                    "NETWORK_POLL_INTERVAL", DEFAULT_NETWORK_POLL_INTERVAL_SECONDS
                ),
                volume_poll_interval_seconds=get_float(
                    "VOLUME_POLL_INTERVAL", DEFAULT_VOLUME_POLL_INTERVAL_SECONDS
                ),
                instance_status_attempts=get_int(
                    "INSTANCE_STATUS_RETRIES", MAX_INSTANCE_STATUS_RETRIES
                ),
                network_connection_attempts=get_int(
                    "NETWORK_CONNECTION_RETRIES", MAX_NETWORK_CONNECTION_RETRIES
                ),
                volume_attachment_attempts=get_int(
                    "VOLUME_ATTACHMENT_RETRIES", MAX_VOLUME_ATTACHMENT_RETRIES
                ),
            ),
        )
