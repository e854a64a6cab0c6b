"""Configuration management with validation.

Operator-level settings are loaded from the environment and validated at
construction time so a misconfigured operator fails before its first
reconciliation rather than in the middle of one.
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
DEFAULT_API_SERVER_PORT = 6443

DEFAULT_INSTANCE_WAIT_TIMEOUT_SECONDS = 60
MIN_INSTANCE_WAIT_TIMEOUT_SECONDS = 5
MAX_INSTANCE_WAIT_TIMEOUT_SECONDS = 600

DEFAULT_DNS_REQUEUE_SECONDS = 15
MIN_DNS_REQUEUE_SECONDS = 1
MAX_DNS_REQUEUE_SECONDS = 300

DEFAULT_SSH_KEY_NAME = "default"

# Store file limits
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    region: str

    # Paths
    store_dir: Path = field(default_factory=lambda: Path("/manifests"))

    # Cluster defaults
    api_server_port: int = DEFAULT_API_SERVER_PORT
    default_ssh_key_name: str = DEFAULT_SSH_KEY_NAME

    # Timing
    instance_wait_timeout_seconds: int = DEFAULT_INSTANCE_WAIT_TIMEOUT_SECONDS
    dns_requeue_seconds: int = DEFAULT_DNS_REQUEUE_SECONDS

    # Feature toggles
    enable_event_notifications: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if not (1 <= self.api_server_port <= 65535):
            errors.append(f"API_SERVER_PORT must be between 1 and 65535: {self.api_server_port}")

        if not (
            MIN_INSTANCE_WAIT_TIMEOUT_SECONDS
            <= self.instance_wait_timeout_seconds
            <= MAX_INSTANCE_WAIT_TIMEOUT_SECONDS
        ):
            errors.append(
                f"INSTANCE_WAIT_TIMEOUT must be between {MIN_INSTANCE_WAIT_TIMEOUT_SECONDS} "
                f"and {MAX_INSTANCE_WAIT_TIMEOUT_SECONDS} seconds"
            )

        if not (MIN_DNS_REQUEUE_SECONDS <= self.dns_requeue_seconds <= MAX_DNS_REQUEUE_SECONDS):
            errors.append(
                f"DNS_REQUEUE_SECONDS must be between {MIN_DNS_REQUEUE_SECONDS} "
                f"and {MAX_DNS_REQUEUE_SECONDS} seconds"
            )

        if not self.store_dir.exists():
            errors.append(f"Store directory does not exist: {self.store_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AWS_REGION: Region all clients are bound to (required)
            STORE_DIR: Directory holding AWSCluster manifests (default: /manifests)
            API_SERVER_PORT: Port published on the control-plane endpoint (default: 6443)
            DEFAULT_SSH_KEY_NAME: Key pair used when neither machine nor cluster set one
            INSTANCE_WAIT_TIMEOUT: Seconds to wait for a new instance to run (default: 60)
            DNS_REQUEUE_SECONDS: Requeue delay while the ELB DNS name settles (default: 15)
            ENABLE_EVENT_NOTIFICATIONS: Manage EventBridge instance-state events (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            region=os.environ.get("AWS_REGION", ""),
            store_dir=Path(os.environ.get("STORE_DIR", "/manifests")),
            api_server_port=get_int("API_SERVER_PORT", DEFAULT_API_SERVER_PORT),
            default_ssh_key_name=os.environ.get("DEFAULT_SSH_KEY_NAME", DEFAULT_SSH_KEY_NAME),
            instance_wait_timeout_seconds=get_int(
                "INSTANCE_WAIT_TIMEOUT", DEFAULT_INSTANCE_WAIT_TIMEOUT_SECONDS
            ),
            dns_requeue_seconds=get_int("DNS_REQUEUE_SECONDS", DEFAULT_DNS_REQUEUE_SECONDS),
            enable_event_notifications=get_bool("ENABLE_EVENT_NOTIFICATIONS", False),
        )
