"""Engine configuration with validation.

Everything that shapes how the engine talks to the cluster lives here: the
field manager identity, the annotation namespace used for bookkeeping, retry
schedules and delete timeouts. Invalid values fail at load time rather than
half-way through a reconciliation.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Identity defaults
DEFAULT_FIELD_MANAGER = "ssaengine"
DEFAULT_ANNOTATION_PREFIX = "ssaengine.io"
IDENTITY_ANNOTATION_NAME = "resource-id"
CREATED_AT_ANNOTATION_NAME = "created-at"
FORCE_DESTROY_MANAGER_SUFFIX = "-force-destroy"

# Custom types and namespaces may still be propagating right after creation.
# Fast initial retries, roughly 30 seconds in total.
DEPENDENCY_RETRY_SCHEDULE_SECONDS: tuple[float, ...] = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 10.0)

# Deletion timing
DEFAULT_DELETE_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_FORCE_DESTROY_WAIT_SECONDS = 60.0
FINALIZERLESS_REDELETE_WAIT_SECONDS = 30.0
DEFAULT_DELETE_TIMEOUT_SECONDS = 5 * 60

KIND_DELETE_TIMEOUT_SECONDS: dict[str, int] = {
    # Namespaces cascade-delete everything inside them
    "Namespace": 15 * 60,
    # CRD controllers need time to clean up instances
    "CustomResourceDefinition": 15 * 60,
    # Storage objects usually carry protection finalizers
    "PersistentVolume": 10 * 60,
    "PersistentVolumeClaim": 10 * 60,
    # Ordered or foreground deletion
    "StatefulSet": 8 * 60,
    "Job": 8 * 60,
    "CronJob": 8 * 60,
}

# Logging
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_LOG_FORMATS = ("json", "text")

# Input validation patterns
VALID_FIELD_MANAGER_PATTERN = r"^[a-z0-9][a-z0-9.-]{0,127}$"
VALID_ANNOTATION_PREFIX_PATTERN = (
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
MAX_ANNOTATION_PREFIX_LENGTH = 253

_DURATION_PART_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Identity
    field_manager: str = DEFAULT_FIELD_MANAGER
    annotation_prefix: str = DEFAULT_ANNOTATION_PREFIX

    # Timing
    delete_poll_interval_seconds: float = DEFAULT_DELETE_POLL_INTERVAL_SECONDS
    force_destroy_wait_seconds: float = DEFAULT_FORCE_DESTROY_WAIT_SECONDS
    dependency_retry_schedule: tuple[float, ...] = DEPENDENCY_RETRY_SCHEDULE_SECONDS

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.field_manager:
            errors.append("SSA_FIELD_MANAGER is required")
        elif not re.match(VALID_FIELD_MANAGER_PATTERN, self.field_manager):
            errors.append(
                f"SSA_FIELD_MANAGER must match pattern {VALID_FIELD_MANAGER_PATTERN}: "
                f"{self.field_manager}"
            )

        if not self.annotation_prefix:
            errors.append("SSA_ANNOTATION_PREFIX is required")
        elif len(self.annotation_prefix) > MAX_ANNOTATION_PREFIX_LENGTH:
            errors.append(
                f"SSA_ANNOTATION_PREFIX exceeds maximum length of {MAX_ANNOTATION_PREFIX_LENGTH}"
            )
        elif not re.match(VALID_ANNOTATION_PREFIX_PATTERN, self.annotation_prefix):
            errors.append(
                f"SSA_ANNOTATION_PREFIX must be a DNS subdomain: {self.annotation_prefix}"
            )

        if self.delete_poll_interval_seconds <= 0:
            errors.append("SSA_DELETE_POLL_INTERVAL must be greater than 0")

        if self.force_destroy_wait_seconds <= 0:
            errors.append("SSA_FORCE_DESTROY_WAIT must be greater than 0")

        if not self.dependency_retry_schedule:
            errors.append("dependency_retry_schedule must contain at least one delay")
        elif any(delay <= 0 for delay in self.dependency_retry_schedule):
            errors.append("dependency_retry_schedule delays must be greater than 0")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(
                f"SSA_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}"
            )

        if self.log_format not in VALID_LOG_FORMATS:
            errors.append(
                f"SSA_LOG_FORMAT must be one of {list(VALID_LOG_FORMATS)}: {self.log_format}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def identity_annotation(self) -> str:
        """Annotation key holding the identity marker."""
        return f"{self.annotation_prefix}/{IDENTITY_ANNOTATION_NAME}"

    @property
    def created_at_annotation(self) -> str:
        """Annotation key holding the creation timestamp."""
        return f"{self.annotation_prefix}/{CREATED_AT_ANNOTATION_NAME}"

    @property
    def bookkeeping_path_prefix(self) -> str:
        """Dotted-path prefix covering every bookkeeping annotation."""
        return f"metadata.annotations.{self.annotation_prefix}/"

    @property
    def force_destroy_manager(self) -> str:
        """Field manager used when stripping finalizers."""
        return f"{self.field_manager}{FORCE_DESTROY_MANAGER_SUFFIX}"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            SSA_FIELD_MANAGER: Field manager name used for server-side apply
                (default: ssaengine)
            SSA_ANNOTATION_PREFIX: Annotation namespace for bookkeeping
                annotations (default: ssaengine.io)
            SSA_DELETE_POLL_INTERVAL: Seconds between deletion polls (default: 2)
            SSA_FORCE_DESTROY_WAIT: Seconds to wait after stripping finalizers
                (default: 60)
            SSA_LOG_LEVEL: Log level (default: INFO)
            SSA_LOG_FORMAT: "json" or "text" (default: json)
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        return cls(
            field_manager=os.environ.get("SSA_FIELD_MANAGER", DEFAULT_FIELD_MANAGER),
            annotation_prefix=os.environ.get("SSA_ANNOTATION_PREFIX", DEFAULT_ANNOTATION_PREFIX),
            delete_poll_interval_seconds=get_float(
                "SSA_DELETE_POLL_INTERVAL", DEFAULT_DELETE_POLL_INTERVAL_SECONDS
            ),
            force_destroy_wait_seconds=get_float(
                "SSA_FORCE_DESTROY_WAIT", DEFAULT_FORCE_DESTROY_WAIT_SECONDS
            ),
            log_level=os.environ.get("SSA_LOG_LEVEL", "INFO").upper(),
            log_format=os.environ.get("SSA_LOG_FORMAT", "json").lower(),
        )


def parse_duration(value: str) -> float:
    """Parse a duration string into seconds.

    Accepts Go-style durations ("30s", "10m", "1h30m", "500ms") and bare
    numbers, which are taken as seconds.

    Args:
        value: Duration string.

    Returns:
        Duration in seconds.

    Raises:
        ConfigurationError: If the string is not a valid duration.
    """
    text = value.strip()
    if not text:
        raise ConfigurationError("duration must not be empty")

    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ConfigurationError(f"duration must not be negative: {value}")
        return seconds

    total = 0.0
    position = 0
    for match in _DURATION_PART_PATTERN.finditer(text):
        if match.start() != position:
            break
        amount, unit = match.groups()
        total += float(amount) * _DURATION_UNIT_SECONDS[unit]
        position = match.end()

    if position == 0 or position != len(text):
        raise ConfigurationError(
            f"invalid duration {value!r}: use a number of seconds or units like 30s, 10m, 1h30m"
        )
    return total


def default_delete_timeout(kind: str) -> float:
    """Return the default deletion timeout for a kind, in seconds."""
    return float(KIND_DELETE_TIMEOUT_SECONDS.get(kind, DEFAULT_DELETE_TIMEOUT_SECONDS))
