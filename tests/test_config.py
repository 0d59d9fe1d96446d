"""Tests for configuration loading."""

import pytest

from ssaengine.config import (
    ConfigurationError,
    EngineConfig,
    default_delete_timeout,
    parse_duration,
)


class TestEngineConfig:
    """Tests for EngineConfig class."""

    def test_defaults_are_valid(self) -> None:
        """Test that the default configuration validates."""
        config = EngineConfig()

        assert config.field_manager == "ssaengine"
        assert config.identity_annotation == "ssaengine.io/resource-id"
        assert config.created_at_annotation == "ssaengine.io/created-at"
        assert config.bookkeeping_path_prefix == "metadata.annotations.ssaengine.io/"
        assert config.force_destroy_manager == "ssaengine-force-destroy"

    def test_invalid_field_manager(self) -> None:
        """Test that an invalid field manager raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(field_manager="Bad_Manager")

        assert "SSA_FIELD_MANAGER" in str(exc_info.value)

    def test_invalid_annotation_prefix(self) -> None:
        """Test that the annotation prefix must be a DNS subdomain."""
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(annotation_prefix="not a domain")

        assert "SSA_ANNOTATION_PREFIX" in str(exc_info.value)

    def test_errors_are_collected(self) -> None:
        """Test that all validation errors are reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(delete_poll_interval_seconds=0, log_level="LOUD", log_format="xml")

        message = str(exc_info.value)
        assert "SSA_DELETE_POLL_INTERVAL" in message
        assert "SSA_LOG_LEVEL" in message
        assert "SSA_LOG_FORMAT" in message

    def test_empty_retry_schedule(self) -> None:
        """Test that the dependency retry schedule cannot be empty."""
        with pytest.raises(ConfigurationError):
            EngineConfig(dependency_retry_schedule=())

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test loading configuration from environment variables."""
        monkeypatch.setenv("SSA_FIELD_MANAGER", "platform-team")
        monkeypatch.setenv("SSA_ANNOTATION_PREFIX", "platform.example.com")
        monkeypatch.setenv("SSA_DELETE_POLL_INTERVAL", "0.5")
        monkeypatch.setenv("SSA_LOG_LEVEL", "debug")
        monkeypatch.setenv("SSA_LOG_FORMAT", "TEXT")

        config = EngineConfig.from_env()

        assert config.field_manager == "platform-team"
        assert config.identity_annotation == "platform.example.com/resource-id"
        assert config.delete_poll_interval_seconds == 0.5
        assert config.log_level == "DEBUG"
        assert config.log_format == "text"

    def test_from_env_rejects_non_numbers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that numeric settings must parse."""
        monkeypatch.setenv("SSA_FORCE_DESTROY_WAIT", "a minute")

        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig.from_env()

        assert "SSA_FORCE_DESTROY_WAIT" in str(exc_info.value)


class TestParseDuration:
    """Tests for duration parsing."""

    @pytest.mark.parametrize(
        ("text", "seconds"),
        [("30s", 30.0), ("10m", 600.0), ("1h30m", 5400.0), ("500ms", 0.5), ("45", 45.0)],
    )
    def test_valid_durations(self, text: str, seconds: float) -> None:
        """Test Go-style durations and bare seconds."""
        assert parse_duration(text) == seconds

    @pytest.mark.parametrize("text", ["", "10x", "m10", "-5", "10m junk"])
    def test_invalid_durations(self, text: str) -> None:
        """Test that malformed durations are rejected."""
        with pytest.raises(ConfigurationError):
            parse_duration(text)


class TestDefaultDeleteTimeout:
    """Tests for per-kind delete timeouts."""

    def test_slow_kinds_get_longer_timeouts(self) -> None:
        """Test that namespaces and storage wait longer than the default."""
        assert default_delete_timeout("Namespace") == 900.0
        assert default_delete_timeout("PersistentVolumeClaim") == 600.0
        assert default_delete_timeout("ConfigMap") == 300.0
