"""Tests for the apply engine."""

import logging
from typing import Any

import pytest
from k8s_mock import FakeClock, MockObjectStore

from ssaengine.apply import ApplyEngine
from ssaengine.config import EngineConfig
from ssaengine.errors import ApiError, TypeNotEstablishedError
from ssaengine.store import ObjectRef


def widget() -> dict[str, Any]:
    return {
        "apiVersion": "example.com/v1",
        "kind": "Widget",
        "metadata": {"name": "w", "namespace": "default"},
        "spec": {"size": 3},
    }


@pytest.fixture
def engine(store: MockObjectStore, config: EngineConfig, clock: FakeClock) -> ApplyEngine:
    return ApplyEngine(store, config, sleep=clock.sleep)


class TestApply:
    """Tests for plain applies."""

    def test_apply_creates_object(
        self, engine: ApplyEngine, store: MockObjectStore, configmap: dict[str, Any]
    ) -> None:
        """An apply stores the object and records this manager."""
        result = engine.apply(configmap)

        assert result["data"] == {"a": "1", "b": "2"}
        ref = ObjectRef.from_object(configmap)
        assert "ssaengine" in store.managers(ref)

    def test_dry_run_does_not_persist(
        self, engine: ApplyEngine, store: MockObjectStore, configmap: dict[str, Any]
    ) -> None:
        """A dry run returns the result without storing it."""
        result = engine.apply(configmap, dry_run=True)

        assert result["data"]["a"] == "1"
        assert store.live(ObjectRef.from_object(configmap)) is None

    def test_other_errors_raise_immediately(
        self,
        engine: ApplyEngine,
        store: MockObjectStore,
        clock: FakeClock,
        configmap: dict[str, Any],
    ) -> None:
        """Validation failures are not retried."""
        store.fail_next("apply", ApiError(422, "Invalid", "data.a: Invalid value"))

        with pytest.raises(ApiError) as exc_info:
            engine.apply(configmap)

        assert exc_info.value.status == 422
        assert store.count("apply") == 1
        assert clock.sleeps == []


class TestConflictReclaim:
    """Tests for conflict handling."""

    def test_conflict_retries_with_force(
        self,
        engine: ApplyEngine,
        store: MockObjectStore,
        configmap: dict[str, Any],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A field manager conflict is reclaimed with a forced apply."""
        store.apply(configmap, field_manager="ssaengine", force=False)
        external = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "app", "namespace": "default"},
            "data": {"b": "external"},
        }
        store.apply(external, field_manager="kubectl", force=True)

        with caplog.at_level(logging.WARNING, logger="ssaengine.apply"):
            result = engine.apply(configmap)

        assert result["data"]["b"] == "2"
        assert store.count("apply") == 4
        assert "kubectl" not in store.managers(ObjectRef.from_object(configmap))
        assert any("reclaiming fields with force" in r.getMessage() for r in caplog.records)

    def test_conflict_is_forced_only_once(
        self, engine: ApplyEngine, store: MockObjectStore, configmap: dict[str, Any]
    ) -> None:
        """A conflict on the forced retry is raised."""
        message = 'Apply failed with 1 conflict: conflict with "x": .data'
        conflict = ApiError(409, "Conflict", message)
        store.fail_next("apply", conflict, times=2)

        with pytest.raises(ApiError) as exc_info:
            engine.apply(configmap)

        assert exc_info.value.status == 409
        assert store.count("apply") == 2


class TestDependencyRetry:
    """Tests for waiting on kinds that are not served yet."""

    def test_kind_registered_late(
        self, engine: ApplyEngine, store: MockObjectStore, clock: FakeClock
    ) -> None:
        """The apply succeeds once the kind is served."""
        store.register_kind_after("example.com/v1", "Widget", 2)

        result = engine.apply(widget())

        assert result["spec"] == {"size": 3}
        assert clock.sleeps == [0.1, 0.5]
        assert store.count("apply") == 3

    def test_kind_never_registered(self, store: MockObjectStore, clock: FakeClock) -> None:
        """The schedule is exhausted, then a descriptive error is raised."""
        config = EngineConfig(dependency_retry_schedule=(0.1, 0.2))
        engine = ApplyEngine(store, config, sleep=clock.sleep)

        with pytest.raises(TypeNotEstablishedError) as exc_info:
            engine.apply(widget())

        assert clock.sleeps == [0.1, 0.2]
        assert store.count("apply") == 3
        message = str(exc_info.value)
        assert "Resource type Widget (example.com/v1) was not found" in message
        assert "0.3s" in message
        assert "no matches for kind" in str(exc_info.value.last_error)

    def test_missing_namespace_message(self, store: MockObjectStore, clock: FakeClock) -> None:
        """A missing namespace gets its own explanation."""
        config = EngineConfig(dependency_retry_schedule=(0.1,))
        engine = ApplyEngine(store, config, sleep=clock.sleep)
        missing = ApiError(404, "NotFound", 'namespaces "team-a" not found')
        store.fail_next("apply", missing, times=2)
        obj = widget()
        obj["metadata"]["namespace"] = "team-a"
        store.register_kind("example.com/v1", "Widget")

        with pytest.raises(TypeNotEstablishedError) as exc_info:
            engine.apply(obj)

        assert "Namespace 'team-a'" in str(exc_info.value)
        assert "Create the namespace first" in str(exc_info.value)
