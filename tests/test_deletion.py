"""Tests for deletion waiting, force destroy and timeout diagnosis."""

from typing import Any

import pytest
from k8s_mock import FakeClock, MockObjectStore

from ssaengine.config import EngineConfig
from ssaengine.deletion import diagnose_timeout, explain_finalizer, force_destroy, wait_for_deletion
from ssaengine.errors import ApiError
from ssaengine.models import Diagnostics
from ssaengine.store import ObjectRef

PVC_REF = ObjectRef("v1", "PersistentVolumeClaim", "data", "default")


def pvc(**metadata: Any) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": "data", "namespace": "default", **metadata},
        "spec": {"resources": {"requests": {"storage": "1Gi"}}},
    }


class TestWaitForDeletion:
    """Tests for wait_for_deletion."""

    def test_zero_timeout_skips_waiting(self, store: MockObjectStore, clock: FakeClock) -> None:
        """A zero timeout returns at once without polling."""
        store.put(pvc())

        assert wait_for_deletion(store, PVC_REF, 0, 2.0, clock.sleep, clock.monotonic)
        assert store.count("get") == 0

    def test_object_gone(self, store: MockObjectStore, clock: FakeClock) -> None:
        """A missing object counts as deleted."""
        assert wait_for_deletion(store, PVC_REF, 60, 2.0, clock.sleep, clock.monotonic)
        assert clock.sleeps == []

    def test_timeout(self, store: MockObjectStore, clock: FakeClock) -> None:
        """A stuck object is polled until the deadline."""
        store.put(pvc(finalizers=["kubernetes.io/pvc-protection"]))

        assert not wait_for_deletion(store, PVC_REF, 10, 2.0, clock.sleep, clock.monotonic)
        assert clock.sleeps == [2.0] * 5
        assert store.count("get") == 6

    def test_transient_errors_keep_polling(self, store: MockObjectStore, clock: FakeClock) -> None:
        """A failed poll is not taken as proof of deletion."""
        store.put(pvc())
        store.fail_next("get", ApiError(500, "InternalError", "etcd timeout"))

        def remove_on_sleep(seconds: float) -> None:
            clock.sleep(seconds)
            store.objects.clear()

        assert wait_for_deletion(store, PVC_REF, 60, 2.0, remove_on_sleep, clock.monotonic)
        assert store.count("get") == 2


class TestForceDestroy:
    """Tests for force_destroy."""

    def test_strips_finalizers(
        self, store: MockObjectStore, clock: FakeClock, config: EngineConfig
    ) -> None:
        """Finalizers are removed and the object goes away."""
        store.put(
            pvc(
                finalizers=["kubernetes.io/pvc-protection"],
                deletionTimestamp="2024-01-01T00:00:00Z",
            )
        )
        diagnostics = Diagnostics()

        assert force_destroy(store, PVC_REF, config, diagnostics, clock.sleep, clock.monotonic)
        assert store.live(PVC_REF) is None
        assert store.count("strip_finalizers") == 1
        assert diagnostics.titles() == ["Force Destroying Resource with Finalizers"]
        assert "kubernetes.io/pvc-protection" in diagnostics[0].detail

    def test_no_finalizers_deletes_again(
        self, store: MockObjectStore, clock: FakeClock, config: EngineConfig
    ) -> None:
        """An object without finalizers gets another delete request."""
        store.put(pvc())
        diagnostics = Diagnostics()

        assert force_destroy(store, PVC_REF, config, diagnostics, clock.sleep, clock.monotonic)
        assert store.count("delete") == 1
        assert store.count("strip_finalizers") == 0
        assert len(diagnostics) == 0

    def test_already_gone(
        self, store: MockObjectStore, clock: FakeClock, config: EngineConfig
    ) -> None:
        """Nothing is done for an object that is already gone."""
        assert force_destroy(store, PVC_REF, config, Diagnostics(), clock.sleep, clock.monotonic)
        assert store.count("strip_finalizers") == 0

    def test_read_failure_raises(
        self, store: MockObjectStore, clock: FakeClock, config: EngineConfig
    ) -> None:
        """A failure other than not found propagates."""
        store.fail_next("get", ApiError(403, "Forbidden", "forbidden"))

        with pytest.raises(ApiError):
            force_destroy(store, PVC_REF, config, Diagnostics(), clock.sleep, clock.monotonic)


class TestDiagnoseTimeout:
    """Tests for diagnose_timeout."""

    def test_gone_after_timeout(self, store: MockObjectStore) -> None:
        """An object that disappeared in the meantime needs no diagnosis."""
        assert diagnose_timeout(store, PVC_REF, 300) is None

    def test_blocked_by_finalizers(self, store: MockObjectStore) -> None:
        """Known finalizers are explained."""
        store.put(
            pvc(
                finalizers=["kubernetes.io/pvc-protection", "example.com/cleanup"],
                deletionTimestamp="2024-01-01T00:00:00Z",
            )
        )

        diagnostic = diagnose_timeout(store, PVC_REF, 600)

        assert diagnostic is not None
        assert diagnostic.is_error
        assert diagnostic.title == "Deletion Blocked by Finalizers"
        assert "Volume is still attached to a pod" in diagnostic.detail
        assert "example.com/cleanup (custom finalizer" in diagnostic.detail
        assert "kubectl describe persistentvolumeclaim data -n default" in diagnostic.detail

    def test_terminating_namespace(self, store: MockObjectStore) -> None:
        """A namespace stuck terminating gets namespace-specific advice."""
        store.put(
            {
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {"name": "team-a", "deletionTimestamp": "2024-01-01T00:00:00Z"},
            }
        )

        diagnostic = diagnose_timeout(store, ObjectRef("v1", "Namespace", "team-a"), 900)

        assert diagnostic is not None
        assert diagnostic.title == "Namespace Deletion Timeout"
        assert "within 15m" in diagnostic.detail
        assert "kubectl get all -n team-a" in diagnostic.detail

    def test_terminating_without_finalizers(self, store: MockObjectStore) -> None:
        """A terminating object without finalizers times out generically."""
        store.put(pvc(deletionTimestamp="2024-01-01T00:00:00Z"))

        diagnostic = diagnose_timeout(store, PVC_REF, 330)

        assert diagnostic is not None
        assert diagnostic.title == "Deletion Timeout"
        assert "within 5m30s" in diagnostic.detail

    def test_not_initiated(self, store: MockObjectStore) -> None:
        """An object never marked for deletion points at permissions."""
        store.put(pvc())

        diagnostic = diagnose_timeout(store, PVC_REF, 45)

        assert diagnostic is not None
        assert diagnostic.title == "Deletion Not Initiated"
        assert "(timeout: 45s)" in diagnostic.detail
        assert "kubectl auth can-i delete persistentvolumeclaim" in diagnostic.detail

    def test_status_unknown(self, store: MockObjectStore) -> None:
        """A failed status check still produces an error."""
        store.fail_next("get", ApiError(500, "InternalError", "etcd timeout"))

        diagnostic = diagnose_timeout(store, PVC_REF, 300)

        assert diagnostic is not None
        assert diagnostic.title == "Deletion Timeout"
        assert "may still be terminating" in diagnostic.detail


class TestExplainFinalizer:
    """Tests for explain_finalizer."""

    @pytest.mark.parametrize(
        "finalizer,text",
        [
            ("kubernetes", "Namespace is deleting all contained resources"),
            ("foregroundDeletion", "Waiting for owned resources to delete first"),
            ("orphan", "Dependents will be orphaned"),
            ("kubernetes.io/pv-protection", "still bound to a claim"),
        ],
    )
    def test_known(self, finalizer: str, text: str) -> None:
        """Documented finalizers carry an explanation and a link."""
        explanation = explain_finalizer(finalizer)

        assert text in explanation
        assert "(See: https://kubernetes.io/docs/" in explanation

    def test_custom(self) -> None:
        """Other finalizers point at their controller."""
        assert "check the logs of its controller" in explain_finalizer("example.com/cleanup")
