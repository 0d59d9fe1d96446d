"""Kubernetes API Mock for Integration Testing.

This module provides an in-memory implementation of the object store
contract used by the engine, so lifecycle tests run without a cluster.

Key Features:
- Server-side apply with managedFields in FieldsV1 form
- Field manager conflicts, force reclaim and field release
- Delayed kind registration (CRDs that are not established yet)
- Finalizers and deletionTimestamp
- Error injection, API warnings and a call log
- Fake clock so deletion waits and retries never really sleep

Usage:
    from k8s_mock import FakeClock, MockObjectStore

    store = MockObjectStore()
    clock = FakeClock()
    orchestrator = LifecycleOrchestrator(store, sleep=clock.sleep, clock=clock.monotonic)

    result = orchestrator.create(configmap)

    # Assert on mock state
    assert store.count("apply") == 1
"""

from .clock import FakeClock
from .store import BUILTIN_KINDS, CLUSTER_SCOPED_KINDS, MockObjectStore

__all__ = [
    "BUILTIN_KINDS",
    "CLUSTER_SCOPED_KINDS",
    "FakeClock",
    "MockObjectStore",
]
