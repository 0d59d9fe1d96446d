"""Waiting for deletion, force destroy and timeout diagnosis.

A delete request only marks an object for deletion; finalizers can keep it
around indefinitely. After issuing the delete the engine polls until the
object is gone. When that times out it either strips the finalizers (force
destroy) or explains what is blocking.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from ssaengine.config import FINALIZERLESS_REDELETE_WAIT_SECONDS, EngineConfig
from ssaengine.errors import ApiError, Severity, is_not_found_error
from ssaengine.models import Diagnostic, Diagnostics
from ssaengine.store import ObjectRef, ObjectStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinalizerInfo:
    """Plain-language explanation of a finalizer."""

    explanation: str
    source: str


# Only documented, stable finalizers are explained
KNOWN_FINALIZERS: dict[str, FinalizerInfo] = {
    "kubernetes.io/pvc-protection": FinalizerInfo(
        "Volume is still attached to a pod",
        "https://kubernetes.io/docs/concepts/storage/persistent-volumes/"
        "#storage-object-in-use-protection",
    ),
    "kubernetes.io/pv-protection": FinalizerInfo(
        "PersistentVolume is still bound to a claim",
        "https://kubernetes.io/docs/concepts/storage/persistent-volumes/"
        "#storage-object-in-use-protection",
    ),
    "kubernetes": FinalizerInfo(
        "Namespace is deleting all contained resources",
        "https://kubernetes.io/docs/concepts/overview/working-with-objects/namespaces/"
        "#automatic-deletion",
    ),
    "foregroundDeletion": FinalizerInfo(
        "Waiting for owned resources to delete first",
        "https://kubernetes.io/docs/concepts/architecture/garbage-collection/"
        "#foreground-deletion",
    ),
    "orphan": FinalizerInfo(
        "Dependents will be orphaned (not deleted)",
        "https://kubernetes.io/docs/concepts/architecture/garbage-collection/"
        "#orphan-dependents",
    ),
}


def explain_finalizer(finalizer: str) -> str:
    info = KNOWN_FINALIZERS.get(finalizer)
    if info is None:
        return f"  - {finalizer} (custom finalizer - check the logs of its controller)"
    return f"  - {finalizer}: {info.explanation}\n    (See: {info.source})"


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    if minutes and secs:
        return f"{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m"
    return f"{secs}s"


def _kubectl_target(ref: ObjectRef) -> str:
    target = f"{ref.kind.lower()} {ref.name}"
    if ref.namespace:
        target += f" -n {ref.namespace}"
    return target


def wait_for_deletion(
    store: ObjectStore,
    ref: ObjectRef,
    timeout: float,
    poll_interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll until an object is gone.

    Args:
        store: Object store.
        ref: Object to watch.
        timeout: Seconds to wait; 0 skips waiting entirely.
        poll_interval: Seconds between polls.
        sleep: Sleep function.
        clock: Monotonic clock.

    Returns:
        True when the object is gone or waiting was skipped, False on timeout.
    """
    if timeout <= 0:
        return True

    deadline = clock() + timeout
    while True:
        try:
            store.get(ref)
        except ApiError as e:
            if is_not_found_error(e):
                return True
            # Not proof of deletion; keep polling until the deadline
            logger.warning(
                "Error checking deletion status",
                extra={"object": str(ref), "error": str(e)},
            )

        if clock() >= deadline:
            return False
        sleep(poll_interval)


def force_destroy(
    store: ObjectStore,
    ref: ObjectRef,
    config: EngineConfig,
    diagnostics: Diagnostics,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Remove finalizers from a stuck object and wait for it to go.

    An object without finalizers is deleted once more instead.

    Returns:
        True when the object is gone.

    Raises:
        ApiError: If the object cannot be read or patched.
    """
    try:
        live = store.get(ref)
    except ApiError as e:
        if is_not_found_error(e):
            return True
        raise

    finalizers = list((live.get("metadata") or {}).get("finalizers") or [])
    if not finalizers:
        logger.warning(
            "Object has no finalizers but deletion timed out, deleting again",
            extra={"object": str(ref)},
        )
        try:
            store.delete(ref)
        except ApiError as e:
            if not is_not_found_error(e):
                raise
        return wait_for_deletion(
            store,
            ref,
            FINALIZERLESS_REDELETE_WAIT_SECONDS,
            config.delete_poll_interval_seconds,
            sleep,
            clock,
        )

    diagnostics.add_warning(
        "Force Destroying Resource with Finalizers",
        f"Removing finalizers from {ref} to force deletion: {', '.join(finalizers)}\n\n"
        "This bypasses Kubernetes safety mechanisms and may cause:\n"
        "- Data loss or corruption\n"
        "- Orphaned dependent resources\n"
        "- Incomplete cleanup operations\n\n"
        "Only use force destroy when you understand the implications for this resource.",
    )
    logger.warning(
        "Force destroying object",
        extra={"object": str(ref), "finalizers": finalizers},
    )
    store.strip_finalizers(ref, field_manager=config.force_destroy_manager)

    return wait_for_deletion(
        store,
        ref,
        config.force_destroy_wait_seconds,
        config.delete_poll_interval_seconds,
        sleep,
        clock,
    )


def diagnose_timeout(store: ObjectStore, ref: ObjectRef, timeout: float) -> Diagnostic | None:
    """Explain why an object did not delete in time.

    Returns:
        Error diagnostic, or None if the object turned out to be gone.
    """
    waited = _format_duration(timeout)
    target = _kubectl_target(ref)

    try:
        live = store.get(ref)
    except ApiError as e:
        if is_not_found_error(e):
            logger.info("Object deleted after timeout check", extra={"object": str(ref)})
            return None
        return Diagnostic(
            Severity.ERROR,
            "Deletion Timeout",
            f"{ref} could not be deleted within {waited}.\n\n"
            "The object may still be terminating in the background. "
            f"Check its status with: kubectl get {target}\n\n"
            "To force deletion (may cause data loss), enable force destroy.",
        )

    metadata = live.get("metadata") or {}
    finalizers = list(metadata.get("finalizers") or [])
    terminating = bool(metadata.get("deletionTimestamp"))

    if terminating and finalizers:
        explained = "\n".join(explain_finalizer(f) for f in finalizers)
        return Diagnostic(
            Severity.ERROR,
            "Deletion Blocked by Finalizers",
            f'{ref.kind} "{ref.name}" cannot be deleted due to finalizers:\n\n{explained}\n\n'
            "Options:\n"
            '- Wait longer: set a longer delete timeout, e.g. "20m"\n'
            f"- Investigate: kubectl describe {target}\n"
            "- Force delete: enable force destroy",
        )

    if terminating:
        if ref.kind == "Namespace":
            return Diagnostic(
                Severity.ERROR,
                "Namespace Deletion Timeout",
                f'Namespace "{ref.name}" did not delete within {waited}.\n\n'
                "Options:\n"
                '- Increase timeout: set a longer delete timeout, e.g. "20m"\n'
                f"- Check status: kubectl get all -n {ref.name}\n"
                "- Force delete: enable force destroy",
            )
        return Diagnostic(
            Severity.ERROR,
            "Deletion Timeout",
            f'{ref.kind} "{ref.name}" did not delete within {waited}.\n\n'
            "Options:\n"
            '- Increase timeout: set a longer delete timeout, e.g. "20m"\n'
            f"- Check status: kubectl describe {target}\n"
            "- Force delete: enable force destroy",
        )

    return Diagnostic(
        Severity.ERROR,
        "Deletion Not Initiated",
        f'{ref.kind} "{ref.name}" was not marked for deletion (timeout: {waited}).\n\n'
        "This may indicate insufficient permissions or a cluster issue.\n\n"
        "Options:\n"
        f"- Check permissions: kubectl auth can-i delete {ref.kind.lower()}\n"
        f"- Check status: kubectl describe {target}\n"
        "- Force delete: enable force destroy",
    )
