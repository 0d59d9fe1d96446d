"""Server-side apply with conflict reclaim and dependency retry.

An apply is attempted without force first. Two raced states are tolerated:

- Field manager conflict: another manager owns a field this tool sends. The
  apply is resubmitted once with force, making this manager the owner. The
  reclaim is logged at WARNING so it is never silent.
- Dependency not ready: the kind is not served yet (a CRD created moments
  ago) or the namespace does not exist yet. The apply is retried on a fixed
  schedule of about 30 seconds in total, then fails with
  :class:`~ssaengine.errors.TypeNotEstablishedError`.

Every other failure is raised immediately; a typo should not cost 30 seconds.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from ssaengine.config import EngineConfig
from ssaengine.errors import (
    ApiError,
    TypeNotEstablishedError,
    is_conflict_error,
    is_dependency_not_ready_error,
    is_namespace_not_found_error,
)
from ssaengine.store import ObjectRef, ObjectStore

logger = logging.getLogger(__name__)


class ApplyEngine:
    """Applies desired documents as the configured field manager."""

    def __init__(
        self,
        store: ObjectStore,
        config: EngineConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._config = config
        self._sleep = sleep

    def apply(self, obj: dict[str, Any], *, dry_run: bool = False) -> dict[str, Any]:
        """Apply ``obj`` and return the resulting live object.

        Args:
            obj: Complete apply body; every field in it is claimed.
            dry_run: Ask the server to evaluate the apply without persisting.

        Returns:
            Live object as returned by the server.

        Raises:
            TypeNotEstablishedError: If the kind or namespace stayed
                unavailable for the whole retry schedule.
            ApiError: For any other failure.
        """
        ref = ObjectRef.from_object(obj)
        schedule = self._config.dependency_retry_schedule
        force = False
        retries = 0

        while True:
            try:
                return self._store.apply(
                    obj,
                    field_manager=self._config.field_manager,
                    force=force,
                    dry_run=dry_run,
                )
            except ApiError as e:
                if is_conflict_error(e) and not force:
                    logger.warning(
                        "Field manager conflict, reclaiming fields with force",
                        extra={
                            "object": str(ref),
                            "field_manager": self._config.field_manager,
                            "conflict": e.message,
                        },
                    )
                    force = True
                    continue

                if not is_dependency_not_ready_error(e):
                    raise

                if retries >= len(schedule):
                    raise TypeNotEstablishedError(
                        _not_established_message(ref, e, sum(schedule)), e
                    ) from e

                delay = schedule[retries]
                retries += 1
                logger.info(
                    "Dependency not ready, retrying apply",
                    extra={
                        "object": str(ref),
                        "attempt": retries,
                        "max_attempts": len(schedule),
                        "wait_seconds": delay,
                        "error": str(e),
                    },
                )
                self._sleep(delay)


def _not_established_message(ref: ObjectRef, err: ApiError, waited: float) -> str:
    if is_namespace_not_found_error(err):
        return (
            f"Namespace {ref.namespace!r} for {ref} was not found after waiting "
            f"{waited:g}s. Create the namespace first or check the namespace name. "
            f"Last error: {err}"
        )
    return (
        f"Resource type {ref.kind} ({ref.api_version}) was not found after waiting "
        f"{waited:g}s for it to be registered.\n\n"
        "This usually means:\n"
        "1. The CRD has not been installed\n"
        "2. The CRD is still being established; retry the operation\n"
        "3. There is a typo in apiVersion or kind\n\n"
        f"Last error: {err}"
    )
