"""Lifecycle of a single managed object.

:class:`LifecycleOrchestrator` implements create, read, update and delete for
one object, plus the explicit import path and planning. Each operation is a
single pass that returns a :class:`LifecycleResult`; nothing is resumed across
calls except what the persisted records carry.

Recovery: when an apply succeeds but the projection cannot be computed, the
record is still returned, with an empty projection and
``PrivateState.pending_projection`` set. The next Read or Update recomputes the
projection without re-applying and clears the flag once it succeeds. An error
diagnostic is still reported so the calling pipeline stops, but the live
object is already correct.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ssaengine.apply import ApplyEngine
from ssaengine.config import EngineConfig, default_delete_timeout, parse_duration
from ssaengine.deletion import diagnose_timeout, force_destroy, wait_for_deletion
from ssaengine.errors import (
    ApiError,
    Operation,
    classify_error,
    is_dependency_not_ready_error,
    is_not_found_error,
    is_type_not_registered_error,
)
from ssaengine.identity import detect_identity_changes, format_identity_changes
from ssaengine.ignore import IgnoreFieldsError, IgnoreSet
from ssaengine.managed_fields import (
    extract_field_ownership,
    flatten_field_ownership,
    ownership_baseline,
)
from ssaengine.models import Diagnostics, PrivateState, ResourceOptions, ResourceRecord
from ssaengine.ownership import (
    ConflictDetection,
    ConflictType,
    FieldChange,
    IdentityVerdict,
    classify_conflict,
    detect_transitions,
    format_transition_warning,
    generate_resource_id,
    read_created_at,
    read_identity,
    stamp_identity,
    verify_identity,
)
from ssaengine.paths import extract_field_paths, get_field
from ssaengine.projection import ProjectionError, compute_projection, owned_paths
from ssaengine.store import ObjectRef, ObjectStore

logger = logging.getLogger(__name__)

# Populated by the API server; never part of a desired document
SERVER_METADATA_FIELDS = (
    "managedFields",
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "generation",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
)


class ObjectState(str, Enum):
    """Where an object stands after an operation."""

    ABSENT = "absent"
    APPLYING = "applying"
    LIVE_OWNED = "live-owned"
    PROJECTION_PENDING = "projection-pending"
    DELETING = "deleting"
    DELETED = "deleted"


@dataclass
class LifecycleResult:
    """Outcome of one lifecycle operation.

    ``record`` and ``private`` are what the caller persists. They are None
    when nothing should be persisted, and ``removed`` tells the caller to drop
    previously persisted state.
    """

    record: ResourceRecord | None
    private: PrivateState | None
    state: ObjectState
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    removed: bool = False

    @property
    def success(self) -> bool:
        return not self.diagnostics.has_error


@dataclass
class PlanResult:
    """Outcome of planning an apply.

    A ``projection`` of None means it is not known until apply, for example
    because the cluster connection or the kind is not available yet.
    """

    projection: dict[str, str] | None
    field_ownership: dict[str, str] = field(default_factory=dict)
    requires_replacement: bool = False
    diagnostics: Diagnostics = field(default_factory=Diagnostics)


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _describe(ref: ObjectRef) -> str:
    return str(ref)


def desired_from_live(live: dict[str, Any]) -> dict[str, Any]:
    """Derive a desired document from a live object.

    Drops ``status`` and every metadata field the API server populates.
    """
    desired = {k: v for k, v in live.items() if k != "status"}
    metadata = dict(desired.get("metadata") or {})
    for name in SERVER_METADATA_FIELDS:
        metadata.pop(name, None)
    desired["metadata"] = metadata
    return desired


class LifecycleOrchestrator:
    """Creates, reads, updates and deletes one managed object at a time.

    The orchestrator holds no per-object state; everything it needs comes in
    with the call and goes out with the result.
    """

    def __init__(
        self,
        store: ObjectStore | None,
        config: EngineConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Object store; None when the connection is not resolvable
                yet, in which case only planning is possible.
            config: Engine configuration.
            sleep: Sleep function used for retries and polling.
            clock: Monotonic clock used for deletion deadlines.
        """
        self._store = store
        self._config = config or EngineConfig()
        self._sleep = sleep
        self._clock = clock

    @property
    def config(self) -> EngineConfig:
        return self._config

    def _require_store(self) -> ObjectStore:
        if self._store is None:
            raise ValueError("a resolved cluster connection is required for this operation")
        return self._store

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _surface_warnings(self, ref: ObjectRef, diagnostics: Diagnostics) -> None:
        if self._store is None:
            return
        for warning in self._store.drain_warnings():
            diagnostics.add_warning(
                f"Kubernetes API Warning ({ref.kind}/{ref.name})",
                f"The Kubernetes API server returned a warning:\n\n{warning}",
            )
            logger.warning(
                "Kubernetes API warning",
                extra={"object": str(ref), "warning": warning},
            )

    def _ignore_set(self, patterns: list[str], diagnostics: Diagnostics) -> IgnoreSet | None:
        try:
            return IgnoreSet.build(patterns, self._config.annotation_prefix)
        except IgnoreFieldsError as e:
            diagnostics.add_error("Invalid Ignore Fields", str(e))
            return None

    def _validate_desired(self, desired: dict[str, Any], diagnostics: Diagnostics) -> bool:
        ref = ObjectRef.from_object(desired)
        missing = [
            name
            for name, value in (
                ("apiVersion", ref.api_version),
                ("kind", ref.kind),
                ("metadata.name", ref.name),
            )
            if not value
        ]
        if missing:
            diagnostics.add_error(
                "Invalid Object",
                f"The object document is missing required fields: {', '.join(missing)}",
            )
            return False
        return True

    def _apply_body(
        self, desired: dict[str, Any], resource_id: str, created_at: str, ignore: IgnoreSet
    ) -> dict[str, Any]:
        stamped = stamp_identity(desired, resource_id, created_at, self._config)
        return ignore.strip(stamped)

    def _project(
        self,
        live: dict[str, Any],
        body: dict[str, Any],
        ignore: IgnoreSet,
        baseline: dict[str, str] | None = None,
    ) -> dict[str, str]:
        paths = owned_paths(live, body, self._config.field_manager, baseline)
        return compute_projection(
            live,
            paths,
            ignore,
            body,
            bookkeeping_prefix=self._config.bookkeeping_path_prefix,
        )

    def _projection_failed(
        self,
        record: ResourceRecord,
        private: PrivateState,
        ref: ObjectRef,
        verb: str,
        err: Exception,
        diagnostics: Diagnostics,
    ) -> LifecycleResult:
        logger.warning(
            "Projection calculation failed, will retry on next run",
            extra={"object": str(ref), "error": str(err)},
        )
        record.projection = {}
        private.pending_projection = True
        diagnostics.add_error(
            "Projection Calculation Failed",
            f"{_describe(ref)} was {verb} successfully but projection calculation failed: "
            f"{err}\n\nThis is typically caused by network issues. Run the operation again "
            "to complete it; the object will not be applied again.",
        )
        return LifecycleResult(record, private, ObjectState.PROJECTION_PENDING, diagnostics)

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create(
        self, desired: dict[str, Any], options: ResourceOptions | None = None
    ) -> LifecycleResult:
        """Create an object and take ownership of its fields."""
        options = options or ResourceOptions()
        diagnostics = Diagnostics()
        if not self._validate_desired(desired, diagnostics):
            return LifecycleResult(None, None, ObjectState.ABSENT, diagnostics)
        ignore = self._ignore_set(options.ignore_fields, diagnostics)
        if ignore is None:
            return LifecycleResult(None, None, ObjectState.ABSENT, diagnostics)

        store = self._require_store()
        ref = ObjectRef.from_object(desired)
        resource_id = generate_resource_id()
        created_at = _now()

        # Never take over an object created outside this tool
        try:
            existing = store.get(ref)
        except ApiError as e:
            if not (is_not_found_error(e) or is_dependency_not_ready_error(e)):
                diagnostics.add_classified(classify_error(e, Operation.CREATE, _describe(ref)))
                return LifecycleResult(None, None, ObjectState.ABSENT, diagnostics)
        else:
            existing_id = read_identity(existing, self._config)
            if existing_id:
                diagnostics.add_error(
                    "Resource Already Managed",
                    f"{_describe(ref)} is already managed by another instance of this tool "
                    f"(resource id {existing_id}). Two configurations must not manage the "
                    "same object.",
                )
            else:
                diagnostics.add_error(
                    "Resource Already Exists",
                    f"{_describe(ref)} already exists and was not created by this tool. "
                    "Import it to bring it under management.",
                )
            return LifecycleResult(None, None, ObjectState.ABSENT, diagnostics)

        body = self._apply_body(desired, resource_id, created_at, ignore)
        logger.info("Creating object", extra={"object": str(ref), "resource_id": resource_id})
        try:
            applied = ApplyEngine(store, self._config, self._sleep).apply(body)
        except ApiError as e:
            self._surface_warnings(ref, diagnostics)
            diagnostics.add_classified(classify_error(e, Operation.CREATE, _describe(ref)))
            return LifecycleResult(None, None, ObjectState.ABSENT, diagnostics)
        self._surface_warnings(ref, diagnostics)

        # managedFields are only reliable once the object round-tripped
        try:
            live = store.get(ref)
        except ApiError as e:
            logger.warning(
                "Read after create failed, using apply result",
                extra={"object": str(ref), "error": str(e)},
            )
            live = applied
        self._surface_warnings(ref, diagnostics)

        record = ResourceRecord(
            id=resource_id,
            manifest=desired,
            ignore_fields=list(ignore),
            delete_protection=options.delete_protection,
            force_destroy=options.force_destroy,
            delete_timeout=options.delete_timeout,
            created_at=created_at,
        )
        private = PrivateState()

        try:
            record.projection = self._project(live, body, ignore)
        except ProjectionError as e:
            return self._projection_failed(record, private, ref, "created", e, diagnostics)

        record.field_ownership = flatten_field_ownership(extract_field_ownership(live))
        private.ownership_baseline = ownership_baseline(live, list(ignore))
        logger.info(
            "Object created",
            extra={"object": str(ref), "projected_fields": len(record.projection)},
        )
        return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def read(self, record: ResourceRecord, private: PrivateState | None = None) -> LifecycleResult:
        """Refresh a record from the cluster.

        Refresh never discards working state: failures keep the prior record.
        """
        private = (private or PrivateState()).model_copy(deep=True)
        record = record.model_copy(deep=True)
        diagnostics = Diagnostics()
        store = self._require_store()
        ref = ObjectRef.from_object(record.manifest)

        if private.pending_projection:
            logger.info(
                "Pending projection detected, will attempt recovery",
                extra={"object": str(ref)},
            )

        try:
            live = store.get(ref)
        except ApiError as e:
            if is_not_found_error(e) or is_type_not_registered_error(e):
                logger.info(
                    "Object no longer exists, removing from state",
                    extra={"object": str(ref)},
                )
                return LifecycleResult(None, None, ObjectState.ABSENT, diagnostics, removed=True)
            diagnostics.add_classified(classify_error(e, Operation.READ, _describe(ref)))
            return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)
        self._surface_warnings(ref, diagnostics)

        if private.imported_without_annotations:
            logger.debug(
                "Skipping identity verification for imported object",
                extra={"object": str(ref)},
            )
        else:
            verdict = verify_identity(live, record.id, self._config)
            if verdict == IdentityVerdict.UNMARKED:
                diagnostics.add_error(
                    "Resource Not Managed",
                    f"{_describe(ref)} exists but carries no {self._config.identity_annotation} "
                    "annotation. It may have been recreated outside this tool.",
                )
                return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)
            if verdict == IdentityVerdict.FOREIGN:
                diagnostics.add_error(
                    "Resource Ownership Conflict",
                    f"{_describe(ref)} is now managed by a different instance of this tool "
                    f"(expected id {record.id}, found "
                    f"{read_identity(live, self._config)}).",
                )
                return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

        ignore = IgnoreSet(tuple(record.ignore_fields))
        body = self._apply_body(record.manifest, record.id, record.created_at, ignore)
        try:
            projection = self._project(live, body, ignore, private.ownership_baseline)
        except ProjectionError as e:
            if private.pending_projection:
                logger.warning(
                    "Projection still failing during refresh, keeping pending flag",
                    extra={"object": str(ref), "error": str(e)},
                )
                diagnostics.add_warning(
                    "Projection Still Pending",
                    f"The projection for {_describe(ref)} could not be computed yet: {e}. "
                    "The previously recorded state is kept.",
                )
                return LifecycleResult(record, private, ObjectState.PROJECTION_PENDING, diagnostics)
            diagnostics.add_error(
                "Projection Failed",
                f"Failed to project managed fields for {_describe(ref)}: {e}",
            )
            return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

        if private.pending_projection:
            logger.info("Completed pending projection during refresh", extra={"object": str(ref)})
        private.pending_projection = False
        record.projection = projection
        # The baseline is left alone so the next plan can still compare
        # ownership at the last apply with ownership now
        record.field_ownership = flatten_field_ownership(extract_field_ownership(live))

        transitions = detect_transitions(
            private.ownership_baseline,
            record.field_ownership,
            list(projection),
            self._config.field_manager,
        )
        if transitions:
            diagnostics.add(
                format_transition_warning(transitions, _describe(ref), self._config.field_manager)
            )

        return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def update(
        self,
        record: ResourceRecord,
        private: PrivateState | None,
        desired: dict[str, Any],
        options: ResourceOptions | None = None,
    ) -> LifecycleResult:
        """Apply a new desired document to an existing object."""
        options = options or record.options
        private = (private or PrivateState()).model_copy(deep=True)
        diagnostics = Diagnostics()
        if not self._validate_desired(desired, diagnostics):
            return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

        changes = detect_identity_changes(record.manifest, desired)
        if changes:
            warning = format_identity_changes(changes, record.manifest, desired)
            diagnostics.add_error(
                "Resource Identity Changed",
                f"{warning.detail}\n\nIdentity fields cannot be updated in place; "
                "delete the object and create it again.",
            )
            return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

        ignore = self._ignore_set(options.ignore_fields, diagnostics)
        if ignore is None:
            return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

        store = self._require_store()
        ref = ObjectRef.from_object(desired)
        created_at = record.created_at or _now()
        body = self._apply_body(desired, record.id, created_at, ignore)

        if private.pending_projection:
            logger.info(
                "Pending projection from previous apply, will retry",
                extra={"object": str(ref)},
            )

        logger.info("Updating object", extra={"object": str(ref), "resource_id": record.id})
        try:
            ApplyEngine(store, self._config, self._sleep).apply(body)
        except ApiError as e:
            self._surface_warnings(ref, diagnostics)
            diagnostics.add_classified(classify_error(e, Operation.UPDATE, _describe(ref)))
            return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)
        self._surface_warnings(ref, diagnostics)

        updated = ResourceRecord(
            id=record.id,
            manifest=desired,
            ignore_fields=list(ignore),
            delete_protection=options.delete_protection,
            force_destroy=options.force_destroy,
            delete_timeout=options.delete_timeout,
            created_at=created_at,
        )
        # The identity annotations are on the object now
        private.imported_without_annotations = False

        try:
            live = store.get(ref)
        except ApiError as e:
            self._surface_warnings(ref, diagnostics)
            return self._projection_failed(updated, private, ref, "updated", e, diagnostics)
        self._surface_warnings(ref, diagnostics)

        try:
            updated.projection = self._project(live, body, ignore)
        except ProjectionError as e:
            return self._projection_failed(updated, private, ref, "updated", e, diagnostics)

        if private.pending_projection:
            logger.info(
                "Completed pending projection from previous apply",
                extra={"object": str(ref)},
            )
        private.pending_projection = False
        updated.field_ownership = flatten_field_ownership(extract_field_ownership(live))
        private.ownership_baseline = ownership_baseline(live, list(ignore))
        logger.info("Object updated", extra={"object": str(ref)})
        return LifecycleResult(updated, private, ObjectState.LIVE_OWNED, diagnostics)

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def _delete_timeout(self, record: ResourceRecord) -> float:
        if record.delete_timeout:
            return parse_duration(record.delete_timeout)
        return default_delete_timeout(ObjectRef.from_object(record.manifest).kind)

    def delete(
        self, record: ResourceRecord, private: PrivateState | None = None
    ) -> LifecycleResult:
        """Delete an object, verifying it is still ours before and after."""
        private = private or PrivateState()
        diagnostics = Diagnostics()
        ref = ObjectRef.from_object(record.manifest)

        if record.delete_protection:
            diagnostics.add_error(
                "Delete Protection Enabled",
                f"{_describe(ref)} has delete protection enabled. Disable delete protection "
                "to allow deletion.",
            )
            return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

        store = self._require_store()
        gone = LifecycleResult(None, None, ObjectState.DELETED, diagnostics, removed=True)

        try:
            live = store.get(ref)
        except ApiError as e:
            if is_not_found_error(e) or is_dependency_not_ready_error(e):
                logger.info("Object already deleted", extra={"object": str(ref)})
                return gone
            diagnostics.add_classified(classify_error(e, Operation.DELETE, _describe(ref)))
            return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

        # A replacement created by another instance overwrote the object
        if verify_identity(live, record.id, self._config) == IdentityVerdict.FOREIGN:
            logger.info(
                "Object has been replaced by a different instance, skipping deletion",
                extra={
                    "object": str(ref),
                    "expected_id": record.id,
                    "existing_id": read_identity(live, self._config),
                },
            )
            return gone

        logger.info("Deleting object", extra={"object": str(ref), "resource_id": record.id})
        try:
            store.delete(ref)
        except ApiError as e:
            if not is_not_found_error(e):
                self._surface_warnings(ref, diagnostics)
                diagnostics.add_classified(classify_error(e, Operation.DELETE, _describe(ref)))
                return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)
        self._surface_warnings(ref, diagnostics)

        # A racing create may have re-materialized the object in the meantime
        try:
            current = store.get(ref)
        except ApiError as e:
            if is_not_found_error(e):
                logger.info("Object deleted", extra={"object": str(ref)})
                return gone
        else:
            if verify_identity(current, record.id, self._config) == IdentityVerdict.FOREIGN:
                logger.info(
                    "Object was recreated by a different instance, not waiting for deletion",
                    extra={"object": str(ref)},
                )
                return gone

        timeout = self._delete_timeout(record)
        poll_interval = self._config.delete_poll_interval_seconds
        if wait_for_deletion(store, ref, timeout, poll_interval, self._sleep, self._clock):
            logger.info("Object deleted", extra={"object": str(ref)})
            return gone

        if record.force_destroy:
            logger.info(
                "Normal deletion timed out, attempting force destroy",
                extra={"object": str(ref), "timeout_seconds": timeout},
            )
            try:
                deleted = force_destroy(
                    store, ref, self._config, diagnostics, self._sleep, self._clock
                )
            except ApiError as e:
                diagnostics.add_classified(classify_error(e, Operation.DELETE, _describe(ref)))
                return LifecycleResult(record, private, ObjectState.DELETING, diagnostics)
            if deleted:
                return gone
            diagnostics.add_error(
                "Force Destroy Incomplete",
                f"{_describe(ref)} still exists after removing its finalizers.",
            )
            return LifecycleResult(record, private, ObjectState.DELETING, diagnostics)

        diagnostic = diagnose_timeout(store, ref, timeout)
        if diagnostic is None:
            return gone
        diagnostics.add(diagnostic)
        return LifecycleResult(record, private, ObjectState.DELETING, diagnostics)

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    def import_object(
        self, ref: ObjectRef, options: ResourceOptions | None = None
    ) -> LifecycleResult:
        """Bring an existing object under management.

        The object is not modified; the identity annotations are written by
        the next update.
        """
        options = options or ResourceOptions()
        diagnostics = Diagnostics()
        ignore = self._ignore_set(options.ignore_fields, diagnostics)
        if ignore is None:
            return LifecycleResult(None, None, ObjectState.ABSENT, diagnostics)

        store = self._require_store()
        try:
            live = store.get(ref)
        except ApiError as e:
            if is_not_found_error(e):
                diagnostics.add_error(
                    "Resource Not Found",
                    f"Cannot import {_describe(ref)}: it does not exist in the cluster.",
                )
            else:
                diagnostics.add_classified(classify_error(e, Operation.IMPORT, _describe(ref)))
            return LifecycleResult(None, None, ObjectState.ABSENT, diagnostics)
        self._surface_warnings(ref, diagnostics)

        private = PrivateState()
        resource_id = read_identity(live, self._config)
        created_at = read_created_at(live, self._config)
        if resource_id:
            diagnostics.add_warning(
                "Importing Already-Managed Resource",
                f"{_describe(ref)} is already managed by an instance of this tool "
                f"(resource id {resource_id}). Make sure the other configuration no longer "
                "manages it.",
            )
        else:
            resource_id = generate_resource_id()
            private.imported_without_annotations = True

        desired = desired_from_live(live)
        annotations = dict((desired["metadata"].get("annotations") or {}))
        annotations.pop(self._config.identity_annotation, None)
        annotations.pop(self._config.created_at_annotation, None)
        if annotations:
            desired["metadata"]["annotations"] = annotations
        else:
            desired["metadata"].pop("annotations", None)

        record = ResourceRecord(
            id=resource_id,
            manifest=desired,
            ignore_fields=list(ignore),
            delete_protection=options.delete_protection,
            force_destroy=options.force_destroy,
            delete_timeout=options.delete_timeout,
            created_at=created_at or _now(),
        )
        try:
            record.projection = self._project(live, desired, ignore)
        except ProjectionError as e:
            return self._projection_failed(record, private, ref, "imported", e, diagnostics)

        record.field_ownership = flatten_field_ownership(extract_field_ownership(live))
        private.ownership_baseline = ownership_baseline(live, list(ignore))
        logger.info(
            "Object imported",
            extra={
                "object": str(ref),
                "resource_id": resource_id,
                "had_annotations": not private.imported_without_annotations,
            },
        )
        return LifecycleResult(record, private, ObjectState.LIVE_OWNED, diagnostics)

    # -------------------------------------------------------------------------
    # Plan
    # -------------------------------------------------------------------------

    def plan(
        self,
        desired: dict[str, Any],
        options: ResourceOptions | None = None,
        record: ResourceRecord | None = None,
        private: PrivateState | None = None,
    ) -> PlanResult:
        """Predict the projection an apply would produce.

        Uses a server-side dry run. Against a prior record, also reports
        ownership conflicts the apply would resolve by force.
        """
        options = options or ResourceOptions()
        result = PlanResult(projection=None)
        if not self._validate_desired(desired, result.diagnostics):
            return result
        ignore = self._ignore_set(options.ignore_fields, result.diagnostics)
        if ignore is None:
            return result

        if record is not None:
            changes = detect_identity_changes(record.manifest, desired)
            if changes:
                result.requires_replacement = True
                result.diagnostics.add(format_identity_changes(changes, record.manifest, desired))
                return result

        if self._store is None:
            logger.debug("Connection not resolvable yet, projection unknown until apply")
            return result

        ref = ObjectRef.from_object(desired)
        resource_id = record.id if record is not None else generate_resource_id()
        created_at = record.created_at if record is not None else _now()
        body = self._apply_body(desired, resource_id, created_at, ignore)

        try:
            planned = self._store.apply(
                body,
                field_manager=self._config.field_manager,
                force=True,
                dry_run=True,
            )
        except ApiError as e:
            self._surface_warnings(ref, result.diagnostics)
            if is_dependency_not_ready_error(e):
                # Kind or namespace is created by the same run
                logger.info(
                    "Dependency not ready during plan, projection unknown until apply",
                    extra={"object": str(ref), "error": str(e)},
                )
                return result
            result.diagnostics.add_classified(classify_error(e, Operation.PLAN, _describe(ref)))
            return result
        self._surface_warnings(ref, result.diagnostics)

        try:
            result.projection = self._project(planned, body, ignore)
        except ProjectionError as e:
            logger.warning(
                "Planned projection failed, projection unknown until apply",
                extra={"object": str(ref), "error": str(e)},
            )
            return result
        result.field_ownership = flatten_field_ownership(extract_field_ownership(planned))

        if record is not None:
            self._detect_conflicts(
                self._store, ref, record, private or PrivateState(), desired, ignore, result
            )
        return result

    def _detect_conflicts(
        self,
        store: ObjectStore,
        ref: ObjectRef,
        record: ResourceRecord,
        private: PrivateState,
        desired: dict[str, Any],
        ignore: IgnoreSet,
        result: PlanResult,
    ) -> None:
        """Compare ownership at the last apply with ownership now.

        A field counts as externally changed when a manager other than this
        tool holds it now and either held nothing at the last apply or took it
        over since.
        """
        manager = self._config.field_manager
        try:
            live = store.get(ref)
        except ApiError as e:
            logger.debug(
                "Cannot read live object for conflict detection",
                extra={"object": str(ref), "error": str(e)},
            )
            return

        observed = extract_field_ownership(live)
        sending = set(ignore.filter(extract_field_paths(desired), desired))
        baseline = private.ownership_baseline
        config_changed = record.manifest != desired or set(record.ignore_fields) != set(ignore)
        detection = ConflictDetection()

        for path, owners in sorted(flatten_field_ownership(observed).items()):
            current_owners = [o.strip() for o in owners.split(",")]
            baseline_owner = baseline.get(path)

            prev_owned = baseline_owner == manager
            now_owned = path in sending or manager in current_owners
            external_changed = manager not in current_owners and (
                baseline_owner is None or baseline_owner not in current_owners
            )

            conflict = classify_conflict(prev_owned, now_owned, config_changed, external_changed)
            if conflict == ConflictType.NONE:
                continue
            current_value, _ = get_field(live, path)
            planned_value, _ = get_field(desired, path)
            detection.add(
                conflict,
                FieldChange(
                    path=path,
                    current_value=current_value,
                    planned_value=planned_value,
                    previous_manager=baseline_owner or "",
                    current_manager=owners,
                ),
            )

        result.diagnostics.extend(detection.format_warnings())
