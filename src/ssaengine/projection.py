"""Projection of the fields a manager owns.

The projection is the flat ``{path: value}`` view of a live object that the
caller persists and diffs between runs. It only covers fields this tool is
responsible for, so changes other controllers make to their own fields never
show up as drift.

Computing it is pure: no API calls, sorted keys and canonical value encoding,
so recomputing from the same input is byte-identical. Any change in the
encoded form would be reported as drift by the caller.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from ssaengine.config import DEFAULT_ANNOTATION_PREFIX
from ssaengine.managed_fields import (
    find_merge_key_index,
    managed_fields_entries,
    merge_fields_v1,
    parse_merge_key,
)
from ssaengine.paths import extract_field_paths, get_field, matches_pattern

logger = logging.getLogger(__name__)

# Identity fields are projected even when the server does not list them
CORE_FIELDS = ("apiVersion", "kind", "metadata.name", "metadata.namespace")

DEFAULT_BOOKKEEPING_PATH_PREFIX = f"metadata.annotations.{DEFAULT_ANNOTATION_PREFIX}/"


class ProjectionError(Exception):
    """Raised when a projection cannot be computed from a live object."""

    pass


def _walk_owned(fields: dict[str, Any], prefix: str, reference: Any, paths: list[str]) -> None:
    """Collect leaf paths of a merged FieldsV1 tree that exist in ``reference``."""
    if reference is None:
        return

    for key, value in fields.items():
        if key.startswith("f:"):
            name = key[2:]
            current = f"{prefix}.{name}" if prefix else name
            if isinstance(value, dict) and value and set(value) != {"."}:
                child = reference.get(name) if isinstance(reference, dict) else None
                _walk_owned(value, current, child, paths)
            else:
                paths.append(current)

        elif key.startswith("k:"):
            merge_key = parse_merge_key(key)
            if merge_key is None or not isinstance(reference, list):
                continue
            index = find_merge_key_index(reference, merge_key)
            if index >= 0 and isinstance(value, dict):
                _walk_owned(value, f"{prefix}[{index}]", reference[index], paths)


def _is_leaf(path: str, candidates: Iterable[str]) -> bool:
    return not any(other.startswith((f"{path}.", f"{path}[")) for other in candidates)


def owned_paths(
    live: dict[str, Any],
    desired: dict[str, Any],
    manager: str,
    baseline: dict[str, str] | None = None,
) -> list[str]:
    """Determine which paths of ``desired`` belong to ``manager``.

    Args:
        live: Live object including ``metadata.managedFields``.
        desired: Desired document; list items are resolved against it.
        manager: Field manager name.
        baseline: Ownership recorded at the last apply. Paths it attributes to
            ``manager`` stay in the projection while they remain in
            ``desired``, even if another writer has since taken them.

    Returns:
        De-duplicated paths in discovery order.
    """
    merged: dict[str, Any] = {}
    for entry in managed_fields_entries(live):
        if entry.manager == manager:
            merge_fields_v1(merged, entry.fields_v1)

    paths: list[str] = []
    if merged:
        _walk_owned(merged, "", desired, paths)
    else:
        logger.debug(
            "No managed fields for manager, using desired document paths",
            extra={"manager": manager},
        )
        paths = extract_field_paths(desired)

    result: list[str] = []
    seen: set[str] = set()
    for path in [*paths, *CORE_FIELDS]:
        if path not in seen:
            seen.add(path)
            result.append(path)

    if baseline:
        previously_owned = [path for path, owner in baseline.items() if owner == manager]
        for path in sorted(previously_owned):
            if path in seen or not _is_leaf(path, previously_owned):
                continue
            _, exists = get_field(desired, path)
            if exists:
                seen.add(path)
                result.append(path)

    return result


def canonical_value(value: Any) -> str:
    """Encode a value for comparison.

    Strings are kept verbatim; everything else is compact JSON with sorted
    keys so maps and numbers always encode the same way.
    """
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def compute_projection(
    live: dict[str, Any],
    paths: Iterable[str],
    ignore: Iterable[str] = (),
    desired: dict[str, Any] | None = None,
    bookkeeping_prefix: str = DEFAULT_BOOKKEEPING_PATH_PREFIX,
) -> dict[str, str]:
    """Project ``paths`` out of a live object.

    Args:
        live: Live object to read values from.
        paths: Paths to project, usually from :func:`owned_paths`.
        ignore: Ignore patterns; matching paths are left out.
        desired: Document ignore predicates are resolved against. Defaults to
            ``live``.
        bookkeeping_prefix: Path prefix of the bookkeeping annotations,
            which are never projected.

    Returns:
        Key-sorted map of path to canonical value. Paths missing from the
        live object are omitted.

    Raises:
        ProjectionError: If the object or a path cannot be traversed.
    """
    if not isinstance(live, dict):
        raise ProjectionError(f"live object must be a mapping, got {type(live).__name__}")

    reference = desired if desired is not None else live
    patterns = list(ignore)
    projection: dict[str, str] = {}

    for path in paths:
        if not path or path.count("[") != path.count("]"):
            raise ProjectionError(f"malformed path {path!r}")
        if path.startswith(bookkeeping_prefix):
            continue
        if any(matches_pattern(path, pattern, reference) for pattern in patterns):
            continue

        value, found = get_field(live, path)
        if not found:
            continue
        try:
            projection[path] = canonical_value(value)
        except (TypeError, ValueError) as e:
            raise ProjectionError(f"cannot encode value at {path}: {e}") from e

    return dict(sorted(projection.items()))
