"""Parsing of server-side apply field ownership metadata.

Every live object carries ``metadata.managedFields``: one entry per field
manager, each holding a FieldsV1 tree such as::

    {"f:data": {"f:a": {}, "f:b": {}},
     "f:spec": {"f:containers": {"k:{\"name\":\"app\"}": {".": {}, "f:image": {}}}}}

``f:`` keys name map fields, ``k:{json}`` keys name list items by merge key and
``.`` marks the enclosing field itself. This module turns those trees into the
dotted paths used everywhere else, resolving list items to positional
selectors against a reference document.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from ssaengine.paths import display_value, matches_pattern

logger = logging.getLogger(__name__)

# Annotations written by Kubernetes itself; never interesting to the user
SYSTEM_ANNOTATION_PREFIXES = (
    "kubectl.kubernetes.io/",
    "deployment.kubernetes.io/",
    "control-plane.alpha.kubernetes.io/",
    "pv.kubernetes.io/",
    "volume.kubernetes.io/",
    "volume.beta.kubernetes.io/",
    "autoscaling.alpha.kubernetes.io/",
)


@dataclass(frozen=True)
class ManagedFieldsEntry:
    """One item of ``metadata.managedFields``."""

    manager: str
    operation: str = ""
    api_version: str = ""
    fields_type: str = "FieldsV1"
    fields_v1: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManagedFieldsEntry:
        """Parse an entry as returned by the API server.

        The ``fieldsV1`` member may arrive as a decoded mapping or, from some
        clients, as a JSON string.
        """
        raw = data.get("fieldsV1") or {}
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError:
                logger.debug(
                    "Skipping unparseable fieldsV1",
                    extra={"manager": data.get("manager", "")},
                )
                raw = {}
        if not isinstance(raw, dict):
            raw = {}

        return cls(
            manager=str(data.get("manager", "")),
            operation=str(data.get("operation", "")),
            api_version=str(data.get("apiVersion", "")),
            fields_type=str(data.get("fieldsType", "FieldsV1")),
            fields_v1=raw,
        )


def managed_fields_entries(obj: dict[str, Any]) -> list[ManagedFieldsEntry]:
    """Return the parsed managedFields entries of a live object."""
    raw_entries = (obj.get("metadata") or {}).get("managedFields") or []
    return [ManagedFieldsEntry.from_dict(e) for e in raw_entries if isinstance(e, dict)]


def parse_merge_key(key: str) -> dict[str, Any] | None:
    """Decode the JSON object of a ``k:`` key, or None when malformed."""
    if not key.startswith("k:"):
        return None
    try:
        merge_key = json.loads(key[2:])
    except ValueError:
        return None
    return merge_key if isinstance(merge_key, dict) else None


def find_merge_key_index(items: list[Any], merge_key: dict[str, Any]) -> int:
    """Find the list item identified by a merge key.

    An item matches when every merge key field it carries has the same value
    and it carries at least one of them. Documents written by users routinely
    omit defaulted key fields such as ``protocol`` on ports, so requiring all
    of them would never match.
    """
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        verifiable = [k for k in merge_key if k in item]
        if verifiable and all(
            display_value(item[k]) == display_value(merge_key[k]) for k in verifiable
        ):
            return i
    return -1


def merge_fields_v1(dest: dict[str, Any], source: dict[str, Any]) -> None:
    """Merge one FieldsV1 tree into another in place."""
    for key, value in source.items():
        existing = dest.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merge_fields_v1(existing, value)
        else:
            dest[key] = json.loads(json.dumps(value))


def fields_v1_paths(fields: dict[str, Any], reference: Any, prefix: str = "") -> list[str]:
    """List every path named by a FieldsV1 tree.

    A field with a ``.`` marker is listed itself and its children are listed
    as well, so the result describes ownership at every level.

    Args:
        fields: FieldsV1 tree.
        reference: Document used to resolve ``k:`` keys to list positions.
        prefix: Path of ``fields`` within the document.

    Returns:
        Paths in tree order. List items that cannot be found in ``reference``
        are omitted.
    """
    paths: list[str] = []

    for key, value in fields.items():
        if key.startswith("f:"):
            name = key[2:]
            current = f"{prefix}.{name}" if prefix else name
            child = reference.get(name) if isinstance(reference, dict) else None
            if isinstance(value, dict) and value:
                if "." in value:
                    paths.append(current)
                paths.extend(fields_v1_paths(value, child, current))
            else:
                paths.append(current)

        elif key.startswith("k:"):
            merge_key = parse_merge_key(key)
            if merge_key is None or not isinstance(reference, list):
                continue
            index = find_merge_key_index(reference, merge_key)
            if index < 0:
                continue
            item_path = f"{prefix}[{index}]"
            if isinstance(value, dict):
                if "." in value:
                    paths.append(item_path)
                paths.extend(fields_v1_paths(value, reference[index], item_path))

    return paths


def extract_field_ownership(obj: dict[str, Any]) -> dict[str, list[str]]:
    """Map every managed path of a live object to the managers that own it.

    Several managers may share a path when they applied the same value.
    """
    ownership: dict[str, list[str]] = {}
    for entry in managed_fields_entries(obj):
        for path in fields_v1_paths(entry.fields_v1, obj):
            managers = ownership.setdefault(path, [])
            if entry.manager not in managers:
                managers.append(entry.manager)
    return ownership


def _is_reported(path: str) -> bool:
    if path == "status" or path.startswith(("status.", "status[")):
        return False
    if path.startswith("metadata.annotations."):
        key = path[len("metadata.annotations.") :]
        return not key.startswith(SYSTEM_ANNOTATION_PREFIXES)
    return True


def flatten_field_ownership(ownership: dict[str, list[str]]) -> dict[str, str]:
    """Render an ownership map for display and persistence.

    Status fields and annotations maintained by Kubernetes components are
    dropped; co-owners are joined with ", ".
    """
    return {
        path: ", ".join(managers)
        for path, managers in sorted(ownership.items())
        if managers and _is_reported(path)
    }


def ownership_baseline(
    obj: dict[str, Any], ignore: list[str] | tuple[str, ...] = ()
) -> dict[str, str]:
    """Snapshot the owner of every path right after an apply.

    When a path is shared, the first manager listed by the server is kept.
    Paths covered by ``ignore`` are left out.
    """
    baseline: dict[str, str] = {}
    for path, managers in sorted(extract_field_ownership(obj).items()):
        if not managers or not _is_reported(path):
            continue
        if any(matches_pattern(path, pattern, obj) for pattern in ignore):
            continue
        baseline[path] = managers[0]
    return baseline
