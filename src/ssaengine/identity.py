"""Detection of changes that require replacing an object.

Kind, apiVersion, name and namespace identify an object. Applying a document
whose identity differs from the persisted one would create a second object
and orphan the first, so such changes are handled as delete plus create.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ssaengine.errors import Severity
from ssaengine.models import Diagnostic
from ssaengine.store import ObjectRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityChange:
    """A changed identity field."""

    field: str
    old_value: str
    new_value: str


def detect_identity_changes(prior: dict[str, Any], desired: dict[str, Any]) -> list[IdentityChange]:
    """Compare the identity fields of two documents.

    A missing namespace counts as the empty namespace.
    """
    old = ObjectRef.from_object(prior)
    new = ObjectRef.from_object(desired)

    changes: list[IdentityChange] = []
    for name, old_value, new_value in (
        ("kind", old.kind, new.kind),
        ("apiVersion", old.api_version, new.api_version),
        ("metadata.name", old.name, new.name),
        ("metadata.namespace", old.namespace, new.namespace),
    ):
        if old_value != new_value:
            changes.append(IdentityChange(name, old_value, new_value))

    if changes:
        logger.info(
            "Resource identity changed",
            extra={"old": str(old), "new": str(new), "fields": [c.field for c in changes]},
        )
    return changes


def format_identity_changes(
    changes: list[IdentityChange], prior: dict[str, Any], desired: dict[str, Any]
) -> Diagnostic:
    """Render identity changes as a replacement warning."""
    lines = "\n".join(f'  {c.field}: "{c.old_value}" -> "{c.new_value}"' for c in changes)
    return Diagnostic(
        Severity.WARNING,
        "Resource Identity Changed - Replacement Required",
        "The following identity fields have changed:\n"
        f"{lines}\n\n"
        "The old object will be deleted and a new one created.\n\n"
        f"Old: {ObjectRef.from_object(prior)}\n"
        f"New: {ObjectRef.from_object(desired)}",
    )
