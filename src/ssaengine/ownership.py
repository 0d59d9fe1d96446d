"""Identity markers and field ownership tracking.

Identity: every object this tool creates carries an opaque identifier in a
bookkeeping annotation. Before touching an object again the identifier is
compared with the persisted one; a mismatch means another instance of this
tool (for example a replacement created while the old instance was still
being destroyed) now owns the object.

Ownership: the owner of every field is snapshotted at each apply and kept out
of the comparable state. Comparing that snapshot with the ownership observed
now tells "someone else took a field" apart from "the tool changed a field",
and feeds the conflict classification used when planning.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ssaengine.config import EngineConfig
from ssaengine.errors import Severity
from ssaengine.models import Diagnostic

logger = logging.getLogger(__name__)


# =============================================================================
# Identity markers
# =============================================================================


class IdentityVerdict(str, Enum):
    """Result of comparing a live object's identity marker."""

    OWNED = "owned"
    UNMARKED = "unmarked"
    FOREIGN = "foreign"


def generate_resource_id() -> str:
    """Return a random 12 character hex identifier."""
    return secrets.token_hex(6)


def stamp_identity(
    obj: dict[str, Any], resource_id: str, created_at: str, config: EngineConfig
) -> dict[str, Any]:
    """Return a copy of ``obj`` carrying the bookkeeping annotations."""
    stamped = dict(obj)
    metadata = dict(stamped.get("metadata") or {})
    annotations = dict(metadata.get("annotations") or {})
    annotations[config.identity_annotation] = resource_id
    if created_at:
        annotations[config.created_at_annotation] = created_at
    metadata["annotations"] = annotations
    stamped["metadata"] = metadata
    return stamped


def _annotation(obj: dict[str, Any], key: str) -> str:
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    return str(annotations.get(key) or "")


def read_identity(obj: dict[str, Any], config: EngineConfig) -> str:
    """Return the identity marker of an object, or "" when unmarked."""
    return _annotation(obj, config.identity_annotation)


def read_created_at(obj: dict[str, Any], config: EngineConfig) -> str:
    return _annotation(obj, config.created_at_annotation)


def verify_identity(live: dict[str, Any], expected: str, config: EngineConfig) -> IdentityVerdict:
    """Compare the live identity marker with the persisted one."""
    actual = read_identity(live, config)
    if not actual:
        return IdentityVerdict.UNMARKED
    if actual != expected:
        return IdentityVerdict.FOREIGN
    return IdentityVerdict.OWNED


# =============================================================================
# Ownership transitions
# =============================================================================


def _owners(value: str | None) -> list[str]:
    if not value:
        return []
    return [owner.strip() for owner in value.split(",") if owner.strip()]


@dataclass(frozen=True)
class OwnershipTransition:
    """A field whose owner changed since the last apply."""

    path: str
    previous_owner: str
    current_owner: str


def detect_transitions(
    baseline: dict[str, str],
    observed: dict[str, str],
    paths: list[str] | tuple[str, ...],
    manager: str,
) -> list[OwnershipTransition]:
    """Find tracked paths whose ownership moved away from or back to ``manager``.

    Args:
        baseline: Path to owner at the last apply.
        observed: Path to owners (comma separated) as observed now.
        paths: Paths to consider, normally the projection's paths.
        manager: This tool's field manager.

    Returns:
        Transitions sorted by path.
    """
    transitions: list[OwnershipTransition] = []
    for path in sorted(set(paths)):
        if path not in baseline or path not in observed:
            continue
        was_owned = baseline[path] == manager
        is_owned = manager in _owners(observed[path])
        if was_owned != is_owned:
            transitions.append(OwnershipTransition(path, baseline[path], observed[path]))
    return transitions


def format_transition_warning(
    transitions: list[OwnershipTransition], resource_desc: str, manager: str
) -> Diagnostic:
    """Render transitions as one resource-level warning."""
    lines = [
        f"  - {t.path}: {t.previous_owner} -> {t.current_owner}" for t in transitions
    ]
    taken = any(t.previous_owner == manager for t in transitions)
    if taken:
        advice = (
            "The next apply reclaims these fields with force. To let the other "
            "manager keep them, add them to the ignore fields."
        )
    else:
        advice = "These fields are managed by this tool again."
    return Diagnostic(
        Severity.WARNING,
        "Field Ownership Changed",
        f"Field ownership of {resource_desc} changed since the last apply:\n\n"
        + "\n".join(lines)
        + f"\n\n{advice}",
    )


# =============================================================================
# Conflict classification
# =============================================================================


class ConflictType(str, Enum):
    """Ownership conflict categories."""

    NONE = "none"
    # Claiming a field an active external controller manages
    TAKING = "taking"
    # Reverting an external change to a field the tool owned
    DRIFT = "drift"
    # Changing a field the tool owns while an external writer also changed it
    UPDATE = "update"


def classify_conflict(
    prev_owned: bool, now_owned: bool, config_changed: bool, external_changed: bool
) -> ConflictType:
    """Classify one field from four facts.

    Args:
        prev_owned: The tool owned the field at the last apply.
        now_owned: The tool will own the field after this apply.
        config_changed: The desired value or ignore fields changed.
        external_changed: Another writer changed the live value.

    Returns:
        The conflict category; every combination not listed below is NONE.

        ========== ========= ============== ================ ======
        prev_owned now_owned config_changed external_changed result
        ========== ========= ============== ================ ======
        True       False     False          True             DRIFT
        False      True      True           True             TAKING
        True       True      False          True             DRIFT
        True       True      True           True             UPDATE
        ========== ========= ============== ================ ======
    """
    # The other writer holds the field right now; the apply takes it back
    if prev_owned and not now_owned and not config_changed and external_changed:
        return ConflictType.DRIFT

    if not external_changed or not now_owned:
        return ConflictType.NONE

    if not prev_owned and config_changed:
        return ConflictType.TAKING
    if prev_owned and not config_changed:
        return ConflictType.DRIFT
    if prev_owned and config_changed:
        return ConflictType.UPDATE
    return ConflictType.NONE


@dataclass(frozen=True)
class FieldChange:
    """A field involved in an ownership conflict."""

    path: str
    current_value: Any = None
    planned_value: Any = None
    previous_manager: str = ""
    current_manager: str = ""


def _format_value(value: Any) -> str:
    if value is None:
        return "(none)"
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)


@dataclass
class ConflictDetection:
    """Collects conflicting fields and renders one warning per category."""

    taking: list[FieldChange] = field(default_factory=list)
    drift: list[FieldChange] = field(default_factory=list)
    update: list[FieldChange] = field(default_factory=list)

    def add(self, conflict: ConflictType, change: FieldChange) -> None:
        if conflict == ConflictType.TAKING:
            self.taking.append(change)
        elif conflict == ConflictType.DRIFT:
            self.drift.append(change)
        elif conflict == ConflictType.UPDATE:
            self.update.append(change)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.taking or self.drift or self.update)

    def format_warnings(self) -> list[Diagnostic]:
        """Render warnings, drift first, then taking, then update."""
        warnings: list[Diagnostic] = []

        if self.drift:
            lines = "\n".join(
                f"  - {c.path}: {_format_value(c.current_value)} -> "
                f"{_format_value(c.planned_value)} (modified by: {c.current_manager})"
                for c in self.drift
            )
            warnings.append(
                Diagnostic(
                    Severity.WARNING,
                    "Drift Detected - Reverting External Changes",
                    "The following fields were modified externally and will be reverted "
                    f"to your configuration:\n\n{lines}\n\n"
                    "To allow external management of these fields, add them to the ignore "
                    "fields.",
                )
            )

        if self.taking:
            lines = "\n".join(
                f"  - {c.path} (managed by: {c.current_manager})" for c in self.taking
            )
            warnings.append(
                Diagnostic(
                    Severity.WARNING,
                    "Ownership Conflict - Taking Field from Active Controller",
                    "Removed from the ignore fields, but external controllers are actively "
                    f"managing:\n\n{lines}\n\n"
                    "These controllers will keep trying to manage the fields, causing "
                    "persistent drift. Consider adding them back to the ignore fields.",
                )
            )

        if self.update:
            lines = "\n".join(
                f"  - {c.path}: your value: {_format_value(c.planned_value)}, external value: "
                f"{_format_value(c.current_value)} (managed by: {c.current_manager})"
                for c in self.update
            )
            warnings.append(
                Diagnostic(
                    Severity.WARNING,
                    "Ownership Conflict - Overwriting Concurrent External Changes",
                    "The desired document changed, but external controllers also modified "
                    f"these fields:\n\n{lines}\n\n"
                    "Your configuration will be applied, overwriting the external changes.",
                )
            )

        return warnings
