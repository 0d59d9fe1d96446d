"""Persisted records and diagnostics.

A managed object is persisted as two records:

- :class:`ResourceRecord` is the comparable state. The caller diffs it between
  runs; its ``projection`` is what drift detection looks at.
- :class:`PrivateState` is the side channel: the ownership snapshot taken at
  the last apply and the recovery flags. It is stored next to the record but
  never takes part in comparisons, so changes to it never read as drift.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from ssaengine.config import ConfigurationError, parse_duration
from ssaengine.errors import Classification, Severity

logger = logging.getLogger(__name__)

STATE_FILE_VERSION = 1


class StateFileError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


# =============================================================================
# Diagnostics
# =============================================================================


@dataclass(frozen=True)
class Diagnostic:
    """A message for the caller to render."""

    severity: Severity
    title: str
    detail: str = ""

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def __str__(self) -> str:
        text = f"{self.severity.value.upper()}: {self.title}"
        if self.detail:
            text += f"\n{self.detail}"
        return text


class Diagnostics:
    """Ordered collection of diagnostics produced by one operation."""

    def __init__(self, items: list[Diagnostic] | None = None) -> None:
        self._items: list[Diagnostic] = list(items or [])

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> Diagnostic:
        return self._items[index]

    def __repr__(self) -> str:
        return f"Diagnostics({self._items!r})"

    def add(self, diagnostic: Diagnostic) -> None:
        self._items.append(diagnostic)

    def add_error(self, title: str, detail: str = "") -> None:
        self._items.append(Diagnostic(Severity.ERROR, title, detail))

    def add_warning(self, title: str, detail: str = "") -> None:
        self._items.append(Diagnostic(Severity.WARNING, title, detail))

    def add_classified(self, classification: Classification) -> None:
        self._items.append(
            Diagnostic(classification.severity, classification.title, classification.detail)
        )

    def extend(self, diagnostics: Diagnostics | list[Diagnostic]) -> None:
        self._items.extend(diagnostics)

    @property
    def has_error(self) -> bool:
        return any(d.is_error for d in self._items)

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self._items if d.is_error]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self._items if not d.is_error]

    def titles(self) -> list[str]:
        return [d.title for d in self._items]


# =============================================================================
# Caller options
# =============================================================================


class ResourceOptions(BaseModel):
    """Per-object settings supplied by the caller."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    ignore_fields: list[str] = Field(default_factory=list, alias="ignoreFields")
    delete_protection: bool = Field(False, alias="deleteProtection")
    force_destroy: bool = Field(False, alias="forceDestroy")
    # Go-style duration, e.g. "10m"; None selects the per-kind default
    delete_timeout: str | None = Field(None, alias="deleteTimeout")

    @field_validator("delete_timeout")
    @classmethod
    def validate_delete_timeout(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            parse_duration(v)
        except ConfigurationError as e:
            raise ValueError(str(e)) from e
        return v


# =============================================================================
# Persisted state
# =============================================================================


class ResourceRecord(BaseModel):
    """Comparable state of one managed object."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    manifest: dict[str, Any] = Field(alias="object")
    ignore_fields: list[str] = Field(default_factory=list, alias="ignoreFields")
    delete_protection: bool = Field(False, alias="deleteProtection")
    force_destroy: bool = Field(False, alias="forceDestroy")
    delete_timeout: str | None = Field(None, alias="deleteTimeout")
    created_at: str = Field("", alias="createdAt")
    projection: dict[str, str] = Field(default_factory=dict)
    field_ownership: dict[str, str] = Field(default_factory=dict, alias="fieldOwnership")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v:
            raise ValueError("id must not be empty")
        return v

    @property
    def options(self) -> ResourceOptions:
        return ResourceOptions(
            ignore_fields=list(self.ignore_fields),
            delete_protection=self.delete_protection,
            force_destroy=self.force_destroy,
            delete_timeout=self.delete_timeout,
        )


class PrivateState(BaseModel):
    """Side channel stored next to a record but excluded from comparisons."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    # Owner of every path right after the last Create/Update; Read never
    # refreshes it
    ownership_baseline: dict[str, str] = Field(default_factory=dict, alias="ownershipBaseline")
    # Apply succeeded but the projection could not be computed
    pending_projection: bool = Field(False, alias="pendingProjection")
    # Imported objects carry no identity marker until the next Update
    imported_without_annotations: bool = Field(False, alias="importedWithoutAnnotations")


class StateEntry(BaseModel):
    """One object in the state file."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    record: ResourceRecord
    private: PrivateState = Field(default_factory=PrivateState)


class StateFile(BaseModel):
    """JSON state file used by the command line interface."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    version: int = STATE_FILE_VERSION
    entries: dict[str, StateEntry] = Field(default_factory=dict)

    @classmethod
    def load(cls, path: str) -> StateFile:
        """Load a state file; a missing file yields an empty state.

        Raises:
            StateFileError: If the file cannot be read or is invalid.
        """
        if not os.path.exists(path):
            return cls()
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StateFileError(f"Cannot read state file {path}: {e}") from e

        try:
            state = cls.model_validate(data)
        except ValidationError as e:
            raise StateFileError(f"Invalid state file {path}: {e}") from e

        if state.version != STATE_FILE_VERSION:
            raise StateFileError(
                f"Unsupported state file version {state.version} in {path}, "
                f"expected {STATE_FILE_VERSION}"
            )
        return state

    def save(self, path: str) -> None:
        """Write the state file atomically.

        Raises:
            StateFileError: If the file cannot be written.
        """
        directory = os.path.dirname(os.path.abspath(path))
        content = self.model_dump_json(by_alias=True, indent=2)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".ssaengine-state-")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.write("\n")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StateFileError(f"Cannot write state file {path}: {e}") from e

        logger.debug("Saved state file", extra={"path": path, "entries": len(self.entries)})
