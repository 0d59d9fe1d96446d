"""Ignore fields for ownership and drift detection.

An ignored field is one this tool must never claim: it is stripped from every
apply body, so another controller (an autoscaler, a mutating webhook) can own
it without a tug of war, and it never appears in the projection.

Patterns use the path language from :mod:`ssaengine.paths`::

    ignoreFields:
      - spec.replicas
      - spec.template.spec.containers[name=app].resources
      - "spec.template.spec.containers[?(@.name=='sidecar')].image"

The bookkeeping annotations that carry the identity marker can never be
ignored; without them ownership verification would break.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

import yaml

from ssaengine.config import DEFAULT_ANNOTATION_PREFIX
from ssaengine.paths import matches_pattern, remove_fields

logger = logging.getLogger(__name__)


class IgnoreFieldsError(Exception):
    """Raised when ignore fields configuration is invalid."""

    pass


def _validate_pattern(pattern: Any, annotation_prefix: str) -> str:
    if not isinstance(pattern, str):
        raise IgnoreFieldsError(f"ignore field must be a string: {pattern!r}")

    text = pattern.strip()
    if not text:
        raise IgnoreFieldsError("ignore field must not be empty")

    depth = 0
    for char in text:
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth < 0:
                break
    if depth != 0:
        raise IgnoreFieldsError(f"unbalanced brackets in ignore field: {text}")

    # Predicates may legitimately contain dots inside their brackets
    outside: list[str] = []
    depth = 0
    for char in text:
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
        elif depth == 0:
            outside.append(char)
    if any(not part for part in "".join(outside).split(".")):
        raise IgnoreFieldsError(f"empty path segment in ignore field: {text}")

    bookkeeping = f"metadata.annotations.{annotation_prefix}/"
    if text.startswith(bookkeeping) or bookkeeping.startswith(f"{text}."):
        raise IgnoreFieldsError(
            f"cannot ignore {text}: annotations under {annotation_prefix}/ are required "
            "to track resource ownership"
        )

    return text


@dataclass(frozen=True)
class IgnoreSet:
    """A validated, de-duplicated and sorted set of ignore patterns."""

    patterns: tuple[str, ...] = ()

    def __iter__(self) -> Iterator[str]:
        return iter(self.patterns)

    def __len__(self) -> int:
        return len(self.patterns)

    def __bool__(self) -> bool:
        return bool(self.patterns)

    @classmethod
    def build(
        cls,
        patterns: Iterable[str] | None,
        annotation_prefix: str = DEFAULT_ANNOTATION_PREFIX,
    ) -> IgnoreSet:
        """Validate patterns and build an IgnoreSet.

        Args:
            patterns: Ignore patterns; None means no ignore fields.
            annotation_prefix: Namespace of the bookkeeping annotations.

        Returns:
            IgnoreSet with sorted, unique patterns.

        Raises:
            IgnoreFieldsError: If a pattern is malformed or would ignore a
                bookkeeping annotation.
        """
        if patterns is None:
            return cls()
        if isinstance(patterns, str):
            raise IgnoreFieldsError("ignore fields must be a list of strings")
        validated = {_validate_pattern(p, annotation_prefix) for p in patterns}
        return cls(tuple(sorted(validated)))

    @classmethod
    def from_yaml(
        cls, yaml_content: str, annotation_prefix: str = DEFAULT_ANNOTATION_PREFIX
    ) -> IgnoreSet:
        """Parse ignore fields from YAML content.

        Expected format:
        ```yaml
        ignoreFields:
          - spec.replicas
          - metadata.annotations.example.com/last-sync
        ```

        Raises:
            IgnoreFieldsError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise IgnoreFieldsError(f"Invalid YAML in ignore fields: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise IgnoreFieldsError("Ignore fields must be a YAML object")

        raw = data.get("ignoreFields", [])
        if raw is None:
            return cls()
        if not isinstance(raw, list):
            raise IgnoreFieldsError("'ignoreFields' must be a list")

        return cls.build(raw, annotation_prefix)

    @classmethod
    def from_file(
        cls, path: str, annotation_prefix: str = DEFAULT_ANNOTATION_PREFIX
    ) -> IgnoreSet:
        """Load ignore fields from a YAML file.

        Raises:
            IgnoreFieldsError: If file cannot be read or parsed.
        """
        try:
            with open(path, encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise IgnoreFieldsError(f"Cannot read ignore fields file: {e}") from e

        return cls.from_yaml(content, annotation_prefix)

    def union(self, other: Iterable[str]) -> IgnoreSet:
        """Combine with more, already validated, patterns."""
        return IgnoreSet(tuple(sorted(set(self.patterns) | set(other))))

    def matches(self, path: str, obj: dict[str, Any] | None = None) -> bool:
        """Check whether a path is covered by any pattern.

        Args:
            path: Field path to check.
            obj: Document used to resolve predicates and keyed selectors.
        """
        return any(matches_pattern(path, pattern, obj) for pattern in self.patterns)

    def filter(self, paths: Iterable[str], obj: dict[str, Any] | None = None) -> list[str]:
        """Return the paths not covered by any pattern."""
        kept: list[str] = []
        for path in paths:
            if self.matches(path, obj):
                logger.debug("Ignoring field", extra={"path": path})
                continue
            kept.append(path)
        return kept

    def strip(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of an apply body without the ignored fields.

        Leaving a field out of the apply body releases this manager's
        ownership of it on the next apply.
        """
        return remove_fields(obj, self.patterns)
