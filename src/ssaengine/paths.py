"""Field path language.

Paths address fields inside an object document:

- ``spec.replicas``: dotted map traversal
- ``spec.template.spec.containers[0].image``: positional array selector
- ``spec.template.spec.containers[name=nginx].image``: keyed array selector
- ``spec.ports[]``: the whole array

Ignore patterns may additionally use JSONPath predicates such as
``containers[?(@.name=='nginx')].image``; those are resolved to positional
selectors against a concrete document before matching.

Array handling when listing the paths of a document is deliberately
conservative: only arrays whose strategic merge key is certain are tracked
per item, a couple of well-known scalar arrays are tracked by position, and
every other array is tracked as a single value.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

# Arrays whose strategic merge key is known with certainty
STRATEGIC_MERGE_KEYS: dict[str, str] = {
    "containers": "name",
    "initContainers": "name",
    "volumes": "name",
    "env": "name",
    "volumeMounts": "name",
}

# Arrays whose order is significant
POSITIONAL_ARRAYS = frozenset({"args", "command"})

_PREDICATE_PATTERN = re.compile(r"""\[\?\(@\.([^=]+)==['"]([^'"]+)['"]\)\]""")


class PathError(Exception):
    """Raised when a path cannot be traversed or written."""

    pass


class SelectorType(str, Enum):
    """Kinds of array selector."""

    EMPTY = "empty"
    POSITIONAL = "positional"
    KEYED = "keyed"


@dataclass(frozen=True)
class ArraySelector:
    """Selects an element (or the whole) of an array."""

    type: SelectorType
    index: int = -1
    key_field: str = ""
    key_value: str = ""

    @classmethod
    def parse(cls, text: str) -> ArraySelector:
        """Parse the text between brackets: "", "0" or "name=nginx"."""
        if not text:
            return cls(SelectorType.EMPTY)
        if "=" in text:
            key_field, key_value = text.split("=", 1)
            return cls(SelectorType.KEYED, key_field=key_field, key_value=key_value)
        try:
            return cls(SelectorType.POSITIONAL, index=int(text))
        except ValueError:
            return cls(SelectorType.EMPTY)

    def find(self, array: list[Any]) -> tuple[Any, int, bool]:
        """Locate the selected element.

        Returns:
            Tuple of (element, index, found). The EMPTY selector returns the
            whole array with index -1.
        """
        if self.type == SelectorType.EMPTY:
            return array, -1, True
        if self.type == SelectorType.POSITIONAL:
            if 0 <= self.index < len(array):
                return array[self.index], self.index, True
            return None, -1, False
        for i, item in enumerate(array):
            if isinstance(item, dict) and display_value(item.get(self.key_field)) == self.key_value:
                return item, i, True
        return None, -1, False

    def matches(self, other: ArraySelector) -> bool:
        if self.type != other.type:
            return False
        if self.type == SelectorType.POSITIONAL:
            return self.index == other.index
        if self.type == SelectorType.KEYED:
            return self.key_field == other.key_field and self.key_value == other.key_value
        return True


@dataclass(frozen=True)
class PathSegment:
    """One dot-separated part of a path."""

    field: str
    selector: ArraySelector | None = None

    def matches(self, pattern: PathSegment) -> bool:
        """Check whether this path segment is covered by a pattern segment.

        A pattern segment without a selector covers every selector.
        """
        if self.field != pattern.field:
            return False
        if pattern.selector is None:
            return True
        if self.selector is None:
            return False
        return self.selector.matches(pattern.selector)


def display_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _split(path: str) -> list[str]:
    """Split on dots that are not inside brackets."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in path:
        if char == "[":
            depth += 1
        elif char == "]":
            depth = max(depth - 1, 0)
        if char == "." and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts


def parse_path(path: str) -> list[PathSegment]:
    """Convert "spec.containers[name=nginx].image" into segments."""
    segments: list[PathSegment] = []
    for part in _split(path):
        bracket = part.find("[")
        if bracket >= 0 and part.endswith("]"):
            segments.append(
                PathSegment(part[:bracket], ArraySelector.parse(part[bracket + 1 : -1]))
            )
        else:
            segments.append(PathSegment(part))
    return segments


def _map_key(mapping: dict[str, Any], segments: list[PathSegment], start: int) -> tuple[str, int]:
    """Find the map key addressed by ``segments[start:]``.

    Map keys such as ``app.kubernetes.io/name`` contain dots, so when the
    single segment is not a key, progressively longer dot-joined runs of
    selector-free segments are tried.

    Returns:
        Tuple of (key, index of the last segment consumed). The key is empty
        when nothing matches.
    """
    first = segments[start]
    if first.field in mapping or first.selector is not None:
        return (first.field, start) if first.field in mapping else ("", start)

    joined = first.field
    for end in range(start + 1, len(segments)):
        joined = f"{joined}.{segments[end].field}"
        if joined in mapping:
            return joined, end
        if segments[end].selector is not None:
            break
    return "", start


def get_field(obj: dict[str, Any], path: str) -> tuple[Any, bool]:
    """Read a value by path.

    Returns:
        Tuple of (value, found).
    """
    segments = parse_path(path)
    current: Any = obj
    i = 0

    while i < len(segments):
        if not isinstance(current, dict):
            return None, False
        key, i = _map_key(current, segments, i)
        if not key:
            return None, False
        value = current[key]
        segment = segments[i]
        last = i == len(segments) - 1

        if segment.selector is None:
            if last:
                return value, True
        else:
            if not isinstance(value, list):
                return None, False
            element, _, found = segment.selector.find(value)
            if not found:
                return None, False
            if last or segment.selector.type == SelectorType.EMPTY:
                return element, True
            value = element

        current = value
        i += 1

    return None, False


def _navigate_resolved(obj: dict[str, Any], path: str) -> tuple[Any, bool]:
    """Walk a path that only contains positional selectors."""
    if not path:
        return obj, True
    current: Any = obj
    for segment in parse_path(path):
        if segment.field:
            if not isinstance(current, dict) or segment.field not in current:
                return None, False
            current = current[segment.field]
        if segment.selector is not None:
            if segment.selector.type != SelectorType.POSITIONAL or not isinstance(current, list):
                return None, False
            element, _, found = segment.selector.find(current)
            if not found:
                return None, False
            current = element
    return current, True


def resolve_predicates(pattern: str, obj: dict[str, Any]) -> str:
    """Replace JSONPath predicates with positional selectors.

    Predicates are resolved left to right against ``obj``. Resolution stops at
    the first predicate that cannot be resolved, leaving it verbatim so the
    pattern cannot accidentally match anything.

    Example:
        ``containers[?(@.name=='nginx')].image`` -> ``containers[0].image``
    """
    result = pattern
    while True:
        match = _PREDICATE_PATTERN.search(result)
        if match is None:
            return result

        key_field, key_value = match.group(1), match.group(2)
        array, found = _navigate_resolved(obj, result[: match.start()])
        if not found or not isinstance(array, list):
            return result

        index = next(
            (
                i
                for i, item in enumerate(array)
                if isinstance(item, dict)
                and key_field in item
                and display_value(item[key_field]) == key_value
            ),
            -1,
        )
        if index < 0:
            return result

        result = f"{result[: match.start()]}[{index}]{result[match.end():]}"


def _positional(segments: list[PathSegment], obj: dict[str, Any]) -> list[PathSegment]:
    """Rewrite keyed selectors as positional ones where ``obj`` resolves them.

    Ownership metadata addresses list items by position while documents
    address them by merge key; comparing the two needs a common form.
    """
    result = list(segments)
    current: Any = obj
    i = 0
    while i < len(result) and isinstance(current, dict):
        key, end = _map_key(current, result, i)
        if not key:
            break
        value = current[key]
        selector = result[end].selector
        if selector is None:
            current = value
        elif isinstance(value, list) and selector.type != SelectorType.EMPTY:
            element, index, found = selector.find(value)
            if not found:
                break
            if selector.type == SelectorType.KEYED:
                result[end] = PathSegment(
                    result[end].field, ArraySelector(SelectorType.POSITIONAL, index=index)
                )
            current = element
        else:
            break
        i = end + 1
    return result


def matches_pattern(path: str, pattern: str, obj: dict[str, Any] | None = None) -> bool:
    """Check whether a path is covered by a pattern.

    A pattern covers every path it is a prefix of, so ignoring ``spec`` also
    ignores ``spec.replicas``.
    """
    path_segments = parse_path(path)
    if obj is None:
        pattern_segments = parse_path(pattern)
    else:
        path_segments = _positional(path_segments, obj)
        pattern_segments = _positional(parse_path(resolve_predicates(pattern, obj)), obj)
    if len(pattern_segments) > len(path_segments):
        return False
    return all(
        path_segment.matches(pattern_segment)
        for path_segment, pattern_segment in zip(path_segments, pattern_segments)
    )


def extract_field_paths(obj: dict[str, Any], prefix: str = "") -> list[str]:
    """List the leaf paths of a document.

    When in doubt an array is tracked as one value rather than per item.
    """
    paths: list[str] = []

    for key, value in obj.items():
        current = f"{prefix}.{key}" if prefix else key

        if isinstance(value, dict):
            paths.extend(extract_field_paths(value, current))
        elif isinstance(value, list):
            paths.extend(_array_paths(key, value, current))
        else:
            paths.append(current)

    return paths


def _array_paths(key: str, items: list[Any], current: str) -> list[str]:
    merge_key = STRATEGIC_MERGE_KEYS.get(key)
    if merge_key:
        keyed: list[str] = []
        for item in items:
            if not isinstance(item, dict) or item.get(merge_key) in (None, ""):
                # Missing merge key: fall back to tracking the whole array
                return [current]
            keyed.extend(
                extract_field_paths(
                    item, f"{current}[{merge_key}={display_value(item[merge_key])}]"
                )
            )
        return keyed

    if key in POSITIONAL_ARRAYS:
        positional: list[str] = []
        for i, item in enumerate(items):
            item_path = f"{current}[{i}]"
            if isinstance(item, dict):
                positional.extend(extract_field_paths(item, item_path))
            else:
                positional.append(item_path)
        return positional

    return [current]


def remove_fields(obj: dict[str, Any], patterns: list[str] | tuple[str, ...]) -> dict[str, Any]:
    """Return a copy of ``obj`` with the fields named by ``patterns`` removed.

    Maps left empty by a removal are removed as well; an empty map in an apply
    body would otherwise claim ownership of the parent.
    """
    result = copy.deepcopy(obj)
    for pattern in patterns:
        _remove(result, parse_path(resolve_predicates(pattern, result)), 0)
    return result


def _remove(obj: dict[str, Any], segments: list[PathSegment], depth: int) -> None:
    if depth >= len(segments):
        return

    key, depth = _map_key(obj, segments, depth)
    if not key:
        return
    segment = segments[depth]
    last = depth == len(segments) - 1

    if segment.selector is not None:
        array = obj[key]
        if not isinstance(array, list):
            return
        if segment.selector.type == SelectorType.EMPTY:
            if last:
                del obj[key]
            return
        element, index, found = segment.selector.find(array)
        if not found:
            return
        if last:
            del array[index]
        elif isinstance(element, dict):
            _remove(element, segments, depth + 1)
        return

    if last:
        del obj[key]
        return

    nested = obj[key]
    if isinstance(nested, dict):
        _remove(nested, segments, depth + 1)
        if not nested:
            del obj[key]
