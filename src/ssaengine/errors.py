"""Classification of object store failures.

Every failure raised by an :class:`~ssaengine.store.ObjectStore` is an
:class:`ApiError`. :func:`classify_error` maps it onto a small taxonomy
(kind, severity, title, detail) so callers can decide between "warn and keep
going", "retry" and "fail", without inspecting status codes themselves.

Severity depends on the operation that produced the failure. Credential
failures during Read degrade to warnings; every mutating operation treats
the same failure as an error. An expired token and a wrong token both
surface as 401 and are reported the same way.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Operation(str, Enum):
    """Lifecycle operations that can produce a classified failure."""

    READ = "Read"
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    IMPORT = "Import"
    PLAN = "Plan"


class Severity(str, Enum):
    """Diagnostic severity."""

    WARNING = "warning"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Failure taxonomy."""

    NOT_FOUND = "not-found"
    AUTH = "auth"
    CONFLICT = "ownership-conflict"
    TIMEOUT = "timeout"
    FIELD_VALIDATION = "schema-validation"
    CEL_VALIDATION = "cel-validation"
    IMMUTABLE_FIELD = "immutable-field"
    INVALID = "invalid"
    ALREADY_EXISTS = "already-exists"
    TYPE_NOT_REGISTERED = "type-not-registered"
    NAMESPACE_NOT_FOUND = "namespace-not-found"
    GENERIC = "generic"


RETRIABLE_KINDS = frozenset({ErrorKind.TYPE_NOT_REGISTERED, ErrorKind.NAMESPACE_NOT_FOUND})

# Operations that submit objects and can therefore race a type registration
_SUBMITTING_OPERATIONS = frozenset({Operation.CREATE, Operation.UPDATE, Operation.PLAN})

_TYPE_NOT_REGISTERED_MARKERS = ("no matches for kind", "could not find the requested resource")
_FIELD_VALIDATION_MARKERS = (
    "unknown field",
    "duplicate field",
    "strict decoding error",
    "field not declared in schema",
)
_CEL_MARKERS = ("failed rule:", "x-kubernetes-validations")
_IMMUTABLE_MARKERS = ("immutable", "forbidden", "cannot be changed", "may not be modified")

_CONFLICT_PATTERN = re.compile(r'conflict with "([^"]+)".*?: ([\.\w\[\]]+)')
_UNKNOWN_FIELD_PATTERN = re.compile(r'(unknown field|duplicate field)\s*"([^"]+)"')
_UNDECLARED_FIELD_PATTERN = re.compile(r"([\w\[\]\.]+):\s*field not declared in schema")
_CEL_RULE_PATTERN = re.compile(
    r"([a-z0-9._\[\]]+)[^\n;]*?failed rule:\s*([^:]+):\s*(.+?)(?:;|\n|$)", re.IGNORECASE
)
_IMMUTABLE_FIELD_PATTERN = re.compile(r"((?:spec|metadata|data|stringData)(?:\.[\w\[\]-]+)+)")


class ApiError(Exception):
    """A failure reported by the object store.

    Attributes:
        status: HTTP status code, or None for client-side failures such as an
            unknown kind.
        reason: Machine-readable reason ("NotFound", "Conflict", ...).
        message: Human-readable message from the API server.
    """

    def __init__(self, status: int | None, reason: str, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason
        self.message = message

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"({self.status} {self.reason}) {self.message}"

    @classmethod
    def from_exception(cls, exc: Any) -> ApiError:
        """Normalize a Kubernetes client exception.

        Works for ``kubernetes.client.ApiException`` and the dynamic client's
        ``DynamicApiError``, which both expose ``status``, ``reason`` and a
        JSON ``body`` carrying a Status object.

        Args:
            exc: Exception raised by the Kubernetes client.

        Returns:
            Equivalent ApiError.
        """
        if isinstance(exc, ApiError):
            return exc

        status = getattr(exc, "status", None)
        reason = str(getattr(exc, "reason", "") or "")
        message = ""

        body = getattr(exc, "body", None)
        if body:
            if isinstance(body, bytes):
                body = body.decode("utf-8", errors="replace")
            try:
                parsed = json.loads(body)
            except (TypeError, ValueError):
                message = str(body)
            else:
                if isinstance(parsed, dict):
                    reason = parsed.get("reason") or reason
                    message = parsed.get("message") or ""

        if not message:
            message = getattr(exc, "summary", None) or str(exc)

        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None

        return cls(status, reason, message)


class TypeNotEstablishedError(ApiError):
    """Raised when a kind stays unregistered for the whole retry schedule."""

    def __init__(self, message: str, last_error: ApiError) -> None:
        super().__init__(last_error.status, last_error.reason, message)
        self.last_error = last_error


@dataclass(frozen=True)
class Classification:
    """Result of classifying a failure."""

    kind: ErrorKind
    severity: Severity
    title: str
    detail: str

    @property
    def retriable(self) -> bool:
        """Whether the failure may resolve itself on retry."""
        return self.kind in RETRIABLE_KINDS

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR


def _message(err: BaseException) -> str:
    if isinstance(err, ApiError):
        return err.message.lower()
    return str(err).lower()


def _status(err: BaseException) -> int | None:
    return err.status if isinstance(err, ApiError) else None


def _reason(err: BaseException) -> str:
    return err.reason if isinstance(err, ApiError) else ""


def is_not_found_error(err: BaseException) -> bool:
    return _status(err) == 404


def is_type_not_registered_error(err: BaseException) -> bool:
    """Detect "kind is not (yet) served" failures."""
    message = _message(err)
    return any(marker in message for marker in _TYPE_NOT_REGISTERED_MARKERS)


def is_namespace_not_found_error(err: BaseException) -> bool:
    """Detect a missing namespace, e.g. when it is created in the same run."""
    message = _message(err)
    return "namespaces" in message and "not found" in message


def is_dependency_not_ready_error(err: BaseException) -> bool:
    return is_type_not_registered_error(err) or is_namespace_not_found_error(err)


def is_auth_error(err: BaseException) -> bool:
    return _status(err) in (401, 403)


def is_already_exists_error(err: BaseException) -> bool:
    return _status(err) == 409 and _reason(err).lower() == "alreadyexists"


def is_conflict_error(err: BaseException) -> bool:
    """Detect a server-side apply field manager conflict."""
    return _status(err) == 409 and not is_already_exists_error(err)


def is_timeout_error(err: BaseException) -> bool:
    return _status(err) == 504 or _reason(err) in ("Timeout", "ServerTimeout")


def is_field_validation_error(err: BaseException) -> bool:
    """Detect strict field validation failures (400), as opposed to 422s."""
    if _status(err) != 400:
        return False
    message = _message(err)
    return any(marker in message for marker in _FIELD_VALIDATION_MARKERS)


def is_cel_validation_error(err: BaseException) -> bool:
    if _status(err) != 422:
        return False
    message = _message(err)
    return any(marker in message for marker in _CEL_MARKERS)


def is_immutable_field_error(err: BaseException) -> bool:
    if _status(err) != 422:
        return False
    message = _message(err)
    return any(marker in message for marker in _IMMUTABLE_MARKERS)


def extract_conflict_details(err: BaseException) -> str:
    """List conflicting managers and fields from an apply conflict message."""
    text = err.message if isinstance(err, ApiError) else str(err)
    details = [
        f"  - {field_path} (managed by {manager})"
        for manager, field_path in _CONFLICT_PATTERN.findall(text)
    ]
    if not details:
        return "  (unable to parse conflict details)"
    return "\n".join(details)


def extract_field_validation_details(err: BaseException) -> str:
    """List offending fields from a strict field validation failure."""
    text = err.message if isinstance(err, ApiError) else str(err)
    if "[" in text and "]" in text:
        text = text[text.index("[") + 1 : text.rindex("]")]

    found: list[tuple[str, str]] = [
        (problem, field_path) for problem, field_path in _UNKNOWN_FIELD_PATTERN.findall(text)
    ]
    found.extend(
        ("field not declared in schema", field_path)
        for field_path in _UNDECLARED_FIELD_PATTERN.findall(text)
    )

    if not found:
        return f"Field validation failed.\n\nFull error: {text}"

    blocks = [f"Field: {field_path}\nError: {problem}" for problem, field_path in found]
    details = "\n\n".join(blocks)
    if len(found) > 1:
        details = f"Found {len(found)} field validation errors:\n" + details
    return details


def extract_cel_details(err: BaseException) -> str:
    """List failed validation rules from a CEL rejection."""
    text = err.message if isinstance(err, ApiError) else str(err)
    blocks = [
        f"Field: {field_path}\nRule: {rule.strip()}\nMessage: {message.strip()}"
        for field_path, rule, message in _CEL_RULE_PATTERN.findall(text)
    ]
    if not blocks:
        return f"Validation rule failed.\n\nFull error: {text}"
    return "\n\n".join(blocks)


def extract_immutable_fields(err: BaseException) -> list[str]:
    """Best-effort extraction of field paths named in an immutability error."""
    text = err.message if isinstance(err, ApiError) else str(err)
    fields = sorted(set(_IMMUTABLE_FIELD_PATTERN.findall(text)))
    return fields or ["(see error details)"]


def classify_error(
    err: BaseException, operation: Operation | str, resource_desc: str
) -> Classification:
    """Classify a store failure in the context of an operation.

    Args:
        err: The failure, normally an ApiError.
        operation: Operation that produced the failure.
        resource_desc: Human label for the object, e.g. "ConfigMap default/app".

    Returns:
        Classification with kind, severity, title and detail.
    """
    op = Operation(operation)
    read = op == Operation.READ

    if isinstance(err, TypeNotEstablishedError):
        if is_namespace_not_found_error(err.last_error):
            return Classification(
                ErrorKind.NAMESPACE_NOT_FOUND,
                Severity.ERROR,
                f"{op.value}: Namespace Not Found",
                err.message,
            )
        return _type_not_registered(err, op, resource_desc)

    if op in _SUBMITTING_OPERATIONS:
        if is_type_not_registered_error(err):
            return _type_not_registered(err, op, resource_desc)
        if is_namespace_not_found_error(err):
            return Classification(
                ErrorKind.NAMESPACE_NOT_FOUND,
                Severity.ERROR,
                f"{op.value}: Namespace Not Found",
                f"The namespace for {resource_desc} does not exist. If it is created in the "
                f"same run it may not be ready yet. Details: {err}",
            )

    if is_not_found_error(err):
        return Classification(
            ErrorKind.NOT_FOUND,
            Severity.WARNING,
            f"{op.value}: Resource Not Found",
            f"The {resource_desc} was not found in the cluster. "
            "It may have been deleted outside of this tool.",
        )

    if is_auth_error(err):
        if _status(err) == 401:
            return Classification(
                ErrorKind.AUTH,
                Severity.WARNING if read else Severity.ERROR,
                f"{op.value}: Authentication Failed",
                f"Authentication failed for {op.value} {resource_desc}. " + _auth_hint(read)
                + f" Details: {err}",
            )
        return Classification(
            ErrorKind.AUTH,
            Severity.WARNING if read else Severity.ERROR,
            f"{op.value}: Insufficient Permissions",
            f"RBAC permissions insufficient to {op.value.lower()} {resource_desc}. "
            + _auth_hint(read)
            + f" Details: {err}",
        )

    if is_already_exists_error(err):
        return Classification(
            ErrorKind.ALREADY_EXISTS,
            Severity.ERROR,
            f"{op.value}: Resource Already Exists",
            f"The {resource_desc} already exists in the cluster and cannot be created. "
            f"Import it to manage an existing object. Details: {err}",
        )

    if is_conflict_error(err):
        return Classification(
            ErrorKind.CONFLICT,
            Severity.ERROR,
            f"{op.value}: Field Manager Conflict",
            f"Server-side apply conflict detected for {resource_desc}.\n"
            "Another controller is managing one or more fields in this resource.\n\n"
            f"Conflicting fields:\n{extract_conflict_details(err)}\n\n"
            "To resolve this conflict do one of the following:\n"
            "1. Add the conflicting field paths to the ignore list to release ownership\n"
            "2. Remove the conflicting fields from the desired document\n"
            "3. Ensure only one controller manages these fields\n\n"
            f"Details: {err}",
        )

    if is_timeout_error(err):
        return Classification(
            ErrorKind.TIMEOUT,
            Severity.ERROR,
            f"{op.value}: Kubernetes API Timeout",
            f"Timeout while performing {op.value} on {resource_desc}. The cluster may be "
            f"under heavy load or experiencing connectivity issues. Details: {err}",
        )

    if is_field_validation_error(err):
        return Classification(
            ErrorKind.FIELD_VALIDATION,
            Severity.ERROR,
            f"{op.value}: Field Validation Failed",
            f"Field validation failed for {resource_desc}.\n\n"
            f"{extract_field_validation_details(err)}\n\n"
            "Common causes:\n"
            "- Typo in a field name (e.g. 'replica' instead of 'replicas')\n"
            "- Field does not exist in this Kubernetes version\n"
            "- Field belongs to a different resource type\n"
            "- Duplicate field in the document\n\n"
            f"Details: {err}",
        )

    if _status(err) == 422:
        if is_cel_validation_error(err):
            return Classification(
                ErrorKind.CEL_VALIDATION,
                Severity.ERROR,
                f"{op.value}: CEL Validation Failed",
                f"A validation rule failed for {resource_desc}.\n\n{extract_cel_details(err)}\n\n"
                "Fix the field value to satisfy the rule or adjust the CRD validation rules.\n\n"
                f"Details: {err}",
            )
        if is_immutable_field_error(err):
            fields = ", ".join(extract_immutable_fields(err))
            return Classification(
                ErrorKind.IMMUTABLE_FIELD,
                Severity.ERROR,
                f"{op.value}: Immutable Field Changed",
                f"Cannot update immutable field(s) {fields} on {resource_desc}.\n\n"
                "Immutable fields cannot be changed in place. Either revert the change in "
                "the desired document or replace the object (delete, then create).\n\n"
                f"Details: {err}",
            )
        return Classification(
            ErrorKind.INVALID,
            Severity.ERROR,
            f"{op.value}: Invalid Resource",
            f"The {resource_desc} contains invalid fields or values. Review the document "
            f"and ensure all required fields are present and correctly formatted. Details: {err}",
        )

    if is_type_not_registered_error(err):
        return _type_not_registered(err, op, resource_desc)

    return Classification(
        ErrorKind.GENERIC,
        Severity.ERROR,
        f"{op.value}: Kubernetes API Error",
        f"An unexpected error occurred while performing {op.value} on {resource_desc}. "
        f"Details: {err}",
    )


def _auth_hint(read: bool) -> str:
    if read:
        return (
            "Credentials persisted from an earlier run may have expired; the refresh "
            "continues with the previously recorded state."
        )
    return "Check that your credentials are valid and have the required permissions."


def _type_not_registered(err: BaseException, op: Operation, resource_desc: str) -> Classification:
    if isinstance(err, TypeNotEstablishedError):
        detail = str(err.message)
    else:
        detail = (
            f"The custom resource definition for {resource_desc} does not exist in the cluster.\n\n"
            "This usually means:\n"
            "1. The CRD has not been installed yet\n"
            "2. The CRD is being created in the same run and is not established yet\n"
            "3. There is a typo in apiVersion or kind\n\n"
            f"Details: {err}"
        )
    return Classification(
        ErrorKind.TYPE_NOT_REGISTERED,
        Severity.ERROR,
        f"{op.value}: Custom Resource Definition Not Found",
        detail,
    )
