"""Object store protocol and its Kubernetes implementation.

The engine only talks to the cluster through :class:`ObjectStore`. The
production implementation wraps the ``kubernetes`` dynamic client; tests use an
in-memory store with the same contract.

Contract:
- every failure is raised as :class:`~ssaengine.errors.ApiError`
- objects are plain dicts as returned by the API server
- API warning headers are buffered and handed out by ``drain_warnings``
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from ssaengine.errors import ApiError

logger = logging.getLogger(__name__)

# RFC 7234 warning header: <code> <agent> "<text>"
_WARNING_HEADER_PATTERN = re.compile(r'^\s*\d{3}\s+\S+\s+"((?:[^"\\]|\\.)*)"')


@dataclass(frozen=True)
class ObjectRef:
    """Identifies one object in the cluster."""

    api_version: str
    kind: str
    name: str
    namespace: str = ""

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ObjectRef:
        metadata = obj.get("metadata") or {}
        return cls(
            api_version=str(obj.get("apiVersion", "")),
            kind=str(obj.get("kind", "")),
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace") or ""),
        )

    @property
    def key(self) -> str:
        """Stable key for persisted state, e.g. "ConfigMap/default/app"."""
        return f"{self.kind}/{self.namespace}/{self.name}"

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class ObjectStore(Protocol):
    """Operations the engine needs from the cluster."""

    def apply(
        self,
        obj: dict[str, Any],
        *,
        field_manager: str,
        force: bool,
        dry_run: bool = False,
    ) -> dict[str, Any]: ...

    def get(self, ref: ObjectRef) -> dict[str, Any]: ...

    def delete(self, ref: ObjectRef) -> None: ...

    def strip_finalizers(self, ref: ObjectRef, *, field_manager: str) -> None: ...

    def is_kind_registered(self, api_version: str, kind: str) -> bool: ...

    def drain_warnings(self) -> list[str]: ...


class WarningCollector:
    """Thread-safe buffer of API warnings.

    Duplicate warnings are kept once; reading the buffer clears it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._warnings: list[str] = []

    def add(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        with self._lock:
            if text not in self._warnings:
                self._warnings.append(text)

    def drain(self) -> list[str]:
        with self._lock:
            warnings = list(self._warnings)
            self._warnings.clear()
        return warnings

    def __bool__(self) -> bool:
        with self._lock:
            return bool(self._warnings)


def parse_warning_header(value: str) -> str:
    """Extract the text of a ``Warning`` header value."""
    match = _WARNING_HEADER_PATTERN.match(value)
    if match is None:
        return value.strip()
    return match.group(1).replace('\\"', '"')


class KubernetesObjectStore:
    """ObjectStore backed by the Kubernetes dynamic client."""

    def __init__(self, api_client: Any, dynamic_client: Any | None = None) -> None:
        """Initialize the store.

        Args:
            api_client: Configured ``kubernetes.client.ApiClient``.
            dynamic_client: Pre-built dynamic client. Built lazily from
                ``api_client`` when omitted, since construction performs API
                discovery.
        """
        self._api_client = api_client
        self._client = dynamic_client
        self._warnings = WarningCollector()

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = DynamicClient(self._api_client)
            except ApiException as e:
                raise ApiError.from_exception(e) from e
        return self._client

    def _resource(self, api_version: str, kind: str) -> Any:
        try:
            return self.client.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise ApiError(
                None,
                "NoKindMatch",
                f'no matches for kind "{kind}" in version "{api_version}"',
            ) from e

    def _collect_warnings(self) -> None:
        response = getattr(self._api_client, "last_response", None)
        if response is None:
            return
        try:
            headers = response.getheaders()
        except AttributeError:
            return
        if hasattr(headers, "getlist"):
            values = headers.getlist("Warning")
        else:
            value = headers.get("Warning") if headers else None
            values = [value] if value else []
        for value in values:
            text = parse_warning_header(value)
            logger.debug("Kubernetes API warning", extra={"warning": text})
            self._warnings.add(text)

    def _namespace(self, resource: Any, namespace: str) -> str | None:
        if getattr(resource, "namespaced", True):
            return namespace or "default"
        return None

    def apply(
        self,
        obj: dict[str, Any],
        *,
        field_manager: str,
        force: bool,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Server-side apply ``obj`` as ``field_manager``."""
        ref = ObjectRef.from_object(obj)
        resource = self._resource(ref.api_version, ref.kind)
        kwargs: dict[str, Any] = {
            "name": ref.name,
            "namespace": self._namespace(resource, ref.namespace),
            "field_manager": field_manager,
            "force_conflicts": force,
        }
        if dry_run:
            kwargs["dry_run"] = "All"

        logger.debug(
            "Applying object",
            extra={"object": str(ref), "force": force, "dry_run": dry_run},
        )
        try:
            result = resource.server_side_apply(obj, **kwargs)
        except ApiException as e:
            raise ApiError.from_exception(e) from e
        finally:
            self._collect_warnings()
        return result.to_dict()

    def get(self, ref: ObjectRef) -> dict[str, Any]:
        resource = self._resource(ref.api_version, ref.kind)
        try:
            result = resource.get(name=ref.name, namespace=self._namespace(resource, ref.namespace))
        except ApiException as e:
            raise ApiError.from_exception(e) from e
        finally:
            self._collect_warnings()
        return result.to_dict()

    def delete(self, ref: ObjectRef) -> None:
        resource = self._resource(ref.api_version, ref.kind)
        logger.debug("Deleting object", extra={"object": str(ref)})
        try:
            resource.delete(name=ref.name, namespace=self._namespace(resource, ref.namespace))
        except ApiException as e:
            raise ApiError.from_exception(e) from e
        finally:
            self._collect_warnings()

    def strip_finalizers(self, ref: ObjectRef, *, field_manager: str) -> None:
        """Remove all finalizers with a JSON merge patch."""
        resource = self._resource(ref.api_version, ref.kind)
        logger.info(
            "Removing finalizers",
            extra={"object": str(ref), "field_manager": field_manager},
        )
        try:
            resource.patch(
                body={"metadata": {"finalizers": None}},
                name=ref.name,
                namespace=self._namespace(resource, ref.namespace),
                content_type="application/merge-patch+json",
                field_manager=field_manager,
            )
        except ApiException as e:
            raise ApiError.from_exception(e) from e
        finally:
            self._collect_warnings()

    def is_kind_registered(self, api_version: str, kind: str) -> bool:
        try:
            self._resource(api_version, kind)
        except ApiError as e:
            if e.reason == "NoKindMatch":
                return False
            raise
        return True

    def drain_warnings(self) -> list[str]:
        return self._warnings.drain()
