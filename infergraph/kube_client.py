"""ClusterClient backed by the official ``kubernetes`` dynamic client."""

from __future__ import annotations

import logging
import threading
from typing import Optional

import urllib3
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError

from infergraph import constants
from infergraph.cluster import ClusterClient
from infergraph.errors import ConflictError, PlatformUnavailableError

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"

_api_client_lock = threading.Lock()
_cached_api_client: Optional[client.ApiClient] = None


def get_api_client() -> client.ApiClient:
    """Return a cached ApiClient, loading Kubernetes config on demand."""
    global _cached_api_client

    with _api_client_lock:
        if _cached_api_client is not None:
            return _cached_api_client

        try:
            config.load_incluster_config()
        except ConfigException:
            config.load_kube_config()

        _cached_api_client = client.ApiClient()
        return _cached_api_client


def _translate(kind: str, name: str | None, exc: Exception) -> Exception:
    if isinstance(exc, DynamicApiError):
        if exc.status == 409:
            return ConflictError(f"{kind} {name}: {exc.reason}")
        if exc.status is None or exc.status >= 500:
            return PlatformUnavailableError(f"{kind} {name}: {exc.reason}")
        return exc
    return PlatformUnavailableError(f"{kind} {name}: {exc}")


class KubeClusterClient(ClusterClient):
    def __init__(self, api_client: client.ApiClient | None = None):
        self._dynamic = DynamicClient(api_client or get_api_client())
        self._resources: dict[str, object] = {}

    def _resource(self, kind: str):
        if kind not in self._resources:
            api_version, api_kind, _ = constants.API_VERSIONS[kind]
            self._resources[kind] = self._dynamic.resources.get(api_version=api_version, kind=api_kind)
        return self._resources[kind]

    @staticmethod
    def _namespace(kind: str, namespace: str | None) -> str | None:
        return namespace if constants.API_VERSIONS[kind][2] else None

    def supports(self, kind: str) -> bool:
        try:
            self._resource(kind)
        except ResourceNotFoundError:
            logger.debug("API for %s is not served by this cluster", kind)
            return False
        return True

    def get(self, kind: str, name: str, namespace: str | None = None) -> dict | None:
        try:
            obj = self._resource(kind).get(name=name, namespace=self._namespace(kind, namespace))
        except DynamicApiError as e:
            if e.status == 404:
                return None
            raise _translate(kind, name, e) from e
        except urllib3.exceptions.HTTPError as e:
            raise _translate(kind, name, e) from e
        return obj.to_dict()

    def list(self, kind: str, namespace: str | None = None) -> list[dict]:
        try:
            result = self._resource(kind).get(namespace=self._namespace(kind, namespace))
        except (DynamicApiError, urllib3.exceptions.HTTPError) as e:
            raise _translate(kind, None, e) from e
        return list(result.to_dict().get("items") or [])

    def create(self, kind: str, body: dict) -> dict:
        meta = body.get("metadata") or {}
        try:
            obj = self._resource(kind).create(body=body, namespace=self._namespace(kind, meta.get("namespace")))
        except (DynamicApiError, urllib3.exceptions.HTTPError) as e:
            raise _translate(kind, meta.get("name"), e) from e
        return obj.to_dict()

    def replace(self, kind: str, body: dict) -> dict:
        meta = body.get("metadata") or {}
        try:
            obj = self._resource(kind).replace(body=body, namespace=self._namespace(kind, meta.get("namespace")))
        except (DynamicApiError, urllib3.exceptions.HTTPError) as e:
            raise _translate(kind, meta.get("name"), e) from e
        return obj.to_dict()

    def patch(self, kind: str, name: str, namespace: str | None, patch: dict) -> dict:
        try:
            obj = self._resource(kind).patch(
                body=patch,
                name=name,
                namespace=self._namespace(kind, namespace),
                content_type=MERGE_PATCH,
            )
        except (DynamicApiError, urllib3.exceptions.HTTPError) as e:
            raise _translate(kind, name, e) from e
        return obj.to_dict()

    def delete(self, kind: str, name: str, namespace: str | None = None) -> None:
        try:
            self._resource(kind).delete(name=name, namespace=self._namespace(kind, namespace))
        except DynamicApiError as e:
            if e.status == 404:
                return
            raise _translate(kind, name, e) from e
        except urllib3.exceptions.HTTPError as e:
            raise _translate(kind, name, e) from e

    def update_status(self, kind: str, body: dict) -> dict:
        meta = body.get("metadata") or {}
        status = self._resource(kind).subresources["status"]
        try:
            obj = status.patch(
                body={"status": body.get("status") or {}},
                name=meta.get("name"),
                namespace=self._namespace(kind, meta.get("namespace")),
                content_type=MERGE_PATCH,
            )
        except (DynamicApiError, urllib3.exceptions.HTTPError) as e:
            raise _translate(kind, meta.get("name"), e) from e
        return obj.to_dict()
