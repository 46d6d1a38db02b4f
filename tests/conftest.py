"""Shared fixtures: an in-memory cluster and spec builders."""

from __future__ import annotations

import copy

import pytest

from infergraph import constants
from infergraph.cluster import ClusterClient
from infergraph.config import ClusterPolicy, ControllerConfig, RouterConfig
from infergraph.errors import ConflictError
from infergraph.models import GraphSpec, RouterNode, RouterType, Step


def merge_patch(target, patch):
    """RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


class FakeCluster(ClusterClient):
    """Dict-backed ClusterClient that records every mutating call."""

    def __init__(self, unsupported=()):
        self.objects: dict[tuple, dict] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.unsupported = set(unsupported)
        self.conflicts: dict[str, int] = {}  # kind -> number of replaces to reject
        self._version = 0

    # -- helpers --

    def _key(self, kind, name, namespace):
        namespaced = constants.API_VERSIONS[kind][2]
        return (kind, namespace if namespaced else None, name)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def seed(self, kind: str, body: dict) -> dict:
        """Store an object without recording a call."""
        body = copy.deepcopy(body)
        meta = body.setdefault("metadata", {})
        meta["resourceVersion"] = self._next_version()
        self.objects[self._key(kind, meta["name"], meta.get("namespace"))] = body
        return copy.deepcopy(body)

    # -- ClusterClient --

    def supports(self, kind):
        return kind not in self.unsupported

    def get(self, kind, name, namespace=None):
        obj = self.objects.get(self._key(kind, name, namespace))
        return copy.deepcopy(obj) if obj is not None else None

    def list(self, kind, namespace=None):
        return [
            copy.deepcopy(obj)
            for (k, ns, _), obj in sorted(self.objects.items(), key=lambda item: str(item[0]))
            if k == kind and (namespace is None or ns == namespace)
        ]

    def create(self, kind, body):
        meta = body["metadata"]
        key = self._key(kind, meta["name"], meta.get("namespace"))
        if key in self.objects:
            raise ConflictError(f"{kind} {meta['name']} already exists")
        self.calls.append(("create", kind, meta["name"]))
        return self.seed(kind, body)

    def replace(self, kind, body):
        meta = body["metadata"]
        key = self._key(kind, meta["name"], meta.get("namespace"))
        if self.conflicts.get(kind):
            self.conflicts[kind] -= 1
            raise ConflictError(f"{kind} {meta['name']} was modified concurrently")
        current = self.objects[key]
        expected = meta.get("resourceVersion")
        if expected and expected != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{kind} {meta['name']} resourceVersion mismatch")
        self.calls.append(("replace", kind, meta["name"]))
        return self.seed(kind, body)

    def patch(self, kind, name, namespace, patch):
        key = self._key(kind, name, namespace)
        self.calls.append(("patch", kind, name))
        return self.seed(kind, merge_patch(self.objects[key], patch))

    def delete(self, kind, name, namespace=None):
        self.calls.append(("delete", kind, name))
        key = self._key(kind, name, namespace)
        obj = self.objects.get(key)
        if obj is not None and obj["metadata"].get("finalizers"):
            # like the API server: mark for deletion and wait for finalizers
            obj["metadata"]["deletionTimestamp"] = "2026-10-18T00:00:00Z"
            return
        self.objects.pop(key, None)

    def update_status(self, kind, body):
        meta = body["metadata"]
        key = self._key(kind, meta["name"], meta.get("namespace"))
        self.calls.append(("update_status", kind, meta["name"]))
        current = copy.deepcopy(self.objects.get(key) or {"metadata": dict(meta)})
        current["status"] = merge_patch(current.get("status"), body["status"])
        return self.seed(kind, current)


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def controller_config():
    return ControllerConfig(router=RouterConfig(image="kserve/router:v0.10.0"), cluster=ClusterPolicy())


def make_graph(
    name: str = "my-graph",
    namespace: str = "default",
    annotations: dict | None = None,
    labels: dict | None = None,
    **kwargs,
) -> GraphSpec:
    nodes = kwargs.pop("nodes", None) or {
        constants.GRAPH_ROOT_NODE: RouterNode(
            router_type=RouterType.SEQUENCE,
            steps=[Step(service_url="http://someservice.example.com")],
        ),
    }
    return GraphSpec(
        name=name,
        namespace=namespace,
        nodes=nodes,
        annotations=dict(annotations or {}),
        labels=dict(labels or {}),
        **kwargs,
    )


def graph_manifest(
    name: str = "my-graph",
    namespace: str = "default",
    annotations: dict | None = None,
    labels: dict | None = None,
    steps: list[dict] | None = None,
    uid: str | None = "uid-1",
) -> dict:
    metadata = {"name": name, "namespace": namespace}
    if annotations:
        metadata["annotations"] = annotations
    if labels:
        metadata["labels"] = labels
    if uid:
        metadata["uid"] = uid
    return {
        "apiVersion": constants.GRAPH_API_VERSION,
        "kind": "InferenceGraph",
        "metadata": metadata,
        "spec": {
            "nodes": {
                "root": {
                    "routerType": "Sequence",
                    "steps": steps or [{"serviceUrl": "http://someservice.example.com"}],
                },
            },
        },
    }
