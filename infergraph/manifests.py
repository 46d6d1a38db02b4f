"""Parse Kubernetes-style manifests (dicts / YAML files) into spec models."""

from __future__ import annotations

from pathlib import Path

import yaml

from infergraph.models import (
    ComponentExtensionSpec,
    ComponentSpec,
    Condition,
    Container,
    EnvVar,
    GraphSpec,
    Implementation,
    ResourceRequirements,
    RouterNode,
    RouterType,
    ServiceSpec,
    Status,
    Step,
    WorkerSpec,
)

GRAPH_KIND = "InferenceGraph"
SERVICE_KIND = "InferenceService"

PREDICTOR_IMPLEMENTATIONS = (
    "sklearn", "xgboost", "tensorflow", "pytorch", "triton", "onnx",
    "huggingface", "lightgbm", "paddle", "pmml", "model",
)
EXPLAINER_IMPLEMENTATIONS = ("art",)
TRANSFORMER_IMPLEMENTATIONS: tuple[str, ...] = ()


def load_manifest(path: str | Path) -> dict:
    """Read a single YAML document and return it as a mapping."""
    with open(path) as f:
        raw = yaml.safe_load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"Manifest {path} must be a mapping, got {type(raw).__name__}")
    return raw


def spec_from_manifest(obj: dict) -> GraphSpec | ServiceSpec:
    kind = obj.get("kind")
    if kind == GRAPH_KIND:
        return graph_from_manifest(obj)
    if kind == SERVICE_KIND:
        return service_from_manifest(obj)
    raise ValueError(f"Unsupported manifest kind {kind!r}; expected {GRAPH_KIND} or {SERVICE_KIND}")


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------

def resources_from_dict(raw: dict | None) -> ResourceRequirements:
    raw = raw or {}
    return ResourceRequirements(
        requests={k: str(v) for k, v in (raw.get("requests") or {}).items()},
        limits={k: str(v) for k, v in (raw.get("limits") or {}).items()},
    )


def container_from_dict(raw: dict) -> Container:
    return Container(
        name=raw.get("name", ""),
        image=raw.get("image"),
        args=list(raw.get("args") or []),
        env=[EnvVar(name=e["name"], value=e.get("value")) for e in raw.get("env") or []],
        resources=resources_from_dict(raw.get("resources")),
    )


def status_from_dict(raw: dict | None) -> Status:
    raw = raw or {}
    url = raw.get("url")
    if isinstance(url, dict):
        url = f"{url.get('scheme', 'https')}://{url.get('host', '')}"
    return Status(
        url=url,
        deployment_mode=raw.get("deploymentMode"),
        conditions=[
            Condition(
                type=c["type"],
                status=c.get("status", "Unknown"),
                reason=c.get("reason"),
                message=c.get("message"),
            )
            for c in raw.get("conditions") or []
        ],
    )


def _optional_int(raw: dict, key: str) -> int | None:
    value = raw.get(key)
    return None if value is None else int(value)


# ---------------------------------------------------------------------------
# InferenceGraph
# ---------------------------------------------------------------------------

def step_from_dict(raw: dict) -> Step:
    return Step(
        name=raw.get("name"),
        node_name=raw.get("nodeName"),
        service_name=raw.get("serviceName"),
        service_url=raw.get("serviceUrl"),
        data=raw.get("data"),
        weight=_optional_int(raw, "weight"),
        condition=raw.get("condition"),
        dependency=raw.get("dependency"),
    )


def nodes_from_dict(raw: dict | None) -> dict[str, RouterNode]:
    nodes = {}
    for node_name, node_raw in (raw or {}).items():
        router_type = node_raw.get("routerType")
        try:
            parsed_type = RouterType(router_type)
        except ValueError:
            allowed = [t.value for t in RouterType]
            raise ValueError(
                f"Node {node_name!r} has unknown routerType {router_type!r}. Allowed: {allowed}"
            ) from None
        nodes[node_name] = RouterNode(
            router_type=parsed_type,
            steps=[step_from_dict(s) for s in node_raw.get("steps") or []],
        )
    return nodes


def graph_from_manifest(obj: dict) -> GraphSpec:
    meta = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    return GraphSpec(
        name=meta.get("name", ""),
        namespace=meta.get("namespace") or "default",
        nodes=nodes_from_dict(spec.get("nodes")),
        labels=dict(meta.get("labels") or {}),
        annotations=dict(meta.get("annotations") or {}),
        resources=resources_from_dict(spec.get("resources")),
        affinity=spec.get("affinity") or None,
        tolerations=list(spec.get("tolerations") or []),
        min_replicas=_optional_int(spec, "minReplicas"),
        max_replicas=int(spec.get("maxReplicas") or 0),
        scale_target=_optional_int(spec, "scaleTarget"),
        scale_metric=spec.get("scaleMetric"),
        timeout=_optional_int(spec, "timeout"),
        uid=meta.get("uid"),
        resource_version=meta.get("resourceVersion"),
        finalizers=list(meta.get("finalizers") or []),
        deletion_timestamp=meta.get("deletionTimestamp"),
        status=status_from_dict(obj.get("status")),
    )


# ---------------------------------------------------------------------------
# InferenceService
# ---------------------------------------------------------------------------

def _implementation_from_dict(kind: str, raw: dict) -> Implementation:
    model_format = raw.get("modelFormat")
    if isinstance(model_format, dict):
        model_format = model_format.get("name")
    container = container_from_dict({**raw, "name": raw.get("name", "kserve-container")})
    return Implementation(
        kind=kind,
        storage_uri=raw.get("storageUri"),
        runtime=raw.get("runtime"),
        model_format=model_format,
        container=container,
    )


def component_from_dict(raw: dict, implementation_keys: tuple[str, ...]) -> ComponentSpec:
    implementations = [
        _implementation_from_dict(key, raw[key] or {})
        for key in implementation_keys
        if key in raw and raw[key] is not None
    ]
    containers = [container_from_dict(c) for c in raw.get("containers") or []]
    # Plain containers only count as a custom implementation when nothing else is set;
    # otherwise they are collocated sidecars of the chosen implementation.
    if not implementations and containers:
        implementations.append(Implementation(kind="custom", containers=containers))

    worker_spec = None
    worker_raw = raw.get("workerSpec")
    if worker_raw is not None:
        worker_spec = WorkerSpec(
            tensor_parallel_size=_optional_int(worker_raw, "tensorParallelSize"),
            pipeline_parallel_size=_optional_int(worker_raw, "pipelineParallelSize"),
            containers=[container_from_dict(c) for c in worker_raw.get("containers") or []],
        )

    return ComponentSpec(
        implementations=implementations,
        extension=ComponentExtensionSpec(
            min_replicas=_optional_int(raw, "minReplicas"),
            max_replicas=int(raw.get("maxReplicas") or 0),
            scale_metric=raw.get("scaleMetric"),
            scale_target=_optional_int(raw, "scaleTarget"),
            deployment_strategy=raw.get("deploymentStrategy"),
            canary_traffic_percent=_optional_int(raw, "canaryTrafficPercent"),
            container_concurrency=_optional_int(raw, "containerConcurrency"),
        ),
        containers=containers,
        worker_spec=worker_spec,
    )


def service_from_manifest(obj: dict) -> ServiceSpec:
    meta = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    explainer = spec.get("explainer")
    transformer = spec.get("transformer")
    return ServiceSpec(
        name=meta.get("name", ""),
        namespace=meta.get("namespace") or "default",
        predictor=component_from_dict(spec.get("predictor") or {}, PREDICTOR_IMPLEMENTATIONS),
        explainer=(
            component_from_dict(explainer, EXPLAINER_IMPLEMENTATIONS) if explainer is not None else None
        ),
        transformer=(
            component_from_dict(transformer, TRANSFORMER_IMPLEMENTATIONS) if transformer is not None else None
        ),
        labels=dict(meta.get("labels") or {}),
        annotations=dict(meta.get("annotations") or {}),
        status=status_from_dict(obj.get("status")),
    )


def graph_names_referencing(service_name: str, graph_manifests: list[dict]) -> list[str]:
    """Names of graphs whose steps reference ``service_name`` by serviceName."""
    names = []
    for obj in graph_manifests:
        graph = graph_from_manifest(obj)
        if service_name in graph.referenced_services():
            names.append(graph.name)
    return names


