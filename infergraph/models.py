"""Data models for inference graphs, inference services and synthesized artifacts."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from infergraph import constants


class RouterType(str, Enum):
    SEQUENCE = "Sequence"
    SWITCH = "Switch"
    ENSEMBLE = "Ensemble"
    SPLITTER = "Splitter"


class ArtifactKind(str, Enum):
    KNATIVE_SERVICE = "KnativeService"
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"
    ROUTE = "Route"
    HPA = "HorizontalPodAutoscaler"
    SERVICE_ACCOUNT = "ServiceAccount"


# Network-facing kinds are merge-patched; everything else is fully owned.
MERGE_KINDS = frozenset({ArtifactKind.SERVICE, ArtifactKind.ROUTE})


# ---------------------------------------------------------------------------
# Shared building blocks
# ---------------------------------------------------------------------------

@dataclass
class ResourceRequirements:
    requests: dict[str, str] = field(default_factory=dict)
    limits: dict[str, str] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.requests and not self.limits

    def resource_names(self) -> set[str]:
        return set(self.requests) | set(self.limits)

    def to_dict(self) -> dict:
        out = {}
        if self.limits:
            out["limits"] = dict(self.limits)
        if self.requests:
            out["requests"] = dict(self.requests)
        return out


@dataclass
class EnvVar:
    name: str
    value: Optional[str] = None


@dataclass
class Container:
    name: str = ""
    image: Optional[str] = None
    args: list[str] = field(default_factory=list)
    env: list[EnvVar] = field(default_factory=list)
    resources: ResourceRequirements = field(default_factory=ResourceRequirements)

    def has_env(self, name: str) -> bool:
        return any(e.name == name for e in self.env)


@dataclass
class Condition:
    type: str
    status: str  # "True", "False", "Unknown"
    reason: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"type": self.type, "status": self.status}
        if self.reason:
            out["reason"] = self.reason
        if self.message:
            out["message"] = self.message
        return out


@dataclass
class Status:
    """Observed status surface of a graph or service."""

    url: Optional[str] = None
    deployment_mode: Optional[str] = None
    conditions: list[Condition] = field(default_factory=list)

    def condition(self, type_: str) -> Condition | None:
        for c in self.conditions:
            if c.type == type_:
                return c
        return None

    @property
    def ready(self) -> bool:
        c = self.condition("Ready")
        return c is not None and c.status == "True"

    def to_dict(self) -> dict:
        out: dict = {}
        if self.url:
            out["url"] = self.url
        if self.deployment_mode:
            out["deploymentMode"] = self.deployment_mode
        out["conditions"] = [c.to_dict() for c in self.conditions]
        return out


# ---------------------------------------------------------------------------
# Inference graph
# ---------------------------------------------------------------------------

@dataclass
class Step:
    """One routing step. Exactly one of node_name/service_name/service_url is the target."""

    name: Optional[str] = None
    node_name: Optional[str] = None
    service_name: Optional[str] = None
    service_url: Optional[str] = None
    data: Optional[str] = None
    weight: Optional[int] = None
    condition: Optional[str] = None
    dependency: Optional[str] = None  # "Soft" or "Hard"

    def targets(self) -> list[str]:
        return [t for t in (self.node_name, self.service_name, self.service_url) if t]


@dataclass
class RouterNode:
    router_type: RouterType
    steps: list[Step] = field(default_factory=list)


@dataclass
class GraphSpec:
    """An InferenceGraph: named router nodes plus scheduling directives."""

    name: str
    namespace: str = "default"
    nodes: dict[str, RouterNode] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resources: ResourceRequirements = field(default_factory=ResourceRequirements)
    affinity: Optional[dict] = None
    tolerations: list[dict] = field(default_factory=list)
    min_replicas: Optional[int] = None
    max_replicas: int = 0
    scale_target: Optional[int] = None
    scale_metric: Optional[str] = None
    timeout: Optional[int] = None
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    status: Status = field(default_factory=Status)

    @property
    def root(self) -> RouterNode | None:
        return self.nodes.get(constants.GRAPH_ROOT_NODE)

    def referenced_services(self) -> set[str]:
        return {
            step.service_name
            for node in self.nodes.values()
            for step in node.steps
            if step.service_name
        }


# ---------------------------------------------------------------------------
# Inference service
# ---------------------------------------------------------------------------

@dataclass
class Implementation:
    """One serving backend choice for a component (the tagged-union variant)."""

    kind: str  # "sklearn", "huggingface", "model", "art", "custom", ...
    storage_uri: Optional[str] = None
    runtime: Optional[str] = None
    model_format: Optional[str] = None
    container: Container = field(default_factory=Container)
    containers: list[Container] = field(default_factory=list)  # custom only

    @property
    def is_custom(self) -> bool:
        return self.kind == "custom"

    def primary_container(self) -> Container:
        if self.is_custom and self.containers:
            return self.containers[0]
        return self.container


@dataclass
class ComponentExtensionSpec:
    min_replicas: Optional[int] = None
    max_replicas: int = 0
    scale_metric: Optional[str] = None
    scale_target: Optional[int] = None
    deployment_strategy: Optional[dict] = None
    canary_traffic_percent: Optional[int] = None
    container_concurrency: Optional[int] = None


@dataclass
class WorkerSpec:
    tensor_parallel_size: Optional[int] = None
    pipeline_parallel_size: Optional[int] = None
    containers: list[Container] = field(default_factory=list)


@dataclass
class ComponentSpec:
    implementations: list[Implementation] = field(default_factory=list)
    extension: ComponentExtensionSpec = field(default_factory=ComponentExtensionSpec)
    containers: list[Container] = field(default_factory=list)
    worker_spec: Optional[WorkerSpec] = None

    @property
    def implementation(self) -> Implementation | None:
        if len(self.implementations) == 1:
            return self.implementations[0]
        return None


@dataclass
class ServiceSpec:
    """An InferenceService: predictor plus optional explainer and transformer."""

    name: str
    namespace: str = "default"
    predictor: ComponentSpec = field(default_factory=ComponentSpec)
    explainer: Optional[ComponentSpec] = None
    transformer: Optional[ComponentSpec] = None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    status: Status = field(default_factory=Status)

    def components(self) -> list[tuple[str, ComponentSpec]]:
        out = [(constants.PREDICTOR, self.predictor)]
        if self.explainer is not None:
            out.append((constants.EXPLAINER, self.explainer))
        if self.transformer is not None:
            out.append((constants.TRANSFORMER, self.transformer))
        return out


# ---------------------------------------------------------------------------
# Pipeline outputs
# ---------------------------------------------------------------------------

@dataclass
class EffectiveConfig:
    """Resolved scaling/visibility settings. Derived, never persisted."""

    deployment_mode: str = constants.SERVERLESS
    autoscaler_class: str = constants.AUTOSCALER_CLASS_KPA
    metric: str = constants.METRIC_CONCURRENCY
    scale_target: Optional[int] = None
    min_scale: int = constants.DEFAULT_MIN_REPLICAS
    max_scale: int = 0
    initial_scale: Optional[str] = None
    visibility: str = constants.EXPOSED_VISIBILITY
    auth_enabled: bool = False
    stopped: bool = False

    @property
    def cluster_local(self) -> bool:
        return self.visibility == constants.CLUSTER_LOCAL_VISIBILITY


@dataclass
class Artifact:
    kind: ArtifactKind
    name: str
    namespace: Optional[str]
    body: dict

    @property
    def merge(self) -> bool:
        return self.kind in MERGE_KINDS


@dataclass(frozen=True)
class BindingSubject:
    """A membership entry in the shared authorization binding."""

    name: str
    namespace: str
    kind: str = "ServiceAccount"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "name": self.name, "namespace": self.namespace}

    def matches(self, subject: dict) -> bool:
        return (
            subject.get("kind") == self.kind
            and subject.get("name") == self.name
            and subject.get("namespace") == self.namespace
        )


@dataclass
class DesiredArtifactSet:
    artifacts: dict[ArtifactKind, Artifact] = field(default_factory=dict)
    binding_subject: Optional[BindingSubject] = None

    def add(self, artifact: Artifact) -> None:
        self.artifacts[artifact.kind] = artifact

    def get(self, kind: ArtifactKind) -> Artifact | None:
        return self.artifacts.get(kind)

    def kinds(self) -> list[ArtifactKind]:
        return list(self.artifacts)

    def __contains__(self, kind: object) -> bool:
        return kind in self.artifacts
