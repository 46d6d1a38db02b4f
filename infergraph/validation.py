"""Admission rules for InferenceService and InferenceGraph specs.

Every check raises ``RejectionError`` on the first violation it finds; the
public entry points evaluate the rules in a fixed order and stop at the
first failure. Nothing here mutates its input or talks to the cluster except
``ServiceValidator.validate_delete``, which issues one list call.
"""

from __future__ import annotations

import json
import logging
import re

from infergraph import constants
from infergraph.config import ClusterPolicy
from infergraph.errors import RejectionError
from infergraph.manifests import GRAPH_KIND, graph_names_referencing
from infergraph.models import (
    ComponentExtensionSpec,
    ComponentSpec,
    GraphSpec,
    Implementation,
    ResourceRequirements,
    RouterType,
    ServiceSpec,
)
from infergraph.resolver import parse_int

logger = logging.getLogger(__name__)

NAME_FMT = "[a-z]([-a-z0-9]*[a-z0-9])?"
NAME_RE = re.compile(f"^{NAME_FMT}$")

# Rejection categories.
NAME_FORMAT = "name-format"
IMPLEMENTATION = "implementation"
AUTOSCALER_CLASS = "autoscaler-class"
METRIC = "metric"
TARGET_RANGE = "target-range"
MULTI_NODE = "multi-node"
COLLOCATION = "collocation"
IMMUTABLE_FIELD = "immutable-field"
REFERENCED_BY_GRAPH = "referenced-by-graph"
GRAPH_STRUCTURE = "graph-structure"

TARGET_UTILIZATION_ERROR = "the target utilization percentage should be a [1-100] integer"
STORAGE_URI_IN_TRANSFORMER_ERROR = "storage uri should not be specified in transformer container"


# ---------------------------------------------------------------------------
# Rule 1: name
# ---------------------------------------------------------------------------

def validate_name(kind: str, name: str) -> None:
    if not NAME_RE.match(name or ""):
        raise RejectionError(
            NAME_FORMAT,
            f'The {kind} "{name}" is invalid: a {kind} name must consist of lower case '
            f"alphanumeric characters or '-', and must start with alphabetical character. "
            f"(e.g. \"my-name\" or \"abc-123\", regex used for validation is '{NAME_FMT}')",
        )


# ---------------------------------------------------------------------------
# Rule 2: implementation and extension
# ---------------------------------------------------------------------------

def validate_exactly_one_implementation(component_name: str, component: ComponentSpec) -> None:
    count = len(component.implementations)
    if count != 1:
        kinds = [impl.kind for impl in component.implementations]
        raise RejectionError(
            IMPLEMENTATION,
            f"exactly one {component_name} implementation must be specified, found {count} {kinds}",
        )


def validate_implementation(impl: Implementation) -> None:
    uri = impl.storage_uri
    if uri and "://" in uri and not uri.startswith(constants.SUPPORTED_STORAGE_URI_PREFIXES):
        raise RejectionError(
            IMPLEMENTATION,
            f"storageUri, must be one of: [{', '.join(constants.SUPPORTED_STORAGE_URI_PREFIXES)}] "
            f"or match https://{{}}.blob.core.windows.net/{{}}/{{}} or be an absolute or "
            f"relative local path. StorageUri [{uri}] is not supported.",
        )
    if impl.is_custom:
        for container in impl.containers:
            if not container.image:
                raise RejectionError(
                    IMPLEMENTATION,
                    f"custom container {container.name!r} must specify an image",
                )


def validate_extension(ext: ComponentExtensionSpec) -> None:
    if ext.min_replicas is not None and ext.min_replicas < 0:
        raise RejectionError(IMPLEMENTATION, "MinReplicas cannot be less than 0.")
    if ext.max_replicas < 0:
        raise RejectionError(IMPLEMENTATION, "MaxReplicas cannot be less than 0.")
    if ext.max_replicas and (ext.min_replicas or 0) > ext.max_replicas:
        raise RejectionError(IMPLEMENTATION, "MinReplicas cannot be greater than MaxReplicas.")
    if ext.container_concurrency is not None and ext.container_concurrency < 0:
        raise RejectionError(IMPLEMENTATION, "ContainerConcurrency cannot be less than 0.")
    if ext.canary_traffic_percent is not None and not 0 <= ext.canary_traffic_percent <= 100:
        raise RejectionError(IMPLEMENTATION, "CanaryTrafficPercent must be a [0-100] integer.")


# ---------------------------------------------------------------------------
# Rule 3: autoscaler
# ---------------------------------------------------------------------------

def validate_autoscaler_class(annotations: dict[str, str]) -> None:
    if constants.AUTOSCALER_CLASS_ANNOTATION not in annotations:
        return
    value = annotations[constants.AUTOSCALER_CLASS_ANNOTATION]
    if value not in constants.AUTOSCALER_ALLOWED_CLASSES:
        raise RejectionError(AUTOSCALER_CLASS, f"[{value}] is not a supported autoscaler class type")
    if value == constants.AUTOSCALER_CLASS_HPA:
        metric = annotations.get(constants.AUTOSCALER_METRICS_ANNOTATION)
        if metric is not None and metric not in constants.HPA_METRICS:
            raise RejectionError(METRIC, f"[{metric}] is not a supported metric")


def validate_scaling_extension(mode: str, annotations: dict[str, str], ext: ComponentExtensionSpec) -> None:
    autoscaler_class = annotations.get(constants.AUTOSCALER_CLASS_ANNOTATION)
    if mode == constants.RAW_DEPLOYMENT or autoscaler_class == constants.AUTOSCALER_CLASS_HPA:
        _validate_hpa_extension(ext)
    else:
        _validate_kpa_extension(ext)


def _validate_hpa_extension(ext: ComponentExtensionSpec) -> None:
    metric = ext.scale_metric or constants.METRIC_CPU
    if metric not in constants.HPA_METRICS:
        raise RejectionError(METRIC, f"[{metric}] is not a supported metric")
    if ext.scale_target is None:
        return
    if metric == constants.METRIC_CPU and not 1 <= ext.scale_target <= 100:
        raise RejectionError(TARGET_RANGE, TARGET_UTILIZATION_ERROR)
    if metric == constants.METRIC_MEMORY and ext.scale_target < 1:
        raise RejectionError(TARGET_RANGE, "the target memory should be greater than 1 MiB")


def _validate_kpa_extension(ext: ComponentExtensionSpec) -> None:
    if ext.deployment_strategy is not None:
        raise RejectionError(
            AUTOSCALER_CLASS, "customizing deploymentStrategy is only supported for raw deployment mode"
        )
    metric = ext.scale_metric or constants.METRIC_CONCURRENCY
    if metric not in constants.KPA_METRICS:
        raise RejectionError(METRIC, f"[{metric}] is not a supported metric")
    if ext.scale_target is not None and metric == constants.METRIC_RPS and ext.scale_target < 1:
        raise RejectionError(TARGET_RANGE, "the target for rps should be greater than 1")


# ---------------------------------------------------------------------------
# Rule 4: target utilization annotation
# ---------------------------------------------------------------------------

def validate_target_utilization(annotations: dict[str, str]) -> None:
    value = annotations.get(constants.TARGET_UTILIZATION_ANNOTATION)
    if value is None:
        return
    target = parse_int(value)
    if target is None or not 1 <= target <= 100:
        raise RejectionError(TARGET_RANGE, TARGET_UTILIZATION_ERROR)


# ---------------------------------------------------------------------------
# Rule 5: multi-node
# ---------------------------------------------------------------------------

def parse_custom_gpu_types(value: str) -> list[str] | None:
    """Parse the gpu-resource-types annotation; None when malformed."""
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list):
        return None
    if not all(isinstance(item, str) and item.strip() for item in parsed):
        return None
    return parsed


def has_unknown_gpu_type(resources: ResourceRequirements, custom_types: list[str]) -> bool:
    known = set(constants.BASIC_RESOURCE_TYPES) | set(constants.GPU_RESOURCE_TYPES) | set(custom_types)
    return any(name not in known for name in resources.resource_names())


def validate_multi_node(service: ServiceSpec) -> None:
    predictor = service.predictor
    worker = predictor.worker_spec
    if worker is None:
        return
    name = service.name
    annotations = service.annotations

    if len(worker.containers) > 1:
        raise RejectionError(
            MULTI_NODE,
            f"the InferenceService {name!r} is invalid: setting multiple containers in workerSpec "
            f"is not supported",
        )

    raw_types = annotations.get(constants.GPU_RESOURCE_TYPES_ANNOTATION, "")
    custom_types = (parse_custom_gpu_types(raw_types) if raw_types else None) or []
    impl = predictor.implementation
    if impl is not None and not impl.is_custom:
        container = impl.primary_container()
        if container.has_env(constants.PIPELINE_PARALLEL_SIZE_ENV):
            raise RejectionError(
                MULTI_NODE,
                f"the InferenceService {name!r} is invalid: setting {constants.PIPELINE_PARALLEL_SIZE_ENV} "
                f"environment variable is not allowed, use workerSpec.pipelineParallelSize instead",
            )
        if container.has_env(constants.TENSOR_PARALLEL_SIZE_ENV):
            raise RejectionError(
                MULTI_NODE,
                f"the InferenceService {name!r} is invalid: setting {constants.TENSOR_PARALLEL_SIZE_ENV} "
                f"environment variable is not allowed, use workerSpec.tensorParallelSize instead",
            )

        if raw_types and parse_custom_gpu_types(raw_types) is None:
            raise RejectionError(
                MULTI_NODE,
                f"the InferenceService {name!r} is invalid: annotation "
                f"{constants.GPU_RESOURCE_TYPES_ANNOTATION} must be a JSON list of GPU resource names",
            )

        if has_unknown_gpu_type(container.resources, custom_types):
            raise RejectionError(
                MULTI_NODE,
                f"the InferenceService {name!r} is invalid: unknown GPU resource type; declare it in "
                f"{constants.GPU_RESOURCE_TYPES_ANNOTATION}",
            )

        if not impl.storage_uri:
            raise RejectionError(
                MULTI_NODE, f"the InferenceService {name!r} is invalid: storageUri must be set for multi-node"
            )
        scheme = impl.storage_uri.split("://")[0]
        if scheme not in constants.MULTI_NODE_STORAGE_SCHEMES:
            raise RejectionError(
                MULTI_NODE,
                f"the InferenceService {name!r} is invalid: storage protocol {scheme!r} is not supported "
                f"for multi-node, only {list(constants.MULTI_NODE_STORAGE_SCHEMES)} are allowed",
            )

        autoscaler_class = annotations.get(constants.AUTOSCALER_CLASS_ANNOTATION, "")
        if autoscaler_class != constants.AUTOSCALER_CLASS_EXTERNAL:
            raise RejectionError(
                MULTI_NODE,
                f"the InferenceService {name!r} is invalid: multi-node requires autoscaler class "
                f"{constants.AUTOSCALER_CLASS_EXTERNAL!r}, got {autoscaler_class!r}",
            )

    pps = worker.pipeline_parallel_size
    if pps is not None and pps < 2:
        raise RejectionError(
            MULTI_NODE,
            f"the InferenceService {name!r} is invalid: pipelineParallelSize must be at least 2, got {pps}",
        )
    tps = worker.tensor_parallel_size
    if tps is not None and tps < 1:
        raise RejectionError(
            MULTI_NODE,
            f"the InferenceService {name!r} is invalid: tensorParallelSize must be at least 1, got {tps}",
        )

    for container in worker.containers:
        if has_unknown_gpu_type(container.resources, custom_types):
            raise RejectionError(
                MULTI_NODE,
                f"the InferenceService {name!r} is invalid: unknown GPU resource type in workerSpec container "
                f"{container.name!r}",
            )


# ---------------------------------------------------------------------------
# Rule 6: collocation
# ---------------------------------------------------------------------------

def validate_collocation(predictor: ComponentSpec) -> None:
    for container in predictor.containers:
        if container.name == constants.TRANSFORMER_CONTAINER_NAME:
            if container.has_env(constants.STORAGE_URI_ENV):
                raise RejectionError(COLLOCATION, STORAGE_URI_IN_TRANSFORMER_ERROR)
            break


# ---------------------------------------------------------------------------
# Rule 7: immutable deployment mode
# ---------------------------------------------------------------------------

def validate_deployment_mode_unchanged(annotations: dict[str, str], previous_mode: str | None) -> None:
    if not previous_mode:
        return
    requested = annotations.get(constants.DEPLOYMENT_MODE_ANNOTATION)
    if requested is not None and requested != previous_mode:
        raise RejectionError(
            IMMUTABLE_FIELD,
            f"update rejected: deploymentMode cannot be changed from '{previous_mode}' to '{requested}'",
        )


# ---------------------------------------------------------------------------
# Entry points: InferenceService
# ---------------------------------------------------------------------------

def _resolved_mode(annotations: dict[str, str], policy: ClusterPolicy | None) -> str:
    mode = annotations.get(constants.DEPLOYMENT_MODE_ANNOTATION)
    if mode:
        return mode
    return (policy or ClusterPolicy()).default_deployment_mode


def validate_service(
    service: ServiceSpec,
    previous: ServiceSpec | None = None,
    policy: ClusterPolicy | None = None,
) -> list[str]:
    """Validate a create (``previous`` is None) or update of an InferenceService.

    Returns admission warnings (currently always empty).
    """
    logger.info("validate %s: %s/%s", "update" if previous else "create", service.namespace, service.name)
    annotations = service.annotations
    mode = _resolved_mode(annotations, policy)

    validate_name("InferenceService", service.name)

    for component_name, component in service.components():
        validate_exactly_one_implementation(component_name, component)
        validate_implementation(component.implementations[0])
        validate_extension(component.extension)

    validate_autoscaler_class(annotations)
    for _, component in service.components():
        validate_scaling_extension(mode, annotations, component.extension)

    validate_target_utilization(annotations)
    validate_multi_node(service)
    validate_collocation(service.predictor)

    if previous is not None:
        validate_deployment_mode_unchanged(annotations, previous.status.deployment_mode)
    return []


def validate_service_delete(service: ServiceSpec, graph_manifests: list[dict]) -> list[str]:
    """Reject deleting a service that any graph step still names."""
    referencing = graph_names_referencing(service.name, graph_manifests)
    if referencing:
        raise RejectionError(
            REFERENCED_BY_GRAPH,
            f"InferenceService [{service.name}] is being used in the following InferenceGraphs: "
            f"{', '.join(referencing)}",
        )
    return []


class ServiceValidator:
    """Admission entry points for InferenceService create/update/delete."""

    def __init__(self, client, policy: ClusterPolicy | None = None):
        self.client = client
        self.policy = policy

    def validate_create(self, service: ServiceSpec) -> list[str]:
        return validate_service(service, policy=self.policy)

    def validate_update(self, service: ServiceSpec, previous: ServiceSpec) -> list[str]:
        return validate_service(service, previous=previous, policy=self.policy)

    def validate_delete(self, service: ServiceSpec) -> list[str]:
        logger.info("validate delete: %s/%s", service.namespace, service.name)
        graphs = self.client.list(GRAPH_KIND, service.namespace)
        return validate_service_delete(service, graphs)


# ---------------------------------------------------------------------------
# Entry points: InferenceGraph
# ---------------------------------------------------------------------------

def _validate_graph_structure(graph: GraphSpec) -> None:
    if graph.root is None:
        raise RejectionError(
            GRAPH_STRUCTURE, f"InferenceGraph {graph.name!r} must define a '{constants.GRAPH_ROOT_NODE}' node"
        )
    for node_name in sorted(graph.nodes):
        node = graph.nodes[node_name]
        for index, step in enumerate(node.steps):
            where = f"InferenceGraph {graph.name!r} node {node_name!r} step {index}"
            targets = step.targets()
            if len(targets) != 1:
                raise RejectionError(
                    GRAPH_STRUCTURE,
                    f"{where} must set exactly one of nodeName, serviceName or serviceUrl",
                )
            if step.node_name and step.node_name not in graph.nodes:
                raise RejectionError(GRAPH_STRUCTURE, f"{where} references unknown node {step.node_name!r}")
            if step.dependency not in (None, "Soft", "Hard"):
                raise RejectionError(GRAPH_STRUCTURE, f"{where} has invalid dependency {step.dependency!r}")
            if node.router_type == RouterType.SWITCH and not step.condition and index != len(node.steps) - 1:
                raise RejectionError(GRAPH_STRUCTURE, f"{where} in a Switch node must set a condition")

        if node.router_type == RouterType.SPLITTER:
            weights = [s.weight for s in node.steps]
            if any(w is None for w in weights) or sum(weights) != 100:
                raise RejectionError(
                    GRAPH_STRUCTURE,
                    f"InferenceGraph {graph.name!r} node {node_name!r}: Splitter step weights must sum to 100",
                )


def validate_graph(
    graph: GraphSpec,
    previous: GraphSpec | None = None,
    policy: ClusterPolicy | None = None,
) -> list[str]:
    """Validate a create or update of an InferenceGraph."""
    logger.info("validate %s: %s/%s", "update" if previous else "create", graph.namespace, graph.name)
    validate_name("InferenceGraph", graph.name)
    _validate_graph_structure(graph)

    mode = _resolved_mode(graph.annotations, policy)
    if mode not in constants.DEPLOYMENT_MODES:
        raise RejectionError(
            GRAPH_STRUCTURE,
            f"InferenceGraph {graph.name!r} has unknown deploymentMode {mode!r}. "
            f"Allowed: {list(constants.DEPLOYMENT_MODES)}",
        )
    validate_autoscaler_class(graph.annotations)
    validate_target_utilization(graph.annotations)

    if previous is not None:
        validate_deployment_mode_unchanged(graph.annotations, previous.status.deployment_mode)
    return []
