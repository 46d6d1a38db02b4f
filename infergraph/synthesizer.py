"""Resource synthesizer: (graph, effective config, descriptor) -> desired artifacts.

Pure functions only. The reconciler decides what to do with the result.
"""

from __future__ import annotations

import logging

from infergraph import constants
from infergraph.config import ControllerConfig, RouterConfig
from infergraph.errors import UnsupportedModeError
from infergraph.models import (
    Artifact,
    ArtifactKind,
    BindingSubject,
    DesiredArtifactSet,
    EffectiveConfig,
    GraphSpec,
    ResourceRequirements,
)

logger = logging.getLogger(__name__)


def _typemeta(kind: ArtifactKind) -> dict:
    api_version, api_kind, _ = constants.API_VERSIONS[kind.value]
    return {"apiVersion": api_version, "kind": api_kind}


def owner_references(graph: GraphSpec) -> list[dict]:
    if not graph.uid:
        return []
    return [{
        "apiVersion": constants.GRAPH_API_VERSION,
        "kind": "InferenceGraph",
        "name": graph.name,
        "uid": graph.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }]


def _metadata(graph: GraphSpec, name: str, labels: dict | None = None, annotations: dict | None = None) -> dict:
    meta: dict = {"name": name, "namespace": graph.namespace}
    if labels:
        meta["labels"] = labels
    if annotations:
        meta["annotations"] = annotations
    owners = owner_references(graph)
    if owners:
        meta["ownerReferences"] = owners
    return meta


def _workload_labels(graph: GraphSpec) -> dict[str, str]:
    return {
        constants.INFERENCE_GRAPH_LABEL: graph.name,
        constants.WORKLOAD_KIND_LABEL: "InferenceGraph",
    }


def _passthrough_annotations(graph: GraphSpec) -> dict[str, str]:
    return {
        k: v for k, v in graph.annotations.items()
        if k not in constants.ANNOTATION_DISALLOWED_LIST
    }


def merge_resources(graph: ResourceRequirements, router: RouterConfig) -> ResourceRequirements:
    """Per-key merge: values set on the graph win over the router defaults."""
    defaults = router.default_resources()
    return ResourceRequirements(
        requests={**defaults.requests, **graph.requests},
        limits={**defaults.limits, **graph.limits},
    )


def readiness_probe() -> dict:
    return {
        "httpGet": {
            "path": constants.ROUTER_READY_PATH,
            "port": constants.ROUTER_PORT,
            "scheme": "HTTPS",
        },
        "initialDelaySeconds": 5,
        "timeoutSeconds": 2,
        "periodSeconds": 5,
        "successThreshold": 1,
        "failureThreshold": 3,
    }


def security_context() -> dict:
    return {
        "privileged": False,
        "runAsNonRoot": True,
        "readOnlyRootFilesystem": True,
        "allowPrivilegeEscalation": False,
        "capabilities": {"drop": ["ALL"]},
    }


def router_container(graph: GraphSpec, descriptor: str, router: RouterConfig) -> dict:
    return {
        "name": "router",
        "image": router.image,
        "args": [constants.GRAPH_JSON_ARG, descriptor],
        "env": [
            {"name": constants.SSL_CERT_FILE_ENV, "value": constants.SERVICE_CA_CERT_FILE},
            {"name": constants.PROPAGATE_HEADERS_ENV, "value": ",".join(router.propagate_headers)},
        ],
        "resources": merge_resources(graph.resources, router).to_dict(),
        "readinessProbe": readiness_probe(),
        "securityContext": security_context(),
        "volumeMounts": [
            {"name": constants.SERVICE_CA_VOLUME, "mountPath": constants.SERVICE_CA_MOUNT_PATH},
        ],
    }


def _pod_spec(graph: GraphSpec, container: dict) -> dict:
    pod: dict = {
        "containers": [container],
        "automountServiceAccountToken": False,
        "volumes": [
            {"name": constants.SERVICE_CA_VOLUME, "configMap": {"name": constants.SERVICE_CA_CONFIGMAP}},
        ],
    }
    if graph.affinity:
        pod["affinity"] = graph.affinity
    if graph.tolerations:
        pod["tolerations"] = list(graph.tolerations)
    return pod


# ---------------------------------------------------------------------------
# Serverless
# ---------------------------------------------------------------------------

def knative_scaling_annotations(effective: EffectiveConfig) -> dict[str, str]:
    annotations = {
        constants.MIN_SCALE_ANNOTATION: str(effective.min_scale),
        constants.KNATIVE_CLASS_ANNOTATION: effective.autoscaler_class,
        constants.DEPLOYMENT_MODE_ANNOTATION: effective.deployment_mode,
    }
    if effective.max_scale > 0:
        annotations[constants.MAX_SCALE_ANNOTATION] = str(effective.max_scale)
    if effective.initial_scale is not None:
        annotations[constants.INITIAL_SCALE_ANNOTATION] = effective.initial_scale
    return annotations


def knative_service(
    graph: GraphSpec, effective: EffectiveConfig, descriptor: str, config: ControllerConfig
) -> Artifact:
    labels = {}
    if effective.cluster_local:
        labels[constants.KNATIVE_VISIBILITY_LABEL] = constants.CLUSTER_LOCAL_VISIBILITY

    template_annotations = {**_passthrough_annotations(graph), **knative_scaling_annotations(effective)}
    revision_spec = _pod_spec(graph, router_container(graph, descriptor, config.router))
    if graph.timeout is not None:
        revision_spec["timeoutSeconds"] = graph.timeout

    body = {
        **_typemeta(ArtifactKind.KNATIVE_SERVICE),
        "metadata": _metadata(graph, graph.name, labels=labels),
        "spec": {
            "template": {
                "metadata": {"labels": _workload_labels(graph), "annotations": template_annotations},
                "spec": revision_spec,
            },
        },
    }
    return Artifact(ArtifactKind.KNATIVE_SERVICE, graph.name, graph.namespace, body)


# ---------------------------------------------------------------------------
# Raw deployment
# ---------------------------------------------------------------------------

def auth_service_account_name(graph: GraphSpec) -> str:
    return f"{graph.name}{constants.AUTH_SERVICE_ACCOUNT_SUFFIX}"


def raw_replicas(effective: EffectiveConfig) -> int:
    if effective.stopped:
        return 0
    return max(effective.min_scale, constants.DEFAULT_MIN_REPLICAS)


def deployment(graph: GraphSpec, effective: EffectiveConfig, descriptor: str, config: ControllerConfig) -> Artifact:
    container = router_container(graph, descriptor, config.router)
    container["ports"] = [{"name": "https", "containerPort": constants.ROUTER_PORT, "protocol": "TCP"}]
    container["volumeMounts"].append(
        {"name": constants.SERVING_CERT_VOLUME, "mountPath": constants.SERVING_CERT_MOUNT_PATH, "readOnly": True}
    )
    pod = _pod_spec(graph, container)
    pod["volumes"].append({
        "name": constants.SERVING_CERT_VOLUME,
        "secret": {"secretName": f"{graph.name}{constants.SERVING_CERT_SUFFIX}"},
    })
    if effective.auth_enabled:
        container["args"] += [constants.ENABLE_AUTH_ARG, constants.GRAPH_NAME_ARG, graph.name]
        pod["serviceAccountName"] = auth_service_account_name(graph)
        pod["automountServiceAccountToken"] = True

    selector = {constants.APP_LABEL: graph.name}
    labels = {**graph.labels, **selector, **_workload_labels(graph)}
    annotations = {
        **_passthrough_annotations(graph),
        constants.DEPLOYMENT_MODE_ANNOTATION: effective.deployment_mode,
    }
    body = {
        **_typemeta(ArtifactKind.DEPLOYMENT),
        "metadata": _metadata(graph, graph.name, labels=labels, annotations=annotations),
        "spec": {
            "replicas": raw_replicas(effective),
            "selector": {"matchLabels": selector},
            "template": {
                "metadata": {"labels": labels},
                "spec": pod,
            },
        },
    }
    return Artifact(ArtifactKind.DEPLOYMENT, graph.name, graph.namespace, body)


def service(graph: GraphSpec) -> Artifact:
    body = {
        **_typemeta(ArtifactKind.SERVICE),
        "metadata": _metadata(
            graph,
            graph.name,
            labels={constants.APP_LABEL: graph.name, **_workload_labels(graph)},
            annotations={constants.SERVING_CERT_ANNOTATION: f"{graph.name}{constants.SERVING_CERT_SUFFIX}"},
        ),
        "spec": {
            "selector": {constants.APP_LABEL: graph.name},
            "ports": [{
                "name": "https",
                "port": constants.ROUTER_SERVICE_PORT,
                "targetPort": constants.ROUTER_PORT,
                "protocol": "TCP",
            }],
        },
    }
    return Artifact(ArtifactKind.SERVICE, graph.name, graph.namespace, body)


def route(graph: GraphSpec) -> Artifact:
    name = f"{graph.name}{constants.ROUTE_SUFFIX}"
    body = {
        **_typemeta(ArtifactKind.ROUTE),
        "metadata": _metadata(graph, name, labels=_workload_labels(graph)),
        "spec": {
            "to": {"kind": "Service", "name": graph.name, "weight": 100},
            "port": {"targetPort": "https"},
            "tls": {"termination": "reencrypt", "insecureEdgeTerminationPolicy": "Redirect"},
        },
    }
    return Artifact(ArtifactKind.ROUTE, name, graph.namespace, body)


def hpa_utilization(graph: GraphSpec, effective: EffectiveConfig) -> int:
    if effective.scale_target is not None:
        return effective.scale_target
    raw = graph.annotations.get(constants.TARGET_UTILIZATION_ANNOTATION)
    if raw is not None:
        return int(raw)
    return constants.DEFAULT_CPU_UTILIZATION


def horizontal_pod_autoscaler(graph: GraphSpec, effective: EffectiveConfig) -> Artifact:
    min_replicas = max(effective.min_scale, constants.DEFAULT_MIN_REPLICAS)
    metric = effective.metric if effective.metric in constants.HPA_METRICS else constants.METRIC_CPU
    body = {
        **_typemeta(ArtifactKind.HPA),
        "metadata": _metadata(graph, graph.name, labels=_workload_labels(graph)),
        "spec": {
            "scaleTargetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": graph.name},
            "minReplicas": min_replicas,
            "maxReplicas": max(effective.max_scale, min_replicas),
            "metrics": [{
                "type": "Resource",
                "resource": {
                    "name": metric,
                    "target": {"type": "Utilization", "averageUtilization": hpa_utilization(graph, effective)},
                },
            }],
        },
    }
    return Artifact(ArtifactKind.HPA, graph.name, graph.namespace, body)


def service_account(graph: GraphSpec) -> Artifact:
    name = auth_service_account_name(graph)
    body = {
        **_typemeta(ArtifactKind.SERVICE_ACCOUNT),
        "metadata": _metadata(graph, name, labels=_workload_labels(graph)),
    }
    return Artifact(ArtifactKind.SERVICE_ACCOUNT, name, graph.namespace, body)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def synthesize(
    graph: GraphSpec,
    effective: EffectiveConfig,
    descriptor: str,
    config: ControllerConfig,
) -> DesiredArtifactSet:
    """Build the desired artifact set for the resolved deployment mode.

    Serverless yields a single KnativeService. RawDeployment yields a
    Deployment and Service, an HPA when the hpa class drives scaling, a
    Route when the graph is exposed, and the auth identity plus its binding
    claim when auth is enabled. Any other mode raises UnsupportedModeError.
    """
    desired = DesiredArtifactSet()
    mode = effective.deployment_mode

    if mode == constants.SERVERLESS:
        desired.add(knative_service(graph, effective, descriptor, config))
    elif mode == constants.RAW_DEPLOYMENT:
        desired.add(deployment(graph, effective, descriptor, config))
        desired.add(service(graph))
        if effective.autoscaler_class == constants.AUTOSCALER_CLASS_HPA and not effective.stopped:
            desired.add(horizontal_pod_autoscaler(graph, effective))
        if not effective.cluster_local:
            desired.add(route(graph))
        if effective.auth_enabled:
            desired.add(service_account(graph))
            desired.binding_subject = BindingSubject(
                name=auth_service_account_name(graph), namespace=graph.namespace
            )
    else:
        raise UnsupportedModeError(
            f"InferenceGraph {graph.namespace}/{graph.name}: deployment mode {mode!r} is not supported"
        )

    logger.debug(
        "Synthesized %s/%s (%s): %s",
        graph.namespace, graph.name, mode, [k.value for k in desired.kinds()],
    )
    return desired
