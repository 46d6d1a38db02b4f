"""Drive observed cluster state towards the desired artifact set of a graph."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, replace

from infergraph import constants
from infergraph.auth import BindingMembership
from infergraph.cluster import ClusterClient
from infergraph.compiler import compile_graph
from infergraph.config import ControllerConfig, allow_zero_initial_scale, config_from_config_map
from infergraph.errors import PermanentError, RouteUnavailableError, ServerlessModeRejectedError
from infergraph.manifests import GRAPH_KIND
from infergraph.models import (
    ArtifactKind,
    BindingSubject,
    Condition,
    DesiredArtifactSet,
    EffectiveConfig,
    GraphSpec,
    Status,
)
from infergraph.resolver import resolve
from infergraph.synthesizer import auth_service_account_name, synthesize

logger = logging.getLogger(__name__)

READY = "Ready"

# Kinds the reconciler creates for a graph, per mode. Anything of these kinds
# observed under the graph's names but no longer desired gets deleted. Knative
# creates its own Service objects under the graph name, so Serverless only
# observes the KnativeService.
MANAGED_KINDS = {
    constants.SERVERLESS: (ArtifactKind.KNATIVE_SERVICE,),
    constants.RAW_DEPLOYMENT: (
        ArtifactKind.DEPLOYMENT,
        ArtifactKind.SERVICE,
        ArtifactKind.HPA,
        ArtifactKind.ROUTE,
        ArtifactKind.SERVICE_ACCOUNT,
    ),
}


@dataclass
class Action:
    verb: str  # "create", "replace", "patch", "delete"
    kind: ArtifactKind
    name: str
    namespace: str | None
    body: dict | None = None


def artifact_name(kind: ArtifactKind, graph: GraphSpec) -> str:
    if kind == ArtifactKind.ROUTE:
        return f"{graph.name}{constants.ROUTE_SUFFIX}"
    if kind == ArtifactKind.SERVICE_ACCOUNT:
        return auth_service_account_name(graph)
    return graph.name


def is_subset(desired, observed) -> bool:
    """True when every field in ``desired`` has the same value in ``observed``.

    Fields the server adds (defaults, status, bookkeeping metadata) are
    ignored; lists must match element by element.
    """
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return False
        return all(key in observed and is_subset(value, observed[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(observed, list) or len(desired) != len(observed):
            return False
        return all(is_subset(d, o) for d, o in zip(desired, observed))
    return desired == observed


def _owned_by(obj: dict, owner_uid: str | None) -> bool:
    if owner_uid is None:
        return True
    owners = (obj.get("metadata") or {}).get("ownerReferences") or []
    return any(ref.get("uid") == owner_uid for ref in owners)


def plan(
    desired: DesiredArtifactSet,
    observed: dict[ArtifactKind, dict | None],
    owner_uid: str | None = None,
) -> list[Action]:
    """Diff desired artifacts against observed objects. Pure."""
    actions = []
    for kind, artifact in desired.artifacts.items():
        current = observed.get(kind)
        if current is None:
            actions.append(Action("create", kind, artifact.name, artifact.namespace, artifact.body))
        elif not is_subset(artifact.body, current):
            if artifact.merge:
                actions.append(Action("patch", kind, artifact.name, artifact.namespace, artifact.body))
            else:
                body = copy.deepcopy(artifact.body)
                version = (current.get("metadata") or {}).get("resourceVersion")
                if version:
                    body["metadata"]["resourceVersion"] = version
                actions.append(Action("replace", kind, artifact.name, artifact.namespace, body))

    for kind, current in observed.items():
        if current is None or kind in desired:
            continue
        if not _owned_by(current, owner_uid):
            logger.warning(
                "Not deleting %s %s: it is not owned by this graph",
                kind.value, (current.get("metadata") or {}).get("name"),
            )
            continue
        meta = current.get("metadata") or {}
        actions.append(Action("delete", kind, meta.get("name", ""), meta.get("namespace")))
    return actions


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def _find_condition(obj: dict | None, type_: str) -> dict | None:
    if not obj:
        return None
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == type_:
            return cond
    return None


def _route_host(route: dict | None) -> str | None:
    if not route:
        return None
    for ingress in (route.get("status") or {}).get("ingress") or []:
        if ingress.get("host"):
            return ingress["host"]
    return (route.get("spec") or {}).get("host") or None


def cluster_local_url(graph: GraphSpec, cluster_domain: str) -> str:
    return f"https://{graph.name}.{graph.namespace}.svc.{cluster_domain}"


def compute_status(
    graph: GraphSpec,
    effective: EffectiveConfig,
    observed: dict[ArtifactKind, dict | None],
    cluster_domain: str = constants.DEFAULT_CLUSTER_DOMAIN,
) -> Status:
    """Mirror workload readiness and the reachable URL into graph status."""
    if effective.deployment_mode == constants.SERVERLESS:
        workload = observed.get(ArtifactKind.KNATIVE_SERVICE)
        source = _find_condition(workload, "Ready")
        url = ((workload or {}).get("status") or {}).get("url")
    else:
        workload = observed.get(ArtifactKind.DEPLOYMENT)
        source = _find_condition(workload, "Available")
        if effective.cluster_local:
            url = cluster_local_url(graph, cluster_domain)
        else:
            host = _route_host(observed.get(ArtifactKind.ROUTE))
            url = f"https://{host}" if host else None

    if source is None:
        ready = Condition(READY, "Unknown", reason="WorkloadPending", message="Waiting for the router workload")
    else:
        ready = Condition(
            READY,
            source.get("status", "Unknown"),
            reason=source.get("reason"),
            message=source.get("message"),
        )
    return Status(url=url, deployment_mode=effective.deployment_mode, conditions=[ready])


def failed_status(graph: GraphSpec, error: PermanentError) -> Status:
    return Status(
        url=graph.status.url,
        deployment_mode=graph.status.deployment_mode,
        conditions=[Condition(READY, "False", reason=error.reason, message=str(error))],
    )


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class Reconciler:
    """resolve -> compile -> synthesize -> observe -> apply -> status, for one graph."""

    def __init__(self, client: ClusterClient, config: ControllerConfig):
        self.client = client
        self.config = config
        self.membership = BindingMembership(client)

    def load_config(self) -> ControllerConfig:
        """Overlay cluster ConfigMaps onto the static controller config."""
        config = self.config
        data = self._config_map_data(constants.INFERENCE_SERVICE_CONFIGMAP, config.cluster.namespace)
        if data:
            config = config_from_config_map(data, base=config)
        autoscaler = self._config_map_data(
            constants.KNATIVE_AUTOSCALER_CONFIGMAP, constants.KNATIVE_SERVING_NAMESPACE
        )
        allow_zero = allow_zero_initial_scale(autoscaler) or config.cluster.allow_zero_initial_scale
        return replace(config, cluster=replace(config.cluster, allow_zero_initial_scale=allow_zero))

    def _config_map_data(self, name: str, namespace: str) -> dict:
        obj = self.client.get("ConfigMap", name, namespace)
        return (obj or {}).get("data") or {}

    def observe(self, graph: GraphSpec, mode: str) -> dict[ArtifactKind, dict | None]:
        observed = {}
        for kind in MANAGED_KINDS.get(mode, ()):
            if not self.client.supports(kind.value):
                continue
            observed[kind] = self.client.get(kind.value, artifact_name(kind, graph), graph.namespace)
        return observed

    def apply(self, actions: list[Action], observed: dict[ArtifactKind, dict | None]) -> None:
        for action in actions:
            logger.info("%s %s %s/%s", action.verb, action.kind.value, action.namespace, action.name)
            try:
                if action.verb == "create":
                    observed[action.kind] = self.client.create(action.kind.value, action.body)
                elif action.verb == "replace":
                    observed[action.kind] = self.client.replace(action.kind.value, action.body)
                elif action.verb == "patch":
                    observed[action.kind] = self.client.patch(
                        action.kind.value, action.name, action.namespace, action.body
                    )
                elif action.verb == "delete":
                    self.client.delete(action.kind.value, action.name, action.namespace)
                    observed[action.kind] = None
                else:
                    raise ValueError(f"Unknown action verb: {action.verb}")
            except Exception as e:
                logger.error("Failed to %s %s %s: %s", action.verb, action.kind.value, action.name, e)
                raise

    def reconcile(self, graph: GraphSpec) -> Status:
        if graph.deletion_timestamp:
            self.finalize(graph)
            return graph.status

        try:
            config = self.load_config()
            effective = resolve(graph, config.cluster)
            if effective.deployment_mode == constants.SERVERLESS and not self.client.supports(
                ArtifactKind.KNATIVE_SERVICE.value
            ):
                raise ServerlessModeRejectedError(
                    "It is not possible to use Serverless deployment mode when Knative Services "
                    "are not available"
                )
            descriptor = compile_graph(graph)
            desired = synthesize(graph, effective, descriptor, config)
            if ArtifactKind.ROUTE in desired and not self.client.supports(ArtifactKind.ROUTE.value):
                raise RouteUnavailableError(
                    "Exposed RawDeployment graphs need the route.openshift.io API, which this cluster "
                    "does not serve; label the graph cluster-local instead"
                )
        except ValueError as e:
            return self._fail(graph, PermanentError(str(e)))
        except PermanentError as e:
            return self._fail(graph, e)

        if desired.binding_subject is not None:
            self._ensure_finalizer(graph)

        observed = self.observe(graph, effective.deployment_mode)
        self.apply(plan(desired, observed, graph.uid), observed)
        self._sync_membership(graph, desired)

        status = compute_status(graph, effective, observed, config.cluster.cluster_domain)
        self._write_status(graph, status)
        return status

    def finalize(self, graph: GraphSpec) -> None:
        """Retract the graph's binding membership and release the finalizer."""
        if constants.GRAPH_FINALIZER not in graph.finalizers:
            return
        self.membership.remove(self._subject(graph))
        self._set_finalizers(graph, [f for f in graph.finalizers if f != constants.GRAPH_FINALIZER])
        logger.info("Finalized InferenceGraph %s/%s", graph.namespace, graph.name)

    def _subject(self, graph: GraphSpec) -> BindingSubject:
        return BindingSubject(name=auth_service_account_name(graph), namespace=graph.namespace)

    def _sync_membership(self, graph: GraphSpec, desired: DesiredArtifactSet) -> None:
        if desired.binding_subject is not None:
            self.membership.add(desired.binding_subject)
        elif constants.GRAPH_FINALIZER in graph.finalizers:
            # auth was switched off since the last pass
            self.finalize(graph)

    def _ensure_finalizer(self, graph: GraphSpec) -> None:
        if constants.GRAPH_FINALIZER in graph.finalizers:
            return
        self._set_finalizers(graph, graph.finalizers + [constants.GRAPH_FINALIZER])

    def _set_finalizers(self, graph: GraphSpec, finalizers: list[str]) -> None:
        self.client.patch(GRAPH_KIND, graph.name, graph.namespace, {"metadata": {"finalizers": finalizers}})
        graph.finalizers = list(finalizers)

    def _fail(self, graph: GraphSpec, error: PermanentError) -> Status:
        logger.error("Reconcile of %s/%s failed: %s", graph.namespace, graph.name, error)
        status = failed_status(graph, error)
        self._write_status(graph, status)
        return status

    def _write_status(self, graph: GraphSpec, status: Status) -> None:
        if status.to_dict() == graph.status.to_dict():
            return
        api_version, api_kind, _ = constants.API_VERSIONS[GRAPH_KIND]
        body = status.to_dict()
        # status is merge-patched, so unset fields must be nulled explicitly
        body.setdefault("url", None)
        body.setdefault("deploymentMode", None)
        self.client.update_status(GRAPH_KIND, {
            "apiVersion": api_version,
            "kind": api_kind,
            "metadata": {"name": graph.name, "namespace": graph.namespace},
            "status": body,
        })
        graph.status = status
