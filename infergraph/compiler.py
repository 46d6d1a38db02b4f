"""Graph compiler: GraphSpec -> canonical descriptor string, and back."""

from __future__ import annotations

import json
import logging

from infergraph import constants
from infergraph.errors import MalformedDescriptorError
from infergraph.manifests import nodes_from_dict, resources_from_dict
from infergraph.models import GraphSpec, ResourceRequirements, RouterNode, Step

logger = logging.getLogger(__name__)

# Field order of a serialized step. Changing it changes every descriptor and
# therefore every router revision, so it is fixed here.
STEP_FIELDS = (
    ("name", "name"),
    ("nodeName", "node_name"),
    ("serviceName", "service_name"),
    ("serviceUrl", "service_url"),
    ("data", "data"),
    ("weight", "weight"),
    ("condition", "condition"),
    ("dependency", "dependency"),
)


def _canonical(value):
    """Recursively sort mapping keys and drop empty values."""
    if isinstance(value, dict):
        out = {}
        for key in sorted(value):
            item = _canonical(value[key])
            if item in (None, "", [], {}):
                continue
            out[key] = item
        return out
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def _step_to_dict(step: Step) -> dict:
    out = {}
    for key, attr in STEP_FIELDS:
        value = getattr(step, attr)
        if value is None or value == "":
            continue
        out[key] = value
    return out


def _node_to_dict(node: RouterNode) -> dict:
    out: dict = {"routerType": node.router_type.value}
    steps = [_step_to_dict(s) for s in node.steps]
    if steps:
        out["steps"] = steps
    return out


def _ordered_node_names(nodes: dict[str, RouterNode]) -> list[str]:
    names = sorted(n for n in nodes if n != constants.GRAPH_ROOT_NODE)
    if constants.GRAPH_ROOT_NODE in nodes:
        names.insert(0, constants.GRAPH_ROOT_NODE)
    return names


def _resources_to_dict(resources: ResourceRequirements) -> dict:
    return _canonical(resources.to_dict())


def compile_graph(graph: GraphSpec) -> str:
    """Serialize the routing graph into the router's ``--graph-json`` argument.

    The output is byte-identical for semantically equal graphs regardless of
    how their mappings were built: root is emitted first, the remaining nodes
    by name, steps with a fixed field order, and every nested mapping with
    sorted keys. Empty fields are omitted entirely.
    """
    nodes = {name: _node_to_dict(graph.nodes[name]) for name in _ordered_node_names(graph.nodes)}
    descriptor: dict = {"nodes": nodes}

    resources = _resources_to_dict(graph.resources)
    if resources:
        descriptor["resources"] = resources
    affinity = _canonical(graph.affinity or {})
    if affinity:
        descriptor["affinity"] = affinity
    tolerations = [_canonical(t) for t in graph.tolerations]
    if tolerations:
        descriptor["tolerations"] = tolerations

    # sort_keys would reorder the node mapping; ordering is handled above.
    return json.dumps(descriptor, separators=(",", ":"), ensure_ascii=False)


def parse_descriptor(text: str, name: str = "", namespace: str = "default") -> GraphSpec:
    """Parse a descriptor produced by ``compile_graph`` back into a GraphSpec.

    Raises ``MalformedDescriptorError`` when the text is not a JSON object
    with a ``nodes`` mapping, or a node cannot be parsed.
    """
    try:
        raw = json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedDescriptorError(f"graph descriptor is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict) or not isinstance(raw.get("nodes"), dict):
        raise MalformedDescriptorError("graph descriptor must be an object with a 'nodes' mapping")

    try:
        nodes = nodes_from_dict(raw["nodes"])
        resources = resources_from_dict(raw.get("resources"))
    except (AttributeError, TypeError, ValueError) as exc:
        raise MalformedDescriptorError(f"graph descriptor has an invalid node: {exc}") from exc

    logger.debug("Parsed descriptor with %d node(s)", len(nodes))
    return GraphSpec(
        name=name,
        namespace=namespace,
        nodes=nodes,
        resources=resources,
        affinity=raw.get("affinity") or None,
        tolerations=list(raw.get("tolerations") or []),
    )
