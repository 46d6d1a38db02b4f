"""Tests for infergraph.compiler — descriptor determinism and parsing."""

import json

import pytest

from conftest import make_graph
from infergraph.compiler import compile_graph, parse_descriptor
from infergraph.errors import MalformedDescriptorError, PermanentError
from infergraph.models import ResourceRequirements, RouterNode, RouterType, Step


def _nodes(order):
    nodes = {
        "root": RouterNode(RouterType.SEQUENCE, [Step(node_name="split"), Step(service_name="post")]),
        "split": RouterNode(
            RouterType.SPLITTER,
            [Step(service_name="a", weight=30), Step(service_name="b", weight=70)],
        ),
        "ensemble": RouterNode(RouterType.ENSEMBLE, [Step(name="x", service_name="x")]),
    }
    return {name: nodes[name] for name in order}


class TestCompileGraph:
    def test_single_url_step(self):
        graph = make_graph(nodes={
            "root": RouterNode(RouterType.SEQUENCE, [Step(service_url="http://someservice.exmaple.com")]),
        })
        assert compile_graph(graph) == (
            '{"nodes":{"root":{"routerType":"Sequence",'
            '"steps":[{"serviceUrl":"http://someservice.exmaple.com"}]}}}'
        )

    def test_independent_of_node_insertion_order(self):
        a = make_graph(nodes=_nodes(["root", "split", "ensemble"]))
        b = make_graph(nodes=_nodes(["ensemble", "split", "root"]))
        assert compile_graph(a) == compile_graph(b)

    def test_root_first_then_sorted(self):
        out = json.loads(compile_graph(make_graph(nodes=_nodes(["split", "ensemble", "root"]))))
        assert list(out["nodes"]) == ["root", "ensemble", "split"]

    def test_step_field_order(self):
        graph = make_graph(nodes={
            "root": RouterNode(RouterType.SWITCH, [
                Step(dependency="Hard", condition="x > 1", service_name="svc", name="first", data="$request"),
            ]),
        })
        step = json.loads(compile_graph(graph))["nodes"]["root"]["steps"][0]
        assert list(step) == ["name", "serviceName", "data", "condition", "dependency"]

    def test_zero_weight_kept(self):
        graph = make_graph(nodes={
            "root": RouterNode(RouterType.SPLITTER, [
                Step(service_name="a", weight=100), Step(service_name="b", weight=0),
            ]),
        })
        steps = json.loads(compile_graph(graph))["nodes"]["root"]["steps"]
        assert steps[1] == {"serviceName": "b", "weight": 0}

    def test_empty_directives_omitted(self):
        out = json.loads(compile_graph(make_graph()))
        assert set(out) == {"nodes"}

    def test_resources_affinity_tolerations_included(self):
        graph = make_graph(
            resources=ResourceRequirements(requests={"memory": "1Gi", "cpu": "1"}, limits={"cpu": "2"}),
            affinity={"podAffinity": {"b": 1, "a": {}}},
            tolerations=[{"key": "gpu", "operator": "Exists"}],
        )
        text = compile_graph(graph)
        out = json.loads(text)
        assert list(out) == ["nodes", "resources", "affinity", "tolerations"]
        assert out["resources"] == {"limits": {"cpu": "2"}, "requests": {"cpu": "1", "memory": "1Gi"}}
        assert '"requests":{"cpu":"1","memory":"1Gi"}' in text
        # nested empty mapping dropped
        assert out["affinity"] == {"podAffinity": {"b": 1}}
        assert out["tolerations"] == [{"key": "gpu", "operator": "Exists"}]

    def test_nested_mapping_order_does_not_matter(self):
        a = make_graph(affinity={"x": {"k1": "v", "k2": "w"}})
        b = make_graph(affinity={"x": {"k2": "w", "k1": "v"}})
        assert compile_graph(a) == compile_graph(b)

    def test_compact_separators(self):
        assert " " not in compile_graph(make_graph())


class TestParseDescriptor:
    def test_round_trip(self):
        graph = make_graph(
            nodes=_nodes(["root", "split", "ensemble"]),
            resources=ResourceRequirements(requests={"cpu": "1"}),
            tolerations=[{"key": "gpu"}],
        )
        parsed = parse_descriptor(compile_graph(graph))
        assert parsed.nodes == graph.nodes
        assert parsed.resources == graph.resources
        assert parsed.tolerations == graph.tolerations
        assert compile_graph(parsed) == compile_graph(graph)

    def test_invalid_json(self):
        with pytest.raises(MalformedDescriptorError):
            parse_descriptor("{not json")

    def test_missing_nodes(self):
        with pytest.raises(MalformedDescriptorError, match="nodes"):
            parse_descriptor('{"resources":{}}')

    def test_unknown_router_type(self):
        with pytest.raises(MalformedDescriptorError, match="routerType"):
            parse_descriptor('{"nodes":{"root":{"routerType":"Broadcast"}}}')

    def test_is_permanent(self):
        with pytest.raises(PermanentError) as exc_info:
            parse_descriptor("[]")
        assert exc_info.value.reason == "MalformedDescriptor"
