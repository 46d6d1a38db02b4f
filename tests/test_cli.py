"""Tests for the infergraph CLI — validate, compile, render and the cluster commands."""

import argparse
import json
from unittest.mock import patch

import pytest
import yaml

from conftest import FakeCluster, graph_manifest
from infergraph import constants
from infergraph.__main__ import cmd_apply, cmd_compile, cmd_delete, cmd_render, cmd_status, cmd_validate, main

RAW = {constants.DEPLOYMENT_MODE_ANNOTATION: constants.RAW_DEPLOYMENT}


def _write(tmp_path, name, obj):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(obj))
    return str(path)


def _service_manifest(name="sklearn-iris"):
    return {
        "apiVersion": constants.SERVICE_API_VERSION,
        "kind": "InferenceService",
        "metadata": {"name": name, "namespace": "default"},
        "spec": {"predictor": {"sklearn": {"storageUri": "gs://kfserving-examples/models/sklearn/iris"}}},
    }


def _validate_args(file, previous=None, delete=False, graphs=None) -> argparse.Namespace:
    return argparse.Namespace(file=file, previous=previous, delete=delete, graphs=graphs, config=None)


def _render_args(file, allow_zero=False) -> argparse.Namespace:
    return argparse.Namespace(file=file, config=None, allow_zero_initial_scale=allow_zero)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("POD_NAMESPACE", raising=False)
    monkeypatch.delenv("CLUSTER_DOMAIN", raising=False)


class TestValidate:
    def test_valid_graph(self, tmp_path, capsys):
        cmd_validate(_validate_args(_write(tmp_path, "g.yaml", graph_manifest())))
        assert "default/my-graph is valid." in capsys.readouterr().out

    def test_valid_service(self, tmp_path, capsys):
        cmd_validate(_validate_args(_write(tmp_path, "s.yaml", _service_manifest())))
        assert "default/sklearn-iris is valid." in capsys.readouterr().out

    def test_invalid_name(self, tmp_path, capsys):
        path = _write(tmp_path, "g.yaml", graph_manifest(name="My_Graph"))
        with pytest.raises(SystemExit, match="1"):
            cmd_validate(_validate_args(path))
        assert "[name-format]" in capsys.readouterr().err

    def test_mode_change_rejected(self, tmp_path, capsys):
        previous = graph_manifest()
        previous["status"] = {"deploymentMode": constants.SERVERLESS}
        path = _write(tmp_path, "g.yaml", graph_manifest(annotations=RAW))
        with pytest.raises(SystemExit, match="1"):
            cmd_validate(_validate_args(path, previous=_write(tmp_path, "prev.yaml", previous)))
        assert "[immutable-field]" in capsys.readouterr().err

    def test_delete_referenced_service(self, tmp_path, capsys):
        graphs = [
            _write(tmp_path, "g1.yaml", graph_manifest(name="g1", steps=[{"serviceName": "sklearn-iris"}])),
            _write(tmp_path, "g2.yaml", graph_manifest(name="g2")),
        ]
        path = _write(tmp_path, "s.yaml", _service_manifest())
        with pytest.raises(SystemExit, match="1"):
            cmd_validate(_validate_args(path, delete=True, graphs=graphs))
        err = capsys.readouterr().err
        assert "[referenced-by-graph]" in err
        assert "InferenceService [sklearn-iris] is being used in the following InferenceGraphs: g1" in err

    def test_unreadable_manifest(self, tmp_path, capsys):
        with pytest.raises(SystemExit, match="1"):
            cmd_validate(_validate_args(str(tmp_path / "missing.yaml")))
        assert "cannot read" in capsys.readouterr().err


class TestCompile:
    def test_prints_descriptor(self, tmp_path, capsys):
        cmd_compile(argparse.Namespace(file=_write(tmp_path, "g.yaml", graph_manifest())))
        descriptor = json.loads(capsys.readouterr().out)
        assert descriptor["nodes"]["root"]["routerType"] == "Sequence"
        assert descriptor["nodes"]["root"]["steps"][0]["serviceUrl"] == "http://someservice.example.com"

    def test_rejects_service(self, tmp_path, capsys):
        with pytest.raises(SystemExit, match="1"):
            cmd_compile(argparse.Namespace(file=_write(tmp_path, "s.yaml", _service_manifest())))
        assert "is not an InferenceGraph" in capsys.readouterr().err


class TestRender:
    def test_serverless(self, tmp_path, capsys):
        cmd_render(_render_args(_write(tmp_path, "g.yaml", graph_manifest())))
        docs = list(yaml.safe_load_all(capsys.readouterr().out))
        assert [d["kind"] for d in docs] == ["Service"]
        assert docs[0]["apiVersion"] == "serving.knative.dev/v1"

    def test_raw_with_auth(self, tmp_path, capsys):
        manifest = graph_manifest(annotations={**RAW, constants.ENABLE_AUTH_ANNOTATION: "true"})
        cmd_render(_render_args(_write(tmp_path, "g.yaml", manifest)))
        docs = list(yaml.safe_load_all(capsys.readouterr().out))
        assert [d["kind"] for d in docs] == [
            "Deployment", "Service", "HorizontalPodAutoscaler", "Route", "ServiceAccount", "ClusterRoleBinding",
        ]
        assert docs[-1]["subjects"][0]["name"] == "my-graph-auth-verifier"

    def test_allow_zero_initial_scale_flag(self, tmp_path, capsys):
        manifest = graph_manifest(annotations={constants.INITIAL_SCALE_ANNOTATION: "0"})
        cmd_render(_render_args(_write(tmp_path, "g.yaml", manifest), allow_zero=True))
        ksvc = next(yaml.safe_load_all(capsys.readouterr().out))
        assert ksvc["spec"]["template"]["metadata"]["annotations"][constants.INITIAL_SCALE_ANNOTATION] == "0"

    def test_model_mesh_fails(self, tmp_path, capsys):
        manifest = graph_manifest(annotations={constants.DEPLOYMENT_MODE_ANNOTATION: constants.MODEL_MESH})
        with pytest.raises(SystemExit, match="1"):
            cmd_render(_render_args(_write(tmp_path, "g.yaml", manifest)))
        assert "ModelMesh" in capsys.readouterr().err


class TestClusterCommands:
    @patch("infergraph.kube_client.KubeClusterClient")
    def test_apply_creates_and_reconciles(self, mock_client_cls, tmp_path, capsys):
        cluster = FakeCluster()
        mock_client_cls.return_value = cluster
        manifest = graph_manifest(annotations=RAW, uid=None)

        cmd_apply(argparse.Namespace(file=_write(tmp_path, "g.yaml", manifest), config=None))

        assert cluster.calls[0] == ("create", "InferenceGraph", "my-graph")
        assert ("create", "Deployment", "my-graph") in cluster.calls
        stored = cluster.get("InferenceGraph", "my-graph", "default")
        assert stored["status"]["deploymentMode"] == constants.RAW_DEPLOYMENT
        assert "my-graph" in capsys.readouterr().out

    @patch("infergraph.kube_client.KubeClusterClient")
    def test_apply_rejects_mode_change(self, mock_client_cls, tmp_path, capsys):
        cluster = FakeCluster()
        stored = graph_manifest()
        stored["status"] = {"deploymentMode": constants.SERVERLESS}
        cluster.seed("InferenceGraph", stored)
        mock_client_cls.return_value = cluster

        with pytest.raises(SystemExit, match="1"):
            cmd_apply(argparse.Namespace(file=_write(tmp_path, "g.yaml", graph_manifest(annotations=RAW)),
                                         config=None))
        assert "[immutable-field]" in capsys.readouterr().err
        assert cluster.calls == []

    @patch("infergraph.kube_client.KubeClusterClient")
    def test_status(self, mock_client_cls, capsys):
        cluster = FakeCluster()
        stored = graph_manifest()
        stored["status"] = {
            "url": "https://my-graph.default.example.com",
            "deploymentMode": constants.SERVERLESS,
            "conditions": [{"type": "Ready", "status": "True"}],
        }
        cluster.seed("InferenceGraph", stored)
        mock_client_cls.return_value = cluster

        cmd_status(argparse.Namespace(name="my-graph", namespace="default"))
        out = capsys.readouterr().out
        assert "https://my-graph.default.example.com" in out
        assert "Ready" in out

    @patch("infergraph.kube_client.KubeClusterClient")
    def test_status_missing(self, mock_client_cls, capsys):
        mock_client_cls.return_value = FakeCluster()
        with pytest.raises(SystemExit, match="1"):
            cmd_status(argparse.Namespace(name="nope", namespace="default"))
        assert "no InferenceGraph 'default/nope' found" in capsys.readouterr().err

    @patch("infergraph.kube_client.KubeClusterClient")
    def test_delete_retracts_membership(self, mock_client_cls, capsys):
        from infergraph.auth import BINDING_KIND, new_binding

        cluster = FakeCluster()
        stored = graph_manifest(annotations={**RAW, constants.ENABLE_AUTH_ANNOTATION: "true"})
        stored["metadata"]["finalizers"] = [constants.GRAPH_FINALIZER]
        cluster.seed("InferenceGraph", stored)
        cluster.seed(BINDING_KIND, new_binding([
            {"kind": "ServiceAccount", "name": "my-graph-auth-verifier", "namespace": "default"},
        ]))
        mock_client_cls.return_value = cluster

        cmd_delete(argparse.Namespace(name="my-graph", namespace="default", config=None))

        assert cluster.get(BINDING_KIND, constants.AUTH_BINDING_NAME)["subjects"] == []
        assert "Deleted InferenceGraph default/my-graph." in capsys.readouterr().out


class TestMain:
    def test_dispatches_subcommand(self, tmp_path, capsys):
        path = _write(tmp_path, "g.yaml", graph_manifest())
        with patch("sys.argv", ["infergraph", "validate", path]):
            main()
        assert "is valid." in capsys.readouterr().out

    def test_requires_subcommand(self):
        with patch("sys.argv", ["infergraph"]):
            with pytest.raises(SystemExit):
                main()
