"""Tests for infergraph.auth — shared binding membership with optimistic retries."""

from unittest.mock import patch

import pytest

from conftest import FakeCluster
from infergraph import constants
from infergraph.auth import BINDING_KIND, BindingMembership, new_binding
from infergraph.errors import ConflictError
from infergraph.models import BindingSubject

A = BindingSubject(name="graph-a-auth-verifier", namespace="team-a")
B = BindingSubject(name="graph-b-auth-verifier", namespace="team-b")


def _binding(cluster):
    return cluster.get(BINDING_KIND, constants.AUTH_BINDING_NAME)


class TestAdd:
    def test_creates_missing_binding(self, cluster):
        assert BindingMembership(cluster).add(A) is True
        binding = _binding(cluster)
        assert binding["subjects"] == [A.to_dict()]
        assert binding["roleRef"]["name"] == "system:auth-delegator"
        assert cluster.calls == [("create", BINDING_KIND, constants.AUTH_BINDING_NAME)]

    def test_two_specs_two_entries(self, cluster):
        membership = BindingMembership(cluster)
        membership.add(A)
        membership.add(B)
        assert membership.members() == [A.to_dict(), B.to_dict()]

    def test_add_is_idempotent(self, cluster):
        membership = BindingMembership(cluster)
        membership.add(A)
        cluster.calls.clear()
        assert membership.add(A) is False
        assert cluster.calls == []
        assert len(_binding(cluster)["subjects"]) == 1

    def test_keeps_foreign_subjects(self, cluster):
        foreign = {"kind": "User", "name": "admin", "apiGroup": "rbac.authorization.k8s.io"}
        cluster.seed(BINDING_KIND, new_binding([foreign]))
        BindingMembership(cluster).add(A)
        assert _binding(cluster)["subjects"] == [foreign, A.to_dict()]

    def test_write_carries_resource_version(self, cluster):
        cluster.seed(BINDING_KIND, new_binding([]))
        seen = []
        original = cluster.replace

        def spy(kind, body):
            seen.append(body["metadata"].get("resourceVersion"))
            return original(kind, body)

        cluster.replace = spy
        BindingMembership(cluster).add(A)
        assert seen == ["1"]


class TestRemove:
    def test_leaves_other_entry(self, cluster):
        membership = BindingMembership(cluster)
        membership.add(A)
        membership.add(B)
        assert membership.remove(A) is True
        assert _binding(cluster)["subjects"] == [B.to_dict()]

    def test_members_of_absent_binding(self, cluster):
        assert BindingMembership(cluster).members() == []

    def test_absent_binding_is_noop(self, cluster):
        assert BindingMembership(cluster).remove(A) is False
        assert cluster.calls == []

    def test_absent_subject_is_noop(self, cluster):
        membership = BindingMembership(cluster)
        membership.add(B)
        cluster.calls.clear()
        assert membership.remove(A) is False
        assert cluster.calls == []

    def test_same_name_other_namespace_kept(self, cluster):
        membership = BindingMembership(cluster)
        other = BindingSubject(name=A.name, namespace="elsewhere")
        membership.add(A)
        membership.add(other)
        membership.remove(A)
        assert _binding(cluster)["subjects"] == [other.to_dict()]


class TestConflicts:
    @patch("infergraph.auth.time.sleep")
    def test_retries_after_conflict(self, mock_sleep, cluster):
        cluster.seed(BINDING_KIND, new_binding([B.to_dict()]))
        cluster.conflicts[BINDING_KIND] = 2
        assert BindingMembership(cluster, delay=0.5).add(A) is True
        assert _binding(cluster)["subjects"] == [B.to_dict(), A.to_dict()]
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0]

    @patch("infergraph.auth.time.sleep")
    def test_concurrent_writer_not_lost(self, mock_sleep):
        cluster = FakeCluster()
        cluster.seed(BINDING_KIND, new_binding([]))
        original_get = cluster.get
        raced = []

        def racing_get(kind, name, namespace=None):
            obj = original_get(kind, name, namespace)
            if kind == BINDING_KIND and not raced:
                # another graph's controller writes between our read and write
                raced.append(True)
                updated = original_get(kind, name, namespace)
                updated["subjects"] = [B.to_dict()]
                cluster.seed(kind, updated)
            return obj

        cluster.get = racing_get
        BindingMembership(cluster).add(A)
        assert _binding(cluster)["subjects"] == [B.to_dict(), A.to_dict()]
        mock_sleep.assert_called_once()

    @patch("infergraph.auth.time.sleep")
    def test_gives_up_after_retries(self, mock_sleep, cluster):
        cluster.seed(BINDING_KIND, new_binding([]))
        cluster.conflicts[BINDING_KIND] = 10
        with pytest.raises(ConflictError):
            BindingMembership(cluster, retries=3).add(A)
        assert mock_sleep.call_count == 2
