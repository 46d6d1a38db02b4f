"""Membership of per-graph identities in the shared auth-delegator binding.

The ClusterRoleBinding is cluster-scoped and edited by every auth-enabled
graph, so each change is a read-modify-write carrying the observed
resourceVersion, retried when another writer got there first.
"""

from __future__ import annotations

import copy
import logging
import time

from infergraph import constants
from infergraph.cluster import ClusterClient
from infergraph.errors import ConflictError
from infergraph.models import BindingSubject

logger = logging.getLogger(__name__)

BINDING_KIND = "ClusterRoleBinding"


def new_binding(subjects: list[dict]) -> dict:
    api_version, api_kind, _ = constants.API_VERSIONS[BINDING_KIND]
    return {
        "apiVersion": api_version,
        "kind": api_kind,
        "metadata": {"name": constants.AUTH_BINDING_NAME},
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": constants.AUTH_DELEGATOR_ROLE,
        },
        "subjects": subjects,
    }


class BindingMembership:
    """Add or remove one subject without disturbing anyone else's."""

    def __init__(
        self,
        client: ClusterClient,
        binding_name: str = constants.AUTH_BINDING_NAME,
        retries: int = 5,
        delay: float = 0.1,
    ):
        self.client = client
        self.binding_name = binding_name
        self.retries = retries
        self.delay = delay

    def members(self) -> list[dict]:
        binding = self.client.get(BINDING_KIND, self.binding_name)
        if binding is None:
            return []
        return list(binding.get("subjects") or [])

    def add(self, subject: BindingSubject) -> bool:
        """Ensure ``subject`` is a member. Returns True if a write was issued."""
        return self._with_retry("add", subject, self._try_add)

    def remove(self, subject: BindingSubject) -> bool:
        """Ensure ``subject`` is not a member. Returns True if a write was issued."""
        return self._with_retry("remove", subject, self._try_remove)

    def _try_add(self, subject: BindingSubject) -> bool:
        binding = self.client.get(BINDING_KIND, self.binding_name)
        if binding is None:
            body = new_binding([subject.to_dict()])
            body["metadata"]["name"] = self.binding_name
            self.client.create(BINDING_KIND, body)
            logger.info("Created binding %s with %s/%s", self.binding_name, subject.namespace, subject.name)
            return True

        subjects = list(binding.get("subjects") or [])
        if any(subject.matches(s) for s in subjects):
            return False
        updated = copy.deepcopy(binding)
        updated["subjects"] = subjects + [subject.to_dict()]
        self.client.replace(BINDING_KIND, updated)
        logger.info("Added %s/%s to binding %s", subject.namespace, subject.name, self.binding_name)
        return True

    def _try_remove(self, subject: BindingSubject) -> bool:
        binding = self.client.get(BINDING_KIND, self.binding_name)
        if binding is None:
            return False
        subjects = list(binding.get("subjects") or [])
        kept = [s for s in subjects if not subject.matches(s)]
        if len(kept) == len(subjects):
            return False
        updated = copy.deepcopy(binding)
        updated["subjects"] = kept
        self.client.replace(BINDING_KIND, updated)
        logger.info("Removed %s/%s from binding %s", subject.namespace, subject.name, self.binding_name)
        return True

    def _with_retry(self, action: str, subject: BindingSubject, attempt_fn) -> bool:
        delay = self.delay
        for attempt in range(self.retries):
            try:
                return attempt_fn(subject)
            except ConflictError as e:
                logger.debug(
                    "Binding %s attempt %d/%d conflicted: %s",
                    action,
                    attempt + 1,
                    self.retries,
                    e,
                )
                if attempt == self.retries - 1:
                    raise
                time.sleep(delay)
                delay *= 2
        return False
