"""Abstract boundary between the pipeline and the Kubernetes API."""

from __future__ import annotations

from abc import ABC, abstractmethod


class ClusterClient(ABC):
    """Minimal object store the reconciler needs.

    Kinds are the managed-kind strings of ``constants.API_VERSIONS``
    ("KnativeService", "Deployment", "ClusterRoleBinding", ...). Bodies are
    plain dicts in Kubernetes wire shape. Cluster-scoped kinds ignore
    ``namespace``.

    Implementations raise ``ConflictError`` when a write carrying a stale
    ``metadata.resourceVersion`` loses, and ``PlatformUnavailableError`` when
    the API cannot be reached.
    """

    @abstractmethod
    def get(self, kind: str, name: str, namespace: str | None = None) -> dict | None:
        """Return the object, or None if it does not exist."""
        ...

    @abstractmethod
    def list(self, kind: str, namespace: str | None = None) -> list[dict]:
        ...

    @abstractmethod
    def create(self, kind: str, body: dict) -> dict:
        ...

    @abstractmethod
    def replace(self, kind: str, body: dict) -> dict:
        """Full update. Version-checked when the body carries a resourceVersion."""
        ...

    @abstractmethod
    def patch(self, kind: str, name: str, namespace: str | None, patch: dict) -> dict:
        """JSON merge patch."""
        ...

    @abstractmethod
    def delete(self, kind: str, name: str, namespace: str | None = None) -> None:
        """Delete the object. Deleting an absent object is not an error."""
        ...

    @abstractmethod
    def update_status(self, kind: str, body: dict) -> dict:
        ...

    def supports(self, kind: str) -> bool:
        """Whether the cluster serves the API for ``kind``. Override per client."""
        return True
