"""Error taxonomy: admission rejections, transient and permanent reconcile failures."""

from __future__ import annotations


class InfergraphError(Exception):
    """Base class for all errors raised by the pipeline."""


class RejectionError(InfergraphError):
    """A spec violates an admission rule. Never retried."""

    def __init__(self, category: str, message: str):
        super().__init__(message)
        self.category = category
        self.message = message

    def __repr__(self) -> str:
        return f"RejectionError({self.category!r}, {self.message!r})"


class TransientError(InfergraphError):
    """Reconcile failure that the caller should retry with backoff."""


class ConflictError(TransientError):
    """A version-checked write lost against a concurrent writer."""


class PlatformUnavailableError(TransientError):
    """The cluster API could not be reached or answered with a server error."""


class PermanentError(InfergraphError):
    """Reconcile failure that needs a spec or cluster change to resolve."""

    reason = "ReconcileFailed"


class MalformedDescriptorError(PermanentError):
    reason = "MalformedDescriptor"


class UnsupportedModeError(PermanentError):
    reason = "UnsupportedDeploymentMode"


class ServerlessModeRejectedError(PermanentError):
    reason = "ServerlessModeRejected"


class RouteUnavailableError(PermanentError):
    reason = "RouteUnavailable"
