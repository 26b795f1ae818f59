from __future__ import annotations


class ReconcileError(Exception):
    """Base class for failures that abort a reconcile pass."""


class InvalidSelector(ReconcileError):
    """Raised when a policy's label selector is structurally invalid."""


class StoreError(ReconcileError):
    """Raised when a resource store round trip fails.

    ``status`` carries the HTTP status code when the failure came from the
    Kubernetes API, and ``None`` for transport-level errors.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFound(StoreError):
    """Raised when the requested object does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=404)


class DeadlineExceeded(ReconcileError):
    """Raised when a reconcile pass runs past its deadline."""


class PassCancelled(ReconcileError):
    """Raised when the controller stops while a reconcile pass is running."""


class InvalidSpec(ReconcileError):
    """Raised when a policy spec field has a value of the wrong type."""
