"""Error types raised on the reconcile path."""

from typing import Optional

from kubernetes.client.rest import ApiException


class ControllerError(Exception):
    """Base class for every error the controller raises itself."""


class KubeApiError(ControllerError):
    """A call to the Kubernetes API failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @classmethod
    def from_api_exception(cls, action: str, e: ApiException) -> "KubeApiError":
        """Translate a client ApiException, picking ConflictError for 409."""
        error_cls = ConflictError if e.status == 409 else KubeApiError
        return error_cls(f"{action} failed: {e.status} {e.reason}", status=e.status)


class ConflictError(KubeApiError):
    """Optimistic concurrency check failed (stale resourceVersion)."""


class FinalizerError(ControllerError):
    """The finalizer gate could not complete apply, cleanup or a finalizer edit."""


class UnsupportedStateError(ControllerError):
    """The desired state has no convergence semantics yet."""


class InvalidStatusField(ControllerError):
    """A status patch named a field the status schema does not declare."""


class CrdNotInstalled(ControllerError):
    """The watched custom resource type is not registered in the cluster."""


def is_conflict(error: BaseException) -> bool:
    """Return True if error or anything in its cause chain is a conflict."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        if isinstance(current, ConflictError):
            return True
        if isinstance(current, ApiException) and current.status == 409:
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def error_kind(error: BaseException) -> str:
    """Short label describing an error, used for metrics."""
    if is_conflict(error):
        return "conflict"
    if isinstance(error, FinalizerError) and error.__cause__ is not None:
        return f"finalizer:{type(error.__cause__).__name__}"
    return type(error).__name__
