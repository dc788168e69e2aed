from __future__ import annotations

from typing import Any


class HostpathBackupError(RuntimeError):
    """Base class for every failure a backup or restore run can report."""


class KubernetesAuthenticationError(HostpathBackupError):
    """Raised when Kubernetes authentication configuration fails."""


class KubernetesDiscoveryError(HostpathBackupError):
    """Raised when PVC discovery cannot safely continue."""


class NotFoundError(KubernetesDiscoveryError):
    """Raised when a release has no claims or an archive names an unknown claim."""


class UnboundClaimError(KubernetesDiscoveryError):
    """Raised when a claim is not bound to a volume."""


class UnresolvedPathError(KubernetesDiscoveryError):
    """Raised when a volume exposes no host-reachable path."""


class UnsupportedWorkloadKindError(HostpathBackupError):
    """Raised when a workload kind has no scaling implementation."""


class ScaleError(HostpathBackupError):
    """Raised when a replica update is rejected by the cluster."""


class ScaleTimeoutError(HostpathBackupError):
    """Raised when workloads do not reach zero ready replicas before the deadline."""


class OperationCancelledError(HostpathBackupError):
    """Raised when an external cancellation request is observed."""


class PathTraversalError(HostpathBackupError):
    """Raised when an archive entry would be written outside the target directory."""


class NameMismatchError(HostpathBackupError):
    """Raised when an archive name does not match the naming template."""


class RemoteCredentialsError(HostpathBackupError):
    """Raised when the remote store credentials file is missing or invalid."""


class RotationError(HostpathBackupError):
    def __init__(self, *, prefix: str, key: str, deleted: list[str], cause: Exception) -> None:
        super().__init__(
            f"rotation of prefix '{prefix}' stopped at '{key}' after deleting {len(deleted)} object(s): "
            f"{_error_message(cause)}"
        )
        self.prefix = prefix
        self.deleted = list(deleted)
        self.cause = cause


class PartialFailureError(HostpathBackupError):
    def __init__(self, message: str, *, report: Any) -> None:
        super().__init__(message)
        self.report = report


def _error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
