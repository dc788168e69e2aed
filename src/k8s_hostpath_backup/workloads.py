from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from kubernetes import client

from .errors import UnsupportedWorkloadKindError
from .models import WorkloadRef

DEFAULT_DESIRED_REPLICAS = 1


@dataclass(frozen=True)
class WorkloadKind:
    """Scaling capabilities of one apps/v1 controller kind.

    Every kind exposes the same three operations so callers never branch on the
    kind name: read the desired replica count, set it through the scale
    subresource, and read the ready replica count.
    """

    name: str
    read_method: str
    scale_method: str
    status_method: str

    def read(self, apps_api: client.AppsV1Api, *, namespace: str, name: str) -> Any:
        return getattr(apps_api, self.read_method)(name=name, namespace=namespace)

    def read_desired_replicas(self, apps_api: client.AppsV1Api, *, namespace: str, name: str) -> int:
        return desired_replicas(self.read(apps_api, namespace=namespace, name=name))

    def set_replicas(self, apps_api: client.AppsV1Api, *, namespace: str, name: str, replicas: int) -> None:
        getattr(apps_api, self.scale_method)(
            name=name,
            namespace=namespace,
            body={"spec": {"replicas": replicas}},
        )

    def read_ready_replicas(self, apps_api: client.AppsV1Api, *, namespace: str, name: str) -> int:
        workload = getattr(apps_api, self.status_method)(name=name, namespace=namespace)
        status = getattr(workload, "status", None)
        ready = getattr(status, "ready_replicas", None) if status is not None else None
        return int(ready or 0)

    def to_ref(self, workload: Any, *, namespace: str) -> WorkloadRef:
        metadata = getattr(workload, "metadata", None)
        return WorkloadRef(
            kind=self.name,
            name=getattr(metadata, "name", None) or "",
            namespace=getattr(metadata, "namespace", None) or namespace,
            original_replicas=desired_replicas(workload),
        )


DEPLOYMENT = WorkloadKind(
    name="Deployment",
    read_method="read_namespaced_deployment",
    scale_method="patch_namespaced_deployment_scale",
    status_method="read_namespaced_deployment_status",
)
STATEFUL_SET = WorkloadKind(
    name="StatefulSet",
    read_method="read_namespaced_stateful_set",
    scale_method="patch_namespaced_stateful_set_scale",
    status_method="read_namespaced_stateful_set_status",
)

WORKLOAD_KINDS: dict[str, WorkloadKind] = {kind.name: kind for kind in (DEPLOYMENT, STATEFUL_SET)}


def workload_kind(name: str) -> WorkloadKind:
    try:
        return WORKLOAD_KINDS[name]
    except KeyError:
        supported = ", ".join(sorted(WORKLOAD_KINDS))
        raise UnsupportedWorkloadKindError(
            f"unsupported workload kind: {name or 'unknown'} (supported: {supported})"
        ) from None


def desired_replicas(workload: Any) -> int:
    spec = getattr(workload, "spec", None)
    replicas = getattr(spec, "replicas", None) if spec is not None else None
    if replicas is None:
        return DEFAULT_DESIRED_REPLICAS
    return int(replicas)


def unique_workloads(workloads: list[WorkloadRef | None]) -> list[WorkloadRef]:
    seen: set[tuple[str, str, str]] = set()
    result: list[WorkloadRef] = []
    for workload in workloads:
        if workload is None or workload.identity in seen:
            continue
        seen.add(workload.identity)
        result.append(workload)
    return result
