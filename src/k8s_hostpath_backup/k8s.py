from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import tempfile
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import (
    KubernetesAuthenticationError,
    KubernetesDiscoveryError,
    NotFoundError,
    UnboundClaimError,
    UnresolvedPathError,
    _error_message,
)
from .models import VolumeClaimRecord, WorkloadRef
from .workloads import WORKLOAD_KINDS, workload_kind

DEFAULT_RELEASE_LABEL = "app.kubernetes.io/instance"
DEFAULT_DISCOVERY_TIMEOUT_SECONDS = 20
LOGGER = logging.getLogger(__name__)
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool | None = None,
) -> KubernetesClients:
    """Load credentials and build the API clients.

    ``in_cluster=None`` tries the pod service account first and falls back to the
    default kubeconfig search path, which is what a CronJob and a workstation run
    both expect. An explicit kubeconfig path always wins over that probing.
    """
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    if in_cluster is None and expanded is None:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            _load_kubeconfig(expanded, context)
    elif in_cluster:
        try:
            config.load_incluster_config()
        except Exception as error:  # pylint: disable=broad-except
            raise KubernetesAuthenticationError(
                _format_authentication_error(in_cluster=True, kubeconfig_path=None, context=None, error=error)
            ) from error
    else:
        _load_kubeconfig(expanded, context)

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
    )


def _load_kubeconfig(kubeconfig_path: str | None, context: str | None) -> None:
    try:
        config.load_kube_config(config_file=kubeconfig_path, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=False,
                kubeconfig_path=kubeconfig_path,
                context=context,
                error=error,
            )
        ) from error


def resolve_release_claims(
    clients: KubernetesClients,
    *,
    namespace: str,
    release: str,
    label_key: str = DEFAULT_RELEASE_LABEL,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
    logger: logging.Logger | None = None,
) -> list[VolumeClaimRecord]:
    """Map a release to its claims, host paths and owning workloads.

    Claims are returned in the order the API lists them. A claim without a
    resolvable workload is still returned, with ``workload=None``.
    """
    log = logger or LOGGER
    if request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")

    label_selector = f"{label_key}={release}"
    log.debug("Listing PVCs in %s with selector %r", namespace, label_selector)
    claims = _safe_kubernetes_discovery_call(
        operation=f"list PVCs in namespace '{namespace}' with selector '{label_selector}'",
        hint="Check namespace spelling, API reachability, and RBAC verbs for persistentvolumeclaims.",
        func=lambda: client_items(
            clients.core_api.list_namespaced_persistent_volume_claim(
                namespace=namespace,
                label_selector=label_selector,
                _request_timeout=request_timeout_seconds,
            )
        ),
    )
    if not claims:
        raise NotFoundError(
            f"no PVCs found for release '{release}' in namespace '{namespace}' "
            f"(selector '{label_selector}'). Verify the release name and the '{label_key}' label."
        )
    log.debug("Found %d PVC(s)", len(claims))

    pods = _safe_kubernetes_discovery_call(
        operation=f"list Pods in namespace '{namespace}'",
        hint="Check RBAC verbs for pods and confirm the namespace still exists.",
        func=lambda: client_items(
            clients.core_api.list_namespaced_pod(namespace=namespace, _request_timeout=request_timeout_seconds)
        ),
    )

    rs_cache: dict[str, Any] = {}
    workload_cache: dict[tuple[str, str], WorkloadRef] = {}
    records: list[VolumeClaimRecord] = []
    for claim in claims:
        claim_name = claim.metadata.name or ""
        volume_name = claim.spec.volume_name if claim.spec else None
        if not volume_name:
            raise UnboundClaimError(f"PVC '{namespace}/{claim_name}' is not bound to a PV")

        volume = _safe_kubernetes_discovery_call(
            operation=f"read PV '{volume_name}' bound to PVC '{namespace}/{claim_name}'",
            hint="Verify RBAC allows get on persistentvolumes (cluster-scoped).",
            func=lambda volume_name=volume_name: clients.core_api.read_persistent_volume(
                name=volume_name,
                _request_timeout=request_timeout_seconds,
            ),
        )
        host_path = resolve_host_path(volume)
        if not host_path:
            raise UnresolvedPathError(
                f"could not resolve a host path for PV '{volume_name}' (PVC '{namespace}/{claim_name}'); "
                "only CSI volumes with a 'path' attribute, local volumes and hostPath volumes are supported"
            )
        log.info("PVC %s -> PV %s -> %s", claim_name, volume_name, host_path)

        workload = _find_owning_workload(
            clients,
            namespace=namespace,
            claim_name=claim_name,
            pods=pods,
            rs_cache=rs_cache,
            workload_cache=workload_cache,
            log=log,
        )
        records.append(
            VolumeClaimRecord(
                namespace=claim.metadata.namespace or namespace,
                claim_name=claim_name,
                volume_name=volume_name,
                host_path=host_path,
                workload=workload,
            )
        )

    return records


def resolve_host_path(volume: Any) -> str | None:
    spec = getattr(volume, "spec", None)
    if spec is None:
        return None

    csi = getattr(spec, "csi", None)
    if csi is not None:
        path = (getattr(csi, "volume_attributes", None) or {}).get("path")
        if path:
            return path

    local = getattr(spec, "local", None)
    if local is not None and getattr(local, "path", None):
        return local.path

    host_path = getattr(spec, "host_path", None)
    if host_path is not None and getattr(host_path, "path", None):
        return host_path.path

    return None


def client_items(response: Any) -> list[Any]:
    return list(getattr(response, "items", None) or [])


def _find_owning_workload(
    clients: KubernetesClients,
    *,
    namespace: str,
    claim_name: str,
    pods: list[Any],
    rs_cache: dict[str, Any],
    workload_cache: dict[tuple[str, str], WorkloadRef],
    log: logging.Logger,
) -> WorkloadRef | None:
    for pod in pods:
        if not _pod_mounts_claim(pod, claim_name):
            continue
        pod_name = pod.metadata.name if pod.metadata else "unknown"
        log.debug("Pod %s mounts PVC %s", pod_name, claim_name)

        try:
            workload = _resolve_pod_workload(
                clients,
                pod=pod,
                namespace=namespace,
                rs_cache=rs_cache,
                workload_cache=workload_cache,
            )
        except ApiException as error:
            log.warning(
                "Could not resolve the owner of pod %s/%s: %s",
                namespace,
                pod_name,
                _format_api_exception_message(
                    operation=f"walk owner references of pod '{pod_name}'",
                    hint="Verify RBAC allows get on replicasets, deployments and statefulsets.",
                    error=error,
                ),
            )
            continue
        except Exception as error:  # pylint: disable=broad-except
            log.warning(
                "Could not resolve the owner of pod %s/%s: %s", namespace, pod_name, _error_message(error)
            )
            continue
        if workload is not None:
            log.info("PVC %s owned by %s (%d replicas)", claim_name, workload, workload.original_replicas)
            return workload

    log.warning(
        "No Deployment or StatefulSet found mounting PVC %s/%s; it will be archived without scaling",
        namespace,
        claim_name,
    )
    return None


def _pod_mounts_claim(pod: Any, claim_name: str) -> bool:
    spec = getattr(pod, "spec", None)
    for volume in getattr(spec, "volumes", None) or []:
        source = getattr(volume, "persistent_volume_claim", None)
        if source is not None and source.claim_name == claim_name:
            return True
    return False


def _resolve_pod_workload(
    clients: KubernetesClients,
    *,
    pod: Any,
    namespace: str,
    rs_cache: dict[str, Any],
    workload_cache: dict[tuple[str, str], WorkloadRef],
) -> WorkloadRef | None:
    refs = pod.metadata.owner_references if pod.metadata and pod.metadata.owner_references else []
    for owner_ref in _ordered_owner_references(refs):
        if owner_ref.kind in WORKLOAD_KINDS:
            return _read_workload(clients, owner_ref.kind, owner_ref.name, namespace, workload_cache)

        if owner_ref.kind == "ReplicaSet":
            replica_set = _read_replicaset(clients, namespace, owner_ref.name, rs_cache)
            rs_refs = replica_set.metadata.owner_references if replica_set.metadata else None
            for rs_ref in _ordered_owner_references(rs_refs or []):
                if rs_ref.kind == "Deployment":
                    return _read_workload(clients, rs_ref.kind, rs_ref.name, namespace, workload_cache)

    return None


def _read_workload(
    clients: KubernetesClients,
    kind_name: str,
    name: str,
    namespace: str,
    cache: dict[tuple[str, str], WorkloadRef],
) -> WorkloadRef:
    # Replica counts are captured once per run; later claims reuse the first read.
    key = (kind_name, name)
    if key not in cache:
        kind = workload_kind(kind_name)
        cache[key] = kind.to_ref(kind.read(clients.apps_api, namespace=namespace, name=name), namespace=namespace)
    return cache[key]


def _read_replicaset(clients: KubernetesClients, namespace: str, name: str, cache: dict[str, Any]) -> Any:
    if name not in cache:
        cache[name] = clients.apps_api.read_namespaced_replica_set(name=name, namespace=namespace)
    return cache[name]


def _ordered_owner_references(owner_refs: list[Any]) -> list[Any]:
    controllers = [ref for ref in owner_refs if ref.controller]
    return controllers + [ref for ref in owner_refs if not ref.controller]


def _safe_kubernetes_discovery_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesDiscoveryError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error
    except Exception as error:
        raise KubernetesDiscoveryError(
            f"Kubernetes discovery failed while trying to {operation}: {error}. {hint}"
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes discovery failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
