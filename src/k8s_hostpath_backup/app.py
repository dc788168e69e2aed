from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import logging
import os

from botocore.exceptions import BotoCoreError, ClientError
import streamlit as st
import yaml

from k8s_hostpath_backup.archive import format_size
from k8s_hostpath_backup.config import AppConfig, configure_logging, ensure_directories
from k8s_hostpath_backup.errors import HostpathBackupError, PartialFailureError
from k8s_hostpath_backup.k8s import load_kubernetes_clients, persist_kubeconfig_content
from k8s_hostpath_backup.models import BackupPlan, BackupReport, RestoreReport, VolumeClaimRecord
from k8s_hostpath_backup.orchestrator import RunSettings, build_orchestrator

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}

_FAILURE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "illegal path in archive",
        "The archive contains entries outside the volume root; do not restore it.",
    ),
    (
        "does not exist",
        "Confirm the host path is mounted into this pod at the same location as on the node.",
    ),
    (
        "Permission denied",
        "Run with a security context that can read and write the host path (usually root).",
    ),
    (
        "not bound",
        "Wait for the PVC to bind to a PV, or remove it from the release.",
    ),
    (
        "timed out",
        "Inspect pod termination (finalizers, preStop hooks) or raise HPB_SCALE_TIMEOUT_SECONDS.",
    ),
    (
        "no PVCs found",
        "Check the release name and that its PVCs carry the release label.",
    ),
    (
        "does not match template",
        "Use the same archive name template that produced the backup.",
    ),
    (
        "rotation of prefix",
        "Older remote copies were only partly removed; rerun with the same keep-last to finish.",
    ),
)


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "clients": None,
        "last_plan": None,
        "last_backup_report": None,
        "last_restore_report": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _default_auth_mode() -> str:
    configured_default = os.getenv("HPB_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"paste", "pasted", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to an existing file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    missing_fields = [field for field in ("apiVersion", "clusters", "contexts", "users") if field not in parsed]
    if missing_fields:
        return f"{source_label} is missing required field(s): {', '.join(missing_fields)}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def _validate_release_inputs(
    *,
    namespace_input: str,
    release_input: str,
    name_template_input: str,
    output_dir_input: str,
) -> list[str]:
    errors: list[str] = []
    if not namespace_input.strip():
        errors.append("Namespace is required.")
    if not release_input.strip():
        errors.append("Release name is required.")
    if "{pvc}" not in name_template_input:
        errors.append("Archive name template must contain the {pvc} placeholder.")
    if not output_dir_input.strip():
        errors.append("Output directory is required.")
    return errors


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for fragment, hint in _FAILURE_HINTS:
        if fragment in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect the run log and Kubernetes events for more detail."


def _build_claim_rows(claims: tuple[VolumeClaimRecord, ...] | list[VolumeClaimRecord]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for claim in claims:
        rows.append(
            {
                "pvc": claim.claim_name,
                "pv": claim.volume_name,
                "host_path": claim.host_path,
                "workload": str(claim.workload) if claim.workload else "(none)",
                "replicas": str(claim.workload.original_replicas) if claim.workload else "",
            }
        )
    return rows


def _build_plan_rows(plan: BackupPlan) -> list[dict[str, str]]:
    return [
        {
            "pvc": archive.claim.claim_name,
            "host_path": archive.claim.host_path,
            "archive_path": str(archive.archive_path),
            "remote_key": archive.remote_key or "",
        }
        for archive in plan.archives
    ]


def _build_backup_rows(report: BackupReport) -> list[dict[str, str]]:
    uploads = {upload.claim_name: upload for upload in report.uploads}
    rotations = {rotation.claim_name: rotation for rotation in report.rotations}
    rows: list[dict[str, str]] = []
    for outcome in report.outcomes:
        upload = uploads.get(outcome.claim_name)
        rotation = rotations.get(outcome.claim_name)
        message = outcome.error or (upload.error if upload else None) or (rotation.error if rotation else None) or ""
        rows.append(
            {
                "pvc": outcome.claim_name,
                "status": "success" if not message else "failed",
                "archive_path": str(outcome.archive_path or ""),
                "size": format_size(outcome.size_bytes) if outcome.succeeded else "",
                "remote_key": upload.key if upload and not upload.error else "",
                "rotated": str(len(rotation.deleted_keys)) if rotation else "",
                "actionable_message": _actionable_next_step(message) if message else "Backup completed successfully.",
            }
        )
    return rows


def _build_restore_rows(report: RestoreReport) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for outcome in report.outcomes:
        rows.append(
            {
                "pvc": outcome.claim_name,
                "status": "success" if outcome.succeeded else "failed",
                "source": outcome.source,
                "actionable_message": (
                    "Restore completed successfully." if outcome.succeeded else _actionable_next_step(outcome.error or "")
                ),
            }
        )
    return rows


def _build_workflow_rows(*, connected: bool, planned: bool, ran: bool) -> list[dict[str, str]]:
    connect_state = "done" if connected else "active"
    plan_state = "done" if planned else ("active" if connected else "blocked")
    run_state = "done" if ran else ("active" if connected else "blocked")
    review_state = "active" if ran else "blocked"

    return [
        {
            "step": "1. Connect",
            "state": _WORKFLOW_STATE_LABELS[connect_state],
            "description": "Authenticate to the cluster from the sidebar.",
        },
        {
            "step": "2. Plan",
            "state": _WORKFLOW_STATE_LABELS[plan_state],
            "description": "Resolve release PVCs, host paths and owning workloads without side effects.",
        },
        {
            "step": "3. Run",
            "state": _WORKFLOW_STATE_LABELS[run_state],
            "description": "Scale workloads down, archive or restore volumes, then scale back.",
        },
        {
            "step": "4. Review",
            "state": _WORKFLOW_STATE_LABELS[review_state],
            "description": "Inspect per-PVC outcomes and follow the suggested next steps.",
        },
    ]


def _render_failures(rows: list[dict[str, str]]) -> None:
    failed_rows = [row for row in rows if row["status"] != "success"]
    if failed_rows:
        st.markdown("**Actionable Failures**")
        for row in failed_rows:
            st.error(f"{row['pvc']}: {row['actionable_message']}")


def main() -> None:
    st.set_page_config(page_title="K8s Hostpath Backup", layout="wide")
    _initialize_state()
    logger = configure_logging(verbose=False)
    base_config = AppConfig()

    st.title("K8s Hostpath Backup")
    st.caption("Back up and restore the host-path volumes of a Helm release with its workloads scaled to zero.")
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            connected=bool(st.session_state.connected and st.session_state.clients is not None),
            planned=st.session_state.last_plan is not None,
            ran=st.session_state.last_backup_report is not None or st.session_state.last_restore_report is not None,
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(_default_auth_mode()),
    )
    context = st.sidebar.text_input(
        "Kubernetes context (optional)",
        value="",
        help=(
            "Ignored for in-cluster service account mode."
            if auth_mode == _AUTH_MODE_IN_CLUSTER
            else "Optional kubeconfig context override."
        ),
    )

    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            try:
                kubeconfig_path: str | None = None
                if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                    kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
                elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                    kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

                st.session_state.clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=auth_mode == _AUTH_MODE_IN_CLUSTER,
                )
                st.session_state.connected = True
                st.session_state.last_plan = None
                st.session_state.last_backup_report = None
                st.session_state.last_restore_report = None
                st.success("Connected to Kubernetes cluster.")
            except HostpathBackupError as error:
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.last_plan = None
        st.session_state.last_backup_report = None
        st.session_state.last_restore_report = None

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to plan and run release backups.")
        return

    st.subheader("Release")
    columns = st.columns(2)
    namespace_input = columns[0].text_input("Namespace", value="")
    release_input = columns[1].text_input("Helm release", value="")
    name_template_input = st.text_input("Archive name template", value=base_config.name_template)
    output_dir_input = st.text_input("Output directory", value=str(base_config.output_dir))
    remote_credentials_input = st.text_input(
        "Remote credentials JSON path (optional)",
        value=base_config.remote_credentials_path or "",
        help="Enables upload after backup and latest-backup lookup for restore.",
    )
    keep_last = int(
        st.number_input(
            "Remote copies to keep per PVC (0 = unlimited)",
            min_value=0,
            value=base_config.keep_last,
            step=1,
        )
    )

    input_errors = _validate_release_inputs(
        namespace_input=namespace_input,
        release_input=release_input,
        name_template_input=name_template_input,
        output_dir_input=output_dir_input,
    )
    if input_errors:
        for error in input_errors:
            st.warning(error)
        return

    config = replace(
        base_config,
        output_dir=Path(output_dir_input.strip()),
        name_template=name_template_input,
        remote_credentials_path=remote_credentials_input.strip() or None,
        keep_last=keep_last,
    )
    settings = RunSettings(
        namespace=namespace_input.strip(),
        release=release_input.strip(),
        name_template=config.name_template,
        output_dir=config.output_dir,
        keep_last=config.keep_last,
    )

    action_columns = st.columns(3)
    plan_clicked = action_columns[0].button("Plan")
    backup_clicked = action_columns[1].button("Back up release", type="primary")
    restore_clicked = action_columns[2].button(
        "Restore latest remote backups",
        disabled=config.remote_credentials_path is None,
    )

    if plan_clicked or backup_clicked or restore_clicked:
        _run_action(
            config=config,
            settings=settings,
            logger=logger,
            plan=plan_clicked,
            backup=backup_clicked,
        )

    plan = st.session_state.last_plan
    if plan is not None:
        st.subheader("Planned Backup")
        st.dataframe(_build_claim_rows(plan.claims), use_container_width=True, hide_index=True)
        st.dataframe(_build_plan_rows(plan), use_container_width=True, hide_index=True)
        if plan.workloads:
            st.caption("Workloads scaled to zero during the run: " + ", ".join(str(w) for w in plan.workloads))

    if st.session_state.last_backup_report is not None:
        st.subheader("Latest Backup Run")
        rows = _build_backup_rows(st.session_state.last_backup_report)
        st.dataframe(rows, use_container_width=True, hide_index=True)
        _render_failures(rows)

    if st.session_state.last_restore_report is not None:
        st.subheader("Latest Restore Run")
        rows = _build_restore_rows(st.session_state.last_restore_report)
        if rows:
            st.dataframe(rows, use_container_width=True, hide_index=True)
        else:
            st.info("No remote backups were found for this release.")
        _render_failures(rows)


def _run_action(
    *,
    config: AppConfig,
    settings: RunSettings,
    logger: logging.Logger,
    plan: bool,
    backup: bool,
) -> None:
    try:
        orchestrator = build_orchestrator(st.session_state.clients, config, logger=logger)
        if plan:
            with st.spinner("Resolving release PVCs and workloads..."):
                st.session_state.last_plan = orchestrator.plan_backup(settings)
        elif backup:
            ensure_directories(config)
            with st.spinner(f"Backing up release {settings.release}..."):
                st.session_state.last_backup_report = orchestrator.run_backup(settings)
            st.success("Backup finished successfully.")
        else:
            with st.spinner(f"Restoring latest backups for release {settings.release}..."):
                st.session_state.last_restore_report = orchestrator.run_restore(settings)
            st.success("Restore finished successfully.")
    except PartialFailureError as error:
        if isinstance(error.report, BackupReport):
            st.session_state.last_backup_report = error.report
        elif isinstance(error.report, RestoreReport):
            st.session_state.last_restore_report = error.report
        st.error(f"Run finished with failures: {error}. Review actionable details below.")
    except (HostpathBackupError, ClientError, BotoCoreError, OSError) as error:
        st.error(_actionable_next_step(str(error)))


if __name__ == "__main__":
    main()
