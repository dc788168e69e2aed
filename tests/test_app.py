from __future__ import annotations

from pathlib import Path

import pytest

from k8s_hostpath_backup.app import (
    _AUTH_MODE_IN_CLUSTER,
    _AUTH_MODE_PASTE_KUBECONFIG,
    _AUTH_MODE_USE_KUBECONFIG_PATH,
    _actionable_next_step,
    _build_backup_rows,
    _build_claim_rows,
    _build_restore_rows,
    _build_workflow_rows,
    _default_auth_mode,
    _validate_connection_inputs,
    _validate_release_inputs,
)
from k8s_hostpath_backup.models import (
    BackupOutcome,
    BackupPlan,
    BackupReport,
    RemoteTransfer,
    RestoreOutcome,
    RestorePlan,
    RestoreReport,
    RotationOutcome,
    VolumeClaimRecord,
    WorkloadRef,
)


def _claim(name: str = "db-data", *, workload: WorkloadRef | None = None) -> VolumeClaimRecord:
    return VolumeClaimRecord(
        namespace="apps",
        claim_name=name,
        volume_name=f"pv-{name}",
        host_path=f"/srv/{name}",
        workload=workload,
    )


def _backup_plan() -> BackupPlan:
    return BackupPlan(namespace="apps", release="web", claims=(), workloads=(), archives=())


def _valid_kubeconfig_content() -> str:
    return """
apiVersion: v1
clusters:
  - name: dev
    cluster:
      server: https://example.invalid
contexts:
  - name: dev
    context:
      cluster: dev
      user: dev
users:
  - name: dev
    user:
      token: abc
current-context: dev
"""


def test_build_claim_rows_with_unowned_claim_marks_workload_missing() -> None:
    rows = _build_claim_rows(
        [
            _claim("uploads", workload=WorkloadRef(kind="Deployment", name="web", namespace="apps", original_replicas=2)),
            _claim("orphan"),
        ]
    )

    assert rows[0]["workload"] == "Deployment/web"
    assert rows[0]["replicas"] == "2"
    assert rows[1]["workload"] == "(none)"
    assert rows[1]["replicas"] == ""


def test_build_backup_rows_with_failed_archive_includes_actionable_next_step() -> None:
    report = BackupReport(
        plan=_backup_plan(),
        outcomes=[
            BackupOutcome(claim_name="db-data", archive_path=None, error="host path '/srv/db-data' does not exist"),
        ],
    )

    rows = _build_backup_rows(report)

    assert rows[0]["status"] == "failed"
    assert "Confirm the host path is mounted" in rows[0]["actionable_message"]


def test_build_backup_rows_with_upload_and_rotation_reports_remote_details() -> None:
    report = BackupReport(
        plan=_backup_plan(),
        outcomes=[BackupOutcome(claim_name="db-data", archive_path=Path("/out/a.tar.gz"), size_bytes=2048)],
        uploads=[RemoteTransfer(claim_name="db-data", key="a.tar.gz")],
        rotations=[RotationOutcome(claim_name="db-data", prefix="apps_web_db-data_", deleted_keys=("old1", "old2"))],
    )

    rows = _build_backup_rows(report)

    assert rows[0]["status"] == "success"
    assert rows[0]["size"] == "2.0 KB"
    assert rows[0]["remote_key"] == "a.tar.gz"
    assert rows[0]["rotated"] == "2"
    assert rows[0]["actionable_message"] == "Backup completed successfully."


def test_build_backup_rows_with_failed_upload_marks_row_failed() -> None:
    report = BackupReport(
        plan=_backup_plan(),
        outcomes=[BackupOutcome(claim_name="db-data", archive_path=Path("/out/a.tar.gz"), size_bytes=10)],
        uploads=[RemoteTransfer(claim_name="db-data", key="a.tar.gz", error="An error occurred (AccessDenied)")],
    )

    rows = _build_backup_rows(report)

    assert rows[0]["status"] == "failed"
    assert rows[0]["remote_key"] == ""


def test_build_restore_rows_with_traversal_failure_warns_against_archive() -> None:
    report = RestoreReport(
        plan=RestorePlan(namespace="apps", release="web", tasks=(), workloads=()),
        outcomes=[
            RestoreOutcome(claim_name="db-data", source="a.tar.gz"),
            RestoreOutcome(claim_name="cache", source="b.tar.gz", error="illegal path in archive: ../etc/passwd"),
        ],
    )

    rows = _build_restore_rows(report)

    assert rows[0]["actionable_message"] == "Restore completed successfully."
    assert rows[1]["status"] == "failed"
    assert "do not restore it" in rows[1]["actionable_message"]


def test_actionable_next_step_with_unknown_message_uses_generic_hint() -> None:
    assert _actionable_next_step("something odd").endswith("Inspect the run log and Kubernetes events for more detail.")
    assert _actionable_next_step("  ") == "No follow-up action required."


def test_actionable_next_step_with_scale_timeout_suggests_timeout_setting() -> None:
    message = _actionable_next_step("timed out after 300s waiting for Deployment/web to reach 0 ready replicas")

    assert "HPB_SCALE_TIMEOUT_SECONDS" in message


def test_build_workflow_rows_with_connection_only_marks_plan_and_run_ready() -> None:
    rows = _build_workflow_rows(connected=True, planned=False, ran=False)

    assert [row["state"] for row in rows] == ["Done", "Ready", "Ready", "Waiting"]


def test_build_workflow_rows_without_connection_blocks_later_steps() -> None:
    rows = _build_workflow_rows(connected=False, planned=False, ran=False)

    assert [row["state"] for row in rows] == ["Ready", "Waiting", "Waiting", "Waiting"]


def test_validate_release_inputs_with_missing_values_returns_all_errors() -> None:
    errors = _validate_release_inputs(
        namespace_input=" ",
        release_input="",
        name_template_input="{namespace}_{date}.tar.gz",
        output_dir_input="",
    )

    assert errors == [
        "Namespace is required.",
        "Release name is required.",
        "Archive name template must contain the {pvc} placeholder.",
        "Output directory is required.",
    ]


def test_validate_release_inputs_with_complete_values_returns_no_errors() -> None:
    errors = _validate_release_inputs(
        namespace_input="apps",
        release_input="web",
        name_template_input="{namespace}_{release}_{pvc}_{date}.tar.gz",
        output_dir_input="/backups",
    )

    assert errors == []


def test_validate_connection_inputs_with_pasted_mode_and_missing_content_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="",
    )

    assert error == "Paste kubeconfig content before connecting."


def test_validate_connection_inputs_with_existing_kubeconfig_path_returns_none(tmp_path: Path) -> None:
    kubeconfig_path = tmp_path / "config"
    kubeconfig_path.write_text(_valid_kubeconfig_content(), encoding="utf-8")

    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_USE_KUBECONFIG_PATH,
        kubeconfig_path_input=str(kubeconfig_path),
        kubeconfig_text_input="",
    )

    assert error is None


def test_validate_connection_inputs_with_kubeconfig_path_directory_returns_error(tmp_path: Path) -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_USE_KUBECONFIG_PATH,
        kubeconfig_path_input=str(tmp_path),
        kubeconfig_text_input="",
    )

    assert error == f"Kubeconfig path must point to an existing file: {tmp_path}"


def test_validate_connection_inputs_with_pasted_invalid_yaml_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="apiVersion: v1\nclusters: [",
    )

    assert error == "Pasted kubeconfig must be valid YAML: ParserError."


def test_validate_connection_inputs_with_pasted_empty_users_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="apiVersion: v1\nclusters: [{}]\ncontexts: [{}]\nusers: []\n",
    )

    assert error == "Pasted kubeconfig must include at least one 'users' entry."


def test_validate_connection_inputs_with_incluster_mode_without_pod_environment_returns_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)

    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_IN_CLUSTER,
        kubeconfig_path_input="",
        kubeconfig_text_input="",
    )

    assert "In-cluster service account mode requires Kubernetes pod environment variables" in str(error)


def test_default_auth_mode_prefers_env_override_then_incluster_detection(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HPB_DEFAULT_AUTH_MODE", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.setattr("k8s_hostpath_backup.app.Path.exists", lambda self: False)
    assert _default_auth_mode() == _AUTH_MODE_USE_KUBECONFIG_PATH

    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.96.0.1")
    monkeypatch.setattr(
        "k8s_hostpath_backup.app.Path.exists",
        lambda self: str(self) == "/var/run/secrets/kubernetes.io/serviceaccount/token",
    )
    assert _default_auth_mode() == _AUTH_MODE_IN_CLUSTER

    monkeypatch.setenv("HPB_DEFAULT_AUTH_MODE", "paste")
    assert _default_auth_mode() == _AUTH_MODE_PASTE_KUBECONFIG
