from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import partial
from pathlib import Path, PurePosixPath
from typing import Callable, Protocol, Sequence
import logging
import tempfile
import threading

from .archive import create_archive, format_size, restore_archive
from .config import AppConfig
from .errors import (
    HostpathBackupError,
    NotFoundError,
    OperationCancelledError,
    PartialFailureError,
    RotationError,
    _error_message,
)
from .models import (
    BackupOutcome,
    BackupPlan,
    BackupReport,
    PlannedArchive,
    RemoteTransfer,
    RestoreOutcome,
    RestorePlan,
    RestoreReport,
    RestoreTask,
    RotationOutcome,
    VolumeClaimRecord,
)
from .k8s import KubernetesClients, resolve_release_claims
from .naming import DEFAULT_NAME_TEMPLATE, parse_claim_name, remote_prefix, render_archive_name
from .remote import RemoteStore, load_remote_credentials
from .scaler import ScaleController
from .workloads import unique_workloads

LOGGER = logging.getLogger(__name__)


class ClaimResolver(Protocol):
    def __call__(self, *, namespace: str, release: str) -> list[VolumeClaimRecord]: ...


@dataclass(frozen=True)
class RunSettings:
    namespace: str
    release: str
    name_template: str = DEFAULT_NAME_TEMPLATE
    output_dir: Path = Path(".")
    dry_run: bool = False
    keep_last: int = 0


class Orchestrator:
    """Runs release backups and restores with workloads held at zero replicas.

    Workloads are scaled back on every exit path once scale-down has started,
    including per-claim failures, cancellation and interpreter interrupts.

    A ``remote_store_factory`` defers loading the store until a run first
    transfers data, so planning and dry runs never read its credentials.
    """

    def __init__(
        self,
        *,
        resolve_claims: ClaimResolver,
        scaler: ScaleController,
        remote_store: RemoteStore | None = None,
        remote_store_factory: Callable[[], RemoteStore] | None = None,
        cancel_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.resolve_claims = resolve_claims
        self.scaler = scaler
        self.remote_store = remote_store
        self.remote_store_factory = remote_store_factory
        self.cancel_event = cancel_event or scaler.cancel_event
        self.logger = logger or LOGGER
        self.clock = clock

    def run_backup(self, settings: RunSettings) -> BackupReport:
        plan = self.plan_backup(settings)
        report = BackupReport(plan=plan, dry_run=settings.dry_run)
        if settings.dry_run:
            return report
        if self.has_remote_store:
            # Load credentials before any workload is touched.
            self._require_remote_store()

        self._check_cancelled()
        if plan.workloads:
            self.logger.info("Scaling down %d workload(s)...", len(plan.workloads))
        with self.scaler.quiesce(plan.workloads):
            self.logger.info("Backing up %d PVC(s)...", len(plan.archives))
            for archive in plan.archives:
                self._check_cancelled()
                report.outcomes.append(self._backup_one(archive))

        if self.has_remote_store:
            self._upload_archives(report)
            if settings.keep_last > 0:
                self._rotate_remote_copies(report, settings)

        if report.failed:
            raise PartialFailureError("some backups failed (see summary)", report=report)
        return report

    def plan_backup(self, settings: RunSettings) -> BackupPlan:
        claims = self._discover(settings)
        workloads = unique_workloads([claim.workload for claim in claims])
        now = self.clock()
        archives: list[PlannedArchive] = []
        for claim in claims:
            name = render_archive_name(
                settings.name_template,
                namespace=settings.namespace,
                release=settings.release,
                claim_name=claim.claim_name,
                now=now,
            )
            archives.append(
                PlannedArchive(
                    claim=claim,
                    archive_path=settings.output_dir / name,
                    remote_key=name if self.has_remote_store else None,
                )
            )
        return BackupPlan(
            namespace=settings.namespace,
            release=settings.release,
            claims=tuple(claims),
            workloads=tuple(workloads),
            archives=tuple(archives),
            keep_last=settings.keep_last if self.has_remote_store else 0,
        )

    def run_restore(self, settings: RunSettings, archives: Sequence[str] = ()) -> RestoreReport:
        plan = self.plan_restore(settings, archives)
        report = RestoreReport(plan=plan, dry_run=settings.dry_run)
        if settings.dry_run:
            return report
        if not plan.tasks:
            self.logger.info("No archives to restore.")
            return report

        with tempfile.TemporaryDirectory(prefix="k8s-hostpath-backup-restore-") as staging_dir:
            staged = self._stage_archives(plan.tasks, Path(staging_dir))

            self._check_cancelled()
            if plan.workloads:
                self.logger.info("Scaling down %d workload(s)...", len(plan.workloads))
            with self.scaler.quiesce(plan.workloads):
                self.logger.info("Restoring %d PVC(s)...", len(staged))
                for task, local_path in staged:
                    self._check_cancelled()
                    report.outcomes.append(self._restore_one(task, local_path))

        if report.failed:
            raise PartialFailureError("some restores failed (see summary)", report=report)
        return report

    def plan_restore(self, settings: RunSettings, archives: Sequence[str] = ()) -> RestorePlan:
        claims = self._discover(settings)
        claims_by_name = {claim.claim_name: claim for claim in claims}

        if archives:
            tasks = self._explicit_restore_tasks(settings, archives, claims_by_name)
        else:
            tasks = self._latest_restore_tasks(settings, claims)

        return RestorePlan(
            namespace=settings.namespace,
            release=settings.release,
            tasks=tuple(tasks),
            workloads=tuple(unique_workloads([task.claim.workload for task in tasks])),
        )

    def _discover(self, settings: RunSettings) -> list[VolumeClaimRecord]:
        self.logger.info("Discovering PVCs for release %r in namespace %r...", settings.release, settings.namespace)
        claims = self.resolve_claims(namespace=settings.namespace, release=settings.release)
        self.logger.info("Found %d PVC(s)", len(claims))
        return claims

    def _explicit_restore_tasks(
        self,
        settings: RunSettings,
        archives: Sequence[str],
        claims_by_name: dict[str, VolumeClaimRecord],
    ) -> list[RestoreTask]:
        tasks: list[RestoreTask] = []
        for archive in archives:
            claim_name = parse_claim_name(
                archive,
                settings.name_template,
                namespace=settings.namespace,
                release=settings.release,
            )
            claim = claims_by_name.get(claim_name)
            if claim is None:
                raise NotFoundError(
                    f"PVC '{claim_name}' (from archive '{PurePosixPath(archive).name}') "
                    f"not found in release '{settings.release}'"
                )
            tasks.append(RestoreTask(claim=claim, source=archive, remote=self.has_remote_store))
        return tasks

    def _latest_restore_tasks(self, settings: RunSettings, claims: list[VolumeClaimRecord]) -> list[RestoreTask]:
        if not self.has_remote_store:
            raise HostpathBackupError("restore requires archive files or a remote store to look up the latest backups")

        tasks: list[RestoreTask] = []
        for claim in claims:
            prefix = remote_prefix(
                settings.name_template,
                namespace=settings.namespace,
                release=settings.release,
                claim_name=claim.claim_name,
            )
            if settings.dry_run:
                tasks.append(RestoreTask(claim=claim, source=prefix, remote=True, lookup_prefix=prefix))
                continue

            objects = self._require_remote_store().list_by_prefix(prefix)
            if not objects:
                self.logger.warning("No remote backups found for %s under prefix %r; skipping", claim.claim_name, prefix)
                continue
            latest = objects[0]
            self.logger.info("Latest backup for %s is %s", claim.claim_name, latest.key)
            tasks.append(RestoreTask(claim=claim, source=latest.key, remote=True, lookup_prefix=prefix))
        return tasks

    def _stage_archives(self, tasks: Sequence[RestoreTask], staging_dir: Path) -> list[tuple[RestoreTask, Path]]:
        staged: list[tuple[RestoreTask, Path]] = []
        for task in tasks:
            self._check_cancelled()
            if task.remote:
                local_path = staging_dir / PurePosixPath(task.source).name
                self._require_remote_store().download(task.source, local_path)
            else:
                local_path = Path(task.source)
                if not local_path.is_file():
                    raise NotFoundError(f"archive '{local_path}' does not exist or is not a file")
            staged.append((task, local_path))
        return staged

    def _backup_one(self, archive: PlannedArchive) -> BackupOutcome:
        claim = archive.claim
        try:
            size = create_archive(claim.host_path, archive.archive_path, logger=self.logger)
        except Exception as error:  # pylint: disable=broad-except
            self.logger.error("Backup of %s failed: %s", claim.claim_name, _error_message(error))
            return BackupOutcome(claim_name=claim.claim_name, archive_path=None, error=_error_message(error))
        return BackupOutcome(claim_name=claim.claim_name, archive_path=archive.archive_path, size_bytes=size)

    def _restore_one(self, task: RestoreTask, local_path: Path) -> RestoreOutcome:
        try:
            restore_archive(local_path, task.claim.host_path, logger=self.logger)
        except Exception as error:  # pylint: disable=broad-except
            self.logger.error("Restore of %s failed: %s", task.claim.claim_name, _error_message(error))
            return RestoreOutcome(claim_name=task.claim.claim_name, source=task.source, error=_error_message(error))
        return RestoreOutcome(claim_name=task.claim.claim_name, source=task.source)

    def _upload_archives(self, report: BackupReport) -> None:
        remote_store = self._require_remote_store()
        for outcome in report.outcomes:
            if not outcome.succeeded or outcome.archive_path is None:
                continue
            key = outcome.archive_path.name
            try:
                remote_store.upload(outcome.archive_path, key)
            except Exception as error:  # pylint: disable=broad-except
                self.logger.error("Upload of %s failed: %s", key, _error_message(error))
                report.uploads.append(RemoteTransfer(claim_name=outcome.claim_name, key=key, error=_error_message(error)))
                continue
            self.logger.info("Uploaded %s (%s)", key, format_size(outcome.size_bytes))
            report.uploads.append(RemoteTransfer(claim_name=outcome.claim_name, key=key))

    def _rotate_remote_copies(self, report: BackupReport, settings: RunSettings) -> None:
        # Only claims whose fresh copy reached the store are rotated.
        remote_store = self._require_remote_store()
        for upload in report.uploads:
            if upload.error:
                continue
            prefix = remote_prefix(
                settings.name_template,
                namespace=settings.namespace,
                release=settings.release,
                claim_name=upload.claim_name,
            )
            try:
                deleted = remote_store.rotate(prefix, settings.keep_last)
            except RotationError as error:
                self.logger.warning("Rotation of %s was partially applied: %s", prefix, error)
                report.rotations.append(
                    RotationOutcome(
                        claim_name=upload.claim_name,
                        prefix=prefix,
                        deleted_keys=tuple(error.deleted),
                        error=str(error),
                    )
                )
                continue
            except Exception as error:  # pylint: disable=broad-except
                self.logger.warning("Rotation of %s failed: %s", prefix, _error_message(error))
                report.rotations.append(
                    RotationOutcome(claim_name=upload.claim_name, prefix=prefix, error=_error_message(error))
                )
                continue
            report.rotations.append(
                RotationOutcome(claim_name=upload.claim_name, prefix=prefix, deleted_keys=tuple(deleted))
            )

    @property
    def has_remote_store(self) -> bool:
        return self.remote_store is not None or self.remote_store_factory is not None

    def _require_remote_store(self) -> RemoteStore:
        if self.remote_store is None:
            if self.remote_store_factory is None:
                raise HostpathBackupError("no remote store is configured")
            self.remote_store = self.remote_store_factory()
        return self.remote_store

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelledError("run cancelled by signal")


def build_orchestrator(
    clients: KubernetesClients,
    config: AppConfig,
    *,
    cancel_event: threading.Event | None = None,
    logger: logging.Logger | None = None,
) -> Orchestrator:
    log = logger or LOGGER
    cancel_event = cancel_event or threading.Event()
    remote_store_factory = None
    if config.remote_credentials_path:
        remote_store_factory = partial(_load_remote_store, config.remote_credentials_path, log)

    return Orchestrator(
        resolve_claims=partial(
            resolve_release_claims,
            clients,
            label_key=config.release_label,
            request_timeout_seconds=config.discovery_timeout_seconds,
            logger=log,
        ),
        scaler=ScaleController(
            apps_api=clients.apps_api,
            poll_interval_seconds=config.scale_poll_interval_seconds,
            wait_timeout_seconds=config.scale_timeout_seconds,
            cancel_event=cancel_event,
            logger=log,
        ),
        remote_store_factory=remote_store_factory,
        cancel_event=cancel_event,
        logger=log,
    )


def _load_remote_store(credentials_path: str, logger: logging.Logger) -> RemoteStore:
    return RemoteStore.from_credentials(load_remote_credentials(credentials_path), logger=logger)
