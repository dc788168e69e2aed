from __future__ import annotations

from dataclasses import replace
from pathlib import Path, PurePosixPath
from typing import Sequence, TextIO
import argparse
import logging
import signal
import sys
import threading

from botocore.exceptions import BotoCoreError, ClientError

from .archive import format_size
from .config import AppConfig, configure_logging, ensure_directories
from .errors import HostpathBackupError, OperationCancelledError, PartialFailureError
from .k8s import load_kubernetes_clients
from .models import BackupPlan, BackupReport, RestorePlan, RestoreReport, WorkloadRef
from .orchestrator import RunSettings, build_orchestrator

COMMANDS = ("backup", "restore")
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def build_parser(config: AppConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="k8s-hostpath-backup",
        description=(
            "Back up or restore the host-path volumes of a Helm release. Owning Deployments and "
            "StatefulSets are scaled to zero for the duration of the archive I/O."
        ),
    )
    parser.add_argument(
        "arguments",
        nargs="*",
        metavar="[backup|restore] [ARCHIVE ...]",
        help="Subcommand (default: backup). Restore accepts local archives, or remote keys with remote credentials.",
    )
    parser.add_argument("-n", "--namespace", required=True, help="Kubernetes namespace")
    parser.add_argument("-r", "--release", required=True, help="Helm release name")
    parser.add_argument("-o", "--output-format", default=config.name_template, help="Archive filename template")
    parser.add_argument("-d", "--output-dir", default=str(config.output_dir), help="Output directory for archives")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without doing it")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--kubeconfig", default=None, help="Path to kubeconfig (default: in-cluster or ~/.kube/config)")
    parser.add_argument("--context", default=None, help="Kubeconfig context override")
    parser.add_argument("--in-cluster", action="store_true", help="Only use the pod service account credentials")
    parser.add_argument(
        "--remote-credentials",
        "--r2-credentials",
        dest="remote_credentials",
        default=config.remote_credentials_path,
        help="Path to remote store credentials JSON (enables upload/download)",
    )
    parser.add_argument(
        "--keep-last",
        type=int,
        default=config.keep_last,
        help="Number of remote backups to keep per PVC (0 = unlimited)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    try:
        config = AppConfig()
    except ValueError as error:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_FAILURE
    parser = build_parser(config)
    args = parser.parse_intermixed_args(argv)

    command, archives = _split_command(args.arguments)
    if command == "backup" and archives:
        parser.error("backup does not take archive arguments")
    if command == "restore" and not archives and not args.remote_credentials:
        parser.error("restore requires archive files or --remote-credentials")
    if args.keep_last < 0:
        parser.error("--keep-last must be >= 0")

    logger = configure_logging(args.verbose)
    cancel_event = threading.Event()
    _install_signal_handlers(cancel_event, logger)

    config = replace(
        config,
        output_dir=Path(args.output_dir),
        name_template=args.output_format,
        remote_credentials_path=args.remote_credentials,
        keep_last=args.keep_last,
    )
    settings = RunSettings(
        namespace=args.namespace,
        release=args.release,
        name_template=config.name_template,
        output_dir=config.output_dir,
        dry_run=args.dry_run,
        keep_last=config.keep_last,
    )

    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=args.kubeconfig,
            context=args.context,
            in_cluster=True if args.in_cluster else None,
        )
        orchestrator = build_orchestrator(clients, config, cancel_event=cancel_event, logger=logger)
        if command == "backup":
            if not settings.dry_run:
                ensure_directories(config)
            print_backup_report(orchestrator.run_backup(settings))
        else:
            print_restore_report(orchestrator.run_restore(settings, archives))
    except PartialFailureError as error:
        if isinstance(error.report, BackupReport):
            print_backup_report(error.report)
        elif isinstance(error.report, RestoreReport):
            print_restore_report(error.report)
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_FAILURE
    except OperationCancelledError as error:
        print(f"Cancelled: {error}", file=sys.stderr)
        return EXIT_CANCELLED
    except KeyboardInterrupt:
        print("Cancelled: interrupted", file=sys.stderr)
        return EXIT_CANCELLED
    except (HostpathBackupError, ClientError, BotoCoreError, OSError, ValueError) as error:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


def print_backup_report(report: BackupReport, out: TextIO | None = None) -> None:
    out = out or sys.stdout
    plan = report.plan
    _print_claims(plan, out)
    if report.dry_run:
        _print_backup_dry_run(plan, out)
        return

    print("\n=== Backup Summary ===", file=out)
    for outcome in report.outcomes:
        if outcome.succeeded:
            print(f"  OK    {outcome.claim_name} -> {outcome.archive_path} ({format_size(outcome.size_bytes)})", file=out)
        else:
            print(f"  FAIL  {outcome.claim_name}: {outcome.error}", file=out)

    if report.uploads:
        print("\n=== Remote Upload ===", file=out)
        for upload in report.uploads:
            if upload.error:
                print(f"  FAIL  {upload.key}: {upload.error}", file=out)
            else:
                print(f"  OK    {upload.key} uploaded", file=out)

    if report.rotations:
        print(f"\n=== Remote Rotation (keep last {plan.keep_last}) ===", file=out)
        for rotation in report.rotations:
            if rotation.error:
                print(f"  FAIL  {rotation.claim_name}: {rotation.error}", file=out)
            for key in rotation.deleted_keys:
                print(f"  DEL   {key}", file=out)


def print_restore_report(report: RestoreReport, out: TextIO | None = None) -> None:
    out = out or sys.stdout
    plan = report.plan
    if not plan.tasks:
        print("No archives to restore.", file=out)
        return

    print(f"Matched {len(plan.tasks)} archive(s) to PVC(s):", file=out)
    for task in plan.tasks:
        source = f"latest under {task.lookup_prefix}" if report.dry_run and task.lookup_prefix else _basename(task.source)
        print(f"  - {source} -> {task.claim.claim_name} (host path: {task.claim.host_path})", file=out)

    if report.dry_run:
        print("\n=== DRY RUN ===", file=out)
        _print_workloads("Would scale down:", plan.workloads, out, restoring=False)
        _print_workloads("Would restore replicas:", plan.workloads, out, restoring=True)
        return

    print("\n=== Restore Summary ===", file=out)
    for outcome in report.outcomes:
        if outcome.succeeded:
            print(f"  OK    {_basename(outcome.source)} -> {outcome.claim_name}", file=out)
        else:
            print(f"  FAIL  {outcome.claim_name}: {outcome.error}", file=out)


def _print_claims(plan: BackupPlan | RestorePlan, out: TextIO) -> None:
    claims = plan.claims if isinstance(plan, BackupPlan) else tuple(task.claim for task in plan.tasks)
    print(f"Found {len(claims)} PVC(s):", file=out)
    for claim in claims:
        workload = "(no workload found)"
        if claim.workload is not None:
            workload = f"{claim.workload} ({claim.workload.original_replicas} replicas)"
        print(f"  - {claim.claim_name} -> PV {claim.volume_name} -> {claim.host_path} [{workload}]", file=out)


def _print_backup_dry_run(plan: BackupPlan, out: TextIO) -> None:
    print("\n=== DRY RUN ===", file=out)
    _print_workloads("Would scale down:", plan.workloads, out, restoring=False)
    print("\nWould create archives:", file=out)
    for archive in plan.archives:
        print(f"  - {archive.claim.host_path} -> {archive.archive_path}", file=out)
    remote_keys = [archive.remote_key for archive in plan.archives if archive.remote_key]
    if remote_keys:
        print("\nWould upload to remote store:", file=out)
        for key in remote_keys:
            print(f"  - {key}", file=out)
        if plan.keep_last > 0:
            print(f"\nWould rotate remote backups (keep last {plan.keep_last} per PVC)", file=out)
    _print_workloads("Would restore replicas:", plan.workloads, out, restoring=True)


def _print_workloads(title: str, workloads: Sequence[WorkloadRef], out: TextIO, *, restoring: bool) -> None:
    if not workloads:
        return
    print(f"\n{title}", file=out)
    for workload in workloads:
        if restoring:
            print(f"  - {workload} -> {workload.original_replicas} replicas", file=out)
        else:
            print(f"  - {workload} (currently {workload.original_replicas} replicas)", file=out)


def _split_command(arguments: Sequence[str]) -> tuple[str, list[str]]:
    if arguments and arguments[0] in COMMANDS:
        return arguments[0], list(arguments[1:])
    return "backup", list(arguments)


def _basename(source: str) -> str:
    return PurePosixPath(source).name or source


def _install_signal_handlers(cancel_event: threading.Event, logger: logging.Logger) -> None:
    def _request_cancel(signum: int, _frame: object) -> None:
        if cancel_event.is_set():
            # A second signal interrupts the current step; workloads are still scaled back.
            raise KeyboardInterrupt
        logger.warning("Received %s; stopping after the current step", signal.Signals(signum).name)
        cancel_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, _request_cancel)


if __name__ == "__main__":
    sys.exit(main())
