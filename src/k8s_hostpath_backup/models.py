from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path


@dataclass(frozen=True)
class WorkloadRef:
    kind: str
    name: str
    namespace: str
    original_replicas: int

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.kind, self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class VolumeClaimRecord:
    namespace: str
    claim_name: str
    volume_name: str
    host_path: str
    workload: WorkloadRef | None = None


@dataclass(frozen=True)
class BackupOutcome:
    claim_name: str
    archive_path: Path | None
    size_bytes: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RemoteObject:
    key: str
    size: int
    last_modified: datetime


@dataclass(frozen=True)
class RemoteTransfer:
    claim_name: str
    key: str
    error: str | None = None


@dataclass(frozen=True)
class RotationOutcome:
    claim_name: str
    prefix: str
    deleted_keys: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class RestoreTask:
    claim: VolumeClaimRecord
    source: str
    remote: bool = False
    lookup_prefix: str | None = None


@dataclass(frozen=True)
class RestoreOutcome:
    claim_name: str
    source: str
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PlannedArchive:
    claim: VolumeClaimRecord
    archive_path: Path
    remote_key: str | None = None


@dataclass(frozen=True)
class BackupPlan:
    namespace: str
    release: str
    claims: tuple[VolumeClaimRecord, ...]
    workloads: tuple[WorkloadRef, ...]
    archives: tuple[PlannedArchive, ...]
    keep_last: int = 0


@dataclass(frozen=True)
class RestorePlan:
    namespace: str
    release: str
    tasks: tuple[RestoreTask, ...]
    workloads: tuple[WorkloadRef, ...]


@dataclass
class BackupReport:
    plan: BackupPlan
    outcomes: list[BackupOutcome] = field(default_factory=list)
    uploads: list[RemoteTransfer] = field(default_factory=list)
    rotations: list[RotationOutcome] = field(default_factory=list)
    dry_run: bool = False

    @property
    def failed(self) -> bool:
        return (
            any(not outcome.succeeded for outcome in self.outcomes)
            or any(upload.error for upload in self.uploads)
            or any(rotation.error for rotation in self.rotations)
        )


@dataclass
class RestoreReport:
    plan: RestorePlan
    outcomes: list[RestoreOutcome] = field(default_factory=list)
    dry_run: bool = False

    @property
    def failed(self) -> bool:
        return any(not outcome.succeeded for outcome in self.outcomes)
