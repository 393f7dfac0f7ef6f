import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import List, Optional


COMPRESSED_SUFFIXES = ('.gz', '.bz2', '.xz', '.zip')


class PipelineKind(str, Enum):
    """Pipeline kinds. Each kind is an independent lock domain."""
    FULL = 'full'
    INCREMENTAL = 'incremental'
    ARCHIVELOG = 'archivelog'
    DR_TRIGGER = 'dr_trigger'


class Stage(str, Enum):
    INIT = 'init'
    LOCKING = 'locking'
    CAPTURING = 'capturing'
    CLEANING = 'cleaning'
    REPLICATING = 'replicating'
    TRIGGERING = 'triggering'
    DONE = 'done'
    ABORTED = 'aborted'


class Outcome(str, Enum):
    SUCCESS = 'success'
    FAILURE = 'failure'
    ABORTED = 'aborted'


class ExitCode(IntEnum):
    """Process exit status for each pipeline entry point"""
    OK = 0
    FATAL_STAGE_FAILURE = 1
    BUSY = 2
    TIMEOUT = 3
    INTERRUPTED = 130


@dataclass(frozen=True)
class StagePlan:
    """Stages enabled for a pipeline kind"""
    capture_controlfile: bool
    backup_scope: Optional[str]  # 'database', 'archivelog' or None
    clean: bool
    replicate: bool
    trigger: bool
    min_level: Optional[int] = None
    max_level: Optional[int] = None

    @property
    def captures(self) -> bool:
        return self.capture_controlfile or self.backup_scope is not None

    def accepts_level(self, level: Optional[int]) -> bool:
        if level is None:
            return False
        if self.min_level is not None and level < self.min_level:
            return False
        return self.max_level is None or level <= self.max_level

    def describe_levels(self) -> str:
        if self.min_level == self.max_level:
            return f"{self.min_level}"
        if self.max_level is None:
            return f">= {self.min_level}"
        return f"{self.min_level}..{self.max_level}"


STAGE_PLANS = {
    PipelineKind.FULL: StagePlan(
        capture_controlfile=True, backup_scope='database',
        clean=True, replicate=True, trigger=True,
        min_level=0, max_level=0
    ),
    PipelineKind.INCREMENTAL: StagePlan(
        capture_controlfile=True, backup_scope='database',
        clean=True, replicate=True, trigger=True,
        min_level=1
    ),
    PipelineKind.ARCHIVELOG: StagePlan(
        capture_controlfile=False, backup_scope='archivelog',
        clean=True, replicate=True, trigger=True
    ),
    PipelineKind.DR_TRIGGER: StagePlan(
        capture_controlfile=False, backup_scope=None,
        clean=False, replicate=True, trigger=True
    ),
}


@dataclass
class PipelineRun:
    """One execution attempt of a pipeline kind"""
    kind: PipelineKind
    level: Optional[int] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=datetime.utcnow)
    stage: Stage = Stage.INIT
    outcome: Optional[Outcome] = None
    exit_code: Optional[ExitCode] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    failed_stage: Optional[Stage] = None
    transfer: Optional['TransferResult'] = None
    degraded_failures: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    def __repr__(self):
        return f'<PipelineRun {self.run_id[:8]} kind={self.kind.value} stage={self.stage.value}>'


@dataclass
class LockToken:
    """Exclusive ownership of one pipeline kind's execution right"""
    kind: PipelineKind
    path: str
    fd: int
    acquired_at: datetime = field(default_factory=datetime.utcnow)
    released: bool = False


@dataclass(frozen=True)
class BackupArtifact:
    path: str
    created_at: datetime

    @classmethod
    def from_path(cls, path: str) -> 'BackupArtifact':
        return cls(path=path, created_at=datetime.fromtimestamp(os.stat(path).st_mtime))

    @property
    def compressed(self) -> bool:
        return self.path.endswith(COMPRESSED_SUFFIXES)


@dataclass(frozen=True)
class RemoteSite:
    """DR endpoint. Shared read-only configuration."""
    host: str
    destination_path: str
    restore_command: str
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = None
    key_filename: Optional[str] = None

    def __repr__(self):
        # Never render the password
        return f'<RemoteSite {self.username}@{self.host}:{self.port}{self.destination_path}>'


@dataclass
class TransferResult:
    """Outcome of one replication pass"""
    transferred: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    bytes_transferred: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed
