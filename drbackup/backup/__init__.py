"""
Backup module for drbackup.

This module handles the backup pipeline including:
- Execution guard (per-kind mutual exclusion)
- Backup provider (RMAN)
- Compression and retention
- Replication to the DR site
- Remote restore trigger
- Pipeline orchestration
"""

from .executor import (
    PipelineOrchestrator,
    run_pipeline,
    run_full_backup,
    run_incremental_backup,
    run_archive_log_backup,
    run_dr_trigger
)
from .guard import ExecutionGuard, GuardBusy
from .provider import RmanProvider
from .retention import RetentionEngine
from .replication import LocalReplicator, SFTPReplicator, S3Replicator, create_replicator
from .trigger import SSHRemoteInvoker

__all__ = [
    'PipelineOrchestrator',
    'run_pipeline',
    'run_full_backup',
    'run_incremental_backup',
    'run_archive_log_backup',
    'run_dr_trigger',
    'ExecutionGuard',
    'GuardBusy',
    'RmanProvider',
    'RetentionEngine',
    'LocalReplicator',
    'SFTPReplicator',
    'S3Replicator',
    'create_replicator',
    'SSHRemoteInvoker'
]
