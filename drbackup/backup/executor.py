"""
Pipeline orchestrator - runs one pipeline kind under the execution guard.

Workflow:
1. Acquire the execution guard for the kind (abort with BUSY if held)
2. Capture: remove stale control file snapshots, run the backup provider
3. Clean: compress aged artifacts, apply the retention window
4. Replicate artifacts to the DR site
5. Trigger the remote restore procedure
6. Release the guard (always)

Capture and trigger failures abort the run. Clean and replicate failures
are recorded as degraded and the run continues; the next scheduled run
retries them. Stages not in the kind's StagePlan are skipped.
"""

import binascii
import logging
import os
import signal
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Union

from cryptography.fernet import InvalidToken

from drbackup.config import load_config
from drbackup.models import (
    ExitCode, Outcome, PipelineKind, PipelineRun, RemoteSite, Stage, StagePlan, STAGE_PLANS
)
from drbackup.utils.crypto import decrypt_secret
from .errors import FatalStageFailure, PipelineError, PipelineInterrupted, StageTimeout
from .guard import ExecutionGuard, GuardBusy
from .provider import ProviderError, RmanProvider
from .replication import create_replicator
from .retention import RetentionEngine
from .trigger import RemoteTriggerError, SSHRemoteInvoker


logger = logging.getLogger(__name__)


class SnapshotError(PipelineError):
    """Raised when a stale control file snapshot cannot be removed."""
    pass


def generate_snapshot_name(prefix: str) -> str:
    """
    Generate a control file snapshot filename.

    Format: {prefix}_{YYYYMMDD_HHMMSS}.ctl

    Every snapshot gets a new name so replication, which never overwrites,
    still ships the current one.
    """
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return f"{prefix}_{timestamp}.ctl"


class PipelineOrchestrator:
    """
    Sequences the backup stages for a pipeline kind.
    """

    def __init__(
        self,
        guard: ExecutionGuard,
        provider: RmanProvider,
        retention: RetentionEngine,
        replicator,
        invoker: SSHRemoteInvoker,
        site: Optional[RemoteSite],
        backup_dir: str,
        controlfile_prefix: str = 'controlfile',
        retention_window_days: int = 3,
        stop_event: Optional[threading.Event] = None
    ):
        """
        Initialize orchestrator.

        Args:
            guard: Execution guard providing per-kind locks
            provider: Backup provider
            retention: Retention engine for the backup directory
            replicator: Replicator pushing the backup directory to the DR site
            invoker: Remote invoker starting the DR restore
            site: DR site (required by kinds that trigger)
            backup_dir: Backup directory
            controlfile_prefix: Filename prefix of control file snapshots
            retention_window_days: Recovery window handed to the provider
            stop_event: Checked between stages; once set the run aborts as
                interrupted at the next stage boundary
        """
        self.guard = guard
        self.provider = provider
        self.retention = retention
        self.replicator = replicator
        self.invoker = invoker
        self.site = site
        self.backup_dir = backup_dir
        self.controlfile_prefix = controlfile_prefix
        self.retention_window_days = retention_window_days
        self.stop_event = stop_event

    def run(self, kind: Union[PipelineKind, str], level: Optional[int] = None) -> PipelineRun:
        """
        Execute one run of a pipeline kind.

        Args:
            kind: Pipeline kind
            level: Backup level (0 for full, N > 0 for incremental); required
                by kinds that back up the database, ignored otherwise

        Returns:
            PipelineRun with outcome and exit code set

        Raises:
            ValueError: If kind is unknown or the level is outside the kind's range
        """
        kind = PipelineKind(kind)
        plan = STAGE_PLANS[kind]

        if plan.backup_scope == 'database':
            if not plan.accepts_level(level):
                raise ValueError(
                    f"Pipeline '{kind.value}' requires a backup level of {plan.describe_levels()}, got {level}"
                )
        else:
            level = None

        run = PipelineRun(kind=kind, level=level)
        self._log(run, f"Starting {kind.value} pipeline (run {run.run_id}, level {level})")

        try:
            token = self.guard.acquire(kind)
        except GuardBusy as e:
            self._abort(run, ExitCode.BUSY, Outcome.ABORTED, str(e), logging.WARNING)
            return run
        except OSError as e:
            self._abort(run, ExitCode.FATAL_STAGE_FAILURE, Outcome.FAILURE, f"Cannot acquire lock: {e}")
            return run

        try:
            self._advance(run, Stage.LOCKING)
            with self._interruption_handler():
                self._execute_stages(run, plan)

        except StageTimeout as e:
            self._abort(run, ExitCode.TIMEOUT, Outcome.FAILURE, str(e))
        except FatalStageFailure as e:
            self._abort(run, ExitCode.FATAL_STAGE_FAILURE, Outcome.FAILURE, str(e))
        except PipelineInterrupted as e:
            self._abort(run, ExitCode.INTERRUPTED, Outcome.ABORTED, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in {kind.value} pipeline")
            self._abort(run, ExitCode.FATAL_STAGE_FAILURE, Outcome.FAILURE, f"Unexpected error: {e}")

        finally:
            self.guard.release(token)
            self._log(run, f"Released lock for {kind.value}")

        return run

    def _execute_stages(self, run: PipelineRun, plan: StagePlan):
        """Execute the stages enabled by the plan, in order."""
        if plan.captures:
            self._capture(run, plan)

        if plan.clean:
            self._clean(run)

        if plan.replicate:
            self._replicate(run)

        if plan.trigger:
            self._trigger(run)

        self._advance(run, Stage.DONE)
        run.outcome = Outcome.SUCCESS
        run.exit_code = ExitCode.OK
        run.completed_at = datetime.utcnow()

        if run.degraded_failures:
            self._log(run, f"Pipeline completed with {len(run.degraded_failures)} degraded stage failure(s)",
                      logging.WARNING)
        else:
            self._log(run, "Pipeline completed successfully")

    def _capture(self, run: PipelineRun, plan: StagePlan):
        """
        Remove stale control file snapshots and run the backup provider.

        Raises:
            FatalStageFailure: If snapshot removal or the provider fails
            StageTimeout: If the provider exceeds its timeout
        """
        self._advance(run, Stage.CAPTURING)

        controlfile_destination = None
        if plan.capture_controlfile:
            try:
                removed = self._remove_stale_snapshots()
            except SnapshotError as e:
                raise FatalStageFailure(str(e)) from e
            for path in removed:
                self._log(run, f"Removed stale control file snapshot: {path}")

            controlfile_destination = os.path.join(
                self.backup_dir, generate_snapshot_name(self.controlfile_prefix)
            )
            self._log(run, f"Control file snapshot: {controlfile_destination}")

        try:
            if plan.backup_scope == 'database':
                self._log(run, f"Running level {run.level} backup")
                self.provider.run_backup(run.level, controlfile_destination)
            elif plan.backup_scope == 'archivelog':
                self._log(run, "Running archived log backup")
                self.provider.run_archivelog_backup()
        except ProviderError as e:
            raise FatalStageFailure(f"Backup provider failed: {e}") from e

        self._log(run, "Backup completed")
        self._sync_filesystem()

    def _clean(self, run: PipelineRun):
        """Compress aged artifacts and apply the retention window. Never fatal."""
        self._advance(run, Stage.CLEANING)

        try:
            summary = self.retention.compress_aged()
            if summary['errors']:
                self._degrade(run, f"Compression failed for {len(summary['errors'])} artifact(s)")
        except (PipelineError, OSError, ValueError) as e:
            self._degrade(run, f"Compression failed: {e}")

        try:
            summary = self.retention.apply_retention_window(self.retention_window_days)
            if summary['errors']:
                self._degrade(run, f"Obsolete compressed copies not removed: {len(summary['errors'])}")
        except (PipelineError, OSError, ValueError) as e:
            self._degrade(run, f"Retention policy failed: {e}")

        self._sync_filesystem()

    def _replicate(self, run: PipelineRun):
        """Push the backup directory to the DR site. Never fatal."""
        self._advance(run, Stage.REPLICATING)

        try:
            result = self.replicator.sync(self.backup_dir)
        except (PipelineError, OSError) as e:
            self._degrade(run, f"Replication failed: {e}")
            return

        run.transfer = result
        self._log(
            run,
            f"Replication: {len(result.transferred)} transferred "
            f"({result.bytes_transferred / 1024 / 1024:.2f} MB), "
            f"{len(result.skipped)} already present, {len(result.failed)} failed"
        )
        if not result.ok:
            self._degrade(run, f"Replication incomplete, {len(result.failed)} file(s) remaining")

    def _trigger(self, run: PipelineRun):
        """
        Start the remote restore procedure.

        Raises:
            FatalStageFailure: If the trigger cannot run or exits non-zero
            StageTimeout: If the remote command exceeds its timeout
        """
        self._advance(run, Stage.TRIGGERING)

        if self.site is None:
            raise FatalStageFailure("No DR site configured, cannot trigger remote restore")

        try:
            exit_status = self.invoker.invoke_remote_restore(self.site)
        except RemoteTriggerError as e:
            raise FatalStageFailure(f"Remote trigger failed: {e}") from e

        if exit_status != 0:
            raise FatalStageFailure(f"Remote restore exited with status {exit_status}")

        self._log(run, f"Remote restore on {self.site.host} succeeded")

    def _remove_stale_snapshots(self) -> List[str]:
        """
        Delete every control file snapshot left by earlier runs.

        Returns:
            Removed paths

        Raises:
            SnapshotError: If a snapshot cannot be removed
        """
        base = Path(self.backup_dir)
        stale = sorted(base.glob(f"{self.controlfile_prefix}_*.ctl")) + \
            sorted(base.glob(f"{self.controlfile_prefix}_*.ctl.*"))

        removed = []
        for path in stale:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise SnapshotError(f"Failed to remove stale control file snapshot {path}: {e}")
            removed.append(str(path))

        return removed

    def _advance(self, run: PipelineRun, stage: Stage):
        if stage != Stage.DONE and self.stop_event is not None and self.stop_event.is_set():
            raise PipelineInterrupted()
        run.stage = stage
        self._log(run, f"Stage: {stage.value}")

    def _degrade(self, run: PipelineRun, message: str):
        run.degraded_failures.append(f"{run.stage.value}: {message}")
        self._log(run, f"{message} (continuing)", logging.WARNING)

    def _abort(self, run: PipelineRun, exit_code: ExitCode, outcome: Outcome, message: str,
               level: int = logging.ERROR):
        run.failed_stage = run.stage
        run.stage = Stage.ABORTED
        run.outcome = outcome
        run.exit_code = exit_code
        run.error_message = message
        run.completed_at = datetime.utcnow()
        self._log(run, f"Pipeline aborted at {run.failed_stage.value}: {message}", level)

    def _sync_filesystem(self):
        """Flush the previous stage's writes before the next stage starts."""
        os.sync()

    @contextmanager
    def _interruption_handler(self) -> Iterator[None]:
        """
        Turn SIGINT/SIGTERM into PipelineInterrupted for the duration of a run.

        Signal handlers can only be installed from the main thread; runs on
        other threads (the scheduler's pool) keep the existing handlers.
        Original handlers are restored on exit.
        """
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum, frame):
            raise PipelineInterrupted(signum)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _log(self, run: PipelineRun, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run and the log sink.

        Args:
            run: Run the message belongs to
            message: Log message
            level: logging level
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        run.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{run.kind.value}:{run.run_id[:8]}] {message}")


def build_remote_site(config) -> Optional[RemoteSite]:
    """
    Build the DR site descriptor from configuration.

    Args:
        config: Config instance

    Returns:
        RemoteSite, or None if DR_HOST is not set

    Raises:
        ValueError: If an encrypted password is configured without master
            password and salt, or cannot be decrypted with them
    """
    if not config.DR_HOST:
        return None

    password = config.DR_PASSWORD
    if config.DR_PASSWORD_ENCRYPTED:
        if not (config.MASTER_PASSWORD and config.MASTER_SALT):
            raise ValueError(
                "DR_PASSWORD_ENCRYPTED requires DRBACKUP_MASTER_PASSWORD and DRBACKUP_MASTER_SALT"
            )
        try:
            password = decrypt_secret(config.MASTER_PASSWORD, config.MASTER_SALT, config.DR_PASSWORD_ENCRYPTED)
        except (InvalidToken, binascii.Error) as e:
            raise ValueError(
                "Cannot decrypt DR_PASSWORD_ENCRYPTED: wrong DRBACKUP_MASTER_PASSWORD or DRBACKUP_MASTER_SALT"
            ) from e

    return RemoteSite(
        host=config.DR_HOST,
        port=config.DR_PORT,
        username=config.DR_USER,
        password=password,
        key_filename=None if password else config.DR_KEY_FILE,
        destination_path=config.DR_DEST_PATH,
        restore_command=config.DR_RESTORE_COMMAND
    )


def create_orchestrator(config, stop_event: Optional[threading.Event] = None) -> PipelineOrchestrator:
    """
    Wire an orchestrator from configuration.

    Args:
        config: Config instance
        stop_event: Shutdown flag checked between stages (scheduler mode)

    Returns:
        PipelineOrchestrator

    Raises:
        ValueError: If the configuration is incomplete
    """
    os.makedirs(config.BACKUP_DIR, exist_ok=True)

    site = build_remote_site(config)
    provider = RmanProvider(
        backup_dir=config.BACKUP_DIR,
        rman_binary=config.RMAN_BINARY,
        target=config.RMAN_TARGET,
        oracle_sid=config.ORACLE_SID,
        oracle_home=config.ORACLE_HOME,
        backup_timeout=config.BACKUP_TIMEOUT,
        retention_timeout=config.RETENTION_TIMEOUT
    )
    retention = RetentionEngine(
        provider,
        config.BACKUP_DIR,
        compress_age_days=config.COMPRESS_AGE_DAYS,
        compression_format=config.COMPRESSION_FORMAT,
        compression_timeout=config.COMPRESSION_TIMEOUT
    )

    return PipelineOrchestrator(
        guard=ExecutionGuard(config.LOCK_DIR),
        provider=provider,
        retention=retention,
        replicator=create_replicator(config, site),
        invoker=SSHRemoteInvoker(config.TRIGGER_TIMEOUT, config.SSH_CONNECT_TIMEOUT),
        site=site,
        backup_dir=config.BACKUP_DIR,
        controlfile_prefix=config.CONTROLFILE_PREFIX,
        retention_window_days=config.RETENTION_WINDOW_DAYS,
        stop_event=stop_event
    )


def run_pipeline(kind: Union[PipelineKind, str], level: Optional[int] = None, config=None,
                 stop_event: Optional[threading.Event] = None) -> PipelineRun:
    """
    Execute a pipeline kind with an orchestrator built from configuration.

    Args:
        kind: Pipeline kind
        level: Backup level for database backups
        config: Config instance (loaded from the environment if None)
        stop_event: Shutdown flag checked between stages

    Returns:
        PipelineRun with execution results

    Raises:
        ValueError: If the configuration, kind or level is invalid
        OSError: If the backup directory cannot be created
    """
    config = config or load_config()
    orchestrator = create_orchestrator(config, stop_event)
    return orchestrator.run(kind, level)


def _exit_code(kind: PipelineKind, level: Optional[int], config) -> int:
    """
    Run a pipeline kind and return its exit code.

    Setup errors raised before the run starts are logged and reported as a
    fatal stage failure.
    """
    try:
        config = config or load_config()
        if kind == PipelineKind.INCREMENTAL and level is None:
            level = config.INCREMENTAL_LEVEL
        run = run_pipeline(kind, level, config)
    except (ValueError, OSError) as e:
        logger.error(f"Cannot start {kind.value} pipeline: {e}")
        return int(ExitCode.FATAL_STAGE_FAILURE)
    return int(run.exit_code)


def run_full_backup(config=None) -> int:
    """Level 0 backup. Returns the process exit code."""
    return _exit_code(PipelineKind.FULL, 0, config)


def run_incremental_backup(level: Optional[int] = None, config=None) -> int:
    """Incremental backup (INCREMENTAL_LEVEL unless given). Returns the process exit code."""
    return _exit_code(PipelineKind.INCREMENTAL, level, config)


def run_archive_log_backup(config=None) -> int:
    """Archived redo log backup. Returns the process exit code."""
    return _exit_code(PipelineKind.ARCHIVELOG, None, config)


def run_dr_trigger(config=None) -> int:
    """Replicate and start the DR restore. Returns the process exit code."""
    return _exit_code(PipelineKind.DR_TRIGGER, None, config)
