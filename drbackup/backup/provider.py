"""
Backup provider adapter for Oracle RMAN.

RMAN is driven as a subprocess: a command script is written to its stdin
and the exit status plus the error stack in its output decide the result.
Every invocation is bounded by a timeout.
"""

import logging
import os
import re
import subprocess
from typing import Dict, List, Optional

from .errors import PipelineError, StageTimeout


logger = logging.getLogger(__name__)

# Row of an obsolete-object listing: type, key, completion time, handle
_OBSOLETE_ROW = re.compile(
    r"^\s*(?:Backup Piece|Archive Log|Datafile Copy|Control File Copy)\s+\d+\s+.*?\s(?P<handle>/\S+)\s*$"
)


class ProviderError(PipelineError):
    """Raised when the backup provider reports a failure."""
    pass


class RmanProvider:
    """
    Runs RMAN backups, control file captures and the obsolescence policy.

    Backup pieces are written to the backup directory with the format
    {prefix}_%d_%T_%U so every piece has a unique name (replication
    never overwrites an existing destination file).
    """

    def __init__(
        self,
        backup_dir: str,
        rman_binary: str = 'rman',
        target: str = '/',
        oracle_sid: Optional[str] = None,
        oracle_home: Optional[str] = None,
        backup_timeout: float = 6 * 3600,
        retention_timeout: float = 3600
    ):
        """
        Initialize RMAN provider.

        Args:
            backup_dir: Directory receiving backup pieces
            rman_binary: Path or name of the rman executable
            target: RMAN target connect string ('/' for OS authentication)
            oracle_sid: ORACLE_SID for the child process (inherited if None)
            oracle_home: ORACLE_HOME for the child process (inherited if None)
            backup_timeout: Bound in seconds for backup commands
            retention_timeout: Bound in seconds for obsolescence enforcement
        """
        self.backup_dir = backup_dir
        self.rman_binary = rman_binary
        self.target = target
        self.oracle_sid = oracle_sid
        self.oracle_home = oracle_home
        self.backup_timeout = backup_timeout
        self.retention_timeout = retention_timeout

    def run_backup(self, level: int, controlfile_destination: Optional[str] = None) -> str:
        """
        Run an incremental database backup plus archived logs.

        Args:
            level: 0 for a full (base) backup, N > 0 for incremental
            controlfile_destination: Where to write the control file copy (skipped if None)

        Returns:
            RMAN output

        Raises:
            ValueError: If level is negative
            ProviderError: If RMAN reports a failure
            StageTimeout: If RMAN exceeds the backup timeout
        """
        if level < 0:
            raise ValueError(f"Invalid backup level: {level}")

        commands = [
            f"BACKUP INCREMENTAL LEVEL {level} DATABASE "
            f"FORMAT '{self._piece_format('db')}' TAG 'DRBACKUP_L{level}';",
            f"BACKUP ARCHIVELOG ALL NOT BACKED UP 1 TIMES "
            f"FORMAT '{self._piece_format('arc')}';",
        ]
        if controlfile_destination:
            commands.append(
                f"BACKUP AS COPY CURRENT CONTROLFILE FORMAT '{controlfile_destination}';"
            )

        return self._run(self._run_block(commands), self.backup_timeout, 'backup')

    def run_archivelog_backup(self) -> str:
        """
        Back up archived redo logs not yet backed up.

        Returns:
            RMAN output

        Raises:
            ProviderError: If RMAN reports a failure
            StageTimeout: If RMAN exceeds the backup timeout
        """
        commands = [
            "SQL 'ALTER SYSTEM ARCHIVE LOG CURRENT';",
            f"BACKUP ARCHIVELOG ALL NOT BACKED UP 1 TIMES "
            f"FORMAT '{self._piece_format('arc')}';",
        ]
        return self._run(self._run_block(commands), self.backup_timeout, 'archivelog backup')

    def enforce_window(self, days: int) -> List[str]:
        """
        Apply RMAN's recovery-window retention policy and delete obsolete pieces.

        RMAN alone knows which pieces are still needed for point-in-time
        recovery, so the decision is left to it. Pieces compressed in place
        are crosschecked as EXPIRED but stay in the repository until RMAN
        reports them obsolete; their handles are returned so the caller can
        remove the compressed copies.

        Args:
            days: Recovery window in days

        Returns:
            Handles RMAN reported obsolete, in report order

        Raises:
            ValueError: If days is not positive
            ProviderError: If RMAN reports a failure
            StageTimeout: If RMAN exceeds the retention timeout
        """
        if days < 1:
            raise ValueError(f"Invalid retention window: {days} days")

        script = '\n'.join([
            f"CONFIGURE RETENTION POLICY TO RECOVERY WINDOW OF {days} DAYS;",
            "CROSSCHECK BACKUP;",
            "CROSSCHECK ARCHIVELOG ALL;",
            "REPORT OBSOLETE;",
            "DELETE NOPROMPT OBSOLETE;",
        ])
        output = self._run(script, self.retention_timeout, 'retention')
        return self._obsolete_handles(output)

    def _piece_format(self, prefix: str) -> str:
        return os.path.join(self.backup_dir, f"{prefix}_%d_%T_%U")

    @staticmethod
    def _run_block(commands: List[str]) -> str:
        body = '\n'.join(f"  {command}" for command in commands)
        return f"RUN {{\n{body}\n}}"

    def _environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.oracle_sid:
            env['ORACLE_SID'] = self.oracle_sid
        if self.oracle_home:
            env['ORACLE_HOME'] = self.oracle_home
            env['PATH'] = f"{os.path.join(self.oracle_home, 'bin')}{os.pathsep}{env.get('PATH', '')}"
        return env

    def _run(self, script: str, timeout: float, operation: str) -> str:
        """
        Feed a script to RMAN and interpret the result.

        Raises:
            ProviderError: On non-zero exit, RMAN error stack or missing binary
            StageTimeout: If the process exceeds timeout (it is killed)
        """
        full_script = f"{script}\nEXIT;\n"
        logger.debug(f"RMAN {operation} script:\n{full_script}")

        try:
            completed = subprocess.run(
                [self.rman_binary, 'target', self.target],
                input=full_script,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._environment()
            )
        except subprocess.TimeoutExpired:
            raise StageTimeout(f"RMAN {operation}", timeout)
        except FileNotFoundError:
            raise ProviderError(f"RMAN executable not found: {self.rman_binary}")
        except OSError as e:
            raise ProviderError(f"Failed to start RMAN: {e}")

        output = (completed.stdout or '') + (completed.stderr or '')
        for line in output.splitlines():
            logger.debug(f"rman: {line}")

        errors = self._error_lines(output)
        if completed.returncode != 0 or errors:
            reason = '; '.join(errors[:5]) or f"exit status {completed.returncode}"
            raise ProviderError(f"RMAN {operation} failed: {reason}")

        return output

    @staticmethod
    def _error_lines(output: str) -> List[str]:
        """Extract RMAN-/ORA- error lines from RMAN output, ignoring warnings."""
        return [
            line.strip() for line in output.splitlines()
            if line.strip().startswith(('RMAN-0', 'ORA-')) and 'WARNING' not in line
        ]

    @staticmethod
    def _obsolete_handles(output: str) -> List[str]:
        """
        Extract file handles from the obsolete-object listings in RMAN output.

        REPORT OBSOLETE and DELETE OBSOLETE print the same table, so each
        handle is returned once.
        """
        handles = []
        for line in output.splitlines():
            match = _OBSOLETE_ROW.match(line)
            if match and match.group('handle') not in handles:
                handles.append(match.group('handle'))
        return handles
