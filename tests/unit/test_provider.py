"""
Unit tests for the RMAN backup provider (drbackup/backup/provider.py).

subprocess.run is mocked; no RMAN binary is needed.
"""

import subprocess
from unittest.mock import patch

import pytest

from drbackup.backup.errors import StageTimeout
from drbackup.backup.provider import ProviderError, RmanProvider


def _completed(stdout='Recovery Manager complete.', stderr='', returncode=0):
    return subprocess.CompletedProcess(args=['rman'], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def provider(backup_dir):
    return RmanProvider(
        backup_dir=str(backup_dir),
        rman_binary='/u01/app/oracle/bin/rman',
        target='/',
        oracle_sid='ORCL',
        oracle_home='/u01/app/oracle',
        backup_timeout=120,
        retention_timeout=30
    )


class TestRunBackup:
    """Test database backups."""

    @patch('drbackup.backup.provider.subprocess.run')
    def test_run_backup_level_zero(self, mock_run, provider, backup_dir):
        mock_run.return_value = _completed()

        output = provider.run_backup(0, str(backup_dir / 'controlfile_20240101_010000.ctl'))

        assert 'Recovery Manager complete.' in output
        args, kwargs = mock_run.call_args
        assert args[0] == ['/u01/app/oracle/bin/rman', 'target', '/']
        script = kwargs['input']
        assert 'BACKUP INCREMENTAL LEVEL 0 DATABASE' in script
        assert "TAG 'DRBACKUP_L0'" in script
        assert 'BACKUP ARCHIVELOG ALL NOT BACKED UP 1 TIMES' in script
        assert f"BACKUP AS COPY CURRENT CONTROLFILE FORMAT '{backup_dir}/controlfile_20240101_010000.ctl'" in script
        assert script.rstrip().endswith('EXIT;')
        assert kwargs['timeout'] == 120

    @patch('drbackup.backup.provider.subprocess.run')
    def test_run_backup_incremental_without_controlfile(self, mock_run, provider):
        mock_run.return_value = _completed()

        provider.run_backup(1)

        script = mock_run.call_args[1]['input']
        assert 'BACKUP INCREMENTAL LEVEL 1 DATABASE' in script
        assert 'CONTROLFILE' not in script

    @patch('drbackup.backup.provider.subprocess.run')
    def test_pieces_written_to_backup_dir(self, mock_run, provider, backup_dir):
        mock_run.return_value = _completed()

        provider.run_backup(0)

        assert f"FORMAT '{backup_dir}/db_%d_%T_%U'" in mock_run.call_args[1]['input']

    def test_run_backup_negative_level(self, provider):
        with pytest.raises(ValueError, match="Invalid backup level"):
            provider.run_backup(-1)

    @patch('drbackup.backup.provider.subprocess.run')
    def test_environment_has_oracle_settings(self, mock_run, provider):
        mock_run.return_value = _completed()

        provider.run_backup(0)

        env = mock_run.call_args[1]['env']
        assert env['ORACLE_SID'] == 'ORCL'
        assert env['ORACLE_HOME'] == '/u01/app/oracle'
        assert env['PATH'].startswith('/u01/app/oracle/bin')


class TestArchivelogBackup:
    """Test archived log backups."""

    @patch('drbackup.backup.provider.subprocess.run')
    def test_run_archivelog_backup(self, mock_run, provider):
        mock_run.return_value = _completed()

        provider.run_archivelog_backup()

        script = mock_run.call_args[1]['input']
        assert "ALTER SYSTEM ARCHIVE LOG CURRENT" in script
        assert 'BACKUP ARCHIVELOG ALL NOT BACKED UP 1 TIMES' in script
        assert 'BACKUP INCREMENTAL' not in script


class TestEnforceWindow:
    """Test obsolescence enforcement."""

    @patch('drbackup.backup.provider.subprocess.run')
    def test_enforce_window(self, mock_run, provider):
        mock_run.return_value = _completed()

        assert provider.enforce_window(3) == []

        script = mock_run.call_args[1]['input']
        assert 'CONFIGURE RETENTION POLICY TO RECOVERY WINDOW OF 3 DAYS;' in script
        assert script.index('CROSSCHECK BACKUP;') < script.index('REPORT OBSOLETE;') \
            < script.index('DELETE NOPROMPT OBSOLETE;')
        assert 'EXPIRED' not in script
        assert mock_run.call_args[1]['timeout'] == 30

    @patch('drbackup.backup.provider.subprocess.run')
    def test_enforce_window_returns_obsolete_handles(self, mock_run, provider, backup_dir):
        listing = '\n'.join([
            'Type                 Key    Completion Time    Filename/Handle',
            '-------------------- ------ ------------------ --------------------',
            'Backup Set           12     01-JAN-24',
            f'  Backup Piece       12     01-JAN-24          {backup_dir}/db_ORCL_20240101_0c2f_1_1',
            'Archive Log          40     01-JAN-24          /u01/arch/1_120_1122334455.arc',
            'Control File Copy    3      01-JAN-24 02:00:01 /u01/backup/cf_copy.ctl',
        ])
        mock_run.return_value = _completed(stdout='\n'.join([
            'RMAN retention policy will be applied to the command',
            'RMAN retention policy is set to recovery window of 3 days',
            'Report of obsolete backups and copies',
            listing,
            'Deleting the following obsolete backups and copies:',
            listing,
            'deleted backup piece',
            f'backup piece handle={backup_dir}/db_ORCL_20240101_0c2f_1_1 RECID=12 STAMP=1155555555',
            'Deleted 3 objects',
        ]))

        handles = provider.enforce_window(3)

        assert handles == [
            f'{backup_dir}/db_ORCL_20240101_0c2f_1_1',
            '/u01/arch/1_120_1122334455.arc',
            '/u01/backup/cf_copy.ctl',
        ]

    @pytest.mark.parametrize("days", [0, -3])
    def test_enforce_window_invalid(self, provider, days):
        with pytest.raises(ValueError, match="Invalid retention window"):
            provider.enforce_window(days)


class TestRmanFailures:
    """Test mapping of RMAN failures."""

    @patch('drbackup.backup.provider.subprocess.run')
    def test_non_zero_exit(self, mock_run, provider):
        mock_run.return_value = _completed(stdout='', returncode=1)

        with pytest.raises(ProviderError, match="exit status 1"):
            provider.run_backup(0)

    @patch('drbackup.backup.provider.subprocess.run')
    def test_error_stack_with_zero_exit(self, mock_run, provider):
        mock_run.return_value = _completed(
            stdout='RMAN-03009: failure of backup command on ORA_DISK_1 channel\n'
                   'ORA-19502: write error on file\n'
        )

        with pytest.raises(ProviderError, match="RMAN-03009"):
            provider.run_backup(0)

    @patch('drbackup.backup.provider.subprocess.run')
    def test_warnings_are_ignored(self, mock_run, provider):
        mock_run.return_value = _completed(
            stdout='RMAN-08120: WARNING: archived log not deleted, not yet applied by standby\n'
        )

        provider.enforce_window(3)

    @patch('drbackup.backup.provider.subprocess.run')
    def test_timeout(self, mock_run, provider):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd='rman', timeout=120)

        with pytest.raises(StageTimeout, match="RMAN backup exceeded timeout of 120s"):
            provider.run_backup(0)

    @patch('drbackup.backup.provider.subprocess.run')
    def test_missing_binary(self, mock_run, provider):
        mock_run.side_effect = FileNotFoundError()

        with pytest.raises(ProviderError, match="not found"):
            provider.run_backup(0)

    @patch('drbackup.backup.provider.subprocess.run')
    def test_os_error(self, mock_run, provider):
        mock_run.side_effect = PermissionError("denied")

        with pytest.raises(ProviderError, match="Failed to start RMAN"):
            provider.run_archivelog_backup()

    def test_error_lines(self):
        output = '\n'.join([
            'Starting backup at 01-JAN-24',
            'RMAN-06054: media recovery requesting unknown archived log',
            'RMAN-08591: WARNING: invalid archived log deletion policy',
            '  ORA-01017: invalid username/password',
        ])

        assert RmanProvider._error_lines(output) == [
            'RMAN-06054: media recovery requesting unknown archived log',
            'ORA-01017: invalid username/password',
        ]
