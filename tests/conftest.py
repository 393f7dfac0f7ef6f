"""
Shared pytest fixtures for drbackup tests.

This module provides fixtures for:
- Test configuration with temporary directories
- Execution guard, provider, invoker and orchestrator wiring
- Aged backup artifact files
- Mock fixtures for external services (S3, SSH)
"""

import os
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from drbackup.backup.executor import PipelineOrchestrator
from drbackup.backup.guard import ExecutionGuard
from drbackup.backup.provider import RmanProvider
from drbackup.backup.replication import LocalReplicator
from drbackup.backup.retention import RetentionEngine
from drbackup.backup.trigger import SSHRemoteInvoker
from drbackup.config import load_config
from drbackup.models import RemoteSite
from drbackup.utils.crypto import SecretCipher


DAY = 24 * 3600


def _make_artifact(directory: Path, name: str, age_days: float = 0, content: bytes = b'backup piece data' * 64) -> Path:
    """Create a file in directory with its mtime set age_days in the past."""
    path = directory / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if age_days:
        stamp = time.time() - age_days * DAY
        os.utime(path, (stamp, stamp))
    return path


@pytest.fixture
def make_artifact():
    """Factory creating aged artifact files: make_artifact(directory, name, age_days=0)."""
    return _make_artifact


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def replica_dir(tmp_path):
    return tmp_path / 'replica'


@pytest.fixture
def lock_dir(tmp_path):
    return tmp_path / 'locks'


@pytest.fixture
def config(tmp_path, backup_dir, replica_dir, lock_dir):
    """
    Testing configuration rooted in tmp_path with local replication.
    """
    return load_config(
        'testing',
        BACKUP_DIR=str(backup_dir),
        LOCK_DIR=str(lock_dir),
        LOG_DIR=str(tmp_path / 'logs'),
        LOCAL_REPLICA_DIR=str(replica_dir),
        DR_HOST='dr.example.com',
        DR_USER='oracle',
        DR_PASSWORD='dr_password',
        DR_DEST_PATH='/backup/rman',
        DR_RESTORE_COMMAND='/home/oracle/scripts/dr_restore.sh'
    )


@pytest.fixture
def guard(lock_dir):
    return ExecutionGuard(str(lock_dir))


@pytest.fixture
def remote_site():
    return RemoteSite(
        host='dr.example.com',
        port=22,
        username='oracle',
        password='dr_password',
        destination_path='/backup/rman',
        restore_command='/home/oracle/scripts/dr_restore.sh'
    )


@pytest.fixture
def mock_provider(backup_dir):
    """
    RmanProvider mock whose backups write a piece (and control file copy)
    into the backup directory.
    """
    provider = MagicMock(spec=RmanProvider)

    def run_backup(level, controlfile_destination=None):
        _make_artifact(backup_dir, f'db_ORCL_L{level}_{time.monotonic_ns()}.bkp')
        if controlfile_destination:
            Path(controlfile_destination).write_bytes(b'control file')
        return 'Finished backup'

    def run_archivelog_backup():
        _make_artifact(backup_dir, f'arc_ORCL_{time.monotonic_ns()}.bkp')
        return 'Finished backup'

    provider.run_backup.side_effect = run_backup
    provider.run_archivelog_backup.side_effect = run_archivelog_backup
    provider.enforce_window.return_value = []
    return provider


@pytest.fixture
def mock_invoker():
    invoker = MagicMock(spec=SSHRemoteInvoker)
    invoker.invoke_remote_restore.return_value = 0
    return invoker


@pytest.fixture
def orchestrator(guard, mock_provider, mock_invoker, remote_site, backup_dir, replica_dir):
    """
    Orchestrator with a real guard, retention engine and local replicator;
    provider and remote invoker are mocks.
    """
    retention = RetentionEngine(mock_provider, str(backup_dir), compress_age_days=1)
    return PipelineOrchestrator(
        guard=guard,
        provider=mock_provider,
        retention=retention,
        replicator=LocalReplicator(str(replica_dir), timeout=60),
        invoker=mock_invoker,
        site=remote_site,
        backup_dir=str(backup_dir),
        controlfile_prefix='controlfile',
        retention_window_days=3
    )


@pytest.fixture(scope='function')
def secret_cipher():
    """
    SecretCipher with a fresh salt.

    Password: test_password_123
    """
    return SecretCipher('test_password_123')


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient used by drbackup.backup.ssh.

    Returns the mocked class; its return_value is the client instance.
    """
    with patch('drbackup.backup.ssh.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh
