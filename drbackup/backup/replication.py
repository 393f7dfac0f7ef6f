"""
Replication handlers pushing backup artifacts to the DR site.

Supports:
- SFTPReplicator: copy to the DR host over SSH/SFTP
- S3Replicator: copy to an S3 bucket
- LocalReplicator: copy to a mounted directory

All of them are one-way and skip-if-exists: a destination file at the same
relative path is never overwritten, so passes are idempotent and a pass
interrupted midway is completed by the next one. Files are written under a
temporary name and renamed, so the destination only ever holds complete
files.
"""

import logging
import os
import posixpath
import shutil
from pathlib import Path
from typing import Iterator, Optional, Tuple

import boto3
import paramiko
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from drbackup.models import RemoteSite, TransferResult
from .compression import PARTIAL_SUFFIX
from .errors import Deadline, PipelineError
from .ssh import connect_ssh


logger = logging.getLogger(__name__)


class ReplicationError(PipelineError):
    """Raised when the replication target cannot be reached at all."""
    pass


def iter_source_files(source_dir: str) -> Iterator[Tuple[str, str]]:
    """
    Yield (absolute path, relative posix path) for every file to replicate.

    Raises:
        ReplicationError: If source_dir is not a directory
    """
    base = Path(source_dir)
    if not base.is_dir():
        raise ReplicationError(f"Source directory does not exist: {source_dir}")

    for file_path in sorted(base.rglob('*')):
        if not file_path.is_file() or file_path.name.endswith(PARTIAL_SUFFIX):
            continue
        yield str(file_path), file_path.relative_to(base).as_posix()


class _Replicator:
    """Skip-if-exists copy loop shared by every target."""

    stage_name = 'replication'

    def __init__(self, destination: str, timeout: float = 4 * 3600):
        self.destination = destination
        self.timeout = timeout

    def sync(self, source_dir: str, destination: Optional[str] = None) -> TransferResult:
        """
        Copy files missing at the destination.

        Args:
            source_dir: Local directory to replicate
            destination: Destination root (defaults to the configured one)

        Returns:
            TransferResult; files that failed are listed in ``failed``

        Raises:
            ReplicationError: If the source or target is unusable
            StageTimeout: If the pass exceeds the timeout
        """
        destination = destination or self.destination
        deadline = Deadline(self.stage_name, self.timeout)
        result = TransferResult()

        try:
            self._open()
            for local_path, relative_path in iter_source_files(source_dir):
                deadline.check()

                try:
                    if self._exists(destination, relative_path):
                        result.skipped.append(relative_path)
                        continue

                    self._transfer(local_path, destination, relative_path)
                    result.transferred.append(relative_path)
                    result.bytes_transferred += os.path.getsize(local_path)
                    logger.info(f"Replicated {relative_path}")
                except (OSError, ReplicationError, paramiko.SSHException,
                        BotoCoreError, ClientError, S3UploadFailedError) as e:
                    logger.error(f"Failed to replicate {relative_path}: {e}")
                    result.failed.append(relative_path)
        finally:
            self.cleanup()

        return result

    def _open(self):
        pass

    def _exists(self, destination: str, relative_path: str) -> bool:
        raise NotImplementedError

    def _transfer(self, local_path: str, destination: str, relative_path: str):
        raise NotImplementedError

    def cleanup(self):
        """Release connections. No-op for targets without connections."""
        pass


class LocalReplicator(_Replicator):
    """
    Replicates into a locally mounted directory (NFS mount of the DR site,
    or a staging area).
    """

    def _open(self):
        try:
            Path(self.destination).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ReplicationError(f"Failed to create destination directory: {e}")

    def _exists(self, destination: str, relative_path: str) -> bool:
        return (Path(destination) / relative_path).exists()

    def _transfer(self, local_path: str, destination: str, relative_path: str):
        dest_path = Path(destination) / relative_path
        partial = dest_path.with_name(dest_path.name + PARTIAL_SUFFIX)

        dest_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(local_path, partial)
        with open(partial, 'rb') as f:
            os.fsync(f.fileno())
        os.replace(partial, dest_path)


class SFTPReplicator(_Replicator):
    """
    Replicates to the DR host over SFTP.
    """

    def __init__(self, site: RemoteSite, timeout: float = 4 * 3600, connect_timeout: float = 30):
        """
        Initialize SFTP replicator.

        Args:
            site: DR site (host, credentials, destination path)
            timeout: Bound in seconds for one replication pass
            connect_timeout: SSH connect and socket timeout in seconds
        """
        super().__init__(site.destination_path, timeout)
        self.site = site
        self.connect_timeout = connect_timeout
        self.ssh_client = None
        self.sftp_client = None

    def _open(self):
        self.ssh_client = connect_ssh(self.site, self.connect_timeout, ReplicationError)
        try:
            self.sftp_client = self.ssh_client.open_sftp()
            self.sftp_client.get_channel().settimeout(self.connect_timeout)
        except paramiko.SSHException as e:
            raise ReplicationError(f"Failed to open SFTP session: {e}")

    def _exists(self, destination: str, relative_path: str) -> bool:
        try:
            self.sftp_client.stat(posixpath.join(destination, relative_path))
            return True
        except FileNotFoundError:
            return False

    def _makedirs(self, remote_dir: str):
        parts = [p for p in remote_dir.split('/') if p]
        current = '/' if remote_dir.startswith('/') else ''
        for part in parts:
            current = posixpath.join(current, part) if current else part
            try:
                self.sftp_client.stat(current)
            except FileNotFoundError:
                self.sftp_client.mkdir(current)

    def _transfer(self, local_path: str, destination: str, relative_path: str):
        remote_path = posixpath.join(destination, relative_path)
        partial = remote_path + PARTIAL_SUFFIX

        self._makedirs(posixpath.dirname(remote_path))
        self.sftp_client.put(local_path, partial, confirm=True)
        self.sftp_client.posix_rename(partial, remote_path)

    def cleanup(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except Exception as e:
                logger.debug(f"Error closing SFTP session: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug(f"Error closing SSH connection: {e}")
            self.ssh_client = None


class S3Replicator(_Replicator):
    """
    Replicates to an S3 bucket under {prefix}/{relative_path}.

    S3 only exposes an object once its upload completes, so no temporary
    key is needed.
    """

    def __init__(
        self,
        bucket_name: str,
        prefix: str = '',
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout: float = 4 * 3600,
        connect_timeout: float = 30
    ):
        """
        Initialize S3 replicator.

        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix acting as the destination root
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default credential chain if None)
            secret_key: AWS secret access key
            timeout: Bound in seconds for one replication pass
            connect_timeout: Connect/read timeout for S3 calls
        """
        super().__init__(prefix.strip('/'), timeout)
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                config=BotoConfig(
                    connect_timeout=connect_timeout,
                    read_timeout=connect_timeout * 4,
                    retries={'max_attempts': 3}
                )
            )
        except Exception as e:
            raise ReplicationError(f"Failed to initialize S3 client: {e}")

    def _key(self, destination: str, relative_path: str) -> str:
        destination = destination.strip('/')
        return f"{destination}/{relative_path}" if destination else relative_path

    def _exists(self, destination: str, relative_path: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(destination, relative_path))
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise ReplicationError(f"S3 head failed ({error_code}): {e}")

    def _transfer(self, local_path: str, destination: str, relative_path: str):
        self.s3_client.upload_file(local_path, self.bucket_name, self._key(destination, relative_path))


def create_replicator(config, site: Optional[RemoteSite] = None):
    """
    Factory function to create the configured replicator.

    Args:
        config: Config instance
        site: DR site (required for 'sftp')

    Returns:
        SFTPReplicator, S3Replicator or LocalReplicator instance

    Raises:
        ValueError: If REPLICATOR is invalid or its settings are missing
    """
    kind = config.REPLICATOR
    if kind == 'sftp':
        if site is None:
            raise ValueError("SFTP replication requires a DR site")
        return SFTPReplicator(site, config.REPLICATION_TIMEOUT, config.SSH_CONNECT_TIMEOUT)
    elif kind == 's3':
        if not config.S3_BUCKET:
            raise ValueError("S3 replication requires S3_BUCKET")
        return S3Replicator(
            bucket_name=config.S3_BUCKET,
            prefix=config.S3_PREFIX,
            region=config.S3_REGION,
            access_key=config.AWS_ACCESS_KEY_ID,
            secret_key=config.AWS_SECRET_ACCESS_KEY,
            timeout=config.REPLICATION_TIMEOUT,
            connect_timeout=config.SSH_CONNECT_TIMEOUT
        )
    elif kind == 'local':
        if not config.LOCAL_REPLICA_DIR:
            raise ValueError("Local replication requires LOCAL_REPLICA_DIR")
        return LocalReplicator(config.LOCAL_REPLICA_DIR, config.REPLICATION_TIMEOUT)
    else:
        raise ValueError(f"Invalid replicator: {kind}")
