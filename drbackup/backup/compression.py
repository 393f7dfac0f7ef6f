"""
In-place compression of aged backup artifacts.

Supports multiple formats:
- gz: gzip
- bz2: bzip2
- xz: LZMA

A compressed artifact keeps its original name plus the format suffix and
is never compressed again.
"""

import bz2
import gzip
import lzma
import logging
import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from drbackup.models import BackupArtifact
from .errors import PipelineError


logger = logging.getLogger(__name__)

# Suffix of files being written; never treated as artifacts
PARTIAL_SUFFIX = '.partial'

_FORMATS = {
    'gz': ('.gz', gzip.open),
    'bz2': ('.bz2', bz2.open),
    'xz': ('.xz', lzma.open),
}


class CompressionError(PipelineError):
    """Raised when compressing an artifact fails."""
    pass


def compressed_name(path: str, compression_format: str = 'gz') -> str:
    """
    Name a file gets once compressed.

    Raises:
        ValueError: If compression_format is invalid
    """
    if compression_format not in _FORMATS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(_FORMATS.keys())}"
        )
    return f"{path}{_FORMATS[compression_format][0]}"


def compressed_twins(path: str) -> List[str]:
    """Existing compressed copies of path, in any supported format."""
    return [
        f"{path}{suffix}" for suffix, _ in _FORMATS.values()
        if os.path.isfile(f"{path}{suffix}")
    ]


def compress_file(path: str, compression_format: str = 'gz') -> str:
    """
    Compress a single file in place.

    The compressed copy is written under a temporary name, synced and
    renamed into place before the original is removed, so a crash leaves
    either the original or a complete compressed file. If a complete
    compressed twin already exists, only the original is removed.

    Args:
        path: File to compress
        compression_format: 'gz', 'bz2' or 'xz'

    Returns:
        Path of the compressed file

    Raises:
        CompressionError: If compression fails
        ValueError: If compression_format is invalid
    """
    target = compressed_name(path, compression_format)
    opener = _FORMATS[compression_format][1]

    if not os.path.isfile(path):
        raise CompressionError(f"Not a regular file: {path}")

    if os.path.exists(target):
        # Finished by an interrupted earlier pass
        try:
            os.remove(path)
        except OSError as e:
            raise CompressionError(f"Failed to remove original {path}: {e}")
        return target

    partial = f"{target}{PARTIAL_SUFFIX}"
    try:
        with open(path, 'rb') as src, opener(partial, 'wb') as dst:
            shutil.copyfileobj(src, dst, 1024 * 1024)
        with open(partial, 'rb') as f:
            os.fsync(f.fileno())
        shutil.copystat(path, partial)
        os.replace(partial, target)
        os.remove(path)
        return target
    except (OSError, lzma.LZMAError) as e:
        # Clean up partial file on failure
        if os.path.exists(partial):
            try:
                os.remove(partial)
            except OSError:
                logger.warning(f"Could not remove partial file {partial}")
        raise CompressionError(f"Failed to compress {path}: {e}")


def find_aged_artifacts(
    directory: str,
    age_threshold: timedelta,
    now: Optional[datetime] = None
) -> List[BackupArtifact]:
    """
    List uncompressed regular files older than the threshold.

    Args:
        directory: Backup directory (searched recursively)
        age_threshold: Minimum age based on modification time
        now: Reference time (default: current local time)

    Returns:
        Artifacts sorted oldest first

    Raises:
        CompressionError: If the directory cannot be read
    """
    base = Path(directory)
    if not base.is_dir():
        raise CompressionError(f"Backup directory does not exist: {directory}")

    cutoff = (now or datetime.now()) - age_threshold
    aged = []

    try:
        for file_path in base.rglob('*'):
            if not file_path.is_file() or file_path.is_symlink():
                continue
            if file_path.name.endswith(PARTIAL_SUFFIX):
                continue

            artifact = BackupArtifact.from_path(str(file_path))
            if artifact.compressed:
                continue
            if artifact.created_at < cutoff:
                aged.append(artifact)
    except OSError as e:
        raise CompressionError(f"Failed to scan {directory}: {e}")

    return sorted(aged, key=lambda a: a.created_at)


def compress_aged(
    directory: str,
    age_threshold: timedelta,
    compression_format: str = 'gz',
    deadline_check: Optional[Callable[[], None]] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Compress every aged, not yet compressed artifact in a directory.

    Args:
        directory: Backup directory
        age_threshold: Files older than this are compressed
        compression_format: 'gz', 'bz2' or 'xz'
        deadline_check: Called before each file; raises StageTimeout when time is up
        now: Reference time for ages

    Returns:
        Dict summary:
        {
            'compressed': List[str],
            'bytes_before': int,
            'bytes_after': int,
            'errors': List[str]
        }

    Raises:
        CompressionError: If the directory cannot be scanned
        StageTimeout: If deadline_check raises
    """
    summary = {
        'compressed': [],
        'bytes_before': 0,
        'bytes_after': 0,
        'errors': []
    }

    for artifact in find_aged_artifacts(directory, age_threshold, now=now):
        if deadline_check:
            deadline_check()

        try:
            size_before = os.path.getsize(artifact.path)
            target = compress_file(artifact.path, compression_format)
            summary['compressed'].append(target)
            summary['bytes_before'] += size_before
            summary['bytes_after'] += os.path.getsize(target)
            logger.info(f"Compressed {artifact.path}")
        except (CompressionError, OSError) as e:
            logger.error(str(e))
            summary['errors'].append(str(e))

    return summary
