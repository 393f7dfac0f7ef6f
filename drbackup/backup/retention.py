"""
Retention policy enforcement for backup artifacts.

Two halves:
- compression of aged artifacts in the backup directory (done here)
- the recovery window, delegated to the backup provider, which alone knows
  which pieces are still needed for point-in-time recovery; compressed
  copies of the pieces it reports obsolete are removed here
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List

from .compression import compress_aged, compressed_twins
from .errors import Deadline
from .provider import RmanProvider


logger = logging.getLogger(__name__)


class RetentionEngine:
    """
    Compresses aged artifacts and requests the provider's retention policy.
    """

    def __init__(
        self,
        provider: RmanProvider,
        backup_dir: str,
        compress_age_days: int = 1,
        compression_format: str = 'gz',
        compression_timeout: float = 2 * 3600
    ):
        """
        Initialize retention engine.

        Args:
            provider: Backup provider owning the obsolescence bookkeeping
            backup_dir: Directory holding backup artifacts
            compress_age_days: Artifacts older than this many days are compressed
            compression_format: 'gz', 'bz2' or 'xz'
            compression_timeout: Bound in seconds for one compression pass
        """
        self.provider = provider
        self.backup_dir = backup_dir
        self.compress_age = timedelta(days=compress_age_days)
        self.compression_format = compression_format
        self.compression_timeout = compression_timeout
        self.logs: List[str] = []

    def compress_aged(self) -> Dict[str, Any]:
        """
        Compress artifacts older than the configured age, each exactly once.

        Returns:
            Summary dict from compression.compress_aged()

        Raises:
            CompressionError: If the backup directory cannot be scanned
            StageTimeout: If the pass exceeds compression_timeout
        """
        self._log(f"Compressing artifacts older than {self.compress_age.days} days in {self.backup_dir}")

        deadline = Deadline('compression', self.compression_timeout)
        summary = compress_aged(
            self.backup_dir,
            self.compress_age,
            compression_format=self.compression_format,
            deadline_check=deadline.check
        )

        self._log(
            f"Compression complete. "
            f"Files: {len(summary['compressed'])}, "
            f"Reclaimed: {(summary['bytes_before'] - summary['bytes_after']) / 1024 / 1024:.2f} MB, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

    def apply_retention_window(self, window_days: int) -> Dict[str, Any]:
        """
        Ask the provider to enforce its recovery window, then remove the
        compressed copies of every piece it reported obsolete.

        Only handles inside the backup directory are considered.

        Args:
            window_days: Recovery window in days

        Returns:
            Dict summary:
            {
                'obsolete': List[str],
                'removed': List[str],
                'errors': List[str]
            }

        Raises:
            ProviderError: If the provider reports a failure
            StageTimeout: If the provider exceeds its retention timeout
        """
        self._log(f"Applying recovery window of {window_days} days")
        obsolete = self.provider.enforce_window(window_days)

        summary = {
            'obsolete': obsolete,
            'removed': [],
            'errors': []
        }

        base = os.path.realpath(self.backup_dir)
        for handle in obsolete:
            if os.path.commonpath([base, os.path.realpath(handle)]) != base:
                continue
            for twin in compressed_twins(handle):
                try:
                    os.remove(twin)
                    summary['removed'].append(twin)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    error_msg = f"Failed to remove obsolete {twin}: {e}"
                    summary['errors'].append(error_msg)
                    logger.warning(error_msg)

        self._log(
            f"Retention complete. "
            f"Obsolete: {len(obsolete)}, "
            f"Compressed copies removed: {len(summary['removed'])}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
