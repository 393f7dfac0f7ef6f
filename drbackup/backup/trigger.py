"""
Remote trigger adapter - starts the recovery procedure on the DR site.

The restore command runs over SSH. Only its exit status matters here;
restore semantics belong to the remote script.
"""

import logging
import time
from typing import Optional

import paramiko

from drbackup.models import RemoteSite
from .errors import PipelineError, StageTimeout
from .ssh import connect_ssh


logger = logging.getLogger(__name__)


class RemoteTriggerError(PipelineError):
    """Raised when the remote command cannot be started."""
    pass


class SSHRemoteInvoker:
    """
    Executes commands on a remote site over an authenticated SSH channel.
    """

    POLL_INTERVAL = 0.5

    def __init__(self, timeout: float = 2 * 3600, connect_timeout: float = 30):
        """
        Initialize remote invoker.

        Args:
            timeout: Bound in seconds for the remote command
            connect_timeout: SSH connect timeout in seconds
        """
        self.timeout = timeout
        self.connect_timeout = connect_timeout

    def exec_remote(self, site: RemoteSite, command: str, timeout: Optional[float] = None) -> int:
        """
        Run a command on the remote site and wait for it.

        Args:
            site: Remote site descriptor
            command: Shell command line to execute remotely
            timeout: Override for the command bound

        Returns:
            Remote exit status

        Raises:
            RemoteTriggerError: If connecting or starting the command fails
            StageTimeout: If the command does not finish in time
        """
        timeout = timeout or self.timeout
        client = connect_ssh(site, self.connect_timeout, RemoteTriggerError)

        try:
            try:
                _, stdout, _ = client.exec_command(command, timeout=self.connect_timeout)
            except paramiko.SSHException as e:
                raise RemoteTriggerError(f"Failed to start remote command: {e}")

            channel = stdout.channel
            deadline = time.monotonic() + timeout
            while not channel.exit_status_ready():
                # Keep the channel window open
                self._drain(channel)
                if time.monotonic() >= deadline:
                    channel.close()
                    raise StageTimeout('remote trigger', timeout, command)
                time.sleep(self.POLL_INTERVAL)

            exit_status = channel.recv_exit_status()
            self._drain(channel)
            return exit_status

        finally:
            client.close()

    def invoke_remote_restore(self, site: RemoteSite) -> int:
        """
        Start the predetermined restore procedure on the DR site.

        Args:
            site: DR site; its restore_command is executed

        Returns:
            Remote exit status (0 = restore procedure succeeded)

        Raises:
            RemoteTriggerError: If the command cannot be started
            StageTimeout: If the restore exceeds the timeout
        """
        logger.info(f"Invoking remote restore on {site.host}: {site.restore_command}")
        exit_status = self.exec_remote(site, site.restore_command)
        logger.info(f"Remote restore on {site.host} exited with status {exit_status}")
        return exit_status

    @staticmethod
    def _drain(channel):
        while channel.recv_ready():
            for line in channel.recv(32768).decode(errors='replace').splitlines():
                logger.debug(f"remote stdout: {line}")
        while channel.recv_stderr_ready():
            for line in channel.recv_stderr(32768).decode(errors='replace').splitlines():
                logger.debug(f"remote stderr: {line}")
