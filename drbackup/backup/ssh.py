"""
SSH connection helper shared by the SFTP replicator and the remote trigger.
"""

from pathlib import Path

import paramiko
from paramiko import AutoAddPolicy, SSHClient

from drbackup.models import RemoteSite
from .errors import PipelineError


def connect_ssh(site: RemoteSite, timeout: float, error_class=PipelineError) -> SSHClient:
    """
    Open an authenticated SSH connection to a remote site.

    Args:
        site: Remote site descriptor
        timeout: Connect, banner and auth timeout in seconds
        error_class: PipelineError subclass raised on failure

    Returns:
        Connected SSHClient

    Raises:
        error_class: If connection or authentication fails
    """
    # Prepare connection kwargs
    connect_kwargs = {
        'hostname': site.host,
        'port': site.port,
        'username': site.username,
        'timeout': timeout,
        'banner_timeout': timeout,
        'auth_timeout': timeout
    }

    # Use password or private key
    if site.password:
        connect_kwargs['password'] = site.password
    elif site.key_filename:
        key_path = Path(site.key_filename).expanduser()
        if not key_path.exists():
            raise error_class(f"Private key not found: {site.key_filename}")
        connect_kwargs['key_filename'] = str(key_path)
    else:
        raise error_class("Either password or key_filename must be provided")

    client = SSHClient()
    try:
        client.load_system_host_keys()
        client.set_missing_host_key_policy(AutoAddPolicy())
        client.connect(**connect_kwargs)
        return client

    except paramiko.AuthenticationException as e:
        client.close()
        raise error_class(f"SSH authentication failed: {e}")
    except paramiko.SSHException as e:
        client.close()
        raise error_class(f"SSH connection failed: {e}")
    except OSError as e:
        client.close()
        raise error_class(f"Failed to connect to {site.host}: {e}")
