"""Secure channel factory built on :mod:`paramiko`.

The rest of the package never touches :class:`paramiko.SSHClient` directly:
the connection manager asks a factory for a :class:`SecureChannel` and opens
SFTP sub-sessions on it.  Tests substitute their own factory.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass
from typing import Optional

import paramiko

from .config import Settings
from .credentials import Credentials
from .errors import AuthenticationFailed, ConnectionTimeout, HostUnreachable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int = 22
    username: str = ""

    def __str__(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


class SecureChannel:
    """An authenticated SSH transport able to open SFTP sub-sessions."""

    def __init__(self, client: paramiko.SSHClient, operation_timeout: Optional[float] = None,
                 open_timeout: Optional[float] = None) -> None:
        self._client = client
        self._operation_timeout = operation_timeout
        self._open_timeout = open_timeout

    def open_sftp(self) -> paramiko.SFTPClient:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("SSH session is not active")
        chan = transport.open_session(timeout=self._open_timeout)
        try:
            # bounds the subsystem request and the SFTP version handshake
            chan.settimeout(self._open_timeout)
            chan.invoke_subsystem("sftp")
            sftp = paramiko.SFTPClient(chan)
        except Exception:
            chan.close()
            raise
        chan.settimeout(self._operation_timeout)
        return sftp

    def is_active(self) -> bool:
        transport = self._client.get_transport()
        return bool(transport and transport.is_active())

    def close(self) -> None:
        self._client.close()


def select_host_key_policy(name: str) -> paramiko.MissingHostKeyPolicy:
    """Return the Paramiko host key policy for a settings value."""
    normalized = (name or "").strip().lower()
    if normalized == "reject":
        return paramiko.RejectPolicy()
    if normalized == "warn":
        return paramiko.WarningPolicy()
    return paramiko.AutoAddPolicy()


class ParamikoChannelFactory:
    """Opens :class:`SecureChannel` objects using one authentication method."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or Settings()

    def open(self, endpoint: Endpoint, credentials: Credentials) -> SecureChannel:
        settings = self._settings
        auth_kwargs = credentials.connect_kwargs()

        client = paramiko.SSHClient()
        try:
            client.load_system_host_keys()
        except OSError as e:
            logger.debug(f"Could not load system host keys: {e}")
        if settings.known_hosts:
            known_hosts = os.path.expanduser(settings.known_hosts)
            if os.path.exists(known_hosts):
                client.load_host_keys(known_hosts)
        client.set_missing_host_key_policy(select_host_key_policy(settings.host_key_policy))

        logger.info(f"Connecting to {endpoint} using {credentials.method} authentication")
        try:
            client.connect(
                hostname=endpoint.host,
                port=endpoint.port,
                username=endpoint.username,
                timeout=settings.connect_timeout,
                banner_timeout=settings.connect_timeout,
                auth_timeout=settings.auth_timeout,
                allow_agent=False,
                look_for_keys=False,
                **auth_kwargs,
            )
        except paramiko.BadHostKeyException as e:
            client.close()
            raise AuthenticationFailed(f"Host key for {endpoint.host} does not match: {e}", cause=e)
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationFailed(f"Authentication failed for {endpoint}: {e}", cause=e)
        except socket.timeout as e:
            client.close()
            raise ConnectionTimeout(
                f"Timed out connecting to {endpoint.host}:{endpoint.port} "
                f"after {settings.connect_timeout:g}s", cause=e
            )
        except paramiko.SSHException as e:
            client.close()
            if "timeout" in str(e).lower() or "banner" in str(e).lower():
                raise ConnectionTimeout(f"SSH handshake with {endpoint.host} timed out: {e}", cause=e)
            raise HostUnreachable(f"SSH negotiation with {endpoint.host} failed: {e}", cause=e)
        except OSError as e:
            client.close()
            raise HostUnreachable(f"Cannot reach {endpoint.host}:{endpoint.port}: {e}", cause=e)

        return SecureChannel(client, settings.operation_timeout, settings.connect_timeout)
