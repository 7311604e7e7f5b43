"""Connection registry and per-channel serialization for sftpbridge.

An SFTP sub-session is a strict request/response stream: two unrelated
operations must never interleave their requests on it.  Every protocol
operation therefore goes through :meth:`ConnectionManager.with_session`, which
runs the operation while holding the lock of one *slot* in a
:class:`SessionArena`.  A slot is one physical SFTP channel; each connection
has a primary slot and, when multiplexing is enabled, one extra slot per
transfer.
"""

from __future__ import annotations

import dataclasses
import logging
import socket
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import paramiko

from .channel import Endpoint, ParamikoChannelFactory, SecureChannel
from .config import Settings
from .credentials import Credentials
from .errors import (
    ConnectionLost,
    ConnectionNotFound,
    ConnectionTimeout,
    RemoteIOError,
    SFTPBridgeError,
    StalledTransfer,
    remote_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIMARY_CHANNEL = "primary"

LossListener = Callable[[str, SFTPBridgeError], None]


class ConnectionState(Enum):
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    FAILED = "Failed"
    CLOSED = "Closed"


@dataclass
class Connection:
    """Public view of one registered connection.

    The secure channel itself is kept privately by the manager.
    """

    id: str
    endpoint: Endpoint
    state: ConnectionState = ConnectionState.CONNECTING
    error: Optional[SFTPBridgeError] = None


class _SessionSlot:
    def __init__(self, connection_id: str, key: str, sftp: paramiko.SFTPClient) -> None:
        self.connection_id = connection_id
        self.key = key
        self.sftp = sftp
        self.lock = threading.Lock()
        self.closed = False

    def close(self) -> None:
        self.closed = True
        try:
            self.sftp.close()
        except Exception as e:
            logger.debug(f"Error closing SFTP channel {self.connection_id}/{self.key}: {e}")


class SessionArena:
    """In-flight operation slots keyed by ``(connection_id, channel_key)``."""

    def __init__(self) -> None:
        self._slots: Dict[Tuple[str, str], _SessionSlot] = {}
        self._lock = threading.Lock()

    def add(self, connection_id: str, key: str, sftp: paramiko.SFTPClient) -> _SessionSlot:
        slot = _SessionSlot(connection_id, key, sftp)
        with self._lock:
            if (connection_id, key) in self._slots:
                raise ValueError(f"Channel {key} already registered for {connection_id}")
            self._slots[(connection_id, key)] = slot
        return slot

    def get(self, connection_id: str, key: str) -> Optional[_SessionSlot]:
        with self._lock:
            return self._slots.get((connection_id, key))

    def remove(self, connection_id: str, key: str) -> Optional[_SessionSlot]:
        with self._lock:
            return self._slots.pop((connection_id, key), None)

    def pop_all(self, connection_id: str) -> List[_SessionSlot]:
        with self._lock:
            keys = [k for k in self._slots if k[0] == connection_id]
            return [self._slots.pop(k) for k in keys]

    def count(self, connection_id: str) -> int:
        with self._lock:
            return sum(1 for k in self._slots if k[0] == connection_id)


def _is_transport_failure(exc: BaseException, channel: Optional[SecureChannel]) -> bool:
    if isinstance(exc, (EOFError, paramiko.SSHException, paramiko.SFTPError, ConnectionError)):
        return True
    # paramiko reports a closed socket as a plain OSError without errno
    return channel is None or not channel.is_active()


class ConnectionManager:
    """Owns every connection and mediates all access to their sessions."""

    def __init__(self, channel_factory: Any = None, settings: Optional[Settings] = None) -> None:
        self._settings = settings or Settings()
        self._factory = channel_factory or ParamikoChannelFactory(self._settings)
        self._connections: Dict[str, Connection] = {}
        self._channels: Dict[str, SecureChannel] = {}
        self._arena = SessionArena()
        # closed or failed ids, oldest first; bounded by settings.history_limit
        self._retired: Dict[str, None] = {}
        self._lock = threading.RLock()
        self._listeners: List[LossListener] = []

    @property
    def multiplex(self) -> bool:
        return self._settings.multiplex

    # -- lifecycle ------------------------------------------------------

    def connect(self, endpoint: Endpoint, credentials: Credentials) -> str:
        """Authenticate, open the SFTP subsystem and register the connection.

        Nothing is registered unless every step succeeds.
        """
        connection_id = uuid.uuid4().hex
        channel = self._factory.open(endpoint, credentials)
        sftp = self._open_primary(endpoint, channel)

        connection = Connection(connection_id, endpoint, ConnectionState.CONNECTED)
        with self._lock:
            self._connections[connection_id] = connection
            self._channels[connection_id] = channel
            self._arena.add(connection_id, PRIMARY_CHANNEL, sftp)
        logger.info(f"Connection {connection_id} established to {endpoint}")
        return connection_id

    def _open_primary(self, endpoint: Endpoint, channel: SecureChannel) -> paramiko.SFTPClient:
        """Start the SFTP subsystem, giving up after ``connect_timeout`` seconds."""
        timeout = self._settings.connect_timeout
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sftp-open")
        future = executor.submit(channel.open_sftp)
        executor.shutdown(wait=False)
        try:
            return future.result(timeout=timeout)
        except (FutureTimeout, socket.timeout) as e:
            channel.close()
            raise ConnectionTimeout(
                f"SFTP subsystem on {endpoint.host} did not start within {timeout:g}s", cause=e
            )
        except (OSError, EOFError, paramiko.SSHException) as e:
            channel.close()
            raise RemoteIOError(f"Failed to start SFTP subsystem on {endpoint.host}: {e}", cause=e)

    def disconnect(self, connection_id: str) -> None:
        """Close a connection.  Unknown or already closed ids are ignored."""
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None or connection.state == ConnectionState.CLOSED:
                logger.debug(f"Disconnect of {connection_id}: nothing to do")
                return
            was_connected = connection.state == ConnectionState.CONNECTED
            connection.state = ConnectionState.CLOSED

        logger.info(f"Disconnecting {connection_id} ({connection.endpoint})")
        if was_connected:
            self._notify(connection_id, ConnectionLost("connection closed"))
        self._teardown(connection_id)
        self._retire(connection_id)

    def close_all(self) -> None:
        with self._lock:
            ids = list(self._connections)
        for connection_id in ids:
            self.disconnect(connection_id)

    def _teardown(self, connection_id: str) -> None:
        for slot in self._arena.pop_all(connection_id):
            slot.close()
        with self._lock:
            channel = self._channels.pop(connection_id, None)
        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.debug(f"Error closing channel for {connection_id}: {e}")

    def _retire(self, connection_id: str) -> None:
        with self._lock:
            self._retired.pop(connection_id, None)
            self._retired[connection_id] = None
            while len(self._retired) > self._settings.history_limit:
                evicted = next(iter(self._retired))
                del self._retired[evicted]
                self._connections.pop(evicted, None)
                self._channels.pop(evicted, None)
                logger.debug(f"Forgot connection {evicted}")

    def _mark_lost(self, connection_id: str, error: SFTPBridgeError) -> None:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None or connection.state != ConnectionState.CONNECTED:
                return
            connection.state = ConnectionState.FAILED
            connection.error = error
        logger.error(f"Connection {connection_id} lost: {error}")
        self._notify(connection_id, error)
        self._teardown(connection_id)
        self._retire(connection_id)

    # -- listeners ------------------------------------------------------

    def add_loss_listener(self, listener: LossListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_loss_listener(self, listener: LossListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, connection_id: str, error: SFTPBridgeError) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(connection_id, error)
            except Exception:
                logger.error(f"Loss listener failed for {connection_id}", exc_info=True)

    # -- queries --------------------------------------------------------

    def get(self, connection_id: str) -> Connection:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                raise ConnectionNotFound(f"Connection {connection_id} not found")
            return dataclasses.replace(connection)

    def state(self, connection_id: str) -> ConnectionState:
        return self.get(connection_id).state

    def endpoint(self, connection_id: str) -> Endpoint:
        return self.get(connection_id).endpoint

    def list_connections(self) -> List[Connection]:
        with self._lock:
            return [dataclasses.replace(c) for c in self._connections.values()]

    def require_connected(self, connection_id: str) -> Connection:
        connection = self.get(connection_id)
        if connection.state != ConnectionState.CONNECTED:
            reason = connection.error or f"connection is {connection.state.value.lower()}"
            raise ConnectionLost(f"Connection {connection_id}: {reason}")
        return connection

    # -- channels -------------------------------------------------------

    def open_channel(self, connection_id: str) -> str:
        """Return the channel key a new transfer should use.

        Without multiplexing every operation shares the primary channel.
        """
        self.require_connected(connection_id)
        if not self.multiplex:
            return PRIMARY_CHANNEL
        with self._lock:
            channel = self._channels.get(connection_id)
        if channel is None:
            raise ConnectionLost(f"Connection {connection_id} has no open channel")
        try:
            sftp = channel.open_sftp()
        except (OSError, EOFError, paramiko.SSHException) as e:
            error = ConnectionLost(f"Could not open SFTP channel: {e}", cause=e)
            if not channel.is_active():
                self._mark_lost(connection_id, error)
            raise error
        key = uuid.uuid4().hex
        self._arena.add(connection_id, key, sftp)
        logger.debug(f"Opened SFTP channel {key} on {connection_id}")
        return key

    def close_channel(self, connection_id: str, key: str) -> None:
        if key == PRIMARY_CHANNEL:
            return
        slot = self._arena.remove(connection_id, key)
        if slot is not None:
            with slot.lock:
                slot.close()

    def channel_count(self, connection_id: str) -> int:
        return self._arena.count(connection_id)

    # -- access ---------------------------------------------------------

    def with_session(self, connection_id: str, op: Callable[[paramiko.SFTPClient], T],
                     channel: str = PRIMARY_CHANNEL, action: str = "SFTP operation") -> T:
        """Run ``op(sftp)`` with exclusive use of one channel of a connection."""
        self.require_connected(connection_id)
        slot = self._arena.get(connection_id, channel)
        if slot is None:
            raise ConnectionLost(f"{action}: channel of {connection_id} is closed")

        with slot.lock:
            if slot.closed or self.state(connection_id) != ConnectionState.CONNECTED:
                raise ConnectionLost(f"{action}: connection closed")
            try:
                return op(slot.sftp)
            except SFTPBridgeError:
                raise
            except socket.timeout as e:
                raise StalledTransfer(f"{action}: no response from server", cause=e)
            except (OSError, EOFError, paramiko.SSHException, paramiko.SFTPError) as e:
                if slot.closed or self.state(connection_id) != ConnectionState.CONNECTED:
                    raise ConnectionLost(f"{action}: connection closed", cause=e)
                with self._lock:
                    channel_handle = self._channels.get(connection_id)
                if not _is_transport_failure(e, channel_handle):
                    raise remote_error(e, action)
                error = ConnectionLost(f"{action}: connection dropped ({e})", cause=e)

        self._mark_lost(connection_id, error)
        raise error
