"""Command surface of the engine.

:class:`SFTPBridge` wires a :class:`ConnectionManager`, a
:class:`DirectoryLister`, a :class:`TransferCoordinator` and a
:class:`ProgressEmitter` together and exposes the request/response commands a
front end issues.  Every command returns a value or raises an
:class:`~sftpbridge.errors.SFTPBridgeError`; transfer outcomes arrive as
events.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from .channel import Endpoint
from .config import Settings
from .connection import Connection, ConnectionManager
from .credentials import credentials_from_options
from .directory import DirectoryLister
from .events import Dispatcher, ProgressEmitter
from .fileops import FileEntry
from .transfer_types import TransferInfo
from .transfers import TransferCoordinator

logger = logging.getLogger(__name__)


class SFTPBridge:
    """Session-and-transfer engine behind an SFTP file browser."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        channel_factory: Any = None,
        dispatcher: Optional[Dispatcher] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.emitter = ProgressEmitter(dispatcher)
        self.connections = ConnectionManager(channel_factory, self.settings)
        self.lister = DirectoryLister(self.connections, show_hidden=self.settings.show_hidden)
        self.transfers = TransferCoordinator(self.connections, self.emitter, self.settings)

    def __enter__(self) -> "SFTPBridge":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- connections ----------------------------------------------------

    def connect(
        self,
        host: str,
        port: int,
        username: str,
        password: Optional[str] = None,
        passphrase: Optional[str] = None,
        private_key_path: Optional[str] = None,
    ) -> str:
        credentials = credentials_from_options(password, passphrase, private_key_path)
        return self.connections.connect(Endpoint(host, int(port or 22), username), credentials)

    def disconnect(self, connection_id: str) -> None:
        self.connections.disconnect(connection_id)

    def list_connections(self) -> List[Connection]:
        return self.connections.list_connections()

    # -- directories ----------------------------------------------------

    def list_directory(self, connection_id: str, path: str) -> List[FileEntry]:
        return self.lister.list(connection_id, path)

    def create_directory(self, connection_id: str, path: str) -> None:
        self.lister.make_directory(connection_id, path)

    def delete(self, connection_id: str, path: str, is_dir: Optional[bool] = None) -> None:
        self.lister.remove(connection_id, path, is_dir)

    def rename(self, connection_id: str, old_path: str, new_path: str) -> None:
        self.lister.rename(connection_id, old_path, new_path)

    # -- transfers ------------------------------------------------------

    def upload_file(self, connection_id: str, local_path: str, remote_path: str) -> str:
        return self.transfers.start_upload(connection_id, local_path, remote_path)

    def download_file(self, connection_id: str, remote_path: str, local_path: str) -> str:
        return self.transfers.start_download(connection_id, remote_path, local_path)

    def cancel_transfer(self, transfer_id: str) -> bool:
        return self.transfers.cancel(transfer_id)

    def transfer(self, transfer_id: str) -> TransferInfo:
        return self.transfers.get(transfer_id)

    def wait_for_transfer(self, transfer_id: str, timeout: Optional[float] = None) -> TransferInfo:
        return self.transfers.wait(transfer_id, timeout)

    # -- events ---------------------------------------------------------

    def subscribe(self, observer: Any) -> int:
        return self.emitter.subscribe(observer)

    def unsubscribe(self, handle: int) -> bool:
        return self.emitter.unsubscribe(handle)

    # -- shutdown -------------------------------------------------------

    def close(self, wait: bool = True) -> None:
        logger.info("Closing SFTP bridge")
        self.connections.close_all()
        self.transfers.shutdown(wait=wait)
