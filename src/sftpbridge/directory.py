"""Remote directory listing and simple remote file operations."""

from __future__ import annotations

import logging
from typing import List, Optional

import paramiko

from .connection import ConnectionManager
from .errors import SFTPBridgeError
from .fileops import (
    FileEntry,
    entry_from_attr,
    join_remote,
    normalize_remote_path,
    parent_entry,
    stat_isdir,
)

logger = logging.getLogger(__name__)


class DirectoryLister:
    """Lists remote directories through a :class:`ConnectionManager`."""

    def __init__(self, connections: ConnectionManager, show_hidden: bool = True) -> None:
        self._connections = connections
        self._show_hidden = show_hidden

    def list(self, connection_id: str, path: str) -> List[FileEntry]:
        """Return the entries of ``path`` in the order the server sent them.

        A ``..`` entry is prepended for every directory except ``/``.
        """

        def _impl(sftp: paramiko.SFTPClient) -> List[FileEntry]:
            directory = self._expand_remote_path(path, sftp)
            attrs = sftp.listdir_attr(directory)
            entries = []
            for attr in attrs:
                name = attr.filename
                if not name or name in (".", ".."):
                    continue
                if not self._show_hidden and name.startswith("."):
                    continue
                entries.append(entry_from_attr(directory, attr))
            if directory != "/":
                entries.insert(0, parent_entry(directory))
            logger.debug(f"Listed {len(entries)} entries in {directory}")
            return entries

        return self._connections.with_session(
            connection_id, _impl, action=f"Cannot list directory '{path}'"
        )

    @staticmethod
    def _expand_remote_path(path: str, sftp: paramiko.SFTPClient) -> str:
        """Expand ``~`` and relative paths against the remote home directory."""
        path = (path or "/").replace("\\", "/")
        if path == "~" or path.startswith("~/"):
            home = sftp.normalize(".")
            return normalize_remote_path(home + path[1:])
        if not path.startswith("/"):
            return normalize_remote_path(join_remote(sftp.normalize("."), path))
        return normalize_remote_path(path)

    # -- remote file operations -----------------------------------------

    def make_directory(self, connection_id: str, path: str, mode: int = 0o755) -> None:
        path = normalize_remote_path(path)
        self._connections.with_session(
            connection_id,
            lambda sftp: sftp.mkdir(path, mode),
            action=f"Cannot create directory '{path}'",
        )
        logger.info(f"Created directory: {path}")

    def remove(self, connection_id: str, path: str, is_dir: Optional[bool] = None) -> None:
        """Delete a file, or an empty directory.

        When ``is_dir`` is None the path is stat'ed first to decide.
        """
        path = normalize_remote_path(path)
        if path == "/":
            raise SFTPBridgeError("Refusing to delete the root directory")

        def _impl(sftp: paramiko.SFTPClient) -> bool:
            directory = is_dir
            if directory is None:
                directory = stat_isdir(sftp.stat(path))
            if directory:
                sftp.rmdir(path)
            else:
                sftp.remove(path)
            return directory

        directory = self._connections.with_session(
            connection_id, _impl, action=f"Cannot remove '{path}'"
        )
        logger.info(f"Removed {'directory' if directory else 'file'}: {path}")

    def rename(self, connection_id: str, source: str, target: str) -> None:
        source = normalize_remote_path(source)
        target = normalize_remote_path(target)
        self._connections.with_session(
            connection_id,
            lambda sftp: sftp.rename(source, target),
            action=f"Cannot rename '{source}' to '{target}'",
        )
        logger.info(f"Renamed: {source} -> {target}")
