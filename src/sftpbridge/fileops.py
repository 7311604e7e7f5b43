"""Local and remote filesystem helper utilities for sftpbridge."""

from __future__ import annotations

import os
import posixpath
import stat
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

import paramiko

PARENT_NAME = ".."


@dataclass(frozen=True)
class FileEntry:
    """Immutable description of a remote directory entry."""

    name: str
    path: str
    size: int
    is_dir: bool
    modified: int = 0
    permissions: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("File name cannot be empty")
        if self.size < 0:
            object.__setattr__(self, "size", 0)
        if self.modified < 0:
            object.__setattr__(self, "modified", 0)

    @property
    def is_parent(self) -> bool:
        return self.name == PARENT_NAME

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "is_dir": self.is_dir,
            "modified": self.modified,
            "permissions": self.permissions,
        }


def human_size(n: int) -> str:
    """Convert bytes to human readable format."""
    value = float(n)
    for unit in ("B", "KB", "MB", "GB", "TB", "PB"):
        if value < 1024 or unit == "PB":
            return f"{value:.0f} {unit}" if value >= 10 or unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return "0 B"


def human_time(ts: float) -> str:
    """Convert timestamp to human readable format."""
    if not ts:
        return "-"
    try:
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")
    except (OverflowError, OSError, ValueError):
        return "-"


def format_permissions(mode: Optional[int]) -> str:
    """Render the permission bits of ``mode`` like ``rwxr-xr-x``."""
    mode = mode or 0
    perm = ""
    for shift in (6, 3, 0):
        perm += "r" if mode & (4 << shift) else "-"
        perm += "w" if mode & (2 << shift) else "-"
        perm += "x" if mode & (1 << shift) else "-"
    return perm


def stat_isdir(attr: paramiko.SFTPAttributes) -> bool:
    """Return ``True`` when the attribute represents a directory."""

    return bool(attr.st_mode and stat.S_ISDIR(attr.st_mode))


def normalize_remote_path(path: str) -> str:
    """Collapse ``.``/``..``/duplicate slashes; remote paths always use ``/``."""
    path = (path or "/").replace("\\", "/")
    if not path.startswith("/"):
        path = "/" + path
    normalized = posixpath.normpath(path)
    # posixpath keeps a leading "//"
    return "/" + normalized.lstrip("/")


def join_remote(parent: str, name: str) -> str:
    return posixpath.join(parent if parent.endswith("/") else parent + "/", name)


def parent_path(path: str) -> str:
    return posixpath.dirname(path.rstrip("/")) or "/"


def entry_from_attr(directory: str, attr: paramiko.SFTPAttributes) -> FileEntry:
    is_dir = stat_isdir(attr)
    return FileEntry(
        name=attr.filename,
        path=join_remote(directory, attr.filename),
        size=0 if is_dir else int(attr.st_size or 0),
        is_dir=is_dir,
        modified=int(attr.st_mtime or 0),
        permissions=format_permissions(attr.st_mode),
    )


def parent_entry(directory: str) -> FileEntry:
    """The synthetic ``..`` entry pointing at the parent of ``directory``."""
    return FileEntry(name=PARENT_NAME, path=parent_path(directory), size=0, is_dir=True)


def sort_entries(entries: Iterable[FileEntry]) -> List[FileEntry]:
    """``..`` first, then directories, then files, each by case-insensitive name."""
    return sorted(entries, key=lambda e: (not e.is_parent, not e.is_dir, e.name.lower()))


def normalize_local_path(path: Optional[str]) -> str:
    """Expand user and resolve an absolute local filesystem path."""
    expanded = os.path.expanduser(path or ".")
    return os.path.abspath(expanded)
