"""Public interface for the sftpbridge package."""

from .bridge import SFTPBridge
from .channel import Endpoint, ParamikoChannelFactory, SecureChannel
from .config import Settings
from .connection import Connection, ConnectionManager, ConnectionState
from .credentials import KeyCredentials, PasswordCredentials, credentials_from_options
from .directory import DirectoryLister
from .errors import (
    AuthenticationFailed,
    ConnectionLost,
    ConnectionNotFound,
    ConnectionTimeout,
    HostUnreachable,
    InvalidCredentials,
    LocalIOError,
    NotFound,
    PermissionDenied,
    RemoteIOError,
    SFTPBridgeError,
    StalledTransfer,
    TransferCancelled,
    TransferNotFound,
)
from .events import ProgressEmitter, immediate_dispatch, main_loop_dispatch
from .fileops import FileEntry, sort_entries
from .transfer_types import (
    UNKNOWN_SIZE,
    FinishedEvent,
    ProgressEvent,
    TransferInfo,
    TransferKind,
    TransferState,
)
from .transfers import TransferCoordinator

__all__ = [
    "AuthenticationFailed",
    "Connection",
    "ConnectionLost",
    "ConnectionManager",
    "ConnectionNotFound",
    "ConnectionState",
    "ConnectionTimeout",
    "DirectoryLister",
    "Endpoint",
    "FileEntry",
    "FinishedEvent",
    "HostUnreachable",
    "InvalidCredentials",
    "KeyCredentials",
    "LocalIOError",
    "NotFound",
    "ParamikoChannelFactory",
    "PasswordCredentials",
    "PermissionDenied",
    "ProgressEmitter",
    "ProgressEvent",
    "RemoteIOError",
    "SFTPBridge",
    "SFTPBridgeError",
    "SecureChannel",
    "Settings",
    "StalledTransfer",
    "TransferCancelled",
    "TransferCoordinator",
    "TransferInfo",
    "TransferKind",
    "TransferNotFound",
    "TransferState",
    "UNKNOWN_SIZE",
    "credentials_from_options",
    "immediate_dispatch",
    "main_loop_dispatch",
    "sort_entries",
]
