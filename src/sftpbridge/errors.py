"""Exception types raised by sftpbridge.

Every failure carries a human readable message.  Callers that need to react
differently to transient and terminal problems should look at :attr:`kind`
and :attr:`transient` rather than parsing the message text.
"""

from __future__ import annotations

import errno
from typing import Optional


class SFTPBridgeError(Exception):
    """Base class for all errors raised by the engine."""

    kind = "Error"
    transient = False

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class InvalidCredentials(SFTPBridgeError, ValueError):
    """Raised when the supplied credential fields do not form one valid mode."""

    kind = "InvalidCredentials"


class AuthenticationFailed(SFTPBridgeError):
    kind = "AuthenticationFailed"


class HostUnreachable(SFTPBridgeError):
    kind = "HostUnreachable"
    transient = True


class ConnectionTimeout(HostUnreachable):
    kind = "ConnectionTimeout"


class ConnectionLost(SFTPBridgeError):
    """The session dropped or was closed while an operation needed it."""

    kind = "ConnectionLost"
    transient = True


class ConnectionNotFound(SFTPBridgeError, KeyError):
    kind = "ConnectionNotFound"


class TransferNotFound(SFTPBridgeError, KeyError):
    kind = "TransferNotFound"


class NotFound(SFTPBridgeError):
    kind = "NotFound"


class PermissionDenied(SFTPBridgeError):
    kind = "PermissionDenied"


class LocalIOError(SFTPBridgeError):
    """Local filesystem failure while reading or writing a transfer."""

    kind = "IoError"


class RemoteIOError(SFTPBridgeError):
    """The server rejected a request for a reason other than missing/denied."""

    kind = "RemoteIOError"


class StalledTransfer(SFTPBridgeError):
    kind = "StalledTransfer"
    transient = True


class TransferCancelled(SFTPBridgeError):
    """Not a real failure: the transfer reached the requested terminal state."""

    kind = "Cancelled"


def remote_error(exc: OSError, action: str) -> SFTPBridgeError:
    """Translate an SFTP status error raised by paramiko into our taxonomy."""
    code = getattr(exc, "errno", None)
    reason = exc.strerror or str(exc) or exc.__class__.__name__
    if code == errno.ENOENT:
        return NotFound(f"{action}: no such file or directory", cause=exc)
    if code == errno.EACCES or code == errno.EPERM:
        return PermissionDenied(f"{action}: permission denied", cause=exc)
    return RemoteIOError(f"{action}: {reason}", cause=exc)


def local_error(exc: OSError, action: str) -> LocalIOError:
    reason = exc.strerror or str(exc) or exc.__class__.__name__
    return LocalIOError(f"{action}: {reason}", cause=exc)
