"""Transfer records and the events published about them."""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import SFTPBridgeError

# Sentinel for a total size that has not been resolved yet.
UNKNOWN_SIZE = None


class TransferKind(Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class TransferState(Enum):
    QUEUED = "Queued"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferState.COMPLETED, TransferState.FAILED, TransferState.CANCELLED)


@dataclass
class Transfer:
    connection_id: str
    kind: TransferKind
    local_path: str
    remote_path: str

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    bytes_transferred: int = 0
    total_bytes: Optional[int] = UNKNOWN_SIZE
    state: TransferState = TransferState.QUEUED
    error: Optional[SFTPBridgeError] = None
    created: float = field(default_factory=time.time)
    finished: Optional[float] = None
    last_activity: float = field(default_factory=time.monotonic)

    cancel_requested: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def snapshot(self) -> "TransferInfo":
        with self.lock:
            return TransferInfo(
                id=self.id,
                connection_id=self.connection_id,
                kind=self.kind,
                local_path=self.local_path,
                remote_path=self.remote_path,
                bytes_transferred=self.bytes_transferred,
                total_bytes=self.total_bytes,
                state=self.state,
                error=self.error,
            )


@dataclass(frozen=True)
class TransferInfo:
    """Read-only copy of a :class:`Transfer` handed out to callers."""

    id: str
    connection_id: str
    kind: TransferKind
    local_path: str
    remote_path: str
    bytes_transferred: int
    total_bytes: Optional[int]
    state: TransferState
    error: Optional[SFTPBridgeError] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


@dataclass(frozen=True)
class ProgressEvent:
    transfer_id: str
    transferred: int
    total: Optional[int]
    kind: TransferKind

    @property
    def name(self) -> str:
        return f"{self.kind.value}_progress"

    def payload(self) -> dict:
        return {
            "transfer_id": self.transfer_id,
            "transferred": self.transferred,
            "total": self.total,
            "type": self.kind.value,
        }


@dataclass(frozen=True)
class FinishedEvent:
    transfer_id: str
    state: TransferState
    kind: TransferKind
    transferred: int = 0
    total: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    name = "process_finished"

    def payload(self) -> dict:
        return {
            "transfer_id": self.transfer_id,
            "state": self.state.value,
            "type": self.kind.value,
            "error": self.error,
        }
