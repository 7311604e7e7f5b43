"""Upload/download scheduling, execution and cancellation.

Each transfer runs as a :class:`TransferTask` on a worker thread.  Data moves
in fixed size chunks; every chunk is one ``with_session`` turn, so transfers
sharing a channel interleave at chunk granularity and never corrupt each
other's request stream.  Cancellation is cooperative and checked between
chunks.  Partially written destination files are left in place.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, TypeVar

import paramiko

from .config import Settings
from .connection import ConnectionManager
from .errors import (
    LocalIOError,
    RemoteIOError,
    SFTPBridgeError,
    StalledTransfer,
    TransferCancelled,
    TransferNotFound,
    local_error,
)
from .events import ProgressEmitter, ProgressThrottle
from .fileops import normalize_local_path, normalize_remote_path, stat_isdir
from .transfer_types import (
    UNKNOWN_SIZE,
    FinishedEvent,
    ProgressEvent,
    Transfer,
    TransferInfo,
    TransferKind,
    TransferState,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransferTask:
    """Moves the bytes of one :class:`Transfer`."""

    def __init__(self, transfer: Transfer, coordinator: "TransferCoordinator") -> None:
        self.transfer = transfer
        self._coordinator = coordinator
        self._connections = coordinator.connections
        self._chunk_size = coordinator.settings.chunk_size
        self._throttle = ProgressThrottle(coordinator.settings.progress_interval)
        self._channel: Optional[str] = None

    # -- helpers --------------------------------------------------------

    def _session(self, op: Callable[[paramiko.SFTPClient], T], action: str) -> T:
        return self._connections.with_session(
            self.transfer.connection_id, op, channel=self._channel, action=action
        )

    def _checkpoint(self) -> None:
        transfer = self.transfer
        if transfer.cancel_requested.is_set() or transfer.is_terminal:
            raise TransferCancelled(f"Transfer {transfer.id} cancelled")

    def _resolve_total(self, size: Optional[int]) -> None:
        with self.transfer.lock:
            self.transfer.total_bytes = size if size is not None else UNKNOWN_SIZE
        logger.debug(f"Transfer {self.transfer.id}: total size {size}")
        self._throttle.ready(force=True)
        self._coordinator.report_progress(self.transfer)

    def _advance(self, count: int) -> None:
        transfer = self.transfer
        with transfer.lock:
            if transfer.is_terminal:
                raise TransferCancelled(f"Transfer {transfer.id} already finished")
            transfer.bytes_transferred += count
            transfer.last_activity = time.monotonic()
            if transfer.total_bytes is not None and transfer.bytes_transferred > transfer.total_bytes:
                # source grew while we were reading it
                transfer.total_bytes = transfer.bytes_transferred
            if self._throttle.ready():
                self._coordinator.report_progress(transfer)

    def _close_remote(self, handle: Any, strict: bool) -> None:
        try:
            self._session(lambda _sftp: handle.close(), action="Cannot close remote file")
        except SFTPBridgeError as e:
            if strict:
                raise
            logger.debug(f"Transfer {self.transfer.id}: ignoring close error: {e}")

    # -- entry point ----------------------------------------------------

    def run(self) -> None:
        transfer = self.transfer
        with transfer.lock:
            if transfer.is_terminal:
                return
            transfer.state = TransferState.ACTIVE
            transfer.last_activity = time.monotonic()
        logger.info(
            f"Starting {transfer.kind.value} {transfer.id}: "
            f"{transfer.local_path} {'->' if transfer.kind == TransferKind.UPLOAD else '<-'} "
            f"{transfer.remote_path}"
        )

        try:
            self._checkpoint()
            self._channel = self._connections.open_channel(transfer.connection_id)
            if transfer.kind == TransferKind.UPLOAD:
                self._upload()
            else:
                self._download()
        except TransferCancelled:
            self._coordinator.finish(transfer, TransferState.CANCELLED)
        except SFTPBridgeError as e:
            self._coordinator.finish(transfer, TransferState.FAILED, e)
        except Exception as e:
            logger.error(f"Transfer {transfer.id} crashed", exc_info=True)
            self._coordinator.finish(
                transfer, TransferState.FAILED, SFTPBridgeError(f"Unexpected error: {e}", cause=e)
            )
        else:
            self._coordinator.finish(transfer, TransferState.COMPLETED)
        finally:
            if self._channel is not None:
                self._connections.close_channel(transfer.connection_id, self._channel)

    # -- directions -----------------------------------------------------

    def _download(self) -> None:
        remote_path = self.transfer.remote_path
        local_path = self.transfer.local_path

        def _open(sftp: paramiko.SFTPClient):
            attr = sftp.stat(remote_path)
            if stat_isdir(attr):
                raise RemoteIOError(f"'{remote_path}' is a directory")
            return sftp.open(remote_path, "rb"), attr.st_size

        remote_file, size = self._session(_open, action=f"Cannot open remote file '{remote_path}'")
        try:
            self._resolve_total(size)
            try:
                os.makedirs(os.path.dirname(local_path) or ".", exist_ok=True)
                local_file = open(local_path, "wb")
            except OSError as e:
                raise local_error(e, f"Cannot create local file '{local_path}'")

            try:
                while True:
                    self._checkpoint()
                    data = self._session(
                        lambda _sftp: remote_file.read(self._chunk_size),
                        action=f"Read error on '{remote_path}'",
                    )
                    if not data:
                        break
                    try:
                        local_file.write(data)
                    except OSError as e:
                        raise local_error(e, f"Write error on '{local_path}'")
                    self._advance(len(data))
                try:
                    local_file.flush()
                    os.fsync(local_file.fileno())
                except OSError as e:
                    raise local_error(e, f"Failed to sync '{local_path}'")
            finally:
                local_file.close()
        finally:
            self._close_remote(remote_file, strict=False)

    def _upload(self) -> None:
        remote_path = self.transfer.remote_path
        local_path = self.transfer.local_path

        try:
            if os.path.isdir(local_path):
                raise LocalIOError(f"'{local_path}' is a directory")
            local_file = open(local_path, "rb")
            size = os.fstat(local_file.fileno()).st_size
        except OSError as e:
            raise local_error(e, f"Cannot open local file '{local_path}'")

        try:
            self._resolve_total(size)
            remote_file = self._session(
                lambda sftp: sftp.open(remote_path, "wb"),
                action=f"Cannot create remote file '{remote_path}'",
            )
            closed = False
            try:
                while True:
                    self._checkpoint()
                    try:
                        data = local_file.read(self._chunk_size)
                    except OSError as e:
                        raise local_error(e, f"Read error on '{local_path}'")
                    if not data:
                        break
                    self._session(
                        lambda _sftp: remote_file.write(data),
                        action=f"Write error on '{remote_path}'",
                    )
                    self._advance(len(data))
                self._close_remote(remote_file, strict=True)
                closed = True
            finally:
                if not closed:
                    self._close_remote(remote_file, strict=False)
        finally:
            local_file.close()


class TransferCoordinator:
    """Schedules transfers on a worker pool and tracks them to a terminal state."""

    def __init__(self, connections: ConnectionManager, emitter: ProgressEmitter,
                 settings: Optional[Settings] = None) -> None:
        self.connections = connections
        self.emitter = emitter
        self.settings = settings or Settings()
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="sftp-transfer"
        )
        self._live: Dict[str, Transfer] = {}
        self._finished: Dict[str, Transfer] = {}
        self._lock = threading.Lock()
        self._done = threading.Condition(self._lock)
        self._watchdog: Optional[threading.Thread] = None
        self._watchdog_stop = threading.Event()
        self._shutdown = False
        connections.add_loss_listener(self._on_connection_lost)

    # -- starting -------------------------------------------------------

    def start_upload(self, connection_id: str, local_path: str, remote_path: str) -> str:
        return self._start(connection_id, TransferKind.UPLOAD, local_path, remote_path)

    def start_download(self, connection_id: str, remote_path: str, local_path: str) -> str:
        return self._start(connection_id, TransferKind.DOWNLOAD, local_path, remote_path)

    def _start(self, connection_id: str, kind: TransferKind, local_path: str, remote_path: str) -> str:
        if self._shutdown:
            raise SFTPBridgeError("Transfer coordinator is shut down")
        self.connections.require_connected(connection_id)

        transfer = Transfer(
            connection_id=connection_id,
            kind=kind,
            local_path=normalize_local_path(local_path),
            remote_path=normalize_remote_path(remote_path),
        )
        with self._lock:
            self._live[transfer.id] = transfer
        logger.info(f"Queued {kind.value} {transfer.id} on connection {connection_id}")

        self._ensure_watchdog()
        self._executor.submit(TransferTask(transfer, self).run)
        return transfer.id

    # -- state changes --------------------------------------------------

    def report_progress(self, transfer: Transfer) -> None:
        """Publish the current byte count unless the transfer has finished."""
        with transfer.lock:
            if transfer.is_terminal:
                return
            event = ProgressEvent(
                transfer.id, transfer.bytes_transferred, transfer.total_bytes, transfer.kind
            )
            self.emitter.publish_progress(event)

    def finish(self, transfer: Transfer, state: TransferState,
               error: Optional[SFTPBridgeError] = None) -> bool:
        """Move ``transfer`` to a terminal state; a no-op if it already has one."""
        with transfer.lock:
            if transfer.is_terminal:
                return False
            if state == TransferState.COMPLETED:
                transfer.total_bytes = transfer.bytes_transferred
            elif transfer.total_bytes is not None and transfer.bytes_transferred > transfer.total_bytes:
                transfer.total_bytes = transfer.bytes_transferred
            transfer.state = state
            transfer.error = error
            transfer.finished = time.time()

            self.emitter.publish_progress(ProgressEvent(
                transfer.id, transfer.bytes_transferred, transfer.total_bytes, transfer.kind
            ))
            self.emitter.publish_finished(FinishedEvent(
                transfer_id=transfer.id,
                state=state,
                kind=transfer.kind,
                transferred=transfer.bytes_transferred,
                total=transfer.total_bytes,
                error=str(error) if error else None,
                error_kind=error.kind if error else None,
            ))

        if state == TransferState.FAILED:
            logger.error(f"Transfer {transfer.id} failed: {error}")
        else:
            logger.info(f"Transfer {transfer.id} {state.value.lower()} "
                        f"({transfer.bytes_transferred} bytes)")

        with self._lock:
            self._live.pop(transfer.id, None)
            self._finished[transfer.id] = transfer
            while len(self._finished) > self.settings.history_limit:
                evicted = next(iter(self._finished))
                del self._finished[evicted]
            self._done.notify_all()
        return True

    def cancel(self, transfer_id: str) -> bool:
        """Request cancellation.  Returns False if the transfer already finished."""
        with self._lock:
            transfer = self._live.get(transfer_id)
            if transfer is None:
                if transfer_id in self._finished:
                    return False
                raise TransferNotFound(f"Transfer {transfer_id} not found")

        with transfer.lock:
            if transfer.is_terminal:
                return False
            transfer.cancel_requested.set()
            queued = transfer.state == TransferState.QUEUED
        logger.info(f"Cancellation requested for transfer {transfer_id}")
        if queued:
            self.finish(transfer, TransferState.CANCELLED)
        return True

    def _on_connection_lost(self, connection_id: str, error: SFTPBridgeError) -> None:
        with self._lock:
            affected = [t for t in self._live.values() if t.connection_id == connection_id]
        for transfer in affected:
            transfer.cancel_requested.set()
            self.finish(transfer, TransferState.FAILED, error)

    # -- stall watchdog -------------------------------------------------

    def _ensure_watchdog(self) -> None:
        with self._lock:
            if self._watchdog is not None and self._watchdog.is_alive():
                return
            self._watchdog_stop.clear()
            self._watchdog = threading.Thread(
                target=self._watch_stalls, name="sftp-transfer-watchdog", daemon=True
            )
            self._watchdog.start()

    def _watch_stalls(self) -> None:
        timeout = self.settings.stall_timeout
        interval = min(1.0, timeout / 4)
        logger.debug("Stall watchdog started")
        while not self._watchdog_stop.wait(interval):
            self.check_stalls(timeout)
        logger.debug("Stall watchdog exiting")

    def check_stalls(self, timeout: Optional[float] = None) -> List[str]:
        """Fail every active transfer idle for longer than ``timeout`` seconds."""
        timeout = self.settings.stall_timeout if timeout is None else timeout
        now = time.monotonic()
        with self._lock:
            candidates = list(self._live.values())
        stalled = []
        for transfer in candidates:
            with transfer.lock:
                idle = now - transfer.last_activity
                if transfer.state != TransferState.ACTIVE or idle < timeout:
                    continue
                transfer.cancel_requested.set()
            if self.finish(transfer, TransferState.FAILED,
                           StalledTransfer(f"No progress for {idle:.0f}s")):
                stalled.append(transfer.id)
        return stalled

    # -- queries --------------------------------------------------------

    def _lookup(self, transfer_id: str) -> Transfer:
        with self._lock:
            transfer = self._live.get(transfer_id) or self._finished.get(transfer_id)
        if transfer is None:
            raise TransferNotFound(f"Transfer {transfer_id} not found")
        return transfer

    def get(self, transfer_id: str) -> TransferInfo:
        return self._lookup(transfer_id).snapshot()

    def list_transfers(self) -> List[TransferInfo]:
        with self._lock:
            transfers = list(self._live.values()) + list(self._finished.values())
        return [t.snapshot() for t in transfers]

    def active_transfers(self, connection_id: Optional[str] = None) -> List[TransferInfo]:
        with self._lock:
            live = list(self._live.values())
        return [t.snapshot() for t in live
                if connection_id is None or t.connection_id == connection_id]

    def wait(self, transfer_id: str, timeout: Optional[float] = None) -> TransferInfo:
        """Block until the transfer reaches a terminal state (or ``timeout``)."""
        transfer = self._lookup(transfer_id)
        with self._done:
            self._done.wait_for(lambda: transfer_id not in self._live, timeout)
        return transfer.snapshot()

    def prune_finished(self) -> int:
        with self._lock:
            count = len(self._finished)
            self._finished.clear()
        return count

    def shutdown(self, wait: bool = True) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        logger.info("Shutting down transfer coordinator")
        with self._lock:
            live = list(self._live)
        for transfer_id in live:
            try:
                self.cancel(transfer_id)
            except TransferNotFound:
                pass
        self._watchdog_stop.set()
        self.connections.remove_loss_listener(self._on_connection_lost)
        self._executor.shutdown(wait=wait)
