"""Publish/subscribe channel for transfer progress.

:class:`ProgressEmitter` is a GObject exposing ``progress`` and ``finished``
signals.  Observers register with :meth:`ProgressEmitter.subscribe` and keep
the returned handle to unregister later; there are no global listeners.

Emission goes through a *dispatcher*.  The default delivers on the calling
worker thread; :func:`main_loop_dispatch` marshals delivery onto the GLib main
loop for GTK front ends.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from gi.repository import GLib, GObject

from .transfer_types import FinishedEvent, ProgressEvent

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Callable, tuple, dict], None]


class _MainThreadDispatcher:
    """Helper that marshals callbacks back to the GLib main loop."""

    @staticmethod
    def dispatch(func: Callable, *args, **kwargs) -> None:
        def _idle() -> bool:
            func(*args, **kwargs)
            return GLib.SOURCE_REMOVE

        GLib.idle_add(_idle)


def immediate_dispatch(func: Callable, args: tuple = (), kwargs: Optional[dict] = None) -> None:
    func(*args, **(kwargs or {}))


def main_loop_dispatch(func: Callable, args: tuple = (), kwargs: Optional[dict] = None) -> None:
    _MainThreadDispatcher.dispatch(func, *args, **(kwargs or {}))


def _guarded(callback: Callable[[Any], None], signal: str) -> Callable:
    def _handler(_emitter: GObject.GObject, event: Any) -> None:
        try:
            callback(event)
        except Exception:
            logger.error(f"Observer failed handling {signal} event", exc_info=True)

    return _handler


class ProgressEmitter(GObject.GObject):
    """Delivers :class:`ProgressEvent` and :class:`FinishedEvent` to observers.

    An observer is either a callable receiving every event, or an object with
    ``on_progress(event)`` and/or ``on_finished(event)`` methods.
    """

    __gsignals__ = {
        "progress": (GObject.SignalFlags.RUN_FIRST, None, (object,)),
        "finished": (GObject.SignalFlags.RUN_FIRST, None, (object,)),
    }

    def __init__(self, dispatcher: Optional[Dispatcher] = None) -> None:
        super().__init__()
        self._dispatcher = dispatcher or immediate_dispatch
        self._subscriptions: Dict[int, List[int]] = {}
        self._handles = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, observer: Any) -> int:
        on_progress = getattr(observer, "on_progress", None)
        on_finished = getattr(observer, "on_finished", None)
        if on_progress is None and on_finished is None:
            if not callable(observer):
                raise TypeError("Observer must be callable or define on_progress/on_finished")
            on_progress = on_finished = observer

        handler_ids = []
        if on_progress is not None:
            handler_ids.append(self.connect("progress", _guarded(on_progress, "progress")))
        if on_finished is not None:
            handler_ids.append(self.connect("finished", _guarded(on_finished, "finished")))

        with self._lock:
            handle = next(self._handles)
            self._subscriptions[handle] = handler_ids
        logger.debug(f"Observer {handle} subscribed")
        return handle

    def unsubscribe(self, handle: int) -> bool:
        with self._lock:
            handler_ids = self._subscriptions.pop(handle, None)
        if handler_ids is None:
            return False
        for handler_id in handler_ids:
            self.disconnect(handler_id)
        logger.debug(f"Observer {handle} unsubscribed")
        return True

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish_progress(self, event: ProgressEvent) -> None:
        self._dispatcher(self.emit, ("progress", event), {})

    def publish_finished(self, event: FinishedEvent) -> None:
        self._dispatcher(self.emit, ("finished", event), {})


class ProgressThrottle:
    """Time based rate limiter for progress events.

    The first call always passes; afterwards at most one call per
    ``interval`` seconds does.  ``force`` bypasses the limit.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self, force: bool = False) -> bool:
        now = self._clock()
        if force or self._last is None or now - self._last >= self._interval:
            self._last = now
            return True
        return False
