"""Cancellable per-session step timer for conversation flows."""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], object]


class StepTimer:
    """At most one pending timeout at a time; arming again replaces it.

    ``timer_factory`` must build an object with ``start()`` and ``cancel()``
    from ``(seconds, callback)``; ``threading.Timer`` by default.

    Every arm gets a new generation number that is handed to the callback.
    A callback whose generation is no longer current fired late and must be
    ignored; see ``is_current``.
    """

    def __init__(self, timer_factory: TimerFactory | None = None):
        self._factory = timer_factory or threading.Timer
        self._lock = threading.Lock()
        self._timer = None
        self._generation = 0
        self.armed_for: str | None = None

    def arm(self, flow_id: str, timeout_ms: int, callback: Callable[[str, int], None]) -> None:
        with self._lock:
            self._cancel_locked()
            self._generation += 1
            generation = self._generation
            timer = self._factory(timeout_ms / 1000.0, lambda: callback(flow_id, generation))
            if hasattr(timer, "daemon"):
                timer.daemon = True
            self._timer = timer
            self.armed_for = flow_id
            timer.start()
        logger.debug("Step timer armed for %s (%d ms)", flow_id, timeout_ms)

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return self._timer is not None and generation == self._generation

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self.armed_for = None
