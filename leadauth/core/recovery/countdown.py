from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class Countdown:
    """
    Cancellable countdown handle (resend guard for one-time codes).

    remaining() is computed from `clock`, so tests can drive it without waiting.
    When `on_elapsed` is given, a daemon timer fires it once at the deadline
    unless the countdown was cancelled or restarted first.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time, on_elapsed: Optional[Callable[[], None]] = None, logger=None):
        self.clock = clock
        self.on_elapsed = on_elapsed
        self.logger = logger
        self._lock = threading.Lock()
        self._deadline: Optional[float] = None
        self._timer: Optional[threading.Timer] = None
        self._handle = 0

    def start(self, seconds: float) -> None:
        with self._lock:
            self._cancel_locked()
            self._handle += 1
            self._deadline = float(self.clock()) + max(0.0, float(seconds))
            if self.on_elapsed is not None and seconds > 0:
                t = threading.Timer(float(seconds), self._fire, args=(self._handle,))
                t.daemon = True
                t.name = "otp-countdown"
                self._timer = t
                t.start()

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._handle += 1

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._deadline = None

    def remaining(self) -> float:
        with self._lock:
            if self._deadline is None:
                return 0.0
            return max(0.0, self._deadline - float(self.clock()))

    def active(self) -> bool:
        return self.remaining() > 0.0

    def _fire(self, handle: int) -> None:
        with self._lock:
            if handle != self._handle:
                return
            self._timer = None
        cb = self.on_elapsed
        if cb is None:
            return
        try:
            cb()
        except Exception as e:  # noqa: BLE001
            if self.logger:
                self.logger.warning(f"Countdown callback failed: {e}")
