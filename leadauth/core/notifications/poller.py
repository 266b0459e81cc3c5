from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from leadauth.core.errors import AuthError, ErrorKind, auth_error
from leadauth.core.logger import get_logger


UNREAD_COUNT_PATH = "/notifications/unread-count"


class NotificationPoller:
    """
    Periodic unread-count refresh, alive only while a session is active.

    Each start() gets its own stop event, so a loop stopped from a session
    listener (logout) winds down on its own even if a new login starts the
    next loop right away. A tick re-checks the session before touching the
    network, and drops its result if the session changed mid-request.
    """

    def __init__(
        self,
        *,
        session_manager: Any,
        interval_seconds: float = 30.0,
        logger=None,
        on_count: Optional[Callable[[int], None]] = None,
    ):
        self.session_manager = session_manager
        self.interval_seconds = max(0.05, float(interval_seconds))
        self.logger = logger or get_logger()
        self.on_count = on_count

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._stop.set()
        self._thread: Optional[threading.Thread] = None
        self._unread: Optional[int] = None
        self._last_error: Optional[AuthError] = None
        self._attached = False

    # -------- wiring --------
    def attach(self) -> None:
        """Follow the session: start on login/refresh, stop on logout."""
        with self._lock:
            if self._attached:
                return
            self._attached = True
        self.session_manager.add_listener(self._on_session_event)
        if self.session_manager.is_authenticated():
            self.start()

    def detach(self) -> None:
        with self._lock:
            self._attached = False
        self.session_manager.remove_listener(self._on_session_event)

    def _on_session_event(self, event: str, session: Any) -> None:
        if event == "logout":
            # may run on our own thread (401 -> failed refresh -> logout)
            self.stop(join=False)
        elif event in ("login", "refresh"):
            self.start()

    # -------- state --------
    @property
    def unread_count(self) -> Optional[int]:
        with self._lock:
            return self._unread

    @property
    def last_error(self) -> Optional[AuthError]:
        with self._lock:
            return self._last_error

    def running(self) -> bool:
        with self._lock:
            t = self._thread
            return t is not None and t.is_alive() and not self._stop.is_set()

    # -------- lifecycle --------
    def start(self) -> bool:
        if not self.session_manager.is_authenticated():
            return False
        with self._lock:
            t = self._thread
            if t is not None and t.is_alive() and not self._stop.is_set():
                return True
            stop = threading.Event()
            self._stop = stop
            t = threading.Thread(target=self._loop, args=(stop,), name="notification-poller", daemon=True)
            self._thread = t
        t.start()
        self.logger.info(f"Notification polling started (every {self.interval_seconds:g}s).")
        return True

    def stop(self, join: bool = True) -> None:
        with self._lock:
            was_running = not self._stop.is_set()
            self._stop.set()
            t = self._thread
            self._unread = None
        if join and t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)
        if was_running:
            self.logger.info("Notification polling stopped.")

    def close(self) -> None:
        self.detach()
        self.stop()

    # -------- polling --------
    def _loop(self, stop: threading.Event) -> None:
        self._tick(stop)
        while not stop.wait(self.interval_seconds):
            self._tick(stop)

    def tick(self) -> Optional[int]:
        """One poll on the caller's thread; a no-op when stopped or logged out."""
        with self._lock:
            stop = self._stop
        return self._tick(stop)

    def refresh_now(self) -> Optional[int]:
        """Immediate fetch outside the interval (e.g. after marking items read)."""
        return self._tick(None)

    def _tick(self, stop: Optional[threading.Event]) -> Optional[int]:
        if stop is not None and stop.is_set():
            return None
        sm = self.session_manager
        if not sm.is_authenticated():
            return None
        gen = sm.generation
        try:
            res = sm.request("GET", UNREAD_COUNT_PATH)
        except Exception as e:  # noqa: BLE001
            self._record_error(auth_error(ErrorKind.NETWORK_ERROR, detail=type(e).__name__))
            return None
        if sm.generation != gen or (stop is not None and stop.is_set()):
            return None
        if not res.ok:
            self._record_error(res.error)
            return None
        try:
            count = int((res.value or {}).get("unreadCount") or 0)
        except (TypeError, ValueError):
            self._record_error(auth_error(ErrorKind.NETWORK_ERROR, "Malformed unread count."))
            return None

        with self._lock:
            self._unread = count
            self._last_error = None
        cb = self.on_count
        if cb is not None:
            try:
                cb(count)
            except Exception as e:  # noqa: BLE001
                self.logger.warning(f"Unread-count callback failed: {e}")
        return count

    def _record_error(self, err: Optional[AuthError]) -> None:
        with self._lock:
            self._last_error = err
        self.logger.warning(f"Unread-count poll failed: {err.code if err else 'unknown'}")
