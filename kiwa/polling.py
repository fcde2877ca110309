from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional

from . import config
from .session_store import ChatSessionStore, Message


class IntervalTimer:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Any],
        *,
        name: str = "kiwa-interval",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = float(interval)
        self._callback = callback
        self._name = name
        self._logger = logger or logging.getLogger(__name__)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval):
            try:
                self._callback()
            except Exception:
                self._logger.exception("Interval callback %s failed; retrying next tick", self._name)

    def start(self) -> None:
        if self.running:
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(self._stop,), name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 1.0) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)


class PollingSynchronizer:
    """Pulls admin-authored messages into a chat session on a fixed interval."""

    def __init__(
        self,
        store: ChatSessionStore,
        gateway: Any,
        *,
        interval: Optional[float] = None,
        timer_factory: Callable[..., IntervalTimer] = IntervalTimer,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.interval = interval or config.POLL_INTERVAL
        self._timer_factory = timer_factory
        self._timer: Optional[IntervalTimer] = None
        self._logger = logger or logging.getLogger(__name__)

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.running

    def poll_once(self) -> List[Message]:
        session_id = self.store.session_id
        if not session_id:
            return []
        try:
            payload = self.gateway.poll_admin_messages(session_id)
        except Exception as exc:
            self._logger.warning("Polling admin messages for %s failed: %s", session_id, exc)
            return []
        added = self.store.append_admin_messages(payload.get("adminMessages") or [])
        if added:
            self._logger.info("Merged %d admin message(s) into session %s", len(added), session_id)
        return added

    def start(self) -> bool:
        if not self.store.session_id:
            self._logger.debug("Not starting poller without a session id")
            return False
        if self.running:
            return True
        self._timer = self._timer_factory(self.interval, self.poll_once, name=f"kiwa-poll-{self.store.session_id[:8]}")
        self._timer.start()
        return True

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.stop()
            self._timer = None


__all__ = ["IntervalTimer", "PollingSynchronizer"]
