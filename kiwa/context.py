from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .chat_flow import ChatController
from .grid import GridStore
from .grid_controller import GridController
from .local_storage import LocalStorage
from .polling import IntervalTimer, PollingSynchronizer
from .session_store import ChatSessionStore, utcnow


class SessionContext:
    """Everything one browser session owns, with an explicit open/close lifecycle."""

    def __init__(
        self,
        storage: LocalStorage,
        gateway: Any,
        completion: Any,
        *,
        poll_interval: Optional[float] = None,
        timer_factory: Callable[..., IntervalTimer] = IntervalTimer,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.storage = storage
        self.gateway = gateway
        self.completion = completion
        self._poll_interval = poll_interval
        self._timer_factory = timer_factory
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

        self.store: Optional[ChatSessionStore] = None
        self.chat: Optional[ChatController] = None
        self.poller: Optional[PollingSynchronizer] = None
        self.grid = GridStore()
        self.grid_controller = GridController(self.grid)
        self.is_open = False

    def open(self) -> "SessionContext":
        if self.is_open:
            return self
        saver = getattr(self.gateway, "save_snapshot", None)
        self.store = ChatSessionStore(self.storage, saver=saver, clock=self._clock)
        session_id = self.store.init_session()
        self.chat = ChatController(self.store, self.completion)
        self.poller = PollingSynchronizer(
            self.store,
            self.gateway,
            interval=self._poll_interval,
            timer_factory=self._timer_factory,
        )
        self.poller.start()
        self.is_open = True
        self._logger.info("Opened chat session %s", session_id)
        return self

    def close(self) -> None:
        if self.poller is not None:
            self.poller.stop()
        self.grid_controller.teardown()
        if self.is_open and self.store is not None:
            self._logger.info("Closed chat session %s", self.store.session_id)
        self.is_open = False

    def __enter__(self) -> "SessionContext":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["SessionContext"]
