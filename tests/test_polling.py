from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List

from kiwa.local_storage import LocalStorage
from kiwa.polling import IntervalTimer, PollingSynchronizer
from kiwa.persistence import PersistenceGateway
from kiwa.session_store import MESSAGES_KEY, SESSION_ID_KEY, ChatSessionStore
from session_memory import FsSessionRepo


class _FakeTimer:
    created: List["_FakeTimer"] = []

    def __init__(self, interval: float, callback: Callable[[], Any], *, name: str = "") -> None:
        self.interval = interval
        self.callback = callback
        self.name = name
        self.running = False
        _FakeTimer.created.append(self)

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False


class _Gateway:
    def __init__(self, messages: List[Dict[str, str]]) -> None:
        self.messages = messages
        self.calls: List[str] = []

    def poll_admin_messages(self, session_id: str) -> Dict[str, List[Dict[str, str]]]:
        self.calls.append(session_id)
        return {"adminMessages": list(self.messages)}


class _BrokenGateway:
    def poll_admin_messages(self, session_id: str):
        raise ConnectionError("backend down")


def _admin(message_id: str) -> Dict[str, str]:
    return {"id": message_id, "role": "admin", "content": "Hi from the team", "timestamp": "2025-01-01T00:00:00+00:00"}


def test_poll_once_merges_new_admin_messages_once() -> None:
    store = ChatSessionStore(LocalStorage())
    store.init_session()
    gateway = _Gateway([_admin("a1")])
    poller = PollingSynchronizer(store, gateway, interval=3)

    assert [m.id for m in poller.poll_once()] == ["a1"]
    assert poller.poll_once() == []
    assert [m.role for m in store.messages] == ["assistant", "admin"]
    assert gateway.calls == [store.session_id, store.session_id]


def test_poll_failure_is_logged_and_ignored(caplog) -> None:
    store = ChatSessionStore(LocalStorage())
    store.init_session()
    poller = PollingSynchronizer(store, _BrokenGateway(), interval=3)

    with caplog.at_level("WARNING"):
        assert poller.poll_once() == []
    assert "backend down" in caplog.text
    assert len(store.messages) == 1


def test_start_requires_session_id() -> None:
    store = ChatSessionStore(LocalStorage())
    poller = PollingSynchronizer(store, _Gateway([]), interval=3, timer_factory=_FakeTimer)
    assert poller.start() is False
    assert not poller.running


def test_start_and_stop_drive_the_timer() -> None:
    _FakeTimer.created.clear()
    store = ChatSessionStore(LocalStorage())
    store.init_session()
    poller = PollingSynchronizer(store, _Gateway([_admin("a1")]), interval=3, timer_factory=_FakeTimer)

    assert poller.start() is True
    assert poller.start() is True
    assert len(_FakeTimer.created) == 1
    timer = _FakeTimer.created[0]
    assert timer.interval == 3
    timer.callback()
    assert store.messages[-1].id == "a1"

    poller.stop()
    assert not timer.running
    assert not poller.running


def test_interval_timer_calls_back_until_stopped() -> None:
    fired = threading.Event()
    calls: List[int] = []

    def callback() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first tick fails")
        fired.set()

    timer = IntervalTimer(0.01, callback, name="test-timer")
    timer.start()
    try:
        assert fired.wait(2)
        assert timer.running
    finally:
        timer.stop()
    assert not timer.running
    assert len(calls) >= 2


def test_poll_during_pending_clear_does_not_restore_admin_messages(tmp_path) -> None:
    executor = ThreadPoolExecutor(max_workers=1)
    gateway = PersistenceGateway(FsSessionRepo(tmp_path), executor=executor)
    store = ChatSessionStore(LocalStorage(), saver=gateway.save_snapshot)
    store.init_session()
    poller = PollingSynchronizer(store, gateway, interval=3)
    store.append_user_message("hello")
    gateway.send_admin_message(store.session_id, "Hi, this is the team")
    assert [m.role for m in poller.poll_once()] == ["admin"]

    release = threading.Event()
    executor.submit(release.wait, 5)
    try:
        store.clear()
        assert poller.poll_once() == []
        assert [m.role for m in store.messages] == ["assistant"]
    finally:
        release.set()
    gateway.close()

    stored = FsSessionRepo(tmp_path).get(store.session_id)
    assert [m["role"] for m in stored.messages] == ["assistant"]


def test_corrupt_local_log_does_not_inherit_old_admin_messages(tmp_path) -> None:
    gateway = PersistenceGateway(FsSessionRepo(tmp_path))
    gateway.save("abc", [{"id": "1", "role": "user", "content": "old question", "timestamp": "t"}])
    gateway.send_admin_message("abc", "reply to an old conversation")

    store = ChatSessionStore(LocalStorage(initial={SESSION_ID_KEY: "abc", MESSAGES_KEY: "{not json"}))
    store.init_session()
    poller = PollingSynchronizer(store, gateway, interval=3)

    assert poller.poll_once() == []
    assert [m.role for m in store.messages] == ["assistant"]
    assert store.session_id != "abc"
    gateway.close()


def test_restarted_timer_retires_the_previous_thread() -> None:
    release = threading.Event()
    entered = threading.Event()
    first_thread: List[threading.Thread] = []

    def callback() -> None:
        if not first_thread:
            first_thread.append(threading.current_thread())
            entered.set()
            release.wait(2)

    timer = IntervalTimer(0.01, callback, name="restart-timer")
    timer.start()
    assert entered.wait(2)
    timer.stop(timeout=0.01)
    timer.start()
    try:
        release.set()
        first_thread[0].join(2)
        assert not first_thread[0].is_alive()
        assert timer.running
    finally:
        timer.stop()
