from __future__ import annotations

import pytest

from kiwa.admin import AdminAuthError, AdminConsole
from kiwa.persistence import PersistenceGateway
from session_memory import PgSessionRepo


class _FakeTimer:
    def __init__(self, interval, callback, *, name=""):
        self.interval = interval
        self.callback = callback
        self.running = False

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False


@pytest.fixture
def gateway():
    gateway = PersistenceGateway(PgSessionRepo(None))
    gateway.save("s1", [{"id": "1", "role": "user", "content": "I need a store", "timestamp": "t"}])
    yield gateway
    gateway.close()


def test_empty_secret_disables_console(gateway) -> None:
    console = AdminConsole(gateway, secret="")
    assert not console.enabled
    assert console.authenticate("") is False
    with pytest.raises(AdminAuthError):
        console.list_sessions()


def test_wrong_password_is_rejected(gateway) -> None:
    console = AdminConsole(gateway, secret="hunter2")
    assert console.authenticate("nope") is False
    with pytest.raises(AdminAuthError):
        console.send_message("s1", "hello")


def test_operator_can_list_and_reply(gateway) -> None:
    console = AdminConsole(gateway, secret="hunter2")
    assert console.authenticate("hunter2")

    sessions = console.list_sessions()
    assert [s["sessionId"] for s in sessions] == ["s1"]

    result = console.send_message("s1", "  We'll email you a quote  ")
    assert result["success"] is True
    assert result["message"]["content"] == "We'll email you a quote"
    assert console.get_session("s1")["messages"][-1]["role"] == "admin"
    assert gateway.poll_admin_messages("s1")["adminMessages"][0]["content"] == "We'll email you a quote"

    assert console.send_message("s1", "   ")["success"] is False


def test_auto_refresh_lifecycle(gateway) -> None:
    console = AdminConsole(gateway, secret="hunter2", refresh_interval=5, timer_factory=_FakeTimer)
    with pytest.raises(AdminAuthError):
        console.start_auto_refresh()

    console.authenticate("hunter2")
    console.start_auto_refresh()
    timer = console._timer
    assert timer.running and timer.interval == 5
    timer.callback()
    assert console.list_sessions(refresh=False)[0]["sessionId"] == "s1"

    console.logout()
    assert not timer.running
    assert not console.authenticated
