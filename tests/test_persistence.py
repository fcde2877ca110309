from __future__ import annotations

from pathlib import Path

from kiwa.persistence import PersistenceGateway
from kiwa.session_store import Message
from session_memory import FsSessionRepo, PgSessionRepo


class _FailingRepo(PgSessionRepo):
    def __init__(self) -> None:
        super().__init__(None)

    def save(self, record, *, replace=False):
        raise OSError("disk full")


def test_save_and_poll_round_trip(tmp_path: Path) -> None:
    with PersistenceGateway(FsSessionRepo(tmp_path)) as gateway:
        message = Message("1", "user", "hi", "2025-01-01T00:00:00+00:00")
        assert gateway.save("s1", [message], "2025-01-01T00:00:00+00:00") == {"success": True}

        sent = gateway.send_admin_message("s1", "Hello from the team")
        assert sent["success"] is True
        assert sent["message"]["role"] == "admin"

        polled = gateway.poll_admin_messages("s1")["adminMessages"]
        assert [m["content"] for m in polled] == ["Hello from the team"]

        sessions = gateway.sessions()["sessions"]
        assert sessions[0]["sessionId"] == "s1"
        assert len(sessions[0]["messages"]) == 2


def test_client_save_does_not_drop_unpolled_admin_messages() -> None:
    gateway = PersistenceGateway(PgSessionRepo(None))
    gateway.save("s1", [{"id": "1", "role": "user", "content": "q", "timestamp": "t"}])
    gateway.send_admin_message("s1", "reply")
    gateway.save("s1", [{"id": "1", "role": "user", "content": "q", "timestamp": "t"}])

    assert len(gateway.poll_admin_messages("s1")["adminMessages"]) == 1
    gateway.save("s1", [{"id": "w", "role": "assistant", "content": "welcome", "timestamp": "t"}], replace=True)
    assert gateway.poll_admin_messages("s1")["adminMessages"] == []
    gateway.close()


def test_background_saves_apply_in_order() -> None:
    gateway = PersistenceGateway(PgSessionRepo(None))
    futures = [
        gateway.save_in_background("s1", [{"id": str(i), "role": "user", "content": str(i), "timestamp": "t"}])
        for i in range(5)
    ]
    assert all(f.result(timeout=5) == {"success": True} for f in futures)
    stored = gateway.repo.get("s1")
    assert [m["id"] for m in stored.messages] == ["0", "1", "2", "3", "4"]
    gateway.close()


def test_save_snapshot_adapter() -> None:
    gateway = PersistenceGateway(PgSessionRepo(None))
    snapshot = {
        "sessionId": "s9",
        "messages": [{"id": "1", "role": "user", "content": "hi", "timestamp": "t"}],
        "timestamp": "2025-01-01T00:00:00+00:00",
        "status": "handoff_requested",
        "contactInfo": {"preferredContact": "continue_chat"},
    }
    assert gateway.save_snapshot(snapshot).result(timeout=5)["success"] is True
    stored = gateway.repo.get("s9")
    assert stored.status == "handoff_requested"
    assert stored.contact_info == {"preferredContact": "continue_chat"}
    gateway.close()


def test_failures_are_reported_not_raised() -> None:
    gateway = PersistenceGateway(_FailingRepo())
    result = gateway.save("s1", [])
    assert result["success"] is False
    assert "disk full" in result["error"]
    assert gateway.save("", [])["success"] is False
    assert gateway.send_admin_message("", "x")["success"] is False
    gateway.close()
