from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from kiwa.chat_flow import ChatController
from kiwa.completion import CompletionError, CompletionResult
from kiwa.handoff import HANDOFF_MESSAGE
from kiwa.local_storage import LocalStorage
from kiwa.session_store import STATUS_HANDOFF_REQUESTED, ChatSessionStore, ContactInfo


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class _FakeCompletion:
    def __init__(self, *results: Any) -> None:
        self._results = list(results)
        self.calls: List[Dict[str, Any]] = []

    def complete(self, text, history, session_id, context_summary: Optional[str] = None) -> CompletionResult:
        self.calls.append(
            {"text": text, "history": list(history), "session_id": session_id, "context_summary": context_summary}
        )
        result = self._results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def saves() -> List[Tuple[Dict[str, Any], bool]]:
    return []


def _controller(saves, *results: Any) -> ChatController:
    store = ChatSessionStore(LocalStorage(), saver=lambda snap, replace: saves.append((snap, replace)), clock=_Clock())
    store.init_session()
    return ChatController(store, _FakeCompletion(*results))


def test_first_message_appends_user_and_reply(saves) -> None:
    chat = _controller(
        saves, CompletionResult(response="Great! What will you sell?", context_summary="wants an online store")
    )
    before = chat.store.last_updated

    appended = chat.send("I want an online store")

    assert [m.role for m in appended] == ["user", "assistant"]
    assert appended[1].content == "Great! What will you sell?"
    assert [m.role for m in chat.store.messages] == ["assistant", "user", "assistant"]
    assert chat.store.last_updated > before
    assert chat.store.context_summary == "wants an online store"
    assert saves and len(saves[-1][0]["messages"]) == 3
    call = chat.completion.calls[0]
    assert call["text"] == "I want an online store"
    assert [m.role for m in call["history"]] == ["assistant"]
    assert call["session_id"] == chat.store.session_id


def test_blank_message_is_ignored(saves) -> None:
    chat = _controller(saves)
    assert chat.send("   ") == []
    assert saves == []


def test_keyword_forces_handoff_offer(saves) -> None:
    chat = _controller(saves, CompletionResult(response="What budget do you have?"))

    appended = chat.send("can I talk to a human?")

    assert appended[-1].content == HANDOFF_MESSAGE
    assert chat.store.handoff_offered


def test_completion_failure_appends_apology(saves) -> None:
    chat = _controller(saves, CompletionError("Completion service returned HTTP 500", status=500))

    appended = chat.send("hello")

    assert [m.role for m in appended] == ["user", "assistant"]
    assert appended[1].content == chat.apology_message
    assert not chat.store.handoff_offered


def test_continue_chat_handoff_stops_completion_calls(saves) -> None:
    chat = _controller(saves)

    outcome = chat.submit_handoff(ContactInfo(preferred_contact="continue_chat"))
    assert outcome.ok
    assert chat.store.status == STATUS_HANDOFF_REQUESTED
    assert chat.store.is_waiting_for_human

    appended = chat.send("are you there?")
    assert [m.role for m in appended] == ["user"]
    assert chat.completion.calls == []
    assert saves[-1][0]["status"] == STATUS_HANDOFF_REQUESTED


def test_invalid_contact_does_not_mutate_state(saves) -> None:
    chat = _controller(saves)
    count = len(chat.store.messages)

    outcome = chat.submit_handoff(ContactInfo(email="", preferred_contact="email"))

    assert not outcome.ok
    assert "email" in outcome.errors
    assert outcome.message is None
    assert len(chat.store.messages) == count
    assert chat.store.status is None
    assert saves == []


def test_email_handoff_confirms_and_keeps_assistant(saves) -> None:
    chat = _controller(saves, CompletionResult(response="Anything else?"))

    outcome = chat.submit_handoff(ContactInfo(email="ada@example.com", preferred_contact="email"))
    assert outcome.ok
    assert "ada@example.com" in outcome.message.content
    assert saves[-1][0]["contactInfo"]["email"] == "ada@example.com"

    chat.send("thanks")
    assert len(chat.completion.calls) == 1


def test_clear_resets_to_welcome(saves) -> None:
    chat = _controller(saves, CompletionResult(response="Sure"))
    chat.send("hi")

    chat.clear()

    assert len(chat.store.messages) == 1
    assert saves[-1][1] is True
