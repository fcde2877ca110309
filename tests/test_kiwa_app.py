import importlib
from types import SimpleNamespace

import pytest

from kiwa.completion import CompletionResult


class _FakeCompletion:
    api_key = "test"

    def __init__(self):
        self.calls = []
        self.closed = False

    def close(self):
        self.closed = True

    def complete(self, text, history, session_id, context_summary=None):
        self.calls.append(text)
        return CompletionResult(response=f"echo: {text}")


@pytest.fixture
def app(tmp_path, monkeypatch):
    kiwa_app = importlib.import_module("kiwa_app")
    monkeypatch.setattr(kiwa_app, "_contexts", {})
    monkeypatch.setattr(kiwa_app, "_admin_consoles", {})
    deps = kiwa_app.build_dependencies(
        storage="fs", data_dir=tmp_path, completion_factory=_FakeCompletion
    )
    deps.admin_secret = "hunter2"
    monkeypatch.setattr(kiwa_app, "_dependencies", deps)
    yield kiwa_app
    for key in list(kiwa_app._contexts):
        kiwa_app.close_session(SimpleNamespace(session_hash=key))
    deps.close()


def _request(session_hash="browser-1"):
    return SimpleNamespace(session_hash=session_hash)


def test_build_dependencies_uses_data_dir(app, tmp_path):
    deps = app.get_dependencies()
    assert deps.gateway.repo.base_dir == (tmp_path / "sessions").resolve()
    assert isinstance(deps.completion, _FakeCompletion)


def test_load_and_send_round_trip(app):
    history, storage, handoff = app.on_load({}, _request())
    assert history == [{"role": "assistant", "content": "What would you like to build?"}]
    assert storage["kiwa_chat_session_id"]
    assert handoff["visible"] is False

    cleared, history, storage, _ = app.on_send("I want an online store", storage, _request())
    assert cleared == ""
    assert history[-2:] == [
        {"role": "user", "content": "I want an online store"},
        {"role": "assistant", "content": "echo: I want an online store"},
    ]


def test_team_request_and_handoff_submission(app):
    _, storage, handoff = app.on_request_team({}, _request())
    assert handoff["visible"] is True

    *_, errors = app.on_submit_handoff("email", "not-an-email", "", storage, _request())
    assert "valid email" in errors

    history, _, handoff, errors = app.on_submit_handoff("continue_chat", "", "", storage, _request())
    assert errors == ""
    assert handoff["visible"] is False
    assert "join this chat" in history[-1]["content"]


def test_grid_handlers_edit_unlocked_cell(app):
    sheet, formula, label, notice = app.on_select_range("B12", {}, _request())
    assert label == "B12"
    assert notice == ""

    sheet, formula, label, notice = app.on_formula_commit("=2*3", {}, _request())
    assert formula == "=2*3"
    assert sheet["value"][11][1] == "6"

    *_, notice = app.on_select_range("A1", {}, _request())
    *_, notice = app.on_formula_commit("x", {}, _request())
    assert notice == "A1 is locked."


def test_close_session_tears_down_context(app):
    app.on_load({}, _request("browser-2"))
    ctx = app._contexts["browser-2"]

    app.close_session(_request("browser-2"))

    assert "browser-2" not in app._contexts
    assert not ctx.is_open


def test_admin_login_and_reply(app):
    history, storage, _ = app.on_load({}, _request())
    session_id = storage["kiwa_chat_session_id"]
    app.on_send("hello", storage, _request())
    # saves run on a single worker; queueing an empty merge waits for them
    app.get_dependencies().gateway.save_in_background(session_id, []).result(timeout=5)

    status, *_ = app.on_admin_login("wrong", _request("admin"))
    assert status == "Incorrect password."

    status, _, table, dropdown, transcript = app.on_admin_login("hunter2", _request("admin"))
    assert status == "Logged in."
    assert dropdown["value"] == session_id

    status, reply, *_ = app.on_admin_send(session_id, "We can help", _request("admin"))
    assert status == "Sent."
    assert reply == ""

    ctx = app._contexts["browser-1"]
    ctx.poller.poll_once()
    history, _, _ = app.on_refresh(storage, _request())
    assert history[-1]["content"].endswith("We can help")
    app._admin_for(_request("admin")).logout()


def test_dependencies_close_releases_gateway_and_client(app):
    deps = app.get_dependencies()

    deps.close()

    assert deps.completion.closed
    with pytest.raises(RuntimeError):
        deps.gateway.save_in_background("s1", [])
