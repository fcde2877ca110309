#!/usr/bin/env python3

# Copyright (c) 2025 James Baker VA7ODR
#
# Permission is hereby granted, free of charge, to any person obtaining a copy of this software
# and associated documentation files (the “Software”), to deal in the Software without
# restriction, including without limitation the rights to use, copy, modify, merge, publish,
# distribute, sublicense, and/or sell copies of the Software, and to permit persons to whom the
# Software is furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all copies or
# substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL
# THE AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR
# OTHER LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE,
# ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR
# OTHER DEALINGS IN THE SOFTWARE.

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import gradio as gr

from session_memory import SessionRepo, make_repo

import kiwa.config as kiwa_config
from kiwa.admin import AdminAuthError, AdminConsole
from kiwa.completion import CompletionClient
from kiwa.context import SessionContext
from kiwa.grid import COLUMNS, DEFAULT_COLUMN_WIDTHS, cell_id, parse_cell_id
from kiwa.local_storage import LocalStorage
from kiwa.persistence import PersistenceGateway
from kiwa.session_store import STATUS_HANDOFF_REQUESTED, ContactInfo
from kiwa.ui_utils import (
    chat_history_for_display,
    grid_column_widths,
    safe_component,
    selection_label,
    session_transcript,
    sessions_table,
)


kiwa_config.reload_from_environment()

log = logging.getLogger(__name__)

BROWSER_STORAGE_KEY = "kiwa_chat"
CONTACT_CHOICES = [
    ("Email", "email"),
    ("WhatsApp", "whatsapp"),
    ("Continue in this chat", "continue_chat"),
]


@dataclass
class AppDependencies:
    gateway: PersistenceGateway
    completion: CompletionClient
    admin_secret: str
    poll_interval: float
    admin_poll_interval: float

    def close(self) -> None:
        self.gateway.close()
        self.completion.close()


_dependencies: AppDependencies | None = None
_deps_lock = threading.Lock()


def build_dependencies(
    *,
    storage: str | None = None,
    data_dir: Optional[Path] = None,
    repo: Optional[SessionRepo] = None,
    completion_factory: Optional[Callable[[], CompletionClient]] = None,
) -> AppDependencies:
    selected_repo = repo or make_repo(
        storage=storage,
        base_dir=(data_dir / "sessions") if data_dir else None,
    )
    completion = completion_factory() if completion_factory else CompletionClient()
    if not completion.api_key:
        log.warning("KIWA_COMPLETION_API_KEY is not set; completion requests will likely be rejected")
    return AppDependencies(
        gateway=PersistenceGateway(selected_repo),
        completion=completion,
        admin_secret=kiwa_config.ADMIN_SECRET,
        poll_interval=kiwa_config.POLL_INTERVAL,
        admin_poll_interval=kiwa_config.ADMIN_POLL_INTERVAL,
    )


def configure_dependencies(deps: AppDependencies) -> AppDependencies:
    global _dependencies
    with _deps_lock:
        _dependencies = deps
    return deps


def get_dependencies() -> AppDependencies:
    global _dependencies
    with _deps_lock:
        if _dependencies is None:
            _dependencies = build_dependencies()
        return _dependencies


# ----------------------------------------------------------------------
# Per-browser session registry
# ----------------------------------------------------------------------
_contexts: Dict[str, SessionContext] = {}
_admin_consoles: Dict[str, AdminConsole] = {}
_contexts_lock = threading.Lock()


def _session_key(request: Optional[gr.Request]) -> str:
    return str(getattr(request, "session_hash", None) or "default")


def _context_for(browser_state: Optional[Dict[str, Any]], request: Optional[gr.Request]) -> SessionContext:
    key = _session_key(request)
    with _contexts_lock:
        ctx = _contexts.get(key)
        if ctx is None:
            deps = get_dependencies()
            ctx = SessionContext(
                LocalStorage(initial=browser_state or {}),
                deps.gateway,
                deps.completion,
                poll_interval=deps.poll_interval,
            )
            _contexts[key] = ctx
    return ctx.open()


def _admin_for(request: Optional[gr.Request]) -> AdminConsole:
    key = _session_key(request)
    with _contexts_lock:
        console = _admin_consoles.get(key)
        if console is None:
            deps = get_dependencies()
            console = AdminConsole(deps.gateway, deps.admin_secret, refresh_interval=deps.admin_poll_interval)
            _admin_consoles[key] = console
    return console


def close_session(request: gr.Request) -> None:
    key = _session_key(request)
    with _contexts_lock:
        ctx = _contexts.pop(key, None)
        console = _admin_consoles.pop(key, None)
    if ctx is not None:
        ctx.close()
    if console is not None:
        console.logout()


# ----------------------------------------------------------------------
# Chat handlers
# ----------------------------------------------------------------------
def _handoff_form_visible(ctx: SessionContext) -> bool:
    store = ctx.store
    return bool(store and store.handoff_offered and store.status != STATUS_HANDOFF_REQUESTED)


def _chat_outputs(ctx: SessionContext) -> Tuple[List[Dict[str, str]], Dict[str, str], Any]:
    assert ctx.store is not None
    return (
        chat_history_for_display(ctx.store.messages),
        ctx.storage.snapshot(),
        gr.update(visible=_handoff_form_visible(ctx)),
    )


def on_load(browser_state: Dict[str, Any], request: gr.Request):
    return _chat_outputs(_context_for(browser_state, request))


def on_send(message: str, browser_state: Dict[str, Any], request: gr.Request):
    ctx = _context_for(browser_state, request)
    assert ctx.chat is not None
    ctx.chat.send(message)
    return ("", *_chat_outputs(ctx))


def on_refresh(browser_state: Dict[str, Any], request: gr.Request):
    return _chat_outputs(_context_for(browser_state, request))


def on_clear(browser_state: Dict[str, Any], request: gr.Request):
    ctx = _context_for(browser_state, request)
    assert ctx.chat is not None
    ctx.chat.clear()
    return (*_chat_outputs(ctx), "")


def on_request_team(browser_state: Dict[str, Any], request: gr.Request):
    ctx = _context_for(browser_state, request)
    assert ctx.store is not None
    ctx.store.offer_handoff()
    return _chat_outputs(ctx)


def on_submit_handoff(
    method: str,
    email: str,
    whatsapp: str,
    browser_state: Dict[str, Any],
    request: gr.Request,
):
    ctx = _context_for(browser_state, request)
    assert ctx.chat is not None
    outcome = ctx.chat.submit_handoff(
        ContactInfo(email=email or "", whatsapp=whatsapp or "", preferred_contact=method or "")
    )
    errors = "\n".join(f"- {text}" for text in outcome.errors.values())
    return (*_chat_outputs(ctx), errors)


# ----------------------------------------------------------------------
# Pricing sheet handlers
# ----------------------------------------------------------------------
def _grid_outputs(ctx: SessionContext, notice: str = "") -> Tuple[Any, str, str, str]:
    controller = ctx.grid_controller
    min_col, max_col, min_row, max_row = controller.selection.normalized()
    label = selection_label(cell_id(min_col, min_row), cell_id(max_col, max_row))
    return (gr.update(value=ctx.grid.rows()), controller.formula_bar_text, label, notice)


def on_grid_load(browser_state: Dict[str, Any], request: gr.Request):
    return _grid_outputs(_context_for(browser_state, request))


def on_cell_select(browser_state: Dict[str, Any], evt: gr.SelectData, request: gr.Request):
    ctx = _context_for(browser_state, request)
    row, col = evt.index
    controller = ctx.grid_controller
    controller.dismiss_context_menu()
    controller.pointer_down(int(col), int(row))
    controller.pointer_up()
    return _grid_outputs(ctx)


def on_select_range(range_text: str, browser_state: Dict[str, Any], request: gr.Request):
    ctx = _context_for(browser_state, request)
    parts = [p.strip() for p in (range_text or "").split(":") if p.strip()]
    try:
        coords = [parse_cell_id(part) for part in parts[:2]]
    except ValueError as exc:
        return _grid_outputs(ctx, str(exc))
    if not coords:
        return _grid_outputs(ctx)
    controller = ctx.grid_controller
    controller.pointer_down(*coords[0])
    controller.pointer_enter(*coords[-1])
    controller.pointer_up()
    return _grid_outputs(ctx)


def on_formula_commit(text: str, browser_state: Dict[str, Any], request: gr.Request):
    ctx = _context_for(browser_state, request)
    controller = ctx.grid_controller
    if not controller.begin_edit():
        return _grid_outputs(ctx, f"{controller.active_cell_id} is locked.")
    controller.edit(text or "")
    controller.commit()
    return _grid_outputs(ctx)


def on_grid_key(key: str, browser_state: Dict[str, Any], request: gr.Request):
    ctx = _context_for(browser_state, request)
    ctx.grid_controller.key_down(key)
    return _grid_outputs(ctx)


def on_grid_menu(action: str, browser_state: Dict[str, Any], request: gr.Request):
    ctx = _context_for(browser_state, request)
    controller = ctx.grid_controller
    col, row = controller.selection.active
    menu = controller.open_context_menu(col, row, 0, 0)
    item = menu.item(action) if menu else None
    if item is None or not item.enabled:
        controller.dismiss_context_menu()
        return _grid_outputs(ctx, f"{item.label if item else action} is not available here.")
    controller.choose_menu_item(action)
    return _grid_outputs(ctx)


def on_copy(browser_state: Dict[str, Any], request: gr.Request):
    return on_grid_menu("copy", browser_state, request)


def on_paste(browser_state: Dict[str, Any], request: gr.Request):
    return on_grid_menu("paste", browser_state, request)


def on_clear_cells(browser_state: Dict[str, Any], request: gr.Request):
    return on_grid_menu("clear", browser_state, request)


def _key_handler(key: str) -> Callable[..., Any]:
    def handler(browser_state: Dict[str, Any], request: gr.Request):
        return on_grid_key(key, browser_state, request)

    handler.__name__ = f"on_key_{key.lower()}"
    return handler


def on_resize_column(col: str, width: float, browser_state: Dict[str, Any], request: gr.Request):
    ctx = _context_for(browser_state, request)
    controller = ctx.grid_controller
    start_width = ctx.grid.column_width(col)
    if controller.resize_start(col, 0):
        controller.window.dispatch("mousemove", float(width) - start_width)
        controller.window.dispatch("mouseup")
    return gr.update(value=ctx.grid.rows(), column_widths=grid_column_widths(ctx.grid))


# ----------------------------------------------------------------------
# Admin handlers
# ----------------------------------------------------------------------
def _admin_outputs(console: AdminConsole, selected: Optional[str]) -> Tuple[Any, Any, Any]:
    sessions = console.list_sessions(refresh=False)
    ids = [s.get("sessionId") for s in sessions]
    chosen = selected if selected in ids else (ids[0] if ids else None)
    transcript = session_transcript(console.get_session(chosen)) if chosen else []
    return sessions_table(sessions), gr.update(choices=ids, value=chosen), transcript


def on_admin_login(password: str, request: gr.Request):
    console = _admin_for(request)
    if not console.authenticate(password):
        message = "Admin access is disabled." if not console.enabled else "Incorrect password."
        return message, gr.Timer(active=False), [], gr.update(choices=[], value=None), []
    console.refresh()
    console.start_auto_refresh()
    return ("Logged in.", gr.Timer(active=True), *_admin_outputs(console, None))


def on_admin_tick(selected: Optional[str], request: gr.Request):
    console = _admin_for(request)
    try:
        return _admin_outputs(console, selected)
    except AdminAuthError:
        return [], gr.update(choices=[], value=None), []


def on_admin_send(selected: Optional[str], text: str, request: gr.Request):
    console = _admin_for(request)
    try:
        result = console.send_message(selected or "", text)
    except AdminAuthError as exc:
        return str(exc), text, *on_admin_tick(selected, request)
    if not result.get("success"):
        return result.get("error", "Message was not sent."), text, *_admin_outputs(console, selected)
    return "Sent.", "", *_admin_outputs(console, selected)


# ----------------------------------------------------------------------
# UI
# ----------------------------------------------------------------------
def build_demo() -> gr.Blocks:
    deps = get_dependencies()
    with gr.Blocks(title="KiWA Labs") as demo:
        gr.Markdown("# KiWA Labs")
        browser_state = gr.BrowserState({}, storage_key=BROWSER_STORAGE_KEY)

        with gr.Tab("K-AI"):
            chat = safe_component(
                gr.Chatbot, type="messages", height=420, elem_id="kiwa-chat", optional_keys=("type",)
            )
            with gr.Row():
                user_box = gr.Textbox(placeholder="Message KiWA Labs AI", show_label=False, scale=4)
                send_btn = gr.Button("Send", variant="primary", scale=0)
            with gr.Row():
                team_btn = gr.Button("Talk to the team", scale=0)
                clear_btn = gr.Button("Clear chat", variant="secondary", scale=0)
            with gr.Group(visible=False) as handoff_group:
                gr.Markdown("How should the KiWA Labs team reach you?")
                contact_method = gr.Radio(CONTACT_CHOICES, value="email", label="Preferred contact")
                contact_email = gr.Textbox(label="Email")
                contact_whatsapp = gr.Textbox(label="WhatsApp number")
                handoff_btn = gr.Button("Continue with the team", variant="primary")
            handoff_errors = gr.Markdown()
            poll_timer = gr.Timer(deps.poll_interval)

        with gr.Tab("Pricing"):
            with gr.Row():
                selection_box = gr.Textbox(label="Cell / range", placeholder="B2 or B2:C4", scale=1)
                formula_box = gr.Textbox(label="fx", placeholder="Value or =B2+C2", scale=4)
            sheet = safe_component(
                gr.Dataframe,
                headers=list(COLUMNS),
                interactive=False,
                wrap=True,
                column_widths=[f"{DEFAULT_COLUMN_WIDTHS[col]}px" for col in COLUMNS],
            )
            grid_notice = gr.Markdown()
            with gr.Row():
                key_buttons = {key: gr.Button(label, scale=0) for key, label in (
                    ("ArrowLeft", "←"), ("ArrowUp", "↑"), ("ArrowDown", "↓"), ("ArrowRight", "→"), ("Delete", "Delete"),
                )}
                copy_btn = gr.Button("Copy", scale=0)
                paste_btn = gr.Button("Paste", scale=0)
                clear_cells_btn = gr.Button("Clear Contents", scale=0)
            with gr.Row():
                resize_col = gr.Dropdown(list(COLUMNS), value="A", label="Column", scale=0)
                resize_width = gr.Slider(40, 600, value=320, step=10, label="Width (px)")

        with gr.Tab("Admin"):
            admin_password = gr.Textbox(label="Password", type="password")
            admin_login_btn = gr.Button("Log in")
            admin_status = gr.Markdown()
            admin_sessions = gr.Dataframe(
                headers=["Session", "Status", "Contact", "Messages", "Last updated"], interactive=False
            )
            admin_selected = gr.Dropdown(label="Session", choices=[])
            admin_transcript = safe_component(gr.Chatbot, type="messages", height=320, optional_keys=("type",))
            admin_reply = gr.Textbox(label="Reply as the KiWA Labs team")
            admin_send_btn = gr.Button("Send reply", variant="primary")
            admin_timer = gr.Timer(deps.admin_poll_interval, active=False)

        chat_outputs = [chat, browser_state, handoff_group]
        grid_outputs = [sheet, formula_box, selection_box, grid_notice]
        admin_view = [admin_sessions, admin_selected, admin_transcript]

        demo.load(on_load, inputs=[browser_state], outputs=chat_outputs)
        demo.load(on_grid_load, inputs=[browser_state], outputs=grid_outputs)
        send_btn.click(on_send, inputs=[user_box, browser_state], outputs=[user_box, *chat_outputs])
        user_box.submit(on_send, inputs=[user_box, browser_state], outputs=[user_box, *chat_outputs])
        poll_timer.tick(on_refresh, inputs=[browser_state], outputs=chat_outputs)
        clear_btn.click(on_clear, inputs=[browser_state], outputs=[*chat_outputs, handoff_errors])
        team_btn.click(on_request_team, inputs=[browser_state], outputs=chat_outputs)
        handoff_btn.click(
            on_submit_handoff,
            inputs=[contact_method, contact_email, contact_whatsapp, browser_state],
            outputs=[*chat_outputs, handoff_errors],
        )

        sheet.select(on_cell_select, inputs=[browser_state], outputs=grid_outputs)
        selection_box.submit(on_select_range, inputs=[selection_box, browser_state], outputs=grid_outputs)
        formula_box.submit(on_formula_commit, inputs=[formula_box, browser_state], outputs=grid_outputs)
        for key, button in key_buttons.items():
            button.click(_key_handler(key), inputs=[browser_state], outputs=grid_outputs)
        copy_btn.click(on_copy, inputs=[browser_state], outputs=grid_outputs)
        paste_btn.click(on_paste, inputs=[browser_state], outputs=grid_outputs)
        clear_cells_btn.click(on_clear_cells, inputs=[browser_state], outputs=grid_outputs)
        resize_width.release(on_resize_column, inputs=[resize_col, resize_width, browser_state], outputs=sheet)

        admin_login_btn.click(
            on_admin_login, inputs=[admin_password], outputs=[admin_status, admin_timer, *admin_view]
        )
        admin_timer.tick(on_admin_tick, inputs=[admin_selected], outputs=admin_view)
        admin_selected.change(on_admin_tick, inputs=[admin_selected], outputs=admin_view)
        admin_send_btn.click(
            on_admin_send,
            inputs=[admin_selected, admin_reply],
            outputs=[admin_status, admin_reply, *admin_view],
        )

        demo.unload(close_session)
    return demo


if __name__ == "__main__":
    logging.basicConfig(level=kiwa_config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    deps = configure_dependencies(build_dependencies())
    try:
        build_demo().launch(server_name="0.0.0.0", server_port=7860, show_error=True)
    finally:
        deps.close()
