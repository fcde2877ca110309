from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .grid import COLUMNS, ROW_COUNT, GridStore, SelectionRange, in_bounds


class InteractionState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    EDITING = "editing"
    RESIZING = "resizing"


class WindowListeners:
    """Window-level event registry used for gestures that outlive their element."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Callable[..., None]]] = {}

    def add(self, event: str, handler: Callable[..., None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def remove(self, event: str, handler: Callable[..., None]) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(event, None)

    def dispatch(self, event: str, *args: object) -> None:
        for handler in list(self._handlers.get(event, ())):
            handler(*args)

    def count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._handlers.get(event, ()))
        return sum(len(items) for items in self._handlers.values())


@dataclass(frozen=True)
class MenuItem:
    action: str
    label: str
    enabled: bool


@dataclass(frozen=True)
class ContextMenu:
    x: int
    y: int
    items: Tuple[MenuItem, ...]

    def item(self, action: str) -> Optional[MenuItem]:
        for entry in self.items:
            if entry.action == action:
                return entry
        return None


_ARROW_DELTAS = {
    "ArrowRight": (1, 0),
    "ArrowLeft": (-1, 0),
    "ArrowDown": (0, 1),
    "ArrowUp": (0, -1),
}


class GridController:
    """Turns pointer and keyboard events into :class:`GridStore` operations."""

    def __init__(
        self,
        store: GridStore,
        *,
        window: Optional[WindowListeners] = None,
        initial_selection: Optional[SelectionRange] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.window = window or WindowListeners()
        self.selection = initial_selection or SelectionRange.single(len(COLUMNS) - 1, ROW_COUNT - 1)
        self.state = InteractionState.IDLE
        self.editing_cell: Optional[str] = None
        self.edit_buffer = ""
        self.clipboard: Optional[str] = None
        self.context_menu: Optional[ContextMenu] = None
        self.resizing_col: Optional[str] = None
        self._resize_start_x = 0.0
        self._resize_start_width = 0
        self._logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------
    @property
    def active_cell_id(self) -> str:
        return self.selection.active_cell_id

    @property
    def formula_bar_text(self) -> str:
        if self.state is InteractionState.EDITING:
            return self.edit_buffer
        return self.store.raw_value(self.active_cell_id)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def pointer_down(self, col: int, row: int) -> None:
        if self.state is not InteractionState.IDLE or not in_bounds(col, row):
            return
        self.selection = SelectionRange.single(col, row)
        self.context_menu = None
        self.state = InteractionState.SELECTING

    def pointer_enter(self, col: int, row: int) -> None:
        if self.state is not InteractionState.SELECTING or not in_bounds(col, row):
            return
        self.selection = SelectionRange(self.selection.start_col, self.selection.start_row, col, row)

    def pointer_up(self) -> None:
        if self.state is InteractionState.SELECTING:
            self.state = InteractionState.IDLE
        elif self.state is InteractionState.RESIZING:
            self.resize_end()

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------
    def double_click(self) -> bool:
        return self.begin_edit()

    def begin_edit(self) -> bool:
        if self.state is not InteractionState.IDLE:
            return False
        key = self.active_cell_id
        if self.store.is_locked(key):
            return False
        self.editing_cell = key
        self.edit_buffer = self.store.raw_value(key)
        self.state = InteractionState.EDITING
        return True

    def edit(self, text: str) -> None:
        if self.state is InteractionState.EDITING:
            self.edit_buffer = text

    def commit(self) -> bool:
        if self.state is not InteractionState.EDITING or self.editing_cell is None:
            return False
        committed = self.store.commit_edit(self.editing_cell, self.edit_buffer)
        self.editing_cell = None
        self.edit_buffer = ""
        self.state = InteractionState.IDLE
        return committed

    def blur(self) -> bool:
        return self.commit()

    # ------------------------------------------------------------------
    # Keyboard
    # ------------------------------------------------------------------
    def key_down(self, key: str) -> None:
        if self.state is InteractionState.EDITING:
            if key == "Enter":
                self.commit()
            return
        if self.state is not InteractionState.IDLE:
            return

        if key in _ARROW_DELTAS:
            d_col, d_row = _ARROW_DELTAS[key]
            col, row = self.selection.active
            col = min(max(col + d_col, 0), len(COLUMNS) - 1)
            row = min(max(row + d_row, 0), ROW_COUNT - 1)
            self.selection = SelectionRange.single(col, row)
        elif key == "Enter":
            self.begin_edit()
        elif key in ("Backspace", "Delete"):
            self.store.clear_range(self.selection)

    # ------------------------------------------------------------------
    # Column resize
    # ------------------------------------------------------------------
    def resize_start(self, col: str, client_x: float) -> bool:
        if self.state is not InteractionState.IDLE or col not in COLUMNS:
            return False
        self.resizing_col = col
        self._resize_start_x = float(client_x)
        self._resize_start_width = self.store.column_width(col)
        self.state = InteractionState.RESIZING
        self.window.add("mousemove", self._on_window_mouse_move)
        self.window.add("mouseup", self._on_window_mouse_up)
        return True

    def resize_move(self, client_x: float) -> None:
        if self.state is not InteractionState.RESIZING or self.resizing_col is None:
            return
        delta = float(client_x) - self._resize_start_x
        self.store.resize_column(self.resizing_col, self._resize_start_width + delta)

    def resize_end(self) -> None:
        self.window.remove("mousemove", self._on_window_mouse_move)
        self.window.remove("mouseup", self._on_window_mouse_up)
        if self.state is InteractionState.RESIZING:
            self.state = InteractionState.IDLE
        self.resizing_col = None

    def _on_window_mouse_move(self, client_x: float) -> None:
        self.resize_move(client_x)

    def _on_window_mouse_up(self, *_args: object) -> None:
        self.resize_end()

    # ------------------------------------------------------------------
    # Context menu and clipboard
    # ------------------------------------------------------------------
    def open_context_menu(self, col: int, row: int, x: int, y: int) -> Optional[ContextMenu]:
        if self.state is not InteractionState.IDLE or not in_bounds(col, row):
            return None
        if not self.selection.contains(col, row):
            self.selection = SelectionRange.single(col, row)
        target_locked = self.store.is_locked(self.active_cell_id)
        any_unlocked = any(not self.store.is_locked(key) for key in self.selection.cell_ids())
        self.context_menu = ContextMenu(
            x=x,
            y=y,
            items=(
                MenuItem("copy", "Copy", True),
                MenuItem("paste", "Paste", bool(self.clipboard) and not target_locked),
                MenuItem("clear", "Clear Contents", any_unlocked),
            ),
        )
        return self.context_menu

    def dismiss_context_menu(self) -> None:
        self.context_menu = None

    def choose_menu_item(self, action: str) -> bool:
        menu = self.context_menu
        self.context_menu = None
        item = menu.item(action) if menu else None
        if item is None or not item.enabled:
            return False
        if action == "copy":
            return self.copy()
        if action == "paste":
            return self.paste()
        if action == "clear":
            return bool(self.store.clear_range(self.selection))
        return False

    def copy(self) -> bool:
        cell = self.store.get(self.active_cell_id)
        if cell is None:
            return False
        self.clipboard = cell.value
        return True

    def paste(self) -> bool:
        if not self.clipboard:
            return False
        return self.store.paste_value(self.active_cell_id, self.clipboard)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def teardown(self) -> None:
        self.resize_end()
        if self.state is InteractionState.EDITING:
            self.editing_cell = None
            self.edit_buffer = ""
        self.state = InteractionState.IDLE
        self.context_menu = None


__all__ = [
    "ContextMenu",
    "GridController",
    "InteractionState",
    "MenuItem",
    "WindowListeners",
]
