from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from .formula import evaluate

COLUMNS: Tuple[str, ...] = ("A", "B", "C", "D", "E", "F", "G")
ROW_COUNT = 25
MIN_COLUMN_WIDTH = 40
DEFAULT_COLUMN_WIDTHS: Dict[str, int] = {
    "A": 320,
    "B": 120,
    "C": 120,
    "D": 100,
    "E": 100,
    "F": 100,
    "G": 100,
}


@dataclass(frozen=True)
class CellData:
    value: str
    formula: Optional[str] = None
    style: Dict[str, str] = field(default_factory=dict)
    locked: bool = False


GridData = Dict[str, CellData]


def cell_id(col: int, row: int) -> str:
    """Return the key for 0-based ``(col, row)``, e.g. ``(1, 2) -> "B3"``."""

    return f"{COLUMNS[col]}{row + 1}"


def parse_cell_id(key: str) -> Tuple[int, int]:
    """Inverse of :func:`cell_id`; raises ``ValueError`` for keys outside the grid."""

    text = (key or "").strip().upper()
    if len(text) < 2 or text[0] not in COLUMNS or not text[1:].isdigit():
        raise ValueError(f"Invalid cell id: {key!r}")
    row = int(text[1:])
    if not 1 <= row <= ROW_COUNT:
        raise ValueError(f"Row out of range in cell id: {key!r}")
    return COLUMNS.index(text[0]), row - 1


def in_bounds(col: int, row: int) -> bool:
    return 0 <= col < len(COLUMNS) and 0 <= row < ROW_COUNT


@dataclass(frozen=True)
class SelectionRange:
    """Anchored rectangle; ``start`` is the active cell, ``end`` the drag endpoint."""

    start_col: int
    start_row: int
    end_col: int
    end_row: int

    @classmethod
    def single(cls, col: int, row: int) -> "SelectionRange":
        return cls(col, row, col, row)

    @property
    def active(self) -> Tuple[int, int]:
        return self.start_col, self.start_row

    @property
    def active_cell_id(self) -> str:
        return cell_id(self.start_col, self.start_row)

    def normalized(self) -> Tuple[int, int, int, int]:
        """Return ``(min_col, max_col, min_row, max_row)``."""

        return (
            min(self.start_col, self.end_col),
            max(self.start_col, self.end_col),
            min(self.start_row, self.end_row),
            max(self.start_row, self.end_row),
        )

    def contains(self, col: int, row: int) -> bool:
        min_col, max_col, min_row, max_row = self.normalized()
        return min_col <= col <= max_col and min_row <= row <= max_row

    def coordinates(self) -> Iterator[Tuple[int, int]]:
        min_col, max_col, min_row, max_row = self.normalized()
        for col in range(min_col, max_col + 1):
            for row in range(min_row, max_row + 1):
                yield col, row

    def cell_ids(self) -> List[str]:
        return [cell_id(col, row) for col, row in self.coordinates() if in_bounds(col, row)]


_HEADER_STYLE = {"font-weight": "bold", "background-color": "#e0e0e0"}
_NUMBER_STYLE = {"text-align": "right"}

_PRICING_ROWS: Tuple[Tuple[str, str, str], ...] = (
    ("Small Personal / Info Website", "55000", "130000"),
    ("Clean Modern Website (Design Only)", "100000", "280000"),
    ("Business Website (Contact, Forms, Admin)", "180000", "580000"),
    ("Custom Website with Login & Features", "280000", "1480000"),
    ("Online Store (Sell Products)", "280000", "730000"),
    ("Booking Website (Appointments / Rentals)", "280000", "680000"),
    ("Admin Dashboard / Staff System", "230000", "580000"),
    ("Delivery / Dispatch Website (Tracking)", "380000", "1180000"),
)


def _build_pricing_seed() -> GridData:
    seed: GridData = {
        "A1": CellData("Website Type", style=dict(_HEADER_STYLE), locked=True),
        "B1": CellData("Min Price", style={**_HEADER_STYLE, **_NUMBER_STYLE}, locked=True),
        "C1": CellData("Max Price", style={**_HEADER_STYLE, **_NUMBER_STYLE}, locked=True),
    }
    for offset, (label, low, high) in enumerate(_PRICING_ROWS, start=2):
        seed[f"A{offset}"] = CellData(label, locked=True)
        seed[f"B{offset}"] = CellData(low, style=dict(_NUMBER_STYLE), locked=True)
        seed[f"C{offset}"] = CellData(high, style=dict(_NUMBER_STYLE), locked=True)
    return seed


PRICING_SEED: Mapping[str, CellData] = MappingProxyType(_build_pricing_seed())


def format_display_value(value: str) -> str:
    """Render large numbers as naira amounts with thousands separators."""

    try:
        number = float(value)
    except (TypeError, ValueError):
        return value
    if number != number or number <= 1000:
        return value
    if number.is_integer():
        return f"₦{int(number):,}"
    return f"₦{number:,}"


class GridStore:
    """Sparse cell map plus column widths; the only place grid data changes."""

    def __init__(
        self,
        seed: Optional[Mapping[str, CellData]] = None,
        *,
        column_widths: Optional[Mapping[str, int]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._cells: GridData = dict(PRICING_SEED if seed is None else seed)
        self._widths: Dict[str, int] = dict(DEFAULT_COLUMN_WIDTHS)
        if column_widths:
            self._widths.update(column_widths)
        self._logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @property
    def data(self) -> Mapping[str, CellData]:
        return MappingProxyType(self._cells)

    @property
    def column_widths(self) -> Mapping[str, int]:
        return MappingProxyType(self._widths)

    def get(self, key: str) -> Optional[CellData]:
        return self._cells.get(key)

    def is_locked(self, key: str) -> bool:
        cell = self._cells.get(key)
        return bool(cell and cell.locked)

    def raw_value(self, key: str) -> str:
        cell = self._cells.get(key)
        if cell is None:
            return ""
        return cell.formula or cell.value or ""

    def display_value(self, key: str) -> str:
        cell = self._cells.get(key)
        return format_display_value(cell.value) if cell else ""

    def column_width(self, col: str) -> int:
        return self._widths.get(col, MIN_COLUMN_WIDTH)

    def rows(self) -> List[List[str]]:
        return [
            [self.display_value(cell_id(col, row)) for col in range(len(COLUMNS))]
            for row in range(ROW_COUNT)
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _editable(self, key: str) -> bool:
        try:
            parse_cell_id(key)
        except ValueError:
            self._logger.debug("Ignoring mutation of unknown cell %r", key)
            return False
        if self.is_locked(key):
            self._logger.debug("Ignoring mutation of locked cell %s", key)
            return False
        return True

    def commit_edit(self, key: str, raw_input: str) -> bool:
        if not self._editable(key):
            return False
        raw_input = raw_input or ""
        previous = self._cells.get(key) or CellData("")
        if raw_input.startswith("="):
            updated = replace(previous, value=evaluate(raw_input, self._cells), formula=raw_input)
        else:
            updated = replace(previous, value=raw_input, formula=None)
        self._cells[key] = updated
        return True

    def clear_range(self, selection: SelectionRange) -> List[str]:
        removed: List[str] = []
        for key in selection.cell_ids():
            cell = self._cells.get(key)
            if cell is None or cell.locked:
                continue
            del self._cells[key]
            removed.append(key)
        return removed

    def paste_value(self, key: str, value: str) -> bool:
        if not self._editable(key):
            return False
        previous = self._cells.get(key) or CellData("")
        self._cells[key] = replace(previous, value=value, formula=None)
        return True

    def resize_column(self, col: str, width_px: float) -> int:
        if col not in COLUMNS:
            raise ValueError(f"Unknown column: {col!r}")
        applied = max(MIN_COLUMN_WIDTH, int(round(width_px)))
        self._widths[col] = applied
        return applied


__all__ = [
    "COLUMNS",
    "DEFAULT_COLUMN_WIDTHS",
    "MIN_COLUMN_WIDTH",
    "PRICING_SEED",
    "ROW_COUNT",
    "CellData",
    "GridData",
    "GridStore",
    "SelectionRange",
    "cell_id",
    "format_display_value",
    "in_bounds",
    "parse_cell_id",
]
