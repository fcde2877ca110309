from __future__ import annotations

import pytest

from kiwa.grid import (
    MIN_COLUMN_WIDTH,
    PRICING_SEED,
    CellData,
    GridStore,
    SelectionRange,
    cell_id,
    format_display_value,
    parse_cell_id,
)


def test_cell_id_round_trips_through_parse() -> None:
    assert cell_id(1, 2) == "B3"
    assert parse_cell_id("b3") == (1, 2)
    with pytest.raises(ValueError):
        parse_cell_id("H1")
    with pytest.raises(ValueError):
        parse_cell_id("A26")


def test_seed_is_locked_pricing_table() -> None:
    store = GridStore()
    assert store.get("A1").value == "Website Type"
    assert store.get("B2").value == "55000"
    assert store.get("C9").value == "1180000"
    assert all(cell.locked for cell in PRICING_SEED.values())
    assert len(PRICING_SEED) == 27


def test_commit_edit_plain_and_formula() -> None:
    store = GridStore()
    assert store.commit_edit("D2", "=B2+C2")
    assert store.get("D2").value == "185000"
    assert store.get("D2").formula == "=B2+C2"
    assert store.raw_value("D2") == "=B2+C2"

    assert store.commit_edit("D2", "note")
    assert store.get("D2").value == "note"
    assert store.get("D2").formula is None


def test_commit_edit_keeps_style() -> None:
    store = GridStore({"E1": CellData("x", style={"color": "red"})})
    store.commit_edit("E1", "y")
    assert store.get("E1").style == {"color": "red"}


def test_locked_and_unknown_cells_reject_mutation() -> None:
    store = GridStore()
    before = store.get("B2")
    assert store.commit_edit("B2", "1") is False
    assert store.paste_value("B2", "1") is False
    assert store.commit_edit("Q7", "1") is False
    assert store.get("B2") == before


def test_formula_result_is_not_recomputed() -> None:
    store = GridStore({})
    store.commit_edit("A1", "2")
    store.commit_edit("B1", "=A1*10")
    store.commit_edit("A1", "5")
    assert store.get("B1").value == "20"


def test_clear_range_skips_locked_cells() -> None:
    store = GridStore()
    store.commit_edit("D2", "1")
    store.commit_edit("D3", "2")
    removed = store.clear_range(SelectionRange(3, 2, 1, 0))
    assert sorted(removed) == ["D2", "D3"]
    assert store.get("D2") is None
    assert store.get("B2").value == "55000"
    assert store.get("C3").locked


def test_paste_value_clears_formula() -> None:
    store = GridStore({})
    store.commit_edit("A1", "=1+1")
    assert store.paste_value("A1", "hello")
    assert store.get("A1") == CellData("hello")


def test_resize_column_has_floor() -> None:
    store = GridStore()
    assert store.resize_column("B", 10) == MIN_COLUMN_WIDTH
    assert store.resize_column("B", 180.4) == 180
    assert store.column_width("B") == 180
    with pytest.raises(ValueError):
        store.resize_column("Z", 100)


def test_selection_normalises_and_keeps_anchor() -> None:
    selection = SelectionRange(2, 4, 0, 1)
    assert selection.normalized() == (0, 2, 1, 4)
    assert selection.active_cell_id == "C5"
    assert selection.contains(1, 2)
    assert not selection.contains(3, 2)
    assert len(selection.cell_ids()) == 12


def test_display_value_formats_naira() -> None:
    store = GridStore()
    assert store.display_value("B2") == "₦55,000"
    assert store.display_value("A2") == "Small Personal / Info Website"
    assert format_display_value("999") == "999"
    assert format_display_value("1234.5") == "₦1,234.5"
    rows = store.rows()
    assert len(rows) == 25 and len(rows[0]) == 7
    assert rows[1][2] == "₦130,000"
