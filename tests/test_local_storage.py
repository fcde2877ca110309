from __future__ import annotations

import json
from pathlib import Path

from kiwa.local_storage import LocalStorage


def test_memory_only_storage() -> None:
    storage = LocalStorage(initial={"a": "1", "skip": None})
    storage.set_item("b", "2")
    storage.remove_item("a")
    storage.remove_item("missing")

    assert storage.get_item("a") is None
    assert storage.snapshot() == {"b": "2"}


def test_file_backed_storage_survives_reload(tmp_path: Path) -> None:
    path = tmp_path / "browser" / "storage.json"
    storage = LocalStorage(path)
    storage.set_item("kiwa_chat_session_id", "abc")

    assert json.loads(path.read_text(encoding="utf-8")) == {"kiwa_chat_session_id": "abc"}
    assert LocalStorage(path).get_item("kiwa_chat_session_id") == "abc"


def test_corrupt_file_is_quarantined(tmp_path: Path) -> None:
    path = tmp_path / "storage.json"
    path.write_text("[not an object]", encoding="utf-8")

    storage = LocalStorage(path)

    assert storage.snapshot() == {}
    assert not path.exists()
    assert list(tmp_path.glob("storage.json.corrupt-*"))
