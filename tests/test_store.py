"""Tests for result file naming, atomic saves and exact-name retrieval."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from rvtmeta.models import ExtractedResult, MetadataNode, NodeError
from rvtmeta.store import ResultStore, sanitize_name


def _result(source: str = "models/tower.rvt") -> ExtractedResult:
    return ExtractedResult(
        source=source,
        urn="dXJuOmFkc2s",
        view_guid="view-3d",
        view_name="{3D}",
        nodes=[MetadataNode(1, "Wall", None), MetadataNode(2, "Door", 1)],
        properties={1: {"Dimensions": {"Length": "10ft"}}},
        errors=[NodeError(2, "404: no properties")],
    )


class TestSanitizeName:
    @pytest.mark.parametrize(
        ("identifier", "expected"),
        [
            ("tower.rvt", "tower.rvt.json"),
            ("models/tower.rvt", "tower.rvt.json"),
            ("C:\\models\\tower.rvt", "tower.rvt.json"),
            ("RAC basic sample (v2).rvt", "RAC_basic_sample_v2_.rvt.json"),
            ("../../etc/passwd", "passwd.json"),
            ("...", "result.json"),
        ],
    )
    def test_mapping(self, identifier, expected):
        assert sanitize_name(identifier) == expected

    def test_deterministic(self):
        assert sanitize_name("a b.rvt") == sanitize_name("a b.rvt")


class TestResultStore:
    def test_save_and_load_round_trip(self, tmp_path: Path):
        store = ResultStore(tmp_path / "results")
        result = _result()

        path = store.save(result)

        assert path.name == "tower.rvt.json"
        assert store.load("tower.rvt.json") == result

    def test_saved_file_uses_string_ids(self, tmp_path: Path):
        store = ResultStore(tmp_path)
        path = store.save(_result())

        data = json.loads(path.read_text(encoding="utf-8"))
        assert list(data["properties"]) == ["1"]
        assert data["errors"] == [{"object_id": 2, "message": "404: no properties"}]

    def test_no_temp_file_left_behind(self, tmp_path: Path):
        store = ResultStore(tmp_path)
        store.save(_result())
        assert [p.name for p in tmp_path.iterdir()] == ["tower.rvt.json"]

    def test_save_overwrites(self, tmp_path: Path):
        store = ResultStore(tmp_path)
        store.save(_result())
        updated = ExtractedResult("models/tower.rvt", "u2", "g", "v")
        store.save(updated)
        assert store.load("tower.rvt.json").urn == "u2"

    def test_filenames_sorted(self, tmp_path: Path):
        store = ResultStore(tmp_path)
        store.save(_result("b.rvt"))
        store.save(_result("a.rvt"))
        (tmp_path / "notes.txt").write_text("x")
        assert store.filenames() == ["a.rvt.json", "b.rvt.json"]

    def test_filenames_missing_directory(self, tmp_path: Path):
        assert ResultStore(tmp_path / "nope").filenames() == []

    @pytest.mark.parametrize(
        "filename",
        ["../tower.rvt.json", "sub/tower.rvt.json", "tower.rvt", "", ".json", "tower rvt.json", "missing.json"],
    )
    def test_path_for_rejects(self, tmp_path: Path, filename):
        store = ResultStore(tmp_path)
        store.save(_result())
        with pytest.raises(FileNotFoundError):
            store.path_for(filename)
        assert not store.exists(filename)

    def test_path_for_exact_name(self, tmp_path: Path):
        store = ResultStore(tmp_path)
        store.save(_result())
        assert store.path_for("tower.rvt.json") == tmp_path / "tower.rvt.json"
        assert store.exists("tower.rvt.json")

    def test_same_basename_from_other_directory_is_refused(self, tmp_path: Path):
        """Two sources sharing a basename must not silently replace each other."""
        store = ResultStore(tmp_path)
        store.save(_result("site-a/tower.rvt"))

        with pytest.raises(FileExistsError, match="site-a/tower.rvt"):
            store.save(_result("site-b/tower.rvt"))

        assert store.load("tower.rvt.json").source == "site-a/tower.rvt"

    def test_unreadable_existing_file_is_replaced(self, tmp_path: Path):
        (tmp_path / "tower.rvt.json").write_text("{not json")
        store = ResultStore(tmp_path)

        store.save(_result())

        assert store.load("tower.rvt.json") == _result()

    @pytest.mark.parametrize("content", ['{"source": "tower.rvt"}', "[1, 2]"])
    def test_load_malformed_result_raises_value_error(self, tmp_path: Path, content):
        (tmp_path / "tower.rvt.json").write_text(content)

        with pytest.raises(ValueError, match="malformed"):
            ResultStore(tmp_path).load("tower.rvt.json")
