"""Tests for the in-memory library and JSON import/export."""

import json
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from melodyforge.db.library import InMemoryLibrary, dump_library_json, load_library_json

from conftest import make_track


class TestInMemoryLibrary:
    def test_lookup(self):
        library = InMemoryLibrary([make_track("a"), make_track("b")])
        assert len(library) == 2
        assert library.get_track_by_id("b").id == "b"
        assert library.get_track_by_id("zzz") is None

    def test_add_replaces_same_id(self):
        library = InMemoryLibrary([make_track("a", title="Old")])
        library.add_track(make_track("a", title="New"))
        library.add_track(make_track("b"))
        assert [t.title for t in library.get_all_tracks()] == ["New", "Track b"]

    def test_all_tracks_is_a_copy(self):
        library = InMemoryLibrary([make_track("a")])
        library.get_all_tracks().clear()
        assert len(library) == 1

    def test_recent(self):
        now = datetime(2024, 6, 1)
        library = InMemoryLibrary([
            make_track("old", last_played=now - timedelta(days=2)),
            make_track("never"),
            make_track("new", last_played=now),
        ])
        assert [t.id for t in library.get_recent_tracks(5)] == ["new", "old"]
        assert [t.id for t in library.get_recent_tracks(1)] == ["new"]

    def test_top(self):
        library = InMemoryLibrary([
            make_track("a", play_count=1),
            make_track("b", play_count=0),
            make_track("c", play_count=7),
        ])
        assert [t.id for t in library.get_top_tracks(5)] == ["c", "a"]


class TestJsonImport:
    def test_list_form(self, tmp_path):
        path = tmp_path / "lib.json"
        path.write_text(json.dumps([
            {"id": "a", "title": "A", "artist": "X", "duration": 200},
            {"id": "b", "title": "B", "artist": "Y", "duration": 150, "genre": "Jazz",
             "play_count": 3, "last_played": "2024-05-01T10:00:00"},
        ]))
        library = load_library_json(path)
        assert len(library) == 2
        assert library.get_track_by_id("b").play_count == 3
        assert library.get_recent_tracks(5)[0].id == "b"

    def test_object_form(self, tmp_path):
        path = tmp_path / "lib.json"
        path.write_text(json.dumps({"tracks": [
            {"id": "a", "title": "A", "artist": "X", "duration": 200},
        ]}))
        assert len(load_library_json(path)) == 1

    def test_invalid_track_rejected(self, tmp_path):
        path = tmp_path / "lib.json"
        path.write_text(json.dumps([{"id": "a", "title": "A", "artist": "X", "duration": -5}]))
        with pytest.raises(ValidationError):
            load_library_json(path)

    def test_dump_and_load(self, tmp_path):
        tracks = [make_track("a", genre="Rock"), make_track("b", genre=None, play_count=2)]
        path = dump_library_json(tracks, tmp_path / "out.json")
        assert load_library_json(path).get_all_tracks() == tracks
