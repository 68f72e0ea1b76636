"""Track library interface consumed by the mix generator.

The library itself (import, tagging, storage) lives outside this package;
the mix generator only needs the read operations of TrackLibrary.
``Database`` implements it over SQLite and ``InMemoryLibrary`` over a plain
list, e.g. one loaded from a JSON export.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter

from melodyforge.db.models import SavedPlaylist, Track

logger = logging.getLogger(__name__)

_TRACK_LIST = TypeAdapter(list[Track])


class TrackLibrary(Protocol):
    def get_all_tracks(self) -> list[Track]: ...

    def get_recent_tracks(self, n: int) -> list[Track]: ...

    def get_top_tracks(self, n: int) -> list[Track]: ...

    def get_track_by_id(self, track_id: str) -> Track | None: ...


class PlaylistStore(Protocol):
    def save_playlist(self, playlist: SavedPlaylist) -> None: ...


class InMemoryLibrary:
    """TrackLibrary over an in-memory track list."""

    def __init__(self, tracks: list[Track] | None = None) -> None:
        self._tracks: list[Track] = list(tracks or [])
        self._by_id = {t.id: t for t in self._tracks}

    def __len__(self) -> int:
        return len(self._tracks)

    def add_track(self, track: Track) -> None:
        if track.id in self._by_id:
            self._tracks = [track if t.id == track.id else t for t in self._tracks]
        else:
            self._tracks.append(track)
        self._by_id[track.id] = track

    def get_all_tracks(self) -> list[Track]:
        return list(self._tracks)

    def get_recent_tracks(self, n: int) -> list[Track]:
        """Most recently played tracks, newest first."""
        played = [t for t in self._tracks if t.last_played is not None]
        played.sort(key=lambda t: t.last_played or datetime.min, reverse=True)
        return played[:n]

    def get_top_tracks(self, n: int) -> list[Track]:
        """Most played tracks; never-played tracks are excluded."""
        played = [t for t in self._tracks if t.play_count > 0]
        played.sort(key=lambda t: t.play_count, reverse=True)
        return played[:n]

    def get_track_by_id(self, track_id: str) -> Track | None:
        return self._by_id.get(track_id)


def load_library_json(path: Path | str) -> InMemoryLibrary:
    """Load a library export: a JSON list of track objects, or ``{"tracks": [...]}``."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("tracks", [])
    tracks = _TRACK_LIST.validate_python(raw)
    logger.info("Loaded %d tracks from %s", len(tracks), path)
    return InMemoryLibrary(tracks)


def dump_library_json(tracks: list[Track], path: Path | str) -> Path:
    output_path = Path(path)
    output_path.write_bytes(_TRACK_LIST.dump_json(tracks, indent=2))
    return output_path
