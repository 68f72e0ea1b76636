"""SQLite database connection and CRUD operations."""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from melodyforge.db.models import MixRequest, SavedPlaylist, Track

logger = logging.getLogger(__name__)


class Database:
    """SQLite database for persisting tracks, playlists, and preferences.

    Implements both the track library interface used by the mix generator
    and the playlist store that smart mixes are saved to.
    """

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self._db_path = str(db_path)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self.create_tables()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def create_tables(self) -> None:
        """Create all tables and indexes."""
        cur = self._conn.cursor()

        cur.executescript("""
            CREATE TABLE IF NOT EXISTS tracks (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                artist TEXT NOT NULL,
                album TEXT NOT NULL DEFAULT '',
                genre TEXT,
                duration REAL NOT NULL,
                play_count INTEGER DEFAULT 0,
                last_played TEXT,
                date_added TEXT NOT NULL,
                file_path TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_tracks_last_played
                ON tracks(last_played);
            CREATE INDEX IF NOT EXISTS idx_tracks_play_count
                ON tracks(play_count);

            CREATE TABLE IF NOT EXISTS playlists (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                color TEXT NOT NULL DEFAULT '',
                is_smart INTEGER DEFAULT 0,
                options_json TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS playlist_tracks (
                playlist_id TEXT NOT NULL REFERENCES playlists(id) ON DELETE CASCADE,
                track_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY(playlist_id, position)
            );

            CREATE TABLE IF NOT EXISTS preferences (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
        """)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    @property
    def connection(self) -> sqlite3.Connection:
        """Expose the underlying connection (for testing)."""
        return self._conn

    # ------------------------------------------------------------------
    # Tracks
    # ------------------------------------------------------------------

    def insert_track(self, track: Track) -> None:
        """Insert or replace a track."""
        self._conn.execute(
            """
            INSERT OR REPLACE INTO tracks (
                id, title, artist, album, genre, duration,
                play_count, last_played, date_added, file_path
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._track_to_row(track),
        )
        self._conn.commit()

    def insert_tracks(self, tracks: list[Track]) -> None:
        self._conn.executemany(
            """
            INSERT OR REPLACE INTO tracks (
                id, title, artist, album, genre, duration,
                play_count, last_played, date_added, file_path
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [self._track_to_row(t) for t in tracks],
        )
        self._conn.commit()

    def get_track_by_id(self, track_id: str) -> Track | None:
        row = self._conn.execute(
            "SELECT * FROM tracks WHERE id = ?", (track_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_track(row)

    def get_all_tracks(self) -> list[Track]:
        rows = self._conn.execute("SELECT * FROM tracks ORDER BY date_added").fetchall()
        return [self._row_to_track(r) for r in rows]

    def get_recent_tracks(self, n: int) -> list[Track]:
        """Most recently played tracks, newest first."""
        rows = self._conn.execute(
            """
            SELECT * FROM tracks
            WHERE last_played IS NOT NULL
            ORDER BY last_played DESC
            LIMIT ?
            """,
            (n,),
        ).fetchall()
        return [self._row_to_track(r) for r in rows]

    def get_top_tracks(self, n: int) -> list[Track]:
        """Most played tracks; never-played tracks are excluded."""
        rows = self._conn.execute(
            """
            SELECT * FROM tracks
            WHERE play_count > 0
            ORDER BY play_count DESC
            LIMIT ?
            """,
            (n,),
        ).fetchall()
        return [self._row_to_track(r) for r in rows]

    def record_play(self, track_id: str, played_at: datetime | None = None) -> None:
        """Bump a track's play count when playback completes."""
        played_at = played_at or datetime.now()
        self._conn.execute(
            """
            UPDATE tracks SET play_count = play_count + 1, last_played = ?
            WHERE id = ?
            """,
            (played_at.isoformat(), track_id),
        )
        self._conn.commit()

    def delete_track(self, track_id: str) -> None:
        self._conn.execute("DELETE FROM tracks WHERE id = ?", (track_id,))
        self._conn.commit()

    # ------------------------------------------------------------------
    # Playlists
    # ------------------------------------------------------------------

    def save_playlist(self, playlist: SavedPlaylist) -> None:
        """Insert or replace a playlist together with its ordered track ids."""
        options_json = playlist.options.model_dump_json() if playlist.options else None
        with self._conn:
            self._conn.execute(
                "DELETE FROM playlist_tracks WHERE playlist_id = ?", (playlist.id,)
            )
            self._conn.execute(
                """
                INSERT OR REPLACE INTO playlists (
                    id, name, description, color, is_smart, options_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    playlist.id,
                    playlist.name,
                    playlist.description,
                    playlist.color,
                    int(playlist.is_smart),
                    options_json,
                    playlist.created_at.isoformat(),
                ),
            )
            # Insert playlist tracks in order
            self._conn.executemany(
                """
                INSERT INTO playlist_tracks (playlist_id, track_id, position)
                VALUES (?, ?, ?)
                """,
                [(playlist.id, tid, pos) for pos, tid in enumerate(playlist.track_ids)],
            )
        logger.debug("Saved playlist %s (%d tracks)", playlist.id, len(playlist.track_ids))

    def get_playlist(self, playlist_id: str) -> SavedPlaylist | None:
        row = self._conn.execute(
            "SELECT * FROM playlists WHERE id = ?", (playlist_id,)
        ).fetchone()
        if row is None:
            return None

        track_rows = self._conn.execute(
            """
            SELECT track_id FROM playlist_tracks
            WHERE playlist_id = ?
            ORDER BY position
            """,
            (playlist_id,),
        ).fetchall()

        options = None
        if row["options_json"]:
            options = MixRequest.model_validate_json(row["options_json"])
        return SavedPlaylist(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            track_ids=[r["track_id"] for r in track_rows],
            color=row["color"],
            is_smart=bool(row["is_smart"]),
            options=options,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def list_playlists(self) -> list[SavedPlaylist]:
        rows = self._conn.execute(
            "SELECT id FROM playlists ORDER BY created_at"
        ).fetchall()
        playlists = []
        for row in rows:
            pl = self.get_playlist(row["id"])
            if pl is not None:
                playlists.append(pl)
        return playlists

    def delete_playlist(self, playlist_id: str) -> bool:
        """Delete a playlist; returns False when it did not exist."""
        with self._conn:
            cur = self._conn.execute("DELETE FROM playlists WHERE id = ?", (playlist_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def set_preference(self, key: str, value: str) -> None:
        """Set a user preference (insert or update)."""
        self._conn.execute(
            """
            INSERT OR REPLACE INTO preferences (key, value)
            VALUES (?, ?)
            """,
            (key, value),
        )
        self._conn.commit()

    def get_preference(self, key: str) -> str | None:
        """Get a user preference by key."""
        row = self._conn.execute(
            "SELECT value FROM preferences WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return row["value"]

    def delete_preference(self, key: str) -> None:
        self._conn.execute("DELETE FROM preferences WHERE key = ?", (key,))
        self._conn.commit()

    def get_preferences_with_prefix(self, prefix: str) -> dict[str, str]:
        rows = self._conn.execute(
            "SELECT key, value FROM preferences WHERE key LIKE ? ORDER BY key",
            (prefix + "%",),
        ).fetchall()
        return {r["key"]: r["value"] for r in rows}

    # ------------------------------------------------------------------
    # Serialization helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _track_to_row(track: Track) -> tuple:
        """Convert a Track model to a flat SQLite row tuple."""
        return (
            track.id,
            track.title,
            track.artist,
            track.album,
            track.genre,
            track.duration,
            track.play_count,
            track.last_played.isoformat() if track.last_played else None,
            track.date_added.isoformat(),
            track.file_path,
        )

    @staticmethod
    def _row_to_track(row: sqlite3.Row) -> Track:
        """Convert a SQLite row back to a Track model."""
        return Track(
            id=row["id"],
            title=row["title"],
            artist=row["artist"],
            album=row["album"],
            genre=row["genre"],
            duration=row["duration"],
            play_count=row["play_count"],
            last_played=(
                datetime.fromisoformat(row["last_played"]) if row["last_played"] else None
            ),
            date_added=datetime.fromisoformat(row["date_added"]),
            file_path=row["file_path"],
        )
