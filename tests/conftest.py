"""Shared test fixtures for MelodyForge."""

from datetime import datetime, timedelta

import pytest

from melodyforge.audio.context import OfflineAudioContext
from melodyforge.audio.graph import AudioGraphManager
from melodyforge.audio.source import sine_buffer
from melodyforge.config import AudioConfig
from melodyforge.db.library import InMemoryLibrary
from melodyforge.db.models import Track

SAMPLE_RATE = 44100


def make_track(
    track_id: str = "t1",
    artist: str = "Artist",
    genre: str | None = "pop",
    duration: float = 200.0,
    play_count: int = 0,
    last_played: datetime | None = None,
    title: str | None = None,
) -> Track:
    """Helper to create a Track with sensible defaults."""
    return Track(
        id=track_id,
        title=title or f"Track {track_id}",
        artist=artist,
        genre=genre,
        duration=duration,
        play_count=play_count,
        last_played=last_played,
        date_added=datetime(2024, 1, 1),
    )


class CountingFactory:
    """Offline context factory that remembers how often it was called."""

    def __init__(self) -> None:
        self.calls = 0
        self.contexts: list[OfflineAudioContext] = []

    def __call__(self, config: AudioConfig) -> OfflineAudioContext:
        self.calls += 1
        ctx = OfflineAudioContext(config.sample_rate, config.channels)
        self.contexts.append(ctx)
        return ctx


@pytest.fixture
def ctx():
    """A stereo offline context at 44.1 kHz."""
    return OfflineAudioContext(SAMPLE_RATE, 2)


@pytest.fixture
def factory():
    return CountingFactory()


@pytest.fixture
def manager(factory):
    """AudioGraphManager rendering offline."""
    mgr = AudioGraphManager(context_factory=factory)
    yield mgr
    mgr.teardown()


@pytest.fixture
def tone():
    """One second of a quiet 440 Hz stereo sine."""
    return sine_buffer(440.0, 1.0, sample_rate=SAMPLE_RATE, amplitude=0.01)


@pytest.fixture
def mixed_library():
    """Twelve tracks over four genres; a few have play history."""
    now = datetime(2024, 6, 1, 12, 0)
    genres = ["Electronic", "Rock", "Jazz", "Classical"]
    tracks = []
    for i in range(12):
        played = i % 3 == 0
        tracks.append(make_track(
            track_id=f"t{i:02d}",
            artist=f"Artist {i % 5}",
            genre=genres[i % 4],
            duration=180.0 + 10 * i,
            play_count=i if played else 0,
            last_played=now - timedelta(hours=i) if played else None,
        ))
    return InMemoryLibrary(tracks)
