"""Candidate filters for the mix pipeline.

Each filter takes a list of tracks and returns the subset that passes,
preserving order.
"""

from __future__ import annotations

from typing import Callable, Mapping

from melodyforge.db.models import AudioFeatureVector, Mood, Track

MOOD_PREDICATES: dict[Mood, Callable[[AudioFeatureVector], bool]] = {
    Mood.ENERGETIC: lambda f: f.energy > 0.6 and f.valence > 0.5,
    Mood.CHILL: lambda f: f.energy < 0.5 and f.valence > 0.4,
    Mood.FOCUS: lambda f: f.acousticness > 0.5 and f.energy < 0.6,
    Mood.WORKOUT: lambda f: f.energy > 0.7 and f.danceability > 0.6,
    Mood.SLEEP: lambda f: f.energy < 0.3 and f.acousticness > 0.6,
}


def filter_by_genre(tracks: list[Track], genre: str | None) -> list[Track]:
    """Keep tracks whose genre contains ``genre`` (case-insensitive)."""
    if not genre:
        return list(tracks)
    needle = genre.lower()
    return [t for t in tracks if t.genre and needle in t.genre.lower()]


def matches_mood(vector: AudioFeatureVector | None, mood: Mood | str) -> bool:
    """True when ``vector`` fits ``mood``. Tracks without a vector pass."""
    if vector is None:
        return True
    return MOOD_PREDICATES[Mood(mood)](vector)


def filter_by_mood(
    tracks: list[Track],
    mood: Mood | str | None,
    features: Mapping[str, AudioFeatureVector],
) -> list[Track]:
    if mood is None:
        return list(tracks)
    return [t for t in tracks if matches_mood(features.get(t.id), mood)]


def exclude_unplayed(tracks: list[Track]) -> list[Track]:
    """Drop tracks that were never played (the skipped-track heuristic)."""
    return [t for t in tracks if t.play_count > 0]
