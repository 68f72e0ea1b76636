"""Similarity scoring of candidates against seed tracks.

All scores are in [0.0, 1.0].
"""

from __future__ import annotations

from typing import Mapping

from melodyforge.db.models import AudioFeatureVector, Track

TEMPO_SCALE_BPM = 60.0
PLAY_COUNT_BONUS = 0.1
GENRE_BONUS = 0.2


def vector_similarity(a: AudioFeatureVector, b: AudioFeatureVector) -> float:
    """Mean of five per-feature similarities ``1 - |a - b|``.

    Tempo differences are scaled by 60 BPM, so its term can go negative for
    very distant tempos; the final score is clamped instead.
    """
    energy = 1.0 - abs(a.energy - b.energy)
    valence = 1.0 - abs(a.valence - b.valence)
    tempo = 1.0 - abs(a.tempo - b.tempo) / TEMPO_SCALE_BPM
    dance = 1.0 - abs(a.danceability - b.danceability)
    acoustic = 1.0 - abs(a.acousticness - b.acousticness)
    return (energy + valence + tempo + dance + acoustic) / 5.0


def score_track(
    track: Track,
    seeds: list[Track],
    features: Mapping[str, AudioFeatureVector],
    include_recently_played: bool = False,
) -> float:
    """Score ``track`` against ``seeds``.

    Args:
        track: Candidate to score.
        seeds: Reference tracks; seeds without a vector are skipped.
        features: Feature vectors keyed by track id.
        include_recently_played: Add a bonus proportional to play count.

    Returns:
        Score in [0.0, 1.0]; 0.0 when the candidate has no vector.
    """
    vector = features.get(track.id)
    if vector is None or not seeds:
        return 0.0

    total = 0.0
    for seed in seeds:
        seed_vector = features.get(seed.id)
        if seed_vector is None:
            continue
        total += vector_similarity(vector, seed_vector)
    score = total / len(seeds)

    if include_recently_played:
        score += track.play_count / 100.0 * PLAY_COUNT_BONUS

    seed_genres = {s.genre.lower() for s in seeds if s.genre}
    if track.genre and track.genre.lower() in seed_genres:
        score += GENRE_BONUS

    return max(0.0, min(1.0, score))


def rank_tracks(
    tracks: list[Track],
    seeds: list[Track],
    features: Mapping[str, AudioFeatureVector],
    include_recently_played: bool = False,
) -> list[tuple[Track, float]]:
    """Score every track and sort by score descending (stable for ties)."""
    scored = [(t, score_track(t, seeds, features, include_recently_played)) for t in tracks]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored
