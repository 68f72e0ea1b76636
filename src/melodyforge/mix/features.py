"""Per-track audio feature vectors.

The heuristic extractor derives a vector from the track's genre: each genre
bucket has a base vector, and a bounded random jitter spreads tracks within
the bucket. Because the jitter is random, callers keep the first vector
computed for a track in a FeatureCache and reuse it for the session.

A real audio-analysis backend can replace the heuristic by implementing the
FeatureExtractor protocol.
"""

from __future__ import annotations

import logging
import random
from typing import Iterable, Protocol

from melodyforge.db.models import TEMPO_MAX_BPM, TEMPO_MIN_BPM, AudioFeatureVector, Track

logger = logging.getLogger(__name__)

UNIT_JITTER = 0.1
TEMPO_JITTER_BPM = 20.0

# (keywords, base vector); first matching bucket wins
GENRE_BUCKETS: list[tuple[tuple[str, ...], dict[str, float]]] = [
    (("electronic", "edm"), {
        "energy": 0.8, "valence": 0.7, "tempo": 128.0, "danceability": 0.9, "acousticness": 0.1,
    }),
    (("rock", "metal"), {
        "energy": 0.9, "valence": 0.6, "tempo": 120.0, "danceability": 0.6, "acousticness": 0.2,
    }),
    (("classical", "ambient"), {
        "energy": 0.3, "valence": 0.5, "tempo": 80.0, "danceability": 0.2, "acousticness": 0.8,
    }),
    (("jazz", "blues"), {
        "energy": 0.5, "valence": 0.6, "tempo": 100.0, "danceability": 0.5, "acousticness": 0.6,
    }),
    (("pop",), {
        "energy": 0.7, "valence": 0.8, "tempo": 120.0, "danceability": 0.8, "acousticness": 0.3,
    }),
]

DEFAULT_BASE: dict[str, float] = {
    "energy": 0.6, "valence": 0.6, "tempo": 110.0, "danceability": 0.6, "acousticness": 0.4,
}

UNIT_FIELDS = ("energy", "valence", "danceability", "acousticness")


def base_features(genre: str | None) -> dict[str, float]:
    """Base vector for the bucket ``genre`` falls in (default when unknown)."""
    if not genre:
        return dict(DEFAULT_BASE)
    lowered = genre.lower()
    for keywords, base in GENRE_BUCKETS:
        if any(k in lowered for k in keywords):
            return dict(base)
    return dict(DEFAULT_BASE)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


class FeatureExtractor(Protocol):
    def extract(self, track: Track) -> AudioFeatureVector: ...


class HeuristicFeatureExtractor:
    """Genre-bucket feature generator with bounded jitter.

    Args:
        rng: Source of jitter. Unseeded by default; pass a seeded
            ``random.Random`` for reproducible vectors.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def extract(self, track: Track) -> AudioFeatureVector:
        try:
            base = base_features(track.genre)
        except (AttributeError, TypeError):
            logger.warning("Feature extraction failed for %s, using defaults", track.id, exc_info=True)
            base = dict(DEFAULT_BASE)

        rng = self._rng
        values = {
            name: _clamp(base[name] + rng.uniform(-UNIT_JITTER, UNIT_JITTER), 0.0, 1.0)
            for name in UNIT_FIELDS
        }
        values["tempo"] = _clamp(
            base["tempo"] + rng.uniform(-TEMPO_JITTER_BPM, TEMPO_JITTER_BPM),
            TEMPO_MIN_BPM,
            TEMPO_MAX_BPM,
        )
        return AudioFeatureVector(**values)


class FeatureCache:
    """Session cache of feature vectors keyed by track id.

    The first vector stored for a track wins; later writers for the same id
    get the stored vector back. ``dict.setdefault`` is atomic under the GIL,
    so concurrent mixes never overwrite each other without a cache-wide lock.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, AudioFeatureVector] = {}

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, track_id: object) -> bool:
        return track_id in self._vectors

    def get(self, track_id: str) -> AudioFeatureVector | None:
        return self._vectors.get(track_id)

    def put(self, track_id: str, vector: AudioFeatureVector) -> AudioFeatureVector:
        """Store ``vector`` unless one exists; returns the cached vector."""
        return self._vectors.setdefault(track_id, vector)

    def ensure(self, track: Track, extractor: FeatureExtractor) -> AudioFeatureVector:
        """Cached vector for ``track``, extracting it on first use.

        An extractor failure never propagates: the track gets the default
        bucket's base vector instead.
        """
        cached = self._vectors.get(track.id)
        if cached is not None:
            return cached
        try:
            vector = extractor.extract(track)
        except Exception:
            logger.warning("Feature extraction failed for %s, using defaults", track.id, exc_info=True)
            vector = AudioFeatureVector(**DEFAULT_BASE)
        return self.put(track.id, vector)

    def ensure_all(self, tracks: Iterable[Track], extractor: FeatureExtractor) -> int:
        """Compute vectors for uncached tracks; returns how many were added."""
        added = 0
        for track in tracks:
            if track.id not in self._vectors:
                self.ensure(track, extractor)
                added += 1
        return added

    def as_mapping(self) -> dict[str, AudioFeatureVector]:
        """Read-only view for the selection stages (a shallow copy)."""
        return dict(self._vectors)

    def clear(self) -> None:
        self._vectors = {}
