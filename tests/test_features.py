"""Tests for heuristic feature vectors and the session cache."""

import logging
import random
import threading
from types import SimpleNamespace

import pytest

from melodyforge.db.models import AudioFeatureVector
from melodyforge.mix.features import (
    DEFAULT_BASE,
    TEMPO_JITTER_BPM,
    UNIT_JITTER,
    FeatureCache,
    HeuristicFeatureExtractor,
    base_features,
)

from conftest import make_track


class FixedExtractor:
    """Always returns the same vector; counts calls."""

    def __init__(self, energy: float = 0.5) -> None:
        self.calls = 0
        self.vector = AudioFeatureVector(
            energy=energy, valence=0.5, tempo=120.0, danceability=0.5, acousticness=0.5,
        )

    def extract(self, track):
        self.calls += 1
        return self.vector


# ===========================================================================
# Genre buckets
# ===========================================================================


class TestGenreBuckets:
    @pytest.mark.parametrize("genre,tempo", [
        ("Electronic", 128.0),
        ("EDM", 128.0),
        ("Death Metal", 120.0),
        ("Classical", 80.0),
        ("Dark Ambient", 80.0),
        ("Jazz Fusion", 100.0),
        ("K-Pop", 120.0),
    ])
    def test_bucket_by_keyword(self, genre, tempo):
        assert base_features(genre)["tempo"] == tempo

    def test_first_match_wins(self):
        # rock is checked before blues
        assert base_features("Blues Rock") == base_features("rock")

    @pytest.mark.parametrize("genre", [None, "", "Polka", "Reggae"])
    def test_unknown_uses_default(self, genre):
        assert base_features(genre) == DEFAULT_BASE

    def test_returns_a_copy(self):
        base = base_features("pop")
        base["energy"] = 0.0
        assert base_features("pop")["energy"] == 0.7


# ===========================================================================
# Heuristic extractor
# ===========================================================================


class TestHeuristicExtractor:
    def test_jitter_is_bounded(self):
        extractor = HeuristicFeatureExtractor(random.Random(7))
        base = base_features("electronic")
        for i in range(200):
            v = extractor.extract(make_track(f"t{i}", genre="Electronic"))
            assert abs(v.energy - base["energy"]) <= UNIT_JITTER + 1e-9
            assert abs(v.danceability - base["danceability"]) <= UNIT_JITTER + 1e-9
            assert abs(v.tempo - base["tempo"]) <= TEMPO_JITTER_BPM + 1e-9

    def test_values_stay_in_range(self):
        extractor = HeuristicFeatureExtractor(random.Random(3))
        for i in range(200):
            v = extractor.extract(make_track(f"t{i}", genre="Electronic"))
            for value in (v.energy, v.valence, v.danceability, v.acousticness):
                assert 0.0 <= value <= 1.0
            assert 40.0 <= v.tempo <= 220.0

    def test_seeded_rng_is_reproducible(self):
        track = make_track(genre="Jazz")
        a = HeuristicFeatureExtractor(random.Random(42)).extract(track)
        b = HeuristicFeatureExtractor(random.Random(42)).extract(track)
        assert a == b

    def test_unseeded_vectors_vary(self):
        extractor = HeuristicFeatureExtractor()
        track = make_track(genre="Rock")
        vectors = {extractor.extract(track).tempo for _ in range(20)}
        assert len(vectors) > 1

    def test_bad_genre_falls_back_to_default(self):
        extractor = HeuristicFeatureExtractor(random.Random(1))
        weird = SimpleNamespace(id="x", genre=12345)
        v = extractor.extract(weird)
        assert abs(v.tempo - DEFAULT_BASE["tempo"]) <= TEMPO_JITTER_BPM


# ===========================================================================
# Feature cache
# ===========================================================================


class TestFeatureCache:
    def test_first_vector_wins(self):
        cache = FeatureCache()
        first = FixedExtractor(0.1).vector
        second = FixedExtractor(0.9).vector
        assert cache.put("t1", first) is first
        assert cache.put("t1", second) is first
        assert cache.get("t1") is first

    def test_ensure_extracts_once(self):
        cache = FeatureCache()
        extractor = FixedExtractor()
        track = make_track("t1")
        cache.ensure(track, extractor)
        cache.ensure(track, extractor)
        assert extractor.calls == 1
        assert "t1" in cache

    def test_ensure_all_counts_new_tracks(self):
        cache = FeatureCache()
        extractor = FixedExtractor()
        tracks = [make_track(f"t{i}") for i in range(5)]
        assert cache.ensure_all(tracks[:3], extractor) == 3
        assert cache.ensure_all(tracks, extractor) == 2
        assert len(cache) == 5
        assert extractor.calls == 5

    def test_mapping_is_a_copy(self):
        cache = FeatureCache()
        cache.ensure(make_track("t1"), FixedExtractor())
        mapping = cache.as_mapping()
        mapping.clear()
        assert len(cache) == 1

    def test_clear(self):
        cache = FeatureCache()
        cache.ensure(make_track("t1"), FixedExtractor())
        cache.clear()
        assert len(cache) == 0
        assert cache.get("t1") is None

    def test_concurrent_writers_agree(self):
        cache = FeatureCache()
        track = make_track("shared", genre="Pop")
        results = []
        barrier = threading.Barrier(8)

        def worker(seed):
            extractor = HeuristicFeatureExtractor(random.Random(seed))
            barrier.wait()
            results.append(cache.ensure(track, extractor))

        threads = [threading.Thread(target=worker, args=(s,)) for s in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 8
        assert all(r is results[0] for r in results)
        assert cache.get("shared") is results[0]

    def test_failing_extractor_falls_back_to_default(self, caplog):
        class Unreadable:
            def extract(self, track):
                raise OSError(f"cannot analyse {track.id}")

        cache = FeatureCache()
        with caplog.at_level(logging.WARNING):
            vector = cache.ensure(make_track("bad"), Unreadable())
        assert vector == AudioFeatureVector(**DEFAULT_BASE)
        assert cache.get("bad") is vector
        assert "Feature extraction failed for bad" in caplog.text
