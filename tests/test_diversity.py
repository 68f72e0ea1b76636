"""Tests for the artist/genre diversity pass and the duration budget."""

import math

import pytest

from melodyforge.db.models import DiversityLevel
from melodyforge.mix.diversity import (
    DIVERSITY_THRESHOLDS,
    FORCE_INCLUDE_WINDOW,
    apply_diversity,
    limit_by_duration,
)

from conftest import make_track


def _varied_then_repeated():
    """20 tracks by ten artists (own genre each), then 20 by one artist."""
    varied = [
        make_track(f"v{i:02d}", artist=f"A{i // 2}", genre=f"g{i // 2}")
        for i in range(20)
    ]
    repeated = [make_track(f"z{i:02d}", artist="Z", genre="gz") for i in range(20)]
    return varied + repeated


class TestApplyDiversity:
    def test_low_keeps_everything(self):
        ordered = [make_track(f"t{i}", artist="Same") for i in range(30)]
        assert apply_diversity(ordered, DiversityLevel.LOW) == ordered

    def test_high_caps_dominant_artist(self):
        selected = apply_diversity(_varied_then_repeated(), DiversityLevel.HIGH)
        z_count = sum(1 for t in selected if t.artist == "Z")
        assert len(selected) == 29
        assert z_count == 9

    def test_medium_allows_more(self):
        selected = apply_diversity(_varied_then_repeated(), "medium")
        assert len(selected) == 40

    @pytest.mark.parametrize("level", [DiversityLevel.MEDIUM, DiversityLevel.HIGH])
    def test_share_below_threshold_after_window(self, level):
        threshold = DIVERSITY_THRESHOLDS[level]
        selected = apply_diversity(_varied_then_repeated(), level)
        for i in range(FORCE_INCLUDE_WINDOW, len(selected)):
            track = selected[i]
            before = selected[:i]
            artist_share = sum(1 for t in before if t.artist == track.artist) / len(before)
            genre_share = sum(1 for t in before if t.genre == track.genre) / len(before)
            assert artist_share < threshold
            assert genre_share < threshold

    @pytest.mark.parametrize("ordered", [
        _varied_then_repeated(),
        _varied_then_repeated()[:20] + [
            make_track(f"x{i:02d}", artist="ZY"[i % 2], genre=f"g{'zy'[i % 2]}")
            for i in range(20)
        ],
    ])
    def test_high_artist_share_within_ceiling(self, ordered):
        assert len(ordered) >= 30
        selected = apply_diversity(ordered, DiversityLevel.HIGH)
        for length in range(10, len(selected) + 1):
            prefix = selected[:length]
            top = max(sum(1 for t in prefix if t.artist == a) for a in {t.artist for t in prefix})
            assert top <= math.ceil(0.3 * length)

    def test_small_library_force_included(self):
        ordered = [make_track(f"t{i}", artist="Same", genre="one") for i in range(12)]
        assert apply_diversity(ordered, DiversityLevel.HIGH) == ordered

    def test_without_window_rejects_repeats(self):
        ordered = [make_track(f"t{i}", artist="Same", genre="one") for i in range(5)]
        assert apply_diversity(ordered, DiversityLevel.HIGH, force_include_window=0) == ordered[:1]

    def test_missing_genres_share_a_bucket(self):
        ordered = [
            make_track("a", artist="A", genre=None),
            make_track("b", artist="B", genre=None),
            make_track("c", artist="C", genre="jazz"),
        ]
        selected = apply_diversity(ordered, DiversityLevel.HIGH, force_include_window=0)
        assert [t.id for t in selected] == ["a", "c"]

    def test_order_preserved(self):
        ordered = _varied_then_repeated()
        selected = apply_diversity(ordered, DiversityLevel.HIGH)
        positions = [ordered.index(t) for t in selected]
        assert positions == sorted(positions)


class TestLimitByDuration:
    def test_exact_fit_included(self):
        tracks = [make_track(f"t{i}", duration=600.0) for i in range(3)]
        assert len(limit_by_duration(tracks, 20)) == 2

    def test_stops_at_first_overflow(self):
        tracks = [
            make_track("a", duration=600.0),
            make_track("b", duration=900.0),
            make_track("c", duration=60.0),
        ]
        assert [t.id for t in limit_by_duration(tracks, 20)] == ["a"]

    def test_first_track_too_long(self):
        assert limit_by_duration([make_track("a", duration=400.0)], 5) == []

    def test_total_within_budget(self):
        tracks = [make_track(f"t{i}", duration=170.0 + i) for i in range(30)]
        kept = limit_by_duration(tracks, 30)
        assert sum(t.duration for t in kept) <= 30 * 60
        assert len(kept) == 10
