"""Artist/genre diversity and duration budgeting for generated mixes."""

from __future__ import annotations

from collections import Counter

from melodyforge.db.models import DiversityLevel, Track

# Every candidate is accepted while fewer than this many tracks are selected,
# so small libraries still produce a usable mix.
FORCE_INCLUDE_WINDOW = 20

DIVERSITY_THRESHOLDS: dict[DiversityLevel, float] = {
    DiversityLevel.MEDIUM: 0.5,
    DiversityLevel.HIGH: 0.3,
}


def apply_diversity(
    ordered: list[Track],
    level: DiversityLevel | str,
    force_include_window: int = FORCE_INCLUDE_WINDOW,
) -> list[Track]:
    """Greedy scan in score order bounding any artist's or genre's share.

    A track is accepted when both its artist and its genre make up less than
    the level's threshold of the tracks selected so far. Rejected tracks are
    still taken while the selection is shorter than ``force_include_window``.
    Tracks without a genre share the ``None`` genre.
    """
    level = DiversityLevel(level)
    if level is DiversityLevel.LOW:
        return list(ordered)
    threshold = DIVERSITY_THRESHOLDS[level]

    selected: list[Track] = []
    artists: Counter[str] = Counter()
    genres: Counter[str | None] = Counter()
    for track in ordered:
        count = max(1, len(selected))
        artist_ratio = artists[track.artist] / count
        genre_ratio = genres[track.genre] / count
        if (artist_ratio < threshold and genre_ratio < threshold) or len(selected) < force_include_window:
            selected.append(track)
            artists[track.artist] += 1
            genres[track.genre] += 1
    return selected


def limit_by_duration(tracks: list[Track], target_minutes: float) -> list[Track]:
    """Longest prefix whose total duration fits in ``target_minutes``.

    Stops at the first track that would overflow the budget; later, shorter
    tracks are not considered.
    """
    budget = target_minutes * 60.0
    result: list[Track] = []
    total = 0.0
    for track in tracks:
        if total + track.duration > budget:
            break
        result.append(track)
        total += track.duration
    return result
