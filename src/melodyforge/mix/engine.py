"""Smart mix generation.

Implements the mix pipeline:
1. Fetch the library snapshot
2. Resolve seed tracks (explicit -> recent -> top -> random)
3. Ensure cached feature vectors for candidates and seeds
4. Genre filter
5. Mood filter
6. Optionally drop never-played tracks
7. Score against seeds and rank
8. Artist/genre diversity
9. Duration budget, or cap at MAX_MIX_TRACKS
10. Describe and colour the result
"""

from __future__ import annotations

import logging
import random
import threading

from melodyforge.config import MixConfig
from melodyforge.db.library import PlaylistStore, TrackLibrary
from melodyforge.db.models import Mood, MixRequest, MixResult, SavedPlaylist, Track
from melodyforge.mix.diversity import apply_diversity, limit_by_duration
from melodyforge.mix.features import FeatureCache, FeatureExtractor, HeuristicFeatureExtractor
from melodyforge.mix.filters import exclude_unplayed, filter_by_genre, filter_by_mood
from melodyforge.mix.scoring import rank_tracks

logger = logging.getLogger(__name__)

MAX_MIX_TRACKS = 50

MOOD_COLORS: dict[Mood, str] = {
    Mood.ENERGETIC: "#FF6B6B",
    Mood.CHILL: "#4ECDC4",
    Mood.FOCUS: "#45B7D1",
    Mood.WORKOUT: "#FFA726",
    Mood.SLEEP: "#9C27B0",
}
DEFAULT_COLOR = "#6C5CE7"


class MixCancelled(Exception):
    """Raised when a mix request is cancelled between pipeline stages."""


def _format_minutes(minutes: float) -> str:
    return f"{minutes:g}"


def describe_mix(request: MixRequest) -> str:
    """Human-readable summary, e.g. ``"chill vibes • jazz music • 30 minutes • smart mix"``."""
    parts: list[str] = []
    if request.mood is not None:
        parts.append(f"{request.mood.value} vibes")
    if request.genre:
        parts.append(f"{request.genre} music")
    if request.target_minutes:
        parts.append(f"{_format_minutes(request.target_minutes)} minutes")
    parts.append("smart mix")
    return " • ".join(parts)


def mix_color(mood: Mood | None) -> str:
    if mood is None:
        return DEFAULT_COLOR
    return MOOD_COLORS.get(mood, DEFAULT_COLOR)


class MixOrchestrator:
    """Builds smart mixes from a track library.

    Args:
        library: Read access to the user's tracks.
        extractor: Feature extractor; the genre heuristic by default.
        cache: Session feature cache, shared across calls and threads.
        config: Seed counts and the result cap.
        rng: Randomness for the random-seed fallback.
        playlist_store: Where ``create_smart_playlist`` saves playlists.
    """

    def __init__(
        self,
        library: TrackLibrary,
        extractor: FeatureExtractor | None = None,
        cache: FeatureCache | None = None,
        config: MixConfig | None = None,
        rng: random.Random | None = None,
        playlist_store: PlaylistStore | None = None,
    ) -> None:
        self.library = library
        self.extractor = extractor or HeuristicFeatureExtractor()
        self.cache = cache if cache is not None else FeatureCache()
        self.config = config or MixConfig()
        self._rng = rng or random.Random()
        self.playlist_store = playlist_store

    # ------------------------------------------------------------------
    # Seeds
    # ------------------------------------------------------------------

    def resolve_seeds(self, request: MixRequest, tracks: list[Track]) -> list[Track]:
        """First non-empty of: explicit seeds, recent plays, top plays, random picks."""
        if request.seed_tracks:
            return list(request.seed_tracks)
        if request.seed_track_ids:
            seeds = [self.library.get_track_by_id(tid) for tid in request.seed_track_ids]
            found = [s for s in seeds if s is not None]
            if found:
                return found
            logger.warning("None of the seed ids %s are in the library", request.seed_track_ids)

        count = self.config.seed_count
        recent = self.library.get_recent_tracks(count)
        if recent:
            return recent
        top = self.library.get_top_tracks(count)
        if top:
            return top
        k = min(self.config.random_seed_count, len(tracks))
        return self._rng.sample(tracks, k)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def generate_smart_mix(
        self,
        request: MixRequest | None = None,
        cancel_event: threading.Event | None = None,
    ) -> MixResult:
        """Run the full mix pipeline.

        Args:
            request: What to build; a default medium-diversity mix if None.
            cancel_event: Checked between the filtering, scoring, diversity
                and budget stages.

        Returns:
            MixResult. An empty result carries a ``reason`` instead of raising.

        Raises:
            MixCancelled: ``cancel_event`` was set while the mix was built.
        """
        if request is None:
            request = MixRequest()

        def checkpoint(stage: str) -> None:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Smart mix cancelled before %s", stage)
                raise MixCancelled(stage)

        description = describe_mix(request)
        color = mix_color(request.mood)

        # Step 1: library snapshot
        tracks = self.library.get_all_tracks()
        if not tracks:
            return MixResult(description=description, color=color, reason="The library is empty")

        # Step 2: seeds
        seeds = self.resolve_seeds(request, tracks)

        # Step 3: feature vectors, first computed vector per track wins
        self.cache.ensure_all(tracks, self.extractor)
        self.cache.ensure_all(seeds, self.extractor)
        features = self.cache.as_mapping()

        # Steps 4-6: filters
        checkpoint("genre filter")
        candidates = filter_by_genre(tracks, request.genre)
        if not candidates:
            return self._empty(request, seeds, f"No tracks match genre '{request.genre}'")

        checkpoint("mood filter")
        candidates = filter_by_mood(candidates, request.mood, features)
        if not candidates:
            return self._empty(request, seeds, f"No tracks fit the {request.mood.value} mood")

        if request.exclude_skipped:
            checkpoint("skip filter")
            candidates = exclude_unplayed(candidates)
            if not candidates:
                return self._empty(request, seeds, "Every candidate track is unplayed")

        # Step 7: score and rank
        checkpoint("scoring")
        ranked = rank_tracks(candidates, seeds, features, request.include_recently_played)
        ordered = [t for t, _ in ranked]

        # Step 8: diversity
        checkpoint("diversity")
        ordered = apply_diversity(ordered, request.diversity)

        # Step 9: duration budget or cap
        checkpoint("duration budget")
        if request.target_minutes:
            selected = limit_by_duration(ordered, request.target_minutes)
            if not selected:
                return self._empty(
                    request, seeds,
                    f"No track fits within {_format_minutes(request.target_minutes)} minutes",
                )
        else:
            selected = ordered[: self.config.max_tracks]

        logger.info(
            "Smart mix: %d tracks from %d candidates (%d seeds)",
            len(selected), len(candidates), len(seeds),
        )
        return MixResult(
            tracks=selected,
            description=description,
            color=color,
            seed_ids=[s.id for s in seeds],
        )

    def _empty(self, request: MixRequest, seeds: list[Track], reason: str) -> MixResult:
        logger.info("Smart mix is empty: %s", reason)
        return MixResult(
            description=describe_mix(request),
            color=mix_color(request.mood),
            seed_ids=[s.id for s in seeds],
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Playlists
    # ------------------------------------------------------------------

    def create_smart_playlist(
        self,
        name: str,
        request: MixRequest | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SavedPlaylist:
        """Generate a mix and save it as a smart playlist.

        The playlist is persisted through ``playlist_store`` when one was
        given; it is returned either way.
        """
        if request is None:
            request = MixRequest()
        result = self.generate_smart_mix(request, cancel_event)
        playlist = SavedPlaylist(
            name=name,
            description=result.description,
            track_ids=[t.id for t in result.tracks],
            color=result.color,
            is_smart=True,
            options=request,
        )
        if self.playlist_store is not None:
            self.playlist_store.save_playlist(playlist)
        logger.info("Created smart playlist %s with %d tracks", playlist.id, len(playlist.track_ids))
        return playlist
