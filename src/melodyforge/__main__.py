"""Entry point for melodyforge.

Usage:
    python -m melodyforge mix library.json --mood chill --minutes 30
    python -m melodyforge presets
    python -m melodyforge render in.wav out.wav --preset rock --speed 1.25
"""

from __future__ import annotations

import argparse
import logging
import math
import random
import sys
from pathlib import Path

logger = logging.getLogger("melodyforge")


def setup_logging(log_path: Path | None, verbose: bool = False) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_path is not None:
        handlers.insert(0, logging.FileHandler(str(log_path), mode="w", encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


# ---------------------------------------------------------------------------
# mix
# ---------------------------------------------------------------------------

def run_mix(args: argparse.Namespace) -> int:
    """Generate a smart mix and print it; optionally save it as a playlist."""
    from melodyforge.config import MixConfig
    from melodyforge.db.database import Database
    from melodyforge.db.library import load_library_json
    from melodyforge.db.models import DiversityLevel, MixRequest, Mood
    from melodyforge.db.preferences import PreferencesManager
    from melodyforge.mix.engine import MixOrchestrator
    from melodyforge.mix.features import HeuristicFeatureExtractor

    db = Database(args.db) if args.db else None
    if args.library:
        library = load_library_json(args.library)
        if db is not None:
            db.insert_tracks(library.get_all_tracks())
    elif db is not None:
        library = db
    else:
        print("Error: give a library JSON file or --db", file=sys.stderr)
        return 1

    config = PreferencesManager(db).load_mix_config() if db is not None else MixConfig()
    rng = random.Random(args.random_seed) if args.random_seed is not None else None
    orchestrator = MixOrchestrator(
        library,
        extractor=HeuristicFeatureExtractor(rng),
        config=config,
        rng=rng,
        playlist_store=db,
    )
    request = MixRequest(
        seed_track_ids=args.seed or [],
        mood=Mood(args.mood) if args.mood else None,
        genre=args.genre,
        target_minutes=args.minutes,
        diversity=DiversityLevel(args.diversity),
        include_recently_played=args.include_recent,
        exclude_skipped=args.exclude_skipped,
    )

    if args.save:
        if db is None:
            print("Error: --save needs --db", file=sys.stderr)
            return 1
        playlist = orchestrator.create_smart_playlist(args.save, request)
        print(f"Saved playlist {playlist.name!r} ({playlist.id}), {len(playlist.track_ids)} tracks")
        return 0

    result = orchestrator.generate_smart_mix(request)
    print(f"{result.description}  [{result.color}]")
    if result.is_empty:
        print(f"No tracks: {result.reason}")
        return 0
    for position, track in enumerate(result.tracks, start=1):
        minutes, seconds = divmod(int(round(track.duration)), 60)
        genre = track.genre or "-"
        print(f"{position:3d}. {track.artist} - {track.title}  ({genre}, {minutes}:{seconds:02d})")
    print(f"Total: {result.total_duration / 60.0:.1f} minutes")
    return 0


# ---------------------------------------------------------------------------
# presets
# ---------------------------------------------------------------------------

def run_presets(args: argparse.Namespace) -> int:
    from melodyforge.audio.equalizer import PRESETS
    from melodyforge.db.models import EQ_FREQUENCIES

    header = " ".join(f"{int(f) if f < 1000 else str(int(f // 1000)) + 'k':>5}" for f in EQ_FREQUENCIES)
    print(f"{'preset':<14}{header}")
    for name, gains in PRESETS.items():
        print(f"{name:<14}" + " ".join(f"{g:>5g}" for g in gains))

    if args.db:
        from melodyforge.db.database import Database
        from melodyforge.db.preferences import PreferencesManager

        for preset in PreferencesManager(Database(args.db)).load_custom_presets():
            print(f"{preset.name:<14}" + " ".join(f"{g:>5g}" for g in preset.bands) + "  (custom)")
    return 0


# ---------------------------------------------------------------------------
# render
# ---------------------------------------------------------------------------

def _parse_band(value: str) -> tuple[int, float]:
    index, _, gain = value.partition(":")
    try:
        return int(index), float(gain)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected INDEX:DB, got {value!r}") from None


def run_render(args: argparse.Namespace) -> int:
    """Render an audio file offline through the full effects chain."""
    from melodyforge.audio.context import OfflineAudioContext
    from melodyforge.audio.graph import AudioGraphManager
    from melodyforge.audio.source import load_audio_file, write_audio_file
    from melodyforge.config import AudioConfig

    buffer = load_audio_file(args.input)
    config = AudioConfig(sample_rate=buffer.sample_rate, channels=min(2, buffer.channels))
    if args.db:
        from melodyforge.db.database import Database
        from melodyforge.db.preferences import PreferencesManager

        prefs = PreferencesManager(Database(args.db))
        config = prefs.load_audio_config().model_copy(
            update={"sample_rate": buffer.sample_rate, "channels": min(2, buffer.channels)}
        )
    manager = AudioGraphManager(
        context_factory=lambda cfg: OfflineAudioContext(cfg.sample_rate, cfg.channels),
        config=config,
    )
    if args.db:
        manager.equalizer.restore(prefs.load_equalizer_settings())
        manager.dynamics.restore(prefs.load_effect_settings())
        manager.rate.restore(prefs.load_playback_settings())

    if args.preset:
        try:
            manager.equalizer.apply_preset(args.preset)
        except KeyError as exc:
            print(f"Error: {exc.args[0]}", file=sys.stderr)
            return 1
    for index, gain in args.band or []:
        try:
            manager.equalizer.set_band_gain(index, gain)
        except IndexError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
    if args.speed is not None:
        manager.rate.set_speed(args.speed)
    if args.pitch is not None:
        manager.rate.set_pitch_shift(args.pitch)
        manager.rate.set_pitch_locked(False)
    if args.reverb is not None:
        manager.dynamics.configure_reverb(True, room_size=args.reverb)
    if args.spatial:
        manager.dynamics.configure_spatial(True)

    manager.initialize(buffer)
    manager.set_master_volume(args.volume, fade_seconds=0.0)

    # One extra second carries the reverb tail
    tail = 1.0 if manager.dynamics.settings().reverb.enabled else 0.0
    seconds = buffer.duration / manager.rate.get_effective_rate() + tail
    audio = manager.render(int(math.ceil(seconds * config.sample_rate)))
    manager.teardown()

    output = write_audio_file(args.output, audio, config.sample_rate)
    logger.info("Rendered %.1f s to %s", seconds, output)
    print(f"Wrote {output}")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="melodyforge",
        description="MelodyForge - audio effects chain and smart mix generator",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Also log to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    mix = sub.add_parser("mix", help="Generate a smart mix")
    mix.add_argument("library", nargs="?", help="Library JSON export")
    mix.add_argument("--db", help="SQLite database (library, playlists, settings)")
    mix.add_argument("--mood", choices=["energetic", "chill", "focus", "workout", "sleep"])
    mix.add_argument("--genre")
    mix.add_argument("--minutes", type=float, help="Target mix length")
    mix.add_argument("--diversity", choices=["low", "medium", "high"], default="medium")
    mix.add_argument("--seed", action="append", metavar="TRACK_ID", help="Seed track id (repeatable)")
    mix.add_argument("--include-recent", action="store_true", help="Favour often-played tracks")
    mix.add_argument("--exclude-skipped", action="store_true", help="Drop never-played tracks")
    mix.add_argument("--save", metavar="NAME", help="Save as a smart playlist (needs --db)")
    mix.add_argument("--random-seed", type=int, help="Seed feature jitter and seed picks")
    mix.set_defaults(func=run_mix)

    presets = sub.add_parser("presets", help="List equalizer presets")
    presets.add_argument("--db", help="Also list custom presets stored here")
    presets.set_defaults(func=run_presets)

    render = sub.add_parser("render", help="Render a file through the effects chain")
    render.add_argument("input", type=Path)
    render.add_argument("output", type=Path)
    render.add_argument("--db", help="Start from the settings stored here")
    render.add_argument("--preset", help="Equalizer preset name")
    render.add_argument("--band", type=_parse_band, action="append", metavar="INDEX:DB")
    render.add_argument("--speed", type=float)
    render.add_argument("--pitch", type=float, help="Semitones (unlocks pitch)")
    render.add_argument("--reverb", type=float, metavar="ROOM_SIZE")
    render.add_argument("--spatial", action="store_true")
    render.add_argument("--volume", type=float, default=1.0)
    render.set_defaults(func=run_render)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_file, args.verbose)
    logger.debug("Running %s", args.command)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
