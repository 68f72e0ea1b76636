"""Pydantic v2 data models shared by the audio chain and the mix generator."""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, field_validator

# ---------------------------------------------------------------------------
# Equalizer constants
# ---------------------------------------------------------------------------

EQ_FREQUENCIES: list[float] = [
    32.0, 64.0, 125.0, 250.0, 500.0, 1000.0, 2000.0, 4000.0, 8000.0, 16000.0,
]
EQ_BAND_COUNT = len(EQ_FREQUENCIES)
EQ_MIN_GAIN_DB = -12.0
EQ_MAX_GAIN_DB = 12.0

TEMPO_MIN_BPM = 40.0
TEMPO_MAX_BPM = 220.0


# ---------------------------------------------------------------------------
# Library entities
# ---------------------------------------------------------------------------

class Track(BaseModel):
    """A library track as handed over by the library collaborator."""

    id: str
    title: str
    artist: str
    album: str = ""
    genre: str | None = None
    duration: float = Field(ge=0.0, description="Length in seconds")
    play_count: int = Field(0, ge=0)
    last_played: datetime | None = None
    date_added: datetime = Field(default_factory=datetime.now)
    file_path: str | None = None

    model_config = {"frozen": True}


class AudioFeatureVector(BaseModel):
    """Derived sonic-character summary of a track."""

    energy: float = Field(ge=0.0, le=1.0, description="Perceived intensity")
    valence: float = Field(ge=0.0, le=1.0, description="Musical positiveness")
    tempo: float = Field(ge=TEMPO_MIN_BPM, le=TEMPO_MAX_BPM, description="BPM")
    danceability: float = Field(ge=0.0, le=1.0, description="Suitability for dancing")
    acousticness: float = Field(ge=0.0, le=1.0, description="Confidence track is acoustic")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Audio settings (persisted by the settings collaborator)
# ---------------------------------------------------------------------------

class EqualizerSettings(BaseModel):
    """Ordered 10-band gains keyed by EQ_FREQUENCIES."""

    gains: list[float] = Field(default_factory=lambda: [0.0] * EQ_BAND_COUNT)
    preset: str | None = "flat"
    enabled: bool = True

    @field_validator("gains")
    @classmethod
    def _check_band_count(cls, value: list[float]) -> list[float]:
        if len(value) != EQ_BAND_COUNT:
            raise ValueError(f"expected {EQ_BAND_COUNT} band gains, got {len(value)}")
        return value


class EqualizerPreset(BaseModel):
    """A named gain table, built in or user defined."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    name: str
    bands: list[float]
    is_custom: bool = True
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("bands")
    @classmethod
    def _check_band_count(cls, value: list[float]) -> list[float]:
        if len(value) != EQ_BAND_COUNT:
            raise ValueError(f"expected {EQ_BAND_COUNT} band gains, got {len(value)}")
        return value


class CompressorSettings(BaseModel):
    """Dynamics compressor parameters (Web Audio ranges)."""

    threshold: float = Field(-24.0, ge=-100.0, le=0.0, description="dB")
    knee: float = Field(30.0, ge=0.0, le=40.0, description="dB")
    ratio: float = Field(12.0, ge=1.0, le=20.0)
    attack: float = Field(0.003, ge=0.0, le=1.0, description="seconds")
    release: float = Field(0.25, ge=0.0, le=1.0, description="seconds")


class SpatialSettings(BaseModel):
    enabled: bool = False
    rolloff_factor: float = Field(1.0, ge=0.0)


class ReverbSettings(BaseModel):
    enabled: bool = False
    room_size: float = Field(0.5, ge=0.0, le=1.0)
    damping: float = Field(0.5, ge=0.0, le=1.0)
    wet_level: float = Field(0.3, ge=0.0, le=1.0)


class EffectSettings(BaseModel):
    """Structured effect record: compressor, spatial panner and reverb."""

    compressor: CompressorSettings = Field(default_factory=CompressorSettings)
    spatial: SpatialSettings = Field(default_factory=SpatialSettings)
    reverb: ReverbSettings = Field(default_factory=ReverbSettings)


class PlaybackSettings(BaseModel):
    speed: float = Field(1.0, ge=0.5, le=2.0)
    pitch_shift: float = Field(0.0, ge=-12.0, le=12.0, description="semitones")
    pitch_locked: bool = True


# ---------------------------------------------------------------------------
# Smart mix
# ---------------------------------------------------------------------------

class Mood(str, Enum):
    ENERGETIC = "energetic"
    CHILL = "chill"
    FOCUS = "focus"
    WORKOUT = "workout"
    SLEEP = "sleep"


class DiversityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MixRequest(BaseModel):
    """What the user asked the mix generator for."""

    seed_tracks: list[Track] | None = None
    seed_track_ids: list[str] = Field(default_factory=list)
    mood: Mood | None = None
    genre: str | None = None
    target_minutes: float | None = Field(None, gt=0.0)
    diversity: DiversityLevel = DiversityLevel.MEDIUM
    include_recently_played: bool = False
    exclude_skipped: bool = False


class MixResult(BaseModel):
    """Ordered output of the mix generator."""

    tracks: list[Track] = Field(default_factory=list)
    description: str = ""
    color: str = ""
    seed_ids: list[str] = Field(default_factory=list)
    reason: str | None = Field(None, description="Why the mix is empty, if it is")

    @computed_field
    @property
    def total_duration(self) -> float:
        return sum(t.duration for t in self.tracks)

    @property
    def is_empty(self) -> bool:
        return not self.tracks


class SavedPlaylist(BaseModel):
    """A mix saved as a named playlist."""

    id: str = Field(default_factory=lambda: f"playlist_{uuid4().hex[:12]}")
    name: str
    description: str = ""
    track_ids: list[str] = Field(default_factory=list)
    color: str = ""
    is_smart: bool = False
    options: MixRequest | None = None
    created_at: datetime = Field(default_factory=datetime.now)
