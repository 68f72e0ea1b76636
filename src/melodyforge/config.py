"""Runtime configuration for the audio engine and the mix generator.

Both models have working defaults; PreferencesManager persists them as JSON.
"""

from pydantic import BaseModel, Field


class AudioConfig(BaseModel):
    """Engine-level audio settings."""

    sample_rate: int = Field(44100, ge=8000, le=192000)
    channels: int = Field(2, ge=1, le=2)
    fft_size: int = Field(2048, ge=32, le=32768)
    smoothing_time_constant: float = Field(0.8, ge=0.0, le=1.0)
    min_decibels: float = -100.0
    max_decibels: float = -30.0
    eq_q: float = Field(1.0, gt=0.0)
    eq_ramp_seconds: float = Field(0.03, ge=0.0, le=0.5)
    default_fade_seconds: float = Field(0.1, ge=0.0)
    latency: str = "low"


class MixConfig(BaseModel):
    """Mix generator knobs."""

    seed_count: int = Field(5, ge=1)
    random_seed_count: int = Field(3, ge=1)
    max_tracks: int = Field(50, ge=1)
