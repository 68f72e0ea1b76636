"""Decoded audio handed over by the playback transport.

Files are decoded with soundfile into float32 frames; resampling to the
context rate happens inside the source node, not here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class AudioBuffer:
    """Decoded PCM: ``data`` is float32 shaped ``(frames, channels)``."""

    data: np.ndarray
    sample_rate: int
    id: str = field(default_factory=lambda: uuid4().hex)

    def __post_init__(self) -> None:
        data = np.asarray(self.data, dtype=np.float32)
        if data.ndim == 1:
            data = data[:, None]
        if data.ndim != 2:
            raise ValueError(f"audio data must be 1-D or 2-D, got shape {data.shape}")
        self.data = data

    @property
    def frames(self) -> int:
        return self.data.shape[0]

    @property
    def channels(self) -> int:
        return self.data.shape[1]

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate


def load_audio_file(file_path: str | Path) -> AudioBuffer:
    """Decode an audio file into an AudioBuffer."""
    import soundfile as sf

    data, sr = sf.read(str(file_path), dtype="float32", always_2d=True)
    logger.info("Decoded %s: %d frames @ %d Hz", Path(file_path).name, data.shape[0], sr)
    return AudioBuffer(data=data, sample_rate=int(sr), id=str(Path(file_path).resolve()))


def write_audio_file(file_path: str | Path, audio: np.ndarray, sample_rate: int) -> Path:
    """Write float audio to disk, clipped to [-1, 1]."""
    import soundfile as sf

    output_path = Path(file_path)
    sf.write(str(output_path), np.clip(audio, -1.0, 1.0), sample_rate)
    return output_path


def sine_buffer(
    frequency: float,
    duration: float,
    sample_rate: int = 44100,
    channels: int = 2,
    amplitude: float = 0.5,
) -> AudioBuffer:
    """A steady sine tone; handy for calibration and tests."""
    t = np.arange(int(duration * sample_rate)) / sample_rate
    tone = (amplitude * np.sin(2.0 * np.pi * frequency * t)).astype(np.float32)
    return AudioBuffer(data=np.repeat(tone[:, None], channels, axis=1), sample_rate=sample_rate)
