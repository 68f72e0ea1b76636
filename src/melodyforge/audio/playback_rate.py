"""Playback speed and pitch.

Speed and pitch are realised through the source's playback rate, which
resamples: pitch therefore always moves with speed. When the pitch is
"locked" the semitone shift is ignored and the rate equals the speed; when
unlocked the shift multiplies the rate by ``2 ** (semitones / 12)``. This is
a resampling approximation, not a time-stretching pitch shifter.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from melodyforge.audio.params import clamp
from melodyforge.db.models import PlaybackSettings

if TYPE_CHECKING:
    from melodyforge.audio.params import AudioParam

logger = logging.getLogger(__name__)

MIN_SPEED = 0.5
MAX_SPEED = 2.0
MAX_PITCH_SEMITONES = 12.0


class PlaybackRateController:
    def __init__(self, on_change: Callable[[str, object], None] | None = None) -> None:
        self.on_change = on_change
        self._speed = 1.0
        self._pitch_shift = 0.0
        self._pitch_locked = True
        self._param: AudioParam | None = None

    def __repr__(self) -> str:
        return (
            f"PlaybackRateController(speed={self._speed}, pitch={self._pitch_shift}, "
            f"locked={self._pitch_locked})"
        )

    @property
    def speed(self) -> float:
        return self._speed

    @property
    def pitch_shift(self) -> float:
        return self._pitch_shift

    @property
    def pitch_locked(self) -> bool:
        return self._pitch_locked

    def attach(self, param: AudioParam) -> None:
        """Bind to a source's playback-rate parameter."""
        self._param = param
        self._apply()

    def detach(self) -> None:
        self._param = None

    def set_speed(self, rate: float) -> float:
        self._speed = clamp(float(rate), MIN_SPEED, MAX_SPEED)
        self._apply()
        return self._speed

    def set_pitch_shift(self, semitones: float) -> float:
        self._pitch_shift = clamp(float(semitones), -MAX_PITCH_SEMITONES, MAX_PITCH_SEMITONES)
        self._apply()
        return self._pitch_shift

    def set_pitch_locked(self, locked: bool) -> None:
        self._pitch_locked = bool(locked)
        self._apply()

    def get_effective_rate(self) -> float:
        if self._pitch_locked:
            return self._speed
        return self._speed * 2.0 ** (self._pitch_shift / 12.0)

    def _apply(self) -> None:
        rate = self.get_effective_rate()
        param = self._param
        if param is not None:
            now = param.context.current_time
            param.cancel_and_hold_at_time(now)
            param.set_value_at_time(rate, now)
        if self.on_change is not None:
            self.on_change("playback_rate", rate)

    def settings(self) -> PlaybackSettings:
        return PlaybackSettings(
            speed=self._speed, pitch_shift=self._pitch_shift, pitch_locked=self._pitch_locked
        )

    def restore(self, settings: PlaybackSettings) -> None:
        self._speed = clamp(settings.speed, MIN_SPEED, MAX_SPEED)
        self._pitch_shift = clamp(settings.pitch_shift, -MAX_PITCH_SEMITONES, MAX_PITCH_SEMITONES)
        self._pitch_locked = settings.pitch_locked
        self._apply()
