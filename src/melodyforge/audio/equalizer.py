"""10-band graphic equalizer.

Band 0 is a low shelf, band 9 a high shelf and bands 1-8 are peaking
filters centred on EQ_FREQUENCIES. Gains are clamped to +/-12 dB and reach
their new value through a short linear ramp so changes do not click.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Sequence

from melodyforge.audio.nodes import BiquadFilterNode
from melodyforge.audio.params import clamp
from melodyforge.db.models import (
    EQ_BAND_COUNT,
    EQ_FREQUENCIES,
    EQ_MAX_GAIN_DB,
    EQ_MIN_GAIN_DB,
    EqualizerPreset,
    EqualizerSettings,
)

if TYPE_CHECKING:
    from melodyforge.audio.context import AudioContext

logger = logging.getLogger(__name__)

EQ_RAMP_SECONDS = 0.03

BAND_TYPES: list[str] = ["lowshelf"] + ["peaking"] * (EQ_BAND_COUNT - 2) + ["highshelf"]

PRESETS: dict[str, list[float]] = {
    "flat": [0, 0, 0, 0, 0, 0, 0, 0, 0, 0],
    "rock": [5, 4, 3, 1, -1, -1, 0, 2, 4, 5],
    "pop": [-1, 2, 4, 4, 2, 0, -1, -1, 2, 3],
    "jazz": [3, 2, 1, 2, -1, -1, 0, 2, 3, 4],
    "classical": [4, 3, 2, 1, -1, -1, 0, 2, 3, 4],
    "electronic": [4, 3, 1, 0, -1, 2, 1, 1, 3, 4],
    "hiphop": [5, 4, 1, 3, -1, -1, 1, 2, 3, 4],
    "vocal": [-2, -1, 0, 1, 3, 4, 3, 1, 0, -1],
    "bassBoost": [6, 4, 2, 0, 0, 0, 0, 0, 0, 0],
    "trebleBoost": [0, 0, 0, 0, 0, 0, 0, 2, 4, 6],
}


def clamp_gain(gain_db: float) -> float:
    return clamp(float(gain_db), EQ_MIN_GAIN_DB, EQ_MAX_GAIN_DB)


class EqualizerModule:
    """Owns the band gains and, once attached, the ten filter nodes."""

    def __init__(
        self,
        ramp_seconds: float = EQ_RAMP_SECONDS,
        q: float = 1.0,
        on_change: Callable[[str, object], None] | None = None,
    ) -> None:
        self.ramp_seconds = ramp_seconds
        self.q = q
        self.on_change = on_change
        self._gains: list[float] = [0.0] * EQ_BAND_COUNT
        self._preset: str | None = "flat"
        self._enabled = True
        self._filters: tuple[BiquadFilterNode, ...] = ()

    def __repr__(self) -> str:
        return f"EqualizerModule(preset={self._preset!r}, gains={self._gains})"

    # ------------------------------------------------------------------
    # Graph binding
    # ------------------------------------------------------------------

    def build_filters(self, context: AudioContext) -> list[BiquadFilterNode]:
        """Create the ten band filters (unconnected) for ``context``."""
        return [
            BiquadFilterNode(context, filter_type=kind, frequency=freq, q=self.q)
            for kind, freq in zip(BAND_TYPES, EQ_FREQUENCIES)
        ]

    def attach(self, filters: Sequence[BiquadFilterNode]) -> None:
        """Bind to live filters and push the current gains without ramping."""
        if len(filters) != EQ_BAND_COUNT:
            raise ValueError(f"expected {EQ_BAND_COUNT} filters, got {len(filters)}")
        self._filters = tuple(filters)
        for node, gain in zip(self._filters, self._gains):
            node.gain.cancel_and_hold_at_time(node.context.current_time)
            node.gain.set_value_at_time(gain, node.context.current_time)
            node.bypass = not self._enabled

    def detach(self) -> None:
        self._filters = ()

    @property
    def filters(self) -> tuple[BiquadFilterNode, ...]:
        return self._filters

    def _ramp(self, index: int, gain: float) -> None:
        if not self._filters:
            return
        param = self._filters[index].gain
        now = param.context.current_time
        param.cancel_and_hold_at_time(now)
        param.linear_ramp_to_value_at_time(gain, now + self.ramp_seconds)

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change("equalizer", self.settings())

    # ------------------------------------------------------------------
    # Gain control
    # ------------------------------------------------------------------

    def set_band_gain(self, index: int, gain_db: float) -> float:
        """Set one band; returns the clamped gain actually applied."""
        if not 0 <= index < EQ_BAND_COUNT:
            raise IndexError(f"band index {index} out of range 0..{EQ_BAND_COUNT - 1}")
        gain = clamp_gain(gain_db)
        gains = list(self._gains)
        gains[index] = gain
        self._gains = gains
        self._preset = None
        self._ramp(index, gain)
        self._notify()
        return gain

    def set_gains(self, gains: Sequence[float], preset: str | None = None) -> list[float]:
        """Replace all ten gains at once (clamped)."""
        if len(gains) != EQ_BAND_COUNT:
            raise ValueError(f"expected {EQ_BAND_COUNT} gains, got {len(gains)}")
        new_gains = [clamp_gain(g) for g in gains]
        self._gains = new_gains
        self._preset = preset
        for index, gain in enumerate(new_gains):
            self._ramp(index, gain)
        self._notify()
        return list(new_gains)

    def apply_preset(self, name: str) -> list[float]:
        """Apply a built-in preset by name.

        Raises:
            KeyError: ``name`` is not a built-in preset.
        """
        if name not in PRESETS:
            raise KeyError(f"unknown equalizer preset: {name!r}")
        logger.debug("Applying equalizer preset %s", name)
        return self.set_gains(PRESETS[name], preset=name)

    def apply_custom_preset(self, preset: EqualizerPreset) -> list[float]:
        return self.set_gains(preset.bands, preset=preset.name)

    def reset(self) -> list[float]:
        return self.apply_preset("flat")

    def get_band_gains(self) -> list[float]:
        return list(self._gains)

    @property
    def preset(self) -> str | None:
        """Name of the active preset; None once a band was edited by hand."""
        return self._preset

    # ------------------------------------------------------------------
    # Enable / persistence
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = bool(enabled)
        for node in self._filters:
            node.bypass = not self._enabled
        self._notify()

    def settings(self) -> EqualizerSettings:
        return EqualizerSettings(
            gains=list(self._gains), preset=self._preset, enabled=self._enabled
        )

    def restore(self, settings: EqualizerSettings) -> None:
        self._enabled = settings.enabled
        self.set_gains(settings.gains, preset=settings.preset)
        for node in self._filters:
            node.bypass = not self._enabled
