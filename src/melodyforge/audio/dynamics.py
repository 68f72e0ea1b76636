"""Compressor, spatial panner and reverb stages of the effects chain."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping

import numpy as np
from scipy.signal import lfilter

from melodyforge.audio.params import clamp
from melodyforge.db.models import (
    CompressorSettings,
    EffectSettings,
    ReverbSettings,
    SpatialSettings,
)

if TYPE_CHECKING:
    from melodyforge.audio.nodes import ConvolverNode, DynamicsCompressorNode, PannerNode

logger = logging.getLogger(__name__)

# (min, max) for each compressor field
COMPRESSOR_RANGES: dict[str, tuple[float, float]] = {
    "threshold": (-100.0, 0.0),
    "knee": (0.0, 40.0),
    "ratio": (1.0, 20.0),
    "attack": (0.0, 1.0),
    "release": (0.0, 1.0),
}

REVERB_SEED = 1337


def clamp_compressor(values: Mapping[str, Any]) -> CompressorSettings:
    """Build CompressorSettings with every field forced into range."""
    defaults = CompressorSettings()
    clamped = {}
    for name, (lo, hi) in COMPRESSOR_RANGES.items():
        raw = values.get(name)
        value = getattr(defaults, name) if raw is None else float(raw)
        clamped[name] = clamp(value, lo, hi)
    return CompressorSettings(**clamped)


def generate_impulse_response(
    sample_rate: int,
    room_size: float,
    damping: float,
    channels: int = 2,
    seed: int = REVERB_SEED,
) -> np.ndarray:
    """Synthetic room impulse: decaying noise, darkened by ``damping``.

    Tail length grows from 0.3 s to 3 s with ``room_size`` and the envelope
    reaches -60 dB at the end of the tail. Output is ``(frames, channels)``.
    """
    length = 0.3 + 2.7 * clamp(room_size, 0.0, 1.0)
    frames = max(1, int(length * sample_rate))
    rng = np.random.default_rng(seed)
    noise = rng.uniform(-1.0, 1.0, size=(frames, channels))
    t = np.arange(frames) / sample_rate
    envelope = np.exp(-6.9 * t / length)[:, None]
    impulse = noise * envelope

    # One-pole low-pass: heavier damping removes more high end
    pole = 0.9 * clamp(damping, 0.0, 1.0)
    if pole > 0.0:
        impulse = lfilter([1.0 - pole], [1.0, -pole], impulse, axis=0)

    # Unit energy per channel keeps the wet path near the dry level
    energy = np.sqrt(np.sum(impulse ** 2, axis=0, keepdims=True))
    impulse = impulse / np.maximum(energy, 1e-9)
    return impulse.astype(np.float32)


class DynamicsModule:
    """Effect settings plus, once attached, the nodes they drive."""

    def __init__(self, on_change: Callable[[str, object], None] | None = None) -> None:
        self.on_change = on_change
        self._compressor = CompressorSettings()
        self._spatial = SpatialSettings()
        self._reverb = ReverbSettings()
        self._compressor_node: DynamicsCompressorNode | None = None
        self._convolver_node: ConvolverNode | None = None
        self._panner_node: PannerNode | None = None

    # ------------------------------------------------------------------
    # Graph binding
    # ------------------------------------------------------------------

    def attach(
        self,
        compressor: DynamicsCompressorNode,
        convolver: ConvolverNode,
        panner: PannerNode,
    ) -> None:
        self._compressor_node = compressor
        self._convolver_node = convolver
        self._panner_node = panner
        self._apply_compressor()
        self._apply_spatial()
        self._apply_reverb()

    def detach(self) -> None:
        self._compressor_node = None
        self._convolver_node = None
        self._panner_node = None

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change("effects", self.settings())

    # ------------------------------------------------------------------
    # Compressor
    # ------------------------------------------------------------------

    def configure_compressor(
        self, settings: CompressorSettings | Mapping[str, Any] | None = None, **kwargs: Any
    ) -> CompressorSettings:
        """Update compressor parameters; out-of-range values are clamped.

        Accepts a CompressorSettings, a mapping of field names, or keyword
        arguments. Fields not given keep their current value.
        """
        values = self._compressor.model_dump()
        if isinstance(settings, CompressorSettings):
            values.update(settings.model_dump())
        elif settings is not None:
            values.update({k: v for k, v in settings.items() if k in COMPRESSOR_RANGES})
        values.update({k: v for k, v in kwargs.items() if k in COMPRESSOR_RANGES})
        self._compressor = clamp_compressor(values)
        self._apply_compressor()
        self._notify()
        return self._compressor

    def _apply_compressor(self) -> None:
        node = self._compressor_node
        if node is None:
            return
        now = node.context.current_time
        for name in COMPRESSOR_RANGES:
            param = getattr(node, name)
            param.cancel_and_hold_at_time(now)
            param.set_value_at_time(getattr(self._compressor, name), now)

    # ------------------------------------------------------------------
    # Spatial
    # ------------------------------------------------------------------

    def configure_spatial(self, enabled: bool, rolloff_factor: float | None = None) -> SpatialSettings:
        """Toggle the panner stage; a disabled panner is bypassed."""
        rolloff = self._spatial.rolloff_factor if rolloff_factor is None else rolloff_factor
        self._spatial = SpatialSettings(enabled=bool(enabled), rolloff_factor=max(0.0, float(rolloff)))
        self._apply_spatial()
        self._notify()
        return self._spatial

    def _apply_spatial(self) -> None:
        node = self._panner_node
        if node is None:
            return
        node.rolloff_factor = self._spatial.rolloff_factor
        node.bypass = not self._spatial.enabled

    # ------------------------------------------------------------------
    # Reverb
    # ------------------------------------------------------------------

    def configure_reverb(
        self,
        enabled: bool,
        room_size: float | None = None,
        damping: float | None = None,
        wet_level: float | None = None,
    ) -> ReverbSettings:
        """Toggle the convolution reverb and regenerate its impulse response."""
        current = self._reverb
        self._reverb = ReverbSettings(
            enabled=bool(enabled),
            room_size=clamp(current.room_size if room_size is None else room_size, 0.0, 1.0),
            damping=clamp(current.damping if damping is None else damping, 0.0, 1.0),
            wet_level=clamp(current.wet_level if wet_level is None else wet_level, 0.0, 1.0),
        )
        self._apply_reverb()
        self._notify()
        return self._reverb

    def _apply_reverb(self) -> None:
        node = self._convolver_node
        if node is None:
            return
        reverb = self._reverb
        if not reverb.enabled:
            node.bypass = True
            node.set_impulse_response(None)
            return
        impulse = generate_impulse_response(
            node.context.sample_rate,
            reverb.room_size,
            reverb.damping,
            channels=node.context.channels,
        )
        node.set_impulse_response(impulse, wet=reverb.wet_level)
        node.reset()
        node.bypass = False
        logger.debug(
            "Reverb impulse regenerated (room %.2f, damping %.2f, %d frames)",
            reverb.room_size, reverb.damping, impulse.shape[0],
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def settings(self) -> EffectSettings:
        return EffectSettings(
            compressor=self._compressor.model_copy(),
            spatial=self._spatial.model_copy(),
            reverb=self._reverb.model_copy(),
        )

    def restore(self, settings: EffectSettings) -> None:
        self.configure_compressor(settings.compressor)
        self.configure_spatial(settings.spatial.enabled, settings.spatial.rolloff_factor)
        self.configure_reverb(
            settings.reverb.enabled,
            settings.reverb.room_size,
            settings.reverb.damping,
            settings.reverb.wet_level,
        )
