"""Audio graph nodes.

Every node consumes and produces float32 blocks shaped ``(frames, channels)``
with the context's channel count. Rendering is pull based: the destination
pulls its inputs, which pull theirs, one render quantum at a time.

Nodes follow the Web Audio node set the player was designed around:
buffer source, gain, biquad filter, dynamics compressor, convolver, panner
and analyser.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Callable

import numpy as np
from scipy.signal import sosfilt, sosfreqz

from melodyforge.audio.context import RENDER_QUANTUM
from melodyforge.audio.params import AudioParam, clamp

if TYPE_CHECKING:
    from melodyforge.audio.context import AudioContext
    from melodyforge.audio.source import AudioBuffer

logger = logging.getLogger(__name__)


def match_channels(block: np.ndarray, channels: int) -> np.ndarray:
    """Up- or down-mix ``block`` to ``channels`` columns."""
    have = block.shape[1]
    if have == channels:
        return block
    if have == 1:
        return np.repeat(block, channels, axis=1)
    mono = block.mean(axis=1, keepdims=True, dtype=np.float32)
    if channels == 1:
        return mono
    return np.repeat(mono, channels, axis=1)


# ---------------------------------------------------------------------------
# Base classes
# ---------------------------------------------------------------------------

class AudioNode:
    """A processing stage; ``bypass`` passes input through untouched."""

    def __init__(self, context: AudioContext) -> None:
        self.context = context
        self.bypass = False
        self._inputs: tuple[AudioNode, ...] = ()
        self._outputs: tuple[AudioNode, ...] = ()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(bypass={self.bypass})"

    @property
    def inputs(self) -> tuple[AudioNode, ...]:
        return self._inputs

    @property
    def outputs(self) -> tuple[AudioNode, ...]:
        return self._outputs

    def connect(self, node: AudioNode) -> AudioNode:
        """Route this node's output into ``node``; returns ``node`` for chaining."""
        if node.context is not self.context:
            raise ValueError("cannot connect nodes from different contexts")
        if node not in self._outputs:
            self._outputs = self._outputs + (node,)
            node._inputs = node._inputs + (self,)
        return node

    def disconnect(self) -> None:
        for node in self._outputs:
            node._inputs = tuple(n for n in node._inputs if n is not self)
        self._outputs = ()

    def pull(self, frames: int) -> np.ndarray:
        block = self._mix_inputs(frames)
        if self.bypass:
            return block
        return self.process(block, self.context.current_time)

    def _mix_inputs(self, frames: int) -> np.ndarray:
        inputs = self._inputs
        if not inputs:
            return np.zeros((frames, self.context.channels), dtype=np.float32)
        block = inputs[0].pull(frames)
        for node in inputs[1:]:
            block = block + node.pull(frames)
        return block

    def process(self, block: np.ndarray, t0: float) -> np.ndarray:
        return block

    def reset(self) -> None:
        """Clear any internal signal state (filter memory, envelopes)."""


class AudioDestinationNode(AudioNode):
    """Terminal node; output is hard clipped to [-1, 1]."""

    def process(self, block: np.ndarray, t0: float) -> np.ndarray:
        return np.clip(block, -1.0, 1.0).astype(np.float32, copy=False)


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------

class AudioBufferSourceNode(AudioNode):
    """Plays a decoded AudioBuffer, resampling by ``playback_rate``.

    Speed and pitch move together: a rate of 2.0 plays twice as fast and an
    octave higher (classic varispeed resampling).
    """

    def __init__(self, context: AudioContext, buffer: AudioBuffer | None = None) -> None:
        super().__init__(context)
        self.buffer = buffer
        self.loop = False
        self.playback_rate = AudioParam(context, 1.0, 0.0, 16.0, name="playbackRate")
        self.on_ended: Callable[[], None] | None = None
        self.ended = False
        self._position = 0.0
        self._playing = False
        self._start_time = 0.0
        self._stop_time: float | None = None

    @property
    def playing(self) -> bool:
        return self._playing

    @property
    def position(self) -> float:
        """Playback position inside the buffer, in seconds."""
        if self.buffer is None:
            return 0.0
        return self._position / self.buffer.sample_rate

    def start(self, when: float = 0.0, offset: float = 0.0) -> None:
        if self.buffer is None:
            raise RuntimeError("no buffer assigned to source")
        self._position = max(0.0, offset) * self.buffer.sample_rate
        self._start_time = max(when, self.context.current_time)
        self._stop_time = None
        self._playing = True
        self.ended = False

    def stop(self, when: float | None = None) -> None:
        self._stop_time = self.context.current_time if when is None else when

    def _finish(self) -> None:
        self._playing = False
        self.ended = True
        if self.on_ended is not None:
            self.on_ended()

    def process(self, block: np.ndarray, t0: float) -> np.ndarray:
        frames = block.shape[0]
        out = np.zeros((frames, self.context.channels), dtype=np.float32)
        buffer = self.buffer
        if not self._playing or buffer is None or t0 < self._start_time:
            return out
        if self._stop_time is not None and t0 >= self._stop_time:
            self._finish()
            return out

        data = buffer.data
        n = data.shape[0]
        if n == 0:
            self._finish()
            return out
        rate = self.playback_rate.k_rate_value(t0) * buffer.sample_rate / self.context.sample_rate
        positions = self._position + np.arange(frames) * rate
        if self.loop:
            positions = np.mod(positions, n)
            valid = np.ones(frames, dtype=bool)
        else:
            valid = positions < n
        idx = np.floor(positions[valid]).astype(np.int64)
        frac = (positions[valid] - idx).astype(np.float32)[:, None]
        nxt = np.minimum(idx + 1, n - 1) if not self.loop else (idx + 1) % n
        samples = data[idx] * (1.0 - frac) + data[nxt] * frac
        out[valid] = match_channels(samples, self.context.channels)

        self._position += frames * rate
        if self.loop:
            self._position = math.fmod(self._position, n)
        elif self._position >= n:
            self._finish()
        return out


# ---------------------------------------------------------------------------
# Gain
# ---------------------------------------------------------------------------

class GainNode(AudioNode):
    def __init__(self, context: AudioContext, gain: float = 1.0) -> None:
        super().__init__(context)
        self.gain = AudioParam(context, gain, 0.0, 10.0, name="gain")

    def process(self, block: np.ndarray, t0: float) -> np.ndarray:
        g = self.gain.a_rate_values(t0, block.shape[0], self.context.sample_rate)
        if isinstance(g, np.ndarray):
            return (block * g[:, None]).astype(np.float32, copy=False)
        if g == 1.0:
            return block
        return (block * np.float32(g)).astype(np.float32, copy=False)


# ---------------------------------------------------------------------------
# Biquad filter (RBJ audio EQ cookbook)
# ---------------------------------------------------------------------------

FILTER_TYPES = ("lowshelf", "peaking", "highshelf")


def biquad_sos(
    filter_type: str,
    frequency: float,
    q: float,
    gain_db: float,
    sample_rate: int,
) -> np.ndarray:
    """Normalised second-order section ``[b0, b1, b2, 1, a1, a2]``.

    Shelves use a fixed slope of 1 (Q is ignored), as Web Audio does.
    """
    nyquist = sample_rate / 2.0
    f0 = clamp(frequency, 10.0, nyquist * 0.999)
    A = 10.0 ** (gain_db / 40.0)
    w0 = 2.0 * math.pi * f0 / sample_rate
    cos_w0 = math.cos(w0)
    sin_w0 = math.sin(w0)

    if filter_type == "peaking":
        alpha = sin_w0 / (2.0 * max(q, 1e-4))
        b0 = 1.0 + alpha * A
        b1 = -2.0 * cos_w0
        b2 = 1.0 - alpha * A
        a0 = 1.0 + alpha / A
        a1 = -2.0 * cos_w0
        a2 = 1.0 - alpha / A
    elif filter_type in ("lowshelf", "highshelf"):
        alpha = sin_w0 / 2.0 * math.sqrt(2.0)
        two_sqrt_a_alpha = 2.0 * math.sqrt(A) * alpha
        if filter_type == "lowshelf":
            b0 = A * ((A + 1) - (A - 1) * cos_w0 + two_sqrt_a_alpha)
            b1 = 2 * A * ((A - 1) - (A + 1) * cos_w0)
            b2 = A * ((A + 1) - (A - 1) * cos_w0 - two_sqrt_a_alpha)
            a0 = (A + 1) + (A - 1) * cos_w0 + two_sqrt_a_alpha
            a1 = -2 * ((A - 1) + (A + 1) * cos_w0)
            a2 = (A + 1) + (A - 1) * cos_w0 - two_sqrt_a_alpha
        else:
            b0 = A * ((A + 1) + (A - 1) * cos_w0 + two_sqrt_a_alpha)
            b1 = -2 * A * ((A - 1) + (A + 1) * cos_w0)
            b2 = A * ((A + 1) + (A - 1) * cos_w0 - two_sqrt_a_alpha)
            a0 = (A + 1) - (A - 1) * cos_w0 + two_sqrt_a_alpha
            a1 = 2 * ((A - 1) - (A + 1) * cos_w0)
            a2 = (A + 1) - (A - 1) * cos_w0 - two_sqrt_a_alpha
    else:
        raise ValueError(f"unsupported filter type: {filter_type!r}")

    return np.array([[b0 / a0, b1 / a0, b2 / a0, 1.0, a1 / a0, a2 / a0]], dtype=np.float64)


class BiquadFilterNode(AudioNode):
    """Second-order shelf/peaking filter with k-rate parameters."""

    def __init__(
        self,
        context: AudioContext,
        filter_type: str = "peaking",
        frequency: float = 350.0,
        q: float = 1.0,
        gain: float = 0.0,
    ) -> None:
        super().__init__(context)
        if filter_type not in FILTER_TYPES:
            raise ValueError(f"unsupported filter type: {filter_type!r}")
        self.type = filter_type
        nyquist = context.sample_rate / 2.0
        self.frequency = AudioParam(context, frequency, 0.0, nyquist, name="frequency")
        self.Q = AudioParam(context, q, 1e-4, 1000.0, name="Q")
        self.gain = AudioParam(context, gain, -40.0, 40.0, name="gain")
        self._coeff_key: tuple | None = None
        self._sos = np.array([[1.0, 0.0, 0.0, 1.0, 0.0, 0.0]])
        self._zi = np.zeros((1, 2, context.channels))

    def __repr__(self) -> str:
        return f"BiquadFilterNode({self.type}, {self.frequency.value:g} Hz)"

    def reset(self) -> None:
        self._zi.fill(0.0)

    def _coefficients(self, t0: float) -> np.ndarray:
        key = (
            self.type,
            self.frequency.k_rate_value(t0),
            self.Q.k_rate_value(t0),
            self.gain.k_rate_value(t0),
        )
        if key != self._coeff_key:
            self._sos = biquad_sos(key[0], key[1], key[2], key[3], self.context.sample_rate)
            self._coeff_key = key
        return self._sos

    def process(self, block: np.ndarray, t0: float) -> np.ndarray:
        sos = self._coefficients(t0)
        y, self._zi = sosfilt(sos, block, axis=0, zi=self._zi)
        return y.astype(np.float32, copy=False)

    def get_frequency_response(self, frequencies: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Magnitude (linear) and phase (radians) at ``frequencies`` in Hz."""
        sos = self._coefficients(self.context.current_time)
        _, h = sosfreqz(sos, worN=np.asarray(frequencies, dtype=float), fs=self.context.sample_rate)
        return np.abs(h), np.angle(h)


# ---------------------------------------------------------------------------
# Dynamics compressor
# ---------------------------------------------------------------------------

def compressor_gain_db(
    level_db: np.ndarray,
    threshold: float,
    knee: float,
    ratio: float,
) -> np.ndarray:
    """Static soft-knee gain curve; returns gain change in dB (<= 0)."""
    over = level_db - threshold
    gain = np.zeros_like(level_db)
    slope = 1.0 / ratio - 1.0
    if knee > 0.0:
        in_knee = 2.0 * np.abs(over) <= knee
        gain[in_knee] = slope * (over[in_knee] + knee / 2.0) ** 2 / (2.0 * knee)
        above = 2.0 * over > knee
    else:
        above = over > 0.0
    gain[above] = slope * over[above]
    return gain


class DynamicsCompressorNode(AudioNode):
    """Peak-envelope compressor with soft knee."""

    def __init__(self, context: AudioContext) -> None:
        super().__init__(context)
        self.threshold = AudioParam(context, -24.0, -100.0, 0.0, name="threshold")
        self.knee = AudioParam(context, 30.0, 0.0, 40.0, name="knee")
        self.ratio = AudioParam(context, 12.0, 1.0, 20.0, name="ratio")
        self.attack = AudioParam(context, 0.003, 0.0, 1.0, name="attack")
        self.release = AudioParam(context, 0.25, 0.0, 1.0, name="release")
        self.reduction = 0.0
        self._env = 0.0

    def reset(self) -> None:
        self._env = 0.0
        self.reduction = 0.0

    def _coeff(self, seconds: float) -> float:
        if seconds <= 0.0:
            return 0.0
        return math.exp(-1.0 / (self.context.sample_rate * seconds))

    def process(self, block: np.ndarray, t0: float) -> np.ndarray:
        if block.size == 0:
            return block
        threshold = self.threshold.k_rate_value(t0)
        knee = self.knee.k_rate_value(t0)
        ratio = self.ratio.k_rate_value(t0)
        attack_coeff = self._coeff(self.attack.k_rate_value(t0))
        release_coeff = self._coeff(self.release.k_rate_value(t0))

        peaks = np.max(np.abs(block), axis=1)
        env = self._env
        envelope = np.empty(peaks.shape[0], dtype=np.float64)
        for i, peak in enumerate(peaks):
            coeff = attack_coeff if peak > env else release_coeff
            env = coeff * env + (1.0 - coeff) * float(peak)
            envelope[i] = env
        self._env = env

        level_db = 20.0 * np.log10(np.maximum(envelope, 1e-8))
        gain_db = compressor_gain_db(level_db, threshold, knee, ratio)
        self.reduction = float(gain_db[-1])
        gain = np.power(10.0, gain_db / 20.0).astype(np.float32)
        return block * gain[:, None]


# ---------------------------------------------------------------------------
# Convolver (uniformly partitioned FFT convolution)
# ---------------------------------------------------------------------------

class ConvolverNode(AudioNode):
    """Convolution reverb stage with a dry/wet mix.

    Without an impulse response the node passes audio through unchanged.
    The impulse response is split into partitions of one render quantum so
    each quantum costs one FFT pair regardless of reverb length.
    """

    def __init__(self, context: AudioContext, block_size: int = RENDER_QUANTUM) -> None:
        super().__init__(context)
        self.block_size = block_size
        self.wet = 1.0
        self._spectra: np.ndarray | None = None
        self._fdl: np.ndarray | None = None
        self._last_block: np.ndarray | None = None

    @property
    def has_impulse(self) -> bool:
        return self._spectra is not None

    def set_impulse_response(self, impulse: np.ndarray | None, wet: float = 1.0) -> None:
        """Install an impulse response shaped ``(frames, channels)`` (or clear it)."""
        self.wet = clamp(wet, 0.0, 1.0)
        if impulse is None or impulse.size == 0:
            self._spectra = None
            self._fdl = None
            self._last_block = None
            return
        if impulse.ndim == 1:
            impulse = impulse[:, None]
        impulse = match_channels(impulse.astype(np.float64), self.context.channels)
        b = self.block_size
        parts = max(1, math.ceil(impulse.shape[0] / b))
        padded = np.zeros((parts * b, impulse.shape[1]))
        padded[: impulse.shape[0]] = impulse
        segments = padded.reshape(parts, b, impulse.shape[1])
        spectra = np.fft.rfft(segments, n=2 * b, axis=1)
        fdl = np.zeros_like(spectra)
        last = np.zeros((b, self.context.channels))
        # Rebind in one go so the render thread never sees a half-built state
        self._fdl, self._last_block, self._spectra = fdl, last, spectra
        logger.debug("Convolver loaded %d partitions", parts)

    def reset(self) -> None:
        if self._fdl is not None:
            self._fdl.fill(0.0)
            self._last_block.fill(0.0)

    def process(self, block: np.ndarray, t0: float) -> np.ndarray:
        spectra, fdl, last = self._spectra, self._fdl, self._last_block
        if spectra is None or fdl is None or last is None:
            return block
        b = self.block_size
        if block.shape[0] != b:
            raise ValueError(f"convolver expects blocks of {b} frames, got {block.shape[0]}")

        window = np.concatenate([last, block], axis=0)
        last[:] = block
        fdl[1:] = fdl[:-1]
        fdl[0] = np.fft.rfft(window, axis=0)
        acc = np.einsum("pkc,pkc->kc", fdl, spectra)
        wet = np.fft.irfft(acc, n=2 * b, axis=0)[b:]
        return ((1.0 - self.wet) * block + self.wet * wet).astype(np.float32)


# ---------------------------------------------------------------------------
# Panner (equal-power, inverse distance model)
# ---------------------------------------------------------------------------

class PannerNode(AudioNode):
    """Positions the signal around a listener at the origin facing -z.

    Uses Web Audio's equal-power panning and inverse distance attenuation;
    HRTF rendering is not modelled.
    """

    def __init__(self, context: AudioContext) -> None:
        super().__init__(context)
        self.position_x = AudioParam(context, 0.0, name="positionX")
        self.position_y = AudioParam(context, 0.0, name="positionY")
        self.position_z = AudioParam(context, 0.0, name="positionZ")
        self.ref_distance = 1.0
        self.max_distance = 10000.0
        self.rolloff_factor = 1.0

    def distance_gain(self, distance: float) -> float:
        ref = self.ref_distance
        d = clamp(distance, ref, self.max_distance)
        return ref / (ref + self.rolloff_factor * (d - ref))

    def azimuth(self, x: float, z: float) -> float:
        """Horizontal angle in degrees, folded into [-90, 90]."""
        if x == 0.0 and z == 0.0:
            return 0.0
        az = math.degrees(math.atan2(x, -z))
        if az > 90.0:
            az = 180.0 - az
        elif az < -90.0:
            az = -180.0 - az
        return az

    def process(self, block: np.ndarray, t0: float) -> np.ndarray:
        x = self.position_x.k_rate_value(t0)
        y = self.position_y.k_rate_value(t0)
        z = self.position_z.k_rate_value(t0)
        gain = self.distance_gain(math.sqrt(x * x + y * y + z * z))
        out = block * np.float32(gain)
        if out.shape[1] != 2:
            return out

        az = self.azimuth(x, z)
        left, right = out[:, 0].copy(), out[:, 1].copy()
        if az <= 0.0:
            pos = (az + 90.0) / 90.0
            g_l, g_r = math.cos(pos * math.pi / 2), math.sin(pos * math.pi / 2)
            out[:, 0] = left + right * g_l
            out[:, 1] = right * g_r
        else:
            pos = az / 90.0
            g_l, g_r = math.cos(pos * math.pi / 2), math.sin(pos * math.pi / 2)
            out[:, 0] = left * g_l
            out[:, 1] = right + left * g_r
        return out


# ---------------------------------------------------------------------------
# Analyser
# ---------------------------------------------------------------------------

class AnalyserNode(AudioNode):
    """Pass-through tap exposing time and frequency domain data.

    The render thread updates the smoothed spectrum once per quantum; the
    getters only copy, so reading a snapshot has no side effects.
    """

    def __init__(
        self,
        context: AudioContext,
        fft_size: int = 2048,
        smoothing_time_constant: float = 0.8,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
    ) -> None:
        super().__init__(context)
        if fft_size & (fft_size - 1):
            raise ValueError("fft_size must be a power of two")
        self.fft_size = fft_size
        self.smoothing_time_constant = smoothing_time_constant
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self._window = np.blackman(fft_size)
        self._ring = np.zeros(fft_size, dtype=np.float32)
        self._write = 0
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float64)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def process(self, block: np.ndarray, t0: float) -> np.ndarray:
        mono = block.mean(axis=1)
        n = mono.shape[0]
        size = self.fft_size
        if n >= size:
            self._ring[:] = mono[-size:]
            self._write = 0
        else:
            end = self._write + n
            if end <= size:
                self._ring[self._write:end] = mono
            else:
                first = size - self._write
                self._ring[self._write:] = mono[:first]
                self._ring[: n - first] = mono[first:]
            self._write = end % size

        frame = self._ordered() * self._window
        magnitude = np.abs(np.fft.rfft(frame))[: size // 2] / size
        tau = self.smoothing_time_constant
        self._smoothed = tau * self._smoothed + (1.0 - tau) * magnitude
        return block

    def _ordered(self) -> np.ndarray:
        return np.concatenate([self._ring[self._write:], self._ring[: self._write]])

    def get_float_frequency_data(self) -> np.ndarray:
        return 20.0 * np.log10(np.maximum(self._smoothed.copy(), 1e-12))

    def get_byte_frequency_data(self) -> np.ndarray:
        db = self.get_float_frequency_data()
        span = self.max_decibels - self.min_decibels
        scaled = np.floor(255.0 / span * (db - self.min_decibels))
        return np.clip(scaled, 0, 255).astype(np.uint8)

    def get_float_time_domain_data(self) -> np.ndarray:
        return self._ordered().copy()

    def get_byte_time_domain_data(self) -> np.ndarray:
        scaled = np.floor(128.0 * (1.0 + self._ordered()))
        return np.clip(scaled, 0, 255).astype(np.uint8)
