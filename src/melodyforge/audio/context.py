"""Audio contexts: the clock and output device an effects graph renders into.

``OfflineAudioContext`` renders on demand into numpy arrays (tests, file
rendering). ``RealtimeAudioContext`` drives the same graph from a PortAudio
output stream through sounddevice; the stream callback runs on the audio
thread and must stay lock-free.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from melodyforge.config import AudioConfig

logger = logging.getLogger(__name__)

# Frames rendered per processing quantum; parameter changes land on quantum boundaries
RENDER_QUANTUM = 128


class UnsupportedPlatform(RuntimeError):
    """The host has no usable native audio output.

    Callers should fall back to unprocessed playback.
    """


@dataclass
class AudioCapabilities:
    """What the host audio stack offers."""

    realtime_output: bool
    max_channels: int
    sample_rate: float
    device_name: str | None = None
    error: str | None = None


class AudioContext:
    """Sample clock plus a destination node that graphs connect to."""

    # True when an output device pulls blocks on its own thread
    device_driven = False

    def __init__(self, sample_rate: int = 44100, channels: int = 2) -> None:
        from melodyforge.audio.nodes import AudioDestinationNode

        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.state = "suspended"
        self._frames_rendered = 0
        self._pending = np.zeros((0, self.channels), dtype=np.float32)
        self.destination = AudioDestinationNode(self)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(sample_rate={self.sample_rate}, "
            f"channels={self.channels}, state={self.state!r})"
        )

    @property
    def current_time(self) -> float:
        """Seconds of audio rendered so far."""
        return self._frames_rendered / self.sample_rate

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"

    def resume(self) -> None:
        if self.state != "closed":
            self.state = "running"

    def suspend(self) -> None:
        if self.state != "closed":
            self.state = "suspended"

    def close(self) -> None:
        self.state = "closed"

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_quantum(self) -> np.ndarray:
        """Pull exactly one quantum from the destination and advance the clock."""
        block = self.destination.pull(RENDER_QUANTUM)
        self._frames_rendered += RENDER_QUANTUM
        return block

    def render(self, frames: int) -> np.ndarray:
        """Render ``frames`` frames, carrying partial quanta over to the next call."""
        if frames <= 0:
            return np.zeros((0, self.channels), dtype=np.float32)
        chunks = [self._pending]
        available = self._pending.shape[0]
        while available < frames:
            block = self.render_quantum()
            chunks.append(block)
            available += block.shape[0]
        data = np.concatenate(chunks, axis=0) if len(chunks) > 1 else chunks[0]
        self._pending = data[frames:]
        return data[:frames]


class OfflineAudioContext(AudioContext):
    """Context rendered on demand, independent of any audio device."""

    def __init__(self, sample_rate: int = 44100, channels: int = 2) -> None:
        super().__init__(sample_rate, channels)
        self.state = "running"

    def start_rendering(self, frames: int) -> np.ndarray:
        """Render ``frames`` frames in one go."""
        return self.render(frames)


class RealtimeAudioContext(AudioContext):
    """Context that plays through the default PortAudio output device."""

    device_driven = True

    def __init__(
        self,
        sample_rate: int = 44100,
        channels: int = 2,
        latency: str = "low",
    ) -> None:
        super().__init__(sample_rate, channels)
        self.latency = latency
        self._stream = None

    def _callback(self, outdata, frames, time_info, status) -> None:
        if status:
            logger.debug("Output stream status: %s", status)
        if self.state != "running":
            outdata.fill(0.0)
            return
        outdata[:] = self.render(frames)

    def resume(self) -> None:
        """Open and start the output stream.

        Raises:
            UnsupportedPlatform: PortAudio could not open or start the stream.
        """
        if self.state == "closed":
            return
        sd = _load_sounddevice()
        try:
            if self._stream is None:
                self._stream = sd.OutputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="float32",
                    blocksize=0,
                    latency=self.latency,
                    callback=self._callback,
                )
            super().resume()
            if not self._stream.active:
                self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            # ValueError: no output device matches the requested settings
            super().suspend()
            raise UnsupportedPlatform(f"Could not start audio output: {exc}") from exc

    def suspend(self) -> None:
        super().suspend()
        if self._stream is not None and self._stream.active:
            self._stream.stop()

    def close(self) -> None:
        stream, self._stream = self._stream, None
        super().close()
        if stream is not None:
            stream.stop()
            stream.close()
            logger.info("Audio output stream closed")


# ---------------------------------------------------------------------------
# Host capability probing
# ---------------------------------------------------------------------------

def _load_sounddevice():
    """Import sounddevice, mapping a missing PortAudio to UnsupportedPlatform."""
    try:
        import sounddevice as sd
    except (ImportError, OSError) as exc:
        raise UnsupportedPlatform(f"Native audio output unavailable: {exc}") from exc
    return sd


def check_capabilities() -> AudioCapabilities:
    """Probe the host audio stack without opening a stream."""
    try:
        sd = _load_sounddevice()
        device = sd.query_devices(kind="output")
    except UnsupportedPlatform as exc:
        return AudioCapabilities(False, 0, 0.0, error=str(exc))
    except Exception as exc:
        # sounddevice raises PortAudioError or ValueError when no device exists
        return AudioCapabilities(False, 0, 0.0, error=str(exc))
    return AudioCapabilities(
        realtime_output=True,
        max_channels=int(device["max_output_channels"]),
        sample_rate=float(device["default_samplerate"]),
        device_name=device["name"],
    )


def create_context(config: AudioConfig | None = None) -> RealtimeAudioContext:
    """Create a realtime context on the default output device.

    Raises:
        UnsupportedPlatform: PortAudio or an output device is missing.
    """
    if config is None:
        config = AudioConfig()
    caps = check_capabilities()
    if not caps.realtime_output:
        raise UnsupportedPlatform(caps.error or "No audio output device")
    channels = min(config.channels, caps.max_channels) or config.channels
    logger.info(
        "Opening audio context on %s (%d Hz, %d ch)",
        caps.device_name, config.sample_rate, channels,
    )
    return RealtimeAudioContext(config.sample_rate, channels, latency=config.latency)
