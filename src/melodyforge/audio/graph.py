"""Signal chain lifecycle.

AudioGraphManager builds and owns the processing graph for the active
playback session::

    source -> 10 EQ filters -> compressor -> convolver -> panner
           -> master gain -> analyser -> destination

The equalizer, effects and playback-rate modules hold the user settings and
are re-attached whenever a graph is built, so settings survive teardown.

The render path never calls listeners. A finished source is queued and the
"ended" event is delivered from the control side.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from functools import partial
from typing import Callable

import numpy as np

from melodyforge.audio.context import AudioContext, UnsupportedPlatform, create_context
from melodyforge.audio.dynamics import DynamicsModule
from melodyforge.audio.equalizer import EqualizerModule
from melodyforge.audio.events import GraphEvent, Subscribers
from melodyforge.audio.nodes import (
    AnalyserNode,
    AudioBufferSourceNode,
    BiquadFilterNode,
    ConvolverNode,
    DynamicsCompressorNode,
    GainNode,
    PannerNode,
)
from melodyforge.audio.params import clamp
from melodyforge.audio.playback_rate import PlaybackRateController
from melodyforge.audio.source import AudioBuffer
from melodyforge.config import AudioConfig

logger = logging.getLogger(__name__)

# Exponential ramps cannot reach zero
FADE_FLOOR = 0.001

# How often the event pump wakes to check for shutdown
PUMP_INTERVAL = 0.05

ContextFactory = Callable[[AudioConfig], AudioContext]


@dataclass
class GraphHandle:
    """The live nodes of one built graph."""

    context: AudioContext
    source: AudioBufferSourceNode
    filters: tuple[BiquadFilterNode, ...]
    compressor: DynamicsCompressorNode
    convolver: ConvolverNode
    panner: PannerNode
    master: GainNode
    analyser: AnalyserNode
    buffer_id: str

    def nodes(self) -> list:
        return [
            self.source, *self.filters, self.compressor, self.convolver,
            self.panner, self.master, self.analyser,
        ]


@dataclass(frozen=True)
class AnalysisSnapshot:
    """Visualizer data copied out of the analyser tap."""

    frequency_data: np.ndarray  # uint8, fft_size // 2 bins
    time_data: np.ndarray  # uint8, fft_size samples, 128 = silence
    sample_rate: int
    fft_size: int


class AudioGraphManager:
    """Owns node lifecycle and wires the effect modules into one chain.

    Args:
        context_factory: Builds the AudioContext for a new graph. Defaults
            to a realtime context on the default output device.
        equalizer: Band gain state; a fresh flat EQ when omitted.
        dynamics: Compressor, spatial and reverb state.
        rate: Speed and pitch state.
        config: Engine settings (sample rate, analyser, fade times).
    """

    def __init__(
        self,
        context_factory: ContextFactory | None = None,
        equalizer: EqualizerModule | None = None,
        dynamics: DynamicsModule | None = None,
        rate: PlaybackRateController | None = None,
        config: AudioConfig | None = None,
    ) -> None:
        self.config = config or AudioConfig()
        self._context_factory = context_factory or create_context
        self.equalizer = equalizer or EqualizerModule(
            ramp_seconds=self.config.eq_ramp_seconds, q=self.config.eq_q
        )
        self.dynamics = dynamics or DynamicsModule()
        self.rate = rate or PlaybackRateController()
        self.on_ended: Callable[[], None] | None = None

        self._subscribers = Subscribers()
        for module in (self.equalizer, self.dynamics, self.rate):
            module.on_change = self._subscribers.publish

        self._lock = threading.Lock()
        self._handle: GraphHandle | None = None
        self._volume = 1.0
        # Sources that finished on the render thread, delivered on the control side
        self._ended: queue.SimpleQueue[AudioBufferSourceNode] = queue.SimpleQueue()
        self._pump_stop: threading.Event | None = None

    def __repr__(self) -> str:
        return f"AudioGraphManager(initialized={self.is_initialized})"

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[GraphEvent], None]) -> Callable[[], None]:
        """Register for change events; returns a function that unsubscribes."""
        return self._subscribers.subscribe(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        handle = self._handle
        return handle is not None and not handle.context.is_closed

    @property
    def handle(self) -> GraphHandle | None:
        return self._handle

    def initialize(self, source: AudioBuffer, start: bool = True) -> GraphHandle:
        """Build the graph for ``source`` and start playing it.

        Calling again with the same buffer returns the existing handle. A
        different buffer on a live graph replaces only the source node. If
        the graph cannot start, its nodes and context are released and the
        manager stays uninitialized, so a retry builds a fresh graph.

        Raises:
            UnsupportedPlatform: No native audio output is available, or the
                output stream could not be opened.
        """
        with self._lock:
            handle = self._handle
            if handle is not None and not handle.context.is_closed:
                if handle.buffer_id == source.id:
                    return handle
                self._replace_source(handle, source, start)
                event = "source_changed"
            else:
                try:
                    context = self._context_factory(self.config)
                except UnsupportedPlatform:
                    logger.warning("Audio graph unavailable; falling back to plain playback")
                    raise
                handle = self._build(context, source)
                try:
                    if start:
                        self._start_source(handle)
                except Exception:
                    logger.warning("Audio graph failed to start; releasing it", exc_info=True)
                    self._release(handle)
                    raise
                self._handle = handle
                if context.device_driven:
                    self._start_pump()
                event = "initialized"
        logger.info("Audio graph %s for buffer %s", event, source.id)
        self._subscribers.publish("lifecycle", event)
        return handle

    def _build(self, context: AudioContext, buffer: AudioBuffer) -> GraphHandle:
        cfg = self.config
        source = self._make_source(context, buffer)
        filters = tuple(self.equalizer.build_filters(context))
        compressor = DynamicsCompressorNode(context)
        convolver = ConvolverNode(context)
        panner = PannerNode(context)
        master = GainNode(context, gain=self._volume)
        analyser = AnalyserNode(
            context,
            fft_size=cfg.fft_size,
            smoothing_time_constant=cfg.smoothing_time_constant,
            min_decibels=cfg.min_decibels,
            max_decibels=cfg.max_decibels,
        )

        node = source
        for f in filters:
            node = node.connect(f)
        node.connect(compressor).connect(convolver).connect(panner)
        panner.connect(master).connect(analyser).connect(context.destination)

        self.equalizer.attach(filters)
        self.dynamics.attach(compressor, convolver, panner)
        self.rate.attach(source.playback_rate)
        return GraphHandle(
            context=context,
            source=source,
            filters=filters,
            compressor=compressor,
            convolver=convolver,
            panner=panner,
            master=master,
            analyser=analyser,
            buffer_id=buffer.id,
        )

    def _make_source(self, context: AudioContext, buffer: AudioBuffer) -> AudioBufferSourceNode:
        source = AudioBufferSourceNode(context, buffer)
        # Runs on the render thread: only records the node
        source.on_ended = partial(self._ended.put, source)
        return source

    def _replace_source(self, handle: GraphHandle, buffer: AudioBuffer, start: bool) -> None:
        old = handle.source
        old.on_ended = None
        old.disconnect()
        source = self._make_source(handle.context, buffer)
        source.connect(handle.filters[0])
        for node in handle.nodes()[1:]:
            node.reset()
        handle.source = source
        handle.buffer_id = buffer.id
        self.rate.attach(source.playback_rate)
        if start:
            self._start_source(handle)

    def _start_source(self, handle: GraphHandle, offset: float = 0.0) -> None:
        handle.source.start(handle.context.current_time, offset)
        handle.context.resume()

    # ------------------------------------------------------------------
    # Ended notifications
    # ------------------------------------------------------------------

    def dispatch_events(self) -> int:
        """Deliver pending "ended" notifications on the calling thread.

        ``render`` calls this after each pull; realtime graphs get a pump
        thread that does the same. Returns how many were delivered.
        """
        delivered = 0
        while True:
            try:
                node = self._ended.get_nowait()
            except queue.Empty:
                return delivered
            if self._deliver_ended(node):
                delivered += 1

    def _deliver_ended(self, node: AudioBufferSourceNode) -> bool:
        handle = self._handle
        if handle is None or handle.source is not node:
            # Torn down or replaced since the source finished
            return False
        self._subscribers.publish("lifecycle", "ended")
        if self.on_ended is not None:
            self.on_ended()
        return True

    def _start_pump(self) -> None:
        if self._pump_stop is not None:
            self._pump_stop.set()
        stop = threading.Event()
        self._pump_stop = stop
        thread = threading.Thread(
            target=self._pump, args=(stop,), name="melodyforge-events", daemon=True
        )
        thread.start()

    def _pump(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                node = self._ended.get(timeout=PUMP_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._deliver_ended(node)
            except Exception:
                logger.exception("on_ended callback failed")

    def start(self, offset: float = 0.0) -> None:
        """(Re)start the current source at ``offset`` seconds."""
        handle = self._require_handle()
        self._start_source(handle, offset)

    def stop(self) -> None:
        handle = self._handle
        if handle is not None:
            handle.source.stop()

    def teardown(self) -> None:
        """Release every node and close the context. Safe to call repeatedly."""
        with self._lock:
            handle, self._handle = self._handle, None
            if handle is None:
                return
            stop, self._pump_stop = self._pump_stop, None
            if stop is not None:
                stop.set()
            self._release(handle)
        logger.info("Audio graph torn down")
        self._subscribers.publish("lifecycle", "torn_down")

    def _release(self, handle: GraphHandle) -> None:
        handle.source.on_ended = None
        for node in handle.nodes():
            node.disconnect()
        self.equalizer.detach()
        self.dynamics.detach()
        self.rate.detach()
        handle.context.close()

    def _require_handle(self) -> GraphHandle:
        handle = self._handle
        if handle is None or handle.context.is_closed:
            raise RuntimeError("audio graph is not initialized")
        return handle

    # ------------------------------------------------------------------
    # Volume
    # ------------------------------------------------------------------

    @property
    def volume(self) -> float:
        return self._volume

    def set_master_volume(self, volume: float, fade_seconds: float | None = None) -> float:
        """Approach ``volume`` (clamped to [0, 1]) with time constant ``fade_seconds``."""
        if fade_seconds is None:
            fade_seconds = self.config.default_fade_seconds
        self._volume = clamp(float(volume), 0.0, 1.0)
        handle = self._handle
        if handle is not None:
            param = handle.master.gain
            now = handle.context.current_time
            param.cancel_and_hold_at_time(now)
            param.set_target_at_time(self._volume, now, max(0.0, fade_seconds))
        self._subscribers.publish("volume", self._volume)
        return self._volume

    def fade_volume(self, target: float, duration: float) -> float:
        """Exponential fade to ``target`` over ``duration`` seconds (sleep timer)."""
        target = max(FADE_FLOOR, clamp(float(target), 0.0, 1.0))
        self._volume = target
        handle = self._handle
        if handle is not None:
            param = handle.master.gain
            now = handle.context.current_time
            held = param.value_at(now)
            param.cancel_and_hold_at_time(now)
            if held < FADE_FLOOR:
                param.set_value_at_time(FADE_FLOOR, now)
            param.exponential_ramp_to_value_at_time(target, now + max(0.0, duration))
        self._subscribers.publish("volume", target)
        return target

    # ------------------------------------------------------------------
    # Analysis and offline rendering
    # ------------------------------------------------------------------

    def get_analysis_snapshot(self) -> AnalysisSnapshot:
        """Copy the analyser's current byte spectrum and waveform."""
        handle = self._handle
        if handle is None:
            size = self.config.fft_size
            return AnalysisSnapshot(
                frequency_data=np.zeros(size // 2, dtype=np.uint8),
                time_data=np.full(size, 128, dtype=np.uint8),
                sample_rate=self.config.sample_rate,
                fft_size=size,
            )
        analyser = handle.analyser
        return AnalysisSnapshot(
            frequency_data=analyser.get_byte_frequency_data(),
            time_data=analyser.get_byte_time_domain_data(),
            sample_rate=handle.context.sample_rate,
            fft_size=analyser.fft_size,
        )

    def render(self, frames: int) -> np.ndarray:
        """Pull ``frames`` frames through the graph (offline contexts).

        "ended" listeners run after the pull returns, so they may tear the
        graph down or build the next one.
        """
        data = self._require_handle().context.render(frames)
        self.dispatch_events()
        return data
