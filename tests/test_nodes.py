"""Tests for the audio graph nodes."""

import math

import numpy as np
import pytest

from melodyforge.audio.context import RENDER_QUANTUM
from melodyforge.audio.nodes import (
    AnalyserNode,
    AudioBufferSourceNode,
    BiquadFilterNode,
    ConvolverNode,
    DynamicsCompressorNode,
    GainNode,
    PannerNode,
    biquad_sos,
    compressor_gain_db,
    match_channels,
)
from melodyforge.audio.source import AudioBuffer, sine_buffer

SR = 44100


def _constant_buffer(value: float, frames: int = 4410) -> AudioBuffer:
    return AudioBuffer(data=np.full((frames, 2), value, dtype=np.float32), sample_rate=SR)


def _blocks(signal: np.ndarray):
    """Yield (block, t0) pairs of one render quantum each."""
    for start in range(0, signal.shape[0] - RENDER_QUANTUM + 1, RENDER_QUANTUM):
        yield signal[start:start + RENDER_QUANTUM], start / SR


def _rms(x: np.ndarray) -> float:
    return float(np.sqrt(np.mean(np.square(x, dtype=np.float64))))


# ===========================================================================
# Routing
# ===========================================================================


class TestRouting:
    def test_match_channels_mono_to_stereo(self):
        mono = np.arange(4, dtype=np.float32)[:, None]
        out = match_channels(mono, 2)
        assert out.shape == (4, 2)
        assert np.array_equal(out[:, 0], out[:, 1])

    def test_connect_rejects_foreign_context(self, ctx):
        from melodyforge.audio.context import OfflineAudioContext

        other = OfflineAudioContext(SR, 2)
        with pytest.raises(ValueError):
            GainNode(ctx).connect(GainNode(other))

    def test_disconnect_removes_edges(self, ctx):
        a, b = GainNode(ctx), GainNode(ctx)
        a.connect(b)
        assert b.inputs == (a,)
        a.disconnect()
        assert b.inputs == ()
        assert a.outputs == ()

    def test_unconnected_destination_renders_silence(self, ctx):
        out = ctx.render(300)
        assert out.shape == (300, 2)
        assert not out.any()


# ===========================================================================
# Source and gain
# ===========================================================================


class TestSourceAndGain:
    def test_gain_scales_source(self, ctx):
        src = AudioBufferSourceNode(ctx, _constant_buffer(0.5))
        gain = GainNode(ctx, gain=0.5)
        src.connect(gain).connect(ctx.destination)
        src.start()
        out = ctx.render(256)
        assert np.allclose(out, 0.25)

    def test_destination_clips(self, ctx):
        src = AudioBufferSourceNode(ctx, _constant_buffer(0.5))
        src.connect(GainNode(ctx, gain=10.0)).connect(ctx.destination)
        src.start()
        out = ctx.render(128)
        assert np.allclose(out, 1.0)

    def test_source_silent_until_started(self, ctx):
        src = AudioBufferSourceNode(ctx, _constant_buffer(0.5))
        src.connect(ctx.destination)
        assert not ctx.render(128).any()

    def test_source_fires_on_ended(self, ctx):
        ended = []
        src = AudioBufferSourceNode(ctx, _constant_buffer(0.5, frames=100))
        src.on_ended = lambda: ended.append(True)
        src.connect(ctx.destination)
        src.start()
        out = ctx.render(256)
        assert ended == [True]
        assert src.ended
        assert np.allclose(out[:100], 0.5)
        assert not out[100:].any()

    def test_playback_rate_resamples(self, ctx):
        ramp = (np.arange(2000) / 2000.0).astype(np.float32)
        src = AudioBufferSourceNode(ctx, AudioBuffer(data=ramp, sample_rate=SR))
        src.playback_rate.value = 2.0
        src.connect(ctx.destination)
        src.start()
        out = ctx.render(128)
        assert abs(out[10, 0] - ramp[20]) < 1e-6
        assert abs(src.position - 256 / SR) < 1e-9

    def test_loop_wraps_around(self, ctx):
        src = AudioBufferSourceNode(ctx, _constant_buffer(0.3, frames=50))
        src.loop = True
        src.connect(ctx.destination)
        src.start()
        out = ctx.render(512)
        assert np.allclose(out, 0.3)
        assert not src.ended

    def test_start_without_buffer_raises(self, ctx):
        with pytest.raises(RuntimeError):
            AudioBufferSourceNode(ctx).start()

    def test_stop_silences(self, ctx):
        src = AudioBufferSourceNode(ctx, _constant_buffer(0.5))
        src.connect(ctx.destination)
        src.start()
        ctx.render(128)
        src.stop()
        assert not ctx.render(128).any()
        assert src.ended


# ===========================================================================
# Biquad filters
# ===========================================================================


class TestBiquad:
    @pytest.mark.parametrize("filter_type", ["lowshelf", "peaking", "highshelf"])
    def test_zero_gain_is_identity(self, filter_type):
        sos = biquad_sos(filter_type, 1000.0, 1.0, 0.0, SR)
        assert np.allclose(sos[0, :3], sos[0, 3:])

    def test_peaking_gain_at_centre(self, ctx):
        node = BiquadFilterNode(ctx, "peaking", frequency=1000.0, q=1.0, gain=6.0)
        mag, _ = node.get_frequency_response(np.array([1000.0]))
        assert abs(mag[0] - 10 ** (6.0 / 20.0)) < 1e-3

    def test_lowshelf_gain_at_dc(self, ctx):
        node = BiquadFilterNode(ctx, "lowshelf", frequency=32.0, gain=12.0)
        mag, _ = node.get_frequency_response(np.array([0.0]))
        assert abs(mag[0] - 10 ** (12.0 / 20.0)) < 1e-3

    def test_highshelf_leaves_low_end(self, ctx):
        node = BiquadFilterNode(ctx, "highshelf", frequency=16000.0, gain=12.0)
        mag, _ = node.get_frequency_response(np.array([50.0]))
        assert abs(mag[0] - 1.0) < 1e-2

    def test_unknown_type_rejected(self, ctx):
        with pytest.raises(ValueError):
            BiquadFilterNode(ctx, "bandpass")

    def test_boost_on_sine(self, ctx):
        node = BiquadFilterNode(ctx, "peaking", frequency=1000.0, gain=12.0)
        sig = sine_buffer(1000.0, 0.5, sample_rate=SR, amplitude=0.1).data
        out = np.concatenate([node.process(b, t) for b, t in _blocks(sig)])
        half = out.shape[0] // 2
        ratio = _rms(out[half:]) / _rms(sig[half:out.shape[0]])
        assert abs(ratio - 10 ** (12.0 / 20.0)) < 0.1

    def test_reset_clears_state(self, ctx):
        node = BiquadFilterNode(ctx, "peaking", frequency=1000.0, gain=12.0)
        node.process(np.ones((128, 2), dtype=np.float32), 0.0)
        node.reset()
        assert not node._zi.any()


# ===========================================================================
# Compressor
# ===========================================================================


class TestCompressor:
    def test_gain_curve_hard_knee(self):
        level = np.array([-40.0, -24.0, -12.0])
        gain = compressor_gain_db(level, threshold=-24.0, knee=0.0, ratio=4.0)
        assert gain[0] == 0.0
        assert gain[1] == 0.0
        assert abs(gain[2] + 9.0) < 1e-9

    def test_gain_curve_continuous_at_knee_edge(self):
        knee = 10.0
        edge = np.array([-24.0 + knee / 2.0])
        soft = compressor_gain_db(edge, -24.0, knee, 4.0)
        hard = compressor_gain_db(edge, -24.0, 0.0, 4.0)
        assert abs(soft[0] - hard[0]) < 1e-9

    def test_loud_signal_reduced(self, ctx):
        node = DynamicsCompressorNode(ctx)
        block = np.full((128, 2), 0.9, dtype=np.float32)
        for i in range(100):
            out = node.process(block, i * 128 / SR)
        assert out.max() < 0.45
        assert node.reduction < -10.0

    def test_quiet_signal_untouched(self, ctx):
        node = DynamicsCompressorNode(ctx)
        block = np.full((128, 2), 0.001, dtype=np.float32)
        for i in range(50):
            out = node.process(block, i * 128 / SR)
        assert np.allclose(out, block)


# ===========================================================================
# Convolver
# ===========================================================================


class TestConvolver:
    def test_passthrough_without_impulse(self, ctx):
        node = ConvolverNode(ctx)
        block = np.random.default_rng(0).uniform(-1, 1, (128, 2)).astype(np.float32)
        assert node.process(block, 0.0) is block
        assert not node.has_impulse

    def test_unit_impulse_is_identity(self, ctx):
        node = ConvolverNode(ctx)
        node.set_impulse_response(np.array([1.0]))
        block = np.random.default_rng(1).uniform(-1, 1, (128, 2)).astype(np.float32)
        assert np.allclose(node.process(block, 0.0), block, atol=1e-5)

    def test_delay_across_partitions(self, ctx):
        impulse = np.zeros(200)
        impulse[130] = 1.0
        node = ConvolverNode(ctx)
        node.set_impulse_response(impulse)
        first = np.zeros((128, 2), dtype=np.float32)
        first[0] = 1.0
        out0 = node.process(first, 0.0)
        out1 = node.process(np.zeros((128, 2), dtype=np.float32), 128 / SR)
        assert np.allclose(out0, 0.0, atol=1e-5)
        assert abs(out1[2, 0] - 1.0) < 1e-5
        assert np.allclose(np.delete(out1[:, 0], 2), 0.0, atol=1e-5)

    def test_dry_wet_mix(self, ctx):
        node = ConvolverNode(ctx)
        node.set_impulse_response(np.array([0.0, 0.0]), wet=0.25)
        block = np.ones((128, 2), dtype=np.float32)
        assert np.allclose(node.process(block, 0.0), 0.75, atol=1e-5)

    def test_clearing_impulse(self, ctx):
        node = ConvolverNode(ctx)
        node.set_impulse_response(np.array([1.0]))
        node.set_impulse_response(None)
        assert not node.has_impulse


# ===========================================================================
# Panner
# ===========================================================================


class TestPanner:
    def test_inverse_distance_gain(self, ctx):
        node = PannerNode(ctx)
        assert node.distance_gain(1.0) == 1.0
        assert node.distance_gain(0.1) == 1.0
        assert abs(node.distance_gain(2.0) - 0.5) < 1e-9

    def test_zero_rolloff_disables_attenuation(self, ctx):
        node = PannerNode(ctx)
        node.rolloff_factor = 0.0
        assert node.distance_gain(50.0) == 1.0

    def test_centre_keeps_stereo_image(self, ctx):
        node = PannerNode(ctx)
        block = np.zeros((128, 2), dtype=np.float32)
        block[:, 0] = 0.2
        block[:, 1] = 0.4
        out = node.process(block.copy(), 0.0)
        assert np.allclose(out[:, 0], 0.2, atol=1e-6)
        assert np.allclose(out[:, 1], 0.4, atol=1e-6)

    def test_hard_right(self, ctx):
        node = PannerNode(ctx)
        node.position_x.value = 1.0
        block = np.full((128, 2), 0.3, dtype=np.float32)
        out = node.process(block, 0.0)
        assert np.allclose(out[:, 0], 0.0, atol=1e-6)
        assert np.allclose(out[:, 1], 0.6, atol=1e-6)

    def test_azimuth_folds_behind(self, ctx):
        node = PannerNode(ctx)
        assert abs(node.azimuth(1.0, 1.0) - 45.0) < 1e-9
        assert abs(node.azimuth(1.0, -1.0) - 45.0) < 1e-9


# ===========================================================================
# Analyser
# ===========================================================================


class TestAnalyser:
    def test_peak_bin_matches_tone(self, ctx):
        node = AnalyserNode(ctx, fft_size=2048)
        sig = sine_buffer(1000.0, 0.5, sample_rate=SR, amplitude=0.5).data
        for block, t in _blocks(sig):
            node.process(block, t)
        expected = 1000.0 / (SR / 2048)
        assert abs(int(np.argmax(node.get_float_frequency_data())) - expected) <= 1.5

    def test_byte_data_shapes(self, ctx):
        node = AnalyserNode(ctx, fft_size=512)
        assert node.frequency_bin_count == 256
        assert node.get_byte_frequency_data().shape == (256,)
        assert node.get_byte_frequency_data().dtype == np.uint8
        time_data = node.get_byte_time_domain_data()
        assert time_data.shape == (512,)
        assert np.all(time_data == 128)

    def test_getters_have_no_side_effects(self, ctx):
        node = AnalyserNode(ctx)
        sig = sine_buffer(440.0, 0.1, sample_rate=SR).data
        for block, t in _blocks(sig):
            node.process(block, t)
        first = node.get_byte_frequency_data()
        second = node.get_byte_frequency_data()
        assert np.array_equal(first, second)

    def test_passes_audio_through(self, ctx):
        node = AnalyserNode(ctx)
        block = np.full((128, 2), 0.1, dtype=np.float32)
        assert node.process(block, 0.0) is block

    def test_fft_size_must_be_power_of_two(self, ctx):
        with pytest.raises(ValueError):
            AnalyserNode(ctx, fft_size=1000)

    def test_time_domain_tracks_input(self, ctx):
        node = AnalyserNode(ctx, fft_size=256)
        node.process(np.full((128, 2), 0.5, dtype=np.float32), 0.0)
        data = node.get_float_time_domain_data()
        assert np.allclose(data[-128:], 0.5)
        assert np.allclose(data[:128], 0.0)
        assert math.isclose(float(data.sum()), 64.0, rel_tol=1e-6)
