from __future__ import annotations

import numpy as np
import pytest

from beatbox.config import INSTRUMENTS, InstrumentKind
from beatbox.errors import InvalidPatternError
from beatbox.mixbus import MixBus
from beatbox.synth import (
    RAMP_FLOOR,
    FilterSweep,
    VoiceSynthesizer,
    biquad,
    build_voice,
    exponential_ramp,
    oscillator,
    render_voice,
    synth_frequency,
)

SR = 44_100


@pytest.mark.parametrize(
    ("kind", "duration"),
    [
        (InstrumentKind.KICK, 0.5),
        (InstrumentKind.SNARE, 0.1),
        (InstrumentKind.HIHAT, 0.05),
        (InstrumentKind.SYNTH, 0.4),
    ],
)
def test_voice_durations(kind: InstrumentKind, duration: float) -> None:
    voice = build_voice(kind, start_time=1.0)
    assert voice.duration == duration
    assert voice.end_time == pytest.approx(1.0 + duration)
    samples = render_voice(voice, SR, np.random.default_rng(0))
    assert samples.size == round(duration * SR)
    assert np.all(np.isfinite(samples))


def test_unknown_kind_is_rejected() -> None:
    with pytest.raises(InvalidPatternError):
        build_voice("COWBELL", 0.0)  # type: ignore[arg-type]


def test_exponential_ramp_never_reaches_zero() -> None:
    ramp = exponential_ramp(1.0, RAMP_FLOOR, 0.2, SR, SR)
    assert ramp[0] == 1.0
    assert ramp.min() > 0.0
    assert ramp[int(0.2 * SR)] == pytest.approx(RAMP_FLOOR)
    # Holds the target once the ramp time has elapsed.
    assert ramp[-1] == pytest.approx(RAMP_FLOOR)
    assert np.all(np.diff(ramp) <= 0)


def test_exponential_ramp_halfway_is_geometric_mean() -> None:
    ramp = exponential_ramp(150.0, 0.01, 0.5, SR, SR)
    halfway = ramp[int(0.25 * SR)]
    assert halfway == pytest.approx(np.sqrt(150.0 * 0.01), rel=1e-3)


def test_envelopes_stay_above_zero() -> None:
    for kind in INSTRUMENTS:
        voice = build_voice(kind, 0.0)
        n = round(voice.duration * SR)
        envelope = exponential_ramp(voice.gain_start, voice.gain_end, voice.gain_time, n, SR)
        assert envelope.min() >= RAMP_FLOOR - 1e-12


def test_synth_pitch_offset() -> None:
    assert synth_frequency(0) == 110.0
    assert synth_frequency(12) == pytest.approx(220.0)
    voice = build_voice(InstrumentKind.SYNTH, 0.0, pitch_offset=7)
    assert voice.freq_start == pytest.approx(110.0 * 2 ** (7 / 12))
    assert voice.freq_end == pytest.approx(voice.freq_start * 1.5)


def test_sine_oscillator_frequency() -> None:
    freqs = np.full(SR, 441.0)
    signal = oscillator("sine", freqs, SR)
    spectrum = np.abs(np.fft.rfft(signal))
    assert int(np.argmax(spectrum)) == 441


def test_oscillators_are_bounded() -> None:
    freqs = np.full(4096, 1_000.0)
    for waveform in ("square", "sawtooth"):
        signal = oscillator(waveform, freqs, SR)
        assert np.max(np.abs(signal)) <= 1.5


def test_highpass_removes_dc() -> None:
    signal = np.ones(SR)
    filtered = biquad(signal, FilterSweep("highpass", 1_000.0, 1_000.0), SR)
    assert abs(filtered[-1]) < 1e-3


def test_swept_lowpass_is_finite() -> None:
    rng = np.random.default_rng(1)
    signal = rng.uniform(-1.0, 1.0, SR // 2)
    filtered = biquad(signal, FilterSweep("lowpass", 2_000.0, 100.0, 0.4), SR)
    assert filtered.shape == signal.shape
    assert np.all(np.isfinite(filtered))


def test_trigger_queues_voice_on_mixbus() -> None:
    bus = MixBus(sample_rate=SR)
    synth = VoiceSynthesizer(bus, rng=np.random.default_rng(0))
    synth.trigger(InstrumentKind.KICK, 0.01)
    synth.trigger(InstrumentKind.SNARE, 0.01)
    assert bus.active_voices == 2

    block = bus.pull(441)
    assert np.all(block == 0.0)
    assert np.any(bus.pull(441) != 0.0)


def test_tonal_renders_are_reused() -> None:
    bus = MixBus(sample_rate=SR)
    synth = VoiceSynthesizer(bus)
    first = synth.render(build_voice(InstrumentKind.SYNTH, 0.0, 3))
    second = synth.render(build_voice(InstrumentKind.SYNTH, 5.0, 3))
    assert first is second
    assert not first.flags.writeable
