"""
Procedural voices for the four instruments.

1. Recipes: ``build_voice`` turns an instrument kind into a frozen ``Voice``.
2. Primitives: exponential ramps, phase-integrated oscillators, biquad filters.
3. Rendering: ``render_voice`` produces the samples, ``VoiceSynthesizer``
   queues them on the mix bus at their target time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal, TypeAlias, cast

import numpy as np
from numpy.typing import NDArray
from scipy.signal import butter, lfilter  # type: ignore[import]

from .config import InstrumentKind
from .errors import InvalidPatternError
from .mixbus import MixBus

_LOGGER = logging.getLogger("beatbox.synth")

FloatArray: TypeAlias = NDArray[np.float64]
Waveform: TypeAlias = Literal["sine", "square", "sawtooth", "noise"]
FilterType: TypeAlias = Literal["lowpass", "highpass"]

# Exponential ramps approach this instead of zero.
RAMP_FLOOR = 0.01
SYNTH_BASE_FREQ = 110.0
# Swept filters recompute coefficients once per block of this many samples.
FILTER_BLOCK = 64
_NYQUIST_GUARD = 0.9999
_MIN_NORMALIZED_CUTOFF = 1e-5


@dataclass(frozen=True, slots=True)
class FilterSweep:
    kind: FilterType
    start_hz: float
    end_hz: float
    sweep_time: float = 0.0


@dataclass(frozen=True, slots=True)
class Voice:
    """One self-terminating sound: everything needed to render it."""

    kind: InstrumentKind
    start_time: float
    duration: float
    waveform: Waveform
    freq_start: float = 0.0
    freq_end: float = 0.0
    freq_time: float = 0.0
    gain_start: float = 1.0
    gain_end: float = RAMP_FLOOR
    gain_time: float = 0.0
    filter: FilterSweep | None = None
    pitch_offset: float = 0.0

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


# =============================================================================
# RECIPES
# =============================================================================


def synth_frequency(pitch_offset: float = 0.0) -> float:
    return SYNTH_BASE_FREQ * 2 ** (pitch_offset / 12)


def build_voice(kind: InstrumentKind, start_time: float, pitch_offset: float = 0.0) -> Voice:
    match kind:
        case InstrumentKind.KICK:
            return Voice(
                kind=kind,
                start_time=start_time,
                duration=0.5,
                waveform="sine",
                freq_start=150.0,
                freq_end=RAMP_FLOOR,
                freq_time=0.5,
                gain_start=1.0,
                gain_time=0.5,
            )
        case InstrumentKind.SNARE:
            return Voice(
                kind=kind,
                start_time=start_time,
                duration=0.1,
                waveform="noise",
                gain_start=1.0,
                gain_time=0.2,
                filter=FilterSweep("highpass", 1000.0, 1000.0),
            )
        case InstrumentKind.HIHAT:
            return Voice(
                kind=kind,
                start_time=start_time,
                duration=0.05,
                waveform="square",
                freq_start=10_000.0,
                freq_end=10_000.0,
                gain_start=0.3,
                gain_time=0.05,
            )
        case InstrumentKind.SYNTH:
            freq = synth_frequency(pitch_offset)
            return Voice(
                kind=kind,
                start_time=start_time,
                duration=0.4,
                waveform="sawtooth",
                freq_start=freq,
                freq_end=freq * 1.5,
                freq_time=0.2,
                gain_start=0.2,
                gain_time=0.4,
                filter=FilterSweep("lowpass", 2000.0, 100.0, 0.4),
                pitch_offset=pitch_offset,
            )
        case _:
            raise InvalidPatternError(f"Unknown instrument kind: {kind!r}")


# =============================================================================
# PRIMITIVES
# =============================================================================


def exponential_ramp(
    start: float, end: float, ramp_time: float, num_samples: int, sr: int
) -> FloatArray:
    """Exponential approach from ``start`` to ``end`` over ``ramp_time``, then hold."""
    if ramp_time <= 0.0 or start == end:
        return np.full(num_samples, start if ramp_time > 0.0 else end, dtype=np.float64)
    t = np.arange(num_samples, dtype=np.float64) / sr
    progress = np.clip(t / ramp_time, 0.0, 1.0)
    return start * (end / start) ** progress


def _phase(freqs: FloatArray, sr: int) -> FloatArray:
    """Cycle position in [0, 1) from an instantaneous-frequency curve, starting at 0."""
    increments = freqs / sr
    phase = np.concatenate(([0.0], np.cumsum(increments[:-1])))
    return phase % 1.0


def _poly_blep(t: FloatArray, dt: FloatArray) -> FloatArray:
    correction = np.zeros_like(t)
    low = t < dt
    x = t[low] / dt[low]
    correction[low] = x + x - x * x - 1.0
    high = t > 1.0 - dt
    x = (t[high] - 1.0) / dt[high]
    correction[high] = x * x + x + x + 1.0
    return correction


def oscillator(waveform: Waveform, freqs: FloatArray, sr: int) -> FloatArray:
    """Band-limited (PolyBLEP) oscillator following a per-sample frequency curve."""
    phase = _phase(freqs, sr)
    dt = np.maximum(freqs / sr, 1e-12)
    match waveform:
        case "sine":
            return np.sin(2 * np.pi * phase)
        case "sawtooth":
            return 2.0 * phase - 1.0 - _poly_blep(phase, dt)
        case "square":
            naive = np.where(phase < 0.5, 1.0, -1.0)
            return naive + _poly_blep(phase, dt) - _poly_blep((phase + 0.5) % 1.0, dt)
        case _:
            raise ValueError(f"{waveform!r} is not a periodic waveform")


def white_noise(num_samples: int, rng: np.random.Generator) -> FloatArray:
    return rng.uniform(-1.0, 1.0, num_samples)


@lru_cache(maxsize=512)
def _butter_cached(btype: FilterType, normalized_cutoff: float) -> tuple[FloatArray, FloatArray]:
    b, a = butter(2, normalized_cutoff, btype=btype)
    return cast(FloatArray, b), cast(FloatArray, a)


def _normalize_cutoff(cutoff_hz: float, sr: int) -> float:
    normalized = cutoff_hz / (sr / 2)
    # Rounded so sweeps hit the coefficient cache.
    return round(min(max(normalized, _MIN_NORMALIZED_CUTOFF), _NYQUIST_GUARD), 5)


def biquad(signal: FloatArray, sweep: FilterSweep, sr: int) -> FloatArray:
    """Second-order Butterworth filter, block-wise when the cutoff moves."""
    if sweep.start_hz == sweep.end_hz or sweep.sweep_time <= 0.0:
        b, a = _butter_cached(sweep.kind, _normalize_cutoff(sweep.start_hz, sr))
        return cast(FloatArray, lfilter(b, a, signal))

    cutoffs = exponential_ramp(sweep.start_hz, sweep.end_hz, sweep.sweep_time, signal.size, sr)
    output = np.empty_like(signal)
    state = np.zeros(2, dtype=np.float64)
    for start in range(0, signal.size, FILTER_BLOCK):
        stop = min(start + FILTER_BLOCK, signal.size)
        b, a = _butter_cached(sweep.kind, _normalize_cutoff(float(cutoffs[start]), sr))
        output[start:stop], state = lfilter(b, a, signal[start:stop], zi=state)
    return output


# =============================================================================
# RENDERING
# =============================================================================


def render_voice(voice: Voice, sr: int, rng: np.random.Generator | None = None) -> FloatArray:
    """Render a voice from its own start (time 0) to its fixed duration."""
    num_samples = int(round(voice.duration * sr))
    if voice.waveform == "noise":
        source = white_noise(num_samples, rng or np.random.default_rng())
    else:
        freqs = exponential_ramp(
            voice.freq_start, voice.freq_end, voice.freq_time, num_samples, sr
        )
        source = oscillator(voice.waveform, freqs, sr)
    if voice.filter is not None:
        source = biquad(source, voice.filter, sr)
    envelope = exponential_ramp(voice.gain_start, voice.gain_end, voice.gain_time, num_samples, sr)
    return source * envelope


@lru_cache(maxsize=64)
def _render_tonal(kind: InstrumentKind, pitch_offset: float, sr: int) -> FloatArray:
    rendered = render_voice(build_voice(kind, 0.0, pitch_offset), sr)
    rendered.setflags(write=False)
    return rendered


class VoiceSynthesizer:
    """Fire-and-forget voice triggering against a mix bus."""

    def __init__(self, mixbus: MixBus, *, rng: np.random.Generator | None = None) -> None:
        self._mixbus = mixbus
        self._rng = rng or np.random.default_rng()

    @property
    def mixbus(self) -> MixBus:
        return self._mixbus

    def render(self, voice: Voice) -> FloatArray:
        if voice.waveform == "noise":
            return render_voice(voice, self._mixbus.sample_rate, self._rng)
        # Tonal voices are deterministic, so each (kind, pitch) renders once.
        return _render_tonal(voice.kind, voice.pitch_offset, self._mixbus.sample_rate)

    def trigger(
        self, kind: InstrumentKind, start_time: float, pitch_offset: float = 0.0
    ) -> None:
        voice = build_voice(kind, start_time, pitch_offset)
        self._mixbus.schedule_at(voice.start_time, self.render(voice))
