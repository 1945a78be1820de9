from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .audio import FloatArray
from .config import SAMPLE_RATE

_LOGGER = logging.getLogger("beatbox.mixbus")

FrameListener = Callable[[FloatArray], None]

DEFAULT_GAIN = 0.5
_MIN_DECIBELS = -100.0
_MAX_DECIBELS = -30.0
_SMOOTHING = 0.8


class FrequencyAnalyser:
    """Read-only spectrum tap over the most recent post-gain frames.

    Magnitudes are computed on demand from a Blackman-windowed FFT of the last
    ``fft_size`` samples and smoothed across reads, then mapped to decibels or
    to bytes between ``min_decibels`` and ``max_decibels``.
    """

    def __init__(
        self,
        *,
        fft_size: int = 2048,
        sample_rate: int = SAMPLE_RATE,
        smoothing: float = _SMOOTHING,
        min_decibels: float = _MIN_DECIBELS,
        max_decibels: float = _MAX_DECIBELS,
    ) -> None:
        self.fft_size = fft_size
        self.sample_rate = sample_rate
        self.smoothing = smoothing
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self._window = np.blackman(fft_size)
        self._history = np.zeros(fft_size, dtype=np.float64)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)
        self._lock = threading.Lock()

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, block: FloatArray) -> None:
        samples = np.asarray(block, dtype=np.float64).reshape(-1)
        with self._lock:
            if samples.size >= self.fft_size:
                self._history = samples[-self.fft_size :].copy()
            else:
                self._history = np.concatenate([self._history[samples.size :], samples])

    def _magnitudes(self) -> NDArray[np.float64]:
        with self._lock:
            windowed = self._history * self._window
            spectrum = np.fft.rfft(windowed)[: self.frequency_bin_count]
            magnitude = np.abs(spectrum) / self.fft_size
            self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude
            return self._smoothed.copy()

    def float_frequency_data(self) -> NDArray[np.float32]:
        magnitude = self._magnitudes()
        with np.errstate(divide="ignore"):
            decibels = 20.0 * np.log10(magnitude)
        return decibels.astype(np.float32)

    def byte_frequency_data(self) -> NDArray[np.uint8]:
        decibels = self.float_frequency_data().astype(np.float64)
        span = self.max_decibels - self.min_decibels
        scaled = np.floor(255.0 / span * (decibels - self.min_decibels))
        scaled = np.nan_to_num(scaled, nan=0.0, neginf=0.0, posinf=255.0)
        return np.clip(scaled, 0, 255).astype(np.uint8)


@dataclass(slots=True)
class _PendingVoice:
    start_frame: int
    samples: FloatArray

    @property
    def end_frame(self) -> int:
        return self.start_frame + int(self.samples.size)


class MixBus:
    """Single summing node between every voice and the output sink.

    ``pull`` is called from the audio context; ``schedule`` from the control
    side. The frame counter advanced by ``pull`` is the engine's audio clock.
    """

    def __init__(
        self,
        *,
        sample_rate: int = SAMPLE_RATE,
        gain: float = DEFAULT_GAIN,
        fft_size: int = 2048,
    ) -> None:
        self._sample_rate = sample_rate
        self._gain = gain
        self._position = 0
        self._voices: list[_PendingVoice] = []
        self._listeners: list[FrameListener] = []
        self._lock = threading.Lock()
        self.analyser = FrequencyAnalyser(fft_size=fft_size, sample_rate=sample_rate)

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def gain(self) -> float:
        return self._gain

    @property
    def frames_rendered(self) -> int:
        with self._lock:
            return self._position

    @property
    def current_time(self) -> float:
        return self.frames_rendered / self._sample_rate

    @property
    def active_voices(self) -> int:
        with self._lock:
            return len(self._voices)

    def schedule(self, start_frame: int, samples: FloatArray) -> int:
        """Queue rendered samples; a start in the past plays from the next frame."""
        data = np.asarray(samples, dtype=np.float32).reshape(-1)
        with self._lock:
            start = max(int(start_frame), self._position)
            if data.size:
                self._voices.append(_PendingVoice(start_frame=start, samples=data))
        return start

    def schedule_at(self, start_time: float, samples: FloatArray) -> int:
        return self.schedule(round(start_time * self._sample_rate), samples)

    def add_listener(self, listener: FrameListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: FrameListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def pull(self, frames: int) -> FloatArray:
        """Render the next ``frames`` samples of the post-gain mix."""
        mix = np.zeros(frames, dtype=np.float64)
        with self._lock:
            block_start = self._position
            block_end = block_start + frames
            remaining: list[_PendingVoice] = []
            for voice in self._voices:
                if voice.start_frame < block_end:
                    lo = max(voice.start_frame, block_start)
                    hi = min(voice.end_frame, block_end)
                    if hi > lo:
                        offset = lo - voice.start_frame
                        mix[lo - block_start : hi - block_start] += voice.samples[
                            offset : offset + (hi - lo)
                        ]
                if voice.end_frame > block_end:
                    remaining.append(voice)
            self._voices = remaining
            self._position = block_end
            listeners = tuple(self._listeners)

        output = (mix * self._gain).astype(np.float32)
        self.analyser.push(output)
        for listener in listeners:
            listener(output.copy())
        return output
