from __future__ import annotations

import logging
import threading
from types import TracebackType

import numpy as np
from numpy.typing import NDArray

from .audio import EncodedClip, FloatArray
from .backend import OfflineOutput, OutputBackend, SoundDeviceOutput
from .capture import Capture, CaptureSession
from .config import EngineSettings, InstrumentKind, Pattern
from .errors import AudioUnavailableError
from .mixbus import MixBus
from .patterns import GenerateOutcome, ModelSpec, generate_outcome, resolve_model
from .scheduler import Scheduler, TransportState
from .synth import VoiceSynthesizer

_LOGGER = logging.getLogger("beatbox.engine")


class Engine:
    """The sequencer as one object: mix bus, voices, transport, capture and output.

    Construct it once and hand it to whatever drives it (CLI, UI, tests).
    Stopping playback always stops an active capture first.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        output: OutputBackend | None = None,
        rng: np.random.Generator | None = None,
        *,
        model: ModelSpec | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self._output: OutputBackend = output or SoundDeviceOutput(
            sample_rate=self.settings.sample_rate,
            block_size=self.settings.block_size,
            device=self.settings.device,
        )
        self._model_spec = model
        self._mixbus = MixBus(
            sample_rate=self.settings.sample_rate,
            gain=self.settings.gain,
            fft_size=self.settings.fft_size,
        )
        self._synth = VoiceSynthesizer(self._mixbus, rng=rng)
        self._pattern = Pattern.empty()
        # Offline runs are driven by render(); no background ticker.
        tick_interval = (
            None if isinstance(self._output, OfflineOutput) else self.settings.tick_interval
        )
        self._scheduler = Scheduler(
            self._synth,
            clock=lambda: self._mixbus.current_time,
            pattern_source=lambda: self._pattern,
            lookahead=self.settings.lookahead,
            tick_interval=tick_interval,
        )
        self._capture = Capture(self._mixbus, block_size=self.settings.capture_block_size)
        self._lock = threading.RLock()

    # -- lifecycle ---------------------------------------------------------

    @property
    def mixbus(self) -> MixBus:
        return self._mixbus

    @property
    def output(self) -> OutputBackend:
        return self._output

    @property
    def is_open(self) -> bool:
        return self._output.is_running

    def open(self) -> Engine:
        if not self._output.is_running:
            self._output.start(self._mixbus.pull)
            _LOGGER.info("Engine opened on %s output.", self._output.name)
        return self

    def close(self) -> EncodedClip | None:
        clip = self.stop()
        self._output.stop()
        return clip

    def __enter__(self) -> Engine:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # -- transport ---------------------------------------------------------

    @property
    def is_playing(self) -> bool:
        return self._scheduler.is_running

    @property
    def transport(self) -> TransportState:
        return self._scheduler.transport

    @property
    def current_step(self) -> int | None:
        """Most recently scheduled step, for playhead display."""
        return self._scheduler.transport.last_step

    @property
    def tempo(self) -> float:
        return self._scheduler.tempo

    def start(self) -> None:
        with self._lock:
            self.open()
            self._scheduler.start()

    def stop(self) -> EncodedClip | None:
        """Stop playback; an active capture is stopped first and its clip returned."""
        with self._lock:
            clip = self._capture.stop() if self._capture.is_active else None
            self._scheduler.stop()
            return clip

    def set_tempo(self, bpm: float) -> float:
        tempo = self._scheduler.set_tempo(bpm)
        _LOGGER.info("Tempo set to %.1f BPM.", tempo)
        return tempo

    # -- pattern -----------------------------------------------------------

    @property
    def pattern(self) -> Pattern:
        return self._pattern

    def set_pattern(self, pattern: Pattern) -> None:
        with self._lock:
            self._pattern = pattern

    def toggle_step(self, kind: InstrumentKind | str, step: int) -> bool:
        """Flip one cell and return its new state."""
        instrument = InstrumentKind.parse(kind)
        with self._lock:
            self._pattern = self._pattern.toggled(instrument, step)
            return self._pattern.is_active(instrument, step)

    def clear_pattern(self) -> None:
        self.set_pattern(Pattern.empty())

    def play_instrument(self, kind: InstrumentKind | str, pitch_offset: float = 0.0) -> None:
        """Quick-pad trigger: sound the instrument now, outside the grid."""
        self._synth.trigger(InstrumentKind.parse(kind), self._mixbus.current_time, pitch_offset)

    # -- capture -----------------------------------------------------------

    @property
    def is_capturing(self) -> bool:
        return self._capture.is_active

    def start_capture(self) -> CaptureSession:
        return self._capture.start()

    def stop_capture(self) -> EncodedClip | None:
        return self._capture.stop()

    # -- analysis ----------------------------------------------------------

    def frequency_data(self) -> NDArray[np.uint8]:
        return self._mixbus.analyser.byte_frequency_data()

    # -- generation --------------------------------------------------------

    async def generate_pattern(self, prompt: str) -> GenerateOutcome:
        """Ask the configured model for a pattern and apply it if it arrived."""
        outcome = await generate_outcome(resolve_model(self._model_spec), prompt)
        return self.apply_outcome(outcome)

    def apply_outcome(self, outcome: GenerateOutcome) -> GenerateOutcome:
        if outcome.result is None:
            _LOGGER.warning(
                "Generation failed (%s): %s; keeping the current pattern.",
                outcome.failure,
                outcome.message,
            )
            return outcome
        with self._lock:
            self._pattern = outcome.result.steps
            self.set_tempo(outcome.result.tempo)
        _LOGGER.info("Loaded generated pattern %r.", outcome.result.name)
        return outcome

    # -- offline -----------------------------------------------------------

    def render(self, seconds: float) -> FloatArray:
        """Tick the scheduler and pull one block at a time for ``seconds`` of audio."""
        if not isinstance(self._output, OfflineOutput):
            raise AudioUnavailableError("render() needs an engine built on OfflineOutput")
        self.open()
        total = max(0, round(seconds * self.settings.sample_rate))
        blocks: list[FloatArray] = []
        rendered = 0
        while rendered < total:
            self._scheduler.tick()
            frames = min(self._output.block_size, total - rendered)
            blocks.append(self._output.render(frames))
            rendered += frames
        if not blocks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(blocks)
