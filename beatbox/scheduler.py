from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from .config import DEFAULT_TEMPO, STEP_COUNT, InstrumentKind, Pattern, clamp_tempo, seconds_per_step
from .synth import VoiceSynthesizer

_LOGGER = logging.getLogger("beatbox.scheduler")

LOOKAHEAD = 0.1
TICK_INTERVAL = 1 / 60

Clock = Callable[[], float]
PatternSource = Callable[[], Pattern]


@dataclass(frozen=True, slots=True)
class TransportState:
    """Read-only view of the transport for display."""

    tempo_bpm: float
    current_step_index: int
    next_step_time: float
    running: bool
    last_step: int | None = None


@dataclass(frozen=True, slots=True)
class StepEvent:
    step_index: int
    time: float
    kinds: tuple[InstrumentKind, ...]


@dataclass(slots=True)
class Transport:
    tempo_bpm: float = DEFAULT_TEMPO
    current_step_index: int = 0
    next_step_time: float = 0.0
    running: bool = False


class RepeatingTask:
    """Calls ``fn`` immediately and then every ``interval`` seconds until cancelled."""

    def __init__(
        self,
        fn: Callable[[], object],
        interval: float,
        *,
        name: str,
        on_error: Callable[[BaseException], object] | None = None,
    ) -> None:
        self._fn = fn
        self._on_error = on_error
        self._interval = interval
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _run(self) -> None:
        try:
            self._fn()
            while not self._stop.wait(self._interval):
                self._fn()
        except Exception as exc:
            _LOGGER.exception("Repeating task %r failed; it will not be re-armed.", self._name)
            if self._on_error is None:
                raise
            self._on_error(exc)


class Scheduler:
    """Look-ahead step scheduler.

    Each ``tick`` schedules every step whose time falls before
    ``clock() + lookahead``, so timing comes from the audio clock rather than
    from when the tick happens to run.
    """

    def __init__(
        self,
        synthesizer: VoiceSynthesizer,
        clock: Clock,
        pattern_source: PatternSource,
        *,
        tempo: float = DEFAULT_TEMPO,
        lookahead: float = LOOKAHEAD,
        tick_interval: float | None = TICK_INTERVAL,
    ) -> None:
        self._synth = synthesizer
        self._clock = clock
        self._pattern_source = pattern_source
        self._lookahead = lookahead
        self._tick_interval = tick_interval
        self._transport = Transport(tempo_bpm=clamp_tempo(tempo))
        self._last_step: int | None = None
        self._task: RepeatingTask | None = None
        self._lock = threading.RLock()

    @property
    def lookahead(self) -> float:
        return self._lookahead

    @property
    def tempo(self) -> float:
        with self._lock:
            return self._transport.tempo_bpm

    @property
    def seconds_per_step(self) -> float:
        return seconds_per_step(self.tempo)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._transport.running

    @property
    def transport(self) -> TransportState:
        with self._lock:
            t = self._transport
            return TransportState(
                tempo_bpm=t.tempo_bpm,
                current_step_index=t.current_step_index,
                next_step_time=t.next_step_time,
                running=t.running,
                last_step=self._last_step,
            )

    def set_tempo(self, bpm: float) -> float:
        clamped = clamp_tempo(bpm)
        if clamped != bpm:
            _LOGGER.debug("Tempo %s clamped to %s", bpm, clamped)
        with self._lock:
            self._transport.tempo_bpm = clamped
        return clamped

    def start(self) -> None:
        with self._lock:
            if self._transport.running:
                _LOGGER.debug("Scheduler already running.")
                return
            self._transport.running = True
            self._transport.next_step_time = self._clock()
            self._last_step = None
            _LOGGER.info(
                "Scheduler started at %.3fs (%.1f BPM)",
                self._transport.next_step_time,
                self._transport.tempo_bpm,
            )
            if self._tick_interval is not None:
                self._task = RepeatingTask(
                    self.tick,
                    self._tick_interval,
                    name="beatbox-scheduler",
                    on_error=self._task_failed,
                )
                self._task.start()

    def stop(self) -> None:
        with self._lock:
            if not self._transport.running:
                _LOGGER.debug("Scheduler already stopped.")
                return
            self._transport.running = False
            self._transport.current_step_index = 0
            self._last_step = None
            task, self._task = self._task, None
        # Joined outside the lock: the task thread may be waiting on it.
        if task is not None:
            task.cancel()
        _LOGGER.info("Scheduler stopped.")

    def _task_failed(self, exc: BaseException) -> None:
        with self._lock:
            self._transport.running = False
            self._transport.current_step_index = 0
            self._last_step = None
            self._task = None
        _LOGGER.error("Scheduler halted after a failed tick: %s", exc)

    def tick(self) -> list[StepEvent]:
        """One invocation of the driving callback."""
        with self._lock:
            t = self._transport
            if not t.running:
                return []
            horizon = self._clock() + self._lookahead
            pattern = self._pattern_source()
            events: list[StepEvent] = []
            while t.next_step_time < horizon:
                step = t.current_step_index
                kinds = pattern.active_at(step)
                # Every instrument of a step shares the exact same target time.
                for kind in kinds:
                    self._synth.trigger(kind, t.next_step_time)
                events.append(StepEvent(step_index=step, time=t.next_step_time, kinds=kinds))
                self._last_step = step
                t.next_step_time += seconds_per_step(t.tempo_bpm)
                t.current_step_index = (step + 1) % STEP_COUNT
            return events
