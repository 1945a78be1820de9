from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

import numpy as np

from .audio import FloatArray
from .errors import AudioUnavailableError

_LOGGER = logging.getLogger("beatbox.backend")

PullFn = Callable[[int], FloatArray]


class OutputBackend(Protocol):
    name: str

    def start(self, pull: PullFn) -> None: ...

    def stop(self) -> None: ...

    @property
    def is_running(self) -> bool: ...


def load_sounddevice() -> Any:
    try:
        import sounddevice as sd_module  # type: ignore[import]
    except (ImportError, OSError) as exc:
        # OSError: the package is installed but PortAudio is missing.
        _LOGGER.info("sounddevice not available: %s", exc, exc_info=True)
        raise AudioUnavailableError(
            "Live output requires sounddevice and PortAudio. "
            "Install them, or render offline with `beatbox render`."
        ) from exc
    return sd_module


class SoundDeviceOutput:
    """Real-time mono output; PortAudio's callback thread pulls the mix."""

    name = "sounddevice"

    def __init__(
        self,
        *,
        sample_rate: int,
        block_size: int = 1024,
        device: int | str | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.device = device
        self._stream: Any = None
        self._status_count = 0
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    @property
    def status_count(self) -> int:
        """Callbacks that reported an underflow or other stream status flag."""
        with self._lock:
            return self._status_count

    @property
    def latency(self) -> float:
        if self._stream is None:
            return 0.0
        return float(getattr(self._stream, "latency", 0.0))

    def start(self, pull: PullFn) -> None:
        if self._stream is not None:
            return
        sd = load_sounddevice()

        def _callback(outdata: Any, frames: int, time_info: Any, status: Any) -> None:
            _ = time_info
            if status:
                with self._lock:
                    self._status_count += 1
            outdata[:, 0] = pull(frames)

        try:
            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=_callback,
            )
            stream.start()
        except Exception as exc:
            _LOGGER.error("Failed to open audio output: %s", exc, exc_info=True)
            raise AudioUnavailableError(f"Audio output could not be opened: {exc}") from exc
        self._stream = stream
        _LOGGER.info(
            "Audio output running (sr=%d, block=%d, latency=%.3fs)",
            self.sample_rate,
            self.block_size,
            self.latency,
        )

    def stop(self) -> None:
        stream = self._stream
        if stream is None:
            return
        self._stream = None
        stream.stop()
        stream.close()
        if self.status_count:
            _LOGGER.warning("Audio output reported %d status flags.", self.status_count)
        _LOGGER.info("Audio output stopped.")


class OfflineOutput:
    """Pull-driven output for rendering to file and for deterministic runs.

    Nothing happens until the host calls ``render``; the clock only moves when
    blocks are pulled, so scheduling and capture become plain sequential code.
    """

    name = "offline"

    def __init__(self, *, block_size: int = 1024) -> None:
        self.block_size = block_size
        self._pull: PullFn | None = None

    @property
    def is_running(self) -> bool:
        return self._pull is not None

    def start(self, pull: PullFn) -> None:
        self._pull = pull

    def stop(self) -> None:
        self._pull = None

    def render(self, frames: int | None = None) -> FloatArray:
        if self._pull is None:
            raise AudioUnavailableError("Offline output is not started")
        return self._pull(self.block_size if frames is None else frames)

    def render_blocks(self, count: int) -> FloatArray:
        blocks = [self.render() for _ in range(count)]
        if not blocks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(blocks)
