from __future__ import annotations

import logging
import threading

import numpy as np

from .audio import EncodedClip, FloatArray, encode_wav
from .errors import CaptureActiveError
from .mixbus import MixBus

_LOGGER = logging.getLogger("beatbox.capture")

CAPTURE_BLOCK_SIZE = 4096


class CaptureSession:
    """Append-only frame store between the audio callback and the control thread.

    Incoming frames are regrouped into fixed ``block_size`` blocks. ``close``
    flushes the partial tail so no captured frame is dropped.
    """

    def __init__(self, *, sample_rate: int, block_size: int = CAPTURE_BLOCK_SIZE) -> None:
        self.sample_rate = sample_rate
        self.block_size = block_size
        self._blocks: list[FloatArray] = []
        self._pending = np.zeros(block_size, dtype=np.float32)
        self._pending_len = 0
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def block_count(self) -> int:
        with self._lock:
            return len(self._blocks)

    @property
    def frames_captured(self) -> int:
        with self._lock:
            return len(self._blocks) * self.block_size + self._pending_len

    def append(self, frames: FloatArray) -> None:
        data = np.asarray(frames, dtype=np.float32).reshape(-1)
        with self._lock:
            if not self._active:
                return
            offset = 0
            while offset < data.size:
                take = min(self.block_size - self._pending_len, data.size - offset)
                self._pending[self._pending_len : self._pending_len + take] = data[
                    offset : offset + take
                ]
                self._pending_len += take
                offset += take
                if self._pending_len == self.block_size:
                    self._blocks.append(self._pending)
                    self._pending = np.zeros(self.block_size, dtype=np.float32)
                    self._pending_len = 0

    def close(self) -> FloatArray:
        """Deactivate and return every captured frame in arrival order."""
        with self._lock:
            self._active = False
            blocks = list(self._blocks)
            if self._pending_len:
                blocks.append(self._pending[: self._pending_len].copy())
            self._blocks = []
            self._pending_len = 0
        if not blocks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(blocks)


class Capture:
    """At most one capture session tapping the mix bus at a time."""

    def __init__(self, mixbus: MixBus, *, block_size: int = CAPTURE_BLOCK_SIZE) -> None:
        self._mixbus = mixbus
        self._block_size = block_size
        self._session: CaptureSession | None = None
        self._lock = threading.Lock()

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._session is not None

    @property
    def session(self) -> CaptureSession | None:
        with self._lock:
            return self._session

    @property
    def captured_frames(self) -> int:
        session = self.session
        return 0 if session is None else session.frames_captured

    def start(self) -> CaptureSession:
        with self._lock:
            if self._session is not None:
                raise CaptureActiveError("A capture session is already active")
            session = CaptureSession(
                sample_rate=self._mixbus.sample_rate, block_size=self._block_size
            )
            self._session = session
            self._mixbus.add_listener(session.append)
        _LOGGER.info("Capture started (sr=%d).", session.sample_rate)
        return session

    def stop(self) -> EncodedClip | None:
        with self._lock:
            session, self._session = self._session, None
            if session is None:
                return None
            self._mixbus.remove_listener(session.append)
        samples = session.close()
        clip = encode_wav(samples, session.sample_rate)
        _LOGGER.info(
            "Capture stopped: %d samples (%.2fs), %d bytes.",
            clip.sample_count,
            clip.duration,
            len(clip.data),
        )
        return clip
