from __future__ import annotations

import io
import struct
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import numpy as np
import soundfile as sf  # type: ignore[import]
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict, Field

from .config import SAMPLE_RATE

FloatArray = NDArray[np.float32]
AudioNumbers = NDArray[np.floating[Any]] | Sequence[float] | FloatArray

WAV_MIME_TYPE = "audio/wav"
WAV_HEADER_SIZE = 44
_BYTES_PER_SAMPLE = 2
_NEGATIVE_SCALE = 0x8000
_POSITIVE_SCALE = 0x7FFF
# RIFF/WAVE header for 16-bit mono linear PCM, all little-endian.
_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


class EncodedClip(BaseModel):
    """Encoded capture: container bytes plus the facts needed to describe them."""

    data: bytes
    sample_rate: int = Field(gt=0)
    sample_count: int = Field(ge=0)
    mime_type: str = WAV_MIME_TYPE

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def duration(self) -> float:
        return self.sample_count / self.sample_rate

    def save(self, path: str | Path) -> Path:
        return write_clip(path, self)


def as_float_samples(audio: AudioNumbers) -> FloatArray:
    return np.asarray(audio, dtype=np.float32).reshape(-1)


def quantize(samples: AudioNumbers) -> NDArray[np.int16]:
    """Clamp to [-1, 1] and scale to int16, negatives by 0x8000 and the rest by 0x7FFF."""
    values = np.nan_to_num(np.asarray(samples, dtype=np.float64).reshape(-1), nan=0.0)
    clipped = np.clip(values, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * _NEGATIVE_SCALE, clipped * _POSITIVE_SCALE)
    # astype truncates toward zero, matching a plain int16 store.
    return scaled.astype("<i2")


def dequantize(pcm: NDArray[np.int16]) -> FloatArray:
    values = np.asarray(pcm, dtype=np.float64)
    restored = np.where(values < 0, values / _NEGATIVE_SCALE, values / _POSITIVE_SCALE)
    return restored.astype(np.float32)


def wav_header(sample_count: int, sample_rate: int) -> bytes:
    data_bytes = sample_count * _BYTES_PER_SAMPLE
    return _HEADER.pack(
        b"RIFF",
        36 + data_bytes,
        b"WAVE",
        b"fmt ",
        16,
        1,
        1,
        sample_rate,
        sample_rate * _BYTES_PER_SAMPLE,
        _BYTES_PER_SAMPLE,
        16,
        b"data",
        data_bytes,
    )


def encode_wav(samples: AudioNumbers, sample_rate: int = SAMPLE_RATE) -> EncodedClip:
    """Encode float samples to a 16-bit mono PCM WAV container, in order."""

    pcm = quantize(samples)
    data = wav_header(int(pcm.size), sample_rate) + pcm.tobytes()
    return EncodedClip(data=data, sample_rate=sample_rate, sample_count=int(pcm.size))


def decode_wav(data: bytes) -> tuple[NDArray[np.int16], int]:
    """Parse a WAV container back into int16 samples and its sample rate."""

    pcm, sample_rate = sf.read(io.BytesIO(data), dtype="int16", always_2d=False)
    return np.asarray(pcm, dtype=np.int16).reshape(-1), int(sample_rate)


def write_clip(path: str | Path, clip: EncodedClip) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(clip.data)
    return target
