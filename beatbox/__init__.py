from __future__ import annotations

from .audio import EncodedClip, decode_wav, encode_wav, write_clip
from .config import (
    INSTRUMENTS,
    SAMPLE_RATE,
    STEP_COUNT,
    EngineSettings,
    InstrumentKind,
    Pattern,
    PatternResult,
)
from .engine import Engine
from .errors import (
    AudioUnavailableError,
    BeatboxError,
    CaptureActiveError,
    InvalidPatternError,
    PatternFormatError,
    PatternGenerateError,
    PatternTransportError,
)
from .logging_utils import configure_logging as _configure_logging
from .patterns import (
    GenerateOutcome,
    PatternModel,
    PresetPatternModel,
    generate_outcome,
    resolve_model,
)

__all__ = [
    "INSTRUMENTS",
    "SAMPLE_RATE",
    "STEP_COUNT",
    "AudioUnavailableError",
    "BeatboxError",
    "CaptureActiveError",
    "EncodedClip",
    "Engine",
    "EngineSettings",
    "GenerateOutcome",
    "InstrumentKind",
    "InvalidPatternError",
    "Pattern",
    "PatternFormatError",
    "PatternGenerateError",
    "PatternModel",
    "PatternResult",
    "PatternTransportError",
    "PresetPatternModel",
    "decode_wav",
    "encode_wav",
    "generate_outcome",
    "resolve_model",
    "write_clip",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
