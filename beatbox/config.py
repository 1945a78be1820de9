from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any, cast

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidPatternError

_LOGGER = logging.getLogger("beatbox.config")

STEP_COUNT = 16
TEMPO_MIN = 60.0
TEMPO_MAX = 200.0
DEFAULT_TEMPO = 128.0
GENERATED_TEMPO_DEFAULT = 120.0
GENERATED_NAME_DEFAULT = "AI Groove"
SAMPLE_RATE = 44_100

_TRUE_STRINGS = frozenset({"true", "x", "1", "yes", "on"})
_GRID_ON = frozenset({"x", "X"})
_GRID_OFF = "."


class InstrumentKind(str, Enum):
    KICK = "KICK"
    SNARE = "SNARE"
    HIHAT = "HIHAT"
    SYNTH = "SYNTH"

    @property
    def field(self) -> str:
        return self.value.lower()

    @classmethod
    def parse(cls, value: str | InstrumentKind) -> InstrumentKind:
        if isinstance(value, InstrumentKind):
            return value
        try:
            return cls(value.strip().upper())
        except ValueError as exc:
            valid = ", ".join(kind.value for kind in INSTRUMENTS)
            raise InvalidPatternError(f"Unknown instrument {value!r}. Valid: {valid}") from exc


# Every per-instrument loop goes through this tuple, in this order.
INSTRUMENTS: tuple[InstrumentKind, ...] = (
    InstrumentKind.KICK,
    InstrumentKind.SNARE,
    InstrumentKind.HIHAT,
    InstrumentKind.SYNTH,
)


def clamp_tempo(bpm: float) -> float:
    """Clamp a tempo to the supported range instead of rejecting it."""
    return max(TEMPO_MIN, min(TEMPO_MAX, float(bpm)))


def seconds_per_step(bpm: float) -> float:
    """Duration of one 16th note at ``bpm``."""
    return 60.0 / bpm / 4


def _coerce_step(value: object) -> bool:
    match value:
        case None:
            return False
        case bool():
            return value
        case str():
            return value.strip().lower() in _TRUE_STRINGS
        case int() | float():
            return value != 0
        case _:
            raise ValueError(f"step value must be a boolean, got {type(value).__name__}")


def sanitize_steps(values: Iterable[object] | None) -> tuple[bool, ...]:
    """Pad with ``False`` or truncate so the sequence has exactly 16 entries."""
    if values is None:
        return (False,) * STEP_COUNT
    if isinstance(values, (str, bytes, Mapping)) or not isinstance(values, Iterable):
        raise ValueError("steps must be a sequence of booleans")
    coerced = [_coerce_step(value) for value in list(values)[:STEP_COUNT]]
    coerced.extend([False] * (STEP_COUNT - len(coerced)))
    return tuple(coerced)


def parse_grid(row: str) -> tuple[bool, ...]:
    """Parse an ``x...x...`` row; spaces and bar separators are ignored."""
    steps: list[bool] = []
    for char in row:
        if char in _GRID_ON:
            steps.append(True)
        elif char == _GRID_OFF:
            steps.append(False)
    return sanitize_steps(steps)


class Pattern(BaseModel):
    """Step grid with one fixed 16-step row per instrument."""

    kick: tuple[bool, ...] = (False,) * STEP_COUNT
    snare: tuple[bool, ...] = (False,) * STEP_COUNT
    hihat: tuple[bool, ...] = (False,) * STEP_COUNT
    synth: tuple[bool, ...] = (False,) * STEP_COUNT

    model_config = ConfigDict(frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _sanitize_rows(cls, data: object) -> object:
        if not isinstance(data, Mapping):
            return data
        source = cast(Mapping[Any, Any], data)
        rows: dict[str, Any] = {}
        for key, value in source.items():
            name = key.value if isinstance(key, InstrumentKind) else str(key)
            rows[name.lower()] = value
        return {kind.field: sanitize_steps(rows.get(kind.field)) for kind in INSTRUMENTS}

    @classmethod
    def empty(cls) -> Pattern:
        return cls()

    @classmethod
    def from_grid(cls, rows: Mapping[str | InstrumentKind, str]) -> Pattern:
        parsed = {InstrumentKind.parse(key).field: parse_grid(row) for key, row in rows.items()}
        return cls.model_validate(parsed)

    def steps_for(self, kind: InstrumentKind) -> tuple[bool, ...]:
        return cast(tuple[bool, ...], getattr(self, kind.field))

    def is_active(self, kind: InstrumentKind, step: int) -> bool:
        return self.steps_for(kind)[step % STEP_COUNT]

    def active_at(self, step: int) -> tuple[InstrumentKind, ...]:
        index = step % STEP_COUNT
        return tuple(kind for kind in INSTRUMENTS if self.steps_for(kind)[index])

    def with_steps(self, kind: InstrumentKind, steps: Iterable[object]) -> Pattern:
        return self.model_copy(update={kind.field: sanitize_steps(steps)})

    def toggled(self, kind: InstrumentKind, step: int) -> Pattern:
        if not 0 <= step < STEP_COUNT:
            raise InvalidPatternError(f"step must be in [0, {STEP_COUNT - 1}], got {step}")
        row = list(self.steps_for(kind))
        row[step] = not row[step]
        return self.with_steps(kind, row)

    def as_grid(self) -> dict[InstrumentKind, str]:
        return {
            kind: "".join("x" if on else _GRID_OFF for on in self.steps_for(kind))
            for kind in INSTRUMENTS
        }

    def as_payload(self) -> dict[str, list[bool]]:
        return {kind.value: list(self.steps_for(kind)) for kind in INSTRUMENTS}


class PatternResult(BaseModel):
    """Sanitized answer from the pattern-generation service."""

    name: str = GENERATED_NAME_DEFAULT
    tempo: float = GENERATED_TEMPO_DEFAULT
    steps: Pattern = Field(default_factory=Pattern)

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("name", mode="before")
    @classmethod
    def _default_name(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return GENERATED_NAME_DEFAULT
        return value

    @field_validator("tempo", mode="before")
    @classmethod
    def _default_tempo(cls, value: object) -> object:
        # Falsy tempos (missing, null, 0, "") fall back to the default.
        if not value:
            return GENERATED_TEMPO_DEFAULT
        return value

    @field_validator("steps", mode="before")
    @classmethod
    def _default_steps(cls, value: object) -> object:
        if value is None:
            return {}
        return value

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> PatternResult:
        return cls.model_validate(payload)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _LOGGER.warning("Ignoring %s=%r (not an integer).", name, value)
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _LOGGER.warning("Ignoring %s=%r (not a number).", name, value)
        return default


class EngineSettings(BaseModel):
    sample_rate: int = Field(default=SAMPLE_RATE, gt=0)
    block_size: int = Field(default=1024, gt=0)
    capture_block_size: int = Field(default=4096, gt=0)
    gain: float = Field(default=0.5, ge=0.0)
    lookahead: float = Field(default=0.1, gt=0.0)
    tick_interval: float | None = Field(default=1 / 60, gt=0.0)
    fft_size: int = Field(default=2048, ge=32)
    device: int | str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("fft_size")
    @classmethod
    def _power_of_two(cls, value: int) -> int:
        if value & (value - 1):
            raise ValueError("fft_size must be a power of two")
        return value

    @classmethod
    def from_env(cls) -> EngineSettings:
        device = os.environ.get("BEATBOX_DEVICE", "").strip() or None
        return cls(
            sample_rate=_env_int("BEATBOX_SAMPLE_RATE", SAMPLE_RATE),
            block_size=_env_int("BEATBOX_BLOCK_SIZE", 1024),
            gain=_env_float("BEATBOX_GAIN", 0.5),
            device=int(device) if device is not None and device.isdigit() else device,
        )
