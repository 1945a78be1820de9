from __future__ import annotations

import logging
import os
from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Literal, Protocol, TypeGuard

from pydantic import BaseModel, ConfigDict, ValidationError

from .config import Pattern, PatternResult
from .errors import PatternFormatError, PatternGenerateError, PatternTransportError

_LOGGER = logging.getLogger("beatbox.patterns")

EXTERNAL_PREFIX = "external:"
DEFAULT_MODEL_ENV = "BEATBOX_MODEL"
FailureKind = Literal["transport", "malformed"]


class PatternModel(Protocol):
    async def generate(self, prompt: str) -> PatternResult: ...


class GenerateOutcome(BaseModel):
    """Success or failure of one generation request, never an exception."""

    prompt: str
    result: PatternResult | None = None
    failure: FailureKind | None = None
    message: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def ok(self) -> bool:
        return self.result is not None

    @classmethod
    def success(cls, prompt: str, result: PatternResult) -> GenerateOutcome:
        return cls(prompt=prompt, result=result)

    @classmethod
    def failed(cls, prompt: str, failure: FailureKind, message: str) -> GenerateOutcome:
        return cls(prompt=prompt, failure=failure, message=message)


def build_pattern_prompt() -> str:
    return (
        "You are a drum-machine programmer. Turn the user's vibe into a one-bar, "
        "16-step pattern for four instruments: KICK, SNARE, HIHAT and SYNTH. "
        "Each step is a 16th note; true means the instrument plays on that step.\n"
        "Reply with a single JSON object and nothing else, shaped as:\n"
        '{"name": "<short title>", "tempo": <BPM between 60 and 200>, '
        '"steps": {"KICK": [16 booleans], "SNARE": [16 booleans], '
        '"HIHAT": [16 booleans], "SYNTH": [16 booleans]}}'
    )


def build_user_message(prompt: str) -> str:
    return f'Generate a 16-step rhythmic pattern based on this vibe: "{prompt}".'


def _grid(kick: str, snare: str, hihat: str, synth: str) -> Pattern:
    return Pattern.from_grid({"KICK": kick, "SNARE": snare, "HIHAT": hihat, "SYNTH": synth})


PRESETS: Mapping[str, PatternResult] = MappingProxyType(
    {
        "four_on_floor": PatternResult(
            name="Four on the Floor",
            tempo=128,
            steps=_grid(
                "x...x...x...x...",
                "....x.......x...",
                "..x...x...x...x.",
                "x.....x...x.....",
            ),
        ),
        "dembow": PatternResult(
            name="Dembow Heat",
            tempo=100,
            steps=_grid(
                "x...x...x...x...",
                "...x..x....x..x.",
                "x.x.x.x.x.x.x.x.",
                "x.......x..x....",
            ),
        ),
        "boom_bap": PatternResult(
            name="Dusty Boom Bap",
            tempo=90,
            steps=_grid(
                "x......x..x.....",
                "....x.......x...",
                "x.x.x.x.x.x.x.x.",
                "x...............",
            ),
        ),
        "breakbeat": PatternResult(
            name="Rolling Break",
            tempo=174,
            steps=_grid(
                "x.........x.....",
                "....x..x.x..x...",
                "xxxxxxxxxxxxxxxx",
                "x.....x.........",
            ),
        ),
        "anthem": PatternResult(
            name="Stadium Anthem",
            tempo=120,
            steps=_grid(
                "x.......x.x.....",
                "....x.......x...",
                "x.x.x.x.x.x.x.x.",
                "x..x..x...x..x..",
            ),
        ),
    }
)


def _preset_for(prompt: str) -> PatternResult:
    prompt_lower = prompt.lower()

    def _has_any(words: Sequence[str]) -> bool:
        return any(word in prompt_lower for word in words)

    match True:
        case _ if _has_any(("latin", "reggaeton", "dembow", "cumbia")):
            return PRESETS["dembow"]
        case _ if _has_any(("hip hop", "hip-hop", "boom bap", "lofi", "lo-fi")):
            return PRESETS["boom_bap"]
        case _ if _has_any(("dnb", "drum and bass", "jungle", "break")):
            return PRESETS["breakbeat"]
        case _ if _has_any(("techno", "house", "club", "disco")):
            return PRESETS["four_on_floor"]
        case _:
            return PRESETS["anthem"]


class PresetPatternModel:
    """Offline keyword match against a handful of built-in grooves."""

    async def generate(self, prompt: str) -> PatternResult:
        preset = _preset_for(prompt)
        _LOGGER.debug("Preset model picked %r for %r", preset.name, prompt)
        return preset


ModelSpec = str | PatternModel


def _is_model(obj: object) -> TypeGuard[PatternModel]:
    return hasattr(obj, "generate")


def resolve_model(model: ModelSpec | None = None) -> PatternModel:
    if model is None:
        model = os.environ.get(DEFAULT_MODEL_ENV, "preset").strip() or "preset"
    if isinstance(model, str):
        if model.startswith(EXTERNAL_PREFIX):
            from .providers.litellm import LiteLLMPatternAdapter

            return LiteLLMPatternAdapter(model=model.removeprefix(EXTERNAL_PREFIX))
        match model:
            case "preset":
                return PresetPatternModel()
            case _:
                raise PatternGenerateError(f"Unknown model choice: {model!r}")
    if _is_model(model):
        return model
    raise PatternGenerateError(f"Unknown model choice: {model!r}")


async def generate_outcome(model: PatternModel, prompt: str) -> GenerateOutcome:
    """Run one generation and classify any failure instead of raising."""
    try:
        result = await model.generate(prompt)
    except PatternTransportError as exc:
        _LOGGER.warning("Pattern service unreachable: %s", exc, exc_info=True)
        return GenerateOutcome.failed(prompt, "transport", str(exc))
    except (PatternFormatError, ValidationError) as exc:
        _LOGGER.warning("Pattern service returned unusable content: %s", exc, exc_info=True)
        return GenerateOutcome.failed(prompt, "malformed", str(exc))
    if not isinstance(result, PatternResult):
        _LOGGER.warning("Pattern model returned %s, not a PatternResult.", type(result).__name__)
        return GenerateOutcome.failed(
            prompt, "malformed", f"expected PatternResult, got {type(result).__name__}"
        )
    return GenerateOutcome.success(prompt, result)
