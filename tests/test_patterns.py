from __future__ import annotations

import pytest

from beatbox.config import InstrumentKind, PatternResult
from beatbox.errors import PatternFormatError, PatternGenerateError, PatternTransportError
from beatbox.patterns import (
    PRESETS,
    PresetPatternModel,
    build_pattern_prompt,
    build_user_message,
    generate_outcome,
    resolve_model,
)
from beatbox.providers.litellm import LiteLLMPatternAdapter, parse_pattern_payload


class RaisingModel:
    def __init__(self, exc: Exception) -> None:
        self._exc = exc

    async def generate(self, prompt: str) -> PatternResult:
        raise self._exc


class WrongTypeModel:
    async def generate(self, prompt: str) -> object:
        return {"name": "not a result"}


def test_prompt_describes_schema() -> None:
    prompt = build_pattern_prompt()
    for kind in InstrumentKind:
        assert kind.value in prompt
    assert "JSON" in prompt
    assert "neon rain" in build_user_message("neon rain")


def test_presets_are_sanitized() -> None:
    for preset in PRESETS.values():
        for kind in InstrumentKind:
            assert len(preset.steps.steps_for(kind)) == 16
        assert 60 <= preset.tempo <= 200


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("prompt", "preset"),
    [
        ("reggaeton party", "dembow"),
        ("lo-fi study beats", "boom_bap"),
        ("jungle rollers", "breakbeat"),
        ("berlin techno", "four_on_floor"),
        ("something epic", "anthem"),
    ],
)
async def test_preset_model_matches_keywords(prompt: str, preset: str) -> None:
    result = await PresetPatternModel().generate(prompt)
    assert result is PRESETS[preset]


def test_resolve_model_defaults_to_preset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BEATBOX_MODEL", raising=False)
    assert isinstance(resolve_model(), PresetPatternModel)


def test_resolve_model_external(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BEATBOX_MODEL", "external:openai/gpt-4o-mini")
    model = resolve_model()
    assert isinstance(model, LiteLLMPatternAdapter)
    assert model.model == "openai/gpt-4o-mini"


def test_resolve_model_passes_through_objects() -> None:
    model = PresetPatternModel()
    assert resolve_model(model) is model


def test_resolve_model_rejects_unknown_names() -> None:
    with pytest.raises(PatternGenerateError):
        resolve_model("mystery")


@pytest.mark.asyncio
async def test_generate_outcome_success() -> None:
    outcome = await generate_outcome(PresetPatternModel(), "house")
    assert outcome.ok
    assert outcome.failure is None
    assert outcome.result is PRESETS["four_on_floor"]


@pytest.mark.asyncio
async def test_generate_outcome_transport_failure() -> None:
    outcome = await generate_outcome(RaisingModel(PatternTransportError("timeout")), "x")
    assert not outcome.ok
    assert outcome.failure == "transport"
    assert outcome.message == "timeout"


@pytest.mark.asyncio
async def test_generate_outcome_malformed_failure() -> None:
    outcome = await generate_outcome(RaisingModel(PatternFormatError("not json")), "x")
    assert outcome.failure == "malformed"


@pytest.mark.asyncio
async def test_generate_outcome_rejects_wrong_type() -> None:
    outcome = await generate_outcome(WrongTypeModel(), "x")  # type: ignore[arg-type]
    assert outcome.failure == "malformed"
    assert outcome.result is None


class PayloadModel:
    def __init__(self, content: str) -> None:
        self._content = content

    async def generate(self, prompt: str) -> PatternResult:
        return parse_pattern_payload(self._content)


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ['{"steps": {"KICK": true}}', '{"steps": {"HIHAT": 5}}'])
async def test_generate_outcome_scalar_row_is_malformed(content: str) -> None:
    outcome = await generate_outcome(PayloadModel(content), "x")
    assert outcome.failure == "malformed"
    assert outcome.result is None
