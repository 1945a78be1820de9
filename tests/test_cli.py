from __future__ import annotations

from pathlib import Path

import pytest

from beatbox import cli
from beatbox.audio import WAV_HEADER_SIZE, decode_wav
from beatbox.config import STEP_COUNT, InstrumentKind, Pattern


def test_render_writes_wav(tmp_path: Path) -> None:
    target = tmp_path / "beat.wav"
    code = cli.main(
        ["render", "--preset", "boom_bap", "--seconds", "0.5", "--output", str(target)]
    )

    assert code == 0
    data = target.read_bytes()
    pcm, sample_rate = decode_wav(data)
    assert sample_rate == 44_100
    assert pcm.size == 22_050
    assert len(data) == WAV_HEADER_SIZE + 2 * 22_050
    assert pcm.any()


def test_render_with_grid_rows(tmp_path: Path) -> None:
    target = tmp_path / "grid.wav"
    code = cli.main(
        [
            "render",
            "--kick",
            "x...x...x...x...",
            "--tempo",
            "90",
            "--seconds",
            "0.25",
            "--output",
            str(target),
        ]
    )
    assert code == 0
    assert target.exists()


def test_pads_offline(tmp_path: Path) -> None:
    target = tmp_path / "pads.wav"
    code = cli.main(["pads", "kick", "snare", "--output", str(target)])
    assert code == 0
    pcm, _ = decode_wav(target.read_bytes())
    assert pcm.size == round(0.25 * 44_100) * 3


def test_generate_with_preset_model(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["generate", "berlin techno", "--model", "preset"])
    assert code == 0
    assert "Four on the Floor" in capsys.readouterr().out


def test_unknown_instrument_reports_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BEATBOX_LOG_DIR", str(tmp_path))
    code = cli.main(["pads", "cowbell", "--output", str(tmp_path / "x.wav")])
    assert code == 1
    assert "cowbell" in (tmp_path / "beatbox.log").read_text(encoding="utf-8")


def test_doctor_reports(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["doctor"]) == 0
    out = capsys.readouterr().out
    assert "Pattern model" in out
    assert "Log file" in out


def test_pattern_table_has_one_column_per_step() -> None:
    pattern = Pattern.empty().toggled(InstrumentKind.KICK, 0)
    table = cli._pattern_table(pattern, title="128 BPM")
    assert len(table.columns) == STEP_COUNT + 1
    assert table.row_count == len(InstrumentKind)
