from __future__ import annotations

import logging
from pathlib import Path

import pytest

from beatbox import logging_utils
from beatbox.logging_utils import configure_logging, get_log_dir, get_log_path, log_exception


def test_log_path_uses_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BEATBOX_LOG_DIR", str(tmp_path))
    assert get_log_dir() == tmp_path
    assert get_log_path() == tmp_path / "beatbox.log"


def test_log_exception_appends_traceback(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BEATBOX_LOG_DIR", str(tmp_path))
    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        path = log_exception("render", exc)

    assert path == tmp_path / "beatbox.log"
    text = path.read_text(encoding="utf-8")
    assert "render failed: RuntimeError: boom" in text
    assert "Traceback" in text


def test_configure_logging_adds_file_handler(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BEATBOX_LOG_DIR", str(tmp_path))
    logger = logging.getLogger("beatbox")
    previous = list(logger.handlers)
    monkeypatch.setattr(logging_utils, "_configured", False)
    try:
        configure_logging(force=True)
        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert any(Path(h.baseFilename) == tmp_path / "beatbox.log" for h in file_handlers)
        assert logger.propagate
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        for handler in previous:
            logger.addHandler(handler)
