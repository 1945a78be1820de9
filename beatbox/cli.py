from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from collections.abc import Iterable
from importlib.util import find_spec

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .audio import EncodedClip
from .backend import OfflineOutput, load_sounddevice
from .config import INSTRUMENTS, STEP_COUNT, EngineSettings, InstrumentKind, Pattern
from .engine import Engine
from .errors import AudioUnavailableError
from .logging_utils import configure_logging, get_log_path, log_exception
from .patterns import (
    DEFAULT_MODEL_ENV,
    PRESETS,
    GenerateOutcome,
    generate_outcome,
    resolve_model,
)

_LOGGER = logging.getLogger("beatbox.cli")
_CONSOLE = Console()
_DEFAULT_PRESET = "four_on_floor"
_PAD_SPACING = 0.25


def _render_error(context: str, exc: BaseException) -> None:
    _CONSOLE.print(f"[bold red]{context} failed:[/] {type(exc).__name__}: {escape(str(exc))}")
    _CONSOLE.print(f"[dim]Details were written to {get_log_path()}[/]")


def _pattern_table(pattern: Pattern, *, title: str | None = None) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("")
    for step in range(STEP_COUNT):
        table.add_column(str(step + 1), justify="center")
    for kind, row in pattern.as_grid().items():
        cells = ["[green]x[/]" if char == "x" else "[dim].[/]" for char in row]
        table.add_row(kind.value, *cells)
    return table


def _add_pattern_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--preset", choices=sorted(PRESETS), default=None)
    parser.add_argument("--tempo", type=float, default=None, help="BPM, clamped to 60-200.")
    for kind in INSTRUMENTS:
        parser.add_argument(
            f"--{kind.field}",
            type=str,
            default=None,
            metavar="GRID",
            help=f"{kind.value} row such as 'x...x...x...x...'.",
        )


def _apply_pattern_arguments(engine: Engine, args: argparse.Namespace) -> None:
    rows = {kind: getattr(args, kind.field) for kind in INSTRUMENTS}
    given = {kind: row for kind, row in rows.items() if row is not None}
    if args.preset is None and given:
        pattern = Pattern.empty()
    else:
        preset = PRESETS[args.preset or _DEFAULT_PRESET]
        pattern = preset.steps
        engine.set_tempo(preset.tempo)
    for kind, row in given.items():
        pattern = pattern.with_steps(kind, Pattern.from_grid({kind: row}).steps_for(kind))
    engine.set_pattern(pattern)
    if args.tempo is not None:
        engine.set_tempo(args.tempo)


def _report_failure(outcome: GenerateOutcome) -> None:
    message = escape(outcome.message or "")
    _CONSOLE.print(f"[yellow]Generation failed ({outcome.failure}):[/] {message}")


def _save_clip(clip: EncodedClip | None, output: str) -> None:
    if clip is None:
        _CONSOLE.print("Nothing was captured.")
        return
    path = clip.save(output)
    _CONSOLE.print(f"Wrote {clip.duration:.2f}s to {path} ({len(clip.data)} bytes)")


def _run_play(args: argparse.Namespace) -> int:
    settings = EngineSettings.from_env()
    with Engine(settings, model=args.model) as engine:
        _apply_pattern_arguments(engine, args)
        if args.prompt:
            outcome = asyncio.run(engine.generate_pattern(args.prompt))
            if not outcome.ok:
                _report_failure(outcome)
        _CONSOLE.print(_pattern_table(engine.pattern, title=f"{engine.tempo:.0f} BPM"))
        if args.record:
            engine.start_capture()
        engine.start()
        with _CONSOLE.status("Playing (Ctrl+C to stop)"):
            try:
                time.sleep(args.seconds)
            except KeyboardInterrupt:
                _LOGGER.info("Interrupted.")
        clip = engine.stop()
    if args.record:
        _save_clip(clip, args.record)
    return 0


def _run_render(args: argparse.Namespace) -> int:
    settings = EngineSettings.from_env()
    engine = Engine(settings, output=OfflineOutput(block_size=settings.block_size))
    with engine:
        _apply_pattern_arguments(engine, args)
        engine.start_capture()
        engine.start()
        with _CONSOLE.status("Rendering"):
            engine.render(args.seconds)
        clip = engine.stop()
    _save_clip(clip, args.output)
    return 0


def _run_generate(args: argparse.Namespace) -> int:
    with _CONSOLE.status("Generating pattern"):
        outcome = asyncio.run(generate_outcome(resolve_model(args.model), args.prompt))
    if outcome.result is None:
        _report_failure(outcome)
        return 1
    result = outcome.result
    title = f"{result.name} ({result.tempo:.0f} BPM)"
    _CONSOLE.print(_pattern_table(result.steps, title=title))
    return 0


def _run_pads(args: argparse.Namespace) -> int:
    kinds = [InstrumentKind.parse(name) for name in args.instruments]
    settings = EngineSettings.from_env()
    if args.output:
        engine = Engine(settings, output=OfflineOutput(block_size=settings.block_size))
        with engine:
            engine.start_capture()
            for kind in kinds:
                engine.play_instrument(kind, args.pitch)
                engine.render(_PAD_SPACING)
            engine.render(_PAD_SPACING)
            clip = engine.stop_capture()
        _save_clip(clip, args.output)
        return 0
    with Engine(settings) as engine:
        for kind in kinds:
            engine.play_instrument(kind, args.pitch)
            time.sleep(_PAD_SPACING)
        time.sleep(_PAD_SPACING)
    return 0


def _doctor_lines() -> Iterable[str]:
    settings = EngineSettings.from_env()
    yield f"Sample rate: {settings.sample_rate} Hz, block size: {settings.block_size}"
    try:
        sd = load_sounddevice()
    except AudioUnavailableError as exc:
        yield f"Audio output: unavailable ({exc})"
    else:
        try:
            device = sd.query_devices(settings.device, kind="output")
            yield f"Audio output: {device['name']}"
        except Exception as exc:
            yield f"Audio output: no usable output device ({exc})"
    model = os.environ.get(DEFAULT_MODEL_ENV, "preset")
    yield f"Pattern model: {model}"
    yield f"litellm installed: {find_spec('litellm') is not None}"
    yield f"Log file: {get_log_path()}"
    yield "Hints:"
    yield "- Set BEATBOX_MODEL=external:<litellm model> to generate patterns with an LLM."
    yield "- Use `beatbox render` when no audio device is available."


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="beatbox")
    sub = parser.add_subparsers(dest="command", required=True)

    play = sub.add_parser("play", help="Play a pattern on the audio device.")
    _add_pattern_arguments(play)
    play.add_argument("--seconds", type=float, default=8.0)
    play.add_argument("--prompt", type=str, default=None, help="Generate the pattern from a vibe.")
    play.add_argument("--model", type=str, default=None)
    play.add_argument("--record", type=str, default=None, metavar="PATH")

    render = sub.add_parser("render", help="Render a pattern offline to a WAV file.")
    _add_pattern_arguments(render)
    render.add_argument("--seconds", type=float, default=4.0)
    render.add_argument("--output", type=str, default="beat.wav")

    generate = sub.add_parser("generate", help="Generate a pattern from a prompt.")
    generate.add_argument("prompt", type=str)
    generate.add_argument("--model", type=str, default=None)

    pads = sub.add_parser("pads", help="Hit instruments one after another.")
    pads.add_argument(
        "instruments",
        nargs="+",
        type=str,
        help=", ".join(kind.value for kind in INSTRUMENTS),
    )
    pads.add_argument("--pitch", type=float, default=0.0, help="Semitone offset for SYNTH.")
    pads.add_argument("--output", type=str, default=None, metavar="PATH")

    sub.add_parser("doctor", help="Check audio output and configuration.")
    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    try:
        parser = build_parser()
        args = parser.parse_args(argv)

        match args.command:
            case "play":
                return _run_play(args)
            case "render":
                return _run_render(args)
            case "generate":
                return _run_generate(args)
            case "pads":
                return _run_pads(args)
            case "doctor":
                for line in _doctor_lines():
                    _CONSOLE.print(line)
                return 0

        parser.print_help()
        return 1
    except Exception as exc:
        debug = bool(os.environ.get("BEATBOX_DEBUG"))
        _LOGGER.warning("beatbox CLI failed: %s", exc, exc_info=debug)
        log_exception("beatbox CLI", exc)
        _render_error("beatbox CLI", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
