from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from beatbox.audio import WAV_HEADER_SIZE, decode_wav
from beatbox.capture import Capture, CaptureSession
from beatbox.errors import CaptureActiveError
from beatbox.mixbus import MixBus


def test_session_reblocks_in_arrival_order() -> None:
    session = CaptureSession(sample_rate=8_000, block_size=4)
    session.append(np.arange(3, dtype=np.float32))
    session.append(np.arange(3, 8, dtype=np.float32))
    assert session.block_count == 2
    session.append(np.arange(8, 11, dtype=np.float32))
    assert session.frames_captured == 11

    samples = session.close()
    assert samples.tolist() == list(range(11))
    assert not session.active


def test_closed_session_ignores_frames() -> None:
    session = CaptureSession(sample_rate=8_000, block_size=4)
    session.close()
    session.append(np.ones(10, dtype=np.float32))
    assert session.frames_captured == 0


def test_second_start_is_rejected_and_keeps_session() -> None:
    bus = MixBus(sample_rate=8_000)
    capture = Capture(bus, block_size=16)
    session = capture.start()
    bus.pull(10)

    with pytest.raises(CaptureActiveError):
        capture.start()

    assert capture.session is session
    assert session.active
    bus.pull(10)
    assert capture.captured_frames == 20


def test_stop_without_session_is_noop() -> None:
    capture = Capture(MixBus(sample_rate=8_000))
    assert capture.stop() is None
    assert not capture.is_active


def test_stop_with_nothing_captured_gives_header_only_clip() -> None:
    capture = Capture(MixBus(sample_rate=8_000))
    capture.start()
    clip = capture.stop()
    assert clip is not None
    assert len(clip.data) == WAV_HEADER_SIZE
    assert clip.sample_count == 0


def test_capture_encodes_post_gain_mix_in_order() -> None:
    bus = MixBus(sample_rate=8_000, gain=0.5)
    capture = Capture(bus, block_size=4096)
    bus.schedule(0, np.ones(3_000))
    bus.pull(100)
    capture.start()
    for _ in range(5):
        bus.pull(1_000)
    clip = capture.stop()
    bus.pull(100)

    assert clip is not None
    assert clip.sample_count == 5_000
    pcm, sample_rate = decode_wav(clip.data)
    assert sample_rate == 8_000
    assert pcm[: 2_900].tolist() == [16_383] * 2_900
    assert not pcm[2_900:].any()


def test_8192_zero_frames_captured() -> None:
    bus = MixBus(sample_rate=44_100)
    capture = Capture(bus)
    capture.start()
    for _ in range(8):
        bus.pull(1_024)
    clip = capture.stop()
    assert clip is not None
    assert len(clip.data) == 16_428
    assert clip.data[WAV_HEADER_SIZE:] == bytes(16_384)


def test_close_from_control_thread_keeps_whole_chunks_in_order() -> None:
    session = CaptureSession(sample_rate=8_000, block_size=64)
    chunk = 7
    started = threading.Event()
    done = threading.Event()

    def audio_thread() -> None:
        counter = 0
        while not done.is_set():
            session.append(np.arange(counter, counter + chunk, dtype=np.float32))
            counter += chunk
            if counter >= 70:
                started.set()

    worker = threading.Thread(target=audio_thread, daemon=True)
    worker.start()
    assert started.wait(timeout=2.0)
    samples = session.close()
    # The audio thread keeps appending after close.
    time.sleep(0.02)
    done.set()
    worker.join(timeout=2.0)

    assert samples.size >= 70
    assert samples.size % chunk == 0
    assert samples.tolist() == list(range(samples.size))
    assert session.frames_captured == 0
    assert session.close().size == 0


def test_stop_while_bus_is_pulled_on_another_thread() -> None:
    bus = MixBus(sample_rate=8_000)
    capture = Capture(bus, block_size=4096)
    block = 256
    pulled = [0]
    done = threading.Event()

    def audio_thread() -> None:
        while not done.is_set():
            bus.pull(block)
            pulled[0] += block

    capture.start()
    worker = threading.Thread(target=audio_thread, daemon=True)
    worker.start()
    deadline = time.monotonic() + 2.0
    while pulled[0] < 10 * block and time.monotonic() < deadline:
        time.sleep(0.001)

    before = pulled[0]
    clip = capture.stop()
    after = pulled[0]
    time.sleep(0.02)
    done.set()
    worker.join(timeout=2.0)

    assert clip is not None
    assert clip.sample_count % block == 0
    assert before <= clip.sample_count <= after + block
    assert len(clip.data) == WAV_HEADER_SIZE + 2 * clip.sample_count
    assert not capture.is_active
