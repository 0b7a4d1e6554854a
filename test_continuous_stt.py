#!/usr/bin/env python3
"""Tests for local recognition -- VAD segmentation, filtering and availability.

VAD probabilities and Whisper output are faked; no model or microphone is
loaded.

Run: python3 test_continuous_stt.py
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent))

from audio_capture import CHUNK_SIZE, MicConstraints
from continuous_stt import (
    MAX_BUFFER_CHUNKS,
    SILENCE_CHUNKS_THRESHOLD,
    LocalRecognition,
    LocalWhisperProvider,
)
from speech_events import Provider, SpeechEventType

PASSED = 0
FAILED = 0
ERRORS = []

CHUNK = b"\x10\x00" * (CHUNK_SIZE // 2)


def test(name):
    """Decorator to register and run a test."""
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} — {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} — {type(e).__name__}: {e}")


class FakeWhisper:
    def __init__(self, text):
        self.text = text
        self.calls = []

    def transcribe(self, pcm, language=None):
        self.calls.append((len(pcm), language))
        return self.text


def make_recognition(text="Where did you two meet?"):
    events = []
    whisper = FakeWhisper(text)
    rec = LocalRecognition("en", MicConstraints(), 4, events.append, whisper)
    return rec, events, whisper


def feed(rec, probs):
    """Push one chunk per VAD probability; return the PCM segments produced."""
    segments = []
    for p in probs:
        with patch.object(rec, "_run_vad", return_value=p):
            pcm = rec._process_chunk(CHUNK)
        if pcm:
            segments.append(pcm)
    return segments


# ══════════════════════════════════════════════════════════════════
# Test Group 1: Segmentation
# ══════════════════════════════════════════════════════════════════

@test("Speech followed by a silence gap yields one segment")
def test_segment_on_silence():
    rec, events, whisper = make_recognition()

    segments = feed(rec, [0.9] * 6 + [0.1] * SILENCE_CHUNKS_THRESHOLD)

    assert len(segments) == 1
    assert len(segments[0]) == CHUNK_SIZE * (6 + SILENCE_CHUNKS_THRESHOLD)


@test("Leading silence is never buffered")
def test_leading_silence_dropped():
    rec, events, whisper = make_recognition()

    assert feed(rec, [0.1] * 50) == []
    assert rec._chunks_in_buffer == 0


@test("A blip shorter than the minimum speech is discarded")
def test_short_blip_discarded():
    rec, events, whisper = make_recognition()

    segments = feed(rec, [0.9, 0.9] + [0.1] * SILENCE_CHUNKS_THRESHOLD)

    assert segments == []
    assert rec._chunks_in_buffer == 0


@test("Continuous speech is cut at the buffer cap")
def test_buffer_cap():
    rec, events, whisper = make_recognition()

    segments = feed(rec, [0.9] * MAX_BUFFER_CHUNKS)

    assert len(segments) == 1
    assert len(segments[0]) == CHUNK_SIZE * MAX_BUFFER_CHUNKS


# ══════════════════════════════════════════════════════════════════
# Test Group 2: Transcription and events
# ══════════════════════════════════════════════════════════════════

@test("Clean transcript is emitted as a committed fallback event")
async def test_transcribe_commits():
    rec, events, whisper = make_recognition("Where did you two meet?")
    rec._running = True

    await rec._transcribe(CHUNK * 8)

    assert whisper.calls == [(CHUNK_SIZE * 8, "en")]
    assert len(events) == 1
    assert events[0].type == SpeechEventType.COMMITTED
    assert events[0].provider == Provider.FALLBACK
    assert events[0].connection_id == 4
    assert events[0].text == "Where did you two meet?"


@test("Hallucinated transcript is dropped")
async def test_transcribe_drops_hallucination():
    rec, events, whisper = make_recognition("Thanks for watching!")
    rec._running = True

    await rec._transcribe(CHUNK * 8)

    assert events == []


@test("Transcript after close() is dropped")
async def test_transcribe_after_close():
    rec, events, whisper = make_recognition()
    rec._running = False

    await rec._transcribe(CHUNK * 8)

    assert events == []


@test("Microphone failure is a fatal error, reported once")
async def test_capture_error_fatal():
    rec, events, whisper = make_recognition()
    rec._running = True

    rec._on_capture_error(OSError("Connection refused"))
    rec._on_capture_error(OSError("Connection refused"))

    assert len(events) == 1
    assert events[0].type == SpeechEventType.ERROR
    assert events[0].fatal


@test("start() without the VAD model raises and emits nothing")
async def test_start_without_vad():
    rec, events, whisper = make_recognition()

    with patch("continuous_stt.VAD_MODEL_PATH", Path("/nonexistent/silero_vad.onnx")):
        try:
            await rec.start()
        except RuntimeError:
            pass
        else:
            raise AssertionError("Expected RuntimeError")

    assert events == []
    assert not rec.running


# ══════════════════════════════════════════════════════════════════
# Test Group 3: Provider
# ══════════════════════════════════════════════════════════════════

@test("Provider is unsupported without the VAD model")
def test_provider_unsupported_without_model():
    provider = LocalWhisperProvider()
    with patch("continuous_stt.VAD_MODEL_PATH", Path("/nonexistent/silero_vad.onnx")):
        assert provider.is_supported() is False


@test("Provider is unsupported when a library is missing")
def test_provider_unsupported_without_library():
    provider = LocalWhisperProvider()
    with patch("continuous_stt.importlib.util.find_spec", return_value=None):
        assert provider.is_supported() is False


@test("connect() builds a fallback recognition with the given id")
def test_provider_connect():
    provider = LocalWhisperProvider()
    rec = provider.connect("vi", MicConstraints(), 12, lambda e: None)

    assert isinstance(rec, LocalRecognition)
    assert rec.connection_id == 12
    assert rec.provider == Provider.FALLBACK


if __name__ == "__main__":
    print("=" * 60)
    print("Local Recognition Unit Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
