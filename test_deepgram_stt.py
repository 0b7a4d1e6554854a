#!/usr/bin/env python3
"""Tests for DeepgramConnection -- primary speech provider with a mock socket.

Tests the DeepgramConnection event translation and lifecycle using mock
objects for the Deepgram SDK and the microphone. No real WebSocket
connections or tokens are used.

Run: python3 test_deepgram_stt.py
"""

import asyncio
import sys
import threading
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent))

from audio_capture import MicConstraints
from speech_events import Provider, SpeechEventType

PASSED = 0
FAILED = 0
ERRORS = []


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


# ── Helper: Build mock Deepgram result events ────────────────────

def make_result_event(transcript, is_final=False, speech_final=False):
    """Create a ListenV1ResultsEvent with the given transcript fields."""
    from deepgram.extensions.types.sockets.listen_v1_results_event import (
        ListenV1ResultsEvent,
    )

    return ListenV1ResultsEvent(
        type="Results",
        channel_index=[0],
        duration=1.0,
        start=0.0,
        is_final=is_final,
        speech_final=speech_final,
        channel={
            "alternatives": [
                {
                    "transcript": transcript,
                    "confidence": 0.99,
                    "words": [],
                }
            ]
        },
        metadata={
            "request_id": "test-req-id",
            "model_info": {"name": "nova-3", "version": "2024-01-01", "arch": "nova"},
            "model_uuid": "test-uuid",
        },
    )


# ── Helper: connection wired to an event list ────────────────────

def make_connection(connection_id=7):
    """Create a DeepgramConnection whose events land in a list."""
    from deepgram_stt import DeepgramConnection

    events = []
    conn = DeepgramConnection(
        token="test-token",
        language="en-US",
        constraints=MicConstraints(),
        connection_id=connection_id,
        emit=events.append,
    )
    conn._loop = asyncio.get_running_loop()
    return conn, events


async def settle():
    """Let call_soon_threadsafe callbacks run."""
    await asyncio.sleep(0.01)


class FakeCapture:
    """Stands in for MicCapture: a queue and no device."""

    instances = []

    def __init__(self, constraints, app_name="", on_error=None):
        self.on_error = on_error
        self.queue = None
        self.stopped = False
        FakeCapture.instances.append(self)

    def start(self, loop):
        self.queue = asyncio.Queue()

    def stop(self):
        self.stopped = True


def make_sdk(block: threading.Event):
    """Mock DeepgramClient class whose socket listens until `block` is set."""
    dg_conn = MagicMock()
    dg_conn.start_listening.side_effect = lambda: block.wait(5)
    context = MagicMock()
    context.__enter__.return_value = dg_conn
    client = MagicMock()
    client.listen.v1.connect.return_value = context
    client_cls = MagicMock(return_value=client)
    return client_cls, client, context, dg_conn


# ══════════════════════════════════════════════════════════════════
# Test Group 1: Result translation
# ══════════════════════════════════════════════════════════════════

@test("speech_final flushes accumulated finals as one committed event")
async def test_speech_final_commits_accumulated():
    conn, events = make_connection()

    conn._on_message(make_result_event("Hello there", is_final=True))
    conn._on_message(make_result_event("how are you", is_final=True))
    conn._on_message(make_result_event("today", is_final=True, speech_final=True))
    await settle()

    committed = [e for e in events if e.type == SpeechEventType.COMMITTED]
    assert len(committed) == 1, f"Expected 1 commit, got {len(committed)}"
    assert committed[0].text == "Hello there how are you today", committed[0].text
    assert committed[0].connection_id == 7
    assert committed[0].provider == Provider.PRIMARY


@test("Interim results become partial events with accumulated prefix")
async def test_interim_results_are_partial():
    conn, events = make_connection()

    conn._on_message(make_result_event("So where", is_final=True))
    conn._on_message(make_result_event("did you gr", is_final=False))
    await settle()

    assert [e.type for e in events] == [SpeechEventType.PARTIAL]
    assert events[0].text == "So where did you gr", events[0].text


@test("Empty speech_final with nothing accumulated emits nothing")
async def test_empty_speech_final_ignored():
    conn, events = make_connection()

    conn._on_message(make_result_event("", is_final=True, speech_final=True))
    conn._on_message(make_result_event("", is_final=False))
    await settle()

    assert events == [], f"Expected no events, got {events}"


@test("Messages without a channel are ignored")
async def test_metadata_messages_ignored():
    conn, events = make_connection()

    conn._on_message(SimpleNamespace(type="Metadata"))
    conn._on_message(SimpleNamespace(type="UtteranceEnd", channel=None))
    await settle()

    assert events == []


@test("Accumulation resets after each committed utterance")
async def test_accumulation_resets():
    conn, events = make_connection()

    conn._on_message(make_result_event("first thing said", is_final=True, speech_final=True))
    conn._on_message(make_result_event("second thing said", is_final=True, speech_final=True))
    await settle()

    texts = [e.text for e in events if e.type == SpeechEventType.COMMITTED]
    assert texts == ["first thing said", "second thing said"], texts


# ══════════════════════════════════════════════════════════════════
# Test Group 2: Close and error reporting
# ══════════════════════════════════════════════════════════════════

@test("Unexpected close reports ended exactly once")
async def test_close_reports_ended_once():
    conn, events = make_connection()

    conn._on_close()
    conn._on_close()
    await settle()

    ended = [e for e in events if e.type == SpeechEventType.ENDED]
    assert len(ended) == 1, f"Expected 1 ended, got {len(ended)}"


@test("Close after our own close() is silent")
async def test_close_while_closing_silent():
    conn, events = make_connection()
    conn._closing = True

    conn._on_close()
    conn._on_error("socket reset")
    await settle()

    assert events == []


@test("SDK error is reported with its message")
async def test_error_reported():
    conn, events = make_connection()

    conn._on_error("401 Unauthorized")
    await settle()

    assert len(events) == 1
    assert events[0].type == SpeechEventType.ERROR
    assert "401" in events[0].error


@test("Capture failure is reported as an error")
async def test_capture_error_reported():
    conn, events = make_connection()

    conn._on_capture_error(OSError("no such device"))

    assert events[0].type == SpeechEventType.ERROR
    assert "audio-capture" in events[0].error


# ══════════════════════════════════════════════════════════════════
# Test Group 3: Lifecycle with a mocked SDK
# ══════════════════════════════════════════════════════════════════

@test("start() connects with token and language, then reports opened")
async def test_start_opens_connection():
    block = threading.Event()
    client_cls, client, context, dg_conn = make_sdk(block)
    conn, events = make_connection(connection_id=3)

    with patch("deepgram_stt.DeepgramClient", client_cls), \
            patch("deepgram_stt.MicCapture", FakeCapture):
        await conn.start()
        try:
            client_cls.assert_called_once_with(access_token="test-token")
            kwargs = client.listen.v1.connect.call_args.kwargs
            assert kwargs["language"] == "en-US"
            assert kwargs["model"] == "nova-3"
            assert kwargs["interim_results"] == "true"
            assert conn.connected
            assert events[0].type == SpeechEventType.OPENED
            assert events[0].connection_id == 3
        finally:
            await conn.close()
            block.set()


@test("Captured audio is forwarded to the socket")
async def test_audio_forwarded():
    block = threading.Event()
    client_cls, client, context, dg_conn = make_sdk(block)
    conn, events = make_connection()

    with patch("deepgram_stt.DeepgramClient", client_cls), \
            patch("deepgram_stt.MicCapture", FakeCapture):
        await conn.start()
        try:
            FakeCapture.instances[-1].queue.put_nowait(b"\x01\x02" * 100)
            await settle()
            dg_conn.send_media.assert_called_once_with(b"\x01\x02" * 100)
        finally:
            await conn.close()
            block.set()


@test("close() finalizes, exits the socket context and stops capture")
async def test_close_finalizes():
    block = threading.Event()
    client_cls, client, context, dg_conn = make_sdk(block)
    conn, events = make_connection()

    with patch("deepgram_stt.DeepgramClient", client_cls), \
            patch("deepgram_stt.MicCapture", FakeCapture):
        await conn.start()
        capture = FakeCapture.instances[-1]
        await conn.close()
        block.set()
        await asyncio.sleep(0.05)

    sent = dg_conn.send_control.call_args_list
    assert any(c.args[0].type == "Finalize" for c in sent), sent
    context.__exit__.assert_called_once()
    assert capture.stopped
    assert not conn.connected
    assert [e.type for e in events] == [SpeechEventType.OPENED], \
        f"No ended/error after our own close, got {[e.type for e in events]}"


@test("close() swallows SDK errors")
async def test_close_swallows_errors():
    block = threading.Event()
    client_cls, client, context, dg_conn = make_sdk(block)
    dg_conn.send_control.side_effect = RuntimeError("socket already closed")
    conn, events = make_connection()

    with patch("deepgram_stt.DeepgramClient", client_cls), \
            patch("deepgram_stt.MicCapture", FakeCapture):
        await conn.start()
        await conn.close()  # Must not raise
        block.set()


@test("Failed handshake raises out of start()")
async def test_handshake_failure_raises():
    client_cls, client, context, dg_conn = make_sdk(threading.Event())
    context.__enter__.side_effect = ConnectionError("handshake rejected")
    conn, events = make_connection()

    with patch("deepgram_stt.DeepgramClient", client_cls), \
            patch("deepgram_stt.MicCapture", FakeCapture):
        try:
            await conn.start()
        except ConnectionError:
            pass
        else:
            raise AssertionError("start() should raise on a rejected handshake")

    assert events == []


# ══════════════════════════════════════════════════════════════════
# Run all tests
# ══════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    print("=" * 60)
    print("DeepgramConnection Unit Tests")
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
