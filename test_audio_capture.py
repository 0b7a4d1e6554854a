#!/usr/bin/env python3
"""Tests for microphone constraint processing (noise floor and auto gain).

Run: python3 test_audio_capture.py
"""

import asyncio
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

from audio_capture import MicCapture, MicConstraints, apply_constraints

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


def tone(amplitude, n=2048):
    """Square wave PCM chunk with the given amplitude (RMS == amplitude)."""
    samples = np.where(np.arange(n) % 2 == 0, amplitude, -amplitude).astype(np.int16)
    return samples.tobytes()


def rms(chunk):
    samples = np.frombuffer(chunk, dtype=np.int16).astype(np.float32)
    return float(np.sqrt(np.mean(samples ** 2)))


@test("Chunks under the noise floor become silence")
def test_noise_floor():
    out = apply_constraints(tone(50), MicConstraints())
    assert out == bytes(len(out))
    assert len(out) == len(tone(50))


@test("Quiet speech is amplified with capped gain")
def test_auto_gain_capped():
    out = apply_constraints(tone(200), MicConstraints())
    assert abs(rms(out) - 200 * 6.0) < 2, rms(out)


@test("Moderate speech is brought to the target level")
def test_auto_gain_target():
    out = apply_constraints(tone(1000), MicConstraints())
    assert abs(rms(out) - 3000) < 2, rms(out)


@test("Loud speech passes through unchanged")
def test_loud_unchanged():
    chunk = tone(8000)
    assert apply_constraints(chunk, MicConstraints()) == chunk


@test("Disabled processing leaves audio untouched")
def test_disabled_passthrough():
    chunk = tone(50)
    constraints = MicConstraints(noise_suppression=False, auto_gain=False)
    assert apply_constraints(chunk, constraints) == chunk


@test("Without echo cancellation the default mic is used")
def test_device_without_aec():
    capture = MicCapture(MicConstraints(echo_cancellation=False, aec_device_name="echo-cancel-source"))
    assert capture._resolve_device() is None
    capture = MicCapture(MicConstraints(aec_device_name=None))
    assert capture._resolve_device() is None


if __name__ == "__main__":
    print("=" * 60)
    print("Audio Capture Unit Tests")
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
