"""Microphone capture shared by the primary and fallback speech providers.

Records 24kHz 16-bit mono PCM in a daemon thread and hands chunks to an
asyncio.Queue on the session loop. Microphone constraints are applied per
chunk:

- echo_cancellation: record from the PipeWire echo-cancelled source when one
  is configured and reachable, otherwise the default mic
- noise_suppression: chunks under the noise floor are replaced by silence
- auto_gain: quiet speech is scaled toward a target RMS (capped gain)
"""

import asyncio
import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SAMPLE_RATE = 24000
CHANNELS = 1
CHUNK_SIZE = 4096  # bytes per read (~85ms at 24kHz 16-bit mono)
BYTES_PER_SAMPLE = 2


@dataclass(frozen=True)
class MicConstraints:
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain: bool = True
    aec_device_name: str | None = None
    noise_floor_rms: float = 120.0
    target_rms: float = 3000.0
    max_gain: float = 6.0


def apply_constraints(chunk: bytes, constraints: MicConstraints) -> bytes:
    """Apply noise suppression and auto gain to one PCM chunk."""
    if not (constraints.noise_suppression or constraints.auto_gain) or not chunk:
        return chunk

    import numpy as np

    samples = np.frombuffer(chunk, dtype=np.int16).astype(np.float32)
    if samples.size == 0:
        return chunk
    rms = float(np.sqrt(np.mean(samples ** 2)))

    if constraints.noise_suppression and rms < constraints.noise_floor_rms:
        return bytes(len(chunk))

    if constraints.auto_gain and 0.0 < rms < constraints.target_rms:
        gain = min(constraints.target_rms / rms, constraints.max_gain)
        samples = np.clip(samples * gain, -32768, 32767)
        return samples.astype(np.int16).tobytes()

    return chunk


class MicCapture:
    """Threaded microphone reader feeding an asyncio.Queue.

    Args:
        constraints: MicConstraints for device choice and per-chunk processing
        app_name: PulseAudio client name
        on_error: callback(Exception) run on the loop when the device fails
    """

    def __init__(self, constraints: MicConstraints, app_name: str = "live-coach",
                 on_error=None):
        self._constraints = constraints
        self._app_name = app_name
        self._on_error = on_error
        self._stop_event = threading.Event()
        self._thread = None
        self.queue: asyncio.Queue | None = None

    def start(self, loop: asyncio.AbstractEventLoop):
        """Start the capture thread. Chunks land on self.queue."""
        self.queue = asyncio.Queue(maxsize=200)
        self._stop_event.clear()
        device_name = self._resolve_device()
        self._thread = threading.Thread(
            target=self._capture_thread, args=(device_name, loop), daemon=True
        )
        self._thread.start()

    def stop(self):
        self._stop_event.set()

    def _resolve_device(self):
        """Try the echo-cancelled source, fall back to the default mic (None)."""
        if not self._constraints.echo_cancellation or not self._constraints.aec_device_name:
            return None

        try:
            import pasimple
            probe = pasimple.PaSimple(
                pasimple.PA_STREAM_RECORD,
                pasimple.PA_SAMPLE_S16LE,
                CHANNELS, SAMPLE_RATE,
                app_name=self._app_name,
                device_name=self._constraints.aec_device_name,
            )
            probe.read(CHUNK_SIZE)
            del probe
            logger.info("Using echo-cancelled source '%s'", self._constraints.aec_device_name)
            return self._constraints.aec_device_name
        except Exception as e:
            logger.warning("AEC source '%s' not available (%s), using default mic",
                           self._constraints.aec_device_name, e)
            return None

    def _capture_thread(self, device_name, loop):
        """Record audio in a daemon thread, push chunks to the async queue."""
        try:
            import pasimple

            with pasimple.PaSimple(
                pasimple.PA_STREAM_RECORD,
                pasimple.PA_SAMPLE_S16LE,
                CHANNELS, SAMPLE_RATE,
                app_name=self._app_name,
                device_name=device_name,
            ) as pa:
                while not self._stop_event.is_set():
                    data = apply_constraints(pa.read(CHUNK_SIZE), self._constraints)

                    def _enqueue(d=data):
                        try:
                            self.queue.put_nowait(d)
                        except asyncio.QueueFull:
                            pass  # Drop rather than block

                    loop.call_soon_threadsafe(_enqueue)
        except Exception as e:
            if self._stop_event.is_set():
                return
            logger.error("Capture error: %s", e)
            if self._on_error:
                try:
                    loop.call_soon_threadsafe(self._on_error, e)
                except RuntimeError:
                    pass  # loop already closed
