"""Coaching voice playback: at most one audio handle plays at a time.

TTSPlaybackManager.speak() fetches synthesized audio for a suggestion,
decodes it to PCM and starts it on a fresh AudioHandle, after pausing and
releasing whatever was playing before. A response that comes back after a
newer speak() or a stop() is dropped unplayed. Playback failures are a
no-op for the caller: speak() reports an outcome and never raises.
"""

import asyncio
import io
import logging
import wave
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

OUTPUT_SAMPLE_RATE = 24000
WRITE_CHUNK = 4096
DECODE_TIMEOUT = 10.0
FFMPEG_CMD = "ffmpeg"


class SpeakOutcome(Enum):
    MUTED = "muted"            # Muted: nothing requested
    EMPTY = "empty"            # Backend had nothing to say
    PLAYING = "playing"        # New handle owns playback
    SUPERSEDED = "superseded"  # A newer speak()/stop() won the race
    FAILED = "failed"          # Request, decode or device error


@dataclass
class DecodedAudio:
    pcm: bytes
    sample_rate: int = OUTPUT_SAMPLE_RATE
    channels: int = 1
    sample_width: int = 2


async def decode_audio(data: bytes) -> DecodedAudio:
    """Decode a TTS response body into PCM.

    WAV is parsed in process. Anything else (mp3, ogg, ...) is piped through
    ffmpeg and comes back as 24kHz 16-bit mono.
    """
    if data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        with wave.open(io.BytesIO(data), "rb") as wav:
            return DecodedAudio(
                pcm=wav.readframes(wav.getnframes()),
                sample_rate=wav.getframerate(),
                channels=wav.getnchannels(),
                sample_width=wav.getsampwidth(),
            )

    process = await asyncio.create_subprocess_exec(
        FFMPEG_CMD, "-hide_banner", "-loglevel", "error",
        "-i", "pipe:0",
        "-f", "s16le", "-ac", "1", "-ar", str(OUTPUT_SAMPLE_RATE),
        "pipe:1",
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(input=data), timeout=DECODE_TIMEOUT)
    except asyncio.TimeoutError:
        process.kill()
        raise
    if process.returncode != 0 or not stdout:
        raise RuntimeError(f"ffmpeg decode failed (exit {process.returncode})")
    return DecodedAudio(pcm=stdout)


class AudioHandle:
    """One playable clip on the default PyAudio output device."""

    def __init__(self, audio: DecodedAudio):
        self._audio = audio
        self._paused = False
        self._released = False

    @property
    def released(self):
        return self._released

    async def play(self):
        """Write the clip to the output stream until done, paused or released."""
        if self._released:
            return
        import pyaudio

        pa = pyaudio.PyAudio()
        stream = pa.open(
            format=pa.get_format_from_width(self._audio.sample_width),
            channels=self._audio.channels,
            rate=self._audio.sample_rate,
            output=True,
            frames_per_buffer=1024,
        )
        loop = asyncio.get_running_loop()
        pcm = self._audio.pcm
        try:
            for offset in range(0, len(pcm), WRITE_CHUNK):
                if self._paused or self._released:
                    break
                await loop.run_in_executor(None, stream.write, pcm[offset:offset + WRITE_CHUNK])
        finally:
            stream.stop_stream()
            stream.close()
            pa.terminate()

    def pause(self):
        self._paused = True

    def release(self):
        self._paused = True
        self._released = True


class TTSPlaybackManager:
    """Single-flight TTS player with cancel-and-replace.

    Args:
        client: object with async speak(text) -> bytes | None (CoachClient)
        player_factory: DecodedAudio -> handle with async play(), pause(), release()
        decoder: async bytes -> DecodedAudio
    """

    def __init__(self, client, player_factory=AudioHandle, decoder=decode_audio):
        self._client = client
        self._player_factory = player_factory
        self._decoder = decoder
        self._active = None
        self._request_seq = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self):
        return self._active

    @property
    def is_playing(self) -> bool:
        return self._active is not None

    async def speak(self, text, muted=False) -> SpeakOutcome:
        if muted:
            return SpeakOutcome.MUTED
        if not text or not text.strip():
            return SpeakOutcome.EMPTY

        self._request_seq += 1
        seq = self._request_seq
        try:
            audio = await self._client.speak(text)
            if not audio:
                return SpeakOutcome.EMPTY
            decoded = await self._decoder(audio)
            handle = self._player_factory(decoded)
        except Exception as e:
            logger.warning("TTS unavailable: %s", e)
            return SpeakOutcome.FAILED

        if seq != self._request_seq:
            handle.release()
            return SpeakOutcome.SUPERSEDED

        self._release_active()
        self._active = handle
        task = asyncio.create_task(self._play(handle), name="tts-playback")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return SpeakOutcome.PLAYING

    def stop(self):
        """Silence current audio and drop any response still in flight."""
        self._request_seq += 1
        self._release_active()

    async def wait_idle(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _play(self, handle):
        try:
            await handle.play()
        except Exception as e:
            logger.warning("Audio playback failed: %s", e)
        finally:
            handle.release()
            if self._active is handle:
                self._active = None

    def _release_active(self):
        handle = self._active
        self._active = None
        if handle is not None:
            handle.pause()
            handle.release()
