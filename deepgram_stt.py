"""Deepgram streaming STT: the primary speech provider.

Each DeepgramConnection is one websocket session authenticated with a
short-lived access token from the coaching backend. The connection does not
decide anything about reconnecting or falling back; it reports what happens
as SpeechEvents tagged with its connection_id and SpeechIntake decides.

Architecture:
- MicCapture thread records from AEC source (or default mic)
- Deepgram SDK socket is read in a daemon listener thread
- SDK callbacks are marshalled onto the asyncio loop via call_soon_threadsafe
- Interim results become PARTIAL events; is_final chunks accumulate until
  speech_final and are emitted as one COMMITTED event
- KeepAlive messages are sent when the mic goes quiet to avoid the
  10-second idle timeout
"""

import asyncio
import logging
import threading
import time

from deepgram import DeepgramClient
from deepgram.core.events import EventType
from deepgram.extensions.types.sockets.listen_v1_control_message import (
    ListenV1ControlMessage,
)

from audio_capture import SAMPLE_RATE, MicCapture, MicConstraints
from speech_events import Provider, SpeechEvent, SpeechEventType

logger = logging.getLogger(__name__)

DEEPGRAM_MODEL = "nova-3"
KEEPALIVE_INTERVAL = 5.0  # seconds between KeepAlive when no audio is flowing


class DeepgramConnection:
    """One token-authenticated Deepgram streaming session.

    Args:
        token: short-lived access token from the session-token endpoint
        language: BCP-47 tag (e.g. "en-US")
        constraints: MicConstraints for the capture
        connection_id: id SpeechIntake uses to recognise this connection's events
        emit: callback(SpeechEvent), always invoked on the loop
    """

    provider = Provider.PRIMARY

    def __init__(self, token, language, constraints: MicConstraints,
                 connection_id: int, emit):
        self._token = token
        self._language = language
        self._constraints = constraints
        self.connection_id = connection_id
        self._emit_fn = emit

        self._loop = None
        self._dg_context = None
        self._dg_connection = None
        self._listener = None
        self._forward_task = None
        self._capture = None
        self._connected = False
        self._closing = False
        self._ended = False

        # Transcript accumulation (between is_final segments until speech_final)
        self._accumulated_finals = []
        self._last_audio_sent_time = 0.0

    @property
    def connected(self):
        return self._connected

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self):
        """Open the websocket and start streaming the microphone.

        Raises whatever the SDK raises on a failed handshake; SpeechIntake
        treats that as a primary failure.
        """
        self._loop = asyncio.get_running_loop()
        client = DeepgramClient(access_token=self._token)

        self._dg_context = client.listen.v1.connect(
            model=DEEPGRAM_MODEL,
            encoding="linear16",
            sample_rate=str(SAMPLE_RATE),
            channels="1",
            interim_results="true",
            endpointing="300",
            utterance_end_ms="1000",
            smart_format="true",
            punctuate="true",
            language=self._language,
        )

        # Handshake blocks, keep it off the loop
        dg_connection = await self._loop.run_in_executor(None, self._dg_context.__enter__)

        dg_connection.on(EventType.OPEN, self._on_open)
        dg_connection.on(EventType.MESSAGE, self._on_message)
        dg_connection.on(EventType.CLOSE, self._on_close)
        dg_connection.on(EventType.ERROR, self._on_error)
        self._dg_connection = dg_connection

        self._listener = threading.Thread(target=self._listen_thread, daemon=True)
        self._listener.start()

        self._capture = MicCapture(self._constraints, app_name="live-coach-deepgram",
                                   on_error=self._on_capture_error)
        self._capture.start(self._loop)
        self._connected = True
        self._forward_task = asyncio.create_task(
            self._audio_forward_loop(), name=f"deepgram-forward-{self.connection_id}"
        )
        logger.info("Connected to Deepgram %s (%s)", DEEPGRAM_MODEL, self._language)
        self._emit(SpeechEventType.OPENED)

    async def close(self):
        """Finalize and close the websocket. Never raises."""
        self._closing = True
        self._connected = False
        if self._capture:
            self._capture.stop()
        if self._forward_task and not self._forward_task.done():
            self._forward_task.cancel()

        dg_connection, dg_context = self._dg_connection, self._dg_context
        self._dg_connection = None
        self._dg_context = None
        if dg_connection is None:
            return
        try:
            # Send Finalize before closing to get the last transcript
            dg_connection.send_control(ListenV1ControlMessage(type="Finalize"))
            loop = self._loop or asyncio.get_running_loop()
            await loop.run_in_executor(None, dg_context.__exit__, None, None, None)
        except Exception as e:
            logger.debug("Deepgram close error (ignored): %s", e)

    def _listen_thread(self):
        """Pump the SDK socket until it closes."""
        try:
            self._dg_connection.start_listening()
        except Exception as e:
            if not self._closing:
                self._emit_threadsafe(SpeechEventType.ERROR, error=str(e))
        finally:
            if not self._closing:
                self._emit_threadsafe(SpeechEventType.ENDED)

    # ── Deepgram event handlers (SDK thread) ──────────────────────

    def _on_open(self, *args, **kwargs):
        logger.debug("Deepgram websocket opened")

    def _on_message(self, result, *args, **kwargs):
        """Handle Deepgram transcription results.

        Deepgram sends three kinds of results:
        1. interim (is_final=False): partial hypothesis
        2. final (is_final=True, speech_final=False): confirmed text chunk
        3. speech_final (is_final=True, speech_final=True): end of utterance

        Interims become PARTIAL events showing the accumulated text plus the
        hypothesis. Finals accumulate and flush on speech_final.
        """
        try:
            channel = getattr(result, "channel", None)
            if channel is None or not channel.alternatives:
                return  # Metadata / UtteranceEnd / SpeechStarted

            transcript = channel.alternatives[0].transcript.strip()
            is_final = getattr(result, "is_final", False)
            speech_final = getattr(result, "speech_final", False)

            if not is_final:
                if transcript:
                    live = " ".join(self._accumulated_finals + [transcript])
                    self._emit_threadsafe(SpeechEventType.PARTIAL, text=live)
                return

            if transcript:
                self._accumulated_finals.append(transcript)
            if speech_final and self._accumulated_finals:
                full_text = " ".join(self._accumulated_finals).strip()
                self._accumulated_finals.clear()
                self._emit_threadsafe(SpeechEventType.COMMITTED, text=full_text)

        except Exception as e:
            logger.warning("Deepgram message handling error: %s", e)

    def _on_close(self, *args, **kwargs):
        logger.debug("Deepgram websocket closed")
        self._connected = False
        if not self._closing:
            self._emit_threadsafe(SpeechEventType.ENDED)

    def _on_error(self, error, *args, **kwargs):
        logger.warning("Deepgram error: %s", error)
        if not self._closing:
            self._emit_threadsafe(SpeechEventType.ERROR, error=str(error))

    def _on_capture_error(self, exc):
        if not self._closing:
            self._emit(SpeechEventType.ERROR, error=f"audio-capture: {exc}")

    # ── Emission ──────────────────────────────────────────────────

    def _emit(self, event_type, text="", error=None):
        if event_type == SpeechEventType.ENDED:
            if self._ended:
                return
            self._ended = True
        self._emit_fn(SpeechEvent(
            type=event_type,
            connection_id=self.connection_id,
            provider=self.provider,
            text=text,
            error=error,
        ))

    def _emit_threadsafe(self, event_type, text="", error=None):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._emit, event_type, text, error)

    # ── Audio forwarding ──────────────────────────────────────────

    async def _audio_forward_loop(self):
        """Forward captured chunks to Deepgram, KeepAlive when starved."""
        while self._connected:
            try:
                audio_data = await asyncio.wait_for(self._capture.queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                self._maybe_send_keepalive()
                continue
            self._try_send_audio(audio_data)

    def _try_send_audio(self, audio_data):
        if not self._dg_connection or not self._connected:
            return
        try:
            self._dg_connection.send_media(audio_data)
            self._last_audio_sent_time = time.time()
        except Exception as e:
            logger.warning("Deepgram send error: %s", e)
            self._connected = False
            if not self._closing:
                self._emit(SpeechEventType.ERROR, error=f"send: {e}")

    def _maybe_send_keepalive(self):
        if not self._dg_connection or not self._connected:
            return
        if time.time() - self._last_audio_sent_time < KEEPALIVE_INTERVAL:
            return
        try:
            self._dg_connection.send_control(ListenV1ControlMessage(type="KeepAlive"))
            self._last_audio_sent_time = time.time()
        except Exception as e:
            logger.debug("KeepAlive failed: %s", e)


class DeepgramProvider:
    """Factory for primary connections."""

    provider = Provider.PRIMARY

    def connect(self, token, language, constraints, connection_id, emit):
        return DeepgramConnection(token, language, constraints, connection_id, emit)
