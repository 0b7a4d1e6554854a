"""Speech intake: continuous recognition across a cloud provider and a local fallback.

SpeechIntake is an explicit state machine over one owned connection:

    Idle -> Connecting(primary) -> Listening
              | any failure (primary breaker trips for good)
              v
         Connecting(fallback) -> FallbackListening
              | error / end, auto-voice on, not manually stopped
              v
         (single-slot restart timer) -> Connecting(fallback)

    stop() / set_auto_voice(False) / teardown() -> Stopped

Every provider event carries the connection_id of the connection that
produced it. Only events from the currently owned id are acted on; a
torn-down connection's late callbacks are dropped, never allowed to restart
anything.

All state changes happen on the asyncio loop. Provider threads hand events
over with call_soon_threadsafe before they reach _handle_event().
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from audio_capture import MicConstraints
from context_ledger import ContextType
from speech_events import Provider, SpeechEvent, SpeechEventType
from transcript_buffer import CommitFilter, normalize_transcript

logger = logging.getLogger(__name__)

RESTART_DELAY = 0.25  # seconds before a fallback reconnect
SPEECH_CONTEXT_CHARS = 100


class ConnectionPhase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    FALLBACK_LISTENING = "fallback_listening"
    STOPPED = "stopped"


_ACTIVE_PHASES = (
    ConnectionPhase.CONNECTING,
    ConnectionPhase.LISTENING,
    ConnectionPhase.FALLBACK_LISTENING,
)


@dataclass
class SpeechState:
    connection_phase: ConnectionPhase = ConnectionPhase.IDLE
    active_provider: Provider | None = None
    last_committed_transcript: str = ""
    pending_restart_timer: asyncio.TimerHandle | None = None


class CircuitBreaker:
    """Track consecutive failures per service and trip to fallback.

    recovery_time=None means a tripped breaker stays tripped for the
    lifetime of the process.
    """

    def __init__(self, name, max_failures=3, recovery_time=60):
        self.name = name
        self.max_failures = max_failures
        self.recovery_time = recovery_time
        self.failures = 0
        self.tripped = False
        self.tripped_at = 0

    def record_failure(self):
        self.failures += 1
        if self.failures >= self.max_failures and not self.tripped:
            self.tripped = True
            self.tripped_at = time.time()
            logger.warning("Circuit breaker: %s tripped after %d failures", self.name, self.failures)

    def record_success(self):
        self.failures = 0
        if self.tripped:
            self.tripped = False
            logger.info("Circuit breaker: %s recovered", self.name)

    def is_tripped(self) -> bool:
        if (self.tripped and self.recovery_time is not None
                and (time.time() - self.tripped_at) > self.recovery_time):
            logger.info("Circuit breaker: %s attempting recovery", self.name)
            self.tripped = False
            self.failures = 0
        return self.tripped


class SpeechIntake:
    """Dual-provider continuous recognition with reconnect and language hot-swap.

    Args:
        session: shared SessionState (reads language, auto_voice_enabled,
                 manually_stopped; the two flags are written only by
                 start/stop/set_auto_voice/teardown)
        token_fetcher: async () -> str, short-lived primary session token
        primary: DeepgramProvider-like factory, or None to skip the cloud
        fallback: LocalWhisperProvider-like factory, or None
        ledger: ContextLedger receiving a speech entry per accepted utterance
        speaker_label: label for speech context entries (the match's name)
        constraints: MicConstraints handed to every connection
        restart_delay: seconds before a fallback reconnect
        on_phase: callback(ConnectionPhase) on every phase change
    """

    def __init__(self, session, token_fetcher=None, primary=None, fallback=None,
                 ledger=None, speaker_label="your match", constraints=None,
                 restart_delay=RESTART_DELAY, on_phase=None):
        self._session = session
        self._token_fetcher = token_fetcher
        self._primary = primary
        self._fallback = fallback
        self._ledger = ledger
        self._speaker_label = speaker_label
        self._constraints = constraints or MicConstraints()
        self._restart_delay = restart_delay
        self._on_phase = on_phase or (lambda phase: None)

        self.state = SpeechState()
        self._primary_breaker = CircuitBreaker("STT/primary", max_failures=1, recovery_time=None)
        self._commits = CommitFilter()

        self._connection = None
        self._active_id = None
        self._connection_seq = 0
        self._torn_down = False
        self._voice_input = ""

        self._background: set[asyncio.Task] = set()

    # ── Read-only views ───────────────────────────────────────────

    @property
    def phase(self) -> ConnectionPhase:
        return self.state.connection_phase

    @property
    def provider(self) -> Provider | None:
        return self.state.active_provider

    @property
    def is_active(self) -> bool:
        """Connecting or listening on either provider."""
        return self.state.connection_phase in _ACTIVE_PHASES

    @property
    def is_listening(self) -> bool:
        return self.state.connection_phase in (
            ConnectionPhase.LISTENING, ConnectionPhase.FALLBACK_LISTENING
        )

    @property
    def primary_available(self) -> bool:
        return (self._primary is not None and self._token_fetcher is not None
                and not self._primary_breaker.is_tripped())

    @property
    def has_pending_restart(self) -> bool:
        return self.state.pending_restart_timer is not None

    @property
    def voice_input(self) -> str:
        """Live text: latest interim hypothesis or committed utterance."""
        return self._voice_input

    @property
    def current_topic(self) -> str:
        return self._commits.current_topic

    @property
    def recent_utterances(self) -> list:
        return self._commits.recent

    def topic_hint(self) -> str:
        """What the poller sends as the current conversation topic."""
        return self._voice_input or self._commits.current_topic

    # ── Public control ────────────────────────────────────────────

    def start(self):
        """Explicit start: clears the manual-stop guard and connects."""
        if self._torn_down:
            return
        self._session.manually_stopped = False
        self._begin_attempt()

    def stop(self):
        """Manual stop. No auto-restart until the next explicit start()."""
        self._session.manually_stopped = True
        self._clear_restart_timer()
        self._release_connection()
        self._set_phase(ConnectionPhase.STOPPED, None)

    def set_auto_voice(self, enabled: bool):
        self._session.auto_voice_enabled = enabled
        if not enabled:
            self._clear_restart_timer()
            self._release_connection()
            self._set_phase(ConnectionPhase.STOPPED, None)
        elif not self.is_active:
            self.start()

    def set_language(self, language):
        """Switch recognition language, reconnecting only the owned connection."""
        self._session.language = language
        if not self.is_active:
            return  # Picked up by the next attempt
        logger.info("Language -> %s, reconnecting %s", language.speech_code,
                    self.state.active_provider.value if self.state.active_provider else "speech")
        self._release_connection()
        if (self._session.auto_voice_enabled and not self._session.manually_stopped
                and not self._torn_down):
            self._begin_attempt()
        else:
            self._set_phase(ConnectionPhase.IDLE, None)

    def teardown(self):
        """Final shutdown: never restarts again, best-effort disconnect."""
        self._torn_down = True
        self._session.manually_stopped = True
        self._clear_restart_timer()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop to close on; the connection is dropped as-is
            logger.debug("Teardown without a running loop, dropping connection")
            self._connection = None
            self._active_id = None
        else:
            self._release_connection()
        self._set_phase(ConnectionPhase.STOPPED, None)

    async def drain(self):
        """Wait for background connects/closes to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Attempts ──────────────────────────────────────────────────

    def _begin_attempt(self):
        self._clear_restart_timer()
        self._release_connection()
        if self.primary_available:
            self._start_primary()
        else:
            self._start_fallback()

    def _next_connection_id(self):
        self._connection_seq += 1
        self._active_id = self._connection_seq
        return self._active_id

    def _start_primary(self):
        conn_id = self._next_connection_id()
        self._set_phase(ConnectionPhase.CONNECTING, Provider.PRIMARY)
        self._spawn(self._connect_primary(conn_id, self._session.language),
                    name=f"stt-primary-{conn_id}")

    async def _connect_primary(self, conn_id, language):
        try:
            token = await self._token_fetcher()
            if conn_id != self._active_id:
                return  # Superseded while fetching the token
            connection = self._primary.connect(
                token, language.speech_code, self._constraints, conn_id, self._handle_event
            )
            self._connection = connection
            await connection.start()
        except Exception as e:
            if conn_id != self._active_id:
                return
            logger.warning("Primary STT failed to connect: %s", e)
            self._fail_primary(str(e))

    def _fail_primary(self, reason):
        self._primary_breaker.record_failure()
        self._release_connection()
        logger.info("Switching to local speech recognition (%s)", reason)
        self._start_fallback()

    def _start_fallback(self):
        if self._fallback is None or not self._fallback.is_supported():
            # Silent degradation: no local recognizer here
            self._active_id = None
            self._set_phase(ConnectionPhase.IDLE, None)
            return

        conn_id = self._next_connection_id()
        self._set_phase(ConnectionPhase.CONNECTING, Provider.FALLBACK)
        try:
            connection = self._fallback.connect(
                self._session.language.code, self._constraints, conn_id, self._handle_event
            )
        except Exception as e:
            logger.warning("Local speech recognition failed to connect: %s", e)
            self._active_id = None
            self._set_phase(ConnectionPhase.IDLE, None)
            self._schedule_restart()
            return
        self._connection = connection
        self._spawn(self._start_fallback_connection(conn_id, connection),
                    name=f"stt-fallback-{conn_id}")

    async def _start_fallback_connection(self, conn_id, connection):
        try:
            await connection.start()
        except Exception as e:
            if conn_id != self._active_id:
                return
            self._handle_event(SpeechEvent(
                type=SpeechEventType.ERROR, connection_id=conn_id,
                provider=Provider.FALLBACK, error=str(e),
            ))

    def _schedule_restart(self):
        if self._torn_down or self._session.manually_stopped:
            return
        if not self._session.auto_voice_enabled:
            return
        if self.state.pending_restart_timer is not None:
            return  # Single slot: one pending restart at most
        loop = asyncio.get_running_loop()
        self.state.pending_restart_timer = loop.call_later(
            self._restart_delay, self._on_restart_timer
        )

    def _on_restart_timer(self):
        self.state.pending_restart_timer = None
        if self._torn_down or self._session.manually_stopped:
            return
        if not self._session.auto_voice_enabled:
            return
        self._begin_attempt()

    def _clear_restart_timer(self):
        timer = self.state.pending_restart_timer
        if timer is not None:
            timer.cancel()
            self.state.pending_restart_timer = None

    # ── Events ────────────────────────────────────────────────────

    def _handle_event(self, event: SpeechEvent):
        if event.connection_id != self._active_id:
            logger.debug("Ignoring stale %s from connection %d",
                         event.type.name, event.connection_id)
            return

        if event.type == SpeechEventType.OPENED:
            if event.provider == Provider.PRIMARY:
                self._primary_breaker.record_success()
                phase = ConnectionPhase.LISTENING
            else:
                phase = ConnectionPhase.FALLBACK_LISTENING
            self._set_phase(phase, event.provider)
        elif event.type == SpeechEventType.PARTIAL:
            self._voice_input = normalize_transcript(event.text)
        elif event.type == SpeechEventType.COMMITTED:
            self._voice_input = normalize_transcript(event.text)
            self._commit(event.text)
        elif event.provider == Provider.PRIMARY:
            self._fail_primary(event.error or "connection ended")
        else:
            self._fallback_lost(event)

    def _fallback_lost(self, event: SpeechEvent):
        self._release_connection()
        if event.fatal:
            logger.error("Local speech recognition unusable (%s), auto-voice off", event.error)
            self.set_auto_voice(False)
            return
        if event.error:
            logger.info("Local speech recognition error: %s", event.error)
        self._set_phase(ConnectionPhase.IDLE, None)
        self._schedule_restart()

    def _commit(self, text):
        accepted = self._commits.offer(text)
        if accepted is None:
            return
        self.state.last_committed_transcript = accepted
        logger.info("Heard: %s", accepted)
        if self._ledger is not None:
            self._ledger.push_context(ContextType.SPEECH, self._speaker_label,
                                      accepted[:SPEECH_CONTEXT_CHARS])

    # ── Connection ownership ──────────────────────────────────────

    def _release_connection(self):
        """Drop ownership of the current connection and close it in the background."""
        connection = self._connection
        self._connection = None
        self._active_id = None
        if connection is not None:
            self._spawn(self._close_quietly(connection), name="stt-close")

    async def _close_quietly(self, connection):
        try:
            await connection.close()
        except Exception as e:
            logger.debug("Speech connection close error (ignored): %s", e)

    def _set_phase(self, phase, provider):
        changed = (phase != self.state.connection_phase
                   or provider != self.state.active_provider)
        self.state.connection_phase = phase
        self.state.active_provider = provider
        if changed:
            self._on_phase(phase)

    def _spawn(self, coro, name=None):
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
