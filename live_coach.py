"""Live coaching session: camera + conversation in, spoken coaching out.

LiveCoachSession owns the SessionState and wires the pieces together:

    FrameSource -> FramePoller -> {ContextLedger, TTSPlaybackManager}
    SpeechIntake -> ContextLedger, and -> FramePoller (current topic)

start()/stop() drive the poller and speech intake together; mute, language
and auto-voice changes are pushed down to the component that owns them.
Everything runs on one asyncio loop.
"""

import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass, field

from audio_capture import MicConstraints
from coach_client import CoachClient
from config import (
    CONFIG_FILE, DEFAULT_LANGUAGE, FRAME_TYPES, LanguageOption, get_language, load_config,
    update_config,
)
from context_ledger import ContextLedger
from frame_poller import FramePoller
from frame_source import CameraConfig, CameraFrameSource
from speech_intake import ConnectionPhase, SpeechIntake
from tts_playback import TTSPlaybackManager

logger = logging.getLogger(__name__)


@dataclass
class SessionState:
    is_muted: bool = False
    language: LanguageOption = field(default=DEFAULT_LANGUAGE)
    auto_voice_enabled: bool = True
    manually_stopped: bool = False
    frame_type: str = "wayfarer"


_PHASE_STATUS = {
    ConnectionPhase.LISTENING: "listening",
    ConnectionPhase.FALLBACK_LISTENING: "fallback",
    ConnectionPhase.STOPPED: "stopped",
}


class LiveCoachSession:
    """One coaching session.

    Collaborators default to the real camera, backend, Deepgram and local
    Whisper; tests pass fakes. With a config_path, mute, language,
    auto-voice and frame type changes are written back to that file.
    """

    def __init__(self, config=None, frame_source=None, client=None, tts=None,
                 primary=None, fallback=None, ledger=None, on_status=None,
                 config_path=None):
        config = config or load_config()
        self.config = config
        self._config_path = config_path
        self.on_status = on_status or (lambda s: None)

        self.state = SessionState(
            is_muted=bool(config.get("muted", False)),
            language=get_language(config.get("language")),
            auto_voice_enabled=bool(config.get("auto_voice", True)),
            frame_type=config.get("frame_type", "wayfarer"),
        )
        self.ledger = ledger or ContextLedger()

        if client is None:
            client = CoachClient(
                config["backend_url"],
                service_token=config.get("service_token"),
                timeout=config.get("request_timeout", 10.0),
                token_timeout=config.get("token_timeout", 5.0),
            )
        self.client = client
        self.tts = tts or TTSPlaybackManager(client)

        if primary is None:
            from deepgram_stt import DeepgramProvider
            primary = DeepgramProvider()
        if fallback is None:
            from continuous_stt import LocalWhisperProvider
            fallback = LocalWhisperProvider(
                config.get("whisper_model", "small"), config.get("whisper_device", "auto")
            )

        self.frame_source = frame_source or CameraFrameSource(
            CameraConfig(device=config.get("camera_device", 0))
        )

        self.speech = SpeechIntake(
            self.state,
            token_fetcher=client.fetch_session_token,
            primary=primary,
            fallback=fallback,
            ledger=self.ledger,
            speaker_label=config.get("match_name") or "your match",
            constraints=MicConstraints(aec_device_name=config.get("aec_device_name")),
            restart_delay=config.get("restart_delay", 0.25),
            on_phase=self._on_speech_phase,
        )
        self.poller = FramePoller(
            self.state,
            self.frame_source,
            client,
            self.ledger,
            tts=self.tts,
            topic_provider=self.speech.topic_hint,
            target_vibe=config.get("target_vibe", ""),
            interval=config.get("poll_interval", 7.0),
            on_result=self._on_result,
        )

        self._status = None
        self._torn_down = False
        self._loop = None
        self._stop_event = None

    # ── Control ───────────────────────────────────────────────────

    def start(self):
        """Start frame polling and, when auto-voice is on, speech intake."""
        if self._torn_down:
            return
        self.poller.start()
        if self.state.auto_voice_enabled:
            self.speech.start()
        self._update_status()

    def stop(self):
        self.poller.stop()
        self.speech.stop()
        self._update_status()

    def set_muted(self, muted: bool):
        self.state.is_muted = muted
        if muted:
            self.tts.stop()
        logger.info("Voice coaching %s", "muted" if muted else "unmuted")
        self._persist(muted=muted)
        self._update_status()

    def toggle_mute(self) -> bool:
        self.set_muted(not self.state.is_muted)
        return self.state.is_muted

    def set_language(self, language):
        """Switch language by LanguageOption or code. Unknown codes mean English."""
        lang = get_language(language)
        if lang == self.state.language:
            return
        logger.info("Language: %s", lang.label)
        self.state.language = lang
        self.speech.set_language(lang)
        self._persist(language=lang.code)

    def set_auto_voice(self, enabled: bool):
        """Toggle listening. While the session is stopped this is only recorded."""
        if enabled and not self.poller.running:
            self.state.auto_voice_enabled = True
        else:
            self.speech.set_auto_voice(enabled)
        self._persist(auto_voice=enabled)
        self._update_status()

    def set_frame_type(self, frame_type: str):
        if frame_type not in FRAME_TYPES:
            raise ValueError(f"Unknown frame type {frame_type!r}, expected one of {FRAME_TYPES}")
        self.state.frame_type = frame_type
        self._persist(frame_type=frame_type)

    async def teardown(self):
        """Stop everything for good and release the camera and HTTP client."""
        if self._torn_down:
            return
        self._torn_down = True
        self.poller.stop()
        self.speech.teardown()
        self.tts.stop()
        await self.speech.drain()
        await self.poller.wait_idle()
        self.tts.stop()
        await self.tts.wait_idle()
        try:
            await self.client.aclose()
        except Exception as e:
            logger.debug("HTTP client close error (ignored): %s", e)
        self.frame_source.close()
        self._update_status()
        logger.info("Session torn down")

    # ── Views ─────────────────────────────────────────────────────

    @property
    def status(self):
        return self._status

    def snapshot(self) -> dict:
        """Everything a heads-up display would show, as plain data."""
        result = self.poller.last_result
        return {
            "suggestion": result.suggestion if result else "",
            "visual_cue": self.poller.visual_cue,
            "confidence": result.confidence if result else 0.0,
            "is_listening": self.speech.is_listening,
            "speech_provider": self.speech.provider.value if self.speech.provider else None,
            "voice_input": self.speech.voice_input,
            "current_topic": self.speech.current_topic,
            "context": [
                {"id": e.id, "type": e.type.value, "label": e.label, "value": e.value,
                 "timestamp": e.timestamp}
                for e in self.ledger.visible()
            ],
            "diagnostics": self.ledger.diagnostics(),
            "language": self.state.language.code,
            "is_muted": self.state.is_muted,
            "auto_voice": self.state.auto_voice_enabled,
            "frame_type": self.state.frame_type,
            "status": self._status,
        }

    # ── Running ───────────────────────────────────────────────────

    async def run(self):
        """Open the camera, start, and run until request_stop()."""
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        opened = await self._loop.run_in_executor(None, self.frame_source.open)
        if not opened:
            logger.warning("No camera frames available, analysis will idle")

        self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.teardown()

    def request_stop(self):
        """Ask run() to return. Safe from signal handlers and other threads."""
        if self._stop_event is None or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._stop_event.set)

    # ── Internals ─────────────────────────────────────────────────

    def _on_speech_phase(self, phase):
        logger.debug("Speech phase -> %s", phase.value)
        self._update_status()

    def _persist(self, **changes):
        if self._config_path is not None:
            update_config(changes, self._config_path)

    def _on_result(self, result):
        logger.info("Suggestion (%d%%): %s", result.confidence_pct, result.suggestion)

    def _update_status(self):
        if self._torn_down:
            status = "stopped"
        elif self.state.is_muted:
            status = "muted"
        else:
            status = _PHASE_STATUS.get(self.speech.phase, "idle")
        if status != self._status:
            self._status = status
            self.on_status(status)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Live conversation coaching from camera and mic")
    parser.add_argument("--target-vibe", help="The vibe you are going for")
    parser.add_argument("--match-name", help="Name used for your match in the context log")
    parser.add_argument("--language", help="Coaching language code (en, vi, es, ...)")
    parser.add_argument("--backend-url", help="Coaching backend base URL")
    parser.add_argument("--camera", type=int, help="Camera device index")
    parser.add_argument("--muted", action="store_true", help="Start with voice coaching muted")
    parser.add_argument("--no-auto-voice", action="store_true", help="Do not listen to the conversation")
    parser.add_argument("--interval", type=float, help="Seconds between frame analyses")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser.parse_args(argv)


def apply_args(config: dict, args) -> dict:
    """Overlay command-line flags on a loaded config."""
    config = dict(config)
    overrides = {
        "target_vibe": args.target_vibe,
        "match_name": args.match_name,
        "language": args.language,
        "backend_url": args.backend_url.rstrip("/") if args.backend_url else None,
        "camera_device": args.camera,
        "poll_interval": args.interval,
    }
    config.update({k: v for k, v in overrides.items() if v is not None})
    if args.muted:
        config["muted"] = True
    if args.no_auto_voice:
        config["auto_voice"] = False
    return config


async def _run_session(session):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, session.request_stop)
    await session.run()


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    config = apply_args(load_config(), args)
    session = LiveCoachSession(
        config, on_status=lambda s: logger.info("Status: %s", s),
        config_path=CONFIG_FILE,
    )
    logger.info("Coaching toward '%s' in %s (backend %s)",
                config["target_vibe"], session.state.language.label, config["backend_url"])
    asyncio.run(_run_session(session))


if __name__ == "__main__":
    main()
