"""Local continuous speech recognition: the fallback speech provider.

LocalRecognition captures audio continuously, gates it through Silero VAD,
and transcribes speech segments with faster-whisper. Each clean transcript
is emitted as a COMMITTED SpeechEvent; there are no interim results.

Key behaviors:
- Each chunk (~85ms) runs through Silero VAD (CPU, <1ms)
- Speech accumulates; a silence gap (~0.85s) triggers Whisper transcription
- Safety cap: force transcription after MAX_BUFFER_SECONDS (10s)
- Whisper runs in the default executor so the loop never blocks
- Hallucination filter rejects known Whisper silence artifacts
- A microphone that cannot be opened is reported as a fatal ERROR
"""

import asyncio
import importlib.util
import logging
from pathlib import Path

from audio_capture import BYTES_PER_SAMPLE, CHUNK_SIZE, SAMPLE_RATE, MicCapture, MicConstraints
from speech_events import Provider, SpeechEvent, SpeechEventType
from transcript_buffer import is_hallucination

logger = logging.getLogger(__name__)

VAD_MODEL_PATH = Path(__file__).parent / "models" / "silero_vad.onnx"
VAD_THRESHOLD = 0.5
SILENCE_CHUNKS_THRESHOLD = 10  # ~850ms of silence at 85ms/chunk

MAX_BUFFER_SECONDS = 10
MAX_BUFFER_CHUNKS = int(MAX_BUFFER_SECONDS / (CHUNK_SIZE / (SAMPLE_RATE * BYTES_PER_SAMPLE)))  # ~117
MIN_SPEECH_CHUNKS = 3  # ~255ms of voiced audio before a segment counts

_REQUIRED_MODULES = ("faster_whisper", "onnxruntime", "numpy", "pasimple")


class LocalRecognition:
    """One continuous local recognition session.

    Args:
        language: short language code passed to Whisper (e.g. "en")
        constraints: MicConstraints for the capture
        connection_id: id SpeechIntake uses to recognise this session's events
        emit: callback(SpeechEvent), invoked on the loop
        whisper_model: shared faster-whisper model holder (LocalWhisperProvider)
    """

    provider = Provider.FALLBACK

    def __init__(self, language, constraints: MicConstraints, connection_id: int,
                 emit, whisper_model):
        self._language = language
        self._constraints = constraints
        self.connection_id = connection_id
        self._emit_fn = emit
        self._whisper = whisper_model

        self._running = False
        self._ended = False
        self._capture = None
        self._process_task = None

        self._vad_model = None
        self._vad_state = None

        # Speech buffer
        self._audio_buffer = bytearray()
        self._chunks_in_buffer = 0
        self._speech_chunks = 0
        self._silence_chunks = 0
        self._speech_detected = False

    @property
    def running(self):
        return self._running

    async def start(self):
        """Load VAD, start the capture and the processing loop."""
        loop = asyncio.get_running_loop()
        if not self._load_vad_model():
            raise RuntimeError(f"VAD model unavailable at {VAD_MODEL_PATH}")

        self._running = True
        self._capture = MicCapture(self._constraints, app_name="live-coach-local",
                                   on_error=self._on_capture_error)
        self._capture.start(loop)
        self._process_task = asyncio.create_task(
            self._process_loop(), name=f"local-stt-{self.connection_id}"
        )
        logger.info("Local recognition started (%s)", self._language)
        self._emit(SpeechEventType.OPENED)

    async def close(self):
        """Stop capture and processing. Never raises."""
        self._running = False
        if self._capture:
            self._capture.stop()
        if self._process_task and not self._process_task.done():
            self._process_task.cancel()

    def _on_capture_error(self, exc):
        if not self._running:
            return
        self._running = False
        self._emit(SpeechEventType.ERROR, error=f"audio-capture: {exc}", fatal=True)

    def _emit(self, event_type, text="", error=None, fatal=False):
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
            fatal=fatal,
        ))

    # ── Processing ────────────────────────────────────────────────

    async def _process_loop(self):
        """Main VAD + transcription loop."""
        try:
            while self._running:
                try:
                    audio_data = await asyncio.wait_for(self._capture.queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                pcm = self._process_chunk(audio_data)
                if pcm:
                    await self._transcribe(pcm)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("Local recognition loop error: %s", e)
            if self._running:
                self._emit(SpeechEventType.ERROR, error=str(e))
            return
        finally:
            self._running = False
        self._emit(SpeechEventType.ENDED)

    def _process_chunk(self, audio_data):
        """Feed one chunk through VAD. Returns a finished utterance's PCM or None."""
        vad_prob = self._run_vad(audio_data)

        if vad_prob > VAD_THRESHOLD:
            self._audio_buffer.extend(audio_data)
            self._chunks_in_buffer += 1
            self._speech_chunks += 1
            self._silence_chunks = 0
            self._speech_detected = True
        elif self._speech_detected:
            # Still accumulating post-speech silence
            self._audio_buffer.extend(audio_data)
            self._chunks_in_buffer += 1
            self._silence_chunks += 1

            if self._silence_chunks >= SILENCE_CHUNKS_THRESHOLD:
                pcm = bytes(self._audio_buffer) if self._speech_chunks >= MIN_SPEECH_CHUNKS else None
                self._reset_buffer()
                return pcm

        if self._chunks_in_buffer >= MAX_BUFFER_CHUNKS:
            pcm = bytes(self._audio_buffer)
            self._reset_buffer()
            return pcm
        return None

    async def _transcribe(self, pcm_data):
        loop = asyncio.get_running_loop()
        transcript = await loop.run_in_executor(
            None, self._whisper.transcribe, pcm_data, self._language
        )
        if not self._running or not transcript:
            return
        if is_hallucination(transcript):
            logger.debug("Rejected hallucination: %r", transcript)
            return
        logger.info("STT [local]: %s", transcript)
        self._emit(SpeechEventType.COMMITTED, text=transcript)

    def _reset_buffer(self):
        self._audio_buffer.clear()
        self._chunks_in_buffer = 0
        self._speech_chunks = 0
        self._silence_chunks = 0
        self._speech_detected = False

    # ── VAD ───────────────────────────────────────────────────────

    def _load_vad_model(self):
        """Load Silero VAD ONNX model for speech detection."""
        if not VAD_MODEL_PATH.exists():
            logger.error("VAD model not found at %s", VAD_MODEL_PATH)
            return False

        try:
            import numpy as np
            import onnxruntime
            self._vad_model = onnxruntime.InferenceSession(
                str(VAD_MODEL_PATH),
                providers=['CPUExecutionProvider']
            )
            self._vad_state = {
                'state': np.zeros((2, 1, 128), dtype=np.float32),
                'sr': np.array(16000, dtype=np.int64),
                'context': np.zeros(64, dtype=np.float32),
            }
            return True
        except Exception as e:
            logger.error("Failed to load VAD: %s", e)
            return False

    def _run_vad(self, audio_bytes):
        """Run VAD on a chunk, return the max speech probability.

        Resamples 24kHz audio to 16kHz for Silero VAD.
        """
        if not self._vad_model:
            return 0.0

        import numpy as np

        samples = np.frombuffer(audio_bytes, dtype=np.int16).astype(np.float32) / 32768.0

        # 24kHz -> 16kHz: take 2 of every 3 samples
        indices = np.arange(0, len(samples), 1.5).astype(int)
        indices = indices[indices < len(samples)]
        samples = samples[indices]

        context = self._vad_state['context']
        max_prob = 0.0

        try:
            for i in range(0, len(samples) - 511, 512):
                window = samples[i:i + 512]
                input_data = np.concatenate([context, window]).reshape(1, -1)

                ort_outputs = self._vad_model.run(None, {
                    'input': input_data,
                    'state': self._vad_state['state'],
                    'sr': self._vad_state['sr'],
                })
                prob = ort_outputs[0].item()
                self._vad_state['state'] = ort_outputs[1]
                context = window[-64:]
                max_prob = max(max_prob, prob)

            self._vad_state['context'] = context
            return max_prob
        except Exception as e:
            logger.warning("VAD error: %s", e)
            return 0.0


class WhisperTranscriber:
    """Lazily-loaded faster-whisper model shared across fallback sessions."""

    def __init__(self, model_name="small", device="auto", compute_type="default"):
        self._model_name = model_name
        self._device = device
        self._compute_type = compute_type
        self._model = None

    def transcribe(self, pcm_data, language=None):
        """Transcribe 24kHz PCM (blocking, run in executor). Returns text or None."""
        try:
            import numpy as np

            if self._model is None:
                from faster_whisper import WhisperModel
                self._model = WhisperModel(
                    self._model_name, device=self._device, compute_type=self._compute_type
                )

            samples = np.frombuffer(pcm_data, dtype=np.int16).astype(np.float32) / 32768.0
            # Whisper expects 16kHz
            indices = np.arange(0, len(samples), 1.5).astype(int)
            samples = samples[indices[indices < len(samples)]]

            segments_gen, _info = self._model.transcribe(
                samples, language=language,
                beam_size=5,
                condition_on_previous_text=False,
                vad_filter=True,
            )

            kept = []
            for s in segments_gen:
                if s.no_speech_prob >= 0.6:
                    continue
                if s.avg_logprob < -1.0:
                    continue
                if s.compression_ratio > 2.4:
                    continue
                kept.append(s.text.strip())

            text = " ".join(kept).strip()
            return text or None

        except Exception as e:
            logger.error("Whisper error: %s", e)
            return None


class LocalWhisperProvider:
    """Factory for fallback sessions; reports whether local STT exists here."""

    provider = Provider.FALLBACK

    def __init__(self, model_name="small", device="auto"):
        self._whisper = WhisperTranscriber(model_name, device)
        self._supported = None

    def is_supported(self) -> bool:
        if self._supported is None:
            missing = [m for m in _REQUIRED_MODULES if importlib.util.find_spec(m) is None]
            if missing:
                logger.warning("Local STT unavailable, missing: %s", ", ".join(missing))
            elif not VAD_MODEL_PATH.exists():
                logger.warning("Local STT unavailable, no VAD model at %s", VAD_MODEL_PATH)
            self._supported = not missing and VAD_MODEL_PATH.exists()
        return self._supported

    def connect(self, language, constraints, connection_id, emit):
        return LocalRecognition(language, constraints, connection_id, emit, self._whisper)
