"""HTTP client for the coaching backend.

Three endpoints, all under the configured base URL:

    POST /api/realtime-coach            frame analysis -> SuggestionResult
    POST /api/realtime-coach/tts        text -> audio bytes (or nothing)
    GET  /api/realtime-coach/stt-token  short-lived speech session token

Non-2xx responses raise CoachAPIError. Transport errors and timeouts are the
plain httpx exceptions. Callers recover from both.
"""

import logging
import math
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

ANALYZE_PATH = "/api/realtime-coach"
TTS_PATH = "/api/realtime-coach/tts"
STT_TOKEN_PATH = "/api/realtime-coach/stt-token"

DEFAULT_SUGGESTION = "Keep it light and ask an open question about their interests."
DEFAULT_VISUAL_CUE = "Limited visual cues detected"
DEFAULT_CONFIDENCE = 0.6

MAX_TOPIC_CHARS = 200
MAX_VIBE_CHARS = 120
MAX_TTS_CHARS = 300


class CoachAPIError(Exception):
    """Backend answered with a non-2xx status."""

    def __init__(self, status_code, endpoint, detail=""):
        self.status_code = status_code
        self.endpoint = endpoint
        self.detail = detail
        message = f"{endpoint} returned HTTP {status_code}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


@dataclass
class SuggestionResult:
    suggestion: str
    visual_cue: str
    confidence: float

    @property
    def confidence_pct(self) -> int:
        return round(self.confidence * 100)


def _coerce_confidence(value):
    if isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if math.isnan(number):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, number))


def normalize_result(payload) -> SuggestionResult:
    """Build a SuggestionResult from an analyze response body.

    Accepts {"data": {...}} or the bare object, fills in defaults for blank
    fields and clamps confidence into [0, 1].
    """
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    if not isinstance(payload, dict):
        payload = {}

    suggestion = str(payload.get("suggestion") or "").strip() or DEFAULT_SUGGESTION
    cue = str(payload.get("visual_cue_detected") or "").strip() or DEFAULT_VISUAL_CUE
    return SuggestionResult(
        suggestion=suggestion,
        visual_cue=cue,
        confidence=_coerce_confidence(payload.get("confidence")),
    )


class CoachClient:
    """Async client for the coaching backend.

    Args:
        base_url: backend root, e.g. http://localhost:3001
        service_token: sent as X-Service-Token when set
        timeout: seconds for analyze and TTS calls
        token_timeout: seconds for the session-token call
        transport: optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(self, base_url, service_token=None, timeout=10.0,
                 token_timeout=5.0, transport=None):
        headers = {}
        if service_token:
            headers["X-Service-Token"] = service_token
        self._timeout = timeout
        self._token_timeout = token_timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    async def analyze(self, frame, target_vibe, topic, language_hint) -> SuggestionResult:
        payload = {
            "frame": frame,
            "targetVibe": (target_vibe or "")[:MAX_VIBE_CHARS],
            "currentTopic": (topic or "")[:MAX_TOPIC_CHARS],
            "language": language_hint,
        }
        resp = await self._client.post(ANALYZE_PATH, json=payload, timeout=self._timeout)
        self._raise_for_status(resp, "analyze")
        return normalize_result(resp.json())

    async def speak(self, text) -> bytes | None:
        """Synthesize speech. Returns audio bytes, or None for nothing to play."""
        resp = await self._client.post(
            TTS_PATH, json={"text": text[:MAX_TTS_CHARS]}, timeout=self._timeout
        )
        if resp.status_code == 204:
            return None
        self._raise_for_status(resp, "tts")
        return resp.content or None

    async def fetch_session_token(self) -> str:
        resp = await self._client.get(STT_TOKEN_PATH, timeout=self._token_timeout)
        self._raise_for_status(resp, "stt-token")
        body = resp.json()
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            raise CoachAPIError(resp.status_code, "stt-token", "response has no token")
        return token

    async def aclose(self):
        await self._client.aclose()

    @staticmethod
    def _raise_for_status(resp, endpoint):
        if resp.is_success:
            return
        detail = ""
        try:
            body = resp.json()
            if isinstance(body, dict):
                detail = str(body.get("error") or body.get("message") or "")
        except ValueError:
            detail = resp.text[:200]
        logger.debug("%s failed: HTTP %d %s", endpoint, resp.status_code, detail)
        raise CoachAPIError(resp.status_code, endpoint, detail)
