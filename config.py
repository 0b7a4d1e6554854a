"""Configuration for live coaching sessions.

Settings live in a JSON file merged over defaults. The backend service token
comes from the environment or a key file, never from the JSON config.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "live-coach"
CONFIG_FILE = Path(os.environ.get("LIVE_COACH_CONFIG", CONFIG_DIR / "config.json"))
SERVICE_TOKEN_FILE = CONFIG_DIR / "service_token"

FRAME_TYPES = ("wayfarer", "aviator", "sport", "round")

DEFAULT_CONFIG = {
    "backend_url": "http://localhost:3001",
    "target_vibe": "warm and playful",
    "match_name": "your match",
    "language": "en",
    "poll_interval": 7.0,
    "restart_delay": 0.25,
    "request_timeout": 10.0,
    "token_timeout": 5.0,
    "camera_device": 0,
    "aec_device_name": None,
    "whisper_model": "small",
    "whisper_device": "auto",
    "auto_voice": True,
    "muted": False,
    "frame_type": "wayfarer",
}


@dataclass(frozen=True)
class LanguageOption:
    """A selectable coaching language."""
    code: str
    speech_code: str  # BCP-47 tag for the speech providers
    label: str
    prompt_hint: str  # instruction appended to the vision prompt


LANGUAGES = (
    LanguageOption("en", "en-US", "English", "Respond in English."),
    LanguageOption("vi", "vi-VN", "Tiếng Việt", "Respond in Vietnamese (Tiếng Việt)."),
    LanguageOption("es", "es-ES", "Español", "Respond in Spanish (Español)."),
    LanguageOption("fr", "fr-FR", "Français", "Respond in French (Français)."),
    LanguageOption("de", "de-DE", "Deutsch", "Respond in German (Deutsch)."),
    LanguageOption("ja", "ja-JP", "日本語", "Respond in Japanese (日本語)."),
    LanguageOption("ko", "ko-KR", "한국어", "Respond in Korean (한국어)."),
    LanguageOption("zh", "zh-CN", "中文", "Respond in Mandarin Chinese (中文)."),
    LanguageOption("pt", "pt-BR", "Português", "Respond in Portuguese (Português)."),
    LanguageOption("th", "th-TH", "ไทย", "Respond in Thai (ไทย)."),
    LanguageOption("hi", "hi-IN", "हिन्दी", "Respond in Hindi (हिन्दी)."),
    LanguageOption("ar", "ar-SA", "العربية", "Respond in Arabic (العربية)."),
)

DEFAULT_LANGUAGE = LANGUAGES[0]


def get_language(code) -> LanguageOption:
    """Look up a language by short code or BCP-47 tag, defaulting to English."""
    if isinstance(code, LanguageOption):
        return code
    wanted = (code or "").strip().lower()
    for lang in LANGUAGES:
        if wanted in (lang.code, lang.speech_code.lower()):
            return lang
    return DEFAULT_LANGUAGE


def load_config(path: Path | None = None) -> dict:
    """Load configuration, merging the JSON file over defaults.

    Environment variables win over both:
    LIVE_COACH_BACKEND_URL and LIVE_COACH_SERVICE_TOKEN.
    """
    path = path or CONFIG_FILE
    config = dict(DEFAULT_CONFIG)
    try:
        if path.exists():
            with open(path) as f:
                config.update(json.load(f))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)

    backend_url = os.environ.get("LIVE_COACH_BACKEND_URL")
    if backend_url:
        config["backend_url"] = backend_url
    config["backend_url"] = config["backend_url"].rstrip("/")

    if config.get("frame_type") not in FRAME_TYPES:
        config["frame_type"] = DEFAULT_CONFIG["frame_type"]

    config["service_token"] = get_service_token()
    return config


def save_config(config: dict, path: Path | None = None):
    """Save configuration (the service token is never written)."""
    path = path or CONFIG_FILE
    data = {k: v for k, v in config.items() if k != "service_token"}
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
    except OSError as e:
        logger.error("Failed to save config %s: %s", path, e)


def update_config(changes: dict, path: Path | None = None):
    """Write a few settings back, keeping everything else stored in the file.

    Only the file's own contents are merged; defaults, env overrides and
    command-line flags are never written.
    """
    path = path or CONFIG_FILE
    stored = {}
    try:
        if path.exists():
            with open(path) as f:
                stored = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Rewriting unreadable config %s: %s", path, e)
    stored.update(changes)
    save_config(stored, path)


def get_service_token():
    """Get the backend service token from env or key file."""
    token = os.environ.get("LIVE_COACH_SERVICE_TOKEN")
    if token:
        return token
    if SERVICE_TOKEN_FILE.exists():
        return SERVICE_TOKEN_FILE.read_text().strip()
    return None
