"""Typed events that flow from speech provider connections into SpeechIntake."""

from dataclasses import dataclass
from enum import Enum, auto


class SpeechEventType(Enum):
    OPENED = auto()      # Connection is live and capturing
    PARTIAL = auto()     # Interim hypothesis, replaces the live text
    COMMITTED = auto()   # Provider-final utterance, goes through the commit filter
    ERROR = auto()       # Provider or capture failure
    ENDED = auto()       # Connection closed (by the provider or the network)


class Provider(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass
class SpeechEvent:
    type: SpeechEventType
    connection_id: int
    provider: Provider
    text: str = ""
    error: str | None = None
    fatal: bool = False  # fallback only: do not loop-restart (e.g. no microphone)
