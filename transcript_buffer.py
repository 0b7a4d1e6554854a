"""Commit filtering for continuous speech recognition.

Provides:
- normalize_transcript(): whitespace collapse + trim
- CommitFilter: decides whether a provider's committed result becomes a
  conversation utterance, and keeps the rolling queue of recent utterances
- is_hallucination(): filter for local Whisper output (silence artifacts)

No external dependencies beyond stdlib.
"""

import re
from collections import deque

MIN_COMMIT_CHARS = 8
MAX_RECENT_UTTERANCES = 5

_WHITESPACE_RE = re.compile(r"\s+")

# Phrases Whisper produces on silence or background noise
HALLUCINATION_PHRASES: frozenset = frozenset({
    "thank you", "thanks for watching", "thanks for listening",
    "thank you for watching", "thank you very much",
    "please subscribe", "like and subscribe", "subtitles by",
    "subtitles made by", "amara.org", "amara org community",
    "music", "applause", "laughter", "silence", "inaudible",
    "you", "bye", "goodbye", "the end", "so", "hmm", "uh", "um", "oh",
    "...", ".", "!", "?",
})


def normalize_transcript(text: str) -> str:
    """Collapse runs of whitespace to single spaces and trim."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def is_hallucination(text: str, no_speech_prob: float = 0.0) -> bool:
    """Check local transcription output for known silence artifacts.

    Layers:
    1. Exact phrase match (case-insensitive, trailing punctuation stripped)
    2. Very short text (<=2 chars)
    3. Single word with elevated no_speech_prob (>0.3)
    4. Repetitive content (4+ words with <=2 unique words)
    """
    cleaned = text.lower().strip().rstrip('.!?,')

    if cleaned in HALLUCINATION_PHRASES:
        return True
    if len(cleaned) <= 2:
        return True

    words = cleaned.split()
    if len(words) == 1 and no_speech_prob > 0.3:
        return True
    if len(words) >= 4 and len(set(words)) <= 2:
        return True

    return False


class CommitFilter:
    """Filter committed transcripts into a rolling utterance queue.

    A committed result is accepted when, after normalization, it is at least
    min_chars long and differs from the previously accepted text. Accepted
    text becomes the current topic.

    Args:
        min_chars: Minimum normalized length (default 8)
        max_recent: Rolling queue size (default 5)
    """

    def __init__(self, min_chars: int = MIN_COMMIT_CHARS,
                 max_recent: int = MAX_RECENT_UTTERANCES):
        self._min_chars = min_chars
        self._recent: deque = deque(maxlen=max_recent)
        self._last_committed = ""
        self._current_topic = ""

    def offer(self, text: str) -> str | None:
        """Offer a committed transcript. Returns the accepted text or None."""
        normalized = normalize_transcript(text)
        if len(normalized) < self._min_chars:
            return None
        if normalized == self._last_committed:
            return None

        self._last_committed = normalized
        self._recent.append(normalized)
        self._current_topic = normalized
        return normalized

    @property
    def last_committed(self) -> str:
        return self._last_committed

    @property
    def current_topic(self) -> str:
        return self._current_topic

    @property
    def recent(self) -> list:
        return list(self._recent)

    def __len__(self) -> int:
        return len(self._recent)
