"""Context ledger for the coaching HUD.

Provides:
- ContextType: the kinds of context the session records
- ContextEntry: frozen dataclass for a single context item
- ContextLedger: two independent append-only ring buffers, one for
  context entries and one for diagnostic log lines

Entries are never mutated after creation. Eviction is FIFO once a buffer
reaches its cap.
"""

import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

MAX_CONTEXT_ENTRIES = 20
VISIBLE_CONTEXT_ENTRIES = 6
MAX_DIAGNOSTIC_LINES = 12


class ContextType(str, Enum):
    ENVIRONMENT = "environment"
    SPEECH = "speech"
    VISUAL_CUE = "visual_cue"
    ANALYSIS = "analysis"
    EMOTION = "emotion"


def _new_entry_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(2)}"


@dataclass(frozen=True)
class ContextEntry:
    """A single piece of captured context (environment, speech, analysis...)."""
    type: ContextType
    label: str
    value: str
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_entry_id)


class ContextLedger:
    """Bounded ring buffers for context entries and diagnostic lines.

    Args:
        max_entries: Context entries retained (default 20)
        visible_entries: How many recent entries visible() returns (default 6)
        max_diagnostics: Diagnostic lines retained (default 12)
    """

    def __init__(self, max_entries: int = MAX_CONTEXT_ENTRIES,
                 visible_entries: int = VISIBLE_CONTEXT_ENTRIES,
                 max_diagnostics: int = MAX_DIAGNOSTIC_LINES):
        self._entries: deque = deque(maxlen=max_entries)
        self._diagnostics: deque = deque(maxlen=max_diagnostics)
        self._visible = visible_entries

    def push(self, entry: ContextEntry):
        """Append a context entry, evicting the oldest past capacity."""
        self._entries.append(entry)

    def push_context(self, type: ContextType, label: str, value: str) -> ContextEntry:
        """Create and append a context entry."""
        entry = ContextEntry(type=ContextType(type), label=label, value=value)
        self.push(entry)
        return entry

    def push_diagnostic(self, line: str):
        """Append a diagnostic log line."""
        self._diagnostics.append(line)

    def visible(self) -> list:
        """The most recent entries, oldest first (what the HUD shows)."""
        if self._visible <= 0:
            return []
        return list(self._entries)[-self._visible:]

    def entries(self) -> list:
        return list(self._entries)

    def diagnostics(self) -> list:
        return list(self._diagnostics)

    def __len__(self) -> int:
        return len(self._entries)
