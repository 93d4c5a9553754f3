"""Transcript item model.

A transcript item is one utterance's evolving text state. Items are
immutable values; updates produce a new item that replaces the old one
in the synchronizer's sequence.
"""

from dataclasses import dataclass, replace
from enum import Enum

from echolink.identity import now_ms


class Sender(str, Enum):
    """Which party produced an item, relative to the local participant."""

    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class TranscriptItem:
    """One utterance unit, local or remote.

    Attributes:
        id: Identifier unique within the session
        sender: LOCAL or REMOTE
        text: Current best transcript
        is_final: Whether the recogniser committed this text
        timestamp: Milliseconds since epoch, non-decreasing per id
        translated_text: Receiver-local translation (never sent)
    """

    id: str
    sender: Sender
    text: str
    is_final: bool
    timestamp: float
    translated_text: str | None = None

    def revise(self, text: str, is_final: bool, timestamp: float | None = None) -> "TranscriptItem":
        """Return a continuation of this item with new text.

        The timestamp is refreshed but never moves backwards.
        """
        ts = now_ms() if timestamp is None else timestamp
        return replace(
            self,
            text=text,
            is_final=is_final,
            timestamp=max(self.timestamp, ts),
        )

    def with_translation(self, translated_text: str) -> "TranscriptItem":
        return replace(self, translated_text=translated_text)

    def as_remote(self) -> "TranscriptItem":
        """Copy with sender forced to REMOTE and no local annotation."""
        return replace(self, sender=Sender.REMOTE, translated_text=None)
