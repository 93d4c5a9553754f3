"""End-of-call summary built from the shared transcript."""

from dataclasses import dataclass

from echolink.transcript import Sender, TranscriptItem


@dataclass(frozen=True)
class CallSummary:
    """What happened in one call.

    Attributes:
        session_id: Session id of the call (None if it never registered)
        role: "host" or "guest"
        duration_seconds: Time spent in the active state
        local_utterances: Final items spoken or typed locally
        remote_utterances: Final items received from the peer
        word_count: Words across all final items
        lines: Final transcript lines, oldest first
    """

    session_id: str | None
    role: str
    duration_seconds: float
    local_utterances: int
    remote_utterances: int
    word_count: int
    lines: tuple[str, ...]

    def to_text(self) -> str:
        minutes, seconds = divmod(int(self.duration_seconds), 60)
        header = [
            f"Session {self.session_id or '----'} ({self.role})",
            f"Duration: {minutes:02d}:{seconds:02d}",
            f"Utterances: {self.local_utterances} sent, {self.remote_utterances} received, "
            f"{self.word_count} words",
        ]
        if not self.lines:
            return "\n".join([*header, "No transcript recorded."])
        return "\n".join([*header, "", *self.lines])


def _render_line(item: TranscriptItem) -> str:
    speaker = "You" if item.sender == Sender.LOCAL else "Peer"
    line = f"[{speaker}] {item.text}"
    if item.translated_text:
        line += f" ({item.translated_text})"
    return line


def build_call_summary(
    items: tuple[TranscriptItem, ...] | list[TranscriptItem],
    session_id: str | None,
    role: str,
    duration_seconds: float,
) -> CallSummary:
    """Summarize the final items of a transcript.

    Interim items left open at hangup are not part of the summary.
    """
    final_items = [item for item in items if item.is_final]
    return CallSummary(
        session_id=session_id,
        role=role,
        duration_seconds=max(0.0, duration_seconds),
        local_utterances=sum(1 for item in final_items if item.sender == Sender.LOCAL),
        remote_utterances=sum(1 for item in final_items if item.sender == Sender.REMOTE),
        word_count=sum(len(item.text.split()) for item in final_items),
        lines=tuple(_render_line(item) for item in final_items),
    )
