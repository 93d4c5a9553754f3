"""Events posted to the Session Controller inbox.

Every collaborator (Connection Manager, Speech Capture Adapter, translation
tasks, timers) reports progress by posting one of these into the controller
queue. ``attempt`` identifies the session attempt that produced the event;
the controller drops events whose attempt is no longer current.
"""

from dataclasses import dataclass

from echolink.errors import EchoLinkError
from echolink.transport.side_channel_protocol import ChatMessage, TranscriptMessage


@dataclass(frozen=True)
class SessionEvent:
    attempt: int


@dataclass(frozen=True)
class IdentityReady(SessionEvent):
    """Host session id registered with the signaling service."""

    session_id: str


@dataclass(frozen=True)
class InboundCallAccepted(SessionEvent):
    """Host answered the guest's media call."""

    remote_identity: str


@dataclass(frozen=True)
class MediaStreamReceived(SessionEvent):
    """Guest is receiving the host's audio."""

    remote_identity: str


@dataclass(frozen=True)
class SideChannelOpened(SessionEvent):
    remote_identity: str


@dataclass(frozen=True)
class SideChannelClosed(SessionEvent):
    pass


@dataclass(frozen=True)
class SideChannelMessageReceived(SessionEvent):
    message: TranscriptMessage | ChatMessage


@dataclass(frozen=True)
class RemoteClosed(SessionEvent):
    """The peer left or the link dropped for good."""

    reason: str


@dataclass(frozen=True)
class ConnectionFailed(SessionEvent):
    """Terminal error raised by an asynchronous connection step."""

    error: EchoLinkError


@dataclass(frozen=True)
class NegotiationWarning(SessionEvent):
    """Transient negotiation problem; status text only."""

    detail: str


@dataclass(frozen=True)
class NegotiationTimedOut(SessionEvent):
    pass


@dataclass(frozen=True)
class SpeechFragment(SessionEvent):
    text: str
    is_final: bool


@dataclass(frozen=True)
class SpeechStatus(SessionEvent):
    """Transient caption status (e.g. "No speech detected.")."""

    message: str


@dataclass(frozen=True)
class CaptioningDisabled(SessionEvent):
    reason: str


@dataclass(frozen=True)
class TranslationReady(SessionEvent):
    item_id: str
    translated_text: str
