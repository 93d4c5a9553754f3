"""Base transport abstraction for peer connections.

Defines the interfaces the Connection Manager drives: a signaling service
that registers or dials session ids, and the per-session peer transport
that carries the media link and the reliable side-channel. Transport
callbacks are converted into ``TransportEvent`` values and consumed as a
single async stream.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

from echolink.capability import AudioSourceHandle


@dataclass(frozen=True)
class TransportEvent:
    """Base class for events surfaced by a peer transport."""


@dataclass(frozen=True)
class PeerJoined(TransportEvent):
    """A remote participant is present (data channel usable)."""

    identity: str


@dataclass(frozen=True)
class PeerLeft(TransportEvent):
    """A remote participant left the session."""

    identity: str


@dataclass(frozen=True)
class RemoteAudioStarted(TransportEvent):
    """A remote participant's audio stream is being received."""

    identity: str


@dataclass(frozen=True)
class DataReceived(TransportEvent):
    """A side-channel payload arrived from a remote participant."""

    payload: bytes
    identity: str


@dataclass(frozen=True)
class LinkLost(TransportEvent):
    """The connection to the signaling/relay service is gone for good."""

    reason: str


@dataclass(frozen=True)
class NegotiationError(TransportEvent):
    """Transient negotiation problem; the link may still recover."""

    detail: str


class PeerTransport(ABC):
    """Media link and side-channel for one session.

    Each transport implementation provides a concrete type that handles the
    specifics of audio publishing and data delivery while conforming to
    this interface.
    """

    @property
    @abstractmethod
    def local_identity(self) -> str:
        """Identity this side is connected as."""
        pass

    @property
    @abstractmethod
    def peer_identity(self) -> str | None:
        """Identity of the expected remote party, if known up front."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the transport connection is still active."""
        pass

    @abstractmethod
    def has_participant(self, identity: str) -> bool:
        """Whether a remote participant with this identity is present."""
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[TransportEvent]:
        """Stream of transport events, ending when the transport closes."""
        pass

    @abstractmethod
    async def publish_audio(self, source: AudioSourceHandle) -> None:
        """Publish the local audio source as this side's media stream.

        Raises:
            ConnectionError: If the transport is closed
        """
        pass

    @abstractmethod
    async def unpublish_audio(self) -> None:
        """Stop publishing the local audio source. No-op if not published."""
        pass

    @abstractmethod
    async def send_data(self, payload: bytes, destination: str | None = None) -> None:
        """Send a reliable, ordered side-channel payload.

        Args:
            payload: Encoded message bytes
            destination: Remote identity (None broadcasts to the session)

        Raises:
            ConnectionError: If the payload could not be handed to the transport
        """
        pass

    @abstractmethod
    async def set_remote_audio_enabled(self, enabled: bool) -> None:
        """Start or stop receiving remote audio."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the media link and side-channel. Safe to call repeatedly."""
        pass


class SignalingService(ABC):
    """Rendezvous service mapping public session ids to peer transports."""

    @abstractmethod
    async def register(self, session_id: str) -> PeerTransport:
        """Register ``session_id`` as this peer's public identity.

        Raises:
            RegistrationFailed: On id collision or service fault
        """
        pass

    @abstractmethod
    async def dial(self, target_id: str) -> PeerTransport:
        """Connect to the host registered under ``target_id``.

        Raises:
            PeerUnavailable: If the id is not registered or the host is gone
        """
        pass

    @abstractmethod
    async def release(self, session_id: str) -> None:
        """Drop a registration made by :meth:`register`. Idempotent."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release service-level resources (HTTP sessions etc.)."""
        pass
