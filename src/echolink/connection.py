"""Connection Manager: owns the PeerLink for one session attempt.

The Connection Manager acquires the local audio source, registers or dials
the session id, answers the inbound media call (host), opens the
side-channel, and tears all of it down again. It never mutates session
state directly; progress is reported by posting events to the controller
inbox.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from echolink.capability import AudioSourceHandle, CapabilityGate
from echolink.errors import CapabilityDenied, ProtocolError, SessionAborted, SideChannelSendFailure
from echolink.events import (
    IdentityReady,
    InboundCallAccepted,
    MediaStreamReceived,
    NegotiationWarning,
    RemoteClosed,
    SessionEvent,
    SideChannelClosed,
    SideChannelMessageReceived,
    SideChannelOpened,
)
from echolink.transport.base import (
    DataReceived,
    LinkLost,
    NegotiationError,
    PeerJoined,
    PeerLeft,
    PeerTransport,
    RemoteAudioStarted,
    SignalingService,
    TransportEvent,
)
from echolink.transport.side_channel_protocol import (
    ChatMessage,
    TranscriptMessage,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)


class MediaState(str, Enum):
    ABSENT = "absent"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    CLOSED = "closed"


class SideChannelState(str, Enum):
    ABSENT = "absent"
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class PeerLink:
    """Read-only view of the media link and side-channel."""

    media_state: MediaState = MediaState.ABSENT
    side_channel_state: SideChannelState = SideChannelState.ABSENT
    remote_identity: str | None = None


class SideChannel:
    """Reliable, ordered message channel to the remote party."""

    def __init__(self, transport: PeerTransport, remote_identity: str) -> None:
        self._transport = transport
        self._remote_identity = remote_identity
        self._open = True

    @property
    def remote_identity(self) -> str:
        return self._remote_identity

    @property
    def is_open(self) -> bool:
        return self._open and self._transport.is_connected

    async def send(self, message: TranscriptMessage | ChatMessage) -> None:
        """Send one message.

        Raises:
            SideChannelSendFailure: If the channel is closed or delivery failed
        """
        if not self.is_open:
            raise SideChannelSendFailure("Side channel is closed")

        try:
            await self._transport.send_data(encode_message(message), self._remote_identity)
        except ConnectionError as e:
            raise SideChannelSendFailure(str(e)) from e

    def close(self) -> None:
        self._open = False


class ConnectionManager:
    """Owns the PeerLink and local audio source for one session attempt.

    Example:
        manager = ConnectionManager(signaling, gate, inbox, attempt=1)
        await manager.acquire_capability()
        await manager.open_as_host("4821")   # posts IdentityReady
        ...
        await manager.teardown()
    """

    def __init__(
        self,
        signaling: SignalingService,
        capability_gate: CapabilityGate,
        outbox: asyncio.Queue[SessionEvent],
        attempt: int,
    ) -> None:
        """Initialize connection manager.

        Args:
            signaling: Signaling service used to register or dial ids
            capability_gate: Microphone permission broker
            outbox: Controller inbox that receives session events
            attempt: Session attempt these events belong to
        """
        self._signaling = signaling
        self._gate = capability_gate
        self._outbox = outbox
        self._attempt = attempt

        self._media_state = MediaState.ABSENT
        self._side_channel_state = SideChannelState.ABSENT
        self._remote_identity: str | None = None
        self._is_host = False

        self._audio: AudioSourceHandle | None = None
        self._transport: PeerTransport | None = None
        self._side_channel: SideChannel | None = None
        self._registered_id: str | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._remote_audio_enabled = True
        self._closed = False

    @property
    def link(self) -> PeerLink:
        return PeerLink(
            media_state=self._media_state,
            side_channel_state=self._side_channel_state,
            remote_identity=self._remote_identity,
        )

    @property
    def side_channel(self) -> SideChannel | None:
        return self._side_channel

    @property
    def audio_source(self) -> AudioSourceHandle | None:
        return self._audio

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def microphone_enabled(self) -> bool:
        return self._audio is not None and self._audio.enabled

    @property
    def remote_audio_enabled(self) -> bool:
        return self._remote_audio_enabled

    def _post(self, event: SessionEvent) -> None:
        self._outbox.put_nowait(event)

    async def acquire_capability(self) -> AudioSourceHandle:
        """Obtain the exclusive local audio source.

        Raises:
            CapabilityDenied: If microphone access is refused
            SessionAborted: If the session was torn down meanwhile
        """
        access = await self._gate.request_microphone_access()
        if not access.granted or access.handle is None:
            raise CapabilityDenied("Microphone access refused")

        if self._closed:
            await access.handle.stop()
            raise SessionAborted("Capability granted after teardown")

        self._audio = access.handle
        logger.info("Microphone capability acquired")
        return access.handle

    async def open_as_host(self, session_id: str) -> None:
        """Register ``session_id`` and wait for an inbound call.

        Posts ``IdentityReady`` once the id is live.

        Raises:
            RegistrationFailed: On id collision or signaling fault
            SessionAborted: If the session was torn down meanwhile
        """
        self._is_host = True
        transport = await self._signaling.register(session_id)

        if self._closed:
            await transport.close()
            await self._signaling.release(session_id)
            raise SessionAborted("Registration completed after teardown")

        self._transport = transport
        self._registered_id = session_id
        self._start_pump(transport)

        logger.info("Host identity ready", extra={"session_id": session_id})
        self._post(IdentityReady(self._attempt, session_id))

    async def open_as_guest(self, target_id: str) -> None:
        """Dial ``target_id``, then open the side-channel and media call concurrently.

        Raises:
            PeerUnavailable: If the target is not registered or unreachable
            SessionAborted: If the session was torn down meanwhile
        """
        self._is_host = False
        self._media_state = MediaState.NEGOTIATING
        self._side_channel_state = SideChannelState.OPENING

        transport = await self._signaling.dial(target_id)

        if self._closed:
            await transport.close()
            raise SessionAborted("Dial completed after teardown")

        self._transport = transport
        self._remote_identity = transport.peer_identity
        self._start_pump(transport)

        await asyncio.gather(
            self._place_call(),
            self._open_side_channel(transport.peer_identity or ""),
        )

    async def _place_call(self) -> None:
        if self._audio is None or self._transport is None:
            raise RuntimeError("acquire_capability() must succeed before placing a call")

        try:
            await self._transport.publish_audio(self._audio)
        except ConnectionError as e:
            logger.warning("Failed to publish local audio", extra={"error": str(e)})
            self._post(NegotiationWarning(self._attempt, f"Audio publish failed: {e}"))

    async def _open_side_channel(self, remote_identity: str) -> None:
        if self._transport is None or self._side_channel is not None:
            return

        self._side_channel = SideChannel(self._transport, remote_identity)
        self._side_channel_state = SideChannelState.OPEN
        logger.info("Side channel open", extra={"remote_identity": remote_identity})
        self._post(SideChannelOpened(self._attempt, remote_identity))

    def _start_pump(self, transport: PeerTransport) -> None:
        self._pump_task = asyncio.create_task(self._pump(transport))

    async def _pump(self, transport: PeerTransport) -> None:
        try:
            async for event in transport.events():
                await self._handle_transport_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Transport event pump failed")
            self._post(RemoteClosed(self._attempt, f"Transport error: {e}"))

    async def _handle_transport_event(self, event: TransportEvent) -> None:
        if isinstance(event, PeerJoined):
            if self._is_host and self._remote_identity is None:
                self._remote_identity = event.identity
                await self._open_side_channel(event.identity)
            elif event.identity != self._remote_identity:
                logger.warning("Ignoring unexpected participant", extra={"participant": event.identity})

        elif isinstance(event, RemoteAudioStarted):
            if self._is_host and self._remote_identity is None:
                self._remote_identity = event.identity
                await self._open_side_channel(event.identity)
            if event.identity != self._remote_identity or self._media_state == MediaState.ACTIVE:
                return
            if self._is_host:
                await self._answer_call()
            else:
                self._media_state = MediaState.ACTIVE
                logger.info("Remote media stream received", extra={"remote_identity": event.identity})
                self._post(MediaStreamReceived(self._attempt, event.identity))

        elif isinstance(event, DataReceived):
            if event.identity != self._remote_identity:
                logger.debug("Dropping data from unknown participant", extra={"participant": event.identity})
                return
            try:
                message = decode_message(event.payload)
            except ProtocolError as e:
                logger.warning("Dropping malformed side-channel message", extra={"error": str(e)})
                return
            self._post(SideChannelMessageReceived(self._attempt, message))

        elif isinstance(event, PeerLeft):
            if event.identity != self._remote_identity:
                return
            self._mark_link_closed()
            self._post(RemoteClosed(self._attempt, "Peer left the session"))

        elif isinstance(event, LinkLost):
            self._mark_link_closed()
            self._post(RemoteClosed(self._attempt, f"Connection lost ({event.reason})"))

        elif isinstance(event, NegotiationError):
            self._post(NegotiationWarning(self._attempt, event.detail))

    async def _answer_call(self) -> None:
        """Answer the inbound call by publishing the local audio source."""
        if self._audio is None or self._transport is None:
            return

        self._media_state = MediaState.NEGOTIATING
        try:
            await self._transport.publish_audio(self._audio)
        except ConnectionError as e:
            logger.warning("Failed to answer inbound call", extra={"error": str(e)})
            self._post(NegotiationWarning(self._attempt, f"Answer failed: {e}"))
            return

        self._media_state = MediaState.ACTIVE
        logger.info("Inbound call accepted", extra={"remote_identity": self._remote_identity})
        self._post(InboundCallAccepted(self._attempt, self._remote_identity or ""))

    def _mark_link_closed(self) -> None:
        if self._media_state != MediaState.ABSENT:
            self._media_state = MediaState.CLOSED
        if self._side_channel is not None:
            self._side_channel.close()
            self._side_channel_state = SideChannelState.CLOSED
            self._post(SideChannelClosed(self._attempt))

    def toggle_microphone(self) -> bool:
        """Flip the local audio source's enabled state.

        Returns:
            The new enabled state (False when there is no source)
        """
        if self._audio is None:
            return False
        self._audio.enabled = not self._audio.enabled
        return self._audio.enabled

    async def toggle_remote_audio(self) -> bool:
        """Flip reception of remote audio (deafen).

        Returns:
            The new enabled state
        """
        self._remote_audio_enabled = not self._remote_audio_enabled
        if self._transport is not None:
            await self._transport.set_remote_audio_enabled(self._remote_audio_enabled)
        return self._remote_audio_enabled

    async def teardown(self) -> None:
        """Release local audio, media link, side-channel, identity, in that order.

        Tolerates any subset already released; safe to call repeatedly.
        """
        already_closed = self._closed
        self._closed = True

        if self._audio is not None:
            audio, self._audio = self._audio, None
            try:
                await audio.stop()
            except Exception as e:
                logger.warning("Error releasing local audio source", extra={"error": str(e)})

        if self._transport is not None:
            try:
                await self._transport.unpublish_audio()
            except Exception as e:
                logger.warning("Error closing media link", extra={"error": str(e)})
        if self._media_state != MediaState.ABSENT:
            self._media_state = MediaState.CLOSED

        if self._side_channel is not None:
            self._side_channel.close()
            self._side_channel = None
        if self._side_channel_state != SideChannelState.ABSENT:
            self._side_channel_state = SideChannelState.CLOSED

        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        if self._transport is not None:
            transport, self._transport = self._transport, None
            try:
                await transport.close()
            except Exception as e:
                logger.warning("Error closing peer transport", extra={"error": str(e)})

        if self._registered_id is not None:
            session_id, self._registered_id = self._registered_id, None
            try:
                await self._signaling.release(session_id)
            except Exception as e:
                logger.warning(
                    "Error releasing identity registration",
                    extra={"session_id": session_id, "error": str(e)},
                )

        if not already_closed:
            logger.info("Connection torn down")
