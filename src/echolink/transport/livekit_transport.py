"""LiveKit transport implementation for peer sessions.

Each EchoLink session is a two-participant LiveKit room. The host registers
a session id by creating the room ``{prefix}-{session_id}`` and joining it
as ``host-{session_id}``; the guest dials by joining that room. Audio flows
as a published microphone track, the side-channel as reliable data packets
on a dedicated topic.

LiveKit room callbacks are converted to ``TransportEvent`` values here and
nowhere else.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from livekit import rtc

from echolink.capability import AudioSourceHandle, LiveKitAudioSource
from echolink.config import LiveKitConfig, TraversalConfig
from echolink.errors import PeerUnavailable, RegistrationFailed
from echolink.livekit_utils.room_manager import LiveKitRoomManager
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
from echolink.transport.side_channel_protocol import SIDE_CHANNEL_TOPIC

logger = logging.getLogger(__name__)


def build_rtc_configuration(traversal: TraversalConfig) -> rtc.RtcConfiguration:
    """Map traversal settings onto the LiveKit WebRTC configuration.

    Args:
        traversal: Traversal server list and policy

    Returns:
        RtcConfiguration for ``rtc.RoomOptions``
    """
    ice_servers = [
        rtc.IceServer(
            urls=server.urls,
            username=server.username or "",
            password=server.credential or "",
        )
        for server in traversal.ice_servers
    ]

    if traversal.transport_policy == "relay-only":
        transport_type = rtc.IceTransportType.TRANSPORT_RELAY
    else:
        transport_type = rtc.IceTransportType.TRANSPORT_ALL

    if traversal.candidate_pool_size:
        # The LiveKit SDK gathers continually instead of pre-pooling
        logger.debug(
            "candidate_pool_size is not configurable in LiveKit, using continual gathering",
            extra={"candidate_pool_size": traversal.candidate_pool_size},
        )

    return rtc.RtcConfiguration(
        ice_transport_type=transport_type,
        continual_gathering_policy=rtc.ContinualGatheringPolicy.GATHER_CONTINUALLY,
        ice_servers=ice_servers,
    )


class LiveKitPeerTransport(PeerTransport):
    """LiveKit room connection for one session.

    Event handlers are registered on construction, before the room connects,
    so no early participant or track event is missed.
    """

    def __init__(
        self,
        room: rtc.Room,
        room_name: str,
        local_identity: str,
        peer_identity: str | None = None,
    ) -> None:
        """Initialize LiveKit peer transport.

        Args:
            room: LiveKit room instance (not yet connected)
            room_name: LiveKit room name
            local_identity: Identity used in the access token
            peer_identity: Expected remote identity, if known (guest side)
        """
        self._room = room
        self._room_name = room_name
        self._local_identity = local_identity
        self._peer_identity = peer_identity
        self._connected = False
        self._closed = False

        self._events: asyncio.Queue[TransportEvent | None] = asyncio.Queue()
        self._audio_publication_sid: str | None = None
        self._remote_audio: dict[str, rtc.RemoteTrackPublication] = {}

        self._register_handlers()

    def _register_handlers(self) -> None:
        self._room.on("participant_connected", self._on_participant_connected)
        self._room.on("participant_disconnected", self._on_participant_disconnected)
        self._room.on("track_subscribed", self._on_track_subscribed)
        self._room.on("data_received", self._on_data_received)
        self._room.on("reconnecting", self._on_reconnecting)
        self._room.on("disconnected", self._on_disconnected)

    @property
    def room_name(self) -> str:
        return self._room_name

    @property
    def local_identity(self) -> str:
        return self._local_identity

    @property
    def peer_identity(self) -> str | None:
        return self._peer_identity

    @property
    def is_connected(self) -> bool:
        """Check if the room connection is still active."""
        return (
            self._connected
            and not self._closed
            and self._room.connection_state == rtc.ConnectionState.CONN_CONNECTED
        )

    def has_participant(self, identity: str) -> bool:
        return identity in self._room.remote_participants

    def _emit(self, event: TransportEvent) -> None:
        if self._closed:
            return
        self._events.put_nowait(event)

    def _on_participant_connected(self, participant: rtc.RemoteParticipant) -> None:
        logger.info(
            "Participant joined room",
            extra={"room": self._room_name, "participant": participant.identity},
        )
        self._emit(PeerJoined(participant.identity))

    def _on_participant_disconnected(self, participant: rtc.RemoteParticipant) -> None:
        logger.info(
            "Participant left room",
            extra={"room": self._room_name, "participant": participant.identity},
        )
        self._remote_audio.pop(participant.identity, None)
        self._emit(PeerLeft(participant.identity))

    def _on_track_subscribed(
        self,
        track: rtc.Track,
        publication: rtc.RemoteTrackPublication,
        participant: rtc.RemoteParticipant,
    ) -> None:
        if track.kind != rtc.TrackKind.KIND_AUDIO:
            return
        self._remote_audio[participant.identity] = publication
        logger.info(
            "Remote audio subscribed",
            extra={"room": self._room_name, "participant": participant.identity},
        )
        self._emit(RemoteAudioStarted(participant.identity))

    def _on_data_received(self, packet: rtc.DataPacket) -> None:
        if packet.topic != SIDE_CHANNEL_TOPIC:
            return
        identity = packet.participant.identity if packet.participant is not None else ""
        self._emit(DataReceived(payload=bytes(packet.data), identity=identity))

    def _on_reconnecting(self) -> None:
        logger.warning("LiveKit connection lost, reconnecting", extra={"room": self._room_name})
        self._emit(NegotiationError("reconnecting"))

    def _on_disconnected(self, reason: object = None) -> None:
        self._connected = False
        logger.info(
            "Disconnected from room",
            extra={"room": self._room_name, "reason": str(reason)},
        )
        self._emit(LinkLost(str(reason)))

    async def connect(self, url: str, token: str, options: rtc.RoomOptions) -> None:
        """Connect to the room and announce participants already present.

        Raises:
            ConnectionError: If the room connection fails
        """
        try:
            await self._room.connect(url, token, options=options)
        except Exception as e:
            raise ConnectionError(f"Failed to connect to LiveKit room '{self._room_name}': {e}") from e

        self._connected = True
        logger.info(
            "Connected to room",
            extra={"room": self._room_name, "identity": self._local_identity},
        )

        for participant in list(self._room.remote_participants.values()):
            self._emit(PeerJoined(participant.identity))

    async def events(self) -> AsyncIterator[TransportEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def publish_audio(self, source: AudioSourceHandle) -> None:
        if not self.is_connected:
            raise ConnectionError("LiveKit connection is closed")
        if not isinstance(source, LiveKitAudioSource):
            raise TypeError(f"Cannot publish {type(source).__name__} over LiveKit")
        if self._audio_publication_sid is not None:
            return

        publication = await self._room.local_participant.publish_track(
            source.track,
            rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE),
        )
        self._audio_publication_sid = publication.sid

        logger.info("Audio track published", extra={"room": self._room_name})

    async def unpublish_audio(self) -> None:
        if self._audio_publication_sid is None:
            return
        sid, self._audio_publication_sid = self._audio_publication_sid, None
        await self._room.local_participant.unpublish_track(sid)

    async def send_data(self, payload: bytes, destination: str | None = None) -> None:
        if not self.is_connected:
            raise ConnectionError("LiveKit connection is closed")

        try:
            await self._room.local_participant.publish_data(
                payload,
                reliable=True,
                destination_identities=[destination] if destination else [],
                topic=SIDE_CHANNEL_TOPIC,
            )
        except Exception as e:
            raise ConnectionError(f"LiveKit data publish failed: {e}") from e

    async def set_remote_audio_enabled(self, enabled: bool) -> None:
        for publication in self._remote_audio.values():
            publication.set_subscribed(enabled)

    async def close(self) -> None:
        """Unpublish audio, disconnect from the room, end the event stream."""
        if self._closed:
            return

        logger.info("Closing LiveKit peer transport", extra={"room": self._room_name})

        try:
            await self.unpublish_audio()
        except Exception as e:
            logger.warning(
                "Error unpublishing audio during close",
                extra={"room": self._room_name, "error": str(e)},
            )

        try:
            await self._room.disconnect()
        except Exception as e:
            logger.warning(
                "Error during room disconnect",
                extra={"room": self._room_name, "error": str(e)},
            )
        finally:
            self._closed = True
            self._connected = False
            self._remote_audio.clear()
            self._events.put_nowait(None)


class LiveKitSignaling(SignalingService):
    """Session id rendezvous on top of LiveKit rooms."""

    def __init__(
        self,
        config: LiveKitConfig,
        traversal: TraversalConfig,
        room_manager: LiveKitRoomManager | None = None,
        room_factory: Callable[[], rtc.Room] = rtc.Room,
    ) -> None:
        """Initialize LiveKit signaling.

        Args:
            config: LiveKit server configuration
            traversal: Traversal servers handed to every connection
            room_manager: Room service client (created from config if None)
            room_factory: Factory for ``rtc.Room`` instances
        """
        self._config = config
        self._traversal = traversal
        self._room_manager = room_manager or LiveKitRoomManager(config)
        self._room_factory = room_factory
        self._registered: set[str] = set()

        logger.info(
            "LiveKit signaling initialized",
            extra={"url": config.url, "room_prefix": config.room_prefix},
        )

    def _room_options(self) -> rtc.RoomOptions:
        return rtc.RoomOptions(
            auto_subscribe=True,
            rtc_config=build_rtc_configuration(self._traversal),
        )

    async def register(self, session_id: str) -> PeerTransport:
        room_name = self._room_manager.room_name_for(session_id)

        try:
            existing = await self._room_manager.find_room(room_name)
        except RuntimeError as e:
            raise RegistrationFailed(f"Signaling service unavailable: {e}") from e

        # An empty room may belong to a host that is still connecting
        if existing is not None:
            raise RegistrationFailed(f"Session id {session_id} is already in use")

        try:
            await self._room_manager.create_room(room_name)
        except RuntimeError as e:
            raise RegistrationFailed(str(e)) from e
        self._registered.add(session_id)

        identity = self._room_manager.host_identity(session_id)
        transport = LiveKitPeerTransport(self._room_factory(), room_name, identity)
        token = self._room_manager.create_access_token(room_name, identity)

        try:
            await transport.connect(self._config.url, token, self._room_options())
        except ConnectionError as e:
            await transport.close()
            await self.release(session_id)
            raise RegistrationFailed(str(e)) from e
        except asyncio.CancelledError:
            await transport.close()
            await self.release(session_id)
            raise

        logger.info(
            "Session id registered",
            extra={"session_id": session_id, "room": room_name},
        )
        return transport

    async def dial(self, target_id: str) -> PeerTransport:
        room_name = self._room_manager.room_name_for(target_id)
        host_identity = self._room_manager.host_identity(target_id)

        try:
            room = await self._room_manager.find_room(room_name)
            if room is None:
                raise PeerUnavailable(f"No session registered under {target_id}")
            identities = await self._room_manager.list_participant_identities(room_name)
        except RuntimeError as e:
            raise PeerUnavailable(f"Signaling service unavailable: {e}") from e

        if host_identity not in identities:
            raise PeerUnavailable(f"Host of session {target_id} is offline")

        identity = self._room_manager.generate_guest_identity()
        transport = LiveKitPeerTransport(
            self._room_factory(), room_name, identity, peer_identity=host_identity
        )
        token = self._room_manager.create_access_token(room_name, identity)

        try:
            await transport.connect(self._config.url, token, self._room_options())
        except ConnectionError as e:
            await transport.close()
            raise PeerUnavailable(str(e)) from e
        except asyncio.CancelledError:
            await transport.close()
            raise

        # The host may have left between lookup and join
        if not transport.has_participant(host_identity):
            await transport.close()
            raise PeerUnavailable(f"Host of session {target_id} is offline")

        logger.info(
            "Dialed session",
            extra={"session_id": target_id, "room": room_name, "identity": identity},
        )
        return transport

    async def release(self, session_id: str) -> None:
        if session_id not in self._registered:
            return
        self._registered.discard(session_id)

        room_name = self._room_manager.room_name_for(session_id)
        try:
            await self._room_manager.delete_room(room_name)
        except RuntimeError as e:
            # The server closes empty rooms after empty_timeout anyway
            logger.warning(
                "Failed to delete session room",
                extra={"room": room_name, "error": str(e)},
            )

    async def close(self) -> None:
        for session_id in list(self._registered):
            await self.release(session_id)
        await self._room_manager.close()
