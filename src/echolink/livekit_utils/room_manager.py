"""LiveKit room service access for EchoLink sessions.

A session id is "registered" while a room named ``{prefix}-{session_id}``
exists on the server. This module owns the naming rules, participant
identities and access tokens, and the room service calls used to register,
look up and release those rooms.
"""

import secrets
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

import aiohttp
from livekit import api
from livekit.api import AccessToken, VideoGrants
from livekit.api.room_service import RoomService

from echolink.config import LiveKitConfig

T = TypeVar("T")

# A session room only ever holds the host and one guest
MAX_PARTICIPANTS = 2


class LiveKitRoomManager:
    """Room service client keyed by session id.

    The server enforces uniqueness of room names, so creating the room is
    what claims a session id and deleting it is what frees the id again.
    """

    def __init__(self, config: LiveKitConfig) -> None:
        self.config = config
        self._http: aiohttp.ClientSession | None = None
        self._service: RoomService | None = None

    def _room_service(self) -> RoomService:
        # The HTTP session must be created on the running loop
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._service = RoomService(
                self._http, self.config.url, self.config.api_key, self.config.api_secret
            )
        assert self._service is not None
        return self._service

    async def _call(self, action: str, request: Callable[[RoomService], Awaitable[T]]) -> T:
        try:
            return await request(self._room_service())
        except Exception as e:
            raise RuntimeError(f"Failed to {action}: {e}") from e

    async def close(self) -> None:
        """Close the HTTP session used for room service calls."""
        http, self._http, self._service = self._http, None, None
        if http is not None and not http.closed:
            await http.close()

    def room_name_for(self, session_id: str) -> str:
        """Room name for a session id: ``{prefix}-{session_id}``."""
        return f"{self.config.room_prefix}-{session_id}"

    @staticmethod
    def host_identity(session_id: str) -> str:
        """Participant identity the host joins its session room with."""
        return f"host-{session_id}"

    @staticmethod
    def generate_guest_identity() -> str:
        return f"guest-{secrets.token_hex(4)}"

    def create_access_token(
        self, room_name: str, participant_identity: str, ttl_hours: int | None = None
    ) -> str:
        """Sign a join token for one session room.

        Both parties may publish audio and data; nobody may join any other
        room with it.

        Args:
            room_name: Session room to grant access to
            participant_identity: Host or guest identity
            ttl_hours: Token lifetime (config default if None)

        Returns:
            JWT token string
        """
        grants = VideoGrants(
            room_join=True,
            room=room_name,
            can_publish=True,
            can_subscribe=True,
            can_publish_data=True,
        )
        lifetime = timedelta(hours=ttl_hours or self.config.token_ttl_hours)
        return (
            AccessToken(self.config.api_key, self.config.api_secret)
            .with_identity(participant_identity)
            .with_name(participant_identity)
            .with_grants(grants)
            .with_ttl(lifetime)
            .to_jwt()
        )

    async def create_room(self, room_name: str) -> str:
        """Create a two-party session room.

        Raises:
            RuntimeError: If the room service rejects the request
        """
        request = api.CreateRoomRequest(
            name=room_name,
            empty_timeout=self.config.empty_timeout_seconds,
            max_participants=MAX_PARTICIPANTS,
        )
        await self._call(f"create room '{room_name}'", lambda service: service.create_room(request))
        return room_name

    async def find_room(self, room_name: str) -> api.Room | None:
        """Return the room if it exists.

        Raises:
            RuntimeError: If the room service cannot be queried
        """
        response = await self._call(
            f"look up room '{room_name}'",
            lambda service: service.list_rooms(api.ListRoomsRequest(names=[room_name])),
        )
        return next((room for room in response.rooms if room.name == room_name), None)

    async def list_participant_identities(self, room_name: str) -> list[str]:
        """Identities of the participants currently in a room.

        Raises:
            RuntimeError: If the room service cannot be queried
        """
        response = await self._call(
            f"list participants of room '{room_name}'",
            lambda service: service.list_participants(api.ListParticipantsRequest(room=room_name)),
        )
        return [participant.identity for participant in response.participants]

    async def delete_room(self, room_name: str) -> None:
        """Delete a session room, disconnecting anyone still in it.

        Raises:
            RuntimeError: If the room service rejects the request
        """
        await self._call(
            f"delete room '{room_name}'",
            lambda service: service.delete_room(api.DeleteRoomRequest(room=room_name)),
        )
