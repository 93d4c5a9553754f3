"""Unit tests for LiveKit room service access."""

from unittest.mock import AsyncMock, Mock, patch

import pytest
from livekit import api

from echolink.config import LiveKitConfig
from echolink.livekit_utils.room_manager import MAX_PARTICIPANTS, LiveKitRoomManager


@pytest.fixture
def manager() -> LiveKitRoomManager:
    return LiveKitRoomManager(
        LiveKitConfig(
            url="ws://localhost:7880",
            api_key="test-key",
            api_secret="test-secret-that-is-long-enough-for-hs256",
        )
    )


@pytest.fixture
def service(manager: LiveKitRoomManager):
    """Mock RoomService handed out by the manager."""
    service = Mock()
    with patch.object(manager, "_room_service", return_value=service):
        yield service


def test_naming(manager: LiveKitRoomManager) -> None:
    assert manager.room_name_for("4821") == "echolink-4821"
    assert manager.host_identity("4821") == "host-4821"
    assert manager.generate_guest_identity().startswith("guest-")
    assert manager.generate_guest_identity() != manager.generate_guest_identity()


def test_access_token_grants_single_room(manager: LiveKitRoomManager) -> None:
    token = manager.create_access_token("echolink-4821", "host-4821")

    claims = api.TokenVerifier(
        "test-key", "test-secret-that-is-long-enough-for-hs256"
    ).verify(token)

    assert claims.identity == "host-4821"
    assert claims.video.room == "echolink-4821"
    assert claims.video.room_join
    assert claims.video.can_publish_data


async def test_create_room_limits_participants(
    manager: LiveKitRoomManager, service: Mock
) -> None:
    service.create_room = AsyncMock()

    assert await manager.create_room("echolink-4821") == "echolink-4821"

    request = service.create_room.call_args.args[0]
    assert request.name == "echolink-4821"
    assert request.max_participants == MAX_PARTICIPANTS


async def test_find_room(manager: LiveKitRoomManager, service: Mock) -> None:
    room = Mock()
    room.name = "echolink-4821"
    service.list_rooms = AsyncMock(return_value=Mock(rooms=[room]))

    assert await manager.find_room("echolink-4821") is room

    service.list_rooms = AsyncMock(return_value=Mock(rooms=[]))
    assert await manager.find_room("echolink-0007") is None


async def test_list_participant_identities(manager: LiveKitRoomManager, service: Mock) -> None:
    host = Mock()
    host.identity = "host-4821"
    service.list_participants = AsyncMock(return_value=Mock(participants=[host]))

    assert await manager.list_participant_identities("echolink-4821") == ["host-4821"]


@pytest.mark.parametrize(
    "method, call",
    [
        ("create_room", lambda m: m.create_room("echolink-4821")),
        ("list_rooms", lambda m: m.find_room("echolink-4821")),
        ("list_participants", lambda m: m.list_participant_identities("echolink-4821")),
        ("delete_room", lambda m: m.delete_room("echolink-4821")),
    ],
)
async def test_service_errors_become_runtime_errors(
    manager: LiveKitRoomManager, service: Mock, method: str, call
) -> None:
    setattr(service, method, AsyncMock(side_effect=Exception("twirp error")))

    with pytest.raises(RuntimeError, match="echolink-4821"):
        await call(manager)


async def test_close_without_session(manager: LiveKitRoomManager) -> None:
    await manager.close()
    await manager.close()
