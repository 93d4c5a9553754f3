"""Unit tests for the microphone capability gate and local audio source."""

import sys
from unittest.mock import AsyncMock, Mock, patch

import pytest

from echolink.capability import (
    EXPECTED_FRAME_SIZE_BYTES,
    LiveKitAudioSource,
    MicrophoneGate,
    validate_frame_size,
)


@pytest.fixture
def livekit_source():
    """LiveKitAudioSource with the LiveKit audio objects mocked out."""
    with (
        patch("echolink.capability.rtc.AudioSource") as mock_source_cls,
        patch("echolink.capability.rtc.LocalAudioTrack") as mock_track_cls,
    ):
        mock_source_cls.return_value.aclose = AsyncMock()
        mock_source_cls.return_value.capture_frame = AsyncMock()
        mock_track_cls.create_audio_track.return_value = Mock()
        yield LiveKitAudioSource()


def test_validate_frame_size() -> None:
    """Test only 20ms 48kHz mono frames are accepted."""
    validate_frame_size(b"\x00" * EXPECTED_FRAME_SIZE_BYTES)

    with pytest.raises(ValueError, match="Invalid frame size"):
        validate_frame_size(b"\x00" * 100)


async def test_mute_and_unmute(livekit_source: LiveKitAudioSource) -> None:
    livekit_source.enabled = False
    livekit_source.enabled = True

    livekit_source.track.mute.assert_called_once()
    livekit_source.track.unmute.assert_called_once()
    assert livekit_source.enabled


async def test_stop_is_idempotent(livekit_source: LiveKitAudioSource) -> None:
    stream = Mock()
    livekit_source.start(stream)

    await livekit_source.stop()
    await livekit_source.stop()

    stream.start.assert_called_once()
    stream.stop.assert_called_once()
    stream.close.assert_called_once()
    livekit_source.source.aclose.assert_awaited_once()
    assert livekit_source.is_stopped


async def test_push_after_stop_is_ignored(livekit_source: LiveKitAudioSource) -> None:
    livekit_source.start()
    await livekit_source.stop()

    livekit_source.push_frame(b"\x00" * EXPECTED_FRAME_SIZE_BYTES)

    livekit_source.source.capture_frame.assert_not_called()


async def test_gate_denies_without_sounddevice() -> None:
    """Test access is denied when the audio backend cannot be imported."""
    with patch.dict(sys.modules, {"sounddevice": None}):
        access = await MicrophoneGate().request_microphone_access()

    assert not access.granted
    assert access.handle is None


async def test_gate_denies_unusable_device() -> None:
    sounddevice = Mock()
    sounddevice.check_input_settings.side_effect = ValueError("No input device matching 7")

    with patch.dict(sys.modules, {"sounddevice": sounddevice}):
        access = await MicrophoneGate(device=7).request_microphone_access()

    assert not access.granted
    sounddevice.RawInputStream.assert_not_called()
