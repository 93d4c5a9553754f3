"""Unit tests for the EchoLink CLI front end."""

from unittest.mock import AsyncMock, Mock

import pytest

from echolink.cli import EchoLinkCLI
from echolink.connection import PeerLink
from echolink.controller import LifecycleState, SessionController, SessionSnapshot
from echolink.speech import RecognitionEvent
from echolink.transcript import Sender, TranscriptItem


@pytest.fixture
def cli() -> EchoLinkCLI:
    cli = EchoLinkCLI()
    cli.controller = Mock(spec=SessionController)
    cli.controller.toggle_microphone = AsyncMock(return_value=False)
    cli.controller.toggle_remote_audio = AsyncMock(return_value=True)
    cli.controller.toggle_translation = AsyncMock(return_value=True)
    cli.controller.send_chat = AsyncMock(return_value=None)
    cli.controller.hangup = AsyncMock()
    cli.controller.abort = AsyncMock()
    return cli


def snapshot(status: str, items: tuple[TranscriptItem, ...] = ()) -> SessionSnapshot:
    return SessionSnapshot(
        state=LifecycleState.ACTIVE,
        role=None,
        session_id="4821",
        status_message=status,
        alert=None,
        items=items,
        link=PeerLink(),
        microphone_enabled=True,
        remote_audio_enabled=True,
        captioning_enabled=True,
        caption_status=None,
        summary=None,
    )


async def test_plain_lines_are_spoken(cli: EchoLinkCLI) -> None:
    engine = cli.speech_engine_factory()
    await engine.start()

    await cli.handle_line("hello team")
    engine.close()

    events = [event async for event in engine.events()]
    assert events[-1] == RecognitionEvent(0, "hello team", True)


async def test_plain_lines_without_captions(cli: EchoLinkCLI, capsys) -> None:
    await cli.handle_line("hello")

    assert "captions are not running" in capsys.readouterr().out


async def test_commands_reach_controller(cli: EchoLinkCLI, capsys) -> None:
    await cli.handle_line("/mute")
    await cli.handle_line("/deafen")
    await cli.handle_line("/translate")
    await cli.handle_line("/chat see you")
    await cli.handle_line("/hangup")

    out = capsys.readouterr().out
    assert "Microphone muted" in out
    assert "Peer audio on" in out
    assert "Translation on" in out
    assert "only available during an active call" in out
    cli.controller.send_chat.assert_awaited_once_with("see you")
    cli.controller.hangup.assert_awaited_once()


async def test_quit_aborts(cli: EchoLinkCLI) -> None:
    await cli.handle_line("/quit")

    assert cli.running is False
    cli.controller.abort.assert_awaited_once()


async def test_unknown_command(cli: EchoLinkCLI, capsys) -> None:
    await cli.handle_line("/dance")

    assert "Unknown command: dance" in capsys.readouterr().out


def test_render_prints_each_change_once(cli: EchoLinkCLI, capsys) -> None:
    interim = TranscriptItem("1", Sender.REMOTE, "hello", False, 1.0)
    final = interim.revise("hello team", True)

    cli.render(snapshot("SECURE CONNECTION ACTIVE", (interim,)))
    cli.render(snapshot("SECURE CONNECTION ACTIVE", (interim,)))
    cli.render(snapshot("SECURE CONNECTION ACTIVE", (final,)))

    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "-- [4821] SECURE CONNECTION ACTIVE",
        "Peer: hello ...",
        "Peer: hello team",
    ]
