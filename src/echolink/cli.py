"""EchoLink command-line client.

Hosts or joins a two-party session over LiveKit. Microphone audio is sent
to the peer; lines typed on stdin stand in for recognised speech and are
captioned to both parties.

Usage:
    echolink host
    echolink join 4821
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from echolink.capability import MicrophoneGate
from echolink.config import EchoLinkConfig
from echolink.controller import LifecycleState, SessionController, SessionSnapshot
from echolink.logging_utils import setup_logging
from echolink.speech import ScriptedSpeechEngine
from echolink.transcript import Sender
from echolink.translation import LANGUAGES, TranslationClient
from echolink.transport.livekit_transport import LiveKitSignaling

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("configs/echolink.yaml")

HELP_TEXT = """
Commands:
  /mute        - Toggle your microphone
  /deafen      - Toggle the peer's audio
  /chat <text> - Send a typed message
  /translate   - Toggle translation of the peer's lines
  /hangup      - End the call
  /quit        - Abort and exit
  /help        - Show this help

Any other line is spoken as a caption.
"""


class EchoLinkCLI:
    """Interactive terminal front end for a SessionController."""

    controller: SessionController

    def __init__(self) -> None:
        self.engine: ScriptedSpeechEngine | None = None
        self.running = True
        self._finished = asyncio.Event()
        self._rendered: dict[str, tuple[str, bool, str | None]] = {}
        self._last_status: str | None = None

    def speech_engine_factory(self) -> ScriptedSpeechEngine:
        """Create the engine for a new session and remember it for stdin."""
        self.engine = ScriptedSpeechEngine()
        return self.engine

    def render(self, snapshot: SessionSnapshot) -> None:
        """Print status changes and transcript updates."""
        if snapshot.status_message != self._last_status:
            self._last_status = snapshot.status_message
            prefix = f"[{snapshot.session_id}] " if snapshot.session_id else ""
            print(f"-- {prefix}{snapshot.status_message}")

        for item in snapshot.items:
            state = (item.text, item.is_final, item.translated_text)
            if self._rendered.get(item.id) == state:
                continue
            self._rendered[item.id] = state

            speaker = "You" if item.sender == Sender.LOCAL else "Peer"
            marker = "" if item.is_final else " ..."
            line = f"{speaker}: {item.text}{marker}"
            if item.translated_text:
                line += f"  [{item.translated_text}]"
            print(line)

    async def render_updates(self) -> None:
        was_busy = False
        async for snapshot in self.controller.updates():
            self.render(snapshot)

            if snapshot.state == LifecycleState.SUMMARIZING and snapshot.summary is not None:
                print()
                print(snapshot.summary.to_text())
                await self.controller.acknowledge()
                self._finished.set()
            elif snapshot.state == LifecycleState.IDLE and was_busy:
                if snapshot.alert:
                    print(f"!! {snapshot.alert}")
                self._finished.set()

            was_busy = snapshot.state != LifecycleState.IDLE

    async def handle_line(self, text: str) -> None:
        if not text.startswith("/"):
            if self.engine is None or not self.engine.say(text):
                print("(captions are not running)")
            return

        command, _, argument = text[1:].partition(" ")
        command = command.lower()

        if command == "help":
            print(HELP_TEXT)
        elif command == "mute":
            enabled = await self.controller.toggle_microphone()
            print("Microphone on" if enabled else "Microphone muted")
        elif command == "deafen":
            enabled = await self.controller.toggle_remote_audio()
            print("Peer audio on" if enabled else "Peer audio off")
        elif command == "translate":
            enabled = await self.controller.toggle_translation()
            print("Translation on" if enabled else "Translation off")
        elif command == "chat":
            if await self.controller.send_chat(argument) is None:
                print("(chat is only available during an active call)")
        elif command == "hangup":
            await self.controller.hangup()
        elif command == "quit":
            self.running = False
            await self.controller.abort()
            self._finished.set()
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        loop = asyncio.get_running_loop()

        while self.running and not self._finished.is_set():
            try:
                text = await loop.run_in_executor(None, input, "")
            except EOFError:
                self.running = False
                await self.controller.abort()
                break

            text = text.strip()
            if text:
                try:
                    await self.handle_line(text)
                except Exception as e:
                    logger.error(f"Input error: {e}")

    async def run(self, target_id: str | None = None) -> int:
        """Host (no target) or join ``target_id``; return the exit code."""
        await self.controller.start()
        render_task = asyncio.create_task(self.render_updates())

        print(HELP_TEXT)
        try:
            if target_id is None:
                await self.controller.select_host()
            else:
                await self.controller.select_guest(target_id)
        except ValueError as e:
            print(f"!! {e}")
            render_task.cancel()
            await self.controller.close()
            return 2

        input_task = asyncio.create_task(self.input_loop())
        finished_task = asyncio.create_task(self._finished.wait())
        try:
            await asyncio.wait({input_task, finished_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.running = False
            finished_task.cancel()
            render_task.cancel()
            alert = self.controller.alert
            await self.controller.close()

        if not input_task.done():
            print("Session over. Press Enter to exit.")
            await input_task

        return 1 if alert else 0


async def run_client(args: argparse.Namespace) -> int:
    """Build the LiveKit-backed controller and run the CLI."""
    config = EchoLinkConfig.from_yaml_with_defaults(Path(args.config))
    if args.translate_to:
        config.translation.enabled = True
        config.translation.target_language = args.translate_to
    setup_logging(args.log_level or config.log_level)

    signaling = LiveKitSignaling(config.livekit, config.traversal)
    translator = TranslationClient(config.translation)

    device = int(args.device) if args.device and args.device.isdigit() else args.device

    cli = EchoLinkCLI()
    cli.controller = SessionController(
        config,
        signaling,
        MicrophoneGate(device=device),
        cli.speech_engine_factory,
        translator=translator,
    )

    try:
        return await cli.run(getattr(args, "session_id", None))
    finally:
        await signaling.close()
        await translator.close()


def main() -> None:
    """Main entry point for the EchoLink CLI."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="EchoLink two-party audio session with live captions")
    parser.add_argument(
        "--config",
        type=str,
        default=str(DEFAULT_CONFIG_PATH),
        help=f"YAML configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Audio input device name or index",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (overrides config)",
    )
    parser.add_argument(
        "--translate-to",
        type=str,
        choices=sorted(LANGUAGES),
        default=None,
        help="Translate the peer's captions into this language",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("host", help="Open a channel and wait for a guest")
    join_parser = subparsers.add_parser("join", help="Join a channel by its session id")
    join_parser.add_argument("session_id", help="4-digit session id shown by the host")

    args = parser.parse_args()

    try:
        exit_code = asyncio.run(run_client(args))
    except KeyboardInterrupt:
        print("\nExiting...")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
