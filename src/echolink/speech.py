"""Speech capture adapter.

Wraps a continuous, interim-results speech recognition engine and turns its
events into ``SpeechFragment`` events for the session controller.

Restart policy: an engine run can end on its own (silence, network hiccup,
engine time limits). The adapter restarts it only while ``should_listen``
is set; ``stop()`` clears the flag first, so an intentional stop is never
resurrected by the engine's own "ended" signal. There is no restart limit:
a silent listener ends run after run with "no-speech", and captions must
survive that. The delay doubles while no speech is recognised, up to
``max_restart_backoff_seconds``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

from echolink.config import SpeechConfig
from echolink.errors import SpeechEngineError
from echolink.events import CaptioningDisabled, SessionEvent, SpeechFragment, SpeechStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecognitionEvent:
    """Recogniser result for one utterance (interim or final)."""

    result_index: int
    text: str
    is_final: bool


@dataclass(frozen=True)
class EngineEnded:
    """The current recognition run ended."""


@dataclass(frozen=True)
class EngineError:
    code: str
    message: str = ""


EngineEvent = RecognitionEvent | EngineEnded | EngineError


class SpeechEngine(ABC):
    """External speech recognition engine (continuous, interim results)."""

    @abstractmethod
    async def start(self) -> None:
        """Begin a recognition run.

        Raises:
            SpeechEngineError: If recognition cannot start
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """End the current run. An ``EngineEnded`` event follows."""
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[EngineEvent]:
        """Events of all runs, in order."""
        pass


class ScriptedSpeechEngine(SpeechEngine):
    """Engine fed with typed utterances.

    Each utterance is reported word by word as growing interim results and
    then once as a final result, the way a streaming recogniser does:

        say("hello team") -> "hello" (interim), "hello team" (interim),
                             "hello team" (final)
    """

    def __init__(self, supported: bool = True) -> None:
        self.supported = supported
        self._events: asyncio.Queue[EngineEvent | None] = asyncio.Queue()
        self._running = False
        self._result_index = 0
        self.start_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if not self.supported:
            raise SpeechEngineError("not-supported")
        self._running = True
        self.start_count += 1

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._events.put_nowait(EngineEnded())

    def say(self, utterance: str) -> bool:
        """Recognise an utterance.

        Returns:
            False if the engine is not running (the utterance is lost)
        """
        words = utterance.split()
        if not self._running or not words:
            return False

        for count in range(1, len(words) + 1):
            self._events.put_nowait(
                RecognitionEvent(self._result_index, " ".join(words[:count]), False)
            )
        self._events.put_nowait(RecognitionEvent(self._result_index, " ".join(words), True))
        self._result_index += 1
        return True

    def end(self) -> None:
        """Simulate the engine ending a run on its own."""
        self._running = False
        self._events.put_nowait(EngineEnded())

    def fail(self, code: str, message: str = "") -> None:
        """Simulate an engine error; the run ends afterwards."""
        self._events.put_nowait(EngineError(code, message))
        self.end()

    def close(self) -> None:
        """End the event stream."""
        self._running = False
        self._events.put_nowait(None)

    async def events(self) -> AsyncIterator[EngineEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event


class SpeechCaptureAdapter:
    """Uniform fragment stream over a speech engine, with supervised restart."""

    def __init__(
        self,
        engine: SpeechEngine,
        outbox: asyncio.Queue[SessionEvent],
        attempt: int,
        config: SpeechConfig | None = None,
    ) -> None:
        """Initialize speech capture adapter.

        Args:
            engine: Recognition engine to drive
            outbox: Controller inbox that receives speech events
            attempt: Session attempt these events belong to
            config: Restart policy (defaults if None)
        """
        self._engine = engine
        self._outbox = outbox
        self._attempt = attempt
        self._config = config or SpeechConfig()

        self.should_listen = False
        self._capturing = False
        self._disabled = False
        self._consecutive_restarts = 0
        self._consume_task: asyncio.Task[None] | None = None

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    @property
    def captioning_enabled(self) -> bool:
        return not self._disabled

    def restart_delay(self) -> float:
        """Backoff before the next restart, from the current silent streak."""
        exponent = min(max(self._consecutive_restarts - 1, 0), 16)
        delay = self._config.restart_backoff_seconds * (2**exponent)
        return min(delay, self._config.max_restart_backoff_seconds)

    def _post(self, event: SessionEvent) -> None:
        self._outbox.put_nowait(event)

    async def start(self) -> None:
        """Begin capture. No-op if already capturing or captioning is disabled."""
        if self._disabled or self.should_listen:
            return

        self.should_listen = True
        if self._consume_task is None:
            self._consume_task = asyncio.create_task(self._consume())
        await self._start_engine()

    async def stop(self) -> None:
        """Halt capture and suppress auto-restart."""
        self.should_listen = False

        if self._capturing:
            self._capturing = False
            try:
                await self._engine.stop()
            except Exception as e:
                logger.warning("Error stopping speech engine", extra={"error": str(e)})

        if self._consume_task is not None:
            self._consume_task.cancel()
            try:
                await self._consume_task
            except asyncio.CancelledError:
                pass
            self._consume_task = None

    async def _start_engine(self) -> None:
        try:
            await self._engine.start()
        except SpeechEngineError as e:
            await self._handle_error(e)
            return
        self._capturing = True
        logger.debug("Speech recognition started")

    async def _consume(self) -> None:
        async for event in self._engine.events():
            if isinstance(event, RecognitionEvent):
                self._consecutive_restarts = 0
                self._post(SpeechFragment(self._attempt, event.text, event.is_final))
            elif isinstance(event, EngineError):
                await self._handle_error(SpeechEngineError(event.code, event.message))
            elif isinstance(event, EngineEnded):
                self._capturing = False
                await self._maybe_restart()

    async def _maybe_restart(self) -> None:
        if not self.should_listen or self._disabled or not self._config.auto_resume:
            return

        self._consecutive_restarts += 1
        logger.info(
            "Speech recognition ended, restarting",
            extra={"restart": self._consecutive_restarts},
        )
        await asyncio.sleep(self.restart_delay())

        # stop() may have been called during the backoff
        if self.should_listen and not self._disabled:
            await self._start_engine()

    async def _handle_error(self, error: SpeechEngineError) -> None:
        if error.terminal:
            logger.warning("Speech recognition disabled", extra={"code": error.code})
            self._disable(error.user_message)
            if self._capturing:
                self._capturing = False
                try:
                    await self._engine.stop()
                except Exception as e:
                    logger.warning("Error stopping speech engine", extra={"error": str(e)})
        else:
            logger.info("Transient speech recognition error", extra={"code": error.code})
            self._post(SpeechStatus(self._attempt, error.user_message))

    def _disable(self, reason: str) -> None:
        self._disabled = True
        self.should_listen = False
        self._post(CaptioningDisabled(self._attempt, reason))
