"""Session Controller: top-level state machine for one EchoLink user.

Drives role selection (host/guest), binds Connection Manager and speech
events to user-visible states, and runs teardown. Collaborators never
touch session state; they post events to the controller inbox, and every
mutation happens under the controller lock, either in ``dispatch`` or in
a user command.

State Transitions:
- IDLE → INITIALIZING (select_host)
- INITIALIZING → WAITING_FOR_PEER (host id registered)
- IDLE → CONNECTING (select_guest)
- WAITING_FOR_PEER → ACTIVE (inbound call accepted)
- CONNECTING → ACTIVE (remote media stream received)
- ACTIVE → SUMMARIZING (hangup or remote closed)
- SUMMARIZING → IDLE (acknowledge)
- * → IDLE (fatal error or abort)
"""

import asyncio
import logging
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from echolink.capability import CapabilityGate
from echolink.config import EchoLinkConfig
from echolink.connection import ConnectionManager, PeerLink
from echolink.errors import (
    EchoLinkError,
    PeerUnavailable,
    RegistrationFailed,
    SessionAborted,
)
from echolink.events import (
    CaptioningDisabled,
    ConnectionFailed,
    IdentityReady,
    InboundCallAccepted,
    MediaStreamReceived,
    NegotiationTimedOut,
    NegotiationWarning,
    RemoteClosed,
    SessionEvent,
    SideChannelClosed,
    SideChannelMessageReceived,
    SideChannelOpened,
    SpeechFragment,
    SpeechStatus,
    TranslationReady,
)
from echolink.identity import ItemIdFactory, generate_session_id, is_valid_session_id
from echolink.logging_utils import session_log_context
from echolink.speech import SpeechCaptureAdapter, SpeechEngine
from echolink.summary import CallSummary, build_call_summary
from echolink.synchronizer import TranscriptSynchronizer
from echolink.transcript import Sender, TranscriptItem
from echolink.translation import TranslationClient
from echolink.transport.base import SignalingService

logger = logging.getLogger(__name__)


class LifecycleState(Enum):
    """Session controller states."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    WAITING_FOR_PEER = "waiting_for_peer"
    CONNECTING = "connecting"
    ACTIVE = "active"
    SUMMARIZING = "summarizing"


class Role(Enum):
    HOST = "host"
    GUEST = "guest"


# Valid state transitions
VALID_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.IDLE: {LifecycleState.INITIALIZING, LifecycleState.CONNECTING},
    LifecycleState.INITIALIZING: {LifecycleState.WAITING_FOR_PEER, LifecycleState.IDLE},
    LifecycleState.WAITING_FOR_PEER: {LifecycleState.ACTIVE, LifecycleState.IDLE},
    LifecycleState.CONNECTING: {LifecycleState.ACTIVE, LifecycleState.IDLE},
    LifecycleState.ACTIVE: {LifecycleState.SUMMARIZING, LifecycleState.IDLE},
    LifecycleState.SUMMARIZING: {LifecycleState.IDLE},
}

STATUS_IDLE = "Select a role to begin."
STATUS_INITIALIZING = "Initializing Secure Channel..."
STATUS_WAITING = "Waiting for Guest..."
STATUS_ESTABLISHING = "Establishing Link..."
STATUS_LOCATING = "Locating Channel {session_id}..."
STATUS_HANDSHAKING = "Handshaking..."
STATUS_ACTIVE = "SECURE CONNECTION ACTIVE"
STATUS_ERROR = "Connection Error: {message}"
STATUS_ABORTED = "Connection aborted."
STATUS_CALL_ENDED = "Call ended. {reason}"


@dataclass
class SessionContext:
    """Everything that belongs to one session attempt.

    Created on role selection and discarded when the controller returns to
    IDLE; never reused across attempts.
    """

    role: Role
    attempt: int
    connection: ConnectionManager
    synchronizer: TranscriptSynchronizer
    speech: SpeechCaptureAdapter
    state: LifecycleState = LifecycleState.IDLE
    status_message: str = ""
    session_id: str | None = None
    created_at: float = field(default_factory=time.monotonic)
    active_since: float | None = None
    captioning_enabled: bool = True
    caption_status: str | None = None
    negotiation_timer: asyncio.TimerHandle | None = None
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    def assign_session_id(self, session_id: str) -> None:
        """Set the session id.

        Raises:
            ValueError: If a different id was already assigned
        """
        if self.session_id is not None and self.session_id != session_id:
            raise ValueError(
                f"Session id is immutable once assigned: {self.session_id} != {session_id}"
            )
        self.session_id = session_id


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view for presentation layers."""

    state: LifecycleState
    role: Role | None
    session_id: str | None
    status_message: str
    alert: str | None
    items: tuple[TranscriptItem, ...]
    link: PeerLink
    microphone_enabled: bool
    remote_audio_enabled: bool
    captioning_enabled: bool
    caption_status: str | None
    summary: CallSummary | None
    translation_enabled: bool = False


class SessionController:
    """Orchestrates one user's sessions, one attempt at a time."""

    def __init__(
        self,
        config: EchoLinkConfig,
        signaling: SignalingService,
        capability_gate: CapabilityGate,
        speech_engine_factory: Callable[[], SpeechEngine],
        translator: TranslationClient | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize session controller.

        Args:
            config: EchoLink configuration
            signaling: Signaling service for registering/dialing ids
            capability_gate: Microphone permission broker
            speech_engine_factory: Creates the speech engine for each session
            translator: Optional translation client for remote items
            rng: Random source for session ids
        """
        self.config = config
        self._signaling = signaling
        self._gate = capability_gate
        self._speech_engine_factory = speech_engine_factory
        self._translator = translator
        self._rng = rng

        self._inbox: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._state = LifecycleState.IDLE
        self._status_message = STATUS_IDLE
        self._alert: str | None = None
        self._session: SessionContext | None = None
        self._attempt = 0
        self._summary: CallSummary | None = None
        self._translation_enabled = translator is not None and config.translation.enabled

        self._changed = asyncio.Event()
        self._subscribers: set[asyncio.Queue[SessionSnapshot]] = set()
        self._run_task: asyncio.Task[None] | None = None

        self._handlers: dict[type[SessionEvent], Callable[[SessionContext, Any], Awaitable[None]]] = {
            IdentityReady: self._on_identity_ready,
            SideChannelOpened: self._on_side_channel_opened,
            SideChannelClosed: self._on_side_channel_closed,
            SideChannelMessageReceived: self._on_side_channel_message,
            InboundCallAccepted: self._on_call_established,
            MediaStreamReceived: self._on_call_established,
            RemoteClosed: self._on_remote_closed,
            ConnectionFailed: self._on_connection_failed,
            NegotiationWarning: self._on_negotiation_warning,
            NegotiationTimedOut: self._on_negotiation_timed_out,
            SpeechFragment: self._on_speech_fragment,
            SpeechStatus: self._on_speech_status,
            CaptioningDisabled: self._on_captioning_disabled,
            TranslationReady: self._on_translation_ready,
        }

    # ------------------------------------------------------------------
    # Properties

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def session(self) -> SessionContext | None:
        return self._session

    @property
    def alert(self) -> str | None:
        """Last user-visible error message (cleared by the next role selection)."""
        return self._alert

    # ------------------------------------------------------------------
    # Event loop

    async def start(self) -> None:
        """Start consuming the inbox in a background task."""
        if self._run_task is None:
            self._run_task = asyncio.create_task(self.run())

    async def close(self) -> None:
        """Abort any session and stop the inbox consumer."""
        await self.abort()
        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None

    async def run(self) -> None:
        """Consume inbox events forever."""
        while True:
            event = await self._inbox.get()
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception("Error dispatching event", extra={"event": type(event).__name__})

    async def dispatch(self, event: SessionEvent) -> None:
        """Apply one collaborator event; stale events are ignored."""
        async with self._lock:
            session = self._session
            if session is None or event.attempt != session.attempt:
                logger.debug(
                    "Ignoring stale event",
                    extra={"event": type(event).__name__, "event_attempt": event.attempt},
                )
                return

            handler = self._handlers.get(type(event))
            if handler is None:
                logger.warning("No handler for event", extra={"event": type(event).__name__})
                return

            with session_log_context(session.session_id, session.role.value, session.attempt):
                await handler(session, event)
            self._publish()

    def _post(self, event: SessionEvent) -> None:
        self._inbox.put_nowait(event)

    # ------------------------------------------------------------------
    # User commands

    async def select_host(self) -> None:
        """Start hosting: acquire the microphone and register a fresh session id.

        Raises:
            RuntimeError: If a session is already in progress
        """
        async with self._lock:
            self._require_idle()
            session = self._new_session(Role.HOST)
            self._transition(LifecycleState.INITIALIZING, STATUS_INITIALIZING)
            self._spawn(session, self._establish_host(session))

    async def select_guest(self, target_id: str) -> None:
        """Join the session hosted under ``target_id``.

        Raises:
            ValueError: If ``target_id`` is not a 4-digit session id
            RuntimeError: If a session is already in progress
        """
        target_id = target_id.strip()
        if not is_valid_session_id(target_id):
            raise ValueError(f"Session id must be 4 digits, got '{target_id}'")

        async with self._lock:
            self._require_idle()
            session = self._new_session(Role.GUEST)
            session.assign_session_id(target_id)
            self._transition(
                LifecycleState.CONNECTING, STATUS_LOCATING.format(session_id=target_id)
            )
            session.negotiation_timer = asyncio.get_running_loop().call_later(
                self.config.session.negotiation_timeout_seconds,
                self._post,
                NegotiationTimedOut(session.attempt),
            )
            self._spawn(session, self._establish_guest(session, target_id))

    async def hangup(self) -> None:
        """End the call; before ACTIVE this is the same as abort()."""
        async with self._lock:
            session = self._session
            if session is None:
                return
            if self._state == LifecycleState.ACTIVE:
                await self._end_call(session, "You hung up.")
            elif self._state != LifecycleState.SUMMARIZING:
                await self._enter_idle(STATUS_ABORTED)

    async def abort(self) -> None:
        """Cancel the current attempt from any state and return to IDLE."""
        async with self._lock:
            if self._session is None:
                return
            await self._enter_idle(STATUS_ABORTED)

    async def acknowledge(self) -> None:
        """Dismiss the call summary and return to IDLE."""
        async with self._lock:
            if self._state != LifecycleState.SUMMARIZING:
                return
            await self._enter_idle(STATUS_IDLE)

    async def toggle_microphone(self) -> bool:
        """Mute/unmute the local audio source.

        Returns:
            The new enabled state (False without a session)
        """
        async with self._lock:
            session = self._session
            if session is None:
                return False
            enabled = session.connection.toggle_microphone()
            logger.info("Microphone toggled", extra={"enabled": enabled})
            self._publish()
            return enabled

    async def toggle_remote_audio(self) -> bool:
        """Deafen/undeafen remote audio.

        Returns:
            The new enabled state (False without a session)
        """
        async with self._lock:
            session = self._session
            if session is None:
                return False
            enabled = await session.connection.toggle_remote_audio()
            logger.info("Remote audio toggled", extra={"enabled": enabled})
            self._publish()
            return enabled

    async def toggle_translation(self) -> bool:
        """Turn translation of the peer's final lines on or off.

        Items already on screen keep their translation.

        Returns:
            The new enabled state (always False without a translation client)
        """
        async with self._lock:
            if self._translator is None:
                return False
            self._translation_enabled = not self._translation_enabled
            logger.info("Translation toggled", extra={"enabled": self._translation_enabled})
            self._publish()
            return self._translation_enabled

    async def send_chat(self, text: str) -> TranscriptItem | None:
        """Send a typed chat line during an active call.

        Returns:
            The local item, or None if there is no active call or no text
        """
        text = text.strip()
        async with self._lock:
            session = self._session
            if session is None or self._state != LifecycleState.ACTIVE or not text:
                return None
            item = await session.synchronizer.send_chat(text)
            self._publish()
            return item

    # ------------------------------------------------------------------
    # Presentation surface

    def snapshot(self) -> SessionSnapshot:
        session = self._session
        if session is None:
            return SessionSnapshot(
                state=self._state,
                role=None,
                session_id=None,
                status_message=self._status_message,
                alert=self._alert,
                items=(),
                link=PeerLink(),
                microphone_enabled=False,
                remote_audio_enabled=False,
                captioning_enabled=False,
                caption_status=None,
                summary=self._summary,
                translation_enabled=self._translation_enabled,
            )

        return SessionSnapshot(
            state=self._state,
            role=session.role,
            session_id=session.session_id,
            status_message=self._status_message,
            alert=self._alert,
            items=session.synchronizer.items,
            link=session.connection.link,
            microphone_enabled=session.connection.microphone_enabled,
            remote_audio_enabled=session.connection.remote_audio_enabled,
            captioning_enabled=session.captioning_enabled,
            caption_status=session.caption_status,
            summary=self._summary,
            translation_enabled=self._translation_enabled,
        )

    async def updates(self) -> AsyncIterator[SessionSnapshot]:
        """Yield the current snapshot, then one per change.

        Slow consumers only see the latest snapshot.
        """
        queue: asyncio.Queue[SessionSnapshot] = asyncio.Queue(maxsize=1)
        self._subscribers.add(queue)
        try:
            yield self.snapshot()
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    async def wait_for_state(
        self, *states: LifecycleState, timeout: float | None = 10.0
    ) -> SessionSnapshot:
        """Wait until the controller is in one of ``states``.

        Raises:
            TimeoutError: If the state is not reached within ``timeout``
        """

        async def _wait() -> SessionSnapshot:
            while self._state not in states:
                await self._changed.wait()
            return self.snapshot()

        return await asyncio.wait_for(_wait(), timeout)

    def _publish(self) -> None:
        snapshot = self.snapshot()
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)

        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    # ------------------------------------------------------------------
    # Session lifecycle

    def _require_idle(self) -> None:
        if self._state != LifecycleState.IDLE or self._session is not None:
            raise RuntimeError(f"A session is already in progress ({self._state.value})")

    def _new_session(self, role: Role) -> SessionContext:
        self._attempt += 1
        attempt = self._attempt
        self._alert = None
        self._summary = None

        connection = ConnectionManager(self._signaling, self._gate, self._inbox, attempt)
        speech = SpeechCaptureAdapter(
            self._speech_engine_factory(), self._inbox, attempt, self.config.speech
        )
        session = SessionContext(
            role=role,
            attempt=attempt,
            connection=connection,
            synchronizer=TranscriptSynchronizer(ItemIdFactory()),
            speech=speech,
        )
        self._session = session

        logger.info("Session created", extra={"role": role.value, "attempt": attempt})
        return session

    def _transition(self, new_state: LifecycleState, status_message: str | None = None) -> None:
        """Transition to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self._state, set()):
            raise ValueError(f"Invalid state transition: {self._state.value} → {new_state.value}")

        old_state = self._state
        self._state = new_state
        if status_message is not None:
            self._status_message = status_message

        session = self._session
        if session is not None:
            session.state = new_state
            session.status_message = self._status_message

        logger.info(
            "Session state transition",
            extra={
                "from_state": old_state.value,
                "to_state": new_state.value,
                "attempt": session.attempt if session is not None else None,
            },
        )
        self._publish()

    def _spawn(self, session: SessionContext, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)

    async def _cleanup(self, session: SessionContext) -> None:
        """Release everything the session holds. Idempotent."""
        if session.negotiation_timer is not None:
            session.negotiation_timer.cancel()
            session.negotiation_timer = None

        current = asyncio.current_task()
        tasks = [task for task in session.tasks if task is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Session task failed during cleanup", extra={"error": str(e)})

        await session.speech.stop()
        await session.connection.teardown()
        session.synchronizer.unbind()

    async def _enter_idle(self, status_message: str, alert: str | None = None) -> None:
        session = self._session
        if session is not None:
            with session_log_context(session.session_id, session.role.value, session.attempt):
                await self._cleanup(session)

        self._session = None
        if alert is not None:
            self._alert = alert
        if self._state == LifecycleState.IDLE:
            self._status_message = status_message
            self._publish()
        else:
            self._transition(LifecycleState.IDLE, status_message)

    async def _fail(self, session: SessionContext, error: EchoLinkError) -> None:
        logger.warning(
            "Session attempt failed",
            extra={"error_type": type(error).__name__, "error": str(error)},
        )
        await self._enter_idle(
            STATUS_ERROR.format(message=error.user_message), alert=error.user_message
        )

    async def _end_call(self, session: SessionContext, reason: str) -> None:
        await self._cleanup(session)
        self._summary = self._build_summary(session)
        self._transition(LifecycleState.SUMMARIZING, STATUS_CALL_ENDED.format(reason=reason))

    def _build_summary(self, session: SessionContext) -> CallSummary:
        active_since = session.active_since or time.monotonic()
        return build_call_summary(
            session.synchronizer.items,
            session.session_id,
            session.role.value,
            time.monotonic() - active_since,
        )

    # ------------------------------------------------------------------
    # Establishment tasks (post events only, never mutate session state)

    async def _establish_host(self, session: SessionContext) -> None:
        with session_log_context(role=session.role.value, attempt=session.attempt):
            try:
                await session.connection.acquire_capability()

                last_error: RegistrationFailed | None = None
                for attempt in range(1, self.config.session.registration_attempts + 1):
                    session_id = generate_session_id(self._rng)
                    try:
                        await session.connection.open_as_host(session_id)
                        return
                    except RegistrationFailed as e:
                        last_error = e
                        logger.warning(
                            "Session id registration failed",
                            extra={"session_id": session_id, "try": attempt, "error": str(e)},
                        )
                raise last_error or RegistrationFailed()

            except SessionAborted:
                logger.debug("Host establishment aborted")
            except EchoLinkError as e:
                self._post(ConnectionFailed(session.attempt, e))
            except Exception as e:
                logger.exception("Unexpected error while opening host session")
                self._post(ConnectionFailed(session.attempt, EchoLinkError(str(e))))

    async def _establish_guest(self, session: SessionContext, target_id: str) -> None:
        with session_log_context(target_id, session.role.value, session.attempt):
            try:
                await session.connection.acquire_capability()
                await session.connection.open_as_guest(target_id)
            except SessionAborted:
                logger.debug("Guest establishment aborted")
            except EchoLinkError as e:
                self._post(ConnectionFailed(session.attempt, e))
            except Exception as e:
                logger.exception("Unexpected error while joining session")
                self._post(ConnectionFailed(session.attempt, EchoLinkError(str(e))))

    async def _translate(self, session: SessionContext, item: TranscriptItem) -> None:
        if self._translator is None:
            return
        result = await self._translator.translate(item.text)
        if result.success and result.translated_text != item.text:
            self._post(TranslationReady(session.attempt, item.id, result.translated_text))

    # ------------------------------------------------------------------
    # Event handlers

    async def _on_identity_ready(self, session: SessionContext, event: IdentityReady) -> None:
        if self._state != LifecycleState.INITIALIZING:
            return
        session.assign_session_id(event.session_id)
        self._transition(LifecycleState.WAITING_FOR_PEER, STATUS_WAITING)

    async def _on_side_channel_opened(
        self, session: SessionContext, event: SideChannelOpened
    ) -> None:
        channel = session.connection.side_channel
        if channel is not None:
            session.synchronizer.bind(channel)

        if self._state == LifecycleState.WAITING_FOR_PEER:
            self._status_message = STATUS_ESTABLISHING
        elif self._state == LifecycleState.CONNECTING:
            self._status_message = STATUS_HANDSHAKING

    async def _on_side_channel_closed(
        self, session: SessionContext, event: SideChannelClosed
    ) -> None:
        session.synchronizer.unbind()

    async def _on_side_channel_message(
        self, session: SessionContext, event: SideChannelMessageReceived
    ) -> None:
        if self._state == LifecycleState.SUMMARIZING:
            return
        item = session.synchronizer.ingest_remote(event.message)

        if (
            self._translator is not None
            and self._translation_enabled
            and item.is_final
            and item.sender == Sender.REMOTE
        ):
            self._spawn(session, self._translate(session, item))

    async def _on_call_established(
        self, session: SessionContext, event: InboundCallAccepted | MediaStreamReceived
    ) -> None:
        expected = (
            LifecycleState.WAITING_FOR_PEER if session.role == Role.HOST else LifecycleState.CONNECTING
        )
        if self._state != expected:
            return

        if session.negotiation_timer is not None:
            session.negotiation_timer.cancel()
            session.negotiation_timer = None

        session.active_since = time.monotonic()
        self._transition(LifecycleState.ACTIVE, STATUS_ACTIVE)
        await session.speech.start()

    async def _on_remote_closed(self, session: SessionContext, event: RemoteClosed) -> None:
        if self._state == LifecycleState.ACTIVE:
            await self._end_call(session, event.reason)
        elif self._state != LifecycleState.SUMMARIZING:
            await self._fail(
                session,
                EchoLinkError(
                    event.reason,
                    user_message="Peer disconnected before the call was established.",
                ),
            )

    async def _on_connection_failed(
        self, session: SessionContext, event: ConnectionFailed
    ) -> None:
        await self._fail(session, event.error)

    async def _on_negotiation_warning(
        self, session: SessionContext, event: NegotiationWarning
    ) -> None:
        logger.warning("Negotiation warning", extra={"detail": event.detail})
        if self._state in (LifecycleState.WAITING_FOR_PEER, LifecycleState.CONNECTING):
            self._status_message = f"{STATUS_HANDSHAKING} ({event.detail})"

    async def _on_negotiation_timed_out(
        self, session: SessionContext, event: NegotiationTimedOut
    ) -> None:
        session.negotiation_timer = None
        if self._state == LifecycleState.CONNECTING:
            await self._fail(
                session,
                PeerUnavailable("Timed out waiting for the host's media stream"),
            )

    async def _on_speech_fragment(self, session: SessionContext, event: SpeechFragment) -> None:
        if self._state != LifecycleState.ACTIVE:
            return
        await session.synchronizer.ingest_local(event.text, event.is_final)

    async def _on_speech_status(self, session: SessionContext, event: SpeechStatus) -> None:
        session.caption_status = event.message

    async def _on_captioning_disabled(
        self, session: SessionContext, event: CaptioningDisabled
    ) -> None:
        session.captioning_enabled = False
        session.caption_status = event.reason

    async def _on_translation_ready(
        self, session: SessionContext, event: TranslationReady
    ) -> None:
        session.synchronizer.apply_translation(event.item_id, event.translated_text)
