"""In-memory collaborators for session tests.

``InMemorySignaling`` instances sharing one ``SignalingHub`` behave like two
parties talking through the same rendezvous service: the host registers an
id, the guest dials it, published audio and data are delivered to the other
side's event stream.
"""

import asyncio
import itertools
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from echolink.capability import AudioSourceHandle, CapabilityGate, MicrophoneAccess
from echolink.config import EchoLinkConfig
from echolink.controller import SessionController
from echolink.errors import PeerUnavailable, RegistrationFailed
from echolink.speech import ScriptedSpeechEngine
from echolink.translation import TranslationClient
from echolink.transport.base import (
    DataReceived,
    PeerJoined,
    PeerLeft,
    PeerTransport,
    RemoteAudioStarted,
    SignalingService,
    TransportEvent,
)


class FakeAudioSource(AudioSourceHandle):
    """Audio source that only tracks its state."""

    def __init__(self, call_log: list[str] | None = None) -> None:
        self._enabled = True
        self._stopped = False
        self.stop_calls = 0
        self.call_log = call_log if call_log is not None else []

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    async def stop(self) -> None:
        self.stop_calls += 1
        self._stopped = True
        self.call_log.append("audio.stop")


class FakeCapabilityGate(CapabilityGate):
    """Grants (or refuses) microphone access, recording every handle."""

    def __init__(self, granted: bool = True, call_log: list[str] | None = None) -> None:
        self.granted = granted
        self.requests = 0
        self.handles: list[FakeAudioSource] = []
        self.call_log = call_log if call_log is not None else []

    async def request_microphone_access(self) -> MicrophoneAccess:
        self.requests += 1
        if not self.granted:
            return MicrophoneAccess(granted=False)
        handle = FakeAudioSource(self.call_log)
        self.handles.append(handle)
        return MicrophoneAccess(granted=True, handle=handle)


class FakePeerTransport(PeerTransport):
    """Peer transport delivering audio/data to linked in-memory peers."""

    def __init__(
        self,
        local_identity: str,
        peer_identity: str | None = None,
        call_log: list[str] | None = None,
    ) -> None:
        self._local_identity = local_identity
        self._peer_identity = peer_identity
        self._events: asyncio.Queue[TransportEvent | None] = asyncio.Queue()
        self._connected = True
        self.peers: dict[str, "FakePeerTransport"] = {}
        self.published: AudioSourceHandle | None = None
        self.remote_audio_enabled = True
        self.sent: list[tuple[bytes, str | None]] = []
        self.fail_sends = False
        self.close_calls = 0
        self.call_log = call_log if call_log is not None else []

    @property
    def local_identity(self) -> str:
        return self._local_identity

    @property
    def peer_identity(self) -> str | None:
        return self._peer_identity

    @property
    def is_connected(self) -> bool:
        return self._connected

    def has_participant(self, identity: str) -> bool:
        return identity in self.peers

    def emit(self, event: TransportEvent) -> None:
        if self._connected:
            self._events.put_nowait(event)

    def link(self, other: "FakePeerTransport") -> None:
        self.peers[other.local_identity] = other
        other.peers[self.local_identity] = self

    async def events(self) -> AsyncIterator[TransportEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def publish_audio(self, source: AudioSourceHandle) -> None:
        if not self._connected:
            raise ConnectionError("transport closed")
        if self.published is not None:
            return
        self.published = source
        for peer in self.peers.values():
            if peer.remote_audio_enabled:
                peer.emit(RemoteAudioStarted(self._local_identity))

    async def unpublish_audio(self) -> None:
        if self.published is not None:
            self.call_log.append("transport.unpublish_audio")
        self.published = None

    async def send_data(self, payload: bytes, destination: str | None = None) -> None:
        if not self._connected or self.fail_sends:
            raise ConnectionError("send failed")
        self.sent.append((payload, destination))
        for identity, peer in self.peers.items():
            if destination is None or destination == identity:
                peer.emit(DataReceived(payload=payload, identity=self._local_identity))

    async def set_remote_audio_enabled(self, enabled: bool) -> None:
        self.remote_audio_enabled = enabled
        if enabled:
            for identity, peer in self.peers.items():
                if peer.published is not None:
                    self.emit(RemoteAudioStarted(identity))

    async def close(self) -> None:
        self.close_calls += 1
        if not self._connected:
            return
        self.call_log.append("transport.close")
        self._connected = False
        self._events.put_nowait(None)
        for peer in self.peers.values():
            peer.peers.pop(self._local_identity, None)
            peer.emit(PeerLeft(self._local_identity))
        self.peers.clear()


class SignalingHub:
    """Shared registry standing in for the rendezvous service."""

    def __init__(self) -> None:
        self.hosts: dict[str, FakePeerTransport] = {}
        self.failing_registrations = 0
        self._guest_counter = itertools.count(1)

    def next_guest_identity(self) -> str:
        return f"guest-{next(self._guest_counter)}"


class InMemorySignaling(SignalingService):
    """One party's view of the shared hub."""

    def __init__(self, hub: SignalingHub | None = None, call_log: list[str] | None = None) -> None:
        self.hub = hub or SignalingHub()
        self.register_calls: list[str] = []
        self.dial_calls: list[str] = []
        self.released: list[str] = []
        self.transports: list[FakePeerTransport] = []
        self.call_log = call_log if call_log is not None else []
        self.register_gate: asyncio.Event | None = None
        self._registered: set[str] = set()

    async def register(self, session_id: str) -> PeerTransport:
        self.register_calls.append(session_id)
        if self.register_gate is not None:
            await self.register_gate.wait()

        if self.hub.failing_registrations > 0:
            self.hub.failing_registrations -= 1
            raise RegistrationFailed(f"Session id {session_id} is already in use")
        if session_id in self.hub.hosts:
            raise RegistrationFailed(f"Session id {session_id} is already in use")

        transport = FakePeerTransport(f"host-{session_id}", call_log=self.call_log)
        self.hub.hosts[session_id] = transport
        self._registered.add(session_id)
        self.transports.append(transport)
        return transport

    async def dial(self, target_id: str) -> PeerTransport:
        self.dial_calls.append(target_id)
        host = self.hub.hosts.get(target_id)
        if host is None or not host.is_connected:
            raise PeerUnavailable(f"No session registered under {target_id}")

        guest = FakePeerTransport(
            self.hub.next_guest_identity(),
            peer_identity=host.local_identity,
            call_log=self.call_log,
        )
        guest.link(host)
        host.emit(PeerJoined(guest.local_identity))
        guest.emit(PeerJoined(host.local_identity))
        self.transports.append(guest)
        return guest

    async def release(self, session_id: str) -> None:
        if session_id not in self._registered:
            return
        self._registered.discard(session_id)
        self.released.append(session_id)
        self.call_log.append("signaling.release")
        self.hub.hosts.pop(session_id, None)

    async def close(self) -> None:
        for session_id in list(self._registered):
            await self.release(session_id)


class FixedRandom:
    """Random source returning a fixed sequence of values."""

    def __init__(self, *values: float) -> None:
        self._values = list(values)

    def random(self) -> float:
        if len(self._values) > 1:
            return self._values.pop(0)
        return self._values[0]


def random_for_session_id(session_id: str) -> float:
    """Value that ``generate_session_id`` maps onto ``session_id``."""
    return (int(session_id) - 1000 + 0.5) / 9000


async def eventually(
    predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005
) -> None:
    """Wait until ``predicate()`` is true.

    Raises:
        AssertionError: If it does not become true within ``timeout``
    """
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


@dataclass
class Party:
    """One user: a controller wired to in-memory collaborators."""

    controller: SessionController
    signaling: InMemorySignaling
    gate: FakeCapabilityGate
    engines: list[ScriptedSpeechEngine] = field(default_factory=list)

    @property
    def engine(self) -> ScriptedSpeechEngine:
        return self.engines[-1]


def make_party(
    hub: SignalingHub,
    config: EchoLinkConfig | None = None,
    rng: FixedRandom | None = None,
    granted: bool = True,
    translator: TranslationClient | None = None,
) -> Party:
    """Build a controller whose speech engines are scripted."""
    if config is None:
        config = EchoLinkConfig()
        config.speech.restart_backoff_seconds = 0.0

    signaling = InMemorySignaling(hub)
    gate = FakeCapabilityGate(granted=granted)
    engines: list[ScriptedSpeechEngine] = []

    def engine_factory() -> ScriptedSpeechEngine:
        engine = ScriptedSpeechEngine()
        engines.append(engine)
        return engine

    controller = SessionController(
        config,
        signaling,
        gate,
        engine_factory,
        translator=translator,
        rng=rng,  # type: ignore[arg-type]
    )
    return Party(controller, signaling, gate, engines)
