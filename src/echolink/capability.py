"""Microphone capability gate and local audio source.

The capability gate is asked for microphone access before any session
attempt. When access is granted it hands out an exclusive
``AudioSourceHandle`` that the Connection Manager owns for the rest of the
session and releases on teardown.

Frame specification for captured audio:
    - Duration: 20ms
    - Sample rate: 48kHz
    - Channels: mono
    - Bit depth: 16-bit signed integer (little endian)
    - Frame size: 960 samples * 2 bytes = 1920 bytes
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import numpy as np
from livekit import rtc

logger = logging.getLogger(__name__)

# Audio constants
SAMPLE_RATE_HZ: int = 48000
FRAME_DURATION_MS: int = 20
CHANNELS: int = 1
BYTES_PER_SAMPLE: int = 2
SAMPLES_PER_FRAME: int = SAMPLE_RATE_HZ * FRAME_DURATION_MS // 1000

EXPECTED_FRAME_SIZE_BYTES: int = SAMPLES_PER_FRAME * CHANNELS * BYTES_PER_SAMPLE

# ~1s of audio; older frames are dropped when the uplink stalls
CAPTURE_QUEUE_FRAMES: int = 50


def validate_frame_size(frame: bytes) -> None:
    """Validate that a PCM frame is exactly 20ms at 48kHz.

    Args:
        frame: Raw PCM audio bytes

    Raises:
        ValueError: If frame size is incorrect
    """
    if len(frame) != EXPECTED_FRAME_SIZE_BYTES:
        raise ValueError(
            f"Invalid frame size: expected {EXPECTED_FRAME_SIZE_BYTES} bytes "
            f"(20ms @ 48kHz mono), got {len(frame)} bytes"
        )


class AudioSourceHandle(ABC):
    """Exclusive handle to the local audio source."""

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Whether captured audio is sent to the peer (False = muted)."""
        pass

    @enabled.setter
    @abstractmethod
    def enabled(self, value: bool) -> None:
        pass

    @property
    @abstractmethod
    def is_stopped(self) -> bool:
        """Whether the source has been released."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop capturing and release the device. Idempotent."""
        pass


@dataclass
class MicrophoneAccess:
    """Outcome of a microphone access request."""

    granted: bool
    handle: AudioSourceHandle | None = None


class CapabilityGate(ABC):
    """Permission broker for microphone access."""

    @abstractmethod
    async def request_microphone_access(self) -> MicrophoneAccess:
        """Ask for microphone access.

        Returns:
            ``MicrophoneAccess(granted=True, handle=...)`` on success,
            ``MicrophoneAccess(granted=False)`` when refused
        """
        pass


class LiveKitAudioSource(AudioSourceHandle):
    """Local microphone audio published as a LiveKit track.

    PCM frames pushed from the capture thread are queued and fed to the
    ``rtc.AudioSource`` by a pump task on the event loop.
    """

    def __init__(self, name: str = "echolink-microphone", sample_rate: int = SAMPLE_RATE_HZ) -> None:
        self.source = rtc.AudioSource(sample_rate, num_channels=CHANNELS)
        self.track = rtc.LocalAudioTrack.create_audio_track(name, self.source)
        self._sample_rate = sample_rate
        self._enabled = True
        self._stopped = False
        self._stream: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=CAPTURE_QUEUE_FRAMES)
        self._pump_task: asyncio.Task[None] | None = None
        self._dropped_frames = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        if value:
            self.track.unmute()
        else:
            self.track.mute()
        self._enabled = value
        logger.debug("Local audio %s", "unmuted" if value else "muted")

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def start(self, stream: Any = None) -> None:
        """Start the pump task and the capture stream, if any.

        Must be called from the event loop thread.
        """
        self._loop = asyncio.get_running_loop()
        self._pump_task = asyncio.create_task(self._pump())
        if stream is not None:
            self._stream = stream
            stream.start()

    def push_frame(self, frame: bytes) -> None:
        """Queue a frame from any thread."""
        if self._loop is None or self._stopped:
            return
        self._loop.call_soon_threadsafe(self._enqueue, frame)

    def _enqueue(self, frame: bytes) -> None:
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self._dropped_frames += 1
            if self._dropped_frames % CAPTURE_QUEUE_FRAMES == 1:
                logger.warning(
                    "Capture queue full, dropping frames",
                    extra={"dropped_frames": self._dropped_frames},
                )

    async def _pump(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.capture_frame(frame)
            except ValueError as e:
                logger.warning("Discarding captured frame", extra={"error": str(e)})

    async def capture_frame(self, frame: bytes) -> None:
        """Feed one 20ms PCM frame into the LiveKit source.

        Raises:
            ValueError: If frame size is invalid
        """
        validate_frame_size(frame)

        audio_frame = rtc.AudioFrame.create(
            sample_rate=self._sample_rate,
            num_channels=CHANNELS,
            samples_per_channel=SAMPLES_PER_FRAME,
        )
        pcm_data = np.frombuffer(frame, dtype=np.int16)
        np.copyto(np.asarray(audio_frame.data), pcm_data)

        await self.source.capture_frame(audio_frame)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Error closing capture stream", extra={"error": str(e)})
            self._stream = None

        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        try:
            await self.source.aclose()
        except Exception as e:
            logger.warning("Error closing audio source", extra={"error": str(e)})

        logger.info("Local audio source released")


class MicrophoneGate(CapabilityGate):
    """Capability gate backed by a sounddevice input stream."""

    def __init__(self, device: str | int | None = None, sample_rate: int = SAMPLE_RATE_HZ) -> None:
        """Initialize microphone gate.

        Args:
            device: sounddevice input device (None for the system default)
            sample_rate: Capture sample rate in Hz
        """
        self.device = device
        self.sample_rate = sample_rate

    async def request_microphone_access(self) -> MicrophoneAccess:
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            logger.warning("sounddevice not available, microphone access denied", extra={"error": str(e)})
            return MicrophoneAccess(granted=False)

        try:
            await asyncio.to_thread(
                sd.check_input_settings,
                device=self.device,
                channels=CHANNELS,
                dtype="int16",
                samplerate=self.sample_rate,
            )
        except Exception as e:
            logger.warning(
                "Microphone unavailable",
                extra={"device": str(self.device), "error": str(e)},
            )
            return MicrophoneAccess(granted=False)

        source = LiveKitAudioSource(sample_rate=self.sample_rate)

        def on_audio(indata: Any, frames: int, time_info: Any, status: Any) -> None:
            if status:
                logger.debug("Capture status: %s", status)
            source.push_frame(bytes(indata))

        try:
            stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                blocksize=SAMPLES_PER_FRAME,
                device=self.device,
                channels=CHANNELS,
                dtype="int16",
                callback=on_audio,
            )
            source.start(stream)
        except Exception as e:
            logger.warning("Failed to open microphone stream", extra={"error": str(e)})
            await source.stop()
            return MicrophoneAccess(granted=False)

        logger.info(
            "Microphone access granted",
            extra={"device": str(self.device), "sample_rate": self.sample_rate},
        )
        return MicrophoneAccess(granted=True, handle=source)
