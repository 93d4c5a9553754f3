"""Transport layer for peer connections.

Provides the signaling and peer transport abstractions and their LiveKit
implementation, plus the side-channel wire protocol.
"""

from echolink.transport.base import PeerTransport, SignalingService, TransportEvent
from echolink.transport.livekit_transport import (
    LiveKitPeerTransport,
    LiveKitSignaling,
)

__all__ = [
    "PeerTransport",
    "SignalingService",
    "TransportEvent",
    "LiveKitPeerTransport",
    "LiveKitSignaling",
]
