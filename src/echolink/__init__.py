"""EchoLink session orchestrator.

Two-party realtime audio sessions over LiveKit/WebRTC with a reliable
side-channel for live transcript exchange between the parties.
"""

__version__ = "0.1.0"
