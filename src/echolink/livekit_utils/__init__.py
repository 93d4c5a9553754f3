"""LiveKit server API helpers."""
