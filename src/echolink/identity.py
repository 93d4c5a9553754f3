"""Session id and transcript item id generation.

Session ids are short public rendezvous identifiers: a 4-digit numeric
string drawn uniformly from 1000-9999. Collisions are not coordinated
locally; the signaling service rejects an id that is already in use.

Transcript item ids must be unique within a session even for utterances
started in the same millisecond, so they combine the wall-clock timestamp
with a per-process random suffix and a counter.
"""

import itertools
import math
import random
import re
import secrets
import time
from collections.abc import Callable

SESSION_ID_DIGITS: int = 4

_SESSION_ID_PATTERN = re.compile(rf"\d{{{SESSION_ID_DIGITS}}}")

# Fixed for the lifetime of the process
_PROCESS_SUFFIX: str = secrets.token_hex(3)


def generate_session_id(rng: random.Random | None = None) -> str:
    """Generate a fresh 4-digit session id.

    Args:
        rng: Optional random source (defaults to the module-level generator)

    Returns:
        Numeric string in the range "1000"-"9999"
    """
    value = (rng or random).random()
    return str(math.floor(1000 + value * 9000))


def is_valid_session_id(value: str) -> bool:
    """Check that a value is a well-formed session id (exactly 4 digits)."""
    return bool(_SESSION_ID_PATTERN.fullmatch(value))


def now_ms() -> float:
    """Current wall-clock time in milliseconds since the epoch."""
    return time.time() * 1000.0


class ItemIdFactory:
    """Mints transcript item ids unique within a session.

    Format: ``{timestamp_ms}-{process_suffix}-{counter}``.
    """

    def __init__(self, clock: Callable[[], float] = now_ms) -> None:
        self._clock = clock
        self._counter = itertools.count()

    def __call__(self) -> str:
        return f"{int(self._clock())}-{_PROCESS_SUFFIX}-{next(self._counter)}"
