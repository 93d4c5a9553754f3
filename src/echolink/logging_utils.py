"""Logging setup and session correlation.

Usage:
    setup_logging("DEBUG")

    with session_log_context(session_id="4821", role="host", attempt=3):
        logger.info("Waiting for guest")  # record carries session_id/role/attempt

The context is stored in a contextvar, so tasks created inside the block
inherit it.
"""

import contextvars
import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(session_tag)s] %(message)s"

# Context variable for session correlation
_session_context: contextvars.ContextVar[dict[str, str] | None] = contextvars.ContextVar(
    "session_context", default=None
)


@contextmanager
def session_log_context(
    session_id: str | None = None,
    role: str | None = None,
    attempt: int | None = None,
    **extra: Any,
) -> Generator[dict[str, str], None, None]:
    """Context manager stamping session correlation fields onto log records.

    Args:
        session_id: Session id (may be unknown yet while registering)
        role: "host" or "guest"
        attempt: Session attempt counter
        **extra: Additional fields, prefixed with ``ctx_``

    Yields:
        The correlation dictionary
    """
    ctx: dict[str, str] = {
        "session_id": session_id or "-",
        "role": role or "-",
        "attempt": str(attempt) if attempt is not None else "-",
    }
    for key, value in extra.items():
        ctx[f"ctx_{key}"] = str(value)

    token = _session_context.set(ctx)
    try:
        yield ctx
    finally:
        _session_context.reset(token)


def get_session_context() -> dict[str, str] | None:
    """Get the current session correlation fields, or None outside a session."""
    return _session_context.get()


class SessionContextFilter(logging.Filter):
    """Copies the current session context onto every record.

    Explicit ``extra=`` fields win over context fields of the same name.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _session_context.get() or {}
        for key, value in ctx.items():
            if not hasattr(record, key):
                setattr(record, key, value)

        if ctx:
            record.session_tag = (
                f"{getattr(record, 'role', '-')}:{getattr(record, 'session_id', '-')}"
                f"#{getattr(record, 'attempt', '-')}"
            )
        else:
            record.session_tag = "-"
        return True


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for EchoLink processes.

    Args:
        level: Logging level name
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    session_filter = SessionContextFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SessionContextFilter) for f in handler.filters):
            handler.addFilter(session_filter)

    # LiveKit's FFI layer is chatty at DEBUG
    logging.getLogger("livekit").setLevel(max(logging.getLogger().level, logging.INFO))
