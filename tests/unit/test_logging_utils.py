"""Unit tests for session log correlation."""

import asyncio
import logging

from echolink.logging_utils import (
    SessionContextFilter,
    get_session_context,
    session_log_context,
)


def make_record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("echolink.test", logging.INFO, __file__, 1, "msg", (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_is_scoped() -> None:
    assert get_session_context() is None

    with session_log_context("4821", "host", 2, room="echolink-4821") as ctx:
        assert get_session_context() == ctx
        assert ctx == {
            "session_id": "4821",
            "role": "host",
            "attempt": "2",
            "ctx_room": "echolink-4821",
        }

    assert get_session_context() is None


def test_unknown_fields_default_to_dash() -> None:
    with session_log_context(role="guest") as ctx:
        assert ctx["session_id"] == "-"
        assert ctx["attempt"] == "-"


def test_filter_stamps_records() -> None:
    record = make_record()

    with session_log_context("4821", "host", 1):
        assert SessionContextFilter().filter(record)

    assert record.session_id == "4821"
    assert record.session_tag == "host:4821#1"


def test_filter_keeps_explicit_extra() -> None:
    record = make_record(session_id="1111")

    with session_log_context("4821", "host", 1):
        SessionContextFilter().filter(record)

    assert record.session_id == "1111"


def test_filter_outside_session() -> None:
    record = make_record()

    SessionContextFilter().filter(record)

    assert record.session_tag == "-"


async def test_tasks_inherit_context() -> None:
    async def read_context() -> dict[str, str] | None:
        return get_session_context()

    with session_log_context("4821", "guest", 3):
        task = asyncio.create_task(read_context())

    ctx = await task
    assert ctx is not None and ctx["role"] == "guest"
