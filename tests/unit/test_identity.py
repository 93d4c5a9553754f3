"""Unit tests for session id and item id generation."""

import random

from echolink.identity import ItemIdFactory, generate_session_id, is_valid_session_id
from tests.helpers.fakes import FixedRandom, random_for_session_id


def test_session_id_bounds() -> None:
    assert generate_session_id(FixedRandom(0.0)) == "1000"
    assert generate_session_id(FixedRandom(0.9999999)) == "9999"


def test_session_id_maps_random_value() -> None:
    assert generate_session_id(FixedRandom(random_for_session_id("4821"))) == "4821"


def test_generated_ids_are_four_digits() -> None:
    rng = random.Random(1234)
    for _ in range(500):
        session_id = generate_session_id(rng)
        assert is_valid_session_id(session_id)
        assert 1000 <= int(session_id) <= 9999


def test_is_valid_session_id() -> None:
    assert is_valid_session_id("4821")
    assert is_valid_session_id("0007")
    assert not is_valid_session_id("482")
    assert not is_valid_session_id("48210")
    assert not is_valid_session_id("48a1")
    assert not is_valid_session_id("")


def test_item_ids_unique_within_same_millisecond() -> None:
    factory = ItemIdFactory(clock=lambda: 1_700_000_000_000.0)

    ids = {factory() for _ in range(100)}

    assert len(ids) == 100
    assert all(item_id.startswith("1700000000000-") for item_id in ids)
