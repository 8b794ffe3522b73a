"""Test fixtures for the peer crawler tests."""

from .keys import (
    ALICE_PRIVATE_KEY,
    BOB_PRIVATE_KEY,
    CHARLIE_PRIVATE_KEY,
    CRAWLER_KEY,
    TEST_PRIVATE_KEYS,
    get_keypair,
    make_node,
    node_key,
)

__all__ = [
    "ALICE_PRIVATE_KEY",
    "BOB_PRIVATE_KEY",
    "CHARLIE_PRIVATE_KEY",
    "CRAWLER_KEY",
    "TEST_PRIVATE_KEYS",
    "get_keypair",
    "make_node",
    "node_key",
]
