"""Pytest configuration and shared fixtures for all tests."""

import json

import pytest

from peerlogger.crawler.blacklist import BlacklistFilter
from peerlogger.crawler.registry import NodeRegistry
from peerlogger.storage.sqlite_store import SQLiteStore

from tests.fixtures.keys import (
    ALICE_PRIVATE_KEY,
    BOB_PRIVATE_KEY,
    CHARLIE_PRIVATE_KEY,
    make_node,
)


# =============================================================================
# Nodes
# =============================================================================

@pytest.fixture
def alice_node():
    """Signed record for Alice's key at 10.0.0.1."""
    return make_node(ALICE_PRIVATE_KEY, ip="10.0.0.1")


@pytest.fixture
def bob_node():
    """Signed record for Bob's key at 10.0.0.2."""
    return make_node(BOB_PRIVATE_KEY, ip="10.0.0.2")


@pytest.fixture
def charlie_node():
    """Signed record for Charlie's key at 10.0.0.3."""
    return make_node(CHARLIE_PRIVATE_KEY, ip="10.0.0.3")


# =============================================================================
# Components
# =============================================================================

@pytest.fixture
def registry():
    return NodeRegistry()


@pytest.fixture
def blacklist():
    return BlacklistFilter()


@pytest.fixture
def memory_store():
    """In-memory SQLite node store."""
    store = SQLiteStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def write_config(tmp_path):
    """Write a config document and return its path."""
    path = tmp_path / "config.json"

    def _write(data=None, raw=None):
        if raw is not None:
            path.write_text(raw)
        else:
            path.write_text(json.dumps(data if data is not None else {}))
        return str(path)

    return _write
