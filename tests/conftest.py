"""Pytest configuration and shared fixtures for all tests."""

import pytest

from ethconsole.chain.fork import ForkManager
from ethconsole.common.config import KeyStore, Settings
from ethconsole.rpc.bridge import TransportBridge
from ethconsole.sandbox.injector import SandboxContext
from ethconsole.session.controller import SessionContext

from tests.fixtures.fakes import FakeNode, make_http


# =============================================================================
# Chain access
# =============================================================================

@pytest.fixture
def node():
    """In-memory upstream node at block 100 of chain 1."""
    return FakeNode()


@pytest.fixture
def bridge(node):
    return TransportBridge(node)


@pytest.fixture
def fork_manager(bridge):
    return ForkManager(bridge)


# =============================================================================
# Session
# =============================================================================

@pytest.fixture
def keystore(tmp_path):
    return KeyStore(tmp_path / "keys.json")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        rpc_url="http://node.invalid",
        poll_interval=0.01,
        lookup_signatures=False,
        keystore_path=tmp_path / "keys.json",
    )


@pytest.fixture
def session_context(settings, bridge, keystore):
    return SessionContext(
        settings=settings,
        bridge=bridge,
        fork_manager=ForkManager(bridge),
        sandbox=SandboxContext(),
        keystore=keystore,
    )


@pytest.fixture
def offline_http():
    """httpx client whose every request answers 404."""
    return make_http()
