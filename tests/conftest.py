"""
Shared test fixtures and configuration for pytest
"""
import pytest

from mailsync.state import StateStore
from mailsync.sync import Synchronizer

from .helpers import MemoryBackend


@pytest.fixture
def local():
    return MemoryBackend("local")


@pytest.fixture
def remote():
    return MemoryBackend("remote")


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state")


@pytest.fixture
def synchronizer(store):
    return Synchronizer(store)
