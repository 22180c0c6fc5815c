"""Shared fixtures for orchestrator unit tests.

Everything runs against a temporary state directory; no git, docker or tmux
required.
"""

from __future__ import annotations

import random

import pytest

from devpool.orchestrator.locks import LockManager
from devpool.orchestrator.managers.items import ItemStateManager
from devpool.orchestrator.managers.jobs import JobStore
from devpool.orchestrator.managers.ports import PortAllocator
from devpool.orchestrator.store.local import LocalDocumentStore


@pytest.fixture
def store(tmp_path) -> LocalDocumentStore:
    return LocalDocumentStore(tmp_path / "state")


@pytest.fixture
def locks(tmp_path) -> LockManager:
    return LockManager(tmp_path / "state" / "locks", stale_after=60.0, poll_interval=0.01)


@pytest.fixture
def ports(store: LocalDocumentStore, locks: LockManager) -> PortAllocator:
    return PortAllocator(store, locks, start=13000, end=13099)


@pytest.fixture
def jobs(store: LocalDocumentStore, locks: LockManager) -> JobStore:
    return JobStore(store, locks)


@pytest.fixture
def items(store: LocalDocumentStore, locks: LockManager) -> ItemStateManager:
    return ItemStateManager(store, locks, rng=random.Random(1234))
