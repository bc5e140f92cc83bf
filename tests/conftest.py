"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It fixes the environment before anything imports ``kwcoord.core.config``,
so settings never come from a developer's ``.env`` or a real Redis.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_FAIL_MODE", "closed")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("WEBHOOK_SECRET", "whsec_test_0123456789abcdef0123456789abcdef")

import pytest

from kwcoord.adapters.store.in_memory import InMemoryKeyValueStore
from kwcoord.core.dependencies import reset_dependencies


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture(autouse=True)
def _fresh_dependencies():
    reset_dependencies()
    yield
    reset_dependencies()
