"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
Environment variables are set before any import that loads settings.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ["TESTING"] = "true"

# Set default env vars that all tests might need
os.environ.setdefault("APP_ADMIN_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_ADMIN_API_KEYS", "test-admin-key,other-admin-key")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from fake_redis import FakeClock, FakeRedis

from app.adapters.rate_limit.redis_store import RedisCounterStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def store(fake_redis: FakeRedis) -> RedisCounterStore:
    return RedisCounterStore(fake_redis, timeout_ms=50)
