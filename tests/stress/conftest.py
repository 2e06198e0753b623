"""
Stress Test Fixtures - Full Worker Populations

Provides:
- Real Redis connection (not fakeredis) for the streams backend
- Run durations tunable from the environment
- Isolated key prefixes so runs do not see each other's streams
- Harness settings shared by the scenario matrix
"""
import os
import uuid
from typing import Generator

import pytest
import redis

from fanout_stress.config import HarnessSettings

STRESS_TEST_PREFIX = "stress_test"
REDIS_URL = os.environ.get("FANOUT_STRESS_REDIS_URL", os.environ.get("REDIS_URL", "redis://localhost:6379/2"))
RUN_SECONDS = float(os.environ.get("STRESS_RUN_SECONDS", "1.0"))
LONG_RUN_SECONDS = float(os.environ.get("STRESS_LONG_RUN_SECONDS", "20.0"))
CONSUMERS = int(os.environ.get("STRESS_CONSUMERS", "30"))


def redis_available() -> bool:
    try:
        client = redis.from_url(REDIS_URL, socket_timeout=2)
        client.ping()
        client.close()
        return True
    except (redis.ConnectionError, redis.TimeoutError):
        return False


REDIS_AVAILABLE = redis_available()
requires_redis = pytest.mark.skipif(not REDIS_AVAILABLE, reason="Real Redis not available")


@pytest.fixture
def stress_test_id() -> str:
    return f"{STRESS_TEST_PREFIX}:{uuid.uuid4().hex[:8]}"


@pytest.fixture
def stress_settings() -> HarnessSettings:
    """Reference population with a short run per scenario."""
    return HarnessSettings(
        consumer_count=CONSUMERS,
        producer_count=1,
        run_seconds=RUN_SECONDS,
        ready_timeout=20.0,
        shutdown_grace=10.0
    ).validate()


@pytest.fixture
def redis_settings(stress_settings, stress_test_id) -> Generator[HarnessSettings, None, None]:
    if not REDIS_AVAILABLE:
        pytest.skip("Real Redis not available")
    settings = stress_settings.merge({
        "backend": "redis",
        "redis_url": REDIS_URL,
        "key_prefix": stress_test_id,
    })
    yield settings
    client = redis.from_url(REDIS_URL)
    for key in client.scan_iter(f"{stress_test_id}:*"):
        client.delete(key)
    client.close()
