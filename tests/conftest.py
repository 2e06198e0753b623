"""Shared pytest fixtures for fan-out stress harness tests."""

import sys
import threading
from pathlib import Path
from typing import List, Optional

import pytest

# Add lib directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "lib"))

try:
    import fakeredis
    FAKEREDIS_AVAILABLE = True
except ImportError:
    FAKEREDIS_AVAILABLE = False
    fakeredis = None

from fanout_stress.broker import InMemoryBroker
from fanout_stress.constants import Defaults, QueueNames
from fanout_stress.protocol import MapMessage, Message, ObjectMessage, TextMessage
from fanout_stress.scenarios import BrokerPolicy, PayloadEncoding, ScenarioConfig
from fanout_stress.sync import ReadinessBarrier
from fanout_stress.workers import WorkerContext


class CorruptDelivery:
    """Delivery hook that empties the body of one chosen delivery.

    Targets the `delivery_number`-th message handed to consumer queue
    `consumer_index` of `topic`; everything else passes through untouched.
    """

    def __init__(self, consumer_index: int, delivery_number: int, topic: str = Defaults.TOPIC):
        self.queue_name = QueueNames.consumer_queue(consumer_index, topic)
        self.delivery_number = delivery_number
        self._lock = threading.Lock()
        self.hits: List[str] = []

    def __call__(self, queue_name: str, delivery_number: int, message: Message) -> Optional[Message]:
        if queue_name != self.queue_name or delivery_number != self.delivery_number:
            return message
        if isinstance(message, TextMessage):
            message.text = ""
        elif isinstance(message, MapMessage):
            message.mapping = {}
        elif isinstance(message, ObjectMessage):
            message.obj = None
        with self._lock:
            self.hits.append(message.message_id)
        return message


@pytest.fixture
def corrupt_delivery():
    """Factory for delivery hooks that empty one chosen delivery."""
    return CorruptDelivery


@pytest.fixture
def fake_redis_server():
    """Shared fake server so several clients see the same streams."""
    if not FAKEREDIS_AVAILABLE:
        pytest.skip("fakeredis not installed")
    return fakeredis.FakeServer()


@pytest.fixture
def fake_client_factory(fake_redis_server):
    def factory():
        return fakeredis.FakeRedis(server=fake_redis_server, decode_responses=False)
    return factory


@pytest.fixture
def memory_broker():
    broker = InMemoryBroker(BrokerPolicy())
    broker.start()
    yield broker
    broker.stop()


@pytest.fixture
def text_scenario():
    return ScenarioConfig(PayloadEncoding.TEXT, False, True)


@pytest.fixture
def context_factory(memory_broker):
    """Build a WorkerContext wired to the in-memory broker."""
    def create(scenario: ScenarioConfig, parties: int = 1, receive_timeout: float = 0.1) -> WorkerContext:
        return WorkerContext(
            scenario=scenario,
            broker=memory_broker,
            barrier=ReadinessBarrier(parties),
            receive_timeout=receive_timeout
        )
    return create


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "requires_redis: marks tests that require Redis connection"
    )
    config.addinivalue_line(
        "markers", "slow: marks slow-running tests"
    )
    config.addinivalue_line(
        "markers", "p0: critical path tests"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers based on test location."""
    for item in items:
        if "stress" in Path(str(item.fspath)).parts:
            item.add_marker(pytest.mark.stress)
