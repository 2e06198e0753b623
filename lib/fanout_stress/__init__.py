"""Fan-out Stress Harness

Concurrency stress test for publish/subscribe fan-out delivery integrity.
"""

from .broker import InMemoryBroker
from .config import HarnessSettings
from .constants import Defaults, QueueNames
from .logs import SecureLogger, configure_logging, get_logger, sanitize
from .metrics import ScenarioMetrics
from .orchestrator import (
    Orchestrator,
    ScenarioResult,
    ScenarioStatus,
    HarnessError,
    SetupTimeoutError,
    broker_factory_for,
    run_matrix,
)
from .protocol import (
    AckMode,
    BrokerError,
    ConnectionFault,
    DeliveryMode,
    Destination,
    FlowControlTimeout,
    MapMessage,
    Message,
    ObjectMessage,
    TextMessage,
)
from .redis_broker import RedisStreamBroker, create_redis_client
from .scenarios import BrokerPolicy, PayloadEncoding, ScenarioConfig, filter_scenarios, scenario_matrix
from .sync import DeliveryTracker, FailureSignal, IndexAllocator, ReadinessBarrier
from .workers import ConsumerState, ConsumerWorker, ProducerWorker, WorkerContext

__all__ = [
    'InMemoryBroker',
    'RedisStreamBroker',
    'create_redis_client',
    'HarnessSettings',
    'Defaults',
    'QueueNames',
    'SecureLogger',
    'configure_logging',
    'get_logger',
    'sanitize',
    'ScenarioMetrics',
    'Orchestrator',
    'ScenarioResult',
    'ScenarioStatus',
    'HarnessError',
    'SetupTimeoutError',
    'broker_factory_for',
    'run_matrix',
    'AckMode',
    'BrokerError',
    'ConnectionFault',
    'DeliveryMode',
    'Destination',
    'FlowControlTimeout',
    'MapMessage',
    'Message',
    'ObjectMessage',
    'TextMessage',
    'BrokerPolicy',
    'PayloadEncoding',
    'ScenarioConfig',
    'filter_scenarios',
    'scenario_matrix',
    'DeliveryTracker',
    'FailureSignal',
    'IndexAllocator',
    'ReadinessBarrier',
    'ConsumerState',
    'ConsumerWorker',
    'ProducerWorker',
    'WorkerContext',
]

__version__ = '0.1.0'
