"""Producer and consumer workers driven by the orchestrator's thread pool."""
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .constants import Defaults, QueueNames
from .logs import get_logger
from .metrics import (
    ACK_FAILURES,
    CONNECTION_FAULTS,
    FLOW_CONTROL_WAITS,
    MESSAGES_RECEIVED,
    MESSAGES_SENT,
    SEND_FAILURES,
    TYPE_ANOMALIES,
    WORKER_ERRORS,
    ScenarioMetrics,
)
from .protocol import (
    AckMode,
    BrokerError,
    ConnectionFault,
    DeliveryMode,
    FlowControlTimeout,
    MapMessage,
    Message,
    MESSAGE_TYPES,
    ObjectMessage,
    TextMessage,
)
from .scenarios import PayloadEncoding, ScenarioConfig
from .sync import DeliveryTracker, FailureSignal, IndexAllocator, ReadinessBarrier

logger = get_logger(__name__)


@dataclass
class WorkerContext:
    """Everything the workers of one scenario run share."""
    scenario: ScenarioConfig
    broker: Any
    barrier: ReadinessBarrier
    failure: FailureSignal = field(default_factory=FailureSignal)
    stop: threading.Event = field(default_factory=threading.Event)
    tracker: DeliveryTracker = field(default_factory=DeliveryTracker)
    allocator: IndexAllocator = field(default_factory=IndexAllocator)
    metrics: Optional[ScenarioMetrics] = None
    topic: str = Defaults.TOPIC
    receive_timeout: float = Defaults.RECEIVE_TIMEOUT
    priority: int = Defaults.PRIORITY
    time_to_live: float = Defaults.TIME_TO_LIVE

    def __post_init__(self):
        if self.metrics is None:
            self.metrics = ScenarioMetrics(self.scenario.scenario_id)

    def running(self) -> bool:
        return not self.failure.is_set() and not self.stop.is_set()


def _close_quietly(connection, owner: str):
    if connection is None:
        return
    try:
        connection.close()
    except BrokerError as e:
        logger.warning("%s: error closing connection: %s", owner, e)


def _is_empty(value) -> bool:
    if value is None:
        return True
    try:
        return len(value) == 0
    except TypeError:
        return False


def payload_of(message: Message) -> Any:
    """Payload of a message according to its runtime type."""
    if isinstance(message, TextMessage):
        return message.text
    if isinstance(message, MapMessage):
        return message.get_string(Defaults.MAP_KEY)
    if isinstance(message, ObjectMessage):
        return message.obj
    return None


class ProducerWorker:
    """Publishes numbered payloads of the scenario encoding until told to stop."""

    def __init__(self, context: WorkerContext, name: str = "producer"):
        self.context = context
        self.name = name
        self.sent = 0

    def build_message(self, session, sequence: int) -> Message:
        text = f"{Defaults.TEXT_PREFIX} :{sequence}"
        encoding = self.context.scenario.encoding
        if encoding is PayloadEncoding.MAP:
            message = session.create_map_message()
            message.set_string(Defaults.MAP_KEY, text)
            return message
        if encoding is PayloadEncoding.OBJECT:
            return session.create_object_message(text)
        return session.create_text_message(text)

    def run(self):
        ctx = self.context
        connection = None
        try:
            connection = ctx.broker.connect()
            connection.start()
            session = connection.create_session(AckMode.AUTO)
            destination = session.create_topic(ctx.topic)
            producer = session.create_producer(destination)
            logger.info("Producer %s: %s", self.name, destination)
        except BrokerError as e:
            logger.error("Producer %s setup failed: %s", self.name, e)
            ctx.metrics.increment(CONNECTION_FAULTS)
            _close_quietly(connection, self.name)
            return

        ctx.barrier.arrive()

        try:
            sequence = 0
            while ctx.running():
                sequence += 1
                message = self.build_message(session, sequence)
                try:
                    producer.send(message, DeliveryMode.PERSISTENT, ctx.priority, ctx.time_to_live)
                except FlowControlTimeout:
                    ctx.metrics.increment(FLOW_CONTROL_WAITS)
                    continue
                except BrokerError as e:
                    if ctx.running():
                        logger.error("Producer %s send failed, stopping: %s", self.name, e)
                        ctx.metrics.increment(SEND_FAILURES)
                    break
                self.sent += 1
                ctx.metrics.increment(MESSAGES_SENT)
                logger.debug("Sent message: %s", message.message_id)
        except Exception:
            logger.exception("Producer %s crashed", self.name)
            ctx.metrics.increment(WORKER_ERRORS)
        finally:
            _close_quietly(connection, self.name)


class ConsumerState(Enum):
    CREATED = "created"
    SETTING_UP = "setting_up"
    READY = "ready"
    POLLING = "polling"
    VALIDATING = "validating"
    TERMINATED = "terminated"


class ConsumerWorker:
    """Polls one fan-out queue and checks every delivered body.

    A null or empty body raises the shared failure signal. The payload is read
    by the scenario encoding, so a message of another type is reported as an
    anomaly and then yields no payload, which the null check treats as corrupt.
    """

    def __init__(self, context: WorkerContext):
        self.context = context
        self.state = ConsumerState.CREATED
        self.index: Optional[int] = None
        self.queue_name: Optional[str] = None
        self.received = 0

    @property
    def label(self) -> str:
        return self.queue_name or f"consumer-{id(self):x}"

    def run(self):
        ctx = self.context
        self.state = ConsumerState.SETTING_UP
        connection = None
        try:
            self.index = ctx.allocator.allocate()
            self.queue_name = QueueNames.consumer_queue(self.index, ctx.topic)
            logger.info(self.queue_name)

            connection = ctx.broker.connect()
            connection.set_exception_listener(self.on_exception)
            connection.start()
            session = connection.create_session(AckMode.INDIVIDUAL)
            destination = session.create_queue(self.queue_name)
            consumer = session.create_consumer(destination)
        except BrokerError as e:
            logger.error("Consumer %s setup failed: %s", self.label, e)
            ctx.metrics.increment(CONNECTION_FAULTS)
            self.state = ConsumerState.TERMINATED
            _close_quietly(connection, self.label)
            return

        self.state = ConsumerState.READY
        ctx.barrier.arrive()

        try:
            self.poll(consumer)
        except ConnectionFault as e:
            if ctx.running():
                logger.warning("Consumer %s lost its connection, exiting: %s", self.label, e)
                ctx.metrics.increment(CONNECTION_FAULTS)
        except BrokerError as e:
            logger.warning("Consumer %s broker error, exiting: %s", self.label, e)
            ctx.metrics.increment(CONNECTION_FAULTS)
        except Exception:
            logger.exception("Consumer %s crashed", self.label)
            ctx.metrics.increment(WORKER_ERRORS)
        finally:
            self.state = ConsumerState.TERMINATED
            _close_quietly(connection, self.label)

    def poll(self, consumer):
        ctx = self.context
        while ctx.running():
            self.state = ConsumerState.POLLING
            message = consumer.receive(ctx.receive_timeout)
            if message is None:
                continue
            self.state = ConsumerState.VALIDATING
            self.validate(message)

    def validate(self, message: Message) -> bool:
        ctx = self.context
        self.received += 1
        ctx.metrics.increment(MESSAGES_RECEIVED)

        ended = ctx.tracker.record(message.message_id)
        if ended is not None:
            logger.info("Count of message %s is %d", ended.message_id, ended.count)

        text = self.extract(message)
        valid = not _is_empty(text)
        if not valid:
            logger.warning(
                "%s text received as a null: consumer index %d, encoding %s, message id %s",
                self.label, self.index, ctx.scenario.encoding.name, message.message_id
            )
            ctx.metrics.record_corruption(
                self.label, self.index, ctx.scenario.encoding.name, message.message_id
            )
            ctx.failure.set()
        else:
            logger.debug("%s text %s message id: %s", self.label, text, message.message_id)

        try:
            message.acknowledge()
        except BrokerError as e:
            logger.warning("%s failed to acknowledge %s: %s", self.label, message.message_id, e)
            ctx.metrics.increment(ACK_FAILURES)
        return valid

    def extract(self, message: Message) -> Any:
        encoding = self.context.scenario.encoding
        if not isinstance(message, MESSAGE_TYPES[encoding]):
            logger.info(
                "%s Message is not a instanceof %s message id: %s %r",
                self.label, encoding.name, message.message_id, message
            )
            self.context.metrics.increment(TYPE_ANOMALIES)
            return None
        return payload_of(message)

    def on_exception(self, fault: ConnectionFault):
        logger.error("Connection exception on %s: %s", self.label, fault)
        self.context.metrics.increment(CONNECTION_FAULTS)
