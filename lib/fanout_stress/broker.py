"""In-memory broker with virtual topic fan-out.

A send to topic ``T`` is copied into every queue named ``Consumer.<name>.T``
that exists at send time. Each copy keeps the message id of the original, so
a single publish shows up once per subscriber queue.

Broker policy switches:
- reduce_memory_footprint: queued copies hold only the marshalled body and are
  rebuilt on dispatch.
- concurrent_store_and_dispatch: when False the journal write and the dispatch
  of every copy happen under the store lock; when True the lock is released
  after the journal write and dispatch runs concurrently with other stores.
"""
import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Set

from .constants import QueueNames
from .logs import get_logger
from .protocol import (
    AckMode,
    BrokerError,
    ConnectionFault,
    Destination,
    DeliveryMode,
    FlowControlTimeout,
    MapMessage,
    Message,
    ObjectMessage,
    TextMessage,
    headers_of,
    message_with_body,
)
from .scenarios import BrokerPolicy

logger = get_logger(__name__)

DeliveryHook = Callable[[str, int, Message], Optional[Message]]
ExceptionListener = Callable[[ConnectionFault], None]


@dataclass
class _Envelope:
    """A queued copy: either the live message or its marshalled body."""
    message: Optional[Message] = None
    message_type: Optional[type] = None
    headers: Optional[dict] = None
    payload: Optional[bytes] = None

    @classmethod
    def wrap(cls, message: Message, marshal: bool) -> '_Envelope':
        if not marshal:
            return cls(message=message)
        return cls(
            message_type=type(message),
            headers=headers_of(message),
            payload=message.marshal_body()
        )

    def open(self) -> Message:
        if self.message is not None:
            return self.message
        body = self.message_type.unmarshal_body(self.payload)
        return message_with_body(self.message_type, body, **self.headers)


class _MemoryQueue:

    def __init__(self, name: str, on_drain: Callable[[], None]):
        self.name = name
        self._cond = threading.Condition()
        self._pending: Deque[_Envelope] = deque()
        self._on_drain = on_drain
        self.deliveries = 0
        self.closed = False

    @property
    def depth(self) -> int:
        return len(self._pending)

    def put(self, envelope: _Envelope):
        with self._cond:
            self._pending.append(envelope)
            self._cond.notify()

    def put_front(self, envelopes: List[_Envelope]):
        with self._cond:
            self._pending.extendleft(reversed(envelopes))
            self._cond.notify_all()

    def get(self, timeout: float):
        """Pop the next envelope, waiting up to `timeout`. Returns (envelope, delivery_number)."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._pending or self.closed, timeout=timeout):
                return None, 0
            if self.closed:
                raise ConnectionFault(f"Queue {self.name} closed")
            envelope = self._pending.popleft()
            self.deliveries += 1
            delivery_number = self.deliveries
        self._on_drain()
        return envelope, delivery_number

    def close(self):
        with self._cond:
            self.closed = True
            self._cond.notify_all()


class InMemoryBroker:
    """Thread-safe broker service used as the default collaborator."""

    def __init__(
        self,
        policy: Optional[BrokerPolicy] = None,
        delivery_hook: Optional[DeliveryHook] = None,
        max_queue_depth: int = 1000,
        flow_control_timeout: float = 0.5,
        delete_all_messages_on_startup: bool = True,
        name: str = "memory-broker"
    ):
        self.policy = policy or BrokerPolicy()
        self.delivery_hook = delivery_hook
        self.max_queue_depth = max_queue_depth
        self.flow_control_timeout = flow_control_timeout
        self.delete_all_messages_on_startup = delete_all_messages_on_startup
        self.name = name

        self._lock = threading.RLock()
        self._space = threading.Condition()
        self._store_lock = threading.Lock()
        self._queues: Dict[str, _MemoryQueue] = {}
        self._journal: Dict[str, int] = {}
        self._connections: Set['MemoryConnection'] = set()
        self._connection_ids = itertools.count(1)
        self._started = False

    def start(self):
        with self._lock:
            if self._started:
                return
            if self.delete_all_messages_on_startup:
                self._journal.clear()
                self._queues.clear()
            self._started = True
        logger.info(
            "Broker %s started (reduce_memory_footprint=%s, concurrent_store_and_dispatch=%s)",
            self.name, self.policy.reduce_memory_footprint, self.policy.concurrent_store_and_dispatch
        )

    def stop(self):
        with self._lock:
            if not self._started:
                return
            self._started = False
            connections = list(self._connections)
            queues = list(self._queues.values())
        for connection in connections:
            connection.on_fault(ConnectionFault(f"Broker {self.name} stopped"))
            connection.close()
        for queue in queues:
            queue.close()
        with self._space:
            self._space.notify_all()
        logger.info("Broker %s stopped", self.name)

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def journal_size(self) -> int:
        with self._store_lock:
            return len(self._journal)

    def queue_names(self) -> List[str]:
        with self._lock:
            return sorted(self._queues)

    def queue_depth(self, name: str) -> int:
        with self._lock:
            queue = self._queues.get(name)
        return queue.depth if queue else 0

    def connect(self) -> 'MemoryConnection':
        with self._lock:
            if not self._started:
                raise ConnectionFault(f"Broker {self.name} is not started")
            connection = MemoryConnection(self, f"{self.name}-{next(self._connection_ids)}")
            self._connections.add(connection)
            return connection

    def _forget(self, connection: 'MemoryConnection'):
        with self._lock:
            self._connections.discard(connection)

    def _queue(self, name: str) -> _MemoryQueue:
        with self._lock:
            queue = self._queues.get(name)
            if queue is None:
                queue = _MemoryQueue(name, self._notify_space)
                self._queues[name] = queue
            return queue

    def _drop_queue(self, name: str):
        with self._lock:
            queue = self._queues.pop(name, None)
        if queue:
            queue.close()

    def _notify_space(self):
        with self._space:
            self._space.notify_all()

    def _targets(self, destination: Destination) -> List[_MemoryQueue]:
        if not destination.is_topic:
            return [self._queue(destination.name)]
        with self._lock:
            return [
                queue for name, queue in self._queues.items()
                if (QueueNames.split_consumer_queue(name) or (None, None))[1] == destination.name
            ]

    def publish(self, destination: Destination, message: Message):
        if not self._started:
            raise ConnectionFault(f"Broker {self.name} is not started")
        targets = self._targets(destination)
        with self._space:
            has_space = self._space.wait_for(
                lambda: not self._started or all(q.depth < self.max_queue_depth for q in targets),
                timeout=self.flow_control_timeout
            )
        if not self._started:
            raise ConnectionFault(f"Broker {self.name} stopped during send")
        if not has_space:
            raise FlowControlTimeout(f"No space on {destination} after {self.flow_control_timeout}s")

        persistent = message.delivery_mode is DeliveryMode.PERSISTENT
        envelopes = [
            _Envelope.wrap(message.copy(), self.policy.reduce_memory_footprint)
            for _ in targets
        ]

        # The journal entry must exist before any copy can be acknowledged.
        if self.policy.concurrent_store_and_dispatch:
            if persistent:
                self._store(message.message_id, len(targets))
            self._dispatch(targets, envelopes)
        else:
            with self._store_lock:
                if persistent and targets:
                    self._journal[message.message_id] = len(targets)
                self._dispatch(targets, envelopes)

    def _dispatch(self, targets: List[_MemoryQueue], envelopes: List[_Envelope]):
        for queue, envelope in zip(targets, envelopes):
            queue.put(envelope)

    def _store(self, message_id: str, copies: int):
        if not copies:
            return
        with self._store_lock:
            self._journal[message_id] = self._journal.get(message_id, 0) + copies

    def settle(self, message_id: str):
        """One copy of `message_id` was acknowledged."""
        with self._store_lock:
            remaining = self._journal.get(message_id)
            if remaining is None:
                return
            if remaining <= 1:
                del self._journal[message_id]
            else:
                self._journal[message_id] = remaining - 1

    def receive(self, queue_name: str, timeout: float) -> Optional[Message]:
        queue = self._queue(queue_name)
        envelope, delivery_number = queue.get(timeout)
        if envelope is None:
            return None
        message = envelope.open()
        if message.is_expired():
            self.settle(message.message_id)
            return None
        if self.delivery_hook is not None:
            message = self.delivery_hook(queue_name, delivery_number, message) or message
        return message

    def redeliver(self, queue_name: str, messages: List[Message]):
        if not messages:
            return
        with self._lock:
            queue = self._queues.get(queue_name)
        if queue is None or queue.closed:
            return
        envelopes = []
        for message in messages:
            copy = message.copy()
            copy.redelivered = True
            envelopes.append(_Envelope.wrap(copy, self.policy.reduce_memory_footprint))
        queue.put_front(envelopes)


class MemoryConnection:

    def __init__(self, broker: InMemoryBroker, connection_id: str):
        self.broker = broker
        self.connection_id = connection_id
        self._lock = threading.Lock()
        self._sessions: List['MemorySession'] = []
        self._session_ids = itertools.count(1)
        self._listener: Optional[ExceptionListener] = None
        self.started = False
        self.closed = False

    def set_exception_listener(self, listener: Optional[ExceptionListener]):
        self._listener = listener

    def on_fault(self, fault: ConnectionFault):
        listener = self._listener
        if listener is not None and not self.closed:
            listener(fault)

    def start(self):
        self._check_open()
        self.started = True

    def create_session(self, ack_mode: AckMode = AckMode.AUTO) -> 'MemorySession':
        self._check_open()
        if ack_mode is AckMode.TRANSACTED:
            raise BrokerError("Transacted sessions are not supported by the in-memory broker")
        with self._lock:
            session = MemorySession(self, next(self._session_ids), ack_mode)
            self._sessions.append(session)
            return session

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
            sessions = list(self._sessions)
        for session in sessions:
            session.close()
        self.broker._forget(self)

    def _check_open(self):
        if self.closed:
            raise ConnectionFault(f"Connection {self.connection_id} is closed")
        if not self.broker.is_started:
            raise ConnectionFault(f"Broker {self.broker.name} is not running")


class MemorySession:

    def __init__(self, connection: MemoryConnection, session_id: int, ack_mode: AckMode):
        self.connection = connection
        self.session_id = session_id
        self.ack_mode = ack_mode
        self._message_ids = itertools.count(1)
        self._lock = threading.Lock()
        self._producers: List['MemoryProducer'] = []
        self._consumers: List['MemoryConsumer'] = []
        self._subscription_ids = itertools.count(1)
        self.closed = False

    def create_topic(self, name: str) -> Destination:
        return Destination.topic(name)

    def create_queue(self, name: str) -> Destination:
        self._check_open()
        self.connection.broker._queue(name)
        return Destination.queue(name)

    def create_text_message(self, text: Optional[str] = None) -> TextMessage:
        return TextMessage(text=text)

    def create_map_message(self, mapping: Optional[dict] = None) -> MapMessage:
        return MapMessage(mapping=dict(mapping or {}))

    def create_object_message(self, obj=None) -> ObjectMessage:
        return ObjectMessage(obj=obj)

    def create_producer(self, destination: Destination) -> 'MemoryProducer':
        self._check_open()
        producer = MemoryProducer(self, destination)
        with self._lock:
            self._producers.append(producer)
        return producer

    def create_consumer(self, destination: Destination) -> 'MemoryConsumer':
        self._check_open()
        temporary = destination.is_topic
        if temporary:
            queue_name = QueueNames.consumer_queue(
                f"sub-{self.connection.connection_id}-{next(self._subscription_ids)}", destination.name
            )
        else:
            queue_name = destination.name
        self.connection.broker._queue(queue_name)
        consumer = MemoryConsumer(self, queue_name, temporary)
        with self._lock:
            self._consumers.append(consumer)
        return consumer

    def next_message_id(self) -> str:
        return f"ID:{self.connection.connection_id}-{self.session_id}:{next(self._message_ids)}"

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
            consumers = list(self._consumers)
            producers = list(self._producers)
        for consumer in consumers:
            consumer.close()
        for producer in producers:
            producer.close()

    def _check_open(self):
        if self.closed:
            raise ConnectionFault(f"Session {self.session_id} is closed")
        self.connection._check_open()


class MemoryProducer:

    def __init__(self, session: MemorySession, destination: Destination):
        self.session = session
        self.destination = destination
        self.closed = False

    def send(
        self,
        message: Message,
        delivery_mode: DeliveryMode = DeliveryMode.PERSISTENT,
        priority: int = 4,
        ttl: float = 0
    ) -> str:
        if self.closed:
            raise ConnectionFault("Producer is closed")
        self.session._check_open()
        message.message_id = self.session.next_message_id()
        message.delivery_mode = delivery_mode
        message.priority = priority
        message.expiration = message.timestamp + ttl if ttl > 0 else 0
        self.session.connection.broker.publish(self.destination, message)
        return message.message_id

    def close(self):
        self.closed = True


class MemoryConsumer:

    def __init__(self, session: MemorySession, queue_name: str, temporary: bool = False):
        self.session = session
        self.queue_name = queue_name
        self.temporary = temporary
        self._lock = threading.Lock()
        self._unacked: Dict[int, Message] = {}
        self._tags = itertools.count(1)
        self.closed = False

    @property
    def broker(self) -> InMemoryBroker:
        return self.session.connection.broker

    def receive(self, timeout: float) -> Optional[Message]:
        """Wait at most `timeout` seconds for the next message."""
        if self.closed:
            raise ConnectionFault(f"Consumer on {self.queue_name} is closed")
        self.session._check_open()
        if not self.session.connection.started:
            time.sleep(timeout)
            return None
        message = self.broker.receive(self.queue_name, timeout)
        if message is None:
            return None
        if self.session.ack_mode is AckMode.AUTO:
            self.broker.settle(message.message_id)
            return message
        tag = next(self._tags)
        message.properties["delivery_tag"] = tag
        with self._lock:
            self._unacked[tag] = message
        return message.bind(self._acknowledge)

    def _acknowledge(self, message: Message):
        if self.closed:
            raise ConnectionFault(f"Cannot acknowledge on closed consumer {self.queue_name}")
        with self._lock:
            if self.session.ack_mode is AckMode.CLIENT:
                settled = list(self._unacked.values())
                self._unacked.clear()
            else:
                tag = message.properties.get("delivery_tag")
                settled = [self._unacked.pop(tag)] if tag in self._unacked else []
        for item in settled:
            self.broker.settle(item.message_id)

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
            unacked = list(self._unacked.values())
            self._unacked.clear()
        if self.temporary:
            self.broker._drop_queue(self.queue_name)
        else:
            self.broker.redeliver(self.queue_name, unacked)
