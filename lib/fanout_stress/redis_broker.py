"""Redis Streams broker backend.

Topic ``T`` maps to stream ``<prefix>:topic:T``. Consumer queue
``Consumer.Q3.T`` maps to consumer group ``Consumer.Q3`` on that stream, so
each group sees every entry (fan-out) and the stream entry id doubles as the
message id shared by all copies.
"""
import random
import threading
import time
import uuid
from typing import Callable, Dict, Optional

import redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from .constants import Defaults, QueueNames
from .logs import get_logger
from .protocol import (
    AckMode,
    BrokerError,
    ConnectionFault,
    Destination,
    DeliveryMode,
    MapMessage,
    Message,
    MESSAGE_TYPES,
    ObjectMessage,
    TextMessage,
    message_with_body,
)
from .scenarios import BrokerPolicy, PayloadEncoding

logger = get_logger(__name__)

ClientFactory = Callable[[], redis.Redis]


class RedisStartupError(ConnectionFault):
    """Failed to connect to Redis after all retries."""
    pass


def create_redis_client(
    redis_url: str,
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0
) -> redis.Redis:
    """Create Redis client with exponential backoff retry.

    Args:
        redis_url: Redis connection URL
        max_retries: Maximum connection attempts (default 5)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay cap in seconds

    Returns:
        Connected Redis client returning raw bytes

    Raises:
        RedisStartupError: If connection fails after all retries
    """
    last_error = None

    for attempt in range(max_retries):
        try:
            client = redis.from_url(redis_url, decode_responses=False)
            client.ping()
            return client
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            last_error = e
            delay = min(base_delay * (2 ** attempt), max_delay)
            jitter = delay * 0.25 * (2 * random.random() - 1)
            actual_delay = delay + jitter

            logger.warning(
                "Redis connection to %s failed (attempt %d/%d): %s",
                redis_url, attempt + 1, max_retries, e
            )

            if attempt < max_retries - 1:
                time.sleep(actual_delay)

    raise RedisStartupError(
        f"Failed to connect to Redis at {redis_url} after {max_retries} attempts: {last_error}"
    )


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class RedisStreamBroker:
    """Broker service backed by Redis Streams and consumer groups."""

    def __init__(
        self,
        policy: Optional[BrokerPolicy] = None,
        redis_url: str = Defaults.REDIS_URL,
        key_prefix: str = Defaults.KEY_PREFIX,
        client_factory: Optional[ClientFactory] = None,
        delete_all_messages_on_startup: bool = True,
        stream_maxlen: int = Defaults.STREAM_MAXLEN
    ):
        self.policy = policy or BrokerPolicy()
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.delete_all_messages_on_startup = delete_all_messages_on_startup
        self.stream_maxlen = stream_maxlen
        self._client_factory = client_factory or (lambda: create_redis_client(self.redis_url))
        self._lock = threading.Lock()
        self._connections = []
        self._admin: Optional[redis.Redis] = None
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def policy_key(self) -> str:
        return f"{self.key_prefix}:policy"

    def stream_key(self, topic: str) -> str:
        return f"{self.key_prefix}:topic:{topic}"

    def notify_channel(self, topic: str) -> str:
        return f"{self.key_prefix}:notify:{topic}"

    def start(self):
        if self._started:
            return
        self._admin = self._client_factory()
        if self.delete_all_messages_on_startup:
            for key in self._admin.scan_iter(f"{self.key_prefix}:*"):
                self._admin.delete(key)
        self._admin.hset(self.policy_key, mapping={
            "reduce_memory_footprint": int(self.policy.reduce_memory_footprint),
            "concurrent_store_and_dispatch": int(self.policy.concurrent_store_and_dispatch),
        })
        self._started = True
        logger.info("Redis broker started on %s with prefix %s", self.redis_url, self.key_prefix)

    def stop(self):
        if not self._started:
            return
        self._started = False
        with self._lock:
            connections = list(self._connections)
            self._connections.clear()
        for connection in connections:
            connection.on_fault(ConnectionFault("Redis broker stopped"))
            connection.close()
        if self._admin is not None:
            self._admin.close()
            self._admin = None
        logger.info("Redis broker on %s stopped", self.redis_url)

    def connect(self) -> 'RedisConnection':
        if not self._started:
            raise ConnectionFault("Redis broker is not started")
        connection = RedisConnection(self, self._client_factory(), f"conn-{uuid.uuid4().hex[:8]}")
        with self._lock:
            self._connections.append(connection)
        return connection

    def _forget(self, connection: 'RedisConnection'):
        with self._lock:
            if connection in self._connections:
                self._connections.remove(connection)


class RedisConnection:

    def __init__(self, broker: RedisStreamBroker, client: redis.Redis, connection_id: str):
        self.broker = broker
        self.client = client
        self.connection_id = connection_id
        self._listener = None
        self.started = False
        self.closed = False

    def set_exception_listener(self, listener):
        self._listener = listener

    def on_fault(self, fault: ConnectionFault):
        if self._listener is not None and not self.closed:
            self._listener(fault)

    def start(self):
        self._check_open()
        self.started = True

    def create_session(self, ack_mode: AckMode = AckMode.AUTO) -> 'RedisSession':
        self._check_open()
        if ack_mode is AckMode.TRANSACTED:
            raise BrokerError("Transacted sessions are not supported by the Redis broker")
        return RedisSession(self, ack_mode)

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self.client.close()
        except RedisError as e:
            logger.warning("Error closing Redis connection %s: %s", self.connection_id, e)
        self.broker._forget(self)

    def _check_open(self):
        if self.closed:
            raise ConnectionFault(f"Connection {self.connection_id} is closed")

    def call(self, fn, *args, **kwargs):
        """Run a Redis command, translating transport errors into broker faults."""
        self._check_open()
        try:
            return fn(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            fault = ConnectionFault(f"Redis connection lost: {e}")
            self.on_fault(fault)
            raise fault from e
        except RedisError as e:
            raise BrokerError(f"Redis command failed: {e}") from e


class RedisSession:

    def __init__(self, connection: RedisConnection, ack_mode: AckMode):
        self.connection = connection
        self.ack_mode = ack_mode

    def create_topic(self, name: str) -> Destination:
        return Destination.topic(name)

    def create_queue(self, name: str) -> Destination:
        return Destination.queue(name)

    def create_text_message(self, text: Optional[str] = None) -> TextMessage:
        return TextMessage(text=text)

    def create_map_message(self, mapping: Optional[dict] = None) -> MapMessage:
        return MapMessage(mapping=dict(mapping or {}))

    def create_object_message(self, obj=None) -> ObjectMessage:
        return ObjectMessage(obj=obj)

    def create_producer(self, destination: Destination) -> 'RedisProducer':
        self.connection._check_open()
        return RedisProducer(self, destination)

    def create_consumer(self, destination: Destination) -> 'RedisConsumer':
        self.connection._check_open()
        if destination.is_topic:
            group, topic = f"sub-{uuid.uuid4().hex[:8]}", destination.name
        else:
            parts = QueueNames.split_consumer_queue(destination.name)
            if parts:
                group, topic = f"{QueueNames.CONSUMER_PREFIX}.{parts[0]}", parts[1]
            else:
                group, topic = "default", destination.name
        return RedisConsumer(self, group, topic)


class RedisProducer:

    def __init__(self, session: RedisSession, destination: Destination):
        self.session = session
        self.destination = destination
        self.producer_id = session.connection.connection_id

    def send(
        self,
        message: Message,
        delivery_mode: DeliveryMode = DeliveryMode.PERSISTENT,
        priority: int = 4,
        ttl: float = 0
    ) -> str:
        connection = self.session.connection
        broker = connection.broker
        message.delivery_mode = delivery_mode
        message.priority = priority
        message.expiration = message.timestamp + ttl if ttl > 0 else 0
        fields = {
            "type": message.ENCODING.value,
            "body": message.marshal_body(),
            "priority": priority,
            "persistent": int(delivery_mode is DeliveryMode.PERSISTENT),
            "expiration": message.expiration,
            "timestamp": message.timestamp,
            "producer": self.producer_id,
        }
        stream = broker.stream_key(self.destination.name)
        trim = {"maxlen": broker.stream_maxlen, "approximate": True} if broker.policy.reduce_memory_footprint else {}

        if broker.policy.concurrent_store_and_dispatch:
            entry_id = connection.call(connection.client.xadd, stream, fields, **trim)
        else:
            pipe = connection.client.pipeline(transaction=True)
            pipe.xadd(stream, fields, **trim)
            pipe.publish(broker.notify_channel(self.destination.name), self.producer_id)
            entry_id = connection.call(pipe.execute)[0]

        message.message_id = _text(entry_id)
        return message.message_id


class RedisConsumer:

    def __init__(self, session: RedisSession, group: str, topic: str):
        self.session = session
        self.group = group
        self.topic = topic
        self.stream = session.connection.broker.stream_key(topic)
        self.consumer_name = f"{group}-{session.connection.connection_id}"
        self._pending: Dict[str, Message] = {}
        self._ensure_group()

    def _ensure_group(self):
        """Create consumer group if it doesn't exist."""
        connection = self.session.connection
        try:
            connection.client.xgroup_create(self.stream, self.group, id='$', mkstream=True)
        except ResponseError as e:
            # Group already exists
            if 'BUSYGROUP' not in str(e):
                raise BrokerError(f"Cannot create group {self.group}: {e}") from e
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise ConnectionFault(f"Redis connection lost: {e}") from e

    def receive(self, timeout: float) -> Optional[Message]:
        connection = self.session.connection
        block_ms = int(timeout * 1000)
        result = connection.call(
            connection.client.xreadgroup,
            self.group,
            self.consumer_name,
            {self.stream: '>'},
            count=1,
            block=block_ms if block_ms > 0 else None
        )
        if not result:
            return None
        for _stream_name, entries in result:
            for entry_id, data in entries:
                message = self._decode(_text(entry_id), data)
                if message.is_expired():
                    self._ack(message.message_id)
                    continue
                if self.session.ack_mode is AckMode.AUTO:
                    self._ack(message.message_id)
                    return message
                self._pending[message.message_id] = message
                return message.bind(self._acknowledge)
        return None

    def _decode(self, entry_id: str, data: dict) -> Message:
        fields = {_text(k): v for k, v in data.items()}
        message_type = MESSAGE_TYPES[PayloadEncoding(_text(fields["type"]))]
        body = message_type.unmarshal_body(fields["body"])
        return message_with_body(
            message_type,
            body,
            message_id=entry_id,
            priority=int(_text(fields.get("priority", b"4"))),
            delivery_mode=(DeliveryMode.PERSISTENT if _text(fields.get("persistent", b"1")) == "1"
                           else DeliveryMode.NON_PERSISTENT),
            expiration=float(_text(fields.get("expiration", b"0"))),
            timestamp=float(_text(fields.get("timestamp", b"0"))),
        )

    def _acknowledge(self, message: Message):
        if self.session.ack_mode is AckMode.CLIENT:
            ids = list(self._pending)
            self._pending.clear()
        else:
            self._pending.pop(message.message_id, None)
            ids = [message.message_id]
        if ids:
            self._ack(*ids)

    def _ack(self, *message_ids: str):
        connection = self.session.connection
        connection.call(connection.client.xack, self.stream, self.group, *message_ids)

    def close(self):
        self._pending.clear()
