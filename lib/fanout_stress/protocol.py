"""Messaging Protocol - Message types, modes and errors shared by broker backends"""

import dataclasses
import json
import pickle
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Optional

from .scenarios import PayloadEncoding


class AckMode(Enum):
    """Session acknowledgment modes."""
    AUTO = "auto"
    CLIENT = "client"
    INDIVIDUAL = "individual"
    TRANSACTED = "transacted"


class DeliveryMode(Enum):
    NON_PERSISTENT = 1
    PERSISTENT = 2


class DestinationKind(Enum):
    TOPIC = "topic"
    QUEUE = "queue"


@dataclass(frozen=True)
class Destination:
    name: str
    kind: DestinationKind

    @classmethod
    def topic(cls, name: str) -> 'Destination':
        return cls(name, DestinationKind.TOPIC)

    @classmethod
    def queue(cls, name: str) -> 'Destination':
        return cls(name, DestinationKind.QUEUE)

    @property
    def is_topic(self) -> bool:
        return self.kind is DestinationKind.TOPIC

    def __str__(self) -> str:
        return f"{self.kind.value}://{self.name}"


class BrokerError(Exception):
    """Base exception for broker errors."""
    pass


class ConnectionFault(BrokerError):
    """Connection-level fault: broker shutdown, closed connection, transport loss."""
    pass


class FlowControlTimeout(BrokerError):
    """Send could not find destination space before the flow control timeout."""
    pass


@dataclass
class Message:
    """Base message. Subclasses carry one typed payload."""
    message_id: Optional[str] = None
    priority: int = 4
    delivery_mode: DeliveryMode = DeliveryMode.PERSISTENT
    expiration: float = 0
    timestamp: float = field(default_factory=time.time)
    redelivered: bool = False
    properties: Dict[str, Any] = field(default_factory=dict)
    _acknowledger: Optional[Callable[['Message'], None]] = field(
        default=None, repr=False, compare=False
    )

    ENCODING: ClassVar[Optional[PayloadEncoding]] = None

    def acknowledge(self):
        if self._acknowledger is not None:
            self._acknowledger(self)

    def bind(self, acknowledger: Optional[Callable[['Message'], None]]) -> 'Message':
        self._acknowledger = acknowledger
        return self

    @property
    def body(self) -> Any:
        raise NotImplementedError

    def marshal_body(self) -> bytes:
        return json.dumps(self.body).encode("utf-8")

    @classmethod
    def unmarshal_body(cls, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"))

    def copy(self) -> 'Message':
        return dataclasses.replace(self, properties=dict(self.properties), _acknowledger=None)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.expiration > 0 and (now or time.time()) > self.expiration


@dataclass
class TextMessage(Message):
    text: Optional[str] = None

    ENCODING: ClassVar[Optional[PayloadEncoding]] = PayloadEncoding.TEXT

    @property
    def body(self) -> Any:
        return self.text


@dataclass
class MapMessage(Message):
    mapping: Dict[str, Any] = field(default_factory=dict)

    ENCODING: ClassVar[Optional[PayloadEncoding]] = PayloadEncoding.MAP

    @property
    def body(self) -> Any:
        return self.mapping

    def get_string(self, key: str) -> Optional[str]:
        value = self.mapping.get(key)
        return None if value is None else str(value)

    def set_string(self, key: str, value: Optional[str]):
        self.mapping[key] = value

    def copy(self) -> 'Message':
        return dataclasses.replace(
            self, properties=dict(self.properties), mapping=dict(self.mapping), _acknowledger=None
        )


@dataclass
class ObjectMessage(Message):
    obj: Any = None

    ENCODING: ClassVar[Optional[PayloadEncoding]] = PayloadEncoding.OBJECT

    @property
    def body(self) -> Any:
        return self.obj

    def marshal_body(self) -> bytes:
        return pickle.dumps(self.obj)

    @classmethod
    def unmarshal_body(cls, data: bytes) -> Any:
        return pickle.loads(data)


MESSAGE_TYPES: Dict[PayloadEncoding, type] = {
    PayloadEncoding.TEXT: TextMessage,
    PayloadEncoding.MAP: MapMessage,
    PayloadEncoding.OBJECT: ObjectMessage,
}

_BODY_FIELDS = {TextMessage: "text", MapMessage: "mapping", ObjectMessage: "obj"}


def message_with_body(message_type: type, body: Any, **headers) -> Message:
    """Build a message of the given type with `body` as its payload."""
    return message_type(**headers, **{_BODY_FIELDS[message_type]: body})


def headers_of(message: Message) -> Dict[str, Any]:
    return {
        "message_id": message.message_id,
        "priority": message.priority,
        "delivery_mode": message.delivery_mode,
        "expiration": message.expiration,
        "timestamp": message.timestamp,
        "redelivered": message.redelivered,
        "properties": dict(message.properties),
    }
