"""Constants and destination naming for the fan-out stress harness."""


class QueueNames:
    """Destination name patterns for virtual topic fan-out."""

    CONSUMER_PREFIX = "Consumer"

    @classmethod
    def consumer_queue(cls, index: int, topic: str) -> str:
        return f"{cls.CONSUMER_PREFIX}.Q{index}.{topic}"

    @classmethod
    def split_consumer_queue(cls, queue_name: str):
        """Return (subscriber, topic) for a consumer queue name, or None."""
        parts = queue_name.split(".", 2)
        if len(parts) != 3 or parts[0] != cls.CONSUMER_PREFIX:
            return None
        return parts[1], parts[2]


class Defaults:
    """Default configuration values."""
    CONSUMER_COUNT = 30
    PRODUCER_COUNT = 1
    TOPIC = "VirtualTopic.FanoutStress"
    RECEIVE_TIMEOUT = 0.5
    READY_TIMEOUT = 20.0
    RUN_SECONDS = 10.0
    SHUTDOWN_GRACE = 10.0
    PRIORITY = 4
    TIME_TO_LIVE = 0
    TEXT_PREFIX = "Fanout Message Number"
    MAP_KEY = "text"
    BACKEND = "memory"
    REDIS_URL = "redis://localhost:6379"
    KEY_PREFIX = "fanout"
    STREAM_MAXLEN = 10000
    LOG_LEVEL = "INFO"
