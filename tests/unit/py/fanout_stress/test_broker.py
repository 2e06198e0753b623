"""Tests for the in-memory broker.

Covers virtual topic fan-out, acknowledgment bookkeeping, redelivery,
policy switches, flow control and shutdown faults.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from fanout_stress.broker import InMemoryBroker
from fanout_stress.constants import QueueNames
from fanout_stress.protocol import (
    AckMode,
    BrokerError,
    ConnectionFault,
    DeliveryMode,
    FlowControlTimeout,
    MapMessage,
    ObjectMessage,
    TextMessage,
)
from fanout_stress.scenarios import BrokerPolicy

TOPIC = "VirtualTopic.Test"


def open_session(broker, ack_mode=AckMode.INDIVIDUAL):
    connection = broker.connect()
    connection.start()
    return connection, connection.create_session(ack_mode)


def subscribe(broker, index, ack_mode=AckMode.INDIVIDUAL):
    connection, session = open_session(broker, ack_mode)
    queue = session.create_queue(QueueNames.consumer_queue(index, TOPIC))
    return connection, session.create_consumer(queue)


def publisher(broker):
    connection, session = open_session(broker, AckMode.AUTO)
    return session, session.create_producer(session.create_topic(TOPIC))


@pytest.fixture
def broker():
    b = InMemoryBroker(BrokerPolicy())
    b.start()
    yield b
    b.stop()


class TestFanOut:

    @pytest.mark.p0
    def test_each_consumer_queue_gets_a_copy_with_same_id(self, broker):
        _, first = subscribe(broker, 0)
        _, second = subscribe(broker, 1)
        session, producer = publisher(broker)

        message_id = producer.send(session.create_text_message("hello"))

        a = first.receive(1)
        b = second.receive(1)
        assert a.text == b.text == "hello"
        assert a.message_id == b.message_id == message_id
        assert a is not b

    def test_queue_created_after_send_misses_message(self, broker):
        session, producer = publisher(broker)
        producer.send(session.create_text_message("early"))

        _, late = subscribe(broker, 0)

        assert late.receive(0.05) is None

    def test_unrelated_queues_are_not_targets(self, broker):
        _, session = open_session(broker)
        other = session.create_consumer(session.create_queue("Consumer.Q0.VirtualTopic.Other"))
        pub_session, producer = publisher(broker)

        producer.send(pub_session.create_text_message("x"))

        assert other.receive(0.05) is None

    def test_message_ids_are_monotonic_per_session(self, broker):
        session, producer = publisher(broker)

        ids = [producer.send(session.create_text_message(str(i))) for i in range(3)]

        assert [int(i.rsplit(":", 1)[1]) for i in ids] == [1, 2, 3]

    def test_send_applies_headers(self, broker):
        _, consumer = subscribe(broker, 0)
        session, producer = publisher(broker)

        producer.send(session.create_text_message("h"), DeliveryMode.NON_PERSISTENT, priority=7)

        received = consumer.receive(1)
        assert received.priority == 7
        assert received.delivery_mode is DeliveryMode.NON_PERSISTENT

    def test_topic_consumer_gets_private_subscription(self, broker):
        _, session = open_session(broker)
        consumer = session.create_consumer(session.create_topic(TOPIC))
        pub_session, producer = publisher(broker)

        producer.send(pub_session.create_text_message("sub"))

        assert consumer.receive(1).text == "sub"
        consumer.close()
        assert broker.queue_names() == []


class TestReceive:

    def test_receive_timeout_returns_none_within_bound(self, broker):
        _, consumer = subscribe(broker, 0)

        start = time.time()
        result = consumer.receive(0.2)

        assert result is None
        assert time.time() - start < 1.0

    def test_not_started_connection_delivers_nothing(self, broker):
        connection = broker.connect()
        session = connection.create_session(AckMode.INDIVIDUAL)
        consumer = session.create_consumer(session.create_queue(QueueNames.consumer_queue(0, TOPIC)))
        pub_session, producer = publisher(broker)
        producer.send(pub_session.create_text_message("wait"))

        assert consumer.receive(0.05) is None
        connection.start()
        assert consumer.receive(1).text == "wait"

    def test_expired_message_is_dropped(self, broker):
        _, consumer = subscribe(broker, 0)
        session, producer = publisher(broker)

        producer.send(session.create_text_message("old"), ttl=0.01)
        time.sleep(0.05)

        assert consumer.receive(0.05) is None
        assert broker.journal_size == 0


class TestAcknowledgment:

    @pytest.mark.p0
    def test_individual_ack_settles_journal(self, broker):
        _, first = subscribe(broker, 0)
        _, second = subscribe(broker, 1)
        session, producer = publisher(broker)
        producer.send(session.create_text_message("ack me"))

        assert broker.journal_size == 1
        first.receive(1).acknowledge()
        assert broker.journal_size == 1
        second.receive(1).acknowledge()
        assert broker.journal_size == 0

    @pytest.mark.p0
    @pytest.mark.parametrize("concurrent_dispatch", [True, False])
    def test_journal_drains_with_concurrent_acks(self, concurrent_dispatch):
        """Consumers acking while sends are still fanning out settle every copy."""
        consumers_count = 10
        sends = 2000
        broker = InMemoryBroker(BrokerPolicy(concurrent_store_and_dispatch=concurrent_dispatch))
        broker.start()
        try:
            consumers = [subscribe(broker, i)[1] for i in range(consumers_count)]
            acked = []
            lock = threading.Lock()

            def drain(consumer):
                count = 0
                deadline = time.time() + 30
                while count < sends and time.time() < deadline:
                    message = consumer.receive(0.5)
                    if message is not None:
                        message.acknowledge()
                        count += 1
                with lock:
                    acked.append(count)

            threads = [threading.Thread(target=drain, args=(c,)) for c in consumers]
            for t in threads:
                t.start()
            session, producer = publisher(broker)
            for i in range(sends):
                producer.send(session.create_text_message(str(i)))
            for t in threads:
                t.join(timeout=35)

            assert acked == [sends] * consumers_count
            assert broker.journal_size == 0
        finally:
            broker.stop()

    def test_send_without_subscribers_leaves_no_journal_entry(self):
        for concurrent_dispatch in (True, False):
            broker = InMemoryBroker(BrokerPolicy(concurrent_store_and_dispatch=concurrent_dispatch))
            broker.start()
            try:
                session, producer = publisher(broker)
                producer.send(session.create_text_message("nobody listening"))

                assert broker.journal_size == 0
            finally:
                broker.stop()

    def test_auto_ack_settles_on_receipt(self, broker):
        _, consumer = subscribe(broker, 0, AckMode.AUTO)
        session, producer = publisher(broker)
        producer.send(session.create_text_message("auto"))

        consumer.receive(1)

        assert broker.journal_size == 0

    def test_client_ack_settles_everything_received(self, broker):
        _, consumer = subscribe(broker, 0, AckMode.CLIENT)
        session, producer = publisher(broker)
        for i in range(3):
            producer.send(session.create_text_message(str(i)))

        received = [consumer.receive(1) for _ in range(3)]
        received[-1].acknowledge()

        assert broker.journal_size == 0

    def test_unacked_messages_redelivered_after_close(self, broker):
        _, consumer = subscribe(broker, 0)
        session, producer = publisher(broker)
        producer.send(session.create_text_message("again"))
        first = consumer.receive(1)

        consumer.close()
        _, replacement = subscribe(broker, 0)
        second = replacement.receive(1)

        assert second.text == "again"
        assert second.message_id == first.message_id
        assert second.redelivered is True

    def test_ack_on_closed_consumer_faults(self, broker):
        _, consumer = subscribe(broker, 0)
        session, producer = publisher(broker)
        producer.send(session.create_text_message("late ack"))
        message = consumer.receive(1)

        consumer.close()

        with pytest.raises(ConnectionFault):
            message.acknowledge()

    def test_transacted_session_unsupported(self, broker):
        connection = broker.connect()

        with pytest.raises(BrokerError):
            connection.create_session(AckMode.TRANSACTED)


class TestPolicies:

    @pytest.mark.parametrize("reduce_memory_footprint", [True, False])
    @pytest.mark.parametrize("concurrent_dispatch", [True, False])
    def test_all_encodings_survive_policy(self, reduce_memory_footprint, concurrent_dispatch):
        broker = InMemoryBroker(BrokerPolicy(reduce_memory_footprint, concurrent_dispatch))
        broker.start()
        try:
            _, consumer = subscribe(broker, 0)
            session, producer = publisher(broker)
            producer.send(session.create_text_message("t"))
            producer.send(session.create_map_message({"text": "m"}))
            producer.send(session.create_object_message("o"))

            text, mapping, obj = (consumer.receive(1) for _ in range(3))

            assert isinstance(text, TextMessage) and text.text == "t"
            assert isinstance(mapping, MapMessage) and mapping.get_string("text") == "m"
            assert isinstance(obj, ObjectMessage) and obj.obj == "o"
            assert broker.journal_size == 3
        finally:
            broker.stop()

    def test_reduce_memory_footprint_rebuilds_messages(self):
        broker = InMemoryBroker(BrokerPolicy(reduce_memory_footprint=True))
        broker.start()
        try:
            _, consumer = subscribe(broker, 0)
            session, producer = publisher(broker)
            original = session.create_map_message({"text": "payload"})
            producer.send(original)

            received = consumer.receive(1)

            assert received is not original
            assert received.mapping is not original.mapping
            assert received.message_id == original.message_id
        finally:
            broker.stop()

    def test_null_text_survives_marshalling(self):
        broker = InMemoryBroker(BrokerPolicy(reduce_memory_footprint=True))
        broker.start()
        try:
            _, consumer = subscribe(broker, 0)
            session, producer = publisher(broker)
            producer.send(session.create_text_message(None))

            assert consumer.receive(1).text is None
        finally:
            broker.stop()


class TestFlowControl:

    def test_full_queue_times_out_send(self):
        broker = InMemoryBroker(max_queue_depth=2, flow_control_timeout=0.05)
        broker.start()
        try:
            _, consumer = subscribe(broker, 0)
            session, producer = publisher(broker)
            producer.send(session.create_text_message("1"))
            producer.send(session.create_text_message("2"))

            with pytest.raises(FlowControlTimeout):
                producer.send(session.create_text_message("3"))

            consumer.receive(1)
            producer.send(session.create_text_message("3"))
            assert broker.queue_depth(QueueNames.consumer_queue(0, TOPIC)) == 2
        finally:
            broker.stop()


class TestDeliveryHook:

    def test_hook_sees_per_queue_delivery_numbers(self):
        calls = []

        def hook(queue_name, delivery_number, message):
            calls.append((queue_name, delivery_number))
            if delivery_number == 2:
                message.text = ""
            return message

        broker = InMemoryBroker(delivery_hook=hook)
        broker.start()
        try:
            _, consumer = subscribe(broker, 0)
            session, producer = publisher(broker)
            for i in range(3):
                producer.send(session.create_text_message(str(i)))

            texts = [consumer.receive(1).text for _ in range(3)]

            assert texts == ["0", "", "2"]
            queue = QueueNames.consumer_queue(0, TOPIC)
            assert calls == [(queue, 1), (queue, 2), (queue, 3)]
        finally:
            broker.stop()


class TestShutdown:

    @pytest.mark.p0
    def test_stop_notifies_listener_and_faults_receive(self):
        broker = InMemoryBroker()
        broker.start()
        connection, session = open_session(broker)
        listener = MagicMock()
        connection.set_exception_listener(listener)
        consumer = session.create_consumer(session.create_queue(QueueNames.consumer_queue(0, TOPIC)))

        broker.stop()

        listener.assert_called_once()
        assert isinstance(listener.call_args[0][0], ConnectionFault)
        with pytest.raises(ConnectionFault):
            consumer.receive(0.1)

    def test_connect_requires_started_broker(self):
        broker = InMemoryBroker()

        with pytest.raises(ConnectionFault):
            broker.connect()

    def test_restart_deletes_old_messages(self):
        broker = InMemoryBroker()
        broker.start()
        _, consumer = subscribe(broker, 0)
        session, producer = publisher(broker)
        producer.send(session.create_text_message("stale"))
        broker.stop()

        broker.start()
        try:
            assert broker.journal_size == 0
            assert broker.queue_names() == []
        finally:
            broker.stop()
