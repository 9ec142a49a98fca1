"""Tests for the log broadcast hub and SSE streaming."""

import json
import threading

import pytest

from phantun_manager.common.exceptions import SubscriberClosed
from phantun_manager.logs import (
    HEARTBEAT_FRAME,
    SYSTEM_PROCESS_ID,
    LogBroadcastHub,
    LogRecord,
    LogStream,
    Subscriber,
    format_event,
    stream_events,
)


def record(content, process_id="client-1"):
    return LogRecord(process_id=process_id, content=content)


class TestSubscriber:
    """Test the bounded per-consumer queue."""

    def test_offer_and_get(self):
        subscriber = Subscriber(maxsize=2)

        assert subscriber.offer(record("one")) is True
        assert subscriber.get(timeout=0.1).content == "one"

    def test_full_queue_drops_record(self):
        subscriber = Subscriber(maxsize=1)
        subscriber.offer(record("one"))

        assert subscriber.offer(record("two")) is False
        assert subscriber.qsize() == 1

    def test_get_times_out(self):
        assert Subscriber().get(timeout=0.01) is None

    def test_close_lets_reader_drain(self):
        subscriber = Subscriber()
        subscriber.offer(record("one"))
        subscriber.offer(record("two"))

        subscriber.close()

        assert [r.content for r in subscriber] == ["one", "two"]
        with pytest.raises(SubscriberClosed):
            subscriber.get(timeout=0.01)

    def test_close_on_full_queue_evicts_oldest(self):
        subscriber = Subscriber(maxsize=2)
        subscriber.offer(record("one"))
        subscriber.offer(record("two"))

        subscriber.close()

        assert [r.content for r in subscriber] == ["two"]

    def test_close_is_idempotent(self):
        subscriber = Subscriber()
        subscriber.close()
        subscriber.close()

        assert subscriber.closed
        assert subscriber.offer(record("late")) is False
        assert list(subscriber) == []

    def test_close_wakes_blocked_reader(self):
        subscriber = Subscriber()
        result = []

        def read():
            result.extend(subscriber)

        reader = threading.Thread(target=read)
        reader.start()
        subscriber.close()
        reader.join(timeout=2)

        assert not reader.is_alive()
        assert result == []


class TestLogBroadcastHub:
    """Test fan-out, replay and backpressure."""

    def test_publish_reaches_every_subscriber(self, hub):
        first = hub.subscribe()
        second = hub.subscribe()

        hub.publish_output("client-1", LogStream.STDERR, "error: handshake\n")

        for subscriber in (first, second):
            received = subscriber.get(timeout=0.1)
            assert received.process_id == "client-1"
            assert received.stream == LogStream.STDERR
            assert received.content == "error: handshake\n"

    def test_publish_system(self, hub):
        published = hub.publish_system("Started client\n")

        assert published.process_id == SYSTEM_PROCESS_ID
        assert published.stream == LogStream.STDOUT

    def test_replay_buffer_is_bounded(self):
        hub = LogBroadcastHub(buffer_size=3)
        for i in range(5):
            hub.publish(record(f"line {i}"))

        assert [r.content for r in hub.replay()] == ["line 2", "line 3", "line 4"]

    def test_new_subscriber_receives_replay(self, hub):
        for i in range(3):
            hub.publish(record(f"line {i}"))

        subscriber = hub.subscribe()

        assert [subscriber.get(timeout=0.1).content for _ in range(3)] == [
            "line 0",
            "line 1",
            "line 2",
        ]

    def test_replay_stops_at_full_queue(self):
        hub = LogBroadcastHub(buffer_size=10, queue_size=2)
        for i in range(5):
            hub.publish(record(f"line {i}"))

        subscriber = hub.subscribe()

        assert subscriber.qsize() == 2
        assert subscriber.get(timeout=0.1).content == "line 0"

    def test_slow_subscriber_misses_records(self):
        hub = LogBroadcastHub(queue_size=2)
        subscriber = hub.subscribe()

        for i in range(3):
            hub.publish(record(f"line {i}"))

        assert [subscriber.get(timeout=0.1).content for _ in range(2)] == ["line 0", "line 1"]
        assert subscriber.get(timeout=0.01) is None
        assert len(hub.replay()) == 3

    def test_stuck_subscriber_does_not_block_publishers(self):
        hub = LogBroadcastHub(queue_size=1)
        hub.subscribe()

        def flood():
            for i in range(1000):
                hub.publish(record(f"line {i}"))

        producer = threading.Thread(target=flood)
        producer.start()
        producer.join(timeout=5)

        assert not producer.is_alive()
        assert hub.replay()[-1].content == "line 999"

    def test_unsubscribe_closes_subscriber(self, hub):
        subscriber = hub.subscribe()

        hub.unsubscribe(subscriber)

        assert hub.subscriber_count == 0
        assert subscriber.closed
        hub.publish(record("after"))
        with pytest.raises(SubscriberClosed):
            subscriber.get(timeout=0.01)

    def test_subscription_context_releases_on_error(self, hub):
        with pytest.raises(RuntimeError):
            with hub.subscription():
                assert hub.subscriber_count == 1
                raise RuntimeError("consumer failed")

        assert hub.subscriber_count == 0


class TestStreamEvents:
    """Test the Server-Sent-Events generator."""

    def test_format_event(self):
        frame = format_event(record("listening\n"))

        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame[len("data: "):])
        assert payload["process_id"] == "client-1"
        assert payload["stream"] == "stdout"
        assert payload["content"] == "listening\n"
        assert "timestamp" in payload

    def test_streams_buffered_records(self, hub):
        hub.publish(record("listening\n"))
        events = stream_events(hub, heartbeat_interval=1.0)

        frame = next(events)
        events.close()

        assert "listening" in frame
        assert hub.subscriber_count == 0

    def test_heartbeat_when_idle(self, hub):
        events = stream_events(hub, heartbeat_interval=0.05)

        assert next(events) == HEARTBEAT_FRAME
        events.close()

        assert hub.subscriber_count == 0

    def test_cancel_ends_stream(self, hub):
        cancelled = threading.Event()
        frames = []

        def consume():
            frames.extend(stream_events(hub, heartbeat_interval=0.05, cancelled=cancelled))

        consumer = threading.Thread(target=consume)
        consumer.start()
        hub.publish(record("listening\n"))
        cancelled.set()
        consumer.join(timeout=5)

        assert not consumer.is_alive()
        assert hub.subscriber_count == 0

    def test_already_cancelled(self, hub):
        cancelled = threading.Event()
        cancelled.set()

        assert list(stream_events(hub, cancelled=cancelled)) == []
        assert hub.subscriber_count == 0
