"""Log broadcasting from supervised processes to live observers.

Every record is appended to a bounded replay buffer and offered to each
subscriber without blocking; a subscriber whose queue is full misses that
record. Log delivery is best-effort and never slows down the producer.
"""

import queue
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .common.exceptions import SubscriberClosed

SYSTEM_PROCESS_ID = "system"
DEFAULT_BUFFER_SIZE = 100
DEFAULT_QUEUE_SIZE = 100
HEARTBEAT_INTERVAL = 15.0
CANCEL_POLL_INTERVAL = 0.5


class LogStream(str, Enum):
    """Which output stream of a process a record came from."""

    STDOUT = "stdout"
    STDERR = "stderr"


class LogRecord(BaseModel):
    """One chunk of process output."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=datetime.now)
    process_id: str = Field(description="Instance identifier or 'system'")
    stream: LogStream = Field(default=LogStream.STDOUT)
    content: str


_CLOSED = object()


class Subscriber:
    """Bounded queue of log records owned by one consumer."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: queue.Queue[object] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    def offer(self, record: LogRecord) -> bool:
        """Enqueue without blocking; returns False if the record was dropped."""
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            return False
        return True

    def close(self) -> None:
        """Close the queue; readers drain what is left, then see the end."""
        if self._closed.is_set():
            return
        self._closed.set()
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except queue.Full:
                # make room for the end marker
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def get(self, timeout: float | None = None) -> LogRecord | None:
        """Wait for the next record.

        Returns:
            The record, or None if ``timeout`` elapsed first

        Raises:
            SubscriberClosed: Once the subscriber is closed and drained
        """
        if self._closed.is_set() and self._queue.empty():
            raise SubscriberClosed("Subscriber is closed")
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            if self._closed.is_set():
                raise SubscriberClosed("Subscriber is closed") from None
            return None
        if item is _CLOSED:
            raise SubscriberClosed("Subscriber is closed")
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[LogRecord]:
        while True:
            try:
                record = self.get()
            except SubscriberClosed:
                return
            if record is not None:
                yield record


class LogBroadcastHub:
    """Fan-out of log records to any number of subscribers."""

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._lock = threading.Lock()
        self._buffer: deque[LogRecord] = deque(maxlen=buffer_size)
        self._subscribers: set[Subscriber] = set()
        self._queue_size = queue_size

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def replay(self) -> list[LogRecord]:
        """Return the buffered records, oldest first."""
        with self._lock:
            return list(self._buffer)

    def publish(self, record: LogRecord) -> None:
        with self._lock:
            self._buffer.append(record)
            for subscriber in self._subscribers:
                subscriber.offer(record)

    def publish_output(self, process_id: str, stream: LogStream, content: str) -> LogRecord:
        record = LogRecord(process_id=process_id, stream=stream, content=content)
        self.publish(record)
        return record

    def publish_system(self, content: str) -> LogRecord:
        return self.publish_output(SYSTEM_PROCESS_ID, LogStream.STDOUT, content)

    def subscribe(self) -> Subscriber:
        """Register a new subscriber, pre-filled with the replay buffer.

        Replay stops at the first record that does not fit; the rest of the
        buffer is skipped for this subscriber.
        """
        subscriber = Subscriber(self._queue_size)
        with self._lock:
            for record in self._buffer:
                if not subscriber.offer(record):
                    break
            self._subscribers.add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.discard(subscriber)
        subscriber.close()

    @contextmanager
    def subscription(self) -> Iterator[Subscriber]:
        subscriber = self.subscribe()
        try:
            yield subscriber
        finally:
            self.unsubscribe(subscriber)


def format_event(record: LogRecord) -> str:
    """Render a record as a Server-Sent-Events data frame."""
    return f"data: {record.model_dump_json()}\n\n"


HEARTBEAT_FRAME = ": heartbeat\n\n"


def stream_events(
    hub: LogBroadcastHub,
    heartbeat_interval: float = HEARTBEAT_INTERVAL,
    cancelled: threading.Event | None = None,
) -> Iterator[str]:
    """Yield SSE frames for one live connection.

    Emits a heartbeat comment whenever no record arrived for
    ``heartbeat_interval`` seconds. Ends when the subscriber is closed or
    ``cancelled`` is set; the subscriber is released on every exit path,
    including the consumer closing the generator.
    """
    poll = min(heartbeat_interval, CANCEL_POLL_INTERVAL)
    with hub.subscription() as subscriber:
        last_sent = time.monotonic()
        while cancelled is None or not cancelled.is_set():
            try:
                record = subscriber.get(timeout=poll)
            except SubscriberClosed:
                return
            if record is not None:
                yield format_event(record)
                last_sent = time.monotonic()
            elif time.monotonic() - last_sent >= heartbeat_interval:
                yield HEARTBEAT_FRAME
                last_sent = time.monotonic()
