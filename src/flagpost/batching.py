from __future__ import annotations
import time
import logging
import threading
from abc import abstractmethod
from collections import OrderedDict, deque
from collections.abc import Callable, Hashable
from typing import Any, Generic, TypeAlias, TypeVar

from prometheus_client import Counter


logger = logging.getLogger(__name__)


class Timer:
    """
    Decides when the batcher worker wakes up. wait blocks until the event is
    set or the interval elapsed and returns True if the event was set.
    """

    @abstractmethod
    def wait(self, event: threading.Event, interval: float) -> bool: ...


class SystemTimer(Timer):
    def wait(self, event: threading.Event, interval: float) -> bool:
        return event.wait(interval)


_prom_dropped_events = Counter(
    "flagpost_dropped_events_total",
    "Events dropped because the queue was full or the batcher was shut down",
    labelnames=["reason"],
)
_prom_sent_batches = Counter(
    "flagpost_sent_batches_total",
    "Event batches handed to the sender",
    labelnames=["result"],
)


T = TypeVar("T")

BatchSender: TypeAlias = Callable[[list[T]], Any]


class EventBatcher(Generic[T]):
    """
    Queues items and hands them to the sender in batches of at most
    max_batch_size items. A flush happens when the queue holds flush_at items,
    every flush_interval seconds, when flush is called and on shutdown.

    When the queue holds max_queue_size items the oldest item is dropped to
    make room for the new one. A batch whose send raised is dropped; the items
    still queued are sent with the next flush.

    The batcher is thread-safe.
    """

    def __init__(
        self,
        sender: BatchSender[T],
        flush_at: int = 20,
        max_batch_size: int = 100,
        max_queue_size: int = 1000,
        flush_interval: float = 30.0,
        timer: Timer | None = None,
    ):
        if flush_at < 1:
            raise ValueError("flush_at must be at least 1")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        self._sender = sender
        self._flush_at = flush_at
        self._max_batch_size = max_batch_size
        self._max_queue_size = max_queue_size
        self._flush_interval = flush_interval
        self._timer = timer or SystemTimer()

        self._queue_mu = threading.Lock()
        self._queue: deque[T] = deque()
        self._flush_mu = threading.Lock()
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._shutdown = False

        self._worker = threading.Thread(target=self._work, name="flagpost-batcher", daemon=True)
        self._worker.start()

    def __len__(self) -> int:
        with self._queue_mu:
            return len(self._queue)

    def enqueue(self, item: T) -> bool:
        """
        Queue the item. Returns False if the batcher is shut down and the item
        was not queued. Never blocks on the sender.
        """
        with self._queue_mu:
            if self._shutdown:
                logger.warning("Event batcher is shut down, dropping event")
                _prom_dropped_events.labels(reason="shutdown").inc()
                return False
            if len(self._queue) >= self._max_queue_size:
                self._queue.popleft()
                logger.warning("Event queue is full (%d), dropping the oldest event", self._max_queue_size)
                _prom_dropped_events.labels(reason="queue_full").inc()
            self._queue.append(item)
            size = len(self._queue)
        if size >= self._flush_at:
            self._wake.set()
        return True

    def _take_batch(self) -> list[T]:
        with self._queue_mu:
            n = min(len(self._queue), self._max_batch_size)
            return [self._queue.popleft() for _ in range(n)]

    def _drain(self, raise_errors: bool) -> None:
        with self._flush_mu:
            while True:
                batch = self._take_batch()
                if not batch:
                    return
                try:
                    self._sender(batch)
                except Exception:
                    _prom_sent_batches.labels(result="error").inc()
                    if raise_errors:
                        raise
                    logger.exception("Error sending event batch of %d events", len(batch))
                    continue
                _prom_sent_batches.labels(result="ok").inc()
                logger.debug("Sent a batch of %d events", len(batch))

    def flush(self) -> None:
        """
        Send everything queued, in batches. Flushes never run concurrently.
        Raises whatever the sender raised; the failed batch is dropped and
        the remaining items stay queued.
        """
        self._drain(raise_errors=True)

    def _work(self):
        while not self._stopped.is_set():
            self._timer.wait(self._wake, self._flush_interval)
            self._wake.clear()
            if self._stopped.is_set():
                return
            try:
                self.flush()
            except Exception:
                logger.exception("Error sending event batch")

    def shutdown(self) -> None:
        """
        Stop the worker and send everything still queued. A batch that fails to
        send is logged and dropped, the rest is still sent. Items enqueued after
        shutdown are refused. Calling shutdown again does nothing.
        """
        with self._queue_mu:
            if self._shutdown:
                logger.warning("Event batcher is already shut down")
                return
            self._shutdown = True
        self._stopped.set()
        self._wake.set()
        self._worker.join()
        self._drain(raise_errors=False)


class _Entry:
    __slots__ = ("expires_at",)

    def __init__(self, expires_at: float):
        self.expires_at = expires_at


class SentEventDedupeCache:
    """
    Remembers which (actor, flag, value) combinations were already reported so
    that each is reported at most once per process lifetime, bounded by
    size_limit entries and a sliding expiration.

    When the cache is full, expired entries are removed first, then the least
    recently used compaction_percentage of the entries.

    The cache is thread-safe.
    """

    def __init__(
        self,
        size_limit: int = 50_000,
        compaction_percentage: float = 0.2,
        sliding_expiration: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if size_limit < 1:
            raise ValueError("size_limit must be at least 1")
        if not 0 < compaction_percentage <= 1:
            raise ValueError("compaction_percentage must be in (0, 1]")
        self._size_limit = size_limit
        self._compaction_percentage = compaction_percentage
        self._sliding_expiration = sliding_expiration
        self._clock = clock
        self._mu = threading.Lock()
        # Least recently used first.
        self._entries: OrderedDict[Hashable, _Entry] = OrderedDict()

    def __len__(self) -> int:
        with self._mu:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._mu:
            e = self._entries.get(key)
            return e is not None and e.expires_at > self._clock()

    def add(self, key: Hashable) -> bool:
        """
        Record the key. Returns True if it was not already present, meaning
        the caller should report it.
        """
        with self._mu:
            now = self._clock()
            e = self._entries.get(key)
            if e is not None and e.expires_at > now:
                e.expires_at = now + self._sliding_expiration
                self._entries.move_to_end(key)
                return False
            if e is not None:
                del self._entries[key]
            if len(self._entries) >= self._size_limit:
                self._compact(now)
            self._entries[key] = _Entry(now + self._sliding_expiration)
            return True

    def should_capture(self, actor_id: str, flag_key: str, value: Any) -> bool:
        """
        Returns True the first time the actor got this value for the flag.
        """
        return self.add((actor_id, flag_key, value))

    def _compact(self, now: float):
        for k in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[k]
        if len(self._entries) < self._size_limit:
            return
        n = max(1, int(len(self._entries) * self._compaction_percentage))
        for _ in range(n):
            self._entries.popitem(last=False)
        logger.debug("Compacted the sent event cache, evicted %d entries", n)

    def clear(self):
        with self._mu:
            self._entries.clear()
