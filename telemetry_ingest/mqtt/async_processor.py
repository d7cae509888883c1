"""Async processor: decouples the paho callback from state and alert writes.

Messages are sharded by machine id. Each shard owns a bounded queue and one
worker thread, so one machine's messages are handled in arrival order while
different machines run in parallel. The paho network thread only enqueues;
a full shard drops the message instead of blocking it.
"""

from __future__ import annotations

import logging
import queue
import threading
import zlib
from typing import Callable

from ..domain.models import InboundMessage
from .topics import DEFAULT_TOPIC_PREFIX, shard_key

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_NUM_WORKERS = 4
_POLL_SECONDS = 1.0


class _Shard:
    """One bounded queue drained by one worker thread."""

    def __init__(self, index: int, capacity: int):
        self.index = index
        self.queue: queue.Queue[InboundMessage] = queue.Queue(maxsize=capacity)
        self.thread: threading.Thread | None = None
        self.processed = 0
        self.errors = 0

    def run(self, handle: Callable[[InboundMessage], object], stop: threading.Event, lock: threading.Lock) -> None:
        while not stop.is_set():
            try:
                message = self.queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue

            try:
                handle(message)
            except Exception:
                with lock:
                    self.errors += 1
                logger.exception("[ASYNC_PROC] shard=%d failed topic=%s", self.index, message.topic)
            else:
                with lock:
                    self.processed += 1
            finally:
                self.queue.task_done()


class KeyedAsyncProcessor:
    """Sharded worker pool around a message handler.

    ``max_queue_size`` is the total capacity, split evenly across shards.
    """

    def __init__(
        self,
        handle: Callable[[InboundMessage], object],
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        num_workers: int = DEFAULT_NUM_WORKERS,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
    ):
        if num_workers < 1:
            raise ValueError("num_workers must be >= 1")
        self._handle = handle
        self._prefix = topic_prefix
        capacity = max(1, max_queue_size // num_workers)
        self._shards = [_Shard(i, capacity) for i in range(num_workers)]
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._enqueued = 0
        self._dropped = 0

    @property
    def num_workers(self) -> int:
        return len(self._shards)

    def shard_for(self, topic: str) -> int:
        key = shard_key(topic, self._prefix)
        return zlib.crc32(key.encode("utf-8")) % len(self._shards)

    def start(self) -> None:
        if any(s.thread is not None for s in self._shards):
            return
        self._stop.clear()
        for shard in self._shards:
            shard.thread = threading.Thread(
                target=shard.run,
                args=(self._handle, self._stop, self._lock),
                daemon=True,
                name=f"ingest-shard-{shard.index}",
            )
            shard.thread.start()
        logger.info(
            "[ASYNC_PROC] Started shards=%d capacity_per_shard=%d",
            len(self._shards), self._shards[0].queue.maxsize,
        )

    def stop(self, drain: bool = True) -> None:
        """Stop the workers; with ``drain`` every queued message is handled first."""
        running = [s for s in self._shards if s.thread is not None]
        if drain:
            for shard in running:
                shard.queue.join()
        self._stop.set()
        for shard in running:
            shard.thread.join(timeout=5.0)
            shard.thread = None
        logger.info("[ASYNC_PROC] Stopped. %s", self.metrics)

    def enqueue(self, message: InboundMessage) -> bool:
        """False if the machine's shard is full and the message was dropped."""
        shard = self._shards[self.shard_for(message.topic)]
        try:
            shard.queue.put_nowait(message)
        except queue.Full:
            with self._lock:
                self._dropped += 1
            logger.warning("[ASYNC_PROC] Shard %d full, dropped topic=%s", shard.index, message.topic)
            return False
        with self._lock:
            self._enqueued += 1
        return True

    @property
    def metrics(self) -> dict:
        with self._lock:
            return {
                "workers": len(self._shards),
                "queue_depth": sum(s.queue.qsize() for s in self._shards),
                "queue_max": sum(s.queue.maxsize for s in self._shards),
                "shard_depths": [s.queue.qsize() for s in self._shards],
                "enqueued": self._enqueued,
                "dropped": self._dropped,
                "processed": sum(s.processed for s in self._shards),
                "errors": sum(s.errors for s in self._shards),
            }
