"""In-process event bus with per-key ordering and at-least-once delivery.

Events are sharded onto a fixed number of bounded queues by a stable hash of
their key, and each queue is drained by a single worker task. Events sharing a
key (a request id) are therefore handled in publish order; events with
different keys may interleave. Every subscriber of an event type receives the
event concurrently with the others, with its own retry budget; deliveries that
still fail are handed to the dead-letter sink.
"""

import asyncio
import inspect
import logging
import threading
import zlib
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from tenacity import AsyncRetrying, before_sleep_log, stop_after_attempt, wait_exponential

from costgate.core.events import Event, EventType, describe_payload
from costgate.core.models import DeadLetter

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Union[None, Awaitable[None]]]
DeadLetterSink = Callable[[DeadLetter], Any]

BUS_CONSUMER = "event-bus"


class EventDeliveryFailed(Exception):
    """A consumer kept failing on an event after every retry."""

    def __init__(self, consumer: str, event: Event, attempts: int, error: BaseException):
        self.consumer = consumer
        self.event = event
        self.attempts = attempts
        self.error = error
        super().__init__(
            f"{consumer} failed on {event.event_type.value} [{event.key}] after "
            f"{attempts} attempt(s): {error!r}"
        )


@dataclass(frozen=True)
class Subscription:
    event_type: EventType
    name: str
    handler: Handler


class EventBus:
    """Sharded asyncio queues drained by one worker per shard."""

    def __init__(
        self,
        shards: int = 4,
        max_queue_size: int = 10_000,
        max_attempts: int = 3,
        backoff_min_seconds: float = 0.1,
        backoff_max_seconds: float = 5.0,
        dead_letter_sink: Optional[DeadLetterSink] = None,
        keep_dead_letters: int = 100,
    ):
        """Initialize the bus.

        Args:
            shards: Number of ordered queues (and worker tasks)
            max_queue_size: Capacity of each queue; 0 means unbounded
            max_attempts: Delivery attempts per (consumer, event)
            backoff_min_seconds: First retry delay; doubles up to ``backoff_max_seconds``
            backoff_max_seconds: Upper bound of the retry delay
            dead_letter_sink: Called with each DeadLetter (sync or async)
            keep_dead_letters: How many recent dead letters to keep in memory
        """
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.shards = shards
        self.max_queue_size = max_queue_size
        self.max_attempts = max_attempts
        self.backoff_min_seconds = backoff_min_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.dead_letter_sink = dead_letter_sink
        self.dead_letters: Deque[DeadLetter] = deque(maxlen=keep_dead_letters)

        self._subscriptions: Dict[EventType, List[Subscription]] = defaultdict(list)
        self._queues: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._inflight = 0
        self._inflight_lock = threading.Lock()

        self.published = 0
        self.delivered = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def subscribe(self, event_type: EventType, handler: Handler, name: Optional[str] = None) -> None:
        """Register a consumer. ``name`` identifies it in logs and dead letters."""
        name = name or getattr(handler, "__qualname__", repr(handler))
        self._subscriptions[EventType(event_type)].append(Subscription(event_type, name, handler))

    def subscribers(self, event_type: EventType) -> List[str]:
        return [sub.name for sub in self._subscriptions.get(EventType(event_type), [])]

    def shard_for(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % self.shards

    def publish(self, event_type: EventType, payload: Any, key: str) -> Event:
        """Enqueue an event and return immediately.

        Safe to call from the loop thread or from any other thread.

        Raises:
            RuntimeError: If the bus has not been started.
        """
        if self._loop is None:
            raise RuntimeError("EventBus is not running; call start() first")

        event = Event(event_type=EventType(event_type), key=key, payload=payload)
        with self._inflight_lock:
            self._inflight += 1
            self.published += 1

        if threading.get_ident() == self._loop_thread:
            self._enqueue(event)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, event)
        return event

    async def start(self) -> None:
        """Create the queues and worker tasks on the running loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._queues = [asyncio.Queue(maxsize=self.max_queue_size) for _ in range(self.shards)]
        self._workers = [
            asyncio.create_task(self._worker(queue), name=f"costgate-bus-{index}")
            for index, queue in enumerate(self._queues)
        ]
        logger.info("Event bus started with %d shard(s)", self.shards)

    async def join(self, poll_interval: float = 0.005) -> None:
        """Wait until every published event has been handled or dead-lettered."""
        while self._inflight:
            await asyncio.sleep(poll_interval)

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers, by default after draining what is already queued."""
        if not self.running:
            return
        if drain:
            await self.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._loop = None
        logger.info(
            "Event bus stopped (published=%d delivered=%d failed=%d)",
            self.published, self.delivered, self.failed,
        )

    def _enqueue(self, event: Event) -> None:
        queue = self._queues[self.shard_for(event.key)]
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            error = RuntimeError(f"queue full ({self.max_queue_size} events)")
            task = asyncio.ensure_future(self._dead_letter(BUS_CONSUMER, event, 0, error))
            task.add_done_callback(lambda _: self._done())

    def _done(self) -> None:
        with self._inflight_lock:
            self._inflight -= 1

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                subscriptions = self._subscriptions.get(event.event_type, [])
                await asyncio.gather(*(self._deliver(sub, event) for sub in subscriptions))
            finally:
                queue.task_done()
                self._done()

    async def _deliver(self, subscription: Subscription, event: Event) -> None:
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(
                    multiplier=self.backoff_min_seconds,
                    min=self.backoff_min_seconds,
                    max=self.backoff_max_seconds,
                ),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self._invoke(subscription.handler, event)
            self.delivered += 1
        except Exception as e:
            await self._dead_letter(subscription.name, event, attempts, e)

    async def _invoke(self, handler: Handler, event: Event) -> None:
        if inspect.iscoroutinefunction(handler):
            await handler(event)
        else:
            await asyncio.to_thread(handler, event)

    async def _dead_letter(self, consumer: str, event: Event, attempts: int, error: BaseException) -> None:
        self.failed += 1
        failure = EventDeliveryFailed(consumer, event, attempts, error)
        logger.error("Dead-lettering event %s: %s", event.event_id, failure)

        dead_letter = DeadLetter(
            event_type=event.event_type.value,
            key=event.key,
            consumer=consumer,
            error=repr(error),
            attempts=attempts,
            payload=describe_payload(event.payload),
            event_id=event.event_id,
        )
        self.dead_letters.append(dead_letter)

        if self.dead_letter_sink is None:
            return
        try:
            if inspect.iscoroutinefunction(self.dead_letter_sink):
                await self.dead_letter_sink(dead_letter)
            else:
                await asyncio.to_thread(self.dead_letter_sink, dead_letter)
        except Exception:
            logger.exception("Could not persist dead letter for event %s", event.event_id)
