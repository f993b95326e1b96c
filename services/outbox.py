"""
Outbox - in-process queue of side effects that follow a write.

Ingestion publishes events ("message.stored", ...) instead of firing
untracked background work. Each subscriber gets its own delivery; a delivery
that fails with a transient error is retried with backoff, anything else is
logged and counted as failed.
"""
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import logging
import uuid

from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import ErrorKind, classify_error
from models.message import utc_now
import config


logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class OutboxEvent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


def _is_transient(exc: BaseException) -> bool:
    return classify_error(exc) == ErrorKind.TRANSIENT


class Outbox:
    """Bounded async queue of events with per-subscriber delivery."""

    def __init__(
        self,
        max_size: int = None,
        max_attempts: int = None,
        retry_delay: float = None,
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        self.max_size = max_size or config.OUTBOX_MAX_SIZE
        self.max_attempts = max_attempts or config.OUTBOX_MAX_ATTEMPTS
        self.retry_delay = retry_delay if retry_delay is not None else config.OUTBOX_RETRY_DELAY
        self._sleep = sleep

        self._queue: Optional[asyncio.Queue] = None
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._task: Optional[asyncio.Task] = None
        self.stats = {"published": 0, "delivered": 0, "retried": 0, "failed": 0, "dropped": 0}

    @property
    def queue(self) -> asyncio.Queue:
        # Created lazily so the queue binds to the running loop
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_size)
        return self._queue

    def subscribe(self, event_type: str, handler: Handler):
        self._handlers[event_type].append(handler)

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        """Queue an event for every subscriber. Returns False if the queue is full."""
        event = OutboxEvent(type=event_type, payload=payload)
        handlers = self._handlers.get(event_type, [])
        for handler in handlers:
            try:
                self.queue.put_nowait((event, handler))
            except asyncio.QueueFull:
                self.stats["dropped"] += 1
                logger.warning("[Outbox] Queue full, dropped %s delivery", event_type)
                return False
        self.stats["published"] += 1
        return True

    def _note_retry(self, retry_state):
        self.stats["retried"] += 1
        logger.warning(
            "[Outbox] Delivery attempt %d failed: %r",
            retry_state.attempt_number, retry_state.outcome.exception()
        )

    async def _deliver(self, event: OutboxEvent, handler: Handler):
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_delay, max=max(self.retry_delay * 8, 0.001)),
                retry=retry_if_exception(_is_transient),
                before_sleep=self._note_retry,
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    await handler(event.payload)
            self.stats["delivered"] += 1
        except Exception as e:
            self.stats["failed"] += 1
            logger.error("[Outbox] %s delivery %s failed: %r", event.type, event.id, e)

    async def process_pending(self) -> int:
        """Deliver everything currently queued. Returns the number of deliveries."""
        processed = 0
        while not self.queue.empty():
            event, handler = self.queue.get_nowait()
            try:
                await self._deliver(event, handler)
            finally:
                self.queue.task_done()
            processed += 1
        return processed

    async def _run(self):
        logger.info("[Outbox] Worker started")
        while True:
            event, handler = await self.queue.get()
            try:
                await self._deliver(event, handler)
            finally:
                self.queue.task_done()

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self, drain: bool = True, timeout: float = 5.0):
        if drain and self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(self.queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("[Outbox] %d deliveries still pending at shutdown", self.queue.qsize())
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if drain:
            await self.process_pending()
        logger.info("[Outbox] Worker stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "pending": self.queue.qsize() if self._queue is not None else 0}
