"""
In-process notification queue.

Producers (rule runs, batch email actions) enqueue events and return
immediately. A background worker drains the queue and hands each event
to a sender coroutine, retrying with backoff. Delivery problems are
logged and kept in ``failed``; they never reach the producer.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from windbill.config import get_settings
from windbill.infrastructure.database import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """An event waiting for delivery."""
    event: str
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    last_error: str | None = None


Sender = Callable[[Notification], Awaitable[None]]


async def log_sender(notification: Notification) -> None:
    """Default sender: transport is external, so just log the event."""
    logger.info(f"Notification {notification.event}: {notification.payload}")


class NotificationQueue:
    """
    Fire-and-forget queue with a single background worker.

    Example:
        queue = NotificationQueue()
        queue.start()
        queue.enqueue("billing_rule.executed", {"ruleId": rule_id})
        await queue.stop()
    """

    def __init__(
        self,
        sender: Sender | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        maxsize: int = 1000,
    ) -> None:
        settings = get_settings()
        self.sender = sender or log_sender
        self.max_attempts = max_attempts or settings.notification_max_attempts
        self.retry_delay = settings.notification_retry_delay if retry_delay is None else retry_delay
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task | None = None
        self.delivered = 0
        self.failed: list[Notification] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def enqueue(self, event: str, payload: dict[str, Any]) -> bool:
        """
        Queue an event for delivery.

        Returns:
            False if the queue is full and the event was dropped
        """
        notification = Notification(event=event, payload=payload)
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            logger.error(f"Notification queue full, dropping {event}")
            self.failed.append(notification)
            return False
        return True

    def start(self) -> None:
        """Start the background worker on the running loop."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="notification-worker")
        logger.info("Notification worker started")

    async def stop(self) -> None:
        """Deliver what is queued, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info(f"Notification worker stopped ({self.delivered} delivered, {len(self.failed)} failed)")

    async def drain(self) -> None:
        """Deliver every queued event on the current task, without a worker."""
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: Notification) -> None:
        while notification.attempts < self.max_attempts:
            notification.attempts += 1
            try:
                await self.sender(notification)
                self.delivered += 1
                return
            except Exception as e:
                notification.last_error = str(e)
                logger.warning(
                    f"Delivery of {notification.event} failed "
                    f"(attempt {notification.attempts}/{self.max_attempts}): {e}"
                )
                if notification.attempts < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * (2 ** (notification.attempts - 1)))

        logger.error(f"Giving up on {notification.event} after {notification.attempts} attempts")
        self.failed.append(notification)
