"""Single update channel for observable per-package processing state.

Background tasks never touch the status map directly: they submit a change
and await it. One consumer task applies changes in submission order and
notifies subscribers, so every observer sees the same sequence.
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from shared.helper.HelperConfig import HelperConfig
from shared.models.mail import BackgroundProcessingStatus

Subscriber = Callable[["StatusEvent"], Awaitable[None] | None]


@dataclass(frozen=True)
class StatusEvent:
    """A status transition. status None means the id was removed from tracking."""

    mail_package_id: str
    status: BackgroundProcessingStatus | None
    at: datetime


class StatusChannel:
    def __init__(self, helper_config: HelperConfig, clock: Callable[[], datetime] | None = None) -> None:
        self.logging = helper_config.get_logger()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._statuses: dict[str, BackgroundProcessingStatus] = {}
        self._subscribers: list[Subscriber] = []
        self._queue: asyncio.Queue | None = None
        self._consumer: asyncio.Task | None = None

    ##########################################
    ################ READERS #################
    ##########################################

    def get(self, mail_package_id: str) -> BackgroundProcessingStatus:
        return self._statuses.get(mail_package_id, BackgroundProcessingStatus.UNKNOWN)

    def snapshot(self) -> dict[str, BackgroundProcessingStatus]:
        return dict(self._statuses)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a callback for every applied transition.

        Returns:
            Callable[[], None]: Removes the subscription.
        """
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    ##########################################
    ################ WRITERS #################
    ##########################################

    async def set_status(self, mail_package_id: str, status: BackgroundProcessingStatus) -> None:
        """Submit a transition and wait until it is applied and published."""
        await self._submit(StatusEvent(mail_package_id, status, self._clock()))

    async def clear(self, mail_package_id: str) -> None:
        """Stop tracking a package; get() falls back to unknown."""
        await self._submit(StatusEvent(mail_package_id, None, self._clock()))

    async def close(self) -> None:
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None
        self._queue = None

    ##########################################
    ############### CONSUMER #################
    ##########################################

    async def _submit(self, event: StatusEvent) -> None:
        self._ensure_consumer()
        applied = asyncio.get_running_loop().create_future()
        await self._queue.put((event, applied))
        await applied

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._queue = asyncio.Queue()
            self._consumer = asyncio.create_task(self._consume(self._queue))

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            event, applied = await queue.get()
            try:
                if event.status is None:
                    self._statuses.pop(event.mail_package_id, None)
                else:
                    self._statuses[event.mail_package_id] = event.status
                await self._publish(event)
            finally:
                if not applied.done():
                    applied.set_result(None)
                queue.task_done()

    async def _publish(self, event: StatusEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logging.exception("Status subscriber failed for package %s", event.mail_package_id)
