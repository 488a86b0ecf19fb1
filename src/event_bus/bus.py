"""In-process event bus.

A single publisher fans messages out to any number of subscribers. Each
subscriber owns a small bounded inbox; when it is full the subscriber is
not ready and that message is dropped for it. There is no backlog and no
replay.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from shared.config import EventSettings
from shared.logging import get_logger

from event_bus.messages import parse_message

logger = get_logger(__name__)

# Marks the end of a closed subscription's stream
_CLOSED: Any = object()

StatusProvider = Callable[[], Union[dict[str, Any], Awaitable[dict[str, Any]]]]


class Subscription:
    """A subscriber's inbox."""

    def __init__(self, bus: "EventBus", maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, message: dict[str, Any]) -> bool:
        """Deliver a message if the inbox has room."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def get(self) -> Optional[dict[str, Any]]:
        """Wait for the next message. Returns None once the subscription is closed."""
        message = await self._queue.get()
        return None if message is _CLOSED else message

    def get_nowait(self) -> dict[str, Any]:
        return self._queue.get_nowait()

    def _wake(self) -> None:
        """Unblock a pending ``get()`` after close."""
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> dict[str, Any]:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class EventBus:
    """
    Broadcasts validated messages to subscribers.

    Also runs a heartbeat that re-broadcasts the aggregated sandbox status
    every ``heartbeat_interval`` seconds between ``start()`` and ``stop()``.
    """

    def __init__(self, settings: Optional[EventSettings] = None) -> None:
        self.settings = settings or EventSettings()
        self._subscriptions: list[Subscription] = []
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._status_provider: Optional[StatusProvider] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, buffer: Optional[int] = None) -> Subscription:
        """
        Add a subscriber.

        Args:
            buffer: Inbox size (defaults to ``events.subscriber_buffer``)
        """
        subscription = Subscription(self, buffer or self.settings.subscriber_buffer)
        self._subscriptions.append(subscription)
        logger.debug("Subscriber added", subscribers=len(self._subscriptions))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if not subscription.closed:
            subscription.closed = True
            subscription._wake()
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug("Subscriber removed", subscribers=len(self._subscriptions))

    def broadcast(self, message: Union[BaseModel, dict[str, Any]]) -> int:
        """
        Validate and publish a message.

        Args:
            message: A message model or ``{"type", "payload"}`` mapping

        Returns:
            Number of subscribers that received the message

        Raises:
            ValidationError: If the message is not part of the message set
        """
        validated = parse_message(message)
        data = validated.model_dump(mode="json")

        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.offer(data):
                delivered += 1

        return delivered

    def publish(self, message_type: str, payload: Union[BaseModel, dict[str, Any]]) -> int:
        """Convenience wrapper around ``broadcast`` taking tag and payload."""
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        return self.broadcast({"type": message_type, "payload": payload})

    async def start(self, status_provider: Optional[StatusProvider] = None) -> None:
        """Start the heartbeat."""
        if status_provider is not None:
            self._status_provider = status_provider

        if self._heartbeat_task is not None or self._status_provider is None:
            return

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Event bus heartbeat started", interval=self.settings.heartbeat_interval)

    async def stop(self) -> None:
        """Stop the heartbeat and close all subscriptions."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for subscription in list(self._subscriptions):
            self.unsubscribe(subscription)

        logger.info("Event bus stopped")

    async def heartbeat(self) -> None:
        """Broadcast the current sandbox status once."""
        if self._status_provider is None:
            return

        status = self._status_provider()
        if inspect.isawaitable(status):
            status = await status

        self.publish("sandbox-status-update", status)

    async def _heartbeat_loop(self) -> None:
        while True:
            try:
                await self.heartbeat()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Heartbeat failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.settings.heartbeat_interval)
