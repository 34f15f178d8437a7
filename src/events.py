"""
Event Streaming - In-memory fan-out of reconciliation outcomes.

The controller publishes one event per finished reconciliation so other
components (status patchers, metrics, tests) can follow what happened to
each Service without polling.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, List, Tuple

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of load balancer events."""

    ENSURED = "ENSURED"
    DELETED = "DELETED"
    FAILED = "FAILED"


@dataclass
class LoadBalancerEvent:
    """Event emitted when a reconciliation of a Service finishes."""

    event_type: EventType
    service_key: str
    load_balancer_name: str
    ingress: List[str] = field(default_factory=list)
    message: str = ""
    # FAILED only: a retry has been scheduled
    retrying: bool = False
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_json(self) -> str:
        return json.dumps(
            {
                "event_type": self.event_type.value,
                "service_key": self.service_key,
                "load_balancer_name": self.load_balancer_name,
                "ingress": self.ingress,
                "message": self.message,
                "retrying": self.retrying,
                "timestamp": self.timestamp,
            }
        )


class EventSubscription:
    """
    Async iterator over the events delivered to one subscriber.

    A ``None`` sentinel ends iteration.
    """

    def __init__(self, queue: asyncio.Queue):
        self._queue = queue

    def __aiter__(self) -> AsyncIterator[LoadBalancerEvent]:
        return self

    async def __anext__(self) -> LoadBalancerEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """
    In-memory fan-out of reconciliation outcomes.

    Each subscriber gets a bounded queue. Publishing never blocks the
    workers: an event for a full queue is dropped with a warning.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    async def publish(self, event: LoadBalancerEvent) -> None:
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event of {event.service_key} "
                    f"for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(self) -> Tuple[str, EventSubscription]:
        """
        Subscribe to every event published from now on.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue
        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Remove a subscriber and end its iteration."""
        queue = self._subscribers.pop(subscriber_id, None)
        if queue is None:
            return
        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            # drop the oldest event to make room for the end marker
            queue.get_nowait()
            queue.put_nowait(None)
        logger.debug(f"Unsubscribed: {subscriber_id}")
