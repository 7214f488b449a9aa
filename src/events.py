"""
Event Streaming - In-memory pub/sub for resource change events.

Stores publish an event whenever a Postgresql record or Pod changes. The
controller subscribes to wake reconciliation on change, and the HTTP API
exposes the same stream as Server-Sent Events, similar to the Kubernetes
watch API.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from models import NamespacedName

logger = logging.getLogger(__name__)


def _encode_extra(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"cannot encode {type(value).__name__} in an event payload")


class EventType(Enum):
    """Types of resource events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class ResourceEvent:
    """Event emitted when a resource changes."""

    event_type: EventType
    kind: str
    namespace: str
    name: str
    resource_data: Dict[str, Any]
    timestamp: str

    @property
    def identity(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "resource_data": self.resource_data,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """Render as one Server-Sent Events message named after the event type."""
        payload = json.dumps(self.to_dict(), default=_encode_extra)
        return f"event: {self.event_type.value}\ndata: {payload}\n\n"

    @classmethod
    def from_resource(
        cls,
        event_type: EventType,
        resource: Dict[str, Any],
    ) -> "ResourceEvent":
        """
        Create an event from a serialized resource.

        Secrets in a Postgresql spec are stripped from the payload.

        Args:
            event_type: The type of event.
            resource: Resource dict as produced by ``to_dict()``.

        Returns:
            A new ResourceEvent instance.
        """
        metadata = resource.get("metadata", {})
        data = dict(resource)
        if "password" in (data.get("spec") or {}):
            data["spec"] = {k: v for k, v in data["spec"].items() if k != "password"}
        return cls(
            event_type=event_type,
            kind=resource.get("kind", ""),
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            resource_data=data,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )


EventFilter = Callable[[ResourceEvent], bool]


@dataclass
class _Subscriber:
    queue: asyncio.Queue
    filter_fn: Optional[EventFilter] = None

    def wants(self, event: ResourceEvent) -> bool:
        return self.filter_fn is None or self.filter_fn(event)


class EventSubscription:
    """
    Async iterator over the events delivered to one subscriber.

    Iteration ends when the bus pushes the ``None`` sentinel on unsubscribe.
    """

    def __init__(self, queue: asyncio.Queue):
        self._queue = queue

    def __aiter__(self) -> AsyncIterator[ResourceEvent]:
        return self

    async def __anext__(self) -> ResourceEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """
    In-memory fan-out of resource events.

    Each subscriber has a bounded queue and an optional filter that is
    applied at publish time, so unrelated events never take queue space.
    Publishing never blocks: when a queue is full the event is dropped for
    that subscriber and counted in ``dropped_events``. The controller's
    periodic resync covers anything lost this way.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, _Subscriber] = {}
        self.dropped_events = 0

    async def publish(self, event: ResourceEvent) -> None:
        for subscriber_id, subscriber in list(self._subscribers.items()):
            if not subscriber.wants(event):
                continue
            try:
                subscriber.queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped_events += 1
                logger.warning(
                    f"Subscriber {subscriber_id} is behind, dropped "
                    f"{event.event_type.value} {event.kind} {event.identity}"
                )

    async def subscribe(
        self, filter_fn: Optional[EventFilter] = None
    ) -> Tuple[str, EventSubscription]:
        """
        Register a subscriber.

        Args:
            filter_fn: Optional predicate; only matching events are queued.

        Returns:
            ``(subscriber_id, subscription)``. Pass the id to
            :meth:`unsubscribe` to end the subscription.
        """
        subscriber_id = uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = _Subscriber(queue, filter_fn)
        logger.debug(f"Event subscriber {subscriber_id} registered")
        return subscriber_id, EventSubscription(queue)

    async def unsubscribe(self, subscriber_id: str) -> None:
        subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return
        # Make room for the sentinel so the iterator always terminates
        while subscriber.queue.full():
            subscriber.queue.get_nowait()
        subscriber.queue.put_nowait(None)
        logger.debug(f"Event subscriber {subscriber_id} removed")

    def subscriber_count(self) -> int:
        return len(self._subscribers)
