"""In-process broker with the same interface as MessageBroker.

Used by tests and by single-process deployments that run without RabbitMQ.
Events are delivered to matching subscribers as soon as they are published,
using AMQP topic matching rules for routing keys.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from .events import BaseEvent, EventType, deserialize_event
from .message_broker import EventHandler

logger = logging.getLogger(__name__)


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic match: "*" is exactly one word, "#" is zero or more words."""
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


@dataclass
class _Consumer:
    binding: str
    handler: EventHandler
    max_retries: int
    name: str


class LocalSubscription:
    """Handle returned by LocalBroker.open_subscription."""

    def __init__(self, broker: "LocalBroker", consumer: _Consumer):
        self._broker = broker
        self._consumer = consumer
        self.routing_key = consumer.binding
        self.closed = False

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self._broker._remove(self._consumer)
        logger.info(f"Closed subscription on {self.routing_key}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class LocalBroker:
    """Delivers events in-process, in publish order."""

    def __init__(self):
        self._consumers: list[_Consumer] = []
        self.dead_letters: list[BaseEvent] = []
        self.connected = False

    async def connect(self):
        self.connected = True
        logger.info("Local broker ready")

    async def disconnect(self):
        self.connected = False
        self._consumers.clear()

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        routing_key = routing_key or event.routing_key()
        # Round-trip through JSON like the real broker so handlers see the same types
        event = deserialize_event(event.model_dump(mode="json"))

        for consumer in list(self._consumers):
            if consumer not in self._consumers:
                continue
            if not topic_matches(consumer.binding, routing_key):
                continue
            await self._deliver(consumer, event)

        logger.debug(f"Published event: {event.event_type.value} (key={routing_key})")

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: EventHandler,
        max_retries: int = 3,
        routing_key: Optional[str] = None,
    ):
        binding = routing_key or f"{event_type.value}.#"
        self._consumers.append(_Consumer(binding, handler, max_retries, queue_name))
        logger.info(f"Subscribed to {binding} on queue {queue_name}")

    async def open_subscription(self, routing_key: str, handler: EventHandler) -> LocalSubscription:
        consumer = _Consumer(routing_key, handler, 0, f"exclusive:{routing_key}")
        self._consumers.append(consumer)
        logger.info(f"Opened subscription on {routing_key}")
        return LocalSubscription(self, consumer)

    def _remove(self, consumer: _Consumer):
        if consumer in self._consumers:
            self._consumers.remove(consumer)

    async def _deliver(self, consumer: _Consumer, event: BaseEvent):
        attempt = 0
        while True:
            try:
                await consumer.handler(event)
                return
            except Exception as e:
                attempt += 1
                logger.error(
                    f"Error processing event {event.event_id} on {consumer.name}: {str(e)}",
                    exc_info=True,
                )
                if attempt > consumer.max_retries:
                    self.dead_letters.append(event)
                    return
