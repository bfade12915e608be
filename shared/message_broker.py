"""Message broker abstraction for RabbitMQ."""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import BaseEvent, EventType, deserialize_event

logger = logging.getLogger(__name__)

EventHandler = Callable[[BaseEvent], Awaitable[Any]]

EXCHANGE_NAME = "marketplace_events"
DEAD_LETTER_EXCHANGE_NAME = "marketplace_events_dlx"


def _uuid_converter(obj):
    if isinstance(obj, UUID):
        return str(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


class BrokerSubscription:
    """Handle for a consumer on an exclusive queue; closing it stops delivery."""

    def __init__(self, queue: AbstractQueue, consumer_tag: str, routing_key: str):
        self.queue = queue
        self.consumer_tag = consumer_tag
        self.routing_key = routing_key
        self.closed = False

    async def close(self):
        """Cancel the consumer. The auto-delete queue goes away with it."""
        if self.closed:
            return
        self.closed = True
        await self.queue.cancel(self.consumer_tag)
        logger.info(f"Closed subscription on {self.routing_key}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class MessageBroker:
    """RabbitMQ message broker for the marketplace change feed."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None
        self.dead_letter_exchange: Optional[AbstractExchange] = None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10)
    )
    async def connect(self):
        """Establish connection to RabbitMQ."""
        logger.info("Connecting to RabbitMQ...")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()

        await self.channel.set_qos(prefetch_count=1)

        self.exchange = await self.channel.declare_exchange(
            EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )

        self.dead_letter_exchange = await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )

        await self.channel.declare_queue(
            "dead_letter_queue",
            durable=True,
            arguments={
                "x-queue-type": "quorum"
            }
        )

        logger.info("Connected to RabbitMQ successfully")

    async def disconnect(self):
        """Close connection to RabbitMQ."""
        if self.connection:
            await self.connection.close()
            logger.info("Disconnected from RabbitMQ")

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        """
        Publish an event to the message broker.

        Args:
            event: The event to publish
            routing_key: Optional routing key (defaults to the event's own key)
        """
        if not self.exchange:
            raise RuntimeError("Message broker not connected")

        routing_key = routing_key or event.routing_key()

        event_data = event.model_dump(mode='json')
        message_body = json.dumps(event_data, default=_uuid_converter)

        message = Message(
            body=message_body.encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers={
                "event_type": event.event_type.value,
                "event_id": str(event.event_id),
                "correlation_id": str(event.correlation_id),
                "version": event.version
            }
        )

        await self.exchange.publish(message, routing_key=routing_key)

        logger.info(
            f"Published event: {event.event_type.value} "
            f"(id={event.event_id}, key={routing_key})"
        )

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: EventHandler,
        max_retries: int = 3,
        routing_key: Optional[str] = None,
    ):
        """
        Subscribe a durable service queue to events of a specific type.

        Args:
            event_type: Type of event to subscribe to
            queue_name: Name of the queue to consume from
            handler: Async function to handle the event
            max_retries: Maximum number of retries before sending to DLQ
            routing_key: Binding pattern (defaults to "<event_type>.#")
        """
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        binding = routing_key or f"{event_type.value}.#"

        queue = await self.channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE_NAME,
                "x-dead-letter-routing-key": f"dlq.{event_type.value}",
                "x-queue-type": "quorum"
            }
        )

        await queue.bind(self.exchange, routing_key=binding)

        logger.info(f"Subscribed to {binding} on queue {queue_name}")

        async def process_message(message: aio_pika.IncomingMessage):
            async with message.process(requeue=False):
                retry_count = 0
                if message.headers and "x-retry-count" in message.headers:
                    retry_count = int(message.headers["x-retry-count"])

                try:
                    event = deserialize_event(json.loads(message.body.decode()))

                    logger.info(
                        f"Processing event: {event.event_type.value} "
                        f"(id={event.event_id}, retry={retry_count})"
                    )

                    await handler(event)

                except Exception as e:
                    logger.error(f"Error processing event: {str(e)}", exc_info=True)

                    retry_count += 1

                    if retry_count > max_retries:
                        logger.error(
                            f"Max retries exceeded for event {message.headers.get('event_id')}. "
                            "Sending to dead letter queue."
                        )
                        # Rejected without requeue, the queue dead-letters it
                        raise

                    logger.info(f"Retrying event (attempt {retry_count}/{max_retries})")

                    headers = dict(message.headers) if message.headers else {}
                    headers["x-retry-count"] = retry_count

                    retry_message = Message(
                        body=message.body,
                        delivery_mode=DeliveryMode.PERSISTENT,
                        content_type=message.content_type,
                        headers=headers
                    )

                    await asyncio.sleep(min(2 ** retry_count, 60))

                    await self.exchange.publish(
                        retry_message,
                        routing_key=message.routing_key or binding
                    )

        await queue.consume(process_message)

    async def open_subscription(self, routing_key: str, handler: EventHandler) -> BrokerSubscription:
        """
        Open a private, short-lived subscription bound to one routing key.

        Used by per-courier sessions. The queue is exclusive to this connection
        and removed by the server once the consumer is cancelled.
        """
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        queue = await self.channel.declare_queue(exclusive=True, auto_delete=True)
        await queue.bind(self.exchange, routing_key=routing_key)

        async def process_message(message: aio_pika.IncomingMessage):
            async with message.process(requeue=False):
                try:
                    event = deserialize_event(json.loads(message.body.decode()))
                    await handler(event)
                except Exception as e:
                    # Live feed only: a dropped row is picked up again on the next load
                    logger.error(f"Error handling live event on {routing_key}: {str(e)}", exc_info=True)

        consumer_tag = await queue.consume(process_message)

        logger.info(f"Opened subscription on {routing_key}")

        return BrokerSubscription(queue, consumer_tag, routing_key)
