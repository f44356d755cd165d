"""
Thin client over a single AMQP channel.

One ChannelClient wraps one aio-pika channel. It is shared by the queue and
every job fetched through it, and must only be used from one task at a time;
open one channel per worker instead of sharing a channel across tasks.
"""

import logging
from datetime import timedelta
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, ExchangeType
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from amqp_jobs.constants import CONTENT_TYPE_JSON, DEAD_LETTER_EXCHANGE_TYPE
from amqp_jobs.exceptions import BrokerConnectionError, PreconditionViolation, PublishError
from amqp_jobs.types.job import QueueDescriptor, RawMessage

logger = logging.getLogger(__name__)

# Transport-level failures surfaced as BrokerConnectionError
BROKER_ERRORS: tuple[type[BaseException], ...] = (AMQPError, ChannelInvalidStateError, OSError)


class ChannelClient:
    """
    Publish/fetch/ack wrapper around one broker channel.

    Declarations are idempotent: queues and exchanges are declared with
    fixed parameters and cached, so calling the declare methods repeatedly
    only reaches the broker once per name. Deliveries fetched with
    ``fetch_one`` are remembered until they are acked or rejected.
    """

    def __init__(
        self,
        channel: AbstractChannel,
        connection: AbstractConnection | None = None,
    ):
        """
        Initialize the client.

        Args:
            channel: An open aio-pika channel.
            connection: The connection that owns the channel. When given,
                ``close()`` closes it too.
        """
        self._channel = channel
        self._connection = connection
        self._queues: dict[str, AbstractQueue] = {}
        self._exchanges: dict[str, AbstractExchange] = {}
        self._bindings: set[tuple[str, str, str]] = set()
        self._pending: dict[int, AbstractIncomingMessage] = {}

    @property
    def channel(self) -> AbstractChannel:
        """The underlying aio-pika channel."""
        return self._channel

    @property
    def is_closed(self) -> bool:
        return self._channel.is_closed

    @property
    def pending_deliveries(self) -> list[int]:
        """Delivery tags fetched but not yet acked or rejected."""
        return list(self._pending)

    def _ensure_open(self, operation: str, routing_key: str | None = None) -> None:
        if self._channel.is_closed:
            if operation == "publish":
                raise PublishError("Channel is not connected", routing_key=routing_key)
            raise BrokerConnectionError(f"Cannot {operation}: channel is not connected")

    async def declare_queue(
        self,
        name: str,
        durable: bool,
        arguments: dict[str, Any] | None = None,
    ) -> AbstractQueue:
        """
        Declare a queue.

        Plain queues are cached by name. Queues declared with arguments are
        transient delayed queues and are not cached.

        Args:
            name: Queue name.
            durable: Whether the queue survives a broker restart.
            arguments: Optional x-arguments (dead-lettering, expiry).

        Returns:
            The declared aio-pika queue.
        """
        if arguments is None and name in self._queues:
            return self._queues[name]

        self._ensure_open("declare queue")
        try:
            queue = await self._channel.declare_queue(
                name,
                durable=durable,
                arguments=arguments,
            )
        except BROKER_ERRORS as e:
            raise BrokerConnectionError(f"Failed to declare queue {name!r}: {e}") from e

        if arguments is None:
            self._queues[name] = queue
        logger.debug("Declared queue", extra={"queue": name, "durable": durable})
        return queue

    async def declare(self, descriptor: QueueDescriptor) -> AbstractQueue:
        """Declare a queue from its descriptor."""
        return await self.declare_queue(descriptor.name, descriptor.durable)

    async def declare_dead_letter_exchange(
        self,
        name: str,
        exchange_type: str = DEAD_LETTER_EXCHANGE_TYPE,
        durable: bool = True,
    ) -> AbstractExchange:
        """
        Declare the exchange delayed queues dead-letter into.

        Args:
            name: Exchange name.
            exchange_type: AMQP exchange type, ``direct`` for dead-lettering.
            durable: Whether the exchange survives a broker restart.

        Returns:
            The declared aio-pika exchange.
        """
        if name in self._exchanges:
            return self._exchanges[name]

        self._ensure_open("declare exchange")
        try:
            exchange = await self._channel.declare_exchange(
                name,
                ExchangeType(exchange_type),
                durable=durable,
            )
        except BROKER_ERRORS as e:
            raise BrokerConnectionError(f"Failed to declare exchange {name!r}: {e}") from e

        self._exchanges[name] = exchange
        logger.debug(
            "Declared exchange",
            extra={"exchange": name, "type": exchange_type, "durable": durable},
        )
        return exchange

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        """
        Bind a declared queue to a declared exchange.

        Raises:
            PreconditionViolation: If either side was not declared on this client.
        """
        key = (queue, exchange, routing_key)
        if key in self._bindings:
            return
        if queue not in self._queues or exchange not in self._exchanges:
            raise PreconditionViolation(
                f"Cannot bind {queue!r} to {exchange!r}: declare both first"
            )

        self._ensure_open("bind queue")
        try:
            await self._queues[queue].bind(self._exchanges[exchange], routing_key=routing_key)
        except BROKER_ERRORS as e:
            raise BrokerConnectionError(f"Failed to bind {queue!r} to {exchange!r}: {e}") from e
        self._bindings.add(key)

    async def publish(
        self,
        routing_key: str,
        body: bytes,
        *,
        persistent: bool,
        expiration_ms: int | None = None,
        exchange: str = "",
        message_id: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> None:
        """
        Publish a message.

        Args:
            routing_key: Queue name when publishing to the default exchange.
            body: Message body.
            persistent: Mark the message persistent (delivery mode 2).
            expiration_ms: Per-message TTL in milliseconds.
            exchange: Exchange name; the default exchange when empty.
            message_id: AMQP message id.
            headers: Message headers.

        Raises:
            PublishError: If the channel is closed or the broker call fails.
                The publish is not retried.
        """
        self._ensure_open("publish", routing_key=routing_key)

        message = aio_pika.Message(
            body,
            content_type=CONTENT_TYPE_JSON,
            delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
            expiration=timedelta(milliseconds=expiration_ms) if expiration_ms is not None else None,
            message_id=message_id,
            headers=headers or {},
        )

        if exchange:
            target = self._exchanges.get(exchange)
            if target is None:
                raise PublishError(f"Exchange {exchange!r} was not declared", routing_key=routing_key)
        else:
            target = self._channel.default_exchange

        try:
            await target.publish(message, routing_key=routing_key)
        except BROKER_ERRORS as e:
            raise PublishError(f"Failed to publish to {routing_key!r}: {e}", routing_key=routing_key) from e

    async def fetch_one(self, queue: str) -> RawMessage | None:
        """
        Pop a single message without waiting (``basic.get``).

        Args:
            queue: Queue name.

        Returns:
            The message, or None if the queue is empty. The delivery stays
            pending until ``ack`` or ``reject`` is called with its tag.
        """
        self._ensure_open("fetch")
        try:
            target = self._queues.get(queue)
            if target is None:
                target = await self._channel.get_queue(queue, ensure=True)
            incoming = await target.get(no_ack=False, fail=False)
        except BROKER_ERRORS as e:
            raise BrokerConnectionError(f"Failed to fetch from {queue!r}: {e}") from e

        if incoming is None:
            return None

        self._pending[incoming.delivery_tag] = incoming
        return RawMessage(
            body=incoming.body,
            delivery_tag=incoming.delivery_tag,
            message_id=incoming.message_id,
            headers=dict(incoming.headers or {}),
            handle=incoming,
        )

    def _pending_delivery(self, delivery_tag: int) -> AbstractIncomingMessage:
        incoming = self._pending.get(delivery_tag)
        if incoming is None:
            raise PreconditionViolation(
                f"Delivery {delivery_tag} is unknown or was already settled"
            )
        return incoming

    async def ack(self, delivery_tag: int) -> None:
        """
        Acknowledge a delivery, removing the message from the broker.

        The delivery stays pending if the broker call fails.

        Raises:
            PreconditionViolation: If the tag is unknown or already settled.
            BrokerConnectionError: If the channel is closed or the ack fails.
        """
        incoming = self._pending_delivery(delivery_tag)
        self._ensure_open("ack")
        try:
            await incoming.ack()
        except BROKER_ERRORS as e:
            raise BrokerConnectionError(f"Failed to ack delivery {delivery_tag}: {e}") from e
        del self._pending[delivery_tag]

    async def reject(self, delivery_tag: int, requeue: bool = True) -> None:
        """
        Reject a delivery, returning it to its queue when ``requeue`` is set.

        Raises:
            PreconditionViolation: If the tag is unknown or already settled.
            BrokerConnectionError: If the channel is closed or the reject fails.
        """
        incoming = self._pending_delivery(delivery_tag)
        self._ensure_open("reject")
        try:
            await incoming.reject(requeue=requeue)
        except BROKER_ERRORS as e:
            raise BrokerConnectionError(f"Failed to reject delivery {delivery_tag}: {e}") from e
        del self._pending[delivery_tag]

    async def close(self) -> None:
        """Close the channel, and the connection if this client owns it."""
        if not self._channel.is_closed:
            await self._channel.close()
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._pending.clear()
        logger.info("Broker channel closed")
