"""
Queue connector.

Builds a RabbitMQQueue from the connection configuration the surrounding
application hands over: ``{host, port, user, pass, queue, durable}``.
"""

import logging
from collections.abc import Mapping
from typing import Any

from amqp_jobs.broker.channel import BROKER_ERRORS, ChannelClient
from amqp_jobs.broker.connection import create_connection, resolve_connection_config
from amqp_jobs.exceptions import BrokerConnectionError
from amqp_jobs.queue.rabbitmq import RabbitMQQueue
from amqp_jobs.types.job import HandlerResolver

logger = logging.getLogger(__name__)


class RabbitMQConnector:
    """Opens a connection and one channel, and wraps them in a queue."""

    def __init__(self, resolver: HandlerResolver | None = None):
        """
        Initialize the connector.

        Args:
            resolver: Handler resolver passed on to every queue it creates.
        """
        self.resolver = resolver

    async def connect(self, config: Mapping[str, Any] | None = None, **queue_options: Any) -> RabbitMQQueue:
        """
        Establish a queue connection.

        Args:
            config: Connection configuration; missing keys come from settings.
            **queue_options: Extra keyword arguments for RabbitMQQueue.

        Returns:
            RabbitMQQueue: A queue owning its connection; ``close()`` it when done.

        Raises:
            BrokerConnectionError: If the broker cannot be reached.
        """
        resolved = resolve_connection_config(config)
        connection = await create_connection(resolved)
        try:
            channel = await connection.channel()
        except BROKER_ERRORS as e:
            await connection.close()
            raise BrokerConnectionError(f"Failed to open channel: {e}") from e

        queue_options.setdefault("resolver", self.resolver)
        queue = RabbitMQQueue(
            ChannelClient(channel, connection=connection),
            default_queue=resolved["queue"],
            durable=bool(resolved["durable"]),
            **queue_options,
        )
        logger.info(
            "Queue connected",
            extra={"queue": queue.default_queue, "durable": queue.durable},
        )
        return queue
