"""
Broker connection management.
Opens robust aio-pika connections from connector configuration or settings.
"""

import logging
from collections.abc import Mapping
from typing import Any

import aio_pika
from aio_pika.abc import AbstractRobustConnection

from amqp_jobs.broker.channel import BROKER_ERRORS
from amqp_jobs.config import get_settings
from amqp_jobs.exceptions import BrokerConnectionError

logger = logging.getLogger(__name__)


def resolve_connection_config(config: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """
    Fill in missing connection keys from settings.

    Accepts the connector keys ``host``, ``port``, ``user``, ``pass``,
    ``vhost``, ``queue`` and ``durable``.

    Args:
        config: Partial connector configuration.

    Returns:
        A complete configuration dict.
    """
    resolved = get_settings().connection_config()
    resolved.update({k: v for k, v in (config or {}).items() if v is not None})
    return resolved


async def create_connection(config: Mapping[str, Any] | None = None) -> AbstractRobustConnection:
    """
    Open a robust connection to the broker.

    Args:
        config: Connector configuration; missing keys come from settings.

    Returns:
        AbstractRobustConnection: The open connection.

    Raises:
        BrokerConnectionError: If the broker cannot be reached.
    """
    settings = get_settings()
    resolved = resolve_connection_config(config)

    try:
        connection = await aio_pika.connect_robust(
            host=resolved["host"],
            port=int(resolved["port"]),
            login=resolved["user"],
            password=resolved["pass"],
            virtualhost=resolved["vhost"],
            timeout=settings.rabbitmq_connection_timeout,
            heartbeat=settings.rabbitmq_heartbeat,
        )
    except BROKER_ERRORS as e:
        raise BrokerConnectionError(
            f"Failed to connect to broker at {resolved['host']}:{resolved['port']}: {e}"
        ) from e

    logger.info(
        "Broker connection established",
        extra={"host": resolved["host"], "port": resolved["port"], "vhost": resolved["vhost"]},
    )
    return connection
