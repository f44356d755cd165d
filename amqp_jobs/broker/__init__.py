"""
Broker module.
Contains the channel client, connection management and envelope codec.
"""

from amqp_jobs.broker.channel import ChannelClient
from amqp_jobs.broker.codec import decode, encode
from amqp_jobs.broker.connection import create_connection

__all__ = [
    "ChannelClient",
    "create_connection",
    "encode",
    "decode",
]
