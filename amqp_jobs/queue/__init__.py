"""
Queue module.
Contains the RabbitMQ queue, the delivered job handle and the connector.
"""

from amqp_jobs.queue.connector import RabbitMQConnector
from amqp_jobs.queue.delay import delay_to_seconds, delayed_queue_name
from amqp_jobs.queue.job import RabbitMQJob
from amqp_jobs.queue.rabbitmq import RabbitMQQueue

__all__ = [
    "RabbitMQQueue",
    "RabbitMQJob",
    "RabbitMQConnector",
    "delay_to_seconds",
    "delayed_queue_name",
]
