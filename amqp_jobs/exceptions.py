"""
Errors raised by the queue driver.

The driver reports errors synchronously and never retries on its own;
retry and backoff policy belongs to the caller (see ``amqp_jobs.worker``).
"""


class JobQueueError(Exception):
    """Base class for all driver errors."""


class BrokerConnectionError(JobQueueError, ConnectionError):
    """The broker is unreachable or the transport failed mid-operation."""


class PublishError(BrokerConnectionError):
    """A message could not be handed to the broker."""

    def __init__(self, message: str, routing_key: str | None = None):
        super().__init__(message)
        self.routing_key = routing_key


class MalformedPayload(JobQueueError, ValueError):
    """A message body is not a valid job envelope."""

    def __init__(self, message: str, body: bytes = b""):
        super().__init__(message)
        self.body = body


class PreconditionViolation(JobQueueError, RuntimeError):
    """A job was settled twice, or not at all, or an unknown delivery was acked."""
