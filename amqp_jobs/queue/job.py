"""
Delivered job handle.

A RabbitMQJob ties one decoded envelope to the broker delivery it came in
on. It is settled exactly once, either by ``delete``/``ack`` or by
``release``; settling twice raises PreconditionViolation.
"""

import logging
from typing import TYPE_CHECKING, Any

from amqp_jobs.constants import SPAN_ACK_JOB, SPAN_RELEASE_JOB, JobState
from amqp_jobs.exceptions import PreconditionViolation
from amqp_jobs.observability.tracing import get_tracer
from amqp_jobs.queue.delay import Delay, delay_to_milliseconds
from amqp_jobs.types.job import HandlerResolver, JobEnvelope, RawMessage

if TYPE_CHECKING:
    from amqp_jobs.queue.rabbitmq import RabbitMQQueue


class RabbitMQJob:
    """
    One in-flight job.

    State transitions:
    - DELIVERED -> ACKED via ``delete()`` / ``ack()``
    - DELIVERED -> RELEASED via ``release(delay)``
    """

    def __init__(
        self,
        queue: "RabbitMQQueue",
        raw: RawMessage,
        envelope: JobEnvelope,
        queue_name: str,
        resolver: HandlerResolver | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the job.

        Args:
            queue: The queue the job was popped through; releases republish
                through it on the same channel.
            raw: The raw delivery.
            envelope: The decoded envelope.
            queue_name: The queue the job was popped from.
            resolver: Maps the job name to a handler for ``fire``.
            logger: Logger; defaults to this module's logger.
        """
        self._queue = queue
        self._raw = raw
        self._envelope = envelope
        self._queue_name = queue_name
        self._resolver = resolver
        self._logger = logger or logging.getLogger(__name__)
        self._state = JobState.DELIVERED

    def __repr__(self) -> str:
        return (
            f"RabbitMQJob(job={self.job_name!r}, queue={self._queue_name!r}, "
            f"attempts={self.attempts()}, state={self._state.value})"
        )

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def is_settled(self) -> bool:
        """True once the job was deleted or released."""
        return self._state is not JobState.DELIVERED

    @property
    def job_name(self) -> str:
        return self._envelope.job

    @property
    def data(self) -> Any:
        return self._envelope.data

    @property
    def envelope(self) -> JobEnvelope:
        return self._envelope

    @property
    def job_id(self) -> str | None:
        """The AMQP message id, kept across releases."""
        return self._raw.message_id

    @property
    def delivery_tag(self) -> int:
        return self._raw.delivery_tag

    @property
    def raw_body(self) -> bytes:
        return self._raw.body

    @property
    def queue(self) -> str:
        """Name of the queue the job was popped from."""
        return self._queue_name

    def attempts(self) -> int:
        """Number of times the job has been released so far."""
        return self._envelope.attempts

    def ensure_delivered(self) -> None:
        """
        Raises:
            PreconditionViolation: If the job was already settled.
        """
        if self._state is not JobState.DELIVERED:
            raise PreconditionViolation(
                f"Job {self.job_name!r} (delivery {self.delivery_tag}) was already {self._state.value}"
            )

    def ensure_settled(self) -> None:
        """
        Raises:
            PreconditionViolation: If the job was neither deleted nor released.
        """
        if self._state is JobState.DELIVERED:
            raise PreconditionViolation(
                f"Job {self.job_name!r} (delivery {self.delivery_tag}) was neither deleted nor released"
            )

    async def fire(self) -> None:
        """
        Run the handler registered for this job's name.

        A job whose name resolves to no handler is logged and deleted.
        """
        handler = self._resolver.resolve(self.job_name) if self._resolver else None
        if handler is None:
            self._logger.error(
                "Queued job does not have a valid target",
                extra={"job": self.job_name, "queue": self._queue_name, "job_id": self.job_id},
            )
            await self.delete()
            return

        await handler.handle(self, self.data)

    async def delete(self) -> None:
        """
        Delete the job from the queue by acking its delivery.

        Raises:
            PreconditionViolation: If the job was already settled.
        """
        self.ensure_delivered()
        with get_tracer().start_as_current_span(SPAN_ACK_JOB) as span:
            span.set_attribute("queue", self._queue_name)
            span.set_attribute("job", self.job_name)
            await self._queue.channel.ack(self.delivery_tag)
        self._state = JobState.ACKED
        self._queue.metrics.record_job_acked(self._queue_name)

    ack = delete

    async def release(self, delay: Delay = 0) -> None:
        """
        Release the job back onto its queue with one more attempt.

        The job is republished to the queue it came from, immediately or
        after ``delay``, and only then is the original delivery acked, so
        exactly one live copy of the job remains.

        Args:
            delay: Seconds, a timedelta, or the datetime the retry is due.

        Raises:
            PreconditionViolation: If the job was already settled.
        """
        self.ensure_delivered()
        attempts = self.attempts() + 1
        delay_ms = delay_to_milliseconds(delay)

        with get_tracer().start_as_current_span(SPAN_RELEASE_JOB) as span:
            span.set_attribute("queue", self._queue_name)
            span.set_attribute("job", self.job_name)
            span.set_attribute("attempts", attempts)

            await self._queue.later_job(
                delay_ms / 1000,
                self.job_name,
                self.data,
                attempts,
                self._queue_name,
                message_id=self.job_id,
            )
            await self._queue.channel.ack(self.delivery_tag)

        self._state = JobState.RELEASED
        self._queue.metrics.record_job_released(self._queue_name, delayed=delay_ms > 0)
        self._logger.info(
            "Job released",
            extra={
                "job": self.job_name,
                "queue": self._queue_name,
                "attempts": attempts,
                "delay_ms": delay_ms,
                "job_id": self.job_id,
            },
        )
