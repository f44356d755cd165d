"""
RabbitMQ-backed job queue.

Immediate jobs are published straight to their queue. Delayed jobs are
parked in a transient queue of their own whose single message carries a
per-message TTL; when the TTL runs out the broker dead-letters the message
through a direct exchange back onto the target queue. The broker is the
timer: there is no scheduler process and no promotion loop.
"""

import logging
import uuid
from typing import Any

from amqp_jobs.broker.channel import ChannelClient
from amqp_jobs.broker.codec import decode, encode
from amqp_jobs.config import get_settings
from amqp_jobs.constants import (
    ARG_DEAD_LETTER_EXCHANGE,
    ARG_DEAD_LETTER_ROUTING_KEY,
    ARG_QUEUE_EXPIRES,
    DEAD_LETTER_EXCHANGE_TYPE,
    HEADER_FAILED_REASON,
    HEADER_ORIGINAL_QUEUE,
    SPAN_LATER_JOB,
    SPAN_POP_JOB,
    SPAN_PUSH_JOB,
)
from amqp_jobs.exceptions import MalformedPayload
from amqp_jobs.observability.metrics import MetricsCollector, get_metrics
from amqp_jobs.observability.tracing import get_tracer
from amqp_jobs.queue.delay import Delay, delay_to_milliseconds, delayed_queue_name
from amqp_jobs.queue.job import RabbitMQJob
from amqp_jobs.types.job import HandlerResolver, QueueDescriptor, RawMessage


class RabbitMQQueue:
    """
    Job queue on top of one broker channel.

    Caller-facing API: ``push``, ``later`` and ``pop``. Popped jobs are
    settled through the returned ``RabbitMQJob``.
    """

    def __init__(
        self,
        channel: ChannelClient,
        default_queue: str | None = None,
        durable: bool | None = None,
        dead_letter_exchange: str | None = None,
        dead_letter_exchange_durable: bool | None = None,
        delayed_queue_expiry_grace_ms: int | None = None,
        failed_queue: str | None = None,
        resolver: HandlerResolver | None = None,
        logger: logging.Logger | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the queue.

        Args:
            channel: Channel client shared with every job popped here.
            default_queue: Queue used when an operation names none.
            durable: Declare queues durable and publish persistent messages.
            dead_letter_exchange: Direct exchange delayed queues expire into.
            dead_letter_exchange_durable: Durability of that exchange; follows
                ``durable`` when unset. It must match how any other producer
                on the broker declares the exchange.
            delayed_queue_expiry_grace_ms: How long an emptied delayed queue
                may linger after its message's TTL before the broker drops it.
            failed_queue: Where malformed and exhausted jobs are parked.
                Pass an empty string to disable parking.
            resolver: Maps job names to handlers for ``RabbitMQJob.fire``.
            logger: Logger; defaults to this module's logger.
            metrics: Metrics collector; defaults to the process-wide one.
        """
        settings = get_settings()

        self.channel = channel
        self.default_queue = default_queue or settings.rabbitmq_queue
        self.durable = settings.rabbitmq_durable if durable is None else durable
        self.dead_letter_exchange = dead_letter_exchange or settings.rabbitmq_dead_letter_exchange
        if dead_letter_exchange_durable is None:
            dead_letter_exchange_durable = settings.rabbitmq_dead_letter_exchange_durable
        self.dead_letter_exchange_durable = (
            self.durable if dead_letter_exchange_durable is None else dead_letter_exchange_durable
        )
        self.delayed_queue_expiry_grace_ms = (
            settings.rabbitmq_delayed_queue_expiry_grace_ms
            if delayed_queue_expiry_grace_ms is None
            else delayed_queue_expiry_grace_ms
        )
        self.failed_queue = settings.rabbitmq_failed_queue if failed_queue is None else failed_queue
        self.resolver = resolver
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics or get_metrics()

    def get_queue(self, queue: str | None = None) -> str:
        """Return ``queue``, or the default queue when it is empty."""
        return queue or self.default_queue

    def descriptor(self, queue: str | None = None) -> QueueDescriptor:
        return QueueDescriptor(name=self.get_queue(queue), durable=self.durable)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def push(self, job: str, data: Any = "", queue: str | None = None) -> str:
        """
        Push a new job onto the queue.

        Args:
            job: Job name handlers are resolved by.
            data: JSON-representable payload.
            queue: Target queue; the default queue when omitted.

        Returns:
            The message id assigned to the job.
        """
        return await self.push_job(job, data, 0, queue)

    async def push_job(
        self,
        job: str,
        data: Any = "",
        attempts: int = 0,
        queue: str | None = None,
        message_id: str | None = None,
    ) -> str:
        """
        Push a job carrying an explicit attempt count.

        Used directly when a job is released, so the attempt count survives
        the republish.
        """
        name = self.get_queue(queue)
        message_id = message_id or uuid.uuid4().hex

        with get_tracer().start_as_current_span(SPAN_PUSH_JOB) as span:
            span.set_attribute("queue", name)
            span.set_attribute("job", job)
            span.set_attribute("attempts", attempts)

            await self.channel.declare(self.descriptor(name))
            await self.push_raw(encode(job, data, attempts), name, {"message_id": message_id})

        self.metrics.record_job_pushed(name, delayed=False)
        self.logger.debug(
            "Job pushed",
            extra={"queue": name, "job": job, "attempts": attempts, "job_id": message_id},
        )
        return message_id

    async def push_raw(
        self,
        payload: bytes | str,
        queue: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        """
        Publish an already encoded payload.

        Args:
            payload: Message body.
            queue: Target queue; the default queue when omitted.
            options: Extra message properties: ``message_id``, ``headers``.
        """
        body = payload.encode("utf-8") if isinstance(payload, str) else payload
        options = options or {}
        await self.channel.publish(
            self.get_queue(queue),
            body,
            persistent=self.durable,
            message_id=options.get("message_id"),
            headers=options.get("headers"),
        )

    # ------------------------------------------------------------------
    # Delayed dispatch
    # ------------------------------------------------------------------

    async def later(
        self,
        delay: Delay,
        job: str,
        data: Any = "",
        queue: str | None = None,
    ) -> str:
        """
        Push a new job onto the queue after a delay.

        Args:
            delay: Seconds, a timedelta, or the datetime the job becomes due.
            job: Job name handlers are resolved by.
            data: JSON-representable payload.
            queue: Target queue; the default queue when omitted.

        Returns:
            The message id assigned to the job.
        """
        return await self.later_job(delay, job, data, 0, queue)

    async def later_job(
        self,
        delay: Delay,
        job: str,
        data: Any = "",
        attempts: int = 0,
        queue: str | None = None,
        message_id: str | None = None,
    ) -> str:
        """
        Push a job carrying an explicit attempt count after a delay.

        A zero delay publishes immediately and keeps ``attempts`` as given.
        """
        delay_ms = delay_to_milliseconds(delay)
        if delay_ms == 0:
            return await self.push_job(job, data, attempts, queue, message_id)

        target = self.get_queue(queue)
        message_id = message_id or uuid.uuid4().hex
        holding_queue = delayed_queue_name(target)

        with get_tracer().start_as_current_span(SPAN_LATER_JOB) as span:
            span.set_attribute("queue", target)
            span.set_attribute("job", job)
            span.set_attribute("delay_ms", delay_ms)
            span.set_attribute("delayed_queue", holding_queue)

            await self.channel.declare_dead_letter_exchange(
                self.dead_letter_exchange,
                DEAD_LETTER_EXCHANGE_TYPE,
                durable=self.dead_letter_exchange_durable,
            )
            await self.channel.declare(self.descriptor(target))
            await self.channel.bind_queue(target, self.dead_letter_exchange, routing_key=target)

            await self.channel.declare_queue(
                holding_queue,
                durable=self.durable,
                arguments={
                    ARG_DEAD_LETTER_EXCHANGE: self.dead_letter_exchange,
                    ARG_DEAD_LETTER_ROUTING_KEY: target,
                    ARG_QUEUE_EXPIRES: delay_ms + self.delayed_queue_expiry_grace_ms,
                },
            )

            await self.channel.publish(
                holding_queue,
                encode(job, data, attempts),
                persistent=self.durable,
                expiration_ms=delay_ms,
                message_id=message_id,
            )

        self.metrics.record_job_pushed(target, delayed=True)
        self.logger.debug(
            "Delayed job pushed",
            extra={
                "queue": target,
                "job": job,
                "attempts": attempts,
                "delay_ms": delay_ms,
                "delayed_queue": holding_queue,
                "job_id": message_id,
            },
        )
        return message_id

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    async def pop(self, queue: str | None = None) -> RabbitMQJob | None:
        """
        Pop the next job off the queue without waiting.

        Args:
            queue: Queue to pop from; the default queue when omitted.

        Returns:
            The delivered job, or None when the queue is empty.

        Raises:
            MalformedPayload: If the message is not a valid envelope. The
                message has already been parked on the failed queue (or
                logged) and acked when this is raised.
        """
        name = self.get_queue(queue)

        with get_tracer().start_as_current_span(SPAN_POP_JOB) as span:
            span.set_attribute("queue", name)

            await self.channel.declare(self.descriptor(name))
            raw = await self.channel.fetch_one(name)
            if raw is None:
                return None

            try:
                envelope = decode(raw.body)
            except MalformedPayload as e:
                await self._park_malformed(raw, name, e)
                raise

            span.set_attribute("job", envelope.job)
            span.set_attribute("attempts", envelope.attempts)

        self.metrics.record_job_popped(name)
        return RabbitMQJob(
            queue=self,
            raw=raw,
            envelope=envelope,
            queue_name=name,
            resolver=self.resolver,
            logger=self.logger,
        )

    async def _park_malformed(self, raw: RawMessage, queue: str, error: MalformedPayload) -> None:
        self.metrics.record_malformed_payload(queue)
        self.logger.error(
            "Discarding malformed job payload",
            extra={
                "queue": queue,
                "delivery_tag": raw.delivery_tag,
                "error": str(error),
                "body": raw.body[:1000].decode("utf-8", errors="replace"),
                "failed_queue": self.failed_queue or None,
            },
        )
        if self.failed_queue:
            await self._publish_failed(raw.body, queue, str(error), raw.message_id)
        await self.channel.ack(raw.delivery_tag)

    async def bury(self, job: RabbitMQJob, reason: str) -> None:
        """
        Give up on a job: park its body on the failed queue and delete it.

        Args:
            job: A delivered, unsettled job.
            reason: Why the job is being given up on.
        """
        job.ensure_delivered()
        if self.failed_queue:
            await self._publish_failed(job.raw_body, job.queue, reason, job.job_id)
        else:
            self.logger.error(
                "Dropping failed job, no failed queue configured",
                extra={"queue": job.queue, "job": job.job_name, "body": job.raw_body.decode("utf-8", errors="replace")},
            )
        await job.delete()
        self.metrics.record_job_failed(job.queue)
        self.logger.warning(
            "Job moved to failed queue",
            extra={
                "queue": job.queue,
                "job": job.job_name,
                "attempts": job.attempts(),
                "reason": reason,
                "failed_queue": self.failed_queue or None,
            },
        )

    async def _publish_failed(
        self,
        body: bytes,
        queue: str,
        reason: str,
        message_id: str | None,
    ) -> None:
        await self.channel.declare(QueueDescriptor(name=self.failed_queue, durable=self.durable))
        await self.push_raw(
            body,
            self.failed_queue,
            {
                "message_id": message_id,
                "headers": {HEADER_FAILED_REASON: reason[:1000], HEADER_ORIGINAL_QUEUE: queue},
            },
        )

    async def close(self) -> None:
        """Close the underlying channel."""
        await self.channel.close()
