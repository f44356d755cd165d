"""
Worker process for executing jobs.

The worker pops jobs from one queue over its own channel, runs the handler
registered for each job name, and retries failures by releasing the job
with an exponential backoff until it runs out of attempts.
"""

import asyncio
import importlib
import logging
import os
import signal
import time

from prometheus_client import start_http_server

from amqp_jobs.config import get_settings
from amqp_jobs.constants import SPAN_EXECUTE_JOB
from amqp_jobs.exceptions import BrokerConnectionError, MalformedPayload, PreconditionViolation
from amqp_jobs.observability.logging import bind_job_context, clear_context, setup_logging
from amqp_jobs.observability.tracing import get_tracer, setup_tracing
from amqp_jobs.queue.connector import RabbitMQConnector
from amqp_jobs.queue.job import RabbitMQJob
from amqp_jobs.queue.rabbitmq import RabbitMQQueue
from amqp_jobs.worker.handlers import registry

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls one queue and executes jobs one at a time.

    Features:
    - Non-blocking pops with a poll interval when the queue is empty
    - Retry via ``release`` with exponential backoff
    - Exhausted jobs parked on the failed queue
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        queue: RabbitMQQueue,
        queue_name: str | None = None,
        worker_id: str | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: Queue to pop from; its channel belongs to this worker alone.
            queue_name: Queue name; the queue's default when omitted.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            poll_interval: Seconds between polls when the queue is empty.
            max_attempts: Attempts before a failing job is given up on.
            backoff_base: Retry delay in seconds for the first failure.
            backoff_max: Upper bound on the retry delay.
        """
        settings = get_settings()

        self.queue = queue
        self.queue_name = queue.get_queue(queue_name)
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        self.max_attempts = max_attempts or settings.worker_max_attempts
        self.backoff_base = backoff_base if backoff_base is not None else settings.worker_backoff_base_seconds
        self.backoff_max = backoff_max if backoff_max is not None else settings.worker_backoff_max_seconds

        self._running = False
        self._metrics = queue.metrics

    def backoff(self, attempts: int) -> float:
        """Retry delay for a job that has been attempted ``attempts`` times before."""
        return min(self.backoff_max, self.backoff_base * (2 ** attempts))

    async def start(self) -> None:
        """Run the polling loop until ``stop`` is called."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "queue": self.queue_name},
        )

        self._running = True

        while self._running:
            try:
                processed = await self.run_once()
                if not processed:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker after the job in progress."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def run_once(self) -> bool:
        """
        Pop and process at most one job.

        Returns:
            True if a message was taken off the queue.
        """
        try:
            job = await self.queue.pop(self.queue_name)
        except MalformedPayload as e:
            logger.warning(
                "Skipped malformed message",
                extra={"worker_id": self.worker_id, "queue": self.queue_name, "error": str(e)},
            )
            return True

        if job is None:
            return False

        await self.process(job)
        return True

    async def process(self, job: RabbitMQJob) -> str:
        """
        Execute one job and settle it.

        Args:
            job: A delivered job.

        Returns:
            The outcome: ``succeeded``, ``retried``, ``failed`` or ``unsettled``.

        Raises:
            BrokerConnectionError: If the broker failed mid-job. An unsettled
                job is rejected back onto its queue first.
        """
        start_time = time.time()
        bind_job_context(job.job_name, job.queue, job.job_id, job.attempts())

        try:
            try:
                with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                    span.set_attribute("job", job.job_name)
                    span.set_attribute("queue", job.queue)
                    span.set_attribute("attempts", job.attempts())
                    span.set_attribute("worker_id", self.worker_id)

                    await job.fire()

                status = await self._settle_returned(job)

            except BrokerConnectionError:
                raise

            except Exception as e:
                status = await self._handle_failure(job, e)

        except BrokerConnectionError:
            await self._return_to_queue(job)
            raise

        finally:
            clear_context()

        duration = time.time() - start_time
        self._metrics.record_job_completed(
            queue=job.queue,
            status=status,
            duration_seconds=duration,
        )
        logger.info(
            "Job processed",
            extra={
                "job": job.job_name,
                "job_id": job.job_id,
                "status": status,
                "duration": f"{duration:.2f}s",
            },
        )
        return status

    async def _settle_returned(self, job: RabbitMQJob) -> str:
        try:
            job.ensure_settled()
        except PreconditionViolation as e:
            logger.error(
                "Handler returned without deleting or releasing the job",
                extra={"job": job.job_name, "job_id": job.job_id},
            )
            status = await self._retry_or_bury(job, str(e))
            return "unsettled" if status == "retried" else status
        return "succeeded"

    async def _handle_failure(self, job: RabbitMQJob, error: Exception) -> str:
        """
        Retry or give up on a job whose handler raised.

        Returns:
            The outcome status.
        """
        if job.is_settled:
            logger.exception(
                "Handler raised after settling the job",
                extra={"job": job.job_name, "job_id": job.job_id},
            )
            return "failed"

        return await self._retry_or_bury(job, f"{type(error).__name__}: {error}", error)

    async def _retry_or_bury(
        self,
        job: RabbitMQJob,
        reason: str,
        error: Exception | None = None,
    ) -> str:
        """
        Release the job with backoff, or bury it once it is out of attempts.

        Returns:
            ``retried`` or ``failed``.
        """
        attempts = job.attempts() + 1

        if attempts >= self.max_attempts:
            logger.error(
                "Job failed, no attempts left",
                exc_info=error,
                extra={"job": job.job_name, "job_id": job.job_id, "attempts": attempts, "reason": reason},
            )
            await self.queue.bury(job, reason=reason)
            return "failed"

        delay = self.backoff(job.attempts())
        logger.warning(
            "Job failed, retrying",
            exc_info=error,
            extra={
                "job": job.job_name,
                "job_id": job.job_id,
                "attempts": attempts,
                "retry_in": delay,
                "reason": reason,
            },
        )
        await job.release(delay)
        return "retried"

    async def _return_to_queue(self, job: RabbitMQJob) -> None:
        """Reject an unsettled job so the broker redelivers it without waiting for the channel to close."""
        if job.is_settled or self.queue.channel.is_closed:
            return
        try:
            await self.queue.channel.reject(job.delivery_tag, requeue=True)
        except BrokerConnectionError:
            logger.exception(
                "Could not return job to its queue",
                extra={"job": job.job_name, "job_id": job.job_id},
            )
            return
        logger.warning(
            "Job returned to its queue after a broker error",
            extra={"job": job.job_name, "job_id": job.job_id, "queue": job.queue},
        )


def load_handler_modules(modules: list[str]) -> None:
    """Import modules whose ``register_handler`` decorators populate the registry."""
    for module in modules:
        importlib.import_module(module)
        logger.info("Loaded handler module", extra={"module": module})


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    if settings.otel_enabled:
        setup_tracing()
    start_http_server(settings.prometheus_port)
    load_handler_modules(settings.worker_handler_modules)

    queue = await RabbitMQConnector(resolver=registry).connect(settings.connection_config())
    worker = Worker(queue)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await queue.close()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
