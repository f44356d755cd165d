"""
Integration tests against a live RabbitMQ broker.

Set RABBITMQ_TEST_HOST (and optionally RABBITMQ_TEST_PORT, RABBITMQ_TEST_USER,
RABBITMQ_TEST_PASSWORD) to run them.
"""

import asyncio
import os
import uuid

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from amqp_jobs.observability.metrics import MetricsCollector
from amqp_jobs.queue.connector import RabbitMQConnector
from amqp_jobs.queue.rabbitmq import RabbitMQQueue
from amqp_jobs.worker.handlers import HandlerRegistry
from amqp_jobs.worker.main import Worker

pytestmark = pytest.mark.skipif(
    not os.environ.get("RABBITMQ_TEST_HOST"),
    reason="RABBITMQ_TEST_HOST not set",
)


@pytest_asyncio.fixture
async def live_queue():
    """Queue on a live broker, using a unique queue name per test."""
    registry = HandlerRegistry()
    queue = await RabbitMQConnector(resolver=registry).connect(
        {
            "host": os.environ.get("RABBITMQ_TEST_HOST"),
            "port": int(os.environ.get("RABBITMQ_TEST_PORT", "5672")),
            "user": os.environ.get("RABBITMQ_TEST_USER", "guest"),
            "pass": os.environ.get("RABBITMQ_TEST_PASSWORD", "guest"),
            "queue": f"test-{uuid.uuid4().hex[:8]}",
            "durable": False,
        },
        dead_letter_exchange=f"test-immediate-{uuid.uuid4().hex[:8]}",
        delayed_queue_expiry_grace_ms=1000,
        failed_queue=f"test-failed-{uuid.uuid4().hex[:8]}",
        metrics=MetricsCollector(registry=CollectorRegistry()),
    )
    try:
        yield queue
    finally:
        await queue.close()


async def pop_within(queue: RabbitMQQueue, seconds: float):
    deadline = asyncio.get_running_loop().time() + seconds
    while asyncio.get_running_loop().time() < deadline:
        job = await queue.pop()
        if job is not None:
            return job
        await asyncio.sleep(0.1)
    return None


class TestLiveBroker:
    """End-to-end behaviour on a real broker."""

    async def test_push_pop_delete(self, live_queue: RabbitMQQueue):
        await live_queue.push("SendEmail", {"to": "a@b.com"})

        job = await pop_within(live_queue, 2)
        assert job.data == {"to": "a@b.com"}
        await job.delete()

        assert await pop_within(live_queue, 0.5) is None

    async def test_later(self, live_queue: RabbitMQQueue):
        await live_queue.later(2, "SendEmail", {"to": "a@b.com"})

        assert await pop_within(live_queue, 1) is None

        job = await pop_within(live_queue, 3)
        assert job is not None
        assert job.attempts() == 0
        await job.delete()

    async def test_delayed_release(self, live_queue: RabbitMQQueue):
        await live_queue.push("SendEmail", {})
        job = await pop_within(live_queue, 2)

        await job.release(1)

        assert await pop_within(live_queue, 0.5) is None
        again = await pop_within(live_queue, 3)
        assert again.attempts() == 1
        assert again.job_id == job.job_id
        await again.delete()

    async def test_worker_runs_registered_handler(self, live_queue: RabbitMQQueue):
        handled = []

        @live_queue.resolver.register("SendEmail")
        async def send_email(job, data):
            handled.append(data)
            await job.delete()

        await live_queue.push("SendEmail", {"n": 1})
        worker = Worker(live_queue, worker_id="it-worker", poll_interval=0.1)

        for _ in range(20):
            if await worker.run_once():
                break
            await asyncio.sleep(0.1)

        assert handled == [{"n": 1}]
