"""
Pytest configuration and shared fixtures.

Unit tests run against FakeBroker, an in-process stand-in for the parts of
a RabbitMQ broker and the aio-pika channel API the driver touches: queues,
the default exchange, direct exchanges with bindings, per-message TTL,
dead-lettering and ``x-expires``. Time only moves when a test calls
``broker.advance(seconds)``.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from amqp_jobs.broker.channel import ChannelClient
from amqp_jobs.observability.metrics import MetricsCollector
from amqp_jobs.queue.rabbitmq import RabbitMQQueue
from amqp_jobs.worker.handlers import HandlerRegistry


@dataclass
class BrokerMessage:
    """A message as stored in a fake broker queue."""

    body: bytes
    routing_key: str
    delivery_mode: int | None = None
    message_id: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    expiration_ms: int | None = None
    expires_at: float | None = None
    dead_lettered_from: str | None = None


@dataclass
class BrokerQueue:
    name: str
    durable: bool
    arguments: dict[str, Any]
    last_used: float
    messages: deque = field(default_factory=deque)
    unacked: dict[int, BrokerMessage] = field(default_factory=dict)

    @property
    def expires_ms(self) -> int | None:
        return self.arguments.get("x-expires")


@dataclass
class BrokerExchange:
    name: str
    type: str
    durable: bool
    bindings: set[tuple[str, str]] = field(default_factory=set)


class FakeBroker:
    """Broker state shared by every FakeChannel opened on it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.queues: dict[str, BrokerQueue] = {}
        self.exchanges: dict[str, BrokerExchange] = {}
        self.deleted_queues: list[str] = []
        self.dropped: list[BrokerMessage] = []
        self.acked: list[BrokerMessage] = []
        self.queue_declarations: list[str] = []
        self.publish_error: BaseException | None = None
        self.ack_error: BaseException | None = None
        self._next_tag = 0

    def advance(self, seconds: float) -> None:
        """Move the broker clock forward and apply expirations."""
        self.now += seconds
        self.tick()

    def tick(self) -> None:
        for queue in list(self.queues.values()):
            while queue.messages and self._expired(queue.messages[0]):
                self._dead_letter(queue, queue.messages.popleft())

        for name, queue in list(self.queues.items()):
            expires_ms = queue.expires_ms
            if (
                expires_ms is not None
                and not queue.unacked
                and self.now - queue.last_used >= expires_ms / 1000
            ):
                self.dropped.extend(queue.messages)
                del self.queues[name]
                self.deleted_queues.append(name)

    def _expired(self, message: BrokerMessage) -> bool:
        return message.expires_at is not None and message.expires_at <= self.now

    def _dead_letter(self, queue: BrokerQueue, message: BrokerMessage) -> None:
        exchange = queue.arguments.get("x-dead-letter-exchange")
        if exchange is None:
            self.dropped.append(message)
            return
        routing_key = queue.arguments.get("x-dead-letter-routing-key", message.routing_key)
        message.expiration_ms = None
        message.expires_at = None
        message.dead_lettered_from = queue.name
        self.route(exchange, routing_key, message)

    def route(self, exchange: str, routing_key: str, message: BrokerMessage) -> None:
        if exchange == "":
            targets = [routing_key] if routing_key in self.queues else []
        elif exchange in self.exchanges:
            targets = [q for q, key in self.exchanges[exchange].bindings if key == routing_key]
        else:
            targets = []

        targets = [t for t in targets if t in self.queues]
        if not targets:
            self.dropped.append(message)
            return

        for target in targets:
            copy = BrokerMessage(**{**message.__dict__, "routing_key": routing_key})
            if copy.expiration_ms is not None:
                copy.expires_at = self.now + copy.expiration_ms / 1000
            self.queues[target].messages.append(copy)

    def declare_queue(self, name: str, durable: bool, arguments: dict[str, Any] | None) -> BrokerQueue:
        arguments = dict(arguments or {})
        self.queue_declarations.append(name)
        existing = self.queues.get(name)
        if existing is not None:
            if existing.durable != durable or existing.arguments != arguments:
                raise AssertionError(f"PRECONDITION_FAILED - inequivalent arg for queue {name!r}")
            existing.last_used = self.now
            return existing
        queue = BrokerQueue(name=name, durable=durable, arguments=arguments, last_used=self.now)
        self.queues[name] = queue
        return queue

    def next_tag(self) -> int:
        self._next_tag += 1
        return self._next_tag

    def put(self, queue: str, body: bytes, **properties: Any) -> None:
        """Drop a raw message straight onto a queue, as a foreign producer would."""
        self.queues[queue].messages.append(BrokerMessage(body=body, routing_key=queue, **properties))

    def bodies(self, queue: str) -> list[bytes]:
        return [m.body for m in self.queues[queue].messages]

    def delayed_queues(self, target: str) -> list[str]:
        return [name for name in self.queues if name.startswith(f"{target}-delayed-")]


class FakeIncomingMessage:
    def __init__(self, broker: FakeBroker, queue: BrokerQueue, tag: int, message: BrokerMessage):
        self._broker = broker
        self._queue = queue
        self._message = message
        self.body = message.body
        self.delivery_tag = tag
        self.message_id = message.message_id
        self.headers = dict(message.headers)
        self.processed = False

    async def ack(self, multiple: bool = False) -> None:
        if self.processed:
            raise RuntimeError("Message already processed")
        if self._broker.ack_error is not None:
            raise self._broker.ack_error
        self.processed = True
        del self._queue.unacked[self.delivery_tag]
        self._broker.acked.append(self._message)

    async def reject(self, requeue: bool = False) -> None:
        if self.processed:
            raise RuntimeError("Message already processed")
        self.processed = True
        del self._queue.unacked[self.delivery_tag]
        if requeue:
            self._queue.messages.appendleft(self._message)
        else:
            self._broker._dead_letter(self._queue, self._message)


class FakeExchange:
    def __init__(self, channel: "FakeChannel", name: str):
        self._channel = channel
        self.name = name

    async def publish(self, message: Any, routing_key: str, **kwargs: Any) -> None:
        broker = self._channel.broker
        if broker.publish_error is not None:
            raise broker.publish_error

        props = message.properties
        expiration = int(props.expiration) if props.expiration else None
        stored = BrokerMessage(
            body=message.body,
            routing_key=routing_key,
            delivery_mode=int(props.delivery_mode) if props.delivery_mode else None,
            message_id=props.message_id,
            headers=dict(props.headers or {}),
            expiration_ms=expiration,
        )
        self._channel.published.append((self.name, routing_key, stored))
        broker.route(self.name, routing_key, stored)


class FakeQueue:
    def __init__(self, channel: "FakeChannel", name: str):
        self._channel = channel
        self.name = name

    async def bind(self, exchange: FakeExchange, routing_key: str | None = None, **kwargs: Any) -> None:
        self._channel.broker.exchanges[exchange.name].bindings.add((self.name, routing_key or self.name))

    async def get(self, *, no_ack: bool = False, fail: bool = True, timeout: float = 5) -> FakeIncomingMessage | None:
        broker = self._channel.broker
        broker.tick()
        queue = broker.queues[self.name]
        queue.last_used = broker.now
        if not queue.messages:
            if fail:
                raise LookupError(f"Queue {self.name!r} is empty")
            return None
        message = queue.messages.popleft()
        tag = broker.next_tag()
        queue.unacked[tag] = message
        return FakeIncomingMessage(broker, queue, tag, message)


class FakeChannel:
    """The subset of aio_pika.abc.AbstractChannel used by ChannelClient."""

    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.is_closed = False
        self.default_exchange = FakeExchange(self, "")
        self.published: list[tuple[str, str, BrokerMessage]] = []

    async def declare_queue(
        self,
        name: str,
        *,
        durable: bool = False,
        arguments: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> FakeQueue:
        self.broker.declare_queue(name, durable, arguments)
        return FakeQueue(self, name)

    async def declare_exchange(self, name: str, type: Any = "direct", *, durable: bool = False, **kwargs: Any) -> FakeExchange:
        exchange_type = getattr(type, "value", type)
        existing = self.broker.exchanges.get(name)
        if existing is not None and (existing.type != exchange_type or existing.durable != durable):
            raise AssertionError(f"PRECONDITION_FAILED - inequivalent arg for exchange {name!r}")
        if existing is None:
            self.broker.exchanges[name] = BrokerExchange(name=name, type=exchange_type, durable=durable)
        return FakeExchange(self, name)

    async def get_queue(self, name: str, *, ensure: bool = True) -> FakeQueue:
        if ensure and name not in self.broker.queues:
            raise LookupError(f"NOT_FOUND - no queue {name!r}")
        return FakeQueue(self, name)

    async def close(self) -> None:
        self.is_closed = True


class FakeConnection:
    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.is_closed = False
        self.channels: list[FakeChannel] = []

    async def channel(self) -> FakeChannel:
        channel = FakeChannel(self.broker)
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.is_closed = True


@pytest.fixture
def broker() -> FakeBroker:
    """A fresh fake broker."""
    return FakeBroker()


@pytest.fixture
def fake_channel(broker: FakeBroker) -> FakeChannel:
    return FakeChannel(broker)


@pytest.fixture
def channel_client(fake_channel: FakeChannel) -> ChannelClient:
    return ChannelClient(fake_channel)


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def handler_registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def job_queue(
    channel_client: ChannelClient,
    metrics: MetricsCollector,
    handler_registry: HandlerRegistry,
) -> RabbitMQQueue:
    """A durable queue on the fake broker with a failed queue configured."""
    return RabbitMQQueue(
        channel_client,
        default_queue="default",
        durable=True,
        dead_letter_exchange="immediate",
        delayed_queue_expiry_grace_ms=1000,
        failed_queue="failed",
        resolver=handler_registry,
        metrics=metrics,
    )


@pytest.fixture
def sample_job_payload() -> dict[str, Any]:
    """Payload of the canonical SendEmail job."""
    return {"to": "a@b.com", "subject": "Welcome"}


@pytest.fixture
def fake_connection(broker: FakeBroker) -> FakeConnection:
    return FakeConnection(broker)
