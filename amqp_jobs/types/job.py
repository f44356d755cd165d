"""
Job-related type definitions for internal use.
"""

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator

if TYPE_CHECKING:
    from amqp_jobs.queue.job import RabbitMQJob


class JobEnvelope(BaseModel):
    """
    Serialized description of one unit of work.

    ``attempts`` starts at 0 and only ever grows as the job is released
    back onto its queue. The broker never looks inside the envelope.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    job: StrictStr
    data: Any
    attempts: StrictInt = Field(ge=0)

    @field_validator("data")
    @classmethod
    def data_must_be_finite(cls, value: Any) -> Any:
        """Reject NaN and Infinity anywhere in the payload; JSON cannot carry them."""
        if not _is_finite(value):
            raise ValueError("data must not contain NaN or Infinity")
        return value

    def as_tuple(self) -> tuple[str, Any, int]:
        """Return ``(job, data, attempts)``."""
        return self.job, self.data, self.attempts


def _is_finite(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, dict):
        return all(_is_finite(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return all(_is_finite(v) for v in value)
    return True


@dataclass(frozen=True)
class QueueDescriptor:
    """
    A queue as the driver declares it.

    Every declaration of the same name uses the same durability so
    repeated declares stay idempotent at the broker.
    """

    name: str
    durable: bool


@dataclass
class RawMessage:
    """
    A message fetched from the broker but not yet acknowledged.

    ``handle`` is the client library's incoming message; callers treat it
    as opaque and settle the delivery through the channel client.
    """

    body: bytes
    delivery_tag: int
    message_id: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    handle: Any = field(default=None, repr=False, compare=False)


@runtime_checkable
class JobHandler(Protocol):
    """Something that knows how to run one kind of job."""

    async def handle(self, job: "RabbitMQJob", data: Any) -> None:
        """
        Process the job payload.

        The handler is expected to settle the job with ``job.delete()`` or
        ``job.release(delay)``. Raising marks the attempt as failed.
        """
        ...


class HandlerResolver(Protocol):
    """Maps a job name to its handler."""

    def resolve(self, job_name: str) -> JobHandler | None:
        ...
