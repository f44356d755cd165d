"""
Type definitions for the job queue driver.
Contains input/output type definitions shared across modules.
"""

from amqp_jobs.types.job import (
    HandlerResolver,
    JobEnvelope,
    JobHandler,
    QueueDescriptor,
    RawMessage,
)

__all__ = [
    "JobEnvelope",
    "QueueDescriptor",
    "RawMessage",
    "JobHandler",
    "HandlerResolver",
]
