"""
Job envelope codec.

Envelopes travel as compact UTF-8 JSON objects with exactly three fields,
``job``, ``data`` and ``attempts``, so producers written in other languages
can share the same queues.
"""

from typing import Any

from pydantic import ValidationError

from amqp_jobs.exceptions import MalformedPayload
from amqp_jobs.types.job import JobEnvelope


def encode(job: str, data: Any, attempts: int = 0) -> bytes:
    """
    Serialize a job envelope.

    Args:
        job: The job name handlers are resolved by.
        data: Any JSON-representable payload.
        attempts: How many times the job has been released so far.

    Returns:
        The message body.

    Raises:
        ValueError: If the envelope fields are invalid.
    """
    try:
        envelope = JobEnvelope(job=job, data=data, attempts=attempts)
    except ValidationError as e:
        raise ValueError(f"Invalid job envelope: {e}") from e
    return encode_envelope(envelope)


def encode_envelope(envelope: JobEnvelope) -> bytes:
    """Serialize an already validated envelope."""
    return envelope.model_dump_json().encode("utf-8")


def decode(body: bytes) -> JobEnvelope:
    """
    Parse a message body into a job envelope.

    Args:
        body: Raw message body.

    Returns:
        JobEnvelope: The decoded envelope.

    Raises:
        MalformedPayload: If the body is not valid JSON, is not an object,
            lacks a field, or carries a field of the wrong type.
    """
    try:
        return JobEnvelope.model_validate_json(body)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<body>'}: {err['msg']}"
            for err in e.errors()
        )
        raise MalformedPayload(f"Malformed job payload: {errors}", body=body) from e
