"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Lifecycle of a delivered job.

    State transitions:
    - DELIVERED -> ACKED (deleted from the broker)
    - DELIVERED -> RELEASED (republished, original delivery acked)

    Both ACKED and RELEASED are terminal.
    """

    DELIVERED = "delivered"
    ACKED = "acked"
    RELEASED = "released"


# Broker topology
DEAD_LETTER_EXCHANGE_TYPE = "direct"
DELAYED_QUEUE_INFIX = "-delayed-"
ARG_DEAD_LETTER_EXCHANGE = "x-dead-letter-exchange"
ARG_DEAD_LETTER_ROUTING_KEY = "x-dead-letter-routing-key"
ARG_QUEUE_EXPIRES = "x-expires"
CONTENT_TYPE_JSON = "application/json"

# Headers set on jobs parked in the failed queue
HEADER_FAILED_REASON = "x-failed-reason"
HEADER_ORIGINAL_QUEUE = "x-original-queue"

# Metrics names
METRIC_JOBS_PUSHED = "amqp_jobs_pushed_total"
METRIC_JOBS_POPPED = "amqp_jobs_popped_total"
METRIC_JOBS_ACKED = "amqp_jobs_acked_total"
METRIC_JOBS_RELEASED = "amqp_jobs_released_total"
METRIC_JOBS_FAILED = "amqp_jobs_failed_total"
METRIC_MALFORMED_PAYLOADS = "amqp_jobs_malformed_payloads_total"
METRIC_JOBS_COMPLETED = "amqp_jobs_completed_total"
METRIC_JOB_DURATION = "amqp_job_duration_seconds"

# Trace span names
SPAN_PUSH_JOB = "push_job"
SPAN_LATER_JOB = "later_job"
SPAN_POP_JOB = "pop_job"
SPAN_ACK_JOB = "ack_job"
SPAN_RELEASE_JOB = "release_job"
SPAN_EXECUTE_JOB = "execute_job"
