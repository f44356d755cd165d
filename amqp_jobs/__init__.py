"""
AMQP Job Queue Driver

Pushes jobs to and pops jobs from a RabbitMQ broker, with delayed delivery
implemented through per-message TTL and dead-lettering, and an explicit
acknowledge/release lifecycle for every delivered job.
"""

__version__ = "1.0.0"
