"""
Job handler registry.

Maps job names, as carried in the envelope's ``job`` field, to handlers.
Handlers must be idempotent: with at-least-once delivery the same job may
run more than once.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from amqp_jobs.queue.job import RabbitMQJob
from amqp_jobs.types.job import JobHandler

logger = logging.getLogger(__name__)

# Plain coroutine functions are accepted as handlers too
HandlerFunc = Callable[[RabbitMQJob, Any], Awaitable[None]]


class FunctionHandler:
    """Adapts a coroutine function to the JobHandler interface."""

    def __init__(self, func: HandlerFunc):
        self.func = func

    def __repr__(self) -> str:
        return f"FunctionHandler({self.func.__qualname__})"

    async def handle(self, job: RabbitMQJob, data: Any) -> None:
        await self.func(job, data)


class HandlerRegistry:
    """
    Explicit job name -> handler mapping.

    Example:
        registry = HandlerRegistry()

        @registry.register("SendEmail")
        async def send_email(job: RabbitMQJob, data: dict) -> None:
            ...
            await job.delete()
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_name: str) -> Callable[[Any], Any]:
        """
        Decorator registering a handler object, handler class or coroutine function.

        Classes are instantiated with no arguments.
        """
        def decorator(target: Any) -> Any:
            self.add(job_name, target)
            return target
        return decorator

    def add(self, job_name: str, target: Any) -> JobHandler:
        """
        Register a handler for a job name, replacing any previous one.

        Raises:
            TypeError: If ``target`` is not a handler, handler class or
                coroutine function.
        """
        if inspect.isclass(target):
            target = target()
        if isinstance(target, JobHandler):
            handler: JobHandler = target
        elif inspect.iscoroutinefunction(target):
            handler = FunctionHandler(target)
        else:
            raise TypeError(
                f"Handler for {job_name!r} must define 'async def handle(job, data)' "
                f"or be a coroutine function, got {target!r}"
            )

        self._handlers[job_name] = handler
        logger.debug("Registered handler", extra={"job": job_name, "handler": repr(handler)})
        return handler

    def resolve(self, job_name: str) -> JobHandler | None:
        """Get the handler for a job name, or None if there is none."""
        return self._handlers.get(job_name)

    def names(self) -> list[str]:
        """List all registered job names."""
        return list(self._handlers)

    def __contains__(self, job_name: str) -> bool:
        return job_name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


# Process-wide registry used by the worker entrypoint
registry = HandlerRegistry()


def register_handler(job_name: str) -> Callable[[Any], Any]:
    """
    Decorator to register a handler on the process-wide registry.

    Example:
        @register_handler("SendEmail")
        async def send_email(job: RabbitMQJob, data: dict) -> None:
            ...
    """
    return registry.register(job_name)


def get_handler(job_name: str) -> JobHandler | None:
    return registry.resolve(job_name)


def list_handlers() -> list[str]:
    return registry.names()
