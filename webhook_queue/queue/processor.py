"""Job processor interface.

The processor performs the business side of a webhook (payment status
updates, order transitions). The queue calls it once per attempt and treats
any exception as a failed attempt.
"""

import importlib
from typing import Any, Callable, Coroutine, Protocol, runtime_checkable

from webhook_queue.queue.models import WebhookEvent

# Handler signature: async def handler(event: WebhookEvent) -> Any
ProcessorFunc = Callable[[WebhookEvent], Coroutine[Any, Any, Any]]


@runtime_checkable
class JobProcessor(Protocol):
    """Processes a single webhook event."""

    async def process(self, event: WebhookEvent) -> Any:
        ...


class FunctionProcessor:
    """Adapts a plain async function to the JobProcessor interface."""

    def __init__(self, func: ProcessorFunc):
        self._func = func

    async def process(self, event: WebhookEvent) -> Any:
        return await self._func(event)

    def __repr__(self) -> str:
        name = getattr(self._func, "__qualname__", repr(self._func))
        return f"FunctionProcessor({name})"


def as_processor(obj: Any) -> JobProcessor:
    """Return obj as a JobProcessor, wrapping bare async callables."""
    if isinstance(obj, JobProcessor):
        return obj
    if callable(obj):
        return FunctionProcessor(obj)
    raise TypeError(f"{obj!r} is neither a JobProcessor nor a callable")


def load_processor(import_path: str) -> JobProcessor:
    """Load a processor from 'package.module:attribute'.

    A class attribute is instantiated with no arguments.
    """
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(
            f"Invalid processor path {import_path!r}, expected 'module:attribute'"
        )

    module = importlib.import_module(module_name)
    try:
        target = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module {module_name!r} has no attribute {attr!r}") from None

    if isinstance(target, type):
        target = target()
    return as_processor(target)
