import asyncio
from collections import defaultdict
from collections.abc import Callable, Coroutine
from typing import Any

from tollgate.logging import get_logger

type Handler[T] = Callable[[T], Coroutine[Any, Any, None]]

_logger = get_logger(__name__)


class Channel:
    """Fire-and-forget bus for lifecycle events (run started/completed, tool executed).

    Handlers run as background tasks, so a slow or failing subscriber never
    delays a turn. Failures are logged. `drain()` waits for in-flight handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._inflight: set[asyncio.Task] = set()

    def subscribe[T](self, event_type: type[T], handler: Handler[T]) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish[T](self, event: T) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            task = asyncio.create_task(self._run(handler, event))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def drain(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _run[T](self, handler: Handler[T], event: T) -> None:
        try:
            await handler(event)
        except Exception:
            _logger.exception("Handler %s failed for %s", handler.__qualname__, type(event).__name__)
