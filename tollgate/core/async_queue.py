import asyncio
from collections import deque


class AsyncQueue[T]:
    """Single-consumer async iterable queue for streaming.

    Producers call `enqueue` any number of times and then exactly one of
    `finish` or `fail`. A failure is raised to the consumer after every
    value enqueued before it has been delivered.
    """

    def __init__(self) -> None:
        self._queue: deque[T] = deque()
        self._waiter: asyncio.Future[None] | None = None
        self._done = False
        self._error: BaseException | None = None
        self._started = False

    def __aiter__(self):
        if self._started:
            raise RuntimeError("Queue can only be iterated once")
        self._started = True
        return self

    async def __anext__(self) -> T:
        while True:
            if self._queue:
                return self._queue.popleft()
            if self._error is not None:
                error, self._error = self._error, None
                raise error
            if self._done:
                raise StopAsyncIteration

            self._waiter = asyncio.get_running_loop().create_future()
            try:
                await self._waiter
            finally:
                self._waiter = None

    def _wake(self) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)

    def enqueue(self, value: T) -> None:
        if self._done:
            raise RuntimeError("Cannot enqueue to finished queue")
        self._queue.append(value)
        self._wake()

    def finish(self) -> None:
        self._done = True
        self._wake()

    def fail(self, error: BaseException) -> None:
        self._error = error
        self._done = True
        self._wake()

    @property
    def is_finished(self) -> bool:
        return self._done

    @property
    def pending(self) -> int:
        return len(self._queue)
