import asyncio
import contextvars
import typing

from core.models import getLogger

logger = getLogger(__name__)

T = typing.TypeVar("T")

_current_queue = contextvars.ContextVar("current_queue", default=None)


class SerializationQueue:
    """
    Runs asynchronous tasks one at a time, in the order they were enqueued.

    A task is a zero-argument callable returning an awaitable. The next task
    only starts once the previous one has finished, whether it succeeded or
    raised. There is no priority and no cancellation: everything enqueued
    eventually runs.

    Parameters
    ----------
    timeout : Optional[float]
        Seconds a single task may run before it is abandoned with
        `asyncio.TimeoutError`. `None` lets a task run forever, in which
        case a hung task stalls every task behind it.
    """

    def __init__(self, *, timeout: typing.Optional[float] = None):
        self.timeout = timeout
        self._tail: typing.Optional[asyncio.Future] = None
        self._pending = 0

    def __len__(self):
        return self._pending

    def __repr__(self):
        return f"SerializationQueue(pending={self._pending}, timeout={self.timeout})"

    @property
    def running(self) -> bool:
        """Whether the caller is executing inside a task of this queue."""
        return _current_queue.get() is self

    def enqueue(self, task: typing.Callable[[], typing.Awaitable[T]]) -> "asyncio.Future[T]":
        """
        Schedules `task` behind every task enqueued before it.

        Never blocks. The returned future resolves with the task's result or
        raises its exception, independently of every other task.
        """
        if self.running:
            raise RuntimeError("Enqueueing from inside a queued task would deadlock, use submit().")

        future = asyncio.ensure_future(self._run(self._tail, task))
        self._tail = future
        self._pending += 1
        return future

    async def submit(self, task: typing.Callable[[], typing.Awaitable[T]]) -> T:
        """
        Runs `task` on the queue and waits for its result.

        When called from a task that already holds the queue, `task` runs
        inline since it is already serialized.
        """
        if self.running:
            return await task()
        return await self.enqueue(task)

    async def _run(self, previous: typing.Optional[asyncio.Future], task) -> T:
        try:
            if previous is not None and not previous.done():
                # only wait for completion, a failure of the previous task is its caller's business
                await asyncio.wait([previous])

            token = _current_queue.set(self)
            try:
                if self.timeout:
                    return await asyncio.wait_for(task(), self.timeout)
                return await task()
            except asyncio.TimeoutError:
                logger.error("Queued task %r timed out after %s seconds.", task, self.timeout)
                raise
            finally:
                _current_queue.reset(token)
        finally:
            self._pending -= 1
