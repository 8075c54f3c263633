import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


CoroFactory = Callable[[], Awaitable[Any]]


class BackgroundTaskRunner:
    """Owns detached work (webhook delivery, dev-mode upload monitors).

    Every submitted task gets an optional hard deadline and is tracked until
    it finishes; ``stop`` cancels whatever is still running.
    """

    def __init__(self, max_parallel: int = 64) -> None:
        self._max_parallel = max_parallel
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        self._running = False
        self._semaphore: asyncio.Semaphore | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._semaphore = asyncio.Semaphore(self._max_parallel)
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._semaphore = None
        self._loop = None

    async def join(self) -> None:
        """Wait until every task submitted so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def submit(
        self,
        coro_factory: CoroFactory,
        *,
        timeout: float | None = None,
        name: str | None = None,
    ) -> asyncio.Task:
        if not self._running or self._loop is None or self._semaphore is None:
            raise RuntimeError("BackgroundTaskRunner not running")
        semaphore = self._semaphore
        label = name or "background task"

        async def guarded() -> Any:
            async with semaphore:
                return await coro_factory()

        async def wrapper() -> Any:
            # The deadline also covers time spent waiting for a free slot.
            try:
                if timeout is None:
                    return await guarded()
                return await asyncio.wait_for(guarded(), timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                logger.warning("%s exceeded its %.1fs deadline", label, timeout)
            except Exception:
                logger.exception("Unhandled error in %s", label)
            return None

        task = self._loop.create_task(wrapper(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
