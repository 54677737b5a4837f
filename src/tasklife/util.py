"""
Copyright 2024 Inmanta

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Contact: code@inmanta.com
"""

import asyncio
import logging
from asyncio import CancelledError, Task, ensure_future, gather
from collections.abc import Awaitable
from typing import Generic, Optional, TypeVar

from tasklife import exceptions

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class StoppedException(Exception):
    """This exception is raised when a background task is added to the taskhandler when it is shutting down."""


class TaskHandler(Generic[T]):
    """
    This class provides a method to add a background task based on a coroutine. When the coroutine ends, any exceptions
    are reported. If stop is invoked, all background tasks are cancelled.
    """

    def __init__(self) -> None:
        super().__init__()
        self._background_tasks: set[Task[T]] = set()
        self._stopped = False

    def is_stopped(self) -> bool:
        return self._stopped

    def add_background_task(self, future: Awaitable[T]) -> Task[T]:
        """Add a background task to the event loop. When stop is called, the task is cancelled.

        :param future: The future or coroutine to run as background task.
        """
        if self._stopped:
            LOGGER.warning("Not adding background task because we are stopping.")
            raise StoppedException("A background tasks are not added to the event loop while stopping")

        task: Task[T] = ensure_future(future)

        def handle_result(task: Task[T]) -> None:
            try:
                task.result()
            except CancelledError:
                LOGGER.warning("Task %s was cancelled.", task)
            except Exception as e:
                LOGGER.exception("An exception occurred while handling a future: %s", str(e))
            finally:
                self._background_tasks.discard(task)

        task.add_done_callback(handle_result)
        self._background_tasks.add(task)
        return task

    async def join(self) -> None:
        """Wait until all background tasks, including the ones they spawn, are done"""
        while self._background_tasks:
            await gather(*self._background_tasks, return_exceptions=True)

    async def stop(self) -> None:
        """Stop all background tasks by requesting a cancel"""
        self._stopped = True
        cancelled_tasks = []
        try:
            while True:
                task = self._background_tasks.pop()
                task.cancel()
                cancelled_tasks.append(task)
        except KeyError:
            pass

        await gather(*cancelled_tasks, return_exceptions=True)


class Deadline:
    """
    The limits of a single operation: an optional timeout and an optional cancellation event set by the caller.

    Waiting through a deadline raises :class:`tasklife.exceptions.Cancelled` as soon as the event is set or the timeout
    passes. The awaitable that was interrupted is cancelled.
    """

    def __init__(self, timeout: Optional[float] = None, cancel: Optional[asyncio.Event] = None) -> None:
        if timeout is not None and timeout < 0:
            raise ValueError("timeout can not be negative, got %s" % timeout)
        self.timeout = timeout
        self.cancel = cancel
        self._end: Optional[float] = None if timeout is None else asyncio.get_running_loop().time() + timeout

    def remaining(self) -> Optional[float]:
        """The number of seconds left, None when there is no timeout"""
        if self._end is None:
            return None
        return max(0.0, self._end - asyncio.get_running_loop().time())

    def is_cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def is_expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        """Raise Cancelled when the operation should not continue"""
        if self.is_cancelled():
            raise exceptions.Cancelled("cancellation was requested")
        if self.is_expired():
            raise exceptions.Cancelled("deadline of %s seconds exceeded" % self.timeout)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Wait for the given awaitable, unless the operation is cancelled first
        """
        if self.timeout is None and self.cancel is None:
            return await awaitable

        work: asyncio.Future[T] = ensure_future(awaitable)
        try:
            self.check()
        except exceptions.Cancelled:
            work.cancel()
            await gather(work, return_exceptions=True)
            raise
        waiters: set[asyncio.Future[object]] = {work}
        if self.cancel is not None:
            waiters.add(ensure_future(self.cancel.wait()))
        try:
            done, _ = await asyncio.wait(waiters, timeout=self.remaining(), return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [f for f in waiters if not f.done()]
            for f in pending:
                f.cancel()
            await gather(*pending, return_exceptions=True)
        if work in done:
            return work.result()
        if self.is_cancelled():
            raise exceptions.Cancelled("cancellation was requested")
        raise exceptions.Cancelled("deadline of %s seconds exceeded" % self.timeout)

    async def sleep(self, delay: float) -> None:
        """
        Sleep for the given delay. Wakes up and raises Cancelled when the operation is cancelled or the deadline passes.
        """
        remaining = self.remaining()
        if remaining is not None and remaining < delay:
            await self.run(asyncio.sleep(remaining))
            raise exceptions.Cancelled("deadline of %s seconds exceeded" % self.timeout)
        await self.run(asyncio.sleep(delay))


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    """
    Returns the event loop for this thread. Creates a new one if none exists yet and registers it with asyncio's active event
    loop policy. Does not ensure that the event loop is running.
    """
    try:
        # nothing needs to be done if this thread already has an event loop
        return asyncio.get_running_loop()
    except RuntimeError:
        # asyncio.set_event_loop sets the event loop for this thread only
        new_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(new_loop)
        return new_loop
