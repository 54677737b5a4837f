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
import inspect
import logging
import time
from collections import abc
from typing import Optional, Union

from tasklife.data.model import Task
from tasklife.store import InMemoryResourceStore


async def retry_limited(
    fun: Union[abc.Callable[..., bool], abc.Callable[..., abc.Awaitable[bool]]],
    timeout: float,
    interval: float = 0.01,
    *args: object,
    **kwargs: object,
) -> None:
    async def fun_wrapper() -> bool:
        if inspect.iscoroutinefunction(fun):
            return await fun(*args, **kwargs)
        else:
            return fun(*args, **kwargs)

    start = time.time()
    result = await fun_wrapper()
    while time.time() - start < timeout and not result:
        await asyncio.sleep(interval)
        result = await fun_wrapper()
    if not result:
        raise asyncio.TimeoutError(f"Wait condition was not reached after {timeout} seconds")


def no_error_in_logs(caplog, levels=[logging.ERROR]):
    for logger_name, log_level, message in caplog.record_tuples:
        assert log_level not in levels, f"{logger_name} {log_level} {message}"


def log_contains(caplog, loggerpart, level, msg):
    close = []
    for logger_name, log_level, message in caplog.record_tuples:
        if msg in message:
            if loggerpart in logger_name and level == log_level:
                return
            else:
                close.append((logger_name, log_level, message))
    if close:
        print("found nearly matching log entry")
        for logger_name, log_level, message in close:
            print(logger_name, log_level, message)
        print("------------")

    assert False, "could not find " + msg


class LogSequence(object):
    def __init__(self, caplog, index=0):
        """
        :param caplog: caplog fixture
        :param index: start index in the log
        """
        self.caplog = caplog
        self.index = index

    def _find(self, loggerpart, level, msg, after=0):
        for i, (logger_name, log_level, message) in enumerate(self.caplog.record_tuples[after:]):
            if msg in message and loggerpart in logger_name and level == log_level:
                return i + after
        return -1

    def contains(self, loggerpart, level, msg):
        index = self._find(loggerpart, level, msg, self.index)
        assert index >= 0, "could not find " + msg
        return LogSequence(self.caplog, index + 1)


class ContendedStore(InMemoryResourceStore):
    """
    A store where a concurrent writer updates the object right before every conditional write of the client, so the write
    of the client conflicts.

    :param conflicts: The number of writes that conflict, None to let every write conflict.
    """

    def __init__(self, conflicts: Optional[int] = None, latency: float = 0.0) -> None:
        super().__init__(latency=latency)
        self.conflicts = conflicts
        self.competing_writes = 0
        self.update_calls = 0

    async def update(self, namespace: str, task: Task) -> Task:
        self.update_calls += 1
        if self.conflicts is None or self.competing_writes < self.conflicts:
            current = self._lookup(namespace, task.name)
            await super().update(namespace, current)
            self.competing_writes += 1
        return await super().update(namespace, task)


class RecordingStore(ContendedStore):
    """
    A contended store that records every read and write in the shared events list
    """

    def __init__(self, events: list[tuple[str, Optional[str]]], conflicts: Optional[int] = None) -> None:
        super().__init__(conflicts=conflicts)
        self.events = events

    async def get(self, namespace: str, name: str) -> Task:
        result = await super().get(namespace, name)
        self.events.append(("read", result.version))
        return result

    async def update(self, namespace: str, task: Task) -> Task:
        self.events.append(("write", task.version))
        return await super().update(namespace, task)


class UnreachableStore(InMemoryResourceStore):
    """
    A store that fails with the given exception on every call after the first ``healthy_calls`` calls
    """

    def __init__(self, error: Exception, healthy_calls: int = 0) -> None:
        super().__init__()
        self.error = error
        self.healthy_calls = healthy_calls
        self.calls = 0

    async def _round_trip(self) -> None:
        self.calls += 1
        if self.calls > self.healthy_calls:
            raise self.error
        await super()._round_trip()

