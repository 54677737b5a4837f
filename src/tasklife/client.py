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
from asyncio import run_coroutine_threadsafe
from collections.abc import Awaitable, Callable, Mapping
from typing import Optional, TypeVar, Union

import pydantic

from tasklife import config, const, exceptions, util
from tasklife.data.model import ObjectMeta, OwnerReference, Task, TaskSpec
from tasklife.retry import RetryPolicy
from tasklife.store import ResourceStore
from tasklife.util import Deadline

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

SpecInput = Union[TaskSpec, Mapping[str, object]]
"""
A spec, either as model or in its dict form
"""

Mutator = Callable[[TaskSpec], SpecInput]
"""
Function that receives a private copy of the current spec and returns the desired spec. It may modify the copy in place and
return it. It can be called several times for a single update, so it must not have side effects outside the spec it returns.
"""


class ResourceLifecycleClient:
    """
    Create, read, update, list and delete tasks in a single namespace of a resource store.

    Updates use optimistic concurrency: the client reads the current object, applies the caller's mutator and writes the
    result on condition that nobody else wrote in between. When the store reports a conflict, the cycle is repeated on the
    new state, with exponential backoff, until the retry policy runs out of attempts. The client holds no locks and caches
    no state between calls.

    Every operation accepts two keyword arguments to bound it:

    - ``timeout``: the number of seconds the whole operation, retries included, may take. When omitted the request timeout
      of the client is used. 0 means no limit.
    - ``cancel``: an event the caller can set to abort the operation.

    When either fires, the operation stops without sending any further write and raises
    :class:`tasklife.exceptions.Cancelled`.

    :param store: The store to operate on.
    :param namespace: The namespace to work in, defaults to the ``client.namespace`` config option.
    :param retry_policy: How conflicting updates are retried, defaults to the ``retry`` config section.
    :param request_timeout: The default timeout of an operation, defaults to the ``client.request-timeout`` config option.
        0 means no limit.
    """

    def __init__(
        self,
        store: ResourceStore,
        namespace: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        request_timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self.namespace: str = namespace if namespace is not None else config.client_namespace.get()
        self.retry_policy: RetryPolicy = retry_policy if retry_policy is not None else RetryPolicy.from_config()
        if request_timeout is None:
            self.request_timeout: Optional[float] = config.client_request_timeout.get()
        else:
            self.request_timeout = request_timeout or None

    def _deadline(self, timeout: Optional[float], cancel: Optional[asyncio.Event]) -> Deadline:
        if timeout is None:
            timeout = self.request_timeout
        return Deadline(timeout or None, cancel)

    async def _call(self, deadline: Deadline, operation: const.Operation, name: Optional[str], call: Awaitable[T]) -> T:
        """
        Perform a single request on the store and attach the context of the operation to any error it raises
        """
        try:
            return await deadline.run(call)
        except exceptions.LifecycleException as e:
            raise e.annotate(operation.value, name, self.namespace)
        except Exception as e:
            raise exceptions.StoreUnavailable(
                str(e) or type(e).__name__, operation=operation.value, name=name, namespace=self.namespace
            ) from e

    def _validate_spec(self, spec: object, operation: const.Operation, name: str) -> TaskSpec:
        try:
            if isinstance(spec, TaskSpec):
                return spec.model_copy(deep=True)
            return TaskSpec.model_validate(spec)
        except pydantic.ValidationError as e:
            raise exceptions.InvalidResource(
                "invalid spec", operation=operation.value, name=name, namespace=self.namespace, details={"errors": e.errors()}
            ) from e

    async def create(
        self,
        name: str,
        spec: SpecInput,
        *,
        labels: Optional[Mapping[str, str]] = None,
        owner_references: Optional[list[OwnerReference]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Task:
        """
        Create a new task

        :param name: The name of the task, unique in the namespace.
        :param spec: The steps of the task.
        :param labels: Labels to attach to the task.
        :param owner_references: The objects that own this task. When they are deleted, this task is deleted or orphaned
            according to the propagation policy of that delete.
        :return: The task as stored, with the version assigned by the store.
        :raises AlreadyExists: A task with this name exists.
        :raises InvalidResource: The name or the spec is not valid.
        """
        operation = const.Operation.create
        deadline = self._deadline(timeout, cancel)
        task_spec = self._validate_spec(spec, operation, name)
        try:
            metadata = ObjectMeta(name=name, labels=dict(labels or {}), owner_references=list(owner_references or []))
        except pydantic.ValidationError as e:
            raise exceptions.InvalidResource(
                "invalid metadata",
                operation=operation.value,
                name=name,
                namespace=self.namespace,
                details={"errors": e.errors()},
            ) from e
        task = Task(metadata=metadata, spec=task_spec)

        LOGGER.debug("Creating task %s in namespace %s", name, self.namespace)
        created = await self._call(deadline, operation, name, self._store.create(self.namespace, task))
        LOGGER.info("Created task %s/%s at version %s", self.namespace, name, created.version)
        return created

    async def get(self, name: str, *, timeout: Optional[float] = None, cancel: Optional[asyncio.Event] = None) -> Task:
        """
        Return the current state of a task

        :raises NotFound: No task with this name exists.
        """
        deadline = self._deadline(timeout, cancel)
        return await self._call(deadline, const.Operation.get, name, self._store.get(self.namespace, name))

    async def update(
        self,
        name: str,
        mutator: Mutator,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Task:
        """
        Change the spec of a task, retrying when a concurrent writer got there first.

        Every attempt reads the task, calls ``mutator`` with a copy of the spec it just read and writes the result,
        conditional on the version that was read. A conflicting write is discarded and the attempt is repeated after a
        backoff delay. Any other error ends the update.

        :param name: The name of the task to update.
        :param mutator: Returns the new spec, given the current one. Called once per attempt.
        :return: The task as stored by the successful write.
        :raises NotFound: The task does not exist, or was deleted while retrying.
        :raises RetriesExhausted: Every attempt the retry policy allows conflicted.
        :raises Cancelled: The operation was cancelled or ran past its timeout.
        """
        operation = const.Operation.update
        deadline = self._deadline(timeout, cancel)
        policy = self.retry_policy
        last_conflict: Optional[exceptions.Conflict] = None

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = policy.get_delay(attempt - 1)
                LOGGER.info(
                    "Update of %s/%s conflicted with a concurrent write, attempt %d in %.3f seconds",
                    self.namespace,
                    name,
                    attempt,
                    delay,
                )
                try:
                    await deadline.sleep(delay)
                except exceptions.Cancelled as e:
                    raise e.annotate(operation.value, name, self.namespace)

            current = await self._call(deadline, operation, name, self._store.get(self.namespace, name))
            LOGGER.debug("Update attempt %d of %s/%s, based on version %s", attempt, self.namespace, name, current.version)

            candidate = current.model_copy(deep=True)
            candidate.spec = self._validate_spec(mutator(current.spec.model_copy(deep=True)), operation, name)

            try:
                updated = await self._call(deadline, operation, name, self._store.update(self.namespace, candidate))
            except exceptions.Conflict as e:
                last_conflict = e
                continue

            LOGGER.info(
                "Updated task %s/%s from version %s to %s", self.namespace, name, current.version, updated.version
            )
            return updated

        LOGGER.warning("Giving up on the update of %s/%s after %d attempts", self.namespace, name, policy.max_attempts)
        raise exceptions.RetriesExhausted(
            "gave up after %d attempts" % policy.max_attempts,
            attempts=policy.max_attempts,
            operation=operation.value,
            name=name,
            namespace=self.namespace,
        ) from last_conflict

    async def list(self, *, timeout: Optional[float] = None, cancel: Optional[asyncio.Event] = None) -> list[Task]:
        """
        Return all tasks in the namespace, in the order of the store. Each of them reflects some committed state.
        """
        deadline = self._deadline(timeout, cancel)
        return await self._call(deadline, const.Operation.list, None, self._store.list(self.namespace))

    async def delete(
        self,
        name: str,
        propagation: const.PropagationPolicy = const.PropagationPolicy.foreground,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Delete a task

        With foreground propagation a partial cleanup may be in flight when this call fails. Don't re-issue the delete in a
        loop, use :meth:`wait_for_deletion` to observe the end state instead.

        :param propagation: What happens to the objects owned by this task.
        :raises NotFound: The task does not exist.
        """
        operation = const.Operation.delete
        try:
            propagation = const.PropagationPolicy(propagation)
        except ValueError as e:
            raise exceptions.InvalidResource(
                "unknown propagation policy %s" % propagation, operation=operation.value, name=name, namespace=self.namespace
            ) from e
        deadline = self._deadline(timeout, cancel)
        await self._call(deadline, operation, name, self._store.delete(self.namespace, name, propagation))
        LOGGER.info("Deleted task %s/%s with %s propagation", self.namespace, name, propagation.value)

    async def wait_for_deletion(
        self,
        name: str,
        interval: float = 0.5,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Poll the store until the task is gone
        """
        operation = const.Operation.wait_for_deletion
        deadline = self._deadline(timeout, cancel)
        if deadline.timeout is None and cancel is None:
            raise ValueError("Waiting for a deletion requires a timeout or a cancellation event")
        while True:
            try:
                await self._call(deadline, operation, name, self._store.get(self.namespace, name))
            except exceptions.NotFound:
                return
            LOGGER.debug("Task %s/%s still exists, checking again in %s seconds", self.namespace, name, interval)
            try:
                await deadline.sleep(interval)
            except exceptions.Cancelled as e:
                raise e.annotate(operation.value, name, self.namespace)


class SyncResourceLifecycleClient:
    """
    A blocking version of :class:`ResourceLifecycleClient` for callers that don't run an event loop

    :param client: The client to delegate to.
    :param ioloop: A running event loop on another thread to schedule the calls on. If not given, the calls run on an event
        loop owned by this object, on the calling thread.
    """

    def __init__(self, client: ResourceLifecycleClient, ioloop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._client = client
        self._ioloop = ioloop
        self._own_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def namespace(self) -> str:
        return self._client.namespace

    def _run(self, awaitable: Awaitable[T]) -> T:
        if self._ioloop is not None:
            # loop is running on different thread
            return run_coroutine_threadsafe(awaitable, self._ioloop).result()
        if self._own_loop is None or self._own_loop.is_closed():
            self._own_loop = util.ensure_event_loop()
        return self._own_loop.run_until_complete(awaitable)

    def run(self, awaitable: Awaitable[T]) -> T:
        """
        Run any coroutine on the event loop of this client, e.g. to drive the store it uses
        """
        return self._run(awaitable)

    def close(self) -> None:
        if self._own_loop is not None and not self._own_loop.is_closed():
            self._own_loop.close()
        self._own_loop = None

    def create(self, name: str, spec: SpecInput, **kwargs: object) -> Task:
        return self._run(self._client.create(name, spec, **kwargs))

    def get(self, name: str, **kwargs: object) -> Task:
        return self._run(self._client.get(name, **kwargs))

    def update(self, name: str, mutator: Mutator, **kwargs: object) -> Task:
        return self._run(self._client.update(name, mutator, **kwargs))

    def list(self, **kwargs: object) -> list[Task]:
        return self._run(self._client.list(**kwargs))

    def delete(
        self, name: str, propagation: const.PropagationPolicy = const.PropagationPolicy.foreground, **kwargs: object
    ) -> None:
        self._run(self._client.delete(name, propagation, **kwargs))

    def wait_for_deletion(self, name: str, interval: float = 0.5, **kwargs: object) -> None:
        self._run(self._client.wait_for_deletion(name, interval, **kwargs))
