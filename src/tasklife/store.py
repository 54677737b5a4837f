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

import abc
import asyncio
import datetime
import itertools
import logging
import uuid
from collections import defaultdict
from typing import AbstractSet

from tasklife import const, exceptions
from tasklife.data.model import Task
from tasklife.util import TaskHandler

LOGGER = logging.getLogger(__name__)


class ResourceStore(abc.ABC):
    """
    The control plane store the lifecycle client works against. Objects are keyed by name within a namespace.

    Every successful write assigns a new version to the stored object. ``update`` is a conditional write: it is only accepted
    when the version of the submitted object equals the version that is currently stored, otherwise
    :class:`tasklife.exceptions.Conflict` is raised.

    Implementations raise :class:`tasklife.exceptions.StoreUnavailable` for transport or infrastructure failures.
    """

    @abc.abstractmethod
    async def create(self, namespace: str, task: Task) -> Task:
        """
        Store a new object. Raises AlreadyExists when the name is taken.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    async def get(self, namespace: str, name: str) -> Task:
        """
        Return the current state of an object. Raises NotFound.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    async def update(self, namespace: str, task: Task) -> Task:
        """
        Replace an object, on condition that task.version is the current version. Raises Conflict or NotFound.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    async def list(self, namespace: str) -> list[Task]:
        raise NotImplementedError()

    @abc.abstractmethod
    async def delete(self, namespace: str, name: str, propagation: const.PropagationPolicy) -> None:
        """
        Remove an object and handle its dependents according to the propagation policy. Raises NotFound.
        """
        raise NotImplementedError()


class InMemoryResourceStore(ResourceStore):
    """
    A resource store that keeps all objects in memory, in the event loop it is used from.

    Versions are drawn from a single counter shared by all namespaces, so they increase with every write. Objects are copied
    on the way in and on the way out: callers never share state with the store.

    Delete propagation only removes a dependent when none of its owners remains. A dependent that still has another live
    owner loses the reference to the deleted owner instead.

    :param latency: The time in seconds every call takes, before it is applied. Increases the interleaving of concurrent
        callers.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._objects: dict[str, dict[str, Task]] = defaultdict(dict)
        self._versions = itertools.count(1)
        self._garbage_collector: TaskHandler[None] = TaskHandler()

    def _next_version(self) -> str:
        return str(next(self._versions))

    async def _round_trip(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)

    def _lookup(self, namespace: str, name: str) -> Task:
        try:
            return self._objects[namespace][name]
        except KeyError:
            raise exceptions.NotFound(name=name, namespace=namespace)

    def _dependents(self, namespace: str, owner: Task) -> list[Task]:
        return [task for task in self._objects[namespace].values() if task.is_owned_by(owner)]

    async def create(self, namespace: str, task: Task) -> Task:
        await self._round_trip()
        name = task.name
        if task.version is not None:
            raise exceptions.InvalidResource("the version of a new object is assigned by the store", name=name)
        if name in self._objects[namespace]:
            raise exceptions.AlreadyExists(name=name, namespace=namespace)

        stored = task.model_copy(deep=True)
        stored.metadata.namespace = namespace
        stored.metadata.version = self._next_version()
        stored.metadata.uid = uuid.uuid4()
        stored.metadata.generation = 1
        stored.metadata.creation_timestamp = datetime.datetime.now(datetime.timezone.utc)
        self._objects[namespace][name] = stored
        LOGGER.debug("Created %s/%s at version %s", namespace, name, stored.version)
        return stored.model_copy(deep=True)

    async def get(self, namespace: str, name: str) -> Task:
        await self._round_trip()
        return self._lookup(namespace, name).model_copy(deep=True)

    async def update(self, namespace: str, task: Task) -> Task:
        await self._round_trip()
        name = task.name
        current = self._lookup(namespace, name)
        if task.version is None:
            raise exceptions.InvalidResource("an update has to carry the version it is based on", name=name)
        if task.version != current.version:
            raise exceptions.Conflict(
                "version %s is outdated, the current version is %s" % (task.version, current.version),
                name=name,
                namespace=namespace,
            )
        if task.metadata.uid is not None and task.metadata.uid != current.metadata.uid:
            raise exceptions.Conflict("the object was replaced", name=name, namespace=namespace)

        stored = current.model_copy(deep=True)
        stored.spec = task.spec.model_copy(deep=True)
        stored.metadata.labels = dict(task.metadata.labels)
        stored.metadata.owner_references = [ref.model_copy() for ref in task.metadata.owner_references]
        if stored.spec != current.spec:
            stored.metadata.generation += 1
        stored.metadata.version = self._next_version()
        self._objects[namespace][name] = stored
        LOGGER.debug("Updated %s/%s from version %s to %s", namespace, name, current.version, stored.version)
        return stored.model_copy(deep=True)

    async def list(self, namespace: str) -> list[Task]:
        await self._round_trip()
        return [self._objects[namespace][name].model_copy(deep=True) for name in sorted(self._objects[namespace])]

    async def delete(self, namespace: str, name: str, propagation: const.PropagationPolicy) -> None:
        try:
            propagation = const.PropagationPolicy(propagation)
        except ValueError:
            raise exceptions.InvalidResource("unknown propagation policy %s" % propagation, name=name)
        await self._round_trip()
        owner = self._lookup(namespace, name)
        if propagation is const.PropagationPolicy.foreground:
            self._delete_tree(namespace, owner, set())
        elif propagation is const.PropagationPolicy.background:
            del self._objects[namespace][name]
            self._garbage_collector.add_background_task(self._collect_dependents(namespace, owner))
        else:
            del self._objects[namespace][name]
            self._orphan_dependents(namespace, owner)
        LOGGER.debug("Deleted %s/%s with %s propagation", namespace, name, propagation.value)

    def _delete_tree(self, namespace: str, owner: Task, deleting: set[str]) -> None:
        deleting.add(owner.name)
        for dependent in self._dependents(namespace, owner):
            if dependent.name in deleting:
                continue
            if self._has_live_owner(namespace, dependent, deleting):
                self._detach(dependent, owner)
            else:
                self._delete_tree(namespace, dependent, deleting)
        self._objects[namespace].pop(owner.name, None)

    async def _collect_dependents(self, namespace: str, owner: Task) -> None:
        await self._round_trip()
        for dependent in self._dependents(namespace, owner):
            if self._has_live_owner(namespace, dependent):
                self._detach(dependent, owner)
                LOGGER.debug("Kept %s/%s, it has other owners than deleted %s", namespace, dependent.name, owner.name)
                continue
            self._objects[namespace].pop(dependent.name, None)
            LOGGER.debug("Collected %s/%s, owned by deleted %s", namespace, dependent.name, owner.name)
            self._garbage_collector.add_background_task(self._collect_dependents(namespace, dependent))

    def _orphan_dependents(self, namespace: str, owner: Task) -> None:
        for dependent in self._dependents(namespace, owner):
            self._detach(dependent, owner)

    def _has_live_owner(self, namespace: str, dependent: Task, deleting: AbstractSet[str] = frozenset()) -> bool:
        """
        Check if any owner of the dependent still exists and is not about to be deleted
        """
        for ref in dependent.metadata.owner_references:
            if ref.name in deleting:
                continue
            owner = self._objects[namespace].get(ref.name)
            if owner is not None and owner.metadata.uid == ref.uid:
                return True
        return False

    def _detach(self, dependent: Task, owner: Task) -> None:
        """
        Remove the reference to the given owner from a stored dependent. This is a write, so it gets a new version.
        """
        dependent.metadata.owner_references = [
            ref for ref in dependent.metadata.owner_references if ref.uid != owner.metadata.uid
        ]
        dependent.metadata.version = self._next_version()

    async def join(self) -> None:
        """
        Wait until the dependents of all objects deleted with background propagation are removed
        """
        await self._garbage_collector.join()

    async def stop(self) -> None:
        await self._garbage_collector.stop()
