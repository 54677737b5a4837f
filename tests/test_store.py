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

import pytest

from tasklife import const, exceptions
from tasklife.data.model import ObjectMeta, Step, Task, TaskSpec
from tasklife.store import InMemoryResourceStore
from utils import log_contains, retry_limited


def new_task(name: str, *owners: Task, image: str = "ubuntu") -> Task:
    return Task(
        metadata=ObjectMeta(name=name, owner_references=[owner.owner_reference() for owner in owners]),
        spec=TaskSpec(steps=[Step(name="step1", image=image, command=["echo", "Hello"])]),
    )


async def names(store: InMemoryResourceStore, namespace: str = "default") -> list[str]:
    return [task.name for task in await store.list(namespace)]


async def test_create_assigns_metadata(store: InMemoryResourceStore) -> None:
    first = await store.create("default", new_task("first"))
    second = await store.create("other", new_task("second"))

    assert first.namespace == "default"
    assert second.namespace == "other"
    assert int(second.version) > int(first.version)
    assert first.metadata.generation == 1
    assert first.metadata.uid != second.metadata.uid
    assert first.metadata.creation_timestamp is not None


async def test_create_rejects_version(store: InMemoryResourceStore) -> None:
    task = new_task("sample-task")
    task.metadata.version = "12"
    with pytest.raises(exceptions.InvalidResource):
        await store.create("default", task)


async def test_create_duplicate(store: InMemoryResourceStore) -> None:
    await store.create("default", new_task("sample-task"))
    with pytest.raises(exceptions.AlreadyExists) as exc_info:
        await store.create("default", new_task("sample-task"))
    assert exc_info.value.name == "sample-task"
    assert exc_info.value.namespace == "default"
    await store.create("other", new_task("sample-task"))


async def test_returned_objects_are_copies(store: InMemoryResourceStore) -> None:
    created = await store.create("default", new_task("sample-task"))
    created.spec.steps[0].image = "changed"
    fetched = await store.get("default", "sample-task")
    assert fetched.spec.steps[0].image == "ubuntu"
    fetched.metadata.labels["changed"] = "yes"
    assert (await store.get("default", "sample-task")).metadata.labels == {}


async def test_get_not_found(store: InMemoryResourceStore) -> None:
    with pytest.raises(exceptions.NotFound):
        await store.get("default", "missing")


async def test_conditional_update(store: InMemoryResourceStore) -> None:
    created = await store.create("default", new_task("sample-task"))

    first = created.model_copy(deep=True)
    first.spec.steps[0].image = "busybox"
    updated = await store.update("default", first)
    assert updated.spec.steps[0].image == "busybox"
    assert updated.metadata.generation == 2
    assert int(updated.version) > int(created.version)
    assert updated.metadata.uid == created.metadata.uid
    assert updated.metadata.creation_timestamp == created.metadata.creation_timestamp

    stale = created.model_copy(deep=True)
    stale.spec.steps[0].image = "alpine"
    with pytest.raises(exceptions.Conflict):
        await store.update("default", stale)
    assert (await store.get("default", "sample-task")) == updated


async def test_update_without_spec_change_keeps_generation(store: InMemoryResourceStore) -> None:
    created = await store.create("default", new_task("sample-task"))
    created.metadata.labels["team"] = "ci"
    updated = await store.update("default", created)
    assert updated.metadata.generation == 1
    assert updated.metadata.labels == {"team": "ci"}
    assert updated.version != created.version


async def test_update_requires_version(store: InMemoryResourceStore) -> None:
    await store.create("default", new_task("sample-task"))
    with pytest.raises(exceptions.InvalidResource):
        await store.update("default", new_task("sample-task"))


async def test_update_recreated_object(store: InMemoryResourceStore) -> None:
    created = await store.create("default", new_task("sample-task"))
    await store.delete("default", "sample-task", const.PropagationPolicy.foreground)
    with pytest.raises(exceptions.NotFound):
        await store.update("default", created)
    await store.create("default", new_task("sample-task"))
    with pytest.raises(exceptions.Conflict):
        await store.update("default", created)


async def test_update_keeps_namespace_and_name(store: InMemoryResourceStore) -> None:
    created = await store.create("default", new_task("sample-task"))
    created.metadata.namespace = "other"
    updated = await store.update("default", created)
    assert updated.namespace == "default"
    assert await store.list("other") == []


async def test_list(store: InMemoryResourceStore) -> None:
    assert await store.list("default") == []
    for name in ["b", "c", "a"]:
        await store.create("default", new_task(name))
    await store.create("other", new_task("d"))
    assert await names(store) == ["a", "b", "c"]
    assert await names(store, "other") == ["d"]


async def test_delete_not_found(store: InMemoryResourceStore) -> None:
    with pytest.raises(exceptions.NotFound):
        await store.delete("default", "missing", const.PropagationPolicy.foreground)


async def test_delete_unknown_policy(store: InMemoryResourceStore) -> None:
    await store.create("default", new_task("sample-task"))
    with pytest.raises(exceptions.InvalidResource):
        await store.delete("default", "sample-task", "cascade")
    assert await names(store) == ["sample-task"]


async def test_delete_accepts_policy_value(store: InMemoryResourceStore) -> None:
    await store.create("default", new_task("sample-task"))
    await store.delete("default", "sample-task", "orphan")
    assert await names(store) == []


async def test_foreground_delete(store: InMemoryResourceStore) -> None:
    parent = await store.create("default", new_task("parent"))
    child = await store.create("default", new_task("child", parent))
    await store.create("default", new_task("grandchild", child))
    other_owner = await store.create("default", new_task("other-owner"))
    shared = await store.create("default", new_task("shared", parent, other_owner))
    await store.create("default", new_task("unrelated"))

    await store.delete("default", "parent", const.PropagationPolicy.foreground)

    assert await names(store) == ["other-owner", "shared", "unrelated"]
    kept = await store.get("default", "shared")
    assert kept.metadata.owner_references == [other_owner.owner_reference()]
    assert kept.version != shared.version


@pytest.mark.parametrize("propagation", [const.PropagationPolicy.foreground, const.PropagationPolicy.background])
async def test_delete_dependent_reachable_twice(store: InMemoryResourceStore, propagation) -> None:
    a = await store.create("default", new_task("a"))
    b = await store.create("default", new_task("b", a))
    await store.create("default", new_task("c", a, b))
    await store.create("default", new_task("d", b, a))
    await store.create("default", new_task("unrelated"))

    await store.delete("default", "a", propagation)
    await store.join()

    assert await names(store) == ["unrelated"]


async def test_foreground_delete_with_cycle(store: InMemoryResourceStore) -> None:
    a = await store.create("default", new_task("a"))
    b = await store.create("default", new_task("b", a))
    a.metadata.owner_references = [b.owner_reference()]
    await store.update("default", a)

    await store.delete("default", "a", const.PropagationPolicy.foreground)

    assert await names(store) == []


async def test_background_delete_keeps_dependents_with_other_owners(store: InMemoryResourceStore) -> None:
    parent = await store.create("default", new_task("parent"))
    other_owner = await store.create("default", new_task("other-owner"))
    await store.create("default", new_task("shared", parent, other_owner))
    await store.create("default", new_task("owned", parent))

    await store.delete("default", "parent", const.PropagationPolicy.background)
    await store.join()

    assert await names(store) == ["other-owner", "shared"]
    kept = await store.get("default", "shared")
    assert kept.metadata.owner_references == [other_owner.owner_reference()]

    await store.delete("default", "other-owner", const.PropagationPolicy.background)
    await store.join()
    assert await names(store) == []


async def test_background_delete(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="tasklife.store")
    store = InMemoryResourceStore(latency=0.01)
    parent = await store.create("default", new_task("parent"))
    child = await store.create("default", new_task("child", parent))
    await store.create("default", new_task("grandchild", child))

    await store.delete("default", "parent", const.PropagationPolicy.background)
    assert "parent" not in await names(store)

    async def all_collected() -> bool:
        return await names(store) == []

    await retry_limited(all_collected, timeout=5)
    await store.join()
    log_contains(caplog, "tasklife.store", logging.DEBUG, "Collected default/grandchild, owned by deleted child")
    await store.stop()


async def test_background_delete_does_not_touch_recreated_owner(store: InMemoryResourceStore) -> None:
    parent = await store.create("default", new_task("parent"))
    await store.create("default", new_task("child", parent))
    await store.delete("default", "parent", const.PropagationPolicy.background)
    new_parent = await store.create("default", new_task("parent"))
    await store.create("default", new_task("new-child", new_parent))
    await store.join()
    assert await names(store) == ["new-child", "parent"]


async def test_orphan_delete(store: InMemoryResourceStore) -> None:
    parent = await store.create("default", new_task("parent"))
    other_owner = await store.create("default", new_task("other-owner"))
    child = await store.create("default", new_task("child", parent, other_owner))

    await store.delete("default", "parent", const.PropagationPolicy.orphan)
    await store.join()

    assert await names(store) == ["child", "other-owner"]
    orphan = await store.get("default", "child")
    assert orphan.metadata.owner_references == [other_owner.owner_reference()]
    assert orphan.version != child.version

    with pytest.raises(exceptions.Conflict):
        await store.update("default", child)


async def test_stop_cancels_pending_collection() -> None:
    store = InMemoryResourceStore()
    parent = await store.create("default", new_task("parent"))
    await store.create("default", new_task("child", parent))
    await store.delete("default", "parent", const.PropagationPolicy.background)
    store.latency = 10
    await asyncio.sleep(0.01)
    await store.stop()
    store.latency = 0
    assert await names(store) == ["child"]


async def test_latency(store: InMemoryResourceStore) -> None:
    store.latency = 0.05
    loop = asyncio.get_running_loop()
    start = loop.time()
    await store.list("default")
    assert loop.time() - start >= 0.04
