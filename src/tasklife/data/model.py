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

import datetime
import re
import uuid
from typing import Optional

import pydantic

from tasklife import const
from tasklife.types import BaseModel

NAME_PATTERN = re.compile(const.NAME_REGEX)


def check_name(name: str) -> str:
    """
    Check that the given name is a valid object name: a lowercase DNS-1123 subdomain
    """
    if len(name) > const.NAME_MAX_LENGTH:
        raise ValueError("name %s is longer than %d characters" % (name, const.NAME_MAX_LENGTH))
    if not NAME_PATTERN.fullmatch(name):
        raise ValueError(
            "name %r must consist of lower case alphanumeric characters, '-' or '.',"
            " and must start and end with an alphanumeric character" % name
        )
    return name


class Step(BaseModel):
    """
    A single step of a task

    :param name: The name of the step, unique within the task.
    :param image: The image of the environment the step is executed in.
    :param command: The argument vector that is executed.
    """

    name: str
    image: str
    command: list[str] = []


class TaskSpec(BaseModel):
    """
    The desired state of a task: an ordered list of steps. The lifecycle client never interprets it.
    """

    steps: list[Step] = []


class OwnerReference(BaseModel):
    name: str
    uid: uuid.UUID


class ObjectMeta(BaseModel):
    """
    Metadata of a stored object

    :param name: Unique within a namespace. Can not be changed once the object exists.
    :param namespace: The namespace the object lives in, set by the store.
    :param version: Opaque token, assigned by the store on every successful write. Writes are only accepted when they carry
        the version that is currently stored.
    :param uid: Identifies this incarnation of the object. A deleted and recreated object gets a new uid.
    :param generation: Incremented by the store every time the spec changes.
    :param creation_timestamp: The moment the store created the object.
    :param labels: Caller defined key value pairs.
    :param owner_references: The objects that own this object. Used to propagate deletes.
    """

    name: str
    namespace: Optional[str] = None
    version: Optional[str] = None
    uid: Optional[uuid.UUID] = None
    generation: int = 0
    creation_timestamp: Optional[datetime.datetime] = None
    labels: dict[str, str] = {}
    owner_references: list[OwnerReference] = []

    @pydantic.field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return check_name(v)


class Task(BaseModel):
    """
    A versioned task object as it is stored in the resource store
    """

    metadata: ObjectMeta
    spec: TaskSpec = TaskSpec()

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.namespace

    @property
    def version(self) -> Optional[str]:
        return self.metadata.version

    def is_owned_by(self, owner: "Task") -> bool:
        return any(ref.name == owner.name and ref.uid == owner.metadata.uid for ref in self.metadata.owner_references)

    def owner_reference(self) -> OwnerReference:
        """
        Return a reference to this object that can be added to the owner references of a dependent
        """
        if self.metadata.uid is None:
            raise ValueError("Object %s has not been stored yet" % self.name)
        return OwnerReference(name=self.name, uid=self.metadata.uid)
