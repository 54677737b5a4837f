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

from enum import Enum


class PropagationPolicy(str, Enum):
    """
    How the objects owned by a deleted object are handled
    """

    foreground = "foreground"  # dependents are removed before the owner is gone
    background = "background"  # owner is removed immediately, dependents are removed afterwards
    orphan = "orphan"  # owner is removed, dependents are detached and kept


class Operation(str, Enum):
    create = "create"
    get = "get"
    update = "update"
    list = "list"
    delete = "delete"
    wait_for_deletion = "wait_for_deletion"


DEFAULT_NAMESPACE = "default"

# DNS-1123 subdomain, as used for object names by the control plane
NAME_MAX_LENGTH = 253
NAME_REGEX = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"

ENVIRON_FORCE_TTY = "FORCE_TTY"
ENVIRON_CONFIG_PREFIX = "TASKLIFE"

LOG_LEVEL_TRACE = 3
