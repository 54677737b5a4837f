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

from typing import Any, Optional

from tasklife.types import JsonType


class LifecycleException(Exception):
    """
    A base exception for all errors raised by the lifecycle client and the resource store.

    The context fields are filled in by the store or by the client when the error passes through it. Classes which extend
    from this class cannot have mandatory arguments in their constructor, so the client can always re-raise a store error
    with the context of the operation attached.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        operation: Optional[str] = None,
        name: Optional[str] = None,
        namespace: Optional[str] = None,
        details: Optional[JsonType] = None,
    ) -> None:
        msg = self.default_message
        if message is not None:
            msg += ": " + message
        super().__init__(msg)
        self.message = msg
        self.operation = operation
        self.name = name
        self.namespace = namespace
        self.details = details

    def annotate(
        self, operation: Optional[str] = None, name: Optional[str] = None, namespace: Optional[str] = None
    ) -> "LifecycleException":
        """
        Fill in the context fields that are not set yet and return this exception
        """
        if self.operation is None:
            self.operation = operation
        if self.name is None:
            self.name = name
        if self.namespace is None:
            self.namespace = namespace
        return self

    def __str__(self) -> str:
        context = []
        if self.operation is not None:
            context.append("operation=%s" % self.operation)
        if self.namespace is not None:
            context.append("namespace=%s" % self.namespace)
        if self.name is not None:
            context.append("name=%s" % self.name)
        out = self.message
        if context:
            out += " (%s)" % ", ".join(context)
        if self.__cause__ is not None:
            out += ", caused by %s: %s" % (type(self.__cause__).__name__, self.__cause__)
        return out

    def to_body(self) -> dict[str, Any]:
        """
        Return a json serializable representation of this error
        """
        body: JsonType = {"message": self.message, "status": self.status_code}
        for key in ("operation", "namespace", "name"):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        if self.__cause__ is not None:
            body["cause"] = str(self.__cause__)
        if self.details is not None:
            body["error_details"] = self.details
        return body

    def to_status(self) -> int:
        return self.status_code


class InvalidResource(LifecycleException):
    """
    This exception is raised when an object is rejected before it is sent to the store (400)
    """

    status_code = 400
    default_message = "Invalid resource"


class NotFound(LifecycleException):
    """
    This exception is used to indicate that the referenced resource does not exist (404)
    """

    status_code = 404
    default_message = "Resource does not exist"


class AlreadyExists(LifecycleException):
    """
    A resource with the same name already exists in the namespace (409)
    """

    status_code = 409
    default_message = "Resource already exists"


class Conflict(LifecycleException):
    """
    The write was based on a version that is no longer the current version of the resource (409)
    """

    status_code = 409
    default_message = "Request conflicts with the current state of the resource"


class RetriesExhausted(LifecycleException):
    """
    The update kept conflicting with concurrent writers until the retry budget was spent
    """

    status_code = 409
    default_message = "Update kept conflicting with concurrent writes"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        attempts: int = 0,
        operation: Optional[str] = None,
        name: Optional[str] = None,
        namespace: Optional[str] = None,
        details: Optional[JsonType] = None,
    ) -> None:
        super().__init__(message, operation=operation, name=name, namespace=namespace, details=details)
        self.attempts = attempts


class Cancelled(LifecycleException):
    """
    The operation was stopped by the cancellation signal or its deadline
    """

    status_code = 499
    default_message = "Operation cancelled"


class StoreUnavailable(LifecycleException):
    """
    The resource store could not be reached or failed to process the request (503)
    """

    status_code = 503
    default_message = "Resource store unavailable"
