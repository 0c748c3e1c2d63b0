"""Error taxonomy for cluster provisioning."""
from enum import Enum
from typing import Any, Optional

INCOMPATIBLE_FLAGS = "cannot be used at the same time"


class EksforgeError(Exception):
    """Base class for every error raised by eksforge."""


class InvalidSpecification(EksforgeError, ValueError):
    """The cluster specification is malformed or violates an invariant."""


class ConfigurationConflict(EksforgeError):
    """Two mutually exclusive inputs were given together."""

    def __init__(self, first: str, second: str):
        self.flags = (first, second)
        super().__init__(f"{first} and {second} {INCOMPATIBLE_FLAGS}")


class CapabilityUnsupported(EksforgeError):
    """The requested feature needs a newer control-plane version."""

    def __init__(self, feature: str, version: str, minimum: Optional[str] = None):
        self.feature = feature
        self.version = version
        self.minimum = minimum
        if minimum:
            message = f"{feature} requires Kubernetes {minimum} or newer, cluster version is {version}"
        else:
            message = f"{feature} is not supported for Kubernetes {version}"
        super().__init__(message)
        self.message = message


class InsufficientResources(EksforgeError):
    """Existing infrastructure cannot satisfy the specification."""


class FailureKind(str, Enum):
    GENERIC = "generic"
    CAPABILITY_UNSUPPORTED = "capability_unsupported"


class TaskFailure(EksforgeError):
    """A leaf task (or a group that could not be entered) failed.

    ``payload`` is the original exception; ``kind`` tags failures the
    workflow reports differently.
    """

    def __init__(
        self,
        task_name: str,
        payload: Any,
        kind: FailureKind = FailureKind.GENERIC,
        task: Any = None,
    ):
        self.task_name = task_name
        self.payload = payload
        self.kind = kind
        self.task = task
        super().__init__(f"{task_name}: {payload}")

    @property
    def is_capability_error(self) -> bool:
        return self.kind is FailureKind.CAPABILITY_UNSUPPORTED
