"""Error taxonomy for template validation, planning and execution.

Validation and planning errors (SchemaViolation, UnresolvedReference,
ConstraintViolation, CyclicDependency, PlanConflict) are raised before any
remote call is issued. Remote errors are raised by RemoteStore
implementations; the executor turns their final outcome into ActionFailed.
"""

from __future__ import annotations

from collections.abc import Iterable


class StackError(Exception):
    """Base class for all stack controller errors."""

    pass


class TemplateLoadError(StackError):
    """Raised when a template file cannot be read or parsed."""

    pass


class ValidationError(StackError):
    """Base class for template validation failures.

    Attributes:
        names: Logical names (resources, parameters, outputs) at fault.
    """

    def __init__(self, message: str, names: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.names: list[str] = list(names)


class SchemaViolation(ValidationError):
    """A required property is missing or a value has the wrong shape."""

    pass


class UnresolvedReference(ValidationError):
    """A reference points at nothing declared or imported."""

    pass


class ConstraintViolation(ValidationError):
    """A parameter value fails its declared pattern, range or length."""

    pass


class CyclicDependency(ValidationError):
    """The dependency graph contains a cycle.

    Attributes:
        cycle: Member resources of the detected cycle, in edge order.
    """

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Circular dependency detected involving: {cycle}", names=cycle
        )
        self.cycle = cycle


class PlanConflict(StackError):
    """Two unordered actions would mutate the same remote identifier."""

    def __init__(self, remote_id: str, actions: list[str]) -> None:
        super().__init__(
            f"Actions {actions} would race on remote identifier '{remote_id}'"
        )
        self.remote_id = remote_id
        self.actions = actions


class RemoteError(StackError):
    """Base class for errors reported by the remote resource store."""

    pass


class TransientRemoteError(RemoteError):
    """Throttling or eventual-consistency failure, safe to retry."""

    pass


class PermanentRemoteError(RemoteError):
    """Failure that will not go away on retry."""

    pass


class ActionFailed(StackError):
    """A plan action could not be applied.

    Attributes:
        key: Key of the failed action.
        cause: Underlying error.
    """

    def __init__(self, key: str, cause: BaseException) -> None:
        super().__init__(f"Action '{key}' failed: {cause}")
        self.key = key
        self.cause = cause
