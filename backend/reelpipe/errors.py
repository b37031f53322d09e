"""Error taxonomy shared by the repository, adapters and the run executor."""

from typing import Optional


class ReelpipeError(Exception):
    """Base class for all orchestrator errors surfaced to callers."""


class NotFoundError(ReelpipeError):
    """Requested project, plan version, scene or run does not exist."""


class PlanValidationError(ReelpipeError):
    """Malformed input or a plan version in the wrong state (e.g. not approved)."""


class OwnershipError(ReelpipeError):
    """A request references a plan version / scene pair that does not match ownership."""


class PlanLockedError(ReelpipeError):
    """The plan version is locked by an active run."""


class SceneLockedError(ReelpipeError):
    """The scene is locked against content edits."""


class AlreadyLockedError(ReelpipeError):
    """Another run is already active for this plan version."""


class AlreadyTerminalError(ReelpipeError):
    """The run already reached a terminal state."""


class ConsistencyError(ReelpipeError):
    """An invariant of the run state machine was violated."""


class AdapterError(ReelpipeError):
    """Failure raised by a capability adapter, classified at the point of origin."""

    transient: bool = False
    kind: str = "adapter"

    def __init__(self, message: str, *, capability: Optional[str] = None):
        super().__init__(message)
        self.capability = capability


class TransientAdapterError(AdapterError):
    """Timeout, rate limit or temporary unavailability; eligible for retry."""

    transient = True
    kind = "transient"


class PermanentAdapterError(AdapterError):
    """Invalid credentials, content-policy rejection, malformed input; never retried."""

    transient = False
    kind = "permanent"
