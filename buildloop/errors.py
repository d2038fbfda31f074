# buildloop/errors.py
"""
Error taxonomy shared by queues, workers and the iteration agent.

Every error carries a ``retryable`` flag. Workers consult it to decide whether
a failed attempt goes back to the queue (transient) or fails the job for good
(logic). Exceptions that are not BuildLoopError are treated as transient.
"""


class BuildLoopError(Exception):
    """Base class for all buildloop errors."""

    retryable: bool = False


class QueueUnavailable(BuildLoopError):
    """The queue's backing store could not be reached."""

    retryable = True


class ModelUnavailable(BuildLoopError):
    """The model provider timed out or returned a transport error."""

    retryable = True


class ProviderDeployFailure(BuildLoopError):
    """The deployment provider reported a failure or could not be reached."""

    retryable = True

    def __init__(self, message: str, logs: str | None = None) -> None:
        super().__init__(message)
        self.logs = logs


class AgentError(BuildLoopError):
    """
    Logic failure of the iteration agent.

    Not retried: running the same conversation again is unlikely to help.
    """

    def __init__(self, message: str, validation_errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.validation_errors = validation_errors or []


class ValidationExhausted(AgentError):
    """Every proposed ChangeSet failed validation before the turn budget ran out."""


class NoChangesProduced(AgentError):
    """The model finished without ever proposing changes."""


class MaxTurnsExceeded(AgentError):
    """The turn budget ran out."""


class PersistConflict(BuildLoopError):
    """Another writer claimed the same version number first."""


class BuildCancelled(BuildLoopError):
    """The user cancelled the build while it was running."""


class ProjectNotFound(BuildLoopError):
    """The job references a project that does not exist."""


class JobAlreadyActive(BuildLoopError):
    """An exclusive enqueue found an open job for the same project."""


class ConfigurationError(BuildLoopError):
    """A required setting (API key, provider URL) is missing or invalid."""
