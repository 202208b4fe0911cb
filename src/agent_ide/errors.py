from __future__ import annotations


class AgentIdeError(Exception):
    """Base class for errors raised by the terminal orchestrator."""


class ConfigurationError(AgentIdeError):
    """Missing credentials, unsupported provider or an invalid settings file."""


class SpawnError(AgentIdeError):
    """The provider executable could not be launched."""


class GitError(AgentIdeError):
    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class GitLockError(GitError):
    """The repository index lock is held and is not old enough to be considered stale."""


class NothingToCommitError(GitError):
    pass
