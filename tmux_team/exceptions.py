"""
Exceptions raised by the tmux team runtime.

Only hard preconditions (missing tmux, not inside a tmux session, unknown
agent kind, bad job id, incomplete team config) are raised to callers.
Transport failures inside polling loops are caught where they happen.
"""


class TeamError(Exception):
    """Base class for all tmux team errors."""


class TmuxUnavailableError(TeamError):
    """The tmux binary is missing or not working."""


class TmuxSessionRequiredError(TeamError):
    """Team mode was started outside an active tmux session."""


class TmuxCommandError(TeamError):
    """A single tmux invocation failed (non-zero exit, timeout, missing binary)."""

    def __init__(self, args, returncode=None, stderr=""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"tmux {' '.join(self.command)} failed (rc={returncode}): {stderr.strip()}"
        )


class UnknownAgentTypeError(TeamError):
    """The requested worker kind has no CLI contract."""


class AgentCliUnavailableError(TeamError):
    """The worker CLI binary for an agent kind is not installed."""


class InvalidJobIdError(TeamError):
    """A job id did not match the allowed pattern."""


class InvalidTeamConfigError(TeamError):
    """A team config is missing required fields."""
