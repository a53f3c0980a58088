"""Exception taxonomy for agent runs."""

from __future__ import annotations

ABORT_MESSAGE = "Aborted by user"


class TermpilotError(Exception):
    """Base class for errors raised by the orchestrator."""


class PermissionDenied(TermpilotError):
    def __init__(self, message: str = "User denied command execution.") -> None:
        super().__init__(message)


class UserAborted(TermpilotError):
    def __init__(self, message: str = "Agent aborted by user.") -> None:
        super().__init__(message)


class ToolCommandError(TermpilotError):
    """A command ran (or tried to) and the outcome goes back to the model as text."""


class CommandTimeout(ToolCommandError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:g}s")


class CommandFailed(ToolCommandError):
    def __init__(self, exit_code: int, stderr: str) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Exit Code {exit_code}: {stderr}")


class DriverError(TermpilotError):
    """The model driver could not complete a request."""
