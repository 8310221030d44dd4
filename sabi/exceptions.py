"""Error kinds raised across the agent core."""


class SabiError(Exception):
    """Base exception for sabi."""


class ConfigurationInvalid(SabiError):
    """A required setting is missing or malformed. Fatal at startup."""


class ModelCallFailed(SabiError):
    """The inference service could not produce a reply."""


class MalformedToolCall(SabiError):
    """Model text looked like a tool call but could not be decoded."""


class CommandLaunchFailed(SabiError):
    """The shell could not start the process."""


class CommandBlocked(SabiError):
    """Execution refused because the command needs an interactive terminal."""

    def __init__(self, command: str, suggestion: str):
        super().__init__(f"Cannot run interactive command: {command}\n{suggestion}")
        self.command = command
        self.suggestion = suggestion


class CommandCancelled(SabiError):
    """A running command was terminated on request."""
