class AgentError(Exception):
    """Base class for agent failures that should reach the process owner."""


class ConfigError(AgentError):
    pass


class TransportError(AgentError):
    """The messaging transport could not be (re)established."""
