"""Custom exceptions for game network plugins."""

from enum import Enum


class GameNetworkError(Exception):
    """Base exception for all game network errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ConfigurationError(GameNetworkError):
    """Exception raised for provider configuration and registration errors."""

    pass


class PluginErrorType(str, Enum):
    """Kinds of plugin failures, used as event reasons."""

    API_CALL_ERROR = "apiCallError"
    INTERNAL_ERROR = "internalError"
    PARAMETER_ERROR = "parameterError"
    NOT_IMPLEMENTED_ERROR = "notImplementedError"
    RESOURCE_NOT_READY = "resourceNotReady"
    PORT_EXHAUSTED = "portExhausted"


class PluginError(GameNetworkError):
    """Exception raised by a network plugin lifecycle call."""

    def __init__(self, error_type: PluginErrorType, message: str, details: str = None):
        self.error_type = PluginErrorType(error_type)
        super().__init__(message, details)

    def __repr__(self) -> str:
        return f"PluginError({self.error_type.value}, {self.message!r})"


class PortExhaustedError(PluginError):
    """Exception raised when an allocation key has too few free units."""

    def __init__(self, key: str, requested: int, available: int):
        self.key = key
        self.requested = requested
        self.available = available
        super().__init__(
            PluginErrorType.PORT_EXHAUSTED,
            f"Not enough ports for {key}: requested {requested}, available {available}",
            "Widen the configured port range or reduce ports per pod",
        )


def to_plugin_error(err: Exception | None, error_type: PluginErrorType) -> PluginError | None:
    """Wrap an arbitrary exception as a PluginError of the given kind.

    PluginErrors pass through untouched so the original kind is kept.
    """
    if err is None:
        return None
    if isinstance(err, PluginError):
        return err
    return PluginError(error_type, str(err))
