from typing import Dict, Optional


class WibedError(Exception):
    """Base class for node agent errors."""


class ConfigurationError(WibedError):
    """Mandatory node configuration is missing or invalid."""


class TransportError(WibedError):
    """The controller could not be reached or answered with a non-200 status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ResponseError(WibedError):
    """The controller answered, but the body is malformed or reports errors."""

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = errors or {}


class ActionError(WibedError):
    """A lifecycle action (download, hash check, install hook) failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExecutorStartError(WibedError):
    """The command executor did not open its pipe in time."""
