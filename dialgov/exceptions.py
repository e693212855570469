"""
dialgov Exceptions

Custom exception classes for the governance engine.
"""


class DialGovException(Exception):
    """Base exception for dialgov."""
    pass


class ValidationError(DialGovException):
    """Vote is malformed or refers to an unknown parameter or token."""
    pass


class ParameterPathError(ValidationError):
    """Parameter path does not resolve to a leaf of the parameter tree."""
    pass


class TransportError(DialGovException):
    """Message fetch or send failed."""
    pass


class ResolutionError(TransportError):
    """Large-content reference could not be resolved."""
    pass


class ExecutionError(DialGovException):
    """External execution endpoint rejected or failed the call."""
    pass


class SnapshotPublishError(DialGovException):
    """State snapshot could not be published."""
    pass


class ConfigurationError(DialGovException):
    """Configuration error."""
    pass
