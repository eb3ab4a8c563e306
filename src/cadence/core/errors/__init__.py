"""Error taxonomy, exceptions and classification.

Re-exports the public symbols of the errors package.
"""

from cadence.core.errors.codes import ErrorCategory
from cadence.core.errors.exceptions import (
    CadenceError,
    ConfigurationError,
    ProtocolValidationError,
    RunCancelledError,
    UnhandledMessageTypeError,
)
from cadence.core.errors.classifier import (
    ClassifiedFailure,
    ErrorClassifier,
    classify_error,
    describe_error,
    error_message,
    normalize_error_message,
)

__all__ = [
    "ErrorCategory",
    "CadenceError",
    "ConfigurationError",
    "ProtocolValidationError",
    "RunCancelledError",
    "UnhandledMessageTypeError",
    "ClassifiedFailure",
    "ErrorClassifier",
    "classify_error",
    "describe_error",
    "error_message",
    "normalize_error_message",
]
