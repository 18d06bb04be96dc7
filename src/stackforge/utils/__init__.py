"""Utility modules for logging, AWS client management, and helpers."""

from stackforge.utils.aws_client import AWSClientManager, AWSCredentials
from stackforge.utils.retry import RetryStrategy, RetryResult, RetryError
from stackforge.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    EngineError,
    ValidationError,
    ConfigValidationError,
    DuplicateResourceError,
    MissingVariableError,
    UndeclaredVariableError,
    VariableTypeError,
    UnresolvedReferenceError,
    CycleError,
    PlanConflictError,
    ProviderError,
    CredentialError,
    DependencyError,
    StateError,
    StateLockError,
    StateVersionError,
    StateConflictError,
    ErrorHandler,
    error_handler
)
from stackforge.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',

    # Retry
    'RetryStrategy',
    'RetryResult',
    'RetryError',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'EngineError',
    'ValidationError',
    'ConfigValidationError',
    'DuplicateResourceError',
    'MissingVariableError',
    'UndeclaredVariableError',
    'VariableTypeError',
    'UnresolvedReferenceError',
    'CycleError',
    'PlanConflictError',
    'ProviderError',
    'CredentialError',
    'DependencyError',
    'StateError',
    'StateLockError',
    'StateVersionError',
    'StateConflictError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
