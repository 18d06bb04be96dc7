"""Error handling framework for provisioning operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass, asdict
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)
from stackforge.utils.logging import get_logger


class ErrorCategory(Enum):
    """Categories of errors that can occur while provisioning."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    PLAN = "plan"
    PROVIDER = "provider"
    DEPENDENCY = "dependency"
    STATE = "state"
    CREDENTIAL = "credential"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Action failed, remaining plan aborted


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None


class EngineError(Exception):
    """Base exception for every stackforge error."""

    default_category = ErrorCategory.UNKNOWN
    default_severity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None,
        resource_id: Optional[str] = None
    ):
        """Initialize engine error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
            resource_id: Shorthand for ``context.resource_id``
        """
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.severity = severity or self.default_severity
        self.context = context or ErrorContext()
        if resource_id is not None:
            self.context.resource_id = resource_id
        self.cause = cause
        self.suggestions = suggestions or []

    @property
    def resource_id(self) -> Optional[str]:
        return self.context.resource_id

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


# Validation errors: raised before any provider call


class ValidationError(EngineError):
    """Configuration is invalid; fixable by editing the configuration."""

    default_category = ErrorCategory.VALIDATION
    default_severity = ErrorSeverity.CRITICAL


class ConfigValidationError(ValidationError):
    """Configuration file failed schema validation."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class DuplicateResourceError(ValidationError):
    """Two resources share the same (type, name) identity."""


class MissingVariableError(ValidationError):
    """A variable without a default was not given a value."""

    def __init__(self, variable: str, **kwargs):
        super().__init__(
            f"No value for required variable '{variable}'",
            suggestions=[
                f"Pass --var {variable}=<value>",
                f"Set STACKFORGE_VAR_{variable} in the environment",
                f"Add a default for '{variable}' to the configuration",
            ],
            **kwargs
        )
        self.variable = variable


class UndeclaredVariableError(ValidationError):
    """A value was supplied for a variable the configuration does not declare."""


class VariableTypeError(ValidationError):
    """A variable value cannot be coerced to its declared type."""


class UnresolvedReferenceError(ValidationError):
    """A reference points at a resource or variable that does not exist."""


class CycleError(ValidationError):
    """Resource references form a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            resource_id=cycle[0] if cycle else None,
            **kwargs
        )
        self.cycle = cycle


class PlanConflictError(EngineError):
    """Desired resources collide on a provider-enforced uniqueness constraint."""

    default_category = ErrorCategory.PLAN
    default_severity = ErrorSeverity.CRITICAL


# Execution errors


class ProviderError(EngineError):
    """A provider operation failed.

    ``transient`` errors (throttling, timeouts, service unavailability) are
    retried; permanent ones abort the remaining plan with the provider's
    message preserved verbatim.
    """

    default_category = ErrorCategory.PROVIDER

    def __init__(self, message: str, transient: bool = False, code: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.transient = transient
        self.code = code


class CredentialError(ProviderError):
    """Provider credentials are missing or invalid."""

    default_category = ErrorCategory.CREDENTIAL
    default_severity = ErrorSeverity.CRITICAL


class DependencyError(EngineError):
    """An action ran before something it depends on was applied."""

    default_category = ErrorCategory.DEPENDENCY


class StateError(EngineError):
    """Error related to state management."""

    default_category = ErrorCategory.STATE
    default_severity = ErrorSeverity.CRITICAL


class StateLockError(StateError):
    """The state file is locked by another process."""


class StateVersionError(StateError):
    """The state file uses an unsupported schema version."""


class StateConflictError(StateError):
    """Remote state changed out-of-band since it was last read."""


class ErrorHandler:
    """Converts AWS and network exceptions into ``ProviderError``."""

    # Error codes worth retrying with backoff
    TRANSIENT_ERROR_CODES = {
        'RequestTimeout',
        'RequestTimeoutException',
        'ServiceUnavailable',
        'Throttling',
        'ThrottlingException',
        'ThrottledException',
        'RequestThrottled',
        'RequestThrottledException',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'SlowDown',
        'InternalError',
        'InternalFailure',
        'ServiceException',
        'ResourceContention',
        'ResourceInUse',
        'DependencyViolation',
    }

    TRANSIENT_HTTP_STATUS = {429, 500, 502, 503, 504}

    SUGGESTIONS = {
        'UnauthorizedOperation': [
            'Add the required IAM permission for this operation',
            'Verify you are operating in the correct AWS region',
        ],
        'AccessDenied': [
            'Check IAM policies attached to your user/role',
        ],
        'InvalidGroup.Duplicate': [
            'Use a different name for the security group',
            'Delete the existing group if it is no longer needed',
        ],
        'DuplicateLoadBalancerName': [
            'Use a different name for the load balancer',
        ],
        'AlreadyExists': [
            'Use a different name for the resource',
        ],
        'InvalidAMIID.NotFound': [
            'Check that the image exists in the configured region',
        ],
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def is_transient(self, error: Exception) -> bool:
        """Return True if ``error`` is worth retrying."""
        if isinstance(error, ProviderError):
            return error.transient
        if isinstance(error, ClientError):
            code = error.response.get('Error', {}).get('Code', '')
            status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
            return code in self.TRANSIENT_ERROR_CODES or status in self.TRANSIENT_HTTP_STATUS
        return isinstance(
            error,
            (ConnectionError, TimeoutError, EndpointConnectionError,
             ConnectTimeoutError, ReadTimeoutError)
        )

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> EngineError:
        """Handle an exception and convert to an EngineError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            EngineError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, EngineError):
            if error.context.resource_id is None:
                error.context.resource_id = context.resource_id
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return CredentialError(
                f'AWS credentials unavailable: {error}',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY environment variables',
                    'Specify a profile with --profile',
                ]
            )

        if self.is_transient(error):
            return ProviderError(
                f'Network error: {error}',
                transient=True,
                context=context,
                cause=error
            )

        self.logger.debug(f"Unclassified {type(error).__name__} treated as permanent: {error}")
        return ProviderError(
            str(error),
            transient=False,
            context=context,
            cause=error
        )

    def _handle_aws_error(self, error: ClientError, context: ErrorContext) -> ProviderError:
        """Handle AWS ClientError, keeping the provider message verbatim."""
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = getattr(error, 'operation_name', None)

        if error_code in ('InvalidClientTokenId', 'SignatureDoesNotMatch', 'ExpiredToken'):
            return CredentialError(
                f"{error_code}: {error_message}",
                code=error_code,
                context=context,
                cause=error
            )

        return ProviderError(
            f"{error_code}: {error_message}",
            transient=self.is_transient(error),
            code=error_code,
            context=context,
            cause=error,
            suggestions=self.SUGGESTIONS.get(error_code, [])
        )


# Global error handler instance
error_handler = ErrorHandler()
