"""Error handling framework for the ERP sync core.

This package provides:
- Typed domain exceptions raised by the services
- Error code registry with E-XXXX format codes
- Formatting of raised errors for operator display

Error categories:
- E-1xxx: Missing data (not found)
- E-2xxx: Validation errors
- E-3xxx: State invariant violations
- E-4xxx: System/internal errors
- E-5xxx: Sync outcome conditions
"""

from erpsync.errors.domain import (
    ConflictError,
    DependentRecordsError,
    DomainError,
    DuplicateConnectionNameError,
    DuplicateExternalIdError,
    DuplicateFieldMappingError,
    DuplicateSyncStateError,
    ImmutableRecordError,
    ImportBatchClosedError,
    InvalidStateTransition,
    InvariantViolation,
    NotFoundError,
    NotInConflictError,
    OpenConflictError,
    ProgressRegressionError,
    ValidationError,
)
from erpsync.errors.formatter import FormattedError, describe_error, format_error
from erpsync.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Domain exceptions
    "DomainError",
    "NotFoundError",
    "ValidationError",
    "InvariantViolation",
    "ConflictError",
    "DuplicateConnectionNameError",
    "DuplicateExternalIdError",
    "DuplicateSyncStateError",
    "DuplicateFieldMappingError",
    "DependentRecordsError",
    "OpenConflictError",
    "InvalidStateTransition",
    "NotInConflictError",
    "ImportBatchClosedError",
    "ProgressRegressionError",
    "ImmutableRecordError",
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Formatter
    "FormattedError",
    "describe_error",
    "format_error",
]
