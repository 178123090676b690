"""Error code registry with E-XXXX format codes.

Errors are organized into categories:
- E-1xxx: Missing data (not found)
- E-2xxx: Validation errors
- E-3xxx: State invariant violations
- E-4xxx: System/internal errors
- E-5xxx: Sync outcome conditions

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DATA = "data"  # E-1xxx: Missing data
    VALIDATION = "validation"  # E-2xxx: Validation errors
    STATE = "state"  # E-3xxx: Invariant violations
    SYSTEM = "system"  # E-4xxx: System/internal errors
    SYNC = "sync"  # E-5xxx: Sync outcomes


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action the operator should take to resolve.
        is_retryable: Whether the operation can be retried without operator action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Not found (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.DATA,
        title="Record Not Found",
        message_template="{resource_type} '{identifier}' not found.",
        remediation="Check the identifier; the record may have been deleted.",
    ),
    # Validation (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Input",
        message_template="Field '{field}' is invalid: {reason}",
        remediation="Correct the named field and resubmit.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Authentication Config",
        message_template="auth_config does not match auth_type '{auth_type}'.",
        remediation="Supply the credential fields required by the selected auth_type.",
    ),
    # State invariants (E-3xxx)
    "E-3000": ErrorCode(
        code="E-3000",
        category=ErrorCategory.STATE,
        title="Invariant Violation",
        message_template="{reason}",
        remediation="Re-read the current state before retrying.",
    ),
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.STATE,
        title="Duplicate Connection Name",
        message_template="Connection name '{name}' must be unique.",
        remediation="Choose a different connection name.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.STATE,
        title="Duplicate External ID",
        message_template="External ID '{external_id}' already exists for this connection.",
        remediation="Look up the existing link instead of creating a new one.",
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.STATE,
        title="Duplicate Sync State",
        message_template="Sync state already exists for connection '{connection_id}'.",
        remediation="Use the existing sync state, or reset it.",
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.STATE,
        title="Dependent Records Exist",
        message_template="{resource_type} '{identifier}' still has dependent records.",
        remediation="Remove sync state, import logs and order links first.",
    ),
    "E-3005": ErrorCode(
        code="E-3005",
        category=ErrorCategory.STATE,
        title="Invalid Status Transition",
        message_template="Cannot transition from '{current}' to '{attempted}'.",
        remediation="Check the current status; some states are terminal.",
    ),
    "E-3006": ErrorCode(
        code="E-3006",
        category=ErrorCategory.STATE,
        title="Link Not In Conflict",
        message_template="Order link '{link_id}' is not in conflict status.",
        remediation="Only links in conflict status can be resolved.",
    ),
    "E-3007": ErrorCode(
        code="E-3007",
        category=ErrorCategory.STATE,
        title="Import Batch Closed",
        message_template="Import '{import_id}' is no longer running.",
        remediation="Start a new import batch.",
    ),
    "E-3008": ErrorCode(
        code="E-3008",
        category=ErrorCategory.STATE,
        title="Progress Regression",
        message_template="Import counter '{counter}' cannot decrease.",
        remediation="Report cumulative counts, not per-page deltas.",
    ),
    "E-3009": ErrorCode(
        code="E-3009",
        category=ErrorCategory.STATE,
        title="Duplicate Field Mapping",
        message_template="Field mapping '{source_field}' -> '{target_field}' already exists.",
        remediation="Delete the existing mapping before re-adding it.",
    ),
    "E-3010": ErrorCode(
        code="E-3010",
        category=ErrorCategory.STATE,
        title="Open Conflict",
        message_template="Order link '{link_id}' has an unresolved conflict.",
        remediation="Resolve the conflict before deleting the order link.",
    ),
    "E-3011": ErrorCode(
        code="E-3011",
        category=ErrorCategory.STATE,
        title="Immutable Record",
        message_template="{resource_type} '{identifier}' is immutable once written.",
        remediation="Append a new record instead of editing an existing one.",
    ),
    # System (E-4xxx)
    "E-4000": ErrorCode(
        code="E-4000",
        category=ErrorCategory.SYSTEM,
        title="Internal Error",
        message_template="An unexpected error occurred: {reason}",
        remediation="Check the logs for details.",
    ),
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Database Error",
        message_template="Database operation failed: {reason}",
        remediation="Check database connectivity and retry.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Corrupt Stored Payload",
        message_template="Stored {column} for {resource_type} '{identifier}' is not valid JSON.",
        remediation="The value was read as empty; re-save the record to repair it.",
    ),
    # Sync outcomes (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.SYNC,
        title="Sync Attempt Failed",
        message_template="Sync for connection '{connection_id}' failed: {reason}",
        remediation="The next scheduled run retries automatically.",
        is_retryable=True,
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.SYNC,
        title="Full Resync Required",
        message_template="Connection '{connection_id}' reached {failures} consecutive failures.",
        remediation="Fix the connection, then run a full import to clear the flag.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category."""
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
