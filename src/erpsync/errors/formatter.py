"""Error formatting for operator display.

Turns a raised DomainError into the registry-backed shape used by the CLI
and by collaborators that surface errors to administrators.
"""

import dataclasses
from dataclasses import dataclass

from erpsync.errors.domain import DomainError, ValidationError
from erpsync.errors.registry import get_error


@dataclass
class FormattedError:
    """Display-ready error.

    Attributes:
        code: Error code in E-XXXX format.
        title: Short registry title.
        message: The raised exception's message.
        remediation: Action the operator should take.
        is_retryable: Whether retrying without changes can succeed.
        field: Offending field for validation errors.
        details: Additional context dictionary.
    """

    code: str
    title: str
    message: str
    remediation: str
    is_retryable: bool = False
    field: str | None = None
    details: dict = dataclasses.field(default_factory=dict)

    def to_dict(self) -> dict:
        """Return a JSON-serializable representation."""
        return {
            "code": self.code,
            "title": self.title,
            "message": self.message,
            "remediation": self.remediation,
            "is_retryable": self.is_retryable,
            "field": self.field,
            "details": self.details,
        }


def describe_error(exc: DomainError) -> FormattedError:
    """Look up registry metadata for a raised domain error.

    Args:
        exc: Any DomainError subclass instance.

    Returns:
        FormattedError combining the exception message with registry text.
    """
    error_def = get_error(exc.code)
    details: dict = {}
    dependents = getattr(exc, "dependents", None)
    if dependents:
        details["dependents"] = dict(dependents)
    allowed = getattr(exc, "allowed_transitions", None)
    if allowed is not None:
        details["allowed_transitions"] = list(allowed)

    if error_def is None:
        return FormattedError(
            code=exc.code,
            title="Unknown Error",
            message=str(exc),
            remediation="Check the logs for details.",
            details=details,
        )

    return FormattedError(
        code=error_def.code,
        title=error_def.title,
        message=str(exc),
        remediation=error_def.remediation,
        is_retryable=error_def.is_retryable,
        field=exc.field if isinstance(exc, ValidationError) else None,
        details=details,
    )


def format_error(exc: DomainError, include_remediation: bool = True) -> str:
    """Format a domain error for terminal display.

    Args:
        exc: The raised DomainError.
        include_remediation: Whether to include remediation steps.

    Returns:
        Multi-line string suitable for operator display.
    """
    formatted = describe_error(exc)
    lines = [f"{formatted.code}: {formatted.message}"]
    if formatted.field:
        lines.append(f"  Field: {formatted.field}")
    if include_remediation:
        lines.append(f"  Remediation: {formatted.remediation}")
    return "\n".join(lines)
