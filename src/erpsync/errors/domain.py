"""Typed domain exceptions for the ERP sync core.

Callers branch on exception type rather than matching message strings.
Every exception carries an E-XXXX code from the error registry so the
admin layer and the CLI can render consistent remediation text.

Usage:
    # In service layer
    raise NotFoundError("Connection", connection_id)

    # In a collaborator
    try:
        registry.resolve_conflict(link_id, resolution)
    except NotInConflictError:
        ...
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    code = "E-4000"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(DomainError):
    """Referenced connection, link, sync state or batch does not exist."""

    code = "E-1001"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ValidationError(DomainError):
    """Malformed or incomplete input. Never persisted.

    Attributes:
        field: Dotted path of the offending field, when known.
    """

    code = "E-2001"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class InvariantViolation(DomainError):
    """A state invariant would be broken by the requested operation."""

    code = "E-3000"


class ConflictError(InvariantViolation):
    """Uniqueness conflict (duplicate row)."""


class DuplicateConnectionNameError(ConflictError):
    """Connection name already exists."""

    code = "E-3001"

    def __init__(self, name: str) -> None:
        super().__init__(f"Connection name '{name}' must be unique")
        self.name = name


class DuplicateExternalIdError(ConflictError):
    """External id already linked for this connection."""

    code = "E-3002"

    def __init__(self, external_id: str, connection_id: str) -> None:
        super().__init__(
            f"External ID '{external_id}' already exists for connection "
            f"'{connection_id}'"
        )
        self.external_id = external_id
        self.connection_id = connection_id


class DuplicateSyncStateError(ConflictError):
    """Sync state row already exists for this connection."""

    code = "E-3003"

    def __init__(self, connection_id: str) -> None:
        super().__init__(
            f"Sync state already exists for connection '{connection_id}'"
        )
        self.connection_id = connection_id


class DuplicateFieldMappingError(ConflictError):
    """Same source/target field pair already mapped on the connection."""

    code = "E-3009"

    def __init__(self, source_field: str, target_field: str) -> None:
        super().__init__(
            f"Field mapping '{source_field}' -> '{target_field}' already exists"
        )
        self.source_field = source_field
        self.target_field = target_field


class DependentRecordsError(InvariantViolation):
    """Row cannot be deleted or changed while dependents reference it.

    Attributes:
        dependents: Mapping of dependent kind to row count.
    """

    code = "E-3004"

    def __init__(
        self, resource_type: str, identifier: str, dependents: dict[str, int]
    ) -> None:
        kinds = ", ".join(
            f"{count} {kind}" for kind, count in dependents.items() if count
        )
        super().__init__(
            f"Cannot delete {resource_type} '{identifier}': it has {kinds}"
        )
        self.resource_type = resource_type
        self.identifier = identifier
        self.dependents = dependents


class InvalidStateTransition(InvariantViolation):
    """Requested status change is not allowed from the current status."""

    code = "E-3005"

    def __init__(
        self,
        entity: str,
        current_state: str,
        attempted_state: str,
        allowed_transitions: list[str],
    ) -> None:
        allowed = ", ".join(allowed_transitions) if allowed_transitions else "none (terminal)"
        super().__init__(
            f"Cannot transition {entity} from '{current_state}' to "
            f"'{attempted_state}'. Allowed transitions: {allowed}"
        )
        self.entity = entity
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions


class NotInConflictError(InvariantViolation):
    """Conflict resolution attempted on a link that is not in conflict."""

    code = "E-3006"

    def __init__(self, link_id: str, current_status: str) -> None:
        super().__init__(
            f"Order link '{link_id}' is not in conflict status "
            f"(current status: {current_status})"
        )
        self.link_id = link_id
        self.current_status = current_status


class OpenConflictError(DependentRecordsError):
    """Order link still has an unresolved conflict."""

    code = "E-3010"

    def __init__(self, link_id: str, open_count: int) -> None:
        super().__init__("order link", link_id, {"open conflicts": open_count})


class ImportBatchClosedError(InvariantViolation):
    """Batch already reached a terminal status."""

    code = "E-3007"

    def __init__(self, import_id: str, status: str) -> None:
        super().__init__(
            f"Import '{import_id}' is {status}; only running imports accept changes"
        )
        self.import_id = import_id
        self.status = status


class ProgressRegressionError(InvariantViolation):
    """Progress counter update would move a counter backwards."""

    code = "E-3008"

    def __init__(self, import_id: str, counter: str, current: int, attempted: int) -> None:
        super().__init__(
            f"Import '{import_id}' {counter} cannot decrease "
            f"({current} -> {attempted})"
        )
        self.import_id = import_id
        self.counter = counter
        self.current = current
        self.attempted = attempted


class ImmutableRecordError(InvariantViolation):
    """Append-only audit row was modified."""

    code = "E-3011"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' is immutable once written")
        self.resource_type = resource_type
        self.identifier = identifier
