"""Tests for the error code registry and the domain exception codes."""

import re

import pytest

from erpsync.errors import (
    ERROR_REGISTRY,
    ConflictError,
    DependentRecordsError,
    DomainError,
    DuplicateConnectionNameError,
    DuplicateExternalIdError,
    DuplicateFieldMappingError,
    DuplicateSyncStateError,
    ErrorCategory,
    ImmutableRecordError,
    ImportBatchClosedError,
    InvalidStateTransition,
    InvariantViolation,
    NotFoundError,
    NotInConflictError,
    OpenConflictError,
    ProgressRegressionError,
    ValidationError,
    get_error,
    get_errors_by_category,
)


class TestErrorRegistry:
    """Tests for the ERROR_REGISTRY contents."""

    def test_codes_follow_format(self):
        for code, error in ERROR_REGISTRY.items():
            assert re.fullmatch(r"E-\d{4}", code)
            assert error.code == code

    def test_category_matches_code_prefix(self):
        prefixes = {
            ErrorCategory.DATA: "E-1",
            ErrorCategory.VALIDATION: "E-2",
            ErrorCategory.STATE: "E-3",
            ErrorCategory.SYSTEM: "E-4",
            ErrorCategory.SYNC: "E-5",
        }
        for error in ERROR_REGISTRY.values():
            assert error.code.startswith(prefixes[error.category])

    def test_every_entry_has_remediation(self):
        for error in ERROR_REGISTRY.values():
            assert error.title
            assert error.remediation

    def test_get_error_unknown_returns_none(self):
        assert get_error("E-9999") is None

    def test_get_errors_by_category(self):
        state_codes = {e.code for e in get_errors_by_category(ErrorCategory.STATE)}
        assert "E-3005" in state_codes
        assert "E-1001" not in state_codes

    def test_only_transient_errors_retryable(self):
        retryable = {e.code for e in ERROR_REGISTRY.values() if e.is_retryable}
        assert retryable == {"E-4001", "E-5001"}


class TestDomainExceptionCodes:
    """Every raised exception maps to a registered code."""

    @pytest.mark.parametrize(
        "exc",
        [
            NotFoundError("Connection", "abc"),
            ValidationError("Name is required", field="name"),
            DuplicateConnectionNameError("SAP"),
            DuplicateExternalIdError("PO-1", "conn-1"),
            DuplicateSyncStateError("conn-1"),
            DuplicateFieldMappingError("OrderNo", "order_number"),
            DependentRecordsError("connection", "conn-1", {"order links": 2}),
            OpenConflictError("link-1", 3),
            InvalidStateTransition("import", "completed", "failed", []),
            NotInConflictError("link-1", "synced"),
            ImportBatchClosedError("imp-1", "completed"),
            ProgressRegressionError("imp-1", "processed_records", 5, 3),
            ImmutableRecordError("ImportDetail", "det-1"),
        ],
    )
    def test_code_registered(self, exc):
        assert get_error(exc.code) is not None
        assert isinstance(exc, DomainError)

    def test_hierarchy(self):
        assert issubclass(DuplicateConnectionNameError, ConflictError)
        assert issubclass(ConflictError, InvariantViolation)
        assert issubclass(OpenConflictError, DependentRecordsError)
        assert not issubclass(ValidationError, InvariantViolation)

    def test_not_found_message(self):
        exc = NotFoundError("Order link", "link-9")
        assert str(exc) == "Order link 'link-9' not found"
        assert exc.resource_type == "Order link"

    def test_dependent_records_message_skips_zero_counts(self):
        exc = DependentRecordsError(
            "connection", "conn-1", {"sync state": 1, "import logs": 0, "order links": 4}
        )
        assert "1 sync state" in str(exc)
        assert "4 order links" in str(exc)
        assert "import logs" not in str(exc)

    def test_terminal_transition_message(self):
        exc = InvalidStateTransition("import", "completed", "failed", [])
        assert "none (terminal)" in str(exc)
        assert exc.allowed_transitions == []
