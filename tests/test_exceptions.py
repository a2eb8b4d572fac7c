"""
Unit tests for src/exceptions.py: Custom exception hierarchy.

Tests cover:
- Exception inheritance chain
- Constructor arguments and attributes
- get_display_message() formatting ("nothing was saved" vs "rows skipped")
- Edge cases (no rejections kept, long rejection lists)
"""

import pytest

from exceptions import (
    ContainerNotFoundError,
    EmptyUploadError,
    IngestionBusyError,
    IngestionCancelledError,
    IngestionError,
    IngestionFailedError,
    IngestionStateError,
    MalformedSourceError,
    NoWorksheetFoundError,
    RecordNotFoundError,
    RowValidationError,
    StockTrackerError,
    StoreUnavailableError,
    ValidationError,
)
from models import RowRejection


# ============================================================================
# Inheritance chain
# ============================================================================

class TestInheritance:
    """Verify the documented exception hierarchy."""

    def test_base_is_exception_but_not_value_error(self):
        assert issubclass(StockTrackerError, Exception)
        assert not issubclass(StockTrackerError, ValueError)

    @pytest.mark.parametrize("exc_class", [
        MalformedSourceError,
        NoWorksheetFoundError,
        IngestionCancelledError,
        IngestionFailedError,
    ])
    def test_run_failures_are_ingestion_errors(self, exc_class):
        assert issubclass(exc_class, IngestionError)

    def test_busy_is_state_error(self):
        assert issubclass(IngestionBusyError, IngestionStateError)
        assert not issubclass(IngestionStateError, IngestionError)

    def test_row_and_empty_upload_are_validation_errors(self):
        assert issubclass(RowValidationError, ValidationError)
        assert issubclass(EmptyUploadError, ValidationError)

    def test_catch_all_with_base_class(self):
        """All custom exceptions can be caught with StockTrackerError."""
        for exc in [MalformedSourceError("x"), IngestionCancelledError(), IngestionBusyError("x"),
                    StoreUnavailableError("x"), ValidationError("x"), RecordNotFoundError("A"),
                    ContainerNotFoundError("BOX1"), IngestionFailedError("x")]:
            with pytest.raises(StockTrackerError):
                raise exc


# ============================================================================
# Ingestion errors
# ============================================================================

class TestIngestionErrors:

    @pytest.mark.parametrize("exc, kind", [
        (MalformedSourceError("bad header"), "malformed_source"),
        (NoWorksheetFoundError("no sheets"), "no_worksheet"),
        (IngestionCancelledError(), "cancelled"),
        (IngestionFailedError("boom"), "failed"),
    ])
    def test_kind(self, exc, kind):
        assert exc.kind == kind

    def test_cancelled_default_message(self):
        assert str(IngestionCancelledError()) == "cancelled"

    def test_failed_keeps_cause_type(self):
        err = IngestionFailedError("division by zero", "ZeroDivisionError")
        assert err.cause_type == "ZeroDivisionError"
        assert IngestionFailedError("x").cause_type is None

    def test_display_message_says_nothing_saved(self):
        msg = MalformedSourceError("Header row is blank").get_display_message()
        assert msg.startswith("Header row is blank")
        assert "Nothing was saved" in msg


# ============================================================================
# StoreUnavailableError
# ============================================================================

class TestStoreUnavailableError:

    def test_key_stored(self):
        err = StoreUnavailableError("disk full", key="records")
        assert err.key == "records"
        assert StoreUnavailableError("x").key is None

    def test_display_message(self):
        msg = StoreUnavailableError("database is locked").get_display_message()
        assert "database is locked" in msg
        assert "did not take effect" in msg


# ============================================================================
# RowValidationError
# ============================================================================

def rejection(row_number, *reasons):
    return RowRejection(row_number, 'Products', reasons)


class TestRowValidationError:

    def test_count_defaults_to_kept_rejections(self):
        err = RowValidationError("2 rows", [rejection(2, "missing barcode"), rejection(5, "x")])
        assert err.rejected_count == 2

    def test_count_can_exceed_kept_rejections(self):
        err = RowValidationError("many", [rejection(2, "missing barcode")], rejected_count=5000)
        assert err.rejected_count == 5000
        assert len(err.rejections) == 1

    def test_display_lists_rows(self):
        err = RowValidationError("x", [rejection(3, "missing barcode", "negative quantity: -1")])
        msg = err.get_display_message()
        assert "1 row(s) were rejected" in msg
        assert "Row 3: missing barcode; negative quantity: -1" in msg

    def test_display_truncates_long_lists(self):
        rejections = [rejection(n, "missing barcode") for n in range(2, 22)]
        msg = RowValidationError("x", rejections).get_display_message()
        assert "Row 11:" in msg
        assert "Row 12:" not in msg
        assert "... and 10 more" in msg

    def test_display_without_rejections_returns_str(self):
        assert RowValidationError("fallback message").get_display_message() == "fallback message"


# ============================================================================
# Other errors
# ============================================================================

class TestOtherErrors:

    def test_empty_upload_display(self):
        msg = EmptyUploadError("soh.xlsx contains no valid records").get_display_message()
        assert "Nothing was saved" in msg

    def test_record_not_found(self):
        err = RecordNotFoundError("123456789012")
        assert err.identifier == "123456789012"
        assert str(err) == "Inventory record not found: 123456789012"

    def test_container_not_found(self):
        err = ContainerNotFoundError("BOX404")
        assert err.container_id == "BOX404"
        assert "BOX404" in err.get_display_message()

    def test_validation_error_message(self):
        assert str(ValidationError("Container ID cannot be empty")) == "Container ID cannot be empty"
