"""
Custom exceptions for the Stock Tracker application.

This module defines application-specific exceptions for the bulk inventory
ingestion pipeline and the reconciliation/persistence cycle that follows it.
Using custom exceptions allows the application to:
- Tell the operator whether an upload took effect or not
- Carry contextual information (rejected rows, failing store key)
- Enable targeted exception handling in the presentation layer
- Improve logging and error reporting

Two different user stories must never collapse into one generic failure:
- "Nothing was saved": the file could not be read, no worksheet was usable,
  the run was cancelled, or the store refused the write.
- "Some rows were skipped but the rest saved": row-level validation failures,
  which are collected and reported alongside a successful upload.

Exception hierarchy:
    StockTrackerError (base)
    ├── IngestionError (the run produced nothing, nothing was saved)
    │   ├── MalformedSourceError (header/structure unreadable)
    │   ├── NoWorksheetFoundError (no usable sheet)
    │   ├── IngestionCancelledError (caller-initiated)
    │   └── IngestionFailedError (unexpected worker failure)
    ├── IngestionStateError (worker/client lifecycle misuse)
    │   └── IngestionBusyError (an ingestion is already active)
    ├── StoreUnavailableError (persistence layer failed)
    ├── ValidationError (input validation failures)
    │   ├── RowValidationError (collected, non-fatal row failures)
    │   └── EmptyUploadError (upload contains no valid records)
    ├── RecordNotFoundError
    └── ContainerNotFoundError
"""

from typing import List, Optional, Sequence


class StockTrackerError(Exception):
    """
    Base exception for all Stock Tracker errors.

    All application-specific exceptions inherit from this class, so callers
    can catch every application error with a single except clause:
        try:
            service.upload(client, path)
        except StockTrackerError as e:
            logger.error(f"Upload failed: {e}")

    Note: This does NOT inherit from built-in errors like ValueError, IOError
    to maintain clear separation between application and system errors.
    """

    def get_display_message(self) -> str:
        """Return a message suitable for showing to an operator."""
        return str(self)


class IngestionError(StockTrackerError):
    """
    Raised when an ingestion run ends without producing a result.

    Every subclass is fatal to the current run and surfaces to the caller as
    the terminal outcome. Partial progress already reported is simply
    superseded; nothing reaches the inventory store.
    """

    #: Short machine-readable kind used in logs and Qt signals
    kind = "failed"

    def get_display_message(self) -> str:
        return f"{self}\n\nNothing was saved. The current inventory is unchanged."


class MalformedSourceError(IngestionError):
    """
    Raised when the spreadsheet structure or its header row cannot be read.

    Common causes:
    - The file is not a spreadsheet (wrong extension, truncated download)
    - The zip container of an .xlsx file is corrupt
    - The header row is blank or lacks the barcode / style number columns
    - Legacy .xls files, which cannot be streamed

    Raised before any data row is yielded.
    """

    kind = "malformed_source"


class NoWorksheetFoundError(IngestionError):
    """Raised when the workbook contains no worksheet at all."""

    kind = "no_worksheet"


class IngestionCancelledError(IngestionError):
    """
    Raised when the caller cancelled the run before it completed.

    Cancellation is observed at row-batch boundaries; once requested, a
    completed result is never delivered for that run.
    """

    kind = "cancelled"

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)


class IngestionFailedError(IngestionError):
    """
    Raised when the worker failed for a reason outside the known taxonomy.

    Attributes:
        cause_type (str): Class name of the original exception
    """

    kind = "failed"

    def __init__(self, message: str, cause_type: Optional[str] = None):
        super().__init__(message)
        self.cause_type = cause_type


class IngestionStateError(StockTrackerError):
    """Raised when a worker or client is used outside its lifecycle."""
    pass


class IngestionBusyError(IngestionStateError):
    """
    Raised when a second ingestion is submitted while one is still active.

    The client runs at most one ingestion at a time; concurrent uploads
    against the same store must be serialized by the caller.
    """
    pass


class StoreUnavailableError(StockTrackerError):
    """
    Raised when the inventory store fails to read or persist a value.

    When raised during an upload, the merged result is NOT committed: the
    in-memory inventory keeps its previous state and the operator must be
    told that the upload did not take effect.

    Attributes:
        key (str | None): Store key involved in the failed operation
    """

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key

    def get_display_message(self) -> str:
        return (
            f"Could not save inventory: {self}\n\n"
            f"The upload did not take effect. Please try again."
        )


class ValidationError(StockTrackerError):
    """
    Raised when input validation fails.

    Example usage:
        if not container_id.strip():
            raise ValidationError("Container ID cannot be empty")
    """
    pass


class RowValidationError(ValidationError):
    """
    Carries the rows rejected during one ingestion.

    Row failures are recovered locally (row dropped, counted) and never fail
    the run. This exception is only raised by callers that want to treat
    rejections as fatal, e.g. a strict command-line mode.

    Attributes:
        rejections (List): RowRejection entries kept for reporting
        rejected_count (int): Total number of rejected rows
    """

    def __init__(self, message: str, rejections: Optional[Sequence] = None,
                 rejected_count: Optional[int] = None):
        super().__init__(message)
        self.rejections: List = list(rejections or [])
        self.rejected_count = (
            rejected_count if rejected_count is not None else len(self.rejections)
        )

    def get_display_message(self) -> str:
        if not self.rejections:
            return str(self)

        lines = [f"{self.rejected_count} row(s) were rejected:"]
        for rejection in self.rejections[:10]:
            lines.append(f"  Row {rejection.row_number}: {'; '.join(rejection.reasons)}")
        if self.rejected_count > 10:
            lines.append(f"  ... and {self.rejected_count - 10} more")
        return "\n".join(lines)


class EmptyUploadError(ValidationError):
    """
    Raised when an upload contains no valid records.

    An upload is a full recount, so accepting an empty one would remove the
    whole inventory. Nothing is saved.
    """

    def get_display_message(self) -> str:
        return f"{self}\n\nNothing was saved. The current inventory is unchanged."


class RecordNotFoundError(StockTrackerError):
    """Raised when an inventory record identifier is unknown."""

    def __init__(self, identifier: str):
        super().__init__(f"Inventory record not found: {identifier}")
        self.identifier = identifier


class ContainerNotFoundError(StockTrackerError):
    """Raised when a container identifier is unknown."""

    def __init__(self, container_id: str):
        super().__init__(f"Container not found: {container_id}")
        self.container_id = container_id
