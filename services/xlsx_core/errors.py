"""Exception classes for the xlsx core.

Hierarchy:
    XlsxCoreError (base)
    ├── InvalidCellNameError          malformed "A1" style reference
    ├── InvalidColumnNameError        malformed column letters
    ├── InvalidCoordinatesError       non-positive (column, row) pair
    │   └── InvalidRowNumberError
    ├── ColumnOutOfRangeError         column beyond MAX_COLUMNS
    ├── RowOutOfRangeError            row beyond TOTAL_ROWS
    ├── RowHeightTooLargeError
    ├── ColumnWidthTooLargeError
    ├── SheetNotFoundError
    ├── StreamWriterError             stream writer used out of order
    │   ├── ColumnWidthAfterRowsWrittenError
    │   ├── TableBeforeRowsError
    │   ├── TableAlreadyAddedError
    │   ├── StreamWriterClosedError
    │   └── StreamWriterActiveError
    ├── UnzipSizeLimitExceededError
    └── PackageError

Malformed and out-of-range errors are also ValueErrors; the not-found error is
a LookupError, so callers can catch either the specific class or the builtin.
"""

from __future__ import annotations

from typing import Optional


class XlsxCoreError(Exception):
    """Base exception for every error raised by the xlsx core."""

    pass


# =============================================================================
# MALFORMED REFERENCES
# =============================================================================

class InvalidCellNameError(XlsxCoreError, ValueError):
    """Raised when a cell reference does not look like ``[$]A[$]1``."""

    def __init__(self, cell: str, message: Optional[str] = None) -> None:
        self.cell = cell
        super().__init__(message or f'invalid cell name "{cell}"')


class InvalidColumnNameError(XlsxCoreError, ValueError):
    """Raised when column letters are empty or contain non-letters."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'invalid column name "{name}"')


class InvalidCoordinatesError(XlsxCoreError, ValueError):
    """Raised for coordinates below 1 or coordinate lists of the wrong shape."""

    def __init__(self, col: int = 0, row: int = 0, message: Optional[str] = None) -> None:
        self.col = col
        self.row = row
        super().__init__(message or f"invalid cell reference [{col}, {row}]")


class InvalidRowNumberError(InvalidCoordinatesError):
    """Raised when a row number is below 1."""

    def __init__(self, row: int) -> None:
        super().__init__(0, row, f"invalid row number {row}")


# =============================================================================
# OUT OF RANGE
# =============================================================================

class ColumnOutOfRangeError(XlsxCoreError, ValueError):
    """Raised when a column number falls outside [1, MAX_COLUMNS]."""

    def __init__(self, value: object, max_columns: int) -> None:
        self.value = value
        super().__init__(
            f"the column number must be greater than or equal to 1 and "
            f"less than or equal to {max_columns}, got {value}"
        )


class RowOutOfRangeError(XlsxCoreError, ValueError):
    """Raised when a row number exceeds TOTAL_ROWS."""

    def __init__(self, value: object, total_rows: int) -> None:
        self.value = value
        super().__init__(f"row number {value} exceeds maximum limit {total_rows}")


class RowHeightTooLargeError(XlsxCoreError, ValueError):
    def __init__(self, height: float, max_height: float) -> None:
        self.height = height
        super().__init__(
            f"the height of the row must be smaller than or equal to {max_height} points, got {height}"
        )


class ColumnWidthTooLargeError(XlsxCoreError, ValueError):
    def __init__(self, width: float, max_width: float) -> None:
        self.width = width
        super().__init__(
            f"the width of the column must be smaller than or equal to {max_width} characters, got {width}"
        )


# =============================================================================
# NOT FOUND
# =============================================================================

class SheetNotFoundError(XlsxCoreError, LookupError):
    """Raised when a worksheet name is not in the workbook's sheet registry."""

    def __init__(self, sheet: str) -> None:
        self.sheet = sheet
        super().__init__(f"sheet {sheet} does not exist")


# =============================================================================
# STREAM WRITER SEQUENCING
# =============================================================================

class StreamWriterError(XlsxCoreError):
    """Base for stream writer state-machine violations."""

    pass


class ColumnWidthAfterRowsWrittenError(StreamWriterError):
    def __init__(self) -> None:
        super().__init__("must call the set_col_width function before the set_row function")


class TableBeforeRowsError(StreamWriterError):
    def __init__(self) -> None:
        super().__init__("must write at least one row before calling add_table")


class TableAlreadyAddedError(StreamWriterError):
    def __init__(self) -> None:
        super().__init__("only one table is allowed for a stream writer")


class StreamWriterClosedError(StreamWriterError):
    def __init__(self, sheet: str) -> None:
        self.sheet = sheet
        super().__init__(f"stream writer for sheet {sheet} has already been flushed")


class StreamWriterActiveError(StreamWriterError):
    def __init__(self, sheet: str) -> None:
        self.sheet = sheet
        super().__init__(
            f"sheet {sheet} has an open stream writer; call flush before reading or editing it"
        )


# =============================================================================
# PACKAGE / RESOURCE
# =============================================================================

class UnzipSizeLimitExceededError(XlsxCoreError):
    """Raised while opening a package whose extracted size crosses the ceiling."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"unzip size exceeds the {limit} bytes limit")


class PackageError(XlsxCoreError):
    """Raised when the zip container or one of its required parts is unusable."""

    pass
